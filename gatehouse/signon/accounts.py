# Copyright 2020-2023 Enrico Zini <enrico@debian.org>
# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Account provisioning on top of django.contrib.auth users."""

import logging
from typing import Any

from django.contrib.auth import get_user_model
from django.contrib.auth.hashers import make_password
from django.core.exceptions import ValidationError
from django.db import transaction

from gatehouse.signon.errors import ProvisioningError
from gatehouse.signon.provisioning import ProvisioningRequest, ProvisioningResult
from gatehouse.signon.signon_utils import split_full_name

log = logging.getLogger("gatehouse.signon")


class DjangoAccountProvisioner:
    """
    Match or create a Django user for a signed-on identity.

    Users are matched by email address. Teams are not modeled: the team id
    found by the provider directory is passed through in the result.
    """

    def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Match an existing user by email, or create a new one."""
        with transaction.atomic():
            user = self.lookup_user(request)
            is_new_user = False
            if user is None:
                user = self.create_user(request)
                is_new_user = True
                log.info(
                    "%s: auto created from %s identity %s",
                    user,
                    request.provider.name,
                    request.authentication.external_subject_id,
                )
            else:
                log.info(
                    "%s: user matched to %s identity %s",
                    user,
                    request.provider.name,
                    request.authentication.external_subject_id,
                )

        if not user.is_active:
            raise ProvisioningError(
                f"{user} is not allowed to log in", id="user_suspended"
            )

        return ProvisioningResult(
            user=user, team=request.team.team_id, is_new_user=is_new_user
        )

    def lookup_user(self, request: ProvisioningRequest) -> Any:
        """Look up an existing user from the email in the request."""
        User = get_user_model()
        try:
            return User.objects.get(email__iexact=request.user.email)
        except User.DoesNotExist:
            return None
        except User.MultipleObjectsReturned:
            raise ProvisioningError(
                f"More than one user has email {request.user.email}",
                id="ambiguous_email",
            )

    def create_user(self, request: ProvisioningRequest) -> Any:
        """
        Create a user from the data in a provisioning request.

        Django does not run validators on create_user, so validation is run
        explicitly before saving.
        """
        User = get_user_model()
        first_name, last_name = split_full_name(request.user.name)
        email = User.objects.normalize_email(request.user.email)
        username = User.normalize_username(request.user.email)
        user = User(
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
        user.password = make_password(None)

        try:
            user.clean_fields()
        except ValidationError as exc:
            log.warning(
                "%s: cannot create a local user", request.user.email, exc_info=exc
            )
            raise ProvisioningError(
                f"Cannot create a local user for {request.user.email}",
                id="user_creation_failed",
            )

        user.save()
        return user
