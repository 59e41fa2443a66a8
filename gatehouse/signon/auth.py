# Copyright 2020-2023 Enrico Zini <enrico@debian.org>
# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Authentication backend to mark signon-managed authentication."""

from typing import Any

from django.contrib.auth.backends import ModelBackend
from django.http import HttpRequest


class SignonAuthBackend(ModelBackend):
    """
    Auth backend for external authentication.

    It is used to mark users authenticated via external signon providers, and
    never authenticates credentials by itself.
    """

    def authenticate(
        self,
        request: HttpRequest | None,  # noqa: U100
        username: str | None = None,  # noqa: U100
        password: str | None = None,  # noqa: U100
        **kwargs: Any,  # noqa: U100
    ) -> None:
        """Refuse credentials: signon users only log in via callbacks."""
        return None
