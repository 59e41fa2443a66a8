# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Exceptions raised while signing on with an external provider.

Each :py:class:`SignonError` carries a machine-readable ``id``, which is
shown to the user as a ``notice`` query parameter of the failure redirect:
no other detail about the failure ever leaves the server.
"""

from django.core.exceptions import ImproperlyConfigured


class SignonError(Exception):
    """Base class for sign-on failures that end in a notice redirect."""

    #: Machine-readable identifier of the failure kind
    id: str = "authentication_error"

    @property
    def notice(self) -> str:
        """Return the notice code used in redirect URLs."""
        return self.id.replace("_", "-")


class StateMismatch(SignonError):
    """
    The callback state could not be verified.

    This is raised for forged, expired, replayed and missing state alike, and
    always with the same message.
    """

    id = "state_mismatch"

    def __init__(self) -> None:
        """Use the same message for every kind of state failure."""
        super().__init__("Request state mismatch")


class AuthExchangeFailed(SignonError):
    """An outbound call to the provider or enrichment service failed."""

    id = "authentication_error"


class ValidationFailed(SignonError):
    """The resolved identity is missing required fields or is invalid."""

    id = "malformed_user_info"


class ProvisioningError(SignonError):
    """
    The account provisioner refused or failed to provision an account.

    The provisioner chooses the notice id, and can ask for the failure
    redirect to go to a specific path and host.
    """

    def __init__(
        self,
        message: str,
        *,
        id: str = "provisioning_error",
        redirect_path: str | None = None,
        host: str | None = None,
    ) -> None:
        """
        Build a provisioning error.

        :param message: description for the logs
        :param id: notice identifier shown to the user
        :param redirect_path: path to redirect to instead of ``/``
        :param host: host to redirect to instead of the originating one
        """
        super().__init__(message)
        self.id = id
        self.redirect_path = redirect_path
        self.host = host


class ConfigurationError(ImproperlyConfigured):
    """The sign-on configuration is missing required provider settings."""


class CallbackCancelled(Exception):
    """The client went away while the callback was being handled."""
