# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Start application sessions for signed-on users."""

import logging

from django.conf import settings
from django.contrib import auth
from django.contrib.auth import backends
from django.http import HttpRequest, HttpResponseBase, HttpResponseRedirect
from django.shortcuts import resolve_url

from gatehouse.signon.errors import ProvisioningError
from gatehouse.signon.provisioning import ProvisioningResult
from gatehouse.signon.state import ClientVariant

log = logging.getLogger("gatehouse.signon")

#: Dotted path of the backend marking signon-authenticated users
AUTH_BACKEND_NAME = "gatehouse.signon.auth.SignonAuthBackend"

#: Default URL scheme handled by the desktop client
DEFAULT_DESKTOP_SCHEME = "gatehouse"


class HttpResponseClientRedirect(HttpResponseRedirect):
    """Redirect that also allows the desktop client URL scheme."""

    @property
    def allowed_schemes(self) -> list[str]:  # type: ignore[override]
        """Add the desktop scheme to the schemes allowed by Django."""
        return HttpResponseRedirect.allowed_schemes + [
            getattr(settings, "SIGNON_DESKTOP_SCHEME", DEFAULT_DESKTOP_SCHEME)
        ]


def client_url(
    request: HttpRequest, client_variant: ClientVariant, host: str, path: str
) -> str:
    """
    Build an absolute URL for the client that started the flow.

    The desktop client gets its own URL scheme, the web client the scheme of
    the current request.
    """
    if client_variant == ClientVariant.DESKTOP:
        scheme = getattr(
            settings, "SIGNON_DESKTOP_SCHEME", DEFAULT_DESKTOP_SCHEME
        )
    else:
        scheme = request.scheme
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{scheme}://{host}{path}"


class DjangoSessionEstablisher:
    """Log users in with django.contrib.auth."""

    def establish(
        self,
        request: HttpRequest,
        result: ProvisioningResult,
        client_variant: ClientVariant,
    ) -> HttpResponseBase:
        """Log in the provisioned user and redirect into the application."""
        backend = auth.load_backend(AUTH_BACKEND_NAME)
        assert isinstance(backend, backends.ModelBackend)
        if not backend.user_can_authenticate(result.user):
            log.warning("%s: user is not allowed to log in", result.user)
            raise ProvisioningError(
                f"{result.user} is not allowed to log in", id="user_suspended"
            )

        log.debug("logging in user %s", result.user)
        auth.login(request, result.user, backend=AUTH_BACKEND_NAME)

        target = resolve_url(
            result.redirect_to
            or getattr(settings, "SIGNON_DEFAULT_REDIRECT", "/")
        )
        if target.startswith("/"):
            target = client_url(
                request, client_variant, request.get_host(), target
            )
        return HttpResponseClientRedirect(target)
