# Copyright 2020-2023 Enrico Zini <enrico@debian.org>
# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Views needed to interact with external authentication providers."""

from typing import Any

from django import http
from django.core.exceptions import ImproperlyConfigured
from django.http import HttpRequest, HttpResponseBase
from django.utils.decorators import method_decorator
from django.views.decorators.cache import never_cache
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import View

from gatehouse.signon import providers
from gatehouse.signon.orchestrator import CallbackOrchestrator


class SignonProviderMixin:
    """Look up the OIDC provider named in the URL."""

    kwargs: dict[str, Any]

    def get_provider(self) -> providers.OIDCProvider:
        """Return the provider, or raise Http404 if it is not configured."""
        try:
            provider = providers.get(self.kwargs["name"])
        except ImproperlyConfigured:
            raise http.Http404
        if not isinstance(provider, providers.OIDCProvider):
            raise http.Http404
        return provider

    def client_disconnected(
        self, request: HttpRequest  # noqa: U100
    ) -> bool:
        """
        Check if the client that sent the request went away.

        The WSGI protocol gives no way of knowing this: deployments that can
        detect disconnections can override this method.
        """
        return False

    def get_orchestrator(self, request: HttpRequest) -> CallbackOrchestrator:
        """Create the orchestrator for this request."""
        return CallbackOrchestrator(
            self.get_provider(),
            request,
            client_disconnected=lambda: self.client_disconnected(request),
        )


@method_decorator(never_cache, name="dispatch")
class AuthenticationStartView(SignonProviderMixin, View):
    """Start authentication with an external OIDC provider."""

    def get(
        self, request: HttpRequest, *args: Any, **kwargs: Any
    ) -> HttpResponseBase:
        """Set the state cookie and redirect to the provider."""
        return self.get_orchestrator(request).start()


@method_decorator(csrf_exempt, name="dispatch")
@method_decorator(never_cache, name="dispatch")
class OIDCAuthenticationCallbackView(SignonProviderMixin, View):
    """
    Handle a callback from an external OIDC authentication provider.

    Providers using the ``form_post`` response mode send the callback as a
    POST request, which cannot carry a CSRF token: the state cookie protects
    the callback instead.
    """

    def get(
        self, request: HttpRequest, *args: Any, **kwargs: Any
    ) -> HttpResponseBase:
        """Complete authentication with the information from the provider."""
        return self.get_orchestrator(request).handle_callback()

    def post(
        self, request: HttpRequest, *args: Any, **kwargs: Any
    ) -> HttpResponseBase:
        """Complete authentication from a ``form_post`` callback."""
        return self.get_orchestrator(request).handle_callback()
