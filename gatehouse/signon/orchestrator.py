# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Drive a sign-on round trip with an external provider.

A :py:class:`CallbackOrchestrator` is created for each request, and moves
through the stages in :py:class:`Stage` strictly in order. Any failure moves
it to :py:attr:`Stage.FAILED`, and nothing else is run: the user is
redirected with a ``notice`` query parameter describing the failure kind.
"""

import enum
import functools
import logging
from collections.abc import Callable

from django.conf import settings
from django.http import HttpRequest, HttpResponse, HttpResponseBase
from django.urls import reverse

from gatehouse.signon.authorization import make_pkce_verifier
from gatehouse.signon.claims import ClaimsResolver, ResolvedIdentity
from gatehouse.signon.errors import (
    AuthExchangeFailed,
    CallbackCancelled,
    ProvisioningError,
    SignonError,
    StateMismatch,
)
from gatehouse.signon.providers import OIDCProvider
from gatehouse.signon.provisioning import ProvisioningBridge, ProvisioningResult
from gatehouse.signon.session import HttpResponseClientRedirect, client_url
from gatehouse.signon.state import (
    ClientVariant,
    StateContext,
    issue_state,
    new_state_context,
    state_ttl,
    verify_state,
)
from gatehouse.signon.tokens import TokenSet

log = logging.getLogger("gatehouse.signon")

#: Status of the response returned when the client went away
CLIENT_CLOSED_REQUEST = 499


class Stage(enum.Enum):
    """Stages of a sign-on round trip."""

    INIT = "init"
    REDIRECTED = "redirected"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VERIFIED = "state_verified"
    TOKEN_EXCHANGED = "token_exchanged"
    CLAIMS_RESOLVED = "claims_resolved"
    PROVISIONED = "provisioned"
    SESSION_ESTABLISHED = "session_established"
    FAILED = "failed"


#: Allowed successors of each stage, besides FAILED. The callback request
#: starts from INIT, since REDIRECTED was reached by the initiating request
TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.INIT: frozenset({Stage.REDIRECTED, Stage.CALLBACK_RECEIVED}),
    Stage.REDIRECTED: frozenset(),
    Stage.CALLBACK_RECEIVED: frozenset({Stage.STATE_VERIFIED}),
    Stage.STATE_VERIFIED: frozenset({Stage.TOKEN_EXCHANGED}),
    Stage.TOKEN_EXCHANGED: frozenset({Stage.CLAIMS_RESOLVED}),
    Stage.CLAIMS_RESOLVED: frozenset({Stage.PROVISIONED}),
    Stage.PROVISIONED: frozenset({Stage.SESSION_ESTABLISHED}),
    Stage.SESSION_ESTABLISHED: frozenset(),
    Stage.FAILED: frozenset(),
}


def state_cookie_name(provider: OIDCProvider) -> str:
    """Return the name of the state cookie for a provider."""
    return f"signon_state_{provider.name}"


def state_cookie_samesite() -> str:
    """Return the SameSite attribute of state cookies."""
    return getattr(settings, "SIGNON_STATE_COOKIE_SAMESITE", "Lax")


class CallbackOrchestrator:
    """Run the sign-on flow for one request."""

    def __init__(
        self,
        provider: OIDCProvider,
        request: HttpRequest,
        *,
        bridge: ProvisioningBridge | None = None,
        client_disconnected: Callable[[], bool] | None = None,
    ) -> None:
        """
        Create an orchestrator for a request.

        :param provider: provider to authenticate with
        :param request: the current request
        :param bridge: provisioning bridge; by default one is created using
          the collaborators configured in settings
        :param client_disconnected: called before provisioning and before
          establishing the session: if it returns True, the flow stops
        """
        self.provider = provider
        self.request = request
        self._bridge = bridge
        self.client_disconnected = client_disconnected or (lambda: False)
        self.stage = Stage.INIT
        self.history: list[Stage] = [Stage.INIT]
        self.context: StateContext | None = None
        self.tokens: TokenSet | None = None
        self.identity: ResolvedIdentity | None = None
        self.result: ProvisioningResult | None = None

    @functools.cached_property
    def bridge(self) -> ProvisioningBridge:
        """Return the provisioning bridge."""
        if self._bridge is None:
            self._bridge = ProvisioningBridge(self.provider)
        return self._bridge

    @property
    def cookie_name(self) -> str:
        """Return the name of the state cookie."""
        return state_cookie_name(self.provider)

    @property
    def redirect_uri(self) -> str:
        """Return the absolute URL of the callback view."""
        return self.request.build_absolute_uri(
            reverse("signon:oidc_callback", args=(self.provider.name,))
        )

    def advance(self, stage: Stage) -> None:
        """Move to the next stage."""
        if stage != Stage.FAILED and stage not in TRANSITIONS[self.stage]:
            raise RuntimeError(
                f"invalid sign-on transition: {self.stage} -> {stage}"
            )
        log.debug("%s: %s -> %s", self.provider.name, self.stage, stage)
        self.stage = stage
        self.history.append(stage)

    def param(self, name: str) -> str | None:
        """Get a parameter from the query string, or else from the body."""
        if (value := self.request.GET.get(name)) is not None:
            return value
        if self.request.method == "POST":
            return self.request.POST.get(name)
        return None

    def start(self) -> HttpResponseBase:
        """Issue the state cookie and redirect to the provider."""
        try:
            self.provider.resolve_endpoints()
            strategy = self.provider.strategy
            pkce_verifier = None
            if self.provider.pkce and not strategy.replaces_authorization:
                pkce_verifier = make_pkce_verifier()
            context = new_state_context(
                self.request.get_host(),
                ClientVariant.from_param(self.request.GET.get("client")),
                pkce_verifier=pkce_verifier,
            )
            _, cookie_value = issue_state(context)
            url = strategy.authorization_url(
                self.provider, self.redirect_uri, context
            )
        except SignonError as exc:
            return self.fail(exc)

        response = HttpResponseClientRedirect(url)
        response.set_cookie(
            self.cookie_name,
            cookie_value,
            max_age=state_ttl(),
            secure=self.request.is_secure(),
            httponly=True,
            samesite=state_cookie_samesite(),
        )
        self.advance(Stage.REDIRECTED)
        return response

    def handle_callback(self) -> HttpResponseBase:
        """
        Handle the provider callback.

        The state cookie is deleted whatever the outcome.
        """
        self.advance(Stage.CALLBACK_RECEIVED)
        response: HttpResponseBase
        try:
            response = self._run_callback()
        except SignonError as exc:
            response = self.fail(exc)
        except CallbackCancelled:
            self.advance(Stage.FAILED)
            log.info(
                "%s: client disconnected, sign-on abandoned",
                self.provider.name,
            )
            response = HttpResponse(status=CLIENT_CLOSED_REQUEST)
        except Exception:
            self.advance(Stage.FAILED)
            log.exception("%s: error completing sign-on", self.provider.name)
            if settings.DEBUG:
                raise
            response = HttpResponseClientRedirect("/?notice=auth-error")

        response.delete_cookie(
            self.cookie_name, samesite=state_cookie_samesite()
        )
        return response

    def check_connected(self) -> None:
        """Stop the flow if the client went away."""
        if self.client_disconnected():
            raise CallbackCancelled()

    def _run_callback(self) -> HttpResponseBase:
        """Run the callback stages in order."""
        self.context = verify_state(
            self.request.COOKIES.get(self.cookie_name), self.param("state")
        )
        self.advance(Stage.STATE_VERIFIED)

        if error := self.param("error"):
            log.error(
                "%s: provider returned an error: %s (%s)",
                self.provider.name,
                error,
                self.param("error_description"),
            )
            raise AuthExchangeFailed(f"{self.provider} returned {error}")
        if not (code := self.param("code")):
            log.error("%s: callback has no code", self.provider.name)
            raise AuthExchangeFailed(f"{self.provider} returned no code")

        self.provider.resolve_endpoints()
        self.tokens = self.provider.strategy.exchange(
            self.provider, code, self.redirect_uri, self.context
        )
        self.advance(Stage.TOKEN_EXCHANGED)

        self.identity = ClaimsResolver(self.provider).resolve(self.tokens)
        self.advance(Stage.CLAIMS_RESOLVED)

        self.check_connected()
        self.result = self.bridge.provision(
            self.identity,
            self.tokens,
            host=self.request.get_host(),
            ip_address=self.request.META.get("REMOTE_ADDR"),
        )
        self.advance(Stage.PROVISIONED)

        self.check_connected()
        response = self.bridge.establish_session(
            self.request, self.result, self.context.client_variant
        )
        self.advance(Stage.SESSION_ESTABLISHED)
        log.info(
            "%s: %s signed on as %s",
            self.provider.name,
            self.identity.email,
            self.result.user,
        )
        return response

    def failure_url(self, exc: SignonError) -> str:
        """Build the URL to redirect to after a failure."""
        path = "/"
        host: str | None = None
        if isinstance(exc, ProvisioningError):
            path = exc.redirect_path or "/"
            host = exc.host

        if self.context is None or isinstance(exc, StateMismatch):
            client_variant = ClientVariant.from_param(
                self.request.GET.get("client")
            )
            host = host or self.request.get_host()
        else:
            client_variant = self.context.client_variant
            host = host or self.context.origin_host

        url = client_url(self.request, client_variant, host, path)
        separator = "&" if "?" in path else "?"
        return f"{url}{separator}notice={exc.notice}"

    def fail(self, exc: SignonError) -> HttpResponseBase:
        """Move to FAILED and redirect with a notice."""
        self.advance(Stage.FAILED)
        log.debug("%s: sign-on failed: %s", self.provider.name, exc)
        return HttpResponseClientRedirect(self.failure_url(exc))
