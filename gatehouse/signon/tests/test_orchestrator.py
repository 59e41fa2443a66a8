# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Tests for the sign-on state machine."""

from typing import Any
from unittest import mock
from urllib.parse import parse_qs, urlsplit

import responses
from django.http import HttpRequest, HttpResponseRedirect
from django.test import override_settings

from gatehouse.signon.errors import ProvisioningError
from gatehouse.signon.orchestrator import (
    CallbackOrchestrator,
    Stage,
    state_cookie_name,
)
from gatehouse.signon.provisioning import ProvisioningBridge, ProvisioningResult
from gatehouse.signon.state import ClientVariant, issue_state, verify_state
from gatehouse.signon.strategies import ConsentExchangeStrategy
from gatehouse.test.base import IDP_URL
from gatehouse.test.django import SimpleTestCase

CALLBACK_PATH = "/auth/idp.callback"


class OrchestratorTestCase(SimpleTestCase):
    """Common helpers for CallbackOrchestrator tests."""

    def setUp(self) -> None:
        """Create the provider and a mock provisioning bridge."""
        super().setUp()
        self.provider = self.make_oidc_provider()
        self.bridge = mock.Mock(spec=ProvisioningBridge)
        self.bridge.provision.return_value = ProvisioningResult(user="ada")
        self.bridge.establish_session.return_value = HttpResponseRedirect(
            "http://testserver/"
        )

    def make_orchestrator(
        self, request: HttpRequest, **kwargs: Any
    ) -> CallbackOrchestrator:
        """Create an orchestrator using the mock bridge."""
        kwargs.setdefault("bridge", self.bridge)
        return CallbackOrchestrator(self.provider, request, **kwargs)

    def make_callback_request(
        self,
        params: dict[str, str] | None = None,
        cookie: str | None = None,
        **context_kwargs: Any,
    ) -> HttpRequest:
        """
        Build a callback request carrying a valid state.

        :param params: query parameters; ``state`` is added unless present
        :param cookie: state cookie; by default one is issued for a context
          built from context_kwargs
        """
        nonce, cookie_value = issue_state(
            self.make_state_context(**context_kwargs)
        )
        query = {"state": nonce, "code": "test-code"}
        if params is not None:
            query = {"state": nonce, **params}
        request = self.make_request(CALLBACK_PATH, data=query)
        request.COOKIES[state_cookie_name(self.provider)] = (
            cookie_value if cookie is None else cookie
        )
        return request

    def assertCookieDeleted(self, response: Any) -> None:
        """Check that the response deletes the state cookie."""
        cookie = response.cookies[state_cookie_name(self.provider)]
        self.assertEqual(cookie.value, "")
        self.assertEqual(cookie["max-age"], 0)


class StartTests(OrchestratorTestCase):
    """Test CallbackOrchestrator.start."""

    def test_start(self) -> None:
        """Redirect to the provider, setting the state cookie."""
        request = self.make_request("/auth/idp", data={"client": "desktop"})
        orchestrator = self.make_orchestrator(request)
        response = orchestrator.start()

        self.assertEqual(orchestrator.stage, Stage.REDIRECTED)
        self.assertEqual(orchestrator.history, [Stage.INIT, Stage.REDIRECTED])
        self.assertEqual(response.status_code, 302)
        url = urlsplit(response["Location"])
        self.assertEqual(f"{url.scheme}://{url.netloc}", IDP_URL)
        query = parse_qs(url.query)
        self.assertEqual(
            query["redirect_uri"], ["http://testserver/auth/idp.callback"]
        )

        cookie = response.cookies["signon_state_idp"]
        self.assertTrue(cookie["httponly"])
        self.assertEqual(cookie["samesite"], "Lax")
        self.assertEqual(cookie["max-age"], 600)
        context = verify_state(cookie.value, query["state"][0])
        self.assertEqual(context.origin_host, "testserver")
        self.assertEqual(context.client_variant, ClientVariant.DESKTOP)
        self.assertIsNone(context.pkce_verifier)

    def test_start_pkce(self) -> None:
        """With PKCE, the verifier is kept in the state cookie."""
        self.provider = self.make_oidc_provider(pkce=True)
        response = self.make_orchestrator(self.make_request()).start()
        query = parse_qs(urlsplit(response["Location"]).query)
        context = verify_state(
            response.cookies["signon_state_idp"].value, query["state"][0]
        )
        self.assertIsNotNone(context.pkce_verifier)
        self.assertIn("code_challenge", query)

    @responses.activate
    def test_start_failed(self) -> None:
        """Failing to build the authorization URL redirects with a notice."""
        self.provider = self.make_oidc_provider(
            strategy=ConsentExchangeStrategy(
                base_url="https://profiles.example.org", api_token="svc-token"
            )
        )
        responses.add(
            responses.POST,
            "https://profiles.example.org/api/services/consent/request",
            status=503,
        )
        orchestrator = self.make_orchestrator(self.make_request())
        with self.assertLogs("gatehouse.signon", level="ERROR"):
            response = orchestrator.start()
        self.assertRedirectsTo(
            response, "http://testserver/?notice=authentication-error"
        )
        self.assertEqual(orchestrator.history, [Stage.INIT, Stage.FAILED])
        self.assertNotIn("signon_state_idp", response.cookies)


class CallbackTests(OrchestratorTestCase):
    """Test CallbackOrchestrator.handle_callback."""

    @responses.activate
    def test_success(self) -> None:
        """Run every stage in order."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        request = self.make_callback_request(
            client_variant=ClientVariant.DESKTOP
        )
        orchestrator = self.make_orchestrator(request)

        with self.assertLogsContains(
            "idp: ada@example.com signed on as ada", level="INFO"
        ):
            response = orchestrator.handle_callback()

        self.assertEqual(
            orchestrator.history,
            [
                Stage.INIT,
                Stage.CALLBACK_RECEIVED,
                Stage.STATE_VERIFIED,
                Stage.TOKEN_EXCHANGED,
                Stage.CLAIMS_RESOLVED,
                Stage.PROVISIONED,
                Stage.SESSION_ESTABLISHED,
            ],
        )
        self.assertIs(response, self.bridge.establish_session.return_value)
        self.assertCookieDeleted(response)

        assert orchestrator.identity is not None
        self.bridge.provision.assert_called_once_with(
            orchestrator.identity,
            orchestrator.tokens,
            host="testserver",
            ip_address="127.0.0.1",
        )
        self.bridge.establish_session.assert_called_once_with(
            request,
            self.bridge.provision.return_value,
            ClientVariant.DESKTOP,
        )

    @responses.activate
    def test_post_callback(self) -> None:
        """Callback parameters can be sent in a POST body."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        nonce, cookie_value = issue_state(self.make_state_context())
        request = self.make_request(
            CALLBACK_PATH,
            method="post",
            data={"state": nonce, "code": "test-code"},
        )
        request.COOKIES["signon_state_idp"] = cookie_value
        orchestrator = self.make_orchestrator(request)
        orchestrator.handle_callback()
        self.assertEqual(orchestrator.stage, Stage.SESSION_ESTABLISHED)

    @responses.activate
    def test_state_mismatch(self) -> None:
        """A forged state fails before any outbound call."""
        request = self.make_callback_request(
            {"code": "test-code", "state": "forged", "client": "desktop"}
        )
        orchestrator = self.make_orchestrator(request)
        with self.assertLogsContains(
            "state parameter mismatch", level="WARNING"
        ):
            response = orchestrator.handle_callback()

        self.assertRedirectsTo(
            response, "gatehouse://testserver/?notice=state-mismatch"
        )
        self.assertEqual(
            orchestrator.history,
            [Stage.INIT, Stage.CALLBACK_RECEIVED, Stage.FAILED],
        )
        self.assertCookieDeleted(response)
        self.assertEqual(len(responses.calls), 0)
        self.bridge.provision.assert_not_called()

    def test_missing_cookie(self) -> None:
        """A callback without state cookie fails."""
        request = self.make_callback_request(cookie="")
        with self.assertLogsContains(
            "missing state or cookie", level="WARNING"
        ):
            response = self.make_orchestrator(request).handle_callback()
        self.assertNotice(response, "state-mismatch")

    @responses.activate
    def test_provider_error(self) -> None:
        """Errors returned by the provider fail the authentication."""
        request = self.make_callback_request(
            {"error": "access_denied", "error_description": "User said no"},
            origin_host="docs.example.org",
        )
        orchestrator = self.make_orchestrator(request)
        with self.assertLogsContains(
            "idp: provider returned an error: access_denied (User said no)",
            level="ERROR",
        ):
            response = orchestrator.handle_callback()
        self.assertRedirectsTo(
            response, "http://docs.example.org/?notice=authentication-error"
        )
        self.assertEqual(
            orchestrator.history,
            [
                Stage.INIT,
                Stage.CALLBACK_RECEIVED,
                Stage.STATE_VERIFIED,
                Stage.FAILED,
            ],
        )
        self.assertEqual(len(responses.calls), 0)

    def test_missing_code(self) -> None:
        """A callback without code fails the authentication."""
        request = self.make_callback_request({})
        with self.assertLogsContains("idp: callback has no code", level="ERROR"):
            response = self.make_orchestrator(request).handle_callback()
        self.assertNotice(response, "authentication-error")

    @responses.activate
    def test_exchange_failed(self) -> None:
        """A failed token exchange stops the flow."""
        self.mock_token_endpoint(
            self.provider, {"error": "invalid_grant"}, status=400
        )
        orchestrator = self.make_orchestrator(self.make_callback_request())
        with self.assertLogs("gatehouse.signon", level="ERROR"):
            response = orchestrator.handle_callback()
        self.assertNotice(response, "authentication-error")
        self.assertEqual(
            orchestrator.history[-2:], [Stage.STATE_VERIFIED, Stage.FAILED]
        )
        self.bridge.provision.assert_not_called()

    @responses.activate
    def test_malformed_user_info(self) -> None:
        """Identities without email stop the flow."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider, {"sub": "subject-1"})
        orchestrator = self.make_orchestrator(self.make_callback_request())
        with self.assertLogs("gatehouse.signon", level="ERROR"):
            response = orchestrator.handle_callback()
        self.assertNotice(response, "malformed-user-info")
        self.assertEqual(
            orchestrator.history[-2:], [Stage.TOKEN_EXCHANGED, Stage.FAILED]
        )
        self.bridge.provision.assert_not_called()

    @responses.activate
    def test_provisioning_error(self) -> None:
        """Provisioning errors redirect where the provisioner asks."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        self.bridge.provision.side_effect = ProvisioningError(
            "no seats left",
            id="team_full",
            redirect_path="/plans?tier=free",
            host="www.example.org",
        )
        request = self.make_callback_request(
            client_variant=ClientVariant.DESKTOP
        )
        orchestrator = self.make_orchestrator(request)
        response = orchestrator.handle_callback()
        self.assertRedirectsTo(
            response,
            "gatehouse://www.example.org/plans?tier=free&notice=team-full",
        )
        self.assertEqual(
            orchestrator.history[-2:], [Stage.CLAIMS_RESOLVED, Stage.FAILED]
        )
        self.bridge.establish_session.assert_not_called()
        self.assertCookieDeleted(response)

    @responses.activate
    def test_session_refused(self) -> None:
        """Errors establishing the session happen after provisioning."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        self.bridge.establish_session.side_effect = ProvisioningError(
            "ada is not allowed to log in", id="user_suspended"
        )
        orchestrator = self.make_orchestrator(self.make_callback_request())
        response = orchestrator.handle_callback()
        self.assertRedirectsTo(
            response, "http://testserver/?notice=user-suspended"
        )
        self.assertEqual(
            orchestrator.history[-2:], [Stage.PROVISIONED, Stage.FAILED]
        )

    @responses.activate
    def test_client_disconnected(self) -> None:
        """A client that went away stops the flow before provisioning."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        orchestrator = self.make_orchestrator(
            self.make_callback_request(), client_disconnected=lambda: True
        )
        with self.assertLogsContains(
            "idp: client disconnected, sign-on abandoned", level="INFO"
        ):
            response = orchestrator.handle_callback()
        self.assertEqual(response.status_code, 499)
        self.assertEqual(orchestrator.stage, Stage.FAILED)
        self.assertCookieDeleted(response)
        self.bridge.provision.assert_not_called()

    @responses.activate
    def test_unexpected_error(self) -> None:
        """Unexpected errors redirect with a generic notice."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        self.bridge.provision.side_effect = RuntimeError("database is down")
        orchestrator = self.make_orchestrator(self.make_callback_request())
        with self.assertLogsContains(
            "idp: error completing sign-on", level="ERROR"
        ):
            response = orchestrator.handle_callback()
        self.assertRedirectsTo(response, "/?notice=auth-error")
        self.assertEqual(orchestrator.stage, Stage.FAILED)
        self.assertCookieDeleted(response)

    @override_settings(DEBUG=True)
    @responses.activate
    def test_unexpected_error_debug(self) -> None:
        """With DEBUG, unexpected errors propagate."""
        self.mock_token_endpoint(self.provider)
        self.mock_userinfo_endpoint(self.provider)
        self.bridge.provision.side_effect = RuntimeError("database is down")
        orchestrator = self.make_orchestrator(self.make_callback_request())
        with (
            self.assertLogs("gatehouse.signon", level="ERROR"),
            self.assertRaisesRegex(RuntimeError, "database is down"),
        ):
            orchestrator.handle_callback()
        self.assertEqual(orchestrator.stage, Stage.FAILED)


class TransitionTests(OrchestratorTestCase):
    """Test stage transitions."""

    def test_invalid_transition(self) -> None:
        """Stages cannot be skipped."""
        orchestrator = self.make_orchestrator(self.make_request())
        with self.assertRaisesRegex(
            RuntimeError, "invalid sign-on transition"
        ):
            orchestrator.advance(Stage.PROVISIONED)
        self.assertEqual(orchestrator.history, [Stage.INIT])

    def test_failed_is_final(self) -> None:
        """Nothing follows FAILED."""
        orchestrator = self.make_orchestrator(self.make_request())
        orchestrator.advance(Stage.FAILED)
        with self.assertRaises(RuntimeError):
            orchestrator.advance(Stage.CALLBACK_RECEIVED)

    def test_default_bridge(self) -> None:
        """Without a bridge, one is created from settings."""
        orchestrator = CallbackOrchestrator(self.provider, self.make_request())
        self.assertIsInstance(orchestrator.bridge, ProvisioningBridge)
        self.assertIs(orchestrator.bridge, orchestrator.bridge)
