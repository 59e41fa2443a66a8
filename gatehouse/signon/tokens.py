# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Exchange authorization codes for tokens, and decode ID tokens."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl

import jwcrypto.common
import jwcrypto.jws
import jwcrypto.jwt
import requests
from django.utils.crypto import constant_time_compare
from oauthlib.oauth2 import MissingTokenError, OAuth2Error
from requests_oauthlib import OAuth2Session

from gatehouse.signon.errors import AuthExchangeFailed
from gatehouse.signon.providers import OIDCProvider
from gatehouse.signon.signon_utils import http_timeout, redact_secrets

log = logging.getLogger("gatehouse.signon")

#: Maximum amount of a non-JSON error body that is logged
MAX_LOGGED_BODY = 1000


@dataclass
class TokenSet:
    """Result of a successful code exchange."""

    access_token: str | None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    id_token_claims: dict[str, Any] | None = None
    #: Profile returned together with the grant by an enrichment service
    profile: dict[str, Any] | None = field(default=None, repr=False)

    def __repr__(self) -> str:
        """Do not show token values."""
        return (
            f"TokenSet(expires_in={self.expires_in!r}, scope={self.scope!r},"
            f" has_refresh_token={self.refresh_token is not None})"
        )

    @property
    def scopes(self) -> list[str]:
        """Return the granted scopes as a list."""
        if not self.scope:
            return []
        return self.scope.split()


def loggable_body(response: requests.Response) -> Any:
    """
    Return a representation of a response body that is safe to log.

    JSON and form-encoded bodies have their secrets redacted. Anything else
    is truncated.
    """
    try:
        return redact_secrets(response.json())
    except ValueError:
        pass
    if fields := parse_qsl(response.text):
        return redact_secrets(dict(fields))
    return response.text[:MAX_LOGGED_BODY]


def _parse_expires_in(value: Any) -> int | None:
    """Parse expires_in, which some providers send as a string."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_scope(value: Any) -> str | None:
    """Parse scope, which some providers send as a list."""
    if value is None:
        return None
    if isinstance(value, list | tuple):
        return " ".join(str(v) for v in value)
    return str(value)


def exchange_code(
    provider: OIDCProvider,
    code: str,
    redirect_uri: str,
    pkce_verifier: str | None = None,
) -> TokenSet:
    """
    Exchange an authorization code at the provider token endpoint.

    Codes are single use, so failures are not retried.

    :param provider: provider that issued the code
    :param code: authorization code from the callback
    :param redirect_uri: the redirect URI used in the authorization request
    :param pkce_verifier: PKCE verifier from the state, if PKCE was used
    :raises AuthExchangeFailed: if the exchange did not produce an access
      token
    """
    oauth = OAuth2Session(provider.client_id, redirect_uri=redirect_uri)
    received: requests.Response | None = None

    def check_status(response: requests.Response) -> requests.Response:
        nonlocal received
        received = response
        if not response.ok:
            log.error(
                "%s: token exchange failed: %d (%s): %r",
                provider.name,
                response.status_code,
                response.reason,
                loggable_body(response),
            )
            raise AuthExchangeFailed(f"Token exchange with {provider} failed")
        return response

    oauth.register_compliance_hook("access_token_response", check_status)

    kwargs: dict[str, str] = {}
    if pkce_verifier is not None:
        kwargs["code_verifier"] = pkce_verifier

    try:
        # client_id and client_secret are sent as HTTP Basic credentials
        payload = oauth.fetch_token(
            provider.url_token,
            code=code,
            client_secret=provider.client_secret,
            timeout=http_timeout(),
            **kwargs,
        )
    except requests.RequestException as exc:
        log.error(
            "%s: token exchange with %s failed: %s",
            provider.name,
            provider.url_token,
            exc,
        )
        raise AuthExchangeFailed(f"Token exchange with {provider} failed")
    except MissingTokenError:
        payload = {}
    except (OAuth2Error, ValueError) as exc:
        log.error(
            "%s: token exchange failed: %s: %r",
            provider.name,
            exc,
            loggable_body(received) if received is not None else None,
        )
        raise AuthExchangeFailed(f"Token exchange with {provider} failed")

    if not payload.get("access_token"):
        log.error(
            "%s: token response has no access_token: %r",
            provider.name,
            loggable_body(received) if received is not None else None,
        )
        raise AuthExchangeFailed(f"Token exchange with {provider} failed")

    id_token_claims: dict[str, Any] | None = None
    if id_token := payload.get("id_token"):
        id_token_claims = decode_id_token(provider, id_token)

    return TokenSet(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token"),
        expires_in=_parse_expires_in(payload.get("expires_in")),
        scope=_parse_scope(payload.get("scope")),
        id_token_claims=id_token_claims,
    )


def _audience_matches(audience: Any, client_id: str) -> bool:
    """Check the ``aud`` claim, which can be a string or a list."""
    if isinstance(audience, str):
        return constant_time_compare(audience, client_id)
    if isinstance(audience, list):
        return any(
            isinstance(a, str) and constant_time_compare(a, client_id)
            for a in audience
        )
    return False


def decode_id_token(provider: OIDCProvider, id_token: str) -> dict[str, Any]:
    """
    Decode the claims of an ID token.

    If the provider has a JWKS URL, the token signature, issuer and audience
    are validated. Otherwise the payload is decoded as is: the token was
    received directly from the token endpoint.

    :raises AuthExchangeFailed: if the token cannot be decoded or validated
    """
    if provider.url_jwks:
        return _decode_verified(provider, id_token)

    try:
        token = jwcrypto.jws.JWS()
        token.deserialize(id_token)
        claims = json.loads(token.objects["payload"])
    except (jwcrypto.common.JWException, KeyError, ValueError) as exc:
        log.error("%s: cannot decode ID token: %s", provider.name, exc)
        raise AuthExchangeFailed(f"Invalid ID token from {provider}")

    if not isinstance(claims, dict):
        log.error("%s: ID token payload is not an object", provider.name)
        raise AuthExchangeFailed(f"Invalid ID token from {provider}")
    return claims


def _decode_verified(provider: OIDCProvider, id_token: str) -> dict[str, Any]:
    """Decode an ID token validating it against the provider keys."""
    # See https://openid.net/specs/openid-connect-core-1_0.html#IDTokenValidation  # noqa: E501
    try:
        keyset = provider.keyset
    except (requests.RequestException, jwcrypto.common.JWException) as exc:
        log.error("%s: cannot load signing keys: %s", provider.name, exc)
        raise AuthExchangeFailed(f"Cannot load signing keys for {provider}")

    try:
        # Note: the 'exp' claim is checked by default by JWT
        tok = jwcrypto.jwt.JWT(key=keyset, jwt=id_token)
        claims = json.loads(tok.claims)
    except (jwcrypto.common.JWException, ValueError) as exc:
        log.error("%s: ID token validation failed: %s", provider.name, exc)
        raise AuthExchangeFailed(f"Invalid ID token from {provider}")

    if provider.url_issuer is not None and not constant_time_compare(
        str(claims.get("iss", "")), provider.url_issuer
    ):
        log.error(
            "%s: issuer mismatch: remote: %r, expected: %r",
            provider.name,
            claims.get("iss"),
            provider.url_issuer,
        )
        raise AuthExchangeFailed(f"Invalid ID token from {provider}")

    if not _audience_matches(claims.get("aud"), provider.client_id):
        log.error(
            "%s: audience mismatch: remote: %r, expected: %r",
            provider.name,
            claims.get("aud"),
            provider.client_id,
        )
        raise AuthExchangeFailed(f"Invalid ID token from {provider}")

    return claims
