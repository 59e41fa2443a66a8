# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Build authorization requests to external OIDC providers."""

import base64
import hashlib
import secrets
from collections.abc import Iterable
from typing import Any

from requests_oauthlib import OAuth2Session

from gatehouse.signon.providers import OIDCProvider
from gatehouse.signon.state import StateContext


def normalize_scopes(scopes: Iterable[str]) -> list[str]:
    """Return scopes with ``openid`` first and no duplicates."""
    result = ["openid"]
    for scope in scopes:
        if scope and scope not in result:
            result.append(scope)
    return result


def make_pkce_verifier() -> str:
    """Generate a PKCE code verifier (RFC 7636, 43 characters)."""
    return secrets.token_urlsafe(32)


def pkce_challenge(verifier: str) -> str:
    """Derive the S256 PKCE code challenge for a verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorization_url(
    provider: OIDCProvider, redirect_uri: str, context: StateContext
) -> str:
    """
    Return the URL to redirect the user to for authorization.

    :param provider: provider to authenticate with
    :param redirect_uri: absolute URL of the callback view
    :param context: state of this authorization round trip. If it contains a
      PKCE verifier, the corresponding challenge is added to the request
    """
    oauth = OAuth2Session(
        provider.client_id,
        scope=normalize_scopes(provider.scope),
        redirect_uri=redirect_uri,
    )
    extra: dict[str, Any] = {}
    if context.pkce_verifier is not None:
        extra["code_challenge"] = pkce_challenge(context.pkce_verifier)
        extra["code_challenge_method"] = "S256"

    url, _ = oauth.authorization_url(
        provider.url_authorize, state=context.nonce, **extra
    )
    assert isinstance(url, str)
    return url
