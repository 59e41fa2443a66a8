# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Resolve the identity of a remote user from the claims of several sources.

Sources are, in order of precedence:

1. the enrichment profile, if the provider strategy provides one
2. the response of the provider userinfo endpoint
3. the claims of the ID token

The email can come from any source; once an enrichment profile is found, its
name, avatar and language take precedence over the provider claims.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import requests
from rest_framework import status

from gatehouse.signon.errors import AuthExchangeFailed, ValidationFailed
from gatehouse.signon.providers import OIDCProvider
from gatehouse.signon.signon_utils import (
    http_timeout,
    is_data_url,
    lookup_claim,
    normalize_language,
    parse_email,
    redact_secrets,
)
from gatehouse.signon.tokens import TokenSet, loggable_body

log = logging.getLogger("gatehouse.signon")

#: Provider claims tried, in order, after the configured username claim
NAME_FALLBACK_CLAIMS = ("name", "preferred_username", "nickname", "username")
#: Enrichment profile fields holding the user name
PROFILE_NAME_FIELDS = ("nickname", "name")
#: Provider claims holding the avatar URL
AVATAR_CLAIMS = ("picture", "avatar_url")
#: Provider claims holding the subject identifier
SUBJECT_CLAIMS = ("sub", "id")
#: Enrichment profile fields holding the subject identifier
PROFILE_SUBJECT_FIELDS = ("id", "logto_id")


@dataclass(frozen=True)
class ResolvedIdentity:
    """Identity of a remote user, validated and ready for provisioning."""

    email: str
    display_name: str
    external_subject_id: str
    avatar_url: str | None = None
    language: str | None = None
    #: Information for logging only
    debug_context: dict[str, Any] = field(
        default_factory=dict, compare=False, repr=False
    )

    @property
    def domain(self) -> str:
        """Return the lower-cased domain of the email address."""
        return parse_email(self.email)[1]


def fetch_userinfo(provider: OIDCProvider, access_token: str) -> dict[str, Any]:
    """
    Fetch the claims from the provider userinfo endpoint.

    :raises AuthExchangeFailed: if the endpoint cannot be queried
    """
    assert provider.url_userinfo is not None
    try:
        response = requests.get(
            provider.url_userinfo,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=http_timeout(),
        )
    except requests.RequestException as exc:
        log.error(
            "%s: cannot fetch userinfo from %s: %s",
            provider.name,
            provider.url_userinfo,
            exc,
        )
        raise AuthExchangeFailed(f"Cannot fetch user info from {provider}")

    match response.status_code:
        case status.HTTP_200_OK:
            try:
                claims = response.json()
            except ValueError:
                claims = None
            if isinstance(claims, dict):
                return claims
            log.error(
                "%s: userinfo response is not a JSON object: %r",
                provider.name,
                loggable_body(response),
            )
        case _:
            log.error(
                "%s: cannot fetch userinfo: %d (%s): %r",
                provider.name,
                response.status_code,
                response.reason,
                loggable_body(response),
            )
    raise AuthExchangeFailed(f"Cannot fetch user info from {provider}")


def _first_value(
    sources: Sequence[Mapping[str, Any]], paths: Sequence[str]
) -> Any:
    """
    Return the first non-empty value found looking up paths in sources.

    Paths are tried in order, and each path is looked up in all sources
    before moving to the next one.
    """
    for path in paths:
        for source in sources:
            value = lookup_claim(source, path)
            if value is not None and value != "":
                return value
    return None


class ClaimsResolver:
    """Resolve a ResolvedIdentity for a provider."""

    def __init__(self, provider: OIDCProvider) -> None:
        """Create a resolver for the given provider."""
        self.provider = provider
        self.strategy = provider.strategy

    @property
    def name_claims(self) -> list[str]:
        """Return the provider claims to try for the user name."""
        claims = [self.provider.username_claim]
        for claim in NAME_FALLBACK_CLAIMS:
            if claim not in claims:
                claims.append(claim)
        return claims

    def _fail(
        self, message: str, debug_context: dict[str, Any]
    ) -> ValidationFailed:
        """Log a validation failure and return the exception to raise."""
        log.error(
            "%s: %s: %r",
            self.provider.name,
            message,
            redact_secrets(debug_context),
        )
        return ValidationFailed(message)

    def resolve(self, tokens: TokenSet) -> ResolvedIdentity:
        """
        Resolve the identity of the user that authenticated.

        :raises AuthExchangeFailed: if a claim source cannot be queried
        :raises ValidationFailed: if required information is missing or
          invalid
        """
        profile = tokens.profile
        userinfo: dict[str, Any] = {}
        if (
            self.provider.url_userinfo
            and tokens.access_token
            and not self.strategy.replaces_authorization
        ):
            userinfo = fetch_userinfo(self.provider, tokens.access_token)
        id_claims = tokens.id_token_claims or {}
        provider_sources = (userinfo, id_claims)

        debug_context: dict[str, Any] = {
            "provider": self.provider.name,
            "userinfo": userinfo,
            "id_token_claims": id_claims,
            "profile": profile,
            "name_claims": self.name_claims,
        }

        email = _first_value([profile or {}, *provider_sources], ["email"])
        if not email or not isinstance(email, str):
            raise self._fail("No email address was returned", debug_context)

        if profile is None and self.strategy.enriches:
            profile = self.strategy.lookup_profile(self.provider, email)
            debug_context["profile"] = profile

        if not parse_email(email)[1]:
            raise self._fail(
                f"Email address {email!r} has no domain", debug_context
            )

        if profile is not None:
            display_name = _first_value([profile], PROFILE_NAME_FIELDS)
            avatar_url = profile.get("avatar_url")
            language = profile.get("preferred_language")
        else:
            display_name = None
            avatar_url = None
            language = None

        if not display_name:
            display_name = _first_value(provider_sources, self.name_claims)
        if not display_name:
            raise self._fail(f"No name was returned for {email}", debug_context)

        if not avatar_url:
            avatar_url = _first_value(provider_sources, AVATAR_CLAIMS)
        if avatar_url and is_data_url(str(avatar_url)):
            raise self._fail(f"Avatar for {email} is invalid", debug_context)

        if not language:
            language = _first_value(provider_sources, ["locale"])
        normalized_language = normalize_language(language)
        if language and normalized_language is None:
            log.info(
                "%s: ignoring unsupported language %r for %s",
                self.provider.name,
                language,
                email,
            )

        subject = _first_value(provider_sources, SUBJECT_CLAIMS)
        if subject is None and profile is not None:
            subject = _first_value([profile], PROFILE_SUBJECT_FIELDS)
        if subject is None:
            raise self._fail(
                f"No subject identifier was returned for {email}",
                debug_context,
            )

        return ResolvedIdentity(
            email=email,
            display_name=str(display_name),
            external_subject_id=str(subject),
            avatar_url=str(avatar_url) if avatar_url else None,
            language=normalized_language,
            debug_context=debug_context,
        )
