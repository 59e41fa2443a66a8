# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Identity resolution strategies.

A strategy decides where the identity of a remote user comes from. It is set
per provider with the ``strategy`` argument of
:py:class:`gatehouse.signon.providers.OIDCProvider`::

    SIGNON_PROVIDERS = [
        providers.OIDCProvider(
            ...,
            strategy=strategies.EmailLookupStrategy(
                base_url="https://passport.example.org",
                api_token="service-token",
            ),
        ),
    ]

* :py:class:`UserInfoStrategy` (the default) uses the OIDC userinfo endpoint
  and the ID token.
* :py:class:`EmailLookupStrategy` also looks up the user by email in an
  external profile service, whose profile takes precedence.
* :py:class:`ConsentExchangeStrategy` replaces the provider authorization
  with the consent flow of the external profile service.
"""

import logging
from collections.abc import Collection
from typing import Any

import requests
from rest_framework import status

from gatehouse.signon.authorization import build_authorization_url
from gatehouse.signon.errors import AuthExchangeFailed, ConfigurationError
from gatehouse.signon.providers import OIDCProvider
from gatehouse.signon.signon_utils import http_timeout
from gatehouse.signon.state import StateContext
from gatehouse.signon.tokens import TokenSet, exchange_code, loggable_body

log = logging.getLogger("gatehouse.signon")

#: Profile fields that can be requested through the consent flow
CONSENT_ALLOWED_FIELDS = (
    "email",
    "nickname",
    "avatar_url",
    "preferred_language",
)

#: Profile fields that are always requested through the consent flow
CONSENT_REQUIRED_FIELDS = ("email", "nickname", "avatar_url")


def enrichment_api_base(base_url: str) -> str:
    """Normalize the base URL of the profile service API to end in /api."""
    base = base_url.rstrip("/")
    if base.lower().endswith("/api"):
        return base
    return f"{base}/api"


class IdentityStrategy:
    """
    Default identity resolution: userinfo endpoint and ID token.

    Subclasses can replace the authorization and exchange steps, and provide
    an enrichment profile.
    """

    #: True if the strategy does not use the provider OIDC endpoints
    replaces_authorization: bool = False
    #: True if the strategy provides an enrichment profile
    enriches: bool = False

    def authorization_url(
        self,
        provider: OIDCProvider,
        redirect_uri: str,
        context: StateContext,
    ) -> str:
        """Return the URL where the user is sent to authenticate."""
        return build_authorization_url(provider, redirect_uri, context)

    def exchange(
        self,
        provider: OIDCProvider,
        code: str,
        redirect_uri: str,
        context: StateContext,
    ) -> TokenSet:
        """Exchange the code received by the callback."""
        return exchange_code(
            provider, code, redirect_uri, pkce_verifier=context.pkce_verifier
        )

    def lookup_profile(
        self, provider: OIDCProvider, email: str  # noqa: U100
    ) -> dict[str, Any] | None:
        """Look up an enrichment profile for a user, by email."""
        return None


class UserInfoStrategy(IdentityStrategy):
    """Resolve identities from the userinfo endpoint and the ID token."""


class EnrichmentStrategy(IdentityStrategy):
    """Base for strategies using an external profile service."""

    enriches = True

    def __init__(self, *, base_url: str, api_token: str) -> None:
        """
        Configure access to the profile service.

        :param base_url: base URL of the service; ``/api`` is appended if
          missing
        :param api_token: service token sent as ``X-API-Token``
        """
        self.base_url = base_url
        self.api_token = api_token

    @property
    def api_base(self) -> str:
        """Return the normalized API base URL."""
        return enrichment_api_base(self.base_url)

    @property
    def headers(self) -> dict[str, str]:
        """Return the headers for profile service requests."""
        return {
            "X-API-Token": self.api_token,
            "Accept": "application/json",
        }

    def _call(
        self, method: str, url: str, description: str, **kwargs: Any
    ) -> requests.Response:
        """Perform a request to the profile service, with a timeout."""
        if not self.base_url or not self.api_token:
            raise ConfigurationError(
                "profile service requires both base_url and api_token"
            )
        try:
            return requests.request(
                method,
                url,
                headers=self.headers,
                timeout=http_timeout(),
                **kwargs,
            )
        except requests.RequestException as exc:
            log.error("%s: %s failed: %s", url, description, exc)
            raise AuthExchangeFailed(f"{description} failed")

    def _json(
        self, response: requests.Response, description: str
    ) -> dict[str, Any]:
        """Decode a successful JSON response from the profile service."""
        if not response.ok:
            log.error(
                "%s: %s failed: %d (%s): %r",
                response.url,
                description,
                response.status_code,
                response.reason,
                loggable_body(response),
            )
            raise AuthExchangeFailed(f"{description} failed")
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            log.error(
                "%s: %s returned an invalid response: %r",
                response.url,
                description,
                loggable_body(response),
            )
            raise AuthExchangeFailed(f"{description} failed")
        return data


class EmailLookupStrategy(EnrichmentStrategy):
    """Enrich identities with a profile looked up by email."""

    def lookup_profile(
        self, provider: OIDCProvider, email: str
    ) -> dict[str, Any] | None:
        """
        Look up a profile by email.

        :return: the profile, or None if the service does not know the user
        :raises AuthExchangeFailed: if the service cannot be queried
        """
        url = f"{self.api_base}/services/users/lookup"
        response = self._call(
            "GET", url, "Profile lookup", params={"email": email}
        )
        if response.status_code == status.HTTP_404_NOT_FOUND:
            log.info("%s: %s is not known to the profile service", url, email)
            return None

        data = self._json(response, "Profile lookup")
        profile = data.get("user")
        if not isinstance(profile, dict):
            log.warning(
                "%s: profile lookup for %s returned no user", url, email
            )
            return None
        return profile


class ConsentExchangeStrategy(EnrichmentStrategy):
    """
    Authenticate through the consent flow of the profile service.

    The user is sent to the service consent page instead of the provider
    authorization endpoint, and the code received by the callback is a
    consent code, exchanged with the service for the user profile.
    """

    replaces_authorization = True

    def __init__(
        self,
        *,
        base_url: str,
        api_token: str,
        requested_fields: Collection[str] = CONSENT_ALLOWED_FIELDS,
    ) -> None:
        """
        Configure the consent flow.

        :param requested_fields: profile fields to ask consent for. Fields
          not in CONSENT_ALLOWED_FIELDS are ignored, CONSENT_REQUIRED_FIELDS
          are always requested
        """
        super().__init__(base_url=base_url, api_token=api_token)
        self.requested_fields = tuple(requested_fields)

    @property
    def fields(self) -> list[str]:
        """Return the list of fields to request consent for."""
        fields = [f for f in self.requested_fields if f in CONSENT_ALLOWED_FIELDS]
        for required in CONSENT_REQUIRED_FIELDS:
            if required not in fields:
                fields.append(required)
        return fields

    def authorization_url(
        self,
        provider: OIDCProvider,
        redirect_uri: str,
        context: StateContext,
    ) -> str:
        """Start a consent request and return the consent page URL."""
        url = f"{self.api_base}/services/consent/request"
        response = self._call(
            "POST",
            url,
            "Consent request",
            json={
                "client_id": provider.client_id,
                "redirect_uri": redirect_uri,
                "fields": self.fields,
                "state": context.nonce,
            },
        )
        data = self._json(response, "Consent request")
        consent_url = data.get("consent_url")
        if not data.get("request_id") or not consent_url:
            log.error(
                "%s: consent request did not return request_id/consent_url",
                url,
            )
            raise AuthExchangeFailed("Consent request failed")
        return str(consent_url)

    def exchange(
        self,
        provider: OIDCProvider,
        code: str,
        redirect_uri: str,  # noqa: U100
        context: StateContext,  # noqa: U100
    ) -> TokenSet:
        """
        Exchange a consent code for the user profile.

        The consent code is not an access token and is never used as one:
        the resulting TokenSet only has an access token if the service
        returned one.
        """
        url = f"{self.api_base}/services/consent/token"
        response = self._call(
            "POST",
            url,
            "Consent token exchange",
            json={"code": code, "client_id": provider.client_id},
        )
        data = self._json(response, "Consent token exchange")
        profile = data.get("user")
        if not isinstance(profile, dict):
            log.error("%s: consent token did not return user data", url)
            raise AuthExchangeFailed("Consent token exchange failed")
        return TokenSet(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            profile=profile,
        )
