# Copyright 2020-2023 Enrico Zini <enrico@debian.org>
# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Support for external signon providers.

This is configured by the SIGNON_PROVIDERS variable in django settings.

SIGNON_PROVIDERS is expected to be a sequence of `Provider` instances, one for
each supported signon provider.

Example::

    # Plain OpenID Connect provider, with PKCE
    SIGNON_PROVIDERS = [
        providers.OIDCProvider(
            name="oidc",
            label="OpenID Connect",
            client_id="123client_id",
            client_secret="123client_secret",
            url_authorize="https://id.example.org/authorize",
            url_token="https://id.example.org/token",
            url_userinfo="https://id.example.org/userinfo",
            scope=("openid", "profile", "email"),
            pkce=True,
        ),
    ]

The ``strategy`` argument selects how the identity of the remote user is
resolved: see :py:mod:`gatehouse.signon.strategies`. When it is not set,
claims come from the userinfo endpoint and the ID token only.
"""

import functools
import json
from collections.abc import Collection
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    import jwcrypto.jwk

    from gatehouse.signon.strategies import IdentityStrategy

# Note: this module is supposed to be imported from settings.py
#
# Its module-level import list for the case of defining providers should be
# kept accordingly minimal


def get(name: str) -> "Provider":
    """
    Look up a provider by name.

    :param name: name of the provider to look up, matching Provider.name
    :raises ImproperlyConfigured: if no provider with that name has been
                                  defined in settings
    :return: the Provider instance
    """
    from django.conf import settings
    from django.core.exceptions import ImproperlyConfigured

    providers = getattr(settings, "SIGNON_PROVIDERS", None)
    if providers is None:
        raise ImproperlyConfigured(
            f"signon provider {name} requested,"
            " but SIGNON_PROVIDERS is not defined in settings"
        )

    # Lookup provider by name
    for p in providers:
        if p.name == name:
            if not isinstance(p, Provider):
                raise ImproperlyConfigured(
                    f"signon provider {name} requested,"
                    f" but its entry in SIGNON_PROVIDERS setting is not a"
                    f" Provider"
                )
            return p

    raise ImproperlyConfigured(
        f"signon provider {name} requested,"
        " but not found in SIGNON_PROVIDERS setting"
    )


class Provider:
    """Information about a signon identity provider."""

    #: Identifier to reference the provider in code and configuration
    name: str
    #: User-visible description
    label: str
    #: Optional user-visible icon
    icon: str | None
    #: Freeform options used to configure behaviour of collaborators
    options: dict[str, Any]

    def __init__(
        self,
        name: str,
        label: str,
        *,
        icon: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        """
        Define an external authentication provider.

        Provider implementation subclasses can definer further keyword
        arguments.
        """
        self.name = name
        self.label = label
        self.icon = icon
        self.options: dict[str, Any] = options or {}

    def __str__(self) -> str:
        """Return the provider name."""
        return self.name


class OIDCProvider(Provider):
    """OpenID Connect identity provider."""

    def __init__(
        self,
        *args: Any,
        client_id: str,
        client_secret: str,
        url_authorize: str,
        url_token: str,
        url_userinfo: str | None = None,
        url_issuer: str | None = None,
        url_jwks: str | None = None,
        scope: str | Collection[str] = ("openid", "profile", "email"),
        username_claim: str = "preferred_username",
        pkce: bool = False,
        strategy: "IdentityStrategy | None" = None,
        **kwargs: Any,
    ) -> None:
        """
        Define an OpenID Connect provider.

        :param client_id: client identifier configured in the authentication
            server
        :param client_secret: client_secret provided by the authentication
            server
        :param url_authorize: OIDC authorization endpoint
        :param url_token: OIDC token endpoint
        :param url_userinfo: OIDC userinfo endpoint; if missing, claims are
            only taken from the ID token
        :param url_issuer: URL identifying the authentication server, checked
            against the ``iss`` claim of signed ID tokens
        :param url_jwks: OIDC jwks_uri to retrieve the authentication server
            signing keys. If set, ID token signatures are verified
        :param scope: scopes to request. ``openid`` is always requested
        :param username_claim: dotted path of the claim holding the user name
        :param pkce: use a PKCE challenge in the authorization request
        :param strategy: identity resolution strategy

        See https://openid.net/specs/openid-connect-core-1_0.html for details
        """
        super().__init__(*args, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.url_authorize = url_authorize
        self.url_token = url_token
        self.url_userinfo = url_userinfo
        self.url_issuer = url_issuer
        self.url_jwks = url_jwks
        self.scope: list[str]
        if isinstance(scope, str):
            self.scope = scope.split()
        else:
            self.scope = list(scope)
        self.username_claim = username_claim
        self.pkce = pkce
        self._strategy = strategy

    @property
    def strategy(self) -> "IdentityStrategy":
        """Return the identity resolution strategy for this provider."""
        if self._strategy is None:
            from gatehouse.signon.strategies import UserInfoStrategy

            self._strategy = UserInfoStrategy()
        return self._strategy

    def resolve_endpoints(self) -> None:
        """Make sure that the endpoint URLs are known."""

    @functools.cached_property
    def keyset(self) -> "jwcrypto.jwk.JWKSet":
        """Load the provider signing keys."""
        # This caches the server keys forever in process memory: key rotation
        # on the provider side requires a restart
        import jwcrypto.jwk
        import requests

        from gatehouse.signon.signon_utils import http_timeout

        assert self.url_jwks is not None
        key_response = requests.get(self.url_jwks, timeout=http_timeout())
        key_response.raise_for_status()
        return jwcrypto.jwk.JWKSet.from_json(key_response.text)


class GitlabProvider(OIDCProvider):
    """Gitlab OIDC identity provider."""

    def __init__(self, *args: Any, url: str, **kwargs: Any) -> None:
        """
        Define a GitLab-based OIDC Connect provider.

        :param url: URL to the root of the GitLab server. It will be used to
            automatically generate all ``url_*`` arguments for OIDCProvider
        """
        kwargs.setdefault("scope", ("openid", "profile", "email"))
        kwargs["url_issuer"] = url
        kwargs["url_authorize"] = f"{url}/oauth/authorize"
        kwargs["url_token"] = f"{url}/oauth/token"
        kwargs["url_userinfo"] = f"{url}/oauth/userinfo"
        kwargs["url_jwks"] = f"{url}/oauth/discovery/keys"
        super().__init__(*args, **kwargs)


def _discovered_endpoint(attr: str, key: str) -> property:
    """
    Build the property for an endpoint of a DiscoveryOIDCProvider.

    A configured value wins; otherwise it is read from the discovery
    document, loading it on first access.
    """

    def fget(self: "DiscoveryOIDCProvider") -> str | None:
        return self._configured.get(attr) or self.discovery.get(key)

    def fset(self: "DiscoveryOIDCProvider", value: str | None) -> None:
        self._configured[attr] = value

    return property(fget, fset)


class DiscoveryOIDCProvider(OIDCProvider):
    """
    OIDC identity provider configured via its discovery document.

    Endpoints are read from ``{issuer}/.well-known/openid-configuration`` the
    first time they are needed.
    """

    url_authorize = _discovered_endpoint(
        "url_authorize", "authorization_endpoint"
    )
    url_token = _discovered_endpoint("url_token", "token_endpoint")
    url_userinfo = _discovered_endpoint("url_userinfo", "userinfo_endpoint")
    url_issuer = _discovered_endpoint("url_issuer", "issuer")
    url_jwks = _discovered_endpoint("url_jwks", "jwks_uri")

    def __init__(self, *args: Any, issuer: str, **kwargs: Any) -> None:
        """
        Define a provider using OpenID Connect discovery.

        :param issuer: URL of the issuer, without the ``.well-known`` suffix
        """
        self.issuer = issuer.rstrip("/")
        self._configured: dict[str, str | None] = {}
        kwargs.setdefault("url_authorize", None)
        kwargs.setdefault("url_token", None)
        super().__init__(*args, **kwargs)

    @property
    def url_discovery(self) -> str:
        """Return the URL of the discovery document."""
        return f"{self.issuer}/.well-known/openid-configuration"

    @property
    def discovered(self) -> bool:
        """Check if the discovery document has been loaded."""
        return "discovery" in self.__dict__

    @functools.cached_property
    def discovery(self) -> dict[str, Any]:
        """
        Load the discovery document.

        Failures are not cached: the next access tries again.

        :raises AuthExchangeFailed: if the document cannot be loaded or lacks
          the authorization or token endpoints
        """
        import logging

        import requests

        from gatehouse.signon.errors import AuthExchangeFailed
        from gatehouse.signon.signon_utils import http_timeout

        log = logging.getLogger("gatehouse.signon")

        try:
            response = requests.get(self.url_discovery, timeout=http_timeout())
            response.raise_for_status()
            document = response.json()
        except (requests.RequestException, json.JSONDecodeError) as exc:
            log.error(
                "%s: cannot load discovery document %s: %s",
                self.name,
                self.url_discovery,
                exc,
            )
            raise AuthExchangeFailed(
                f"Cannot load discovery document for {self.name}"
            )

        if not isinstance(document, dict):
            log.error(
                "%s: discovery document %s is not an object",
                self.name,
                self.url_discovery,
            )
            raise AuthExchangeFailed(
                f"Cannot load discovery document for {self.name}"
            )

        for key in ("authorization_endpoint", "token_endpoint"):
            if not document.get(key):
                log.error("%s: discovery document lacks %s", self.name, key)
                raise AuthExchangeFailed(
                    f"Incomplete discovery document for {self.name}"
                )
        return document

    def resolve_endpoints(self) -> None:
        """Load the discovery document, if not done already."""
        self.discovery  # noqa: B018
