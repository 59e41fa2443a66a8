# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Signon configuration checks using Django checks framework."""

from collections.abc import Sequence
from typing import Any

from django.apps.config import AppConfig
from django.conf import settings
from django.core.checks import Error, register

from gatehouse.signon.providers import (
    DiscoveryOIDCProvider,
    OIDCProvider,
    Provider,
)
from gatehouse.signon.strategies import EnrichmentStrategy


def _check_oidc_provider(provider: OIDCProvider) -> list[Error]:
    errors = []
    strategy = provider.strategy
    obj = f"SIGNON_PROVIDERS[{provider.name}]"

    if not provider.client_id:
        errors.append(
            Error(f"{provider.name}: client_id is not set", obj=obj)
        )
    if not provider.client_secret and not strategy.replaces_authorization:
        errors.append(
            Error(f"{provider.name}: client_secret is not set", obj=obj)
        )

    if isinstance(provider, DiscoveryOIDCProvider):
        if not provider.issuer:
            errors.append(
                Error(f"{provider.name}: issuer is not set", obj=obj)
            )
    elif not strategy.replaces_authorization:
        for attr in ("url_authorize", "url_token"):
            if not getattr(provider, attr):
                errors.append(
                    Error(f"{provider.name}: {attr} is not set", obj=obj)
                )

    if isinstance(strategy, EnrichmentStrategy):
        if not strategy.base_url:
            errors.append(
                Error(
                    f"{provider.name}: profile service base_url is not set",
                    obj=obj,
                )
            )
        if not strategy.api_token:
            errors.append(
                Error(
                    f"{provider.name}: profile service api_token is not set",
                    obj=obj,
                )
            )

    return errors


@register()
def signon_providers_check(
    app_configs: Sequence[AppConfig] | None, **kwargs: Any  # noqa: U100
) -> list[Error]:
    """Check that SIGNON_PROVIDERS is usable."""
    errors: list[Error] = []
    seen: set[str] = set()

    for provider in getattr(settings, "SIGNON_PROVIDERS", ()):
        if not isinstance(provider, Provider):
            errors.append(
                Error(f"SIGNON_PROVIDERS entry {provider!r} is not a Provider")
            )
            continue

        if provider.name in seen:
            errors.append(
                Error(
                    f"SIGNON_PROVIDERS contains {provider.name!r}"
                    " more than once"
                )
            )
        seen.add(provider.name)

        if isinstance(provider, OIDCProvider):
            errors += _check_oidc_provider(provider)

    return errors


@register()
def secret_key_not_default_check(
    app_configs: Sequence[AppConfig] | None, **kwargs: Any  # noqa: U100
) -> list[Error]:
    """Check SECRET_KEY is not a default if DEBUG=False (unless testing)."""
    if getattr(settings, "TEST_MODE", False):
        # Tests run with DEBUG=False
        return []

    if not settings.DEBUG and settings.SECRET_KEY.startswith("default:"):
        return [
            Error(
                "Default SECRET_KEY cannot be used in DEBUG=False: it signs"
                " the sign-on state cookies",
                hint="Generate a secret key using the command: "
                "$ python3 -c 'from django.core.management.utils import "
                "get_random_secret_key; print(get_random_secret_key())'",
            )
        ]

    return []
