# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Hand resolved identities over to account provisioning.

Provisioning itself is done by collaborators configured in Django settings:

* ``SIGNON_PROVIDER_DIRECTORY``: a :py:class:`ProviderDirectory`, used to
  find the team served by a host and the provider registrations of a team
* ``SIGNON_ACCOUNT_PROVISIONER``: an :py:class:`AccountProvisioner`, which
  creates or matches users and teams
* ``SIGNON_SESSION_ESTABLISHER``: a :py:class:`SessionEstablisher`, which
  logs the provisioned user in

Each setting is the dotted path of a class, instantiated without arguments.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from django.conf import settings
from django.http import HttpRequest, HttpResponseBase
from django.utils.module_loading import import_string

from gatehouse.signon.claims import ResolvedIdentity
from gatehouse.signon.errors import ConfigurationError, ProvisioningError
from gatehouse.signon.providers import OIDCProvider
from gatehouse.signon.signon_utils import domain_identifier, slugify_domain
from gatehouse.signon.state import ClientVariant
from gatehouse.signon.tokens import TokenSet

log = logging.getLogger("gatehouse.signon")

DEFAULT_PROVIDER_DIRECTORY = (
    "gatehouse.signon.directory.StaticProviderDirectory"
)
DEFAULT_ACCOUNT_PROVISIONER = (
    "gatehouse.signon.accounts.DjangoAccountProvisioner"
)
DEFAULT_SESSION_ESTABLISHER = (
    "gatehouse.signon.session.DjangoSessionEstablisher"
)


@dataclass(frozen=True)
class ProviderRegistration:
    """Association between a team and an external identity provider."""

    team_id: str
    name: str
    provider_id: str


@dataclass(frozen=True)
class TeamHints:
    """Information used to match or create the team."""

    team_id: str | None
    name: str
    domain: str
    subdomain: str
    avatar_url: str | None = None


@dataclass(frozen=True)
class UserHints:
    """Information used to match or create the user."""

    name: str
    email: str
    avatar_url: str | None = None
    language: str | None = None


@dataclass(frozen=True)
class ProviderIdentity:
    """Provider registration the account is bound to."""

    name: str
    provider_id: str


@dataclass(frozen=True)
class AuthenticationMaterial:
    """Credentials obtained from the provider for the user."""

    external_subject_id: str
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProvisioningRequest:
    """Everything the account provisioner needs."""

    team: TeamHints
    user: UserHints
    provider: ProviderIdentity
    authentication: AuthenticationMaterial
    ip_address: str | None = None


@dataclass
class ProvisioningResult:
    """Result of account provisioning."""

    user: Any
    team: Any = None
    is_new_user: bool = False
    is_new_team: bool = False
    #: Where to send the user after sign-on, if not the default
    redirect_to: str | None = None


@runtime_checkable
class ProviderDirectory(Protocol):
    """Read-only access to teams and provider registrations."""

    def team_for_host(self, host: str) -> str | None:
        """Return the id of the team served by a host, if any."""

    def find_registration(
        self, team_id: str, name: str, provider_id: str | None = None
    ) -> ProviderRegistration | None:
        """
        Look up a provider registration.

        :param provider_id: if None, return any registration of the named
          provider for the team
        """


@runtime_checkable
class AccountProvisioner(Protocol):
    """Create or match the account of a signed-on user."""

    def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        """
        Provision the account.

        Provisioning the same identity twice matches the existing account.

        :raises ProvisioningError: if the account cannot be provisioned
        """


@runtime_checkable
class SessionEstablisher(Protocol):
    """Start an application session for a provisioned account."""

    def establish(
        self,
        request: HttpRequest,
        result: ProvisioningResult,
        client_variant: ClientVariant,
    ) -> HttpResponseBase:
        """Log the user in and return the redirect into the application."""


T = TypeVar("T")


def load_collaborator(setting: str, default: str, protocol: type[T]) -> T:
    """
    Instantiate the class configured by a setting.

    :raises ConfigurationError: if the class does not implement protocol
    """
    path = getattr(settings, setting, default)
    try:
        instance = import_string(path)()
    except ImportError as exc:
        raise ConfigurationError(f"{setting}: cannot import {path}: {exc}")
    if not isinstance(instance, protocol):
        raise ConfigurationError(
            f"{setting}: {path} does not implement {protocol.__name__}"
        )
    return instance


class ProvisioningBridge:
    """Map a resolved identity to a provisioning request and run it."""

    def __init__(
        self,
        provider: OIDCProvider,
        *,
        directory: ProviderDirectory | None = None,
        provisioner: AccountProvisioner | None = None,
        establisher: SessionEstablisher | None = None,
    ) -> None:
        """
        Create a bridge for a provider.

        Collaborators that are not given are loaded from settings.
        """
        self.provider = provider
        self.directory = directory or load_collaborator(
            "SIGNON_PROVIDER_DIRECTORY",
            DEFAULT_PROVIDER_DIRECTORY,
            ProviderDirectory,
        )
        self.provisioner = provisioner or load_collaborator(
            "SIGNON_ACCOUNT_PROVISIONER",
            DEFAULT_ACCOUNT_PROVISIONER,
            AccountProvisioner,
        )
        self.establisher = establisher or load_collaborator(
            "SIGNON_SESSION_ESTABLISHER",
            DEFAULT_SESSION_ESTABLISHER,
            SessionEstablisher,
        )

    def find_registration(
        self, team_id: str | None, domain: str
    ) -> ProviderRegistration | None:
        """Find the registration for a domain, or any one for the team."""
        if team_id is None:
            return None
        return self.directory.find_registration(
            team_id, self.provider.name, domain
        ) or self.directory.find_registration(team_id, self.provider.name)

    def derive_provider_id(
        self, registration: ProviderRegistration | None, domain: str
    ) -> str:
        """Return the provider id to provision the account with."""
        if registration is not None:
            return registration.provider_id
        return domain_identifier(domain) or self.provider.name

    def build_request(
        self,
        identity: ResolvedIdentity,
        tokens: TokenSet,
        *,
        host: str,
        ip_address: str | None = None,
    ) -> ProvisioningRequest:
        """Build the provisioning request for an identity."""
        domain = identity.domain
        team_id = self.directory.team_for_host(host)
        registration = self.find_registration(team_id, domain)
        return ProvisioningRequest(
            team=TeamHints(
                team_id=team_id,
                name=getattr(settings, "SIGNON_TEAM_NAME", "Gatehouse"),
                domain=domain,
                subdomain=slugify_domain(domain),
                avatar_url=identity.avatar_url,
            ),
            user=UserHints(
                name=identity.display_name,
                email=identity.email,
                avatar_url=identity.avatar_url,
                language=identity.language,
            ),
            provider=ProviderIdentity(
                name=self.provider.name,
                provider_id=self.derive_provider_id(registration, domain),
            ),
            authentication=AuthenticationMaterial(
                external_subject_id=identity.external_subject_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_in=tokens.expires_in,
                scopes=tokens.scopes or list(self.provider.scope),
            ),
            ip_address=ip_address,
        )

    def provision(
        self,
        identity: ResolvedIdentity,
        tokens: TokenSet,
        *,
        host: str,
        ip_address: str | None = None,
    ) -> ProvisioningResult:
        """
        Provision the account for an identity.

        :raises ProvisioningError: if the provisioner fails with a notice
        """
        request = self.build_request(
            identity, tokens, host=host, ip_address=ip_address
        )
        try:
            result = self.provisioner.provision(request)
        except ProvisioningError as exc:
            log.error(
                "%s: provisioning %s failed: %s",
                self.provider.name,
                identity.email,
                exc,
            )
            raise
        except Exception as exc:
            if (notice_id := getattr(exc, "id", None)) is None:
                raise
            log.error(
                "%s: provisioning %s failed: %s",
                self.provider.name,
                identity.email,
                exc,
            )
            raise ProvisioningError(
                str(exc),
                id=str(notice_id),
                redirect_path=getattr(exc, "redirect_path", None),
                host=getattr(exc, "host", None),
            ) from exc

        log.info(
            "%s: provisioned %s (new user: %s, new team: %s)",
            self.provider.name,
            identity.email,
            result.is_new_user,
            result.is_new_team,
        )
        return result

    def establish_session(
        self,
        request: HttpRequest,
        result: ProvisioningResult,
        client_variant: ClientVariant,
    ) -> HttpResponseBase:
        """Hand the provisioned account over to the session establisher."""
        return self.establisher.establish(request, result, client_variant)
