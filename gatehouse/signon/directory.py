# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Provider directory backed by Django settings.

Teams and registrations are listed in settings::

    SIGNON_TEAMS = {"docs.example.org": "team-1"}
    SIGNON_REGISTRATIONS = [
        ProviderRegistration(
            team_id="team-1", name="oidc", provider_id="example"
        ),
    ]
"""

from collections.abc import Iterable, Mapping

from django.conf import settings

from gatehouse.signon.provisioning import ProviderRegistration


class StaticProviderDirectory:
    """Look up teams and registrations in Django settings."""

    def __init__(
        self,
        teams: Mapping[str, str] | None = None,
        registrations: Iterable[ProviderRegistration] | None = None,
    ) -> None:
        """Use the given data, or read it from settings."""
        if teams is None:
            teams = getattr(settings, "SIGNON_TEAMS", {})
        if registrations is None:
            registrations = getattr(settings, "SIGNON_REGISTRATIONS", ())
        self.teams = dict(teams)
        self.registrations = tuple(registrations)

    def team_for_host(self, host: str) -> str | None:
        """Return the team configured for a host, ignoring the port."""
        hostname = host.rsplit(":", 1)[0] if ":" in host else host
        return self.teams.get(host) or self.teams.get(hostname)

    def find_registration(
        self, team_id: str, name: str, provider_id: str | None = None
    ) -> ProviderRegistration | None:
        """Return the first matching registration."""
        for registration in self.registrations:
            if registration.team_id != team_id or registration.name != name:
                continue
            if provider_id is None or registration.provider_id == provider_id:
                return registration
        return None
