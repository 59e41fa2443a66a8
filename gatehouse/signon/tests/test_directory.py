# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Tests for the settings-backed provider directory."""

from django.test import override_settings

from gatehouse.signon.directory import StaticProviderDirectory
from gatehouse.signon.provisioning import ProviderRegistration
from gatehouse.test.django import SimpleTestCase

REGISTRATIONS = [
    ProviderRegistration(team_id="team-1", name="idp", provider_id="corp"),
    ProviderRegistration(team_id="team-1", name="idp", provider_id="lab"),
    ProviderRegistration(team_id="team-1", name="other", provider_id="x"),
]


class StaticProviderDirectoryTests(SimpleTestCase):
    """Test StaticProviderDirectory."""

    def test_empty(self) -> None:
        """Without settings, nothing is found."""
        directory = StaticProviderDirectory()
        self.assertIsNone(directory.team_for_host("docs.example.org"))
        self.assertIsNone(directory.find_registration("team-1", "idp"))

    @override_settings(
        SIGNON_TEAMS={"docs.example.org": "team-1", "dev:8000": "team-dev"},
        SIGNON_REGISTRATIONS=REGISTRATIONS,
    )
    def test_from_settings(self) -> None:
        """Data is read from settings."""
        directory = StaticProviderDirectory()
        self.assertEqual(directory.team_for_host("docs.example.org"), "team-1")
        self.assertEqual(
            directory.find_registration("team-1", "idp"), REGISTRATIONS[0]
        )

    def test_team_for_host(self) -> None:
        """Hosts match with or without port."""
        directory = StaticProviderDirectory(
            teams={"docs.example.org": "team-1", "dev:8000": "team-dev"}
        )
        for host, expected in (
            ("docs.example.org", "team-1"),
            ("docs.example.org:8443", "team-1"),
            ("dev:8000", "team-dev"),
            ("dev", None),
            ("www.example.org", None),
        ):
            with self.subTest(host=host):
                self.assertEqual(directory.team_for_host(host), expected)

    def test_find_registration(self) -> None:
        """Registrations match by team, name and provider id."""
        directory = StaticProviderDirectory(registrations=REGISTRATIONS)
        self.assertEqual(
            directory.find_registration("team-1", "idp", "lab"),
            REGISTRATIONS[1],
        )
        self.assertEqual(
            directory.find_registration("team-1", "other"), REGISTRATIONS[2]
        )
        self.assertIsNone(directory.find_registration("team-1", "idp", "x"))
        self.assertIsNone(directory.find_registration("team-2", "idp"))
