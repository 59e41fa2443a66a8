# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Django Application Configuration for the signon application."""

from django.apps import AppConfig


class SignonConfig(AppConfig):
    """Django's AppConfig for the signon application."""

    name = "gatehouse.signon"
    label = "signon"

    def ready(self) -> None:
        """Register the configuration checks."""
        import gatehouse.signon.checks  # noqa: F401
