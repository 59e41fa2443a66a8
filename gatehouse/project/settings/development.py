# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Appropriate settings to run during development."""

from gatehouse.project.settings.defaults import *  # noqa: F401, F403
from gatehouse.project.settings.defaults import LOGGING

# Only accepted with DEBUG=True, see gatehouse.signon.checks
SECRET_KEY = "default:gatehouse-development-key"

DEBUG = True

ALLOWED_HOSTS = ["localhost", "127.0.0.1"]

LOGGING["loggers"]["gatehouse.signon"]["level"] = "DEBUG"
