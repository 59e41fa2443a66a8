# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Appropriate settings to run the test suite."""

from gatehouse.project.settings.defaults import *  # noqa: F401, F403

# Tests run with DEBUG=False: TEST_MODE allows the default SECRET_KEY
TEST_MODE = True
SECRET_KEY = "default:gatehouse-test-key"

# Don't use slow hashers to run tests (speed gain)
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

ALLOWED_HOSTS = ["testserver", ".example.org", "localhost"]

# Tests set up their own providers with override_settings
SIGNON_PROVIDERS: list[object] = []

# Keep test output quiet: tests capture logs with assertLogs
LOGGING: dict[str, object] = {
    "version": 1,
    "disable_existing_loggers": False,
}
