# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Default settings for the Gatehouse project.

Deployments import from this module and override what they need, in
particular SIGNON_PROVIDERS. SECRET_KEY signs state cookies and has no
default: each deployment sets its own.
"""

from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[2]

DEBUG = False

ALLOWED_HOSTS: list[str] = []

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "gatehouse.signon.apps.SignonConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

AUTHENTICATION_BACKENDS = [
    "django.contrib.auth.backends.ModelBackend",
    "gatehouse.signon.auth.SignonAuthBackend",
]

ROOT_URLCONF = "gatehouse.project.urls"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "gatehouse.sqlite3",
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "gatehouse.signon": {
            "handlers": ["console"],
            "level": "INFO",
        },
        # Logs token values at DEBUG level
        "requests_oauthlib": {
            "handlers": ["console"],
            "level": "WARNING",
        },
    },
}

# External identity providers: see gatehouse.signon.providers
SIGNON_PROVIDERS: list[object] = []
