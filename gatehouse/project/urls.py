# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Gatehouse URL Configuration.

Sign-on views are placed in ``/auth/``: ``/auth/{provider}`` starts the
authentication, ``/auth/{provider}.callback`` is the redirect URI to
register with the provider.
"""

from django.urls import include, path

urlpatterns = [
    path("auth/", include("gatehouse.signon.urls", namespace="signon")),
]
