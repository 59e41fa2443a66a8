# Copyright 2016-2023 Enrico Zini <enrico@debian.org>
# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Helper functions for the signon module."""

import re
from collections.abc import Iterable, Mapping
from typing import Any

from django.conf import settings

#: Default timeout in seconds for outbound HTTP calls
DEFAULT_HTTP_TIMEOUT = 10

#: Locales supported by default, in underscore form
DEFAULT_LANGUAGES = (
    "en_US",
    "ar_SA",
    "cs_CZ",
    "da_DK",
    "de_DE",
    "es_ES",
    "fa_IR",
    "fr_FR",
    "he_IL",
    "hu_HU",
    "id_ID",
    "it_IT",
    "ja_JP",
    "ko_KR",
    "nb_NO",
    "nl_NL",
    "pl_PL",
    "pt_BR",
    "pt_PT",
    "ru_RU",
    "sv_SE",
    "th_TH",
    "tr_TR",
    "uk_UA",
    "vi_VN",
    "zh_CN",
    "zh_TW",
)

#: Keys whose values must never end up in logs
SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "code",
        "code_verifier",
    }
)

re_data_url = re.compile(r"^\s*data:", re.IGNORECASE)


def split_full_name(name: str) -> tuple[str, str]:
    """
    Arbitrary split a full name into (first_name, last_name).

    This is better than nothing, but not a lot better than that.
    """
    # See http://www.kalzumeus.com/2010/06/17/falsehoods-programmers-believe-about-names/  # noqa
    fn = name.split()
    if not fn:
        return "", ""
    elif len(fn) == 1:
        return fn[0], ""
    elif len(fn) == 2:
        return fn[0], fn[1]
    elif len(fn) == 3:
        return " ".join(fn[0:2]), fn[2]
    else:
        middle = len(fn) // 2
        return " ".join(fn[:middle]), " ".join(fn[middle:])


def http_timeout() -> float:
    """Return the timeout to use for outbound HTTP calls."""
    return getattr(settings, "SIGNON_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)


def parse_email(email: str) -> tuple[str, str]:
    """
    Split an email address into ``(local_part, domain)``.

    The domain is lower-cased. Either part is empty if missing.
    """
    local, sep, domain = email.strip().rpartition("@")
    if not sep:
        return domain, ""
    return local, domain.lower()


def slugify_domain(domain: str) -> str:
    """
    Turn a domain into a subdomain-friendly slug.

    The top level domain is dropped and the remaining labels are joined with
    dashes, so that ``mail.example.org`` becomes ``mail-example``.
    """
    labels = [label for label in domain.lower().split(".") if label]
    return "-".join(labels[:-1])


def domain_identifier(domain: str) -> str:
    """
    Turn a domain into an identifier, keeping all of its labels.

    ``Mail.Example.org`` becomes ``mail-example-org``, so that unrelated
    domains never share an identifier.
    """
    labels = [label for label in domain.lower().split(".") if label]
    return "-".join(labels)


def is_data_url(url: str) -> bool:
    """Check if a URL embeds its data inline (``data:`` scheme)."""
    return bool(re_data_url.match(url))


def normalize_language(language: str | None) -> str | None:
    """
    Normalize a locale tag to one of the supported languages.

    ``pt-BR`` becomes ``pt_BR``. Unsupported or missing languages return None.
    """
    if not language:
        return None
    normalized = language.strip().replace("-", "_")
    supported: Iterable[str] = getattr(
        settings, "SIGNON_LANGUAGES", DEFAULT_LANGUAGES
    )
    if normalized in supported:
        return normalized
    return None


def lookup_claim(claims: Mapping[str, Any], path: str) -> Any:
    """
    Look up a dotted path like ``profile.nickname`` in a claims dict.

    :return: the value found, or None if any path component is missing
    """
    value: Any = claims
    for component in path.split("."):
        if not isinstance(value, Mapping) or component not in value:
            return None
        value = value[component]
    return value


def redact_secrets(data: Any) -> Any:
    """Return a copy of data with secret-bearing values replaced."""
    if isinstance(data, Mapping):
        return {
            key: "[redacted]" if key in SECRET_KEYS else redact_secrets(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_secrets(value) for value in data]
    return data
