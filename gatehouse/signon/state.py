# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""
Signed state carried by the client during an authorization round trip.

The state is never stored on the server: :py:func:`issue_state` signs it into
a cookie value, and returns the random nonce that is sent to the provider as
the OAuth ``state`` parameter. On callback, :py:func:`verify_state` checks the
cookie signature, its expiry, and that the provider returned the same nonce.
"""

import enum
import logging
import secrets
import time
from dataclasses import asdict, dataclass

from django.conf import settings
from django.core import signing
from django.utils.crypto import constant_time_compare

from gatehouse.signon.errors import StateMismatch

log = logging.getLogger("gatehouse.signon")

#: Salt used to sign state cookies, so that signatures cannot be reused
#: across other signed values of the project
STATE_SALT = "gatehouse.signon.state"

#: Default lifetime of a state token, in seconds
DEFAULT_STATE_TTL = 600


class ClientVariant(enum.StrEnum):
    """Kind of client that started the sign-on flow."""

    WEB = "web"
    DESKTOP = "desktop"

    @classmethod
    def from_param(cls, value: str | None) -> "ClientVariant":
        """Parse a ``client`` request parameter, defaulting to WEB."""
        if value == cls.DESKTOP:
            return cls.DESKTOP
        return cls.WEB


@dataclass(frozen=True)
class StateContext:
    """Information carried through the authorization round trip."""

    #: Random value that has to come back as the ``state`` parameter
    nonce: str
    #: Host that started the flow
    origin_host: str
    #: Client that started the flow
    client_variant: ClientVariant = ClientVariant.WEB
    #: PKCE code verifier, if the provider uses PKCE
    pkce_verifier: str | None = None
    #: Unix timestamp after which the state is no longer accepted
    expires_at: float = 0.0


def state_ttl() -> int:
    """Return the lifetime of state tokens in seconds."""
    return getattr(settings, "SIGNON_STATE_TTL", DEFAULT_STATE_TTL)


def new_state_context(
    origin_host: str,
    client_variant: ClientVariant = ClientVariant.WEB,
    *,
    pkce_verifier: str | None = None,
) -> StateContext:
    """Create a StateContext with a fresh nonce and expiry time."""
    return StateContext(
        nonce=secrets.token_urlsafe(32),
        origin_host=origin_host,
        client_variant=client_variant,
        pkce_verifier=pkce_verifier,
        expires_at=time.time() + state_ttl(),
    )


def issue_state(context: StateContext) -> tuple[str, str]:
    """
    Sign a state context.

    :return: ``(state_param, cookie_value)``: the value to send as the OAuth
      ``state`` parameter, and the signed value to store in the state cookie
    """
    payload = asdict(context)
    payload["client_variant"] = str(context.client_variant)
    cookie_value = signing.dumps(payload, salt=STATE_SALT, compress=True)
    return context.nonce, cookie_value


def verify_state(
    cookie_value: str | None, returned_state: str | None
) -> StateContext:
    """
    Verify the state returned by a provider against the state cookie.

    Missing values, bad signatures, corrupted payloads, expired tokens and
    nonce mismatches all raise the same exception.

    :raises StateMismatch: if the state cannot be verified
    :return: the StateContext signed into the cookie
    """
    if not cookie_value or not returned_state:
        log.warning("State verification failed: missing state or cookie")
        raise StateMismatch()

    try:
        payload = signing.loads(cookie_value, salt=STATE_SALT)
        context = StateContext(
            nonce=payload["nonce"],
            origin_host=payload["origin_host"],
            client_variant=ClientVariant(payload["client_variant"]),
            pkce_verifier=payload.get("pkce_verifier"),
            expires_at=float(payload["expires_at"]),
        )
    except (signing.BadSignature, KeyError, TypeError, ValueError):
        log.warning("State verification failed: invalid state cookie")
        raise StateMismatch()

    if time.time() > context.expires_at:
        log.warning("State verification failed: state cookie expired")
        raise StateMismatch()

    if not constant_time_compare(returned_state, context.nonce):
        log.warning("State verification failed: state parameter mismatch")
        raise StateMismatch()

    return context
