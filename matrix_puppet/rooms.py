"""Room and identifier helpers for the puppet session."""

import asyncio
import enum

from nio import Api, ErrorResponse

# Synapse refuses to rejoin a room once every member has left it.
NO_KNOWN_SERVERS = "No known servers"

RATE_LIMITED = "M_LIMIT_EXCEEDED"


class JoinErrorKind(enum.Enum):
    """What a failed join means for the caller."""

    RECOVERABLE = "recoverable"
    NEEDS_REALIAS = "needs_realias"
    OTHER = "other"


def _error_message(error) -> str:
    if isinstance(error, ErrorResponse):
        return error.message or ""
    return str(error)


def _http_status(error) -> int | None:
    transport = getattr(error, "transport_response", None)
    return getattr(transport, "status", None)


def classify_join_error(error) -> JoinErrorKind:
    """Classify a failed join.

    Args:
        error: A nio JoinError response, or an exception raised by the join

    Returns:
        NEEDS_REALIAS when the room can never be joined again and has to be
        recreated under its alias, RECOVERABLE for rate limits, server-side
        and network trouble, OTHER for everything else
    """
    if _error_message(error) == NO_KNOWN_SERVERS:
        return JoinErrorKind.NEEDS_REALIAS

    if isinstance(error, ErrorResponse):
        if error.status_code == RATE_LIMITED or error.retry_after_ms:
            return JoinErrorKind.RECOVERABLE
        status = _http_status(error)
        if status is not None and (status == 429 or status >= 500):
            return JoinErrorKind.RECOVERABLE
        return JoinErrorKind.OTHER

    if isinstance(error, (asyncio.TimeoutError, OSError)):
        return JoinErrorKind.RECOVERABLE
    return JoinErrorKind.OTHER


def make_user_id(localpart: str, domain: str) -> str:
    """Build a full user ID, e.g. ("bob", "example.org") -> @bob:example.org"""
    return f"@{localpart}:{domain}"


def localpart_of(user_id: str) -> str:
    """@user:server -> user"""
    return user_id.split(":")[0].lstrip("@") if user_id.startswith("@") else user_id


def is_room_alias(room: str) -> bool:
    return room.startswith("#") and ":" in room


def is_room_id(room: str) -> bool:
    return room.startswith("!") and ":" in room


def mxc_to_http(mxc_url: str, homeserver: str, access_token: str | None = None) -> str | None:
    """Turn an MXC URL into an HTTP download URL on homeserver.

    Homeservers that enforce authenticated media only serve the URL to
    requests carrying access_token.

    Returns None if mxc_url is not a valid MXC URL.
    """
    if not mxc_url:
        return None
    return Api.mxc_to_http(mxc_url, homeserver, access_token=access_token)
