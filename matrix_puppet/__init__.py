"""Matrix puppet client.

Logs into a homeserver with a real user's own credentials so a bridge can
act on their behalf.

Usage:
    from matrix_puppet import load_config, PuppetSession

    session = PuppetSession(load_config())
    await session.start()
    room_id = await session.resolve_room_alias("#room:example.org")
"""

__version__ = "0.1.0"

# Config
from matrix_puppet.config import (
    get_config_path,
    load_config,
    merge_puppet,
    save_config,
)

# Errors
from matrix_puppet.errors import (
    PuppetError,
    ConfigError,
    SessionStartError,
    SessionNotStarted,
    InviteError,
    AssociationError,
)

# Room helpers
from matrix_puppet.rooms import (
    JoinErrorKind,
    classify_join_error,
    make_user_id,
    localpart_of,
    mxc_to_http,
)

# Session
from matrix_puppet.session import PuppetSession

__all__ = [
    # Config
    "get_config_path",
    "load_config",
    "merge_puppet",
    "save_config",
    # Errors
    "PuppetError",
    "ConfigError",
    "SessionStartError",
    "SessionNotStarted",
    "InviteError",
    "AssociationError",
    # Rooms
    "JoinErrorKind",
    "classify_join_error",
    "make_user_id",
    "localpart_of",
    "mxc_to_http",
    # Session
    "PuppetSession",
]
