"""Exceptions raised by the puppet session.

matrix-nio reports most failures as error *responses* rather than raising.
The session turns the ones it cannot absorb into these exceptions.
"""


class PuppetError(Exception):
    """Base class for all matrix-puppet errors."""


class ConfigError(PuppetError):
    """Config file is missing, unreadable or lacks required fields."""


class SessionStartError(PuppetError):
    """The puppet client never reached its first successful sync."""


class SessionNotStarted(PuppetError, RuntimeError):
    """An operation needed the client before ``start()`` was called."""

    def __init__(self, operation: str):
        super().__init__(f"{operation}() called before the puppet session was started")
        self.operation = operation


class InviteError(PuppetError):
    """At least one invite of a batch failed.

    ``failed`` maps each user ID that could not be invited to the
    server's error message.
    """

    def __init__(self, room_id: str, failed: dict):
        users = ", ".join(sorted(failed))
        super().__init__(f"Could not invite {users} to {room_id}")
        self.room_id = room_id
        self.failed = failed


class AssociationError(PuppetError):
    """Password login during account association was refused."""
