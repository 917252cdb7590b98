"""Puppet session: a Matrix client logged in as a real user.

The bridge acts on the user's behalf through this session. It keeps a
per-room member list fed by the sync stream and wraps the few client calls
the bridge needs (alias lookup, join, invite, media URLs). ``associate()``
is the one-time interactive setup that writes the user's access token into
the config file.
"""

import asyncio
import getpass
import logging
from functools import partial
from pathlib import Path
from typing import Callable

from nio import (
    AsyncClient,
    JoinError,
    LoginResponse,
    RoomInviteError,
    RoomMemberEvent,
    RoomResolveAliasResponse,
    SyncError,
    SyncResponse,
)

from matrix_puppet.config import get_config_path, merge_puppet, save_config
from matrix_puppet.errors import (
    AssociationError,
    InviteError,
    SessionNotStarted,
    SessionStartError,
)
from matrix_puppet.rooms import (
    JoinErrorKind,
    classify_join_error,
    make_user_id,
    mxc_to_http,
)

log = logging.getLogger(__name__)

# Long-poll timeout for sync requests, in milliseconds
SYNC_TIMEOUT = 30000

PUPPET_NOTICE = (
    "This bridge performs matrix user puppeting.\n"
    "This means that the bridge logs in as your user and acts on your behalf"
)


class PuppetSession:
    """Matrix session authenticated as the puppet user.

    Args:
        config: Config dict (see matrix_puppet.config)
        config_path: File that associate() rewrites, defaults to get_config_path()
        client_factory: Builds clients from (homeserver, user), nio.AsyncClient by default
        prompt: Reads a line from the user
        secret_prompt: Reads a line from the user without echoing it
    """

    def __init__(
        self,
        config: dict,
        config_path: Path | str | None = None,
        *,
        client_factory: Callable[..., AsyncClient] = AsyncClient,
        prompt: Callable[[str], str] = input,
        secret_prompt: Callable[[str], str] = getpass.getpass,
    ):
        self.config = config
        self.config_path = Path(config_path) if config_path else get_config_path()
        self.client_factory = client_factory
        self.prompt = prompt
        self.secret_prompt = secret_prompt

        self.client: AsyncClient | None = None
        self.matrix_room_members: dict[str, list[str]] = {}
        self.matrix_room_alt_aliases: dict[str, list[str]] = {}
        self._ready: asyncio.Future | None = None
        self._sync_task: asyncio.Task | None = None

    async def __aenter__(self) -> "PuppetSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def _require_client(self, operation: str) -> AsyncClient:
        if self.client is None:
            raise SessionNotStarted(operation)
        return self.client

    async def start(self):
        """Connect as the puppet and wait for the first sync.

        Returns once the initial sync has been received. Member events keep
        updating the room member lists before and after that point. A
        session that is already running is closed first.

        Raises:
            SessionStartError if the sync loop fails before the first sync
        """
        if self.client is not None or self._sync_task is not None:
            await self.close()

        bridge = self.config["bridge"]
        puppet = self.config["puppet"]

        client = self.client_factory(bridge["homeserverUrl"], puppet["id"])
        client.user_id = puppet["id"]
        client.access_token = puppet["token"]
        self.client = client

        self.matrix_room_members = {}
        self.matrix_room_alt_aliases = {}
        self._ready = asyncio.get_running_loop().create_future()

        # Callbacks are bound to this client, so a replaced client that
        # still delivers events cannot touch the new caches
        client.add_event_callback(partial(self._on_member_event, client), RoomMemberEvent)
        client.add_response_callback(partial(self._on_sync_state, client), SyncResponse)
        client.add_response_callback(partial(self._on_sync, client), SyncResponse)
        client.add_response_callback(partial(self._on_sync_error, client), SyncError)

        self._sync_task = asyncio.create_task(
            client.sync_forever(timeout=SYNC_TIMEOUT, full_state=True)
        )
        self._sync_task.add_done_callback(self._on_sync_stopped)

        try:
            await self._ready
        except BaseException:
            await self.close()
            raise

    async def close(self):
        """Stop syncing and close the client's HTTP session."""
        if self._sync_task is not None:
            self._sync_task.remove_done_callback(self._on_sync_stopped)
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            except Exception:
                log.debug("Sync loop ended with an error", exc_info=True)
            self._sync_task = None
        if self.client is not None:
            client, self.client = self.client, None
            await client.close()

    def _update_members(self, client: AsyncClient, room_id: str):
        room = client.rooms.get(room_id)
        if room is not None:
            self.matrix_room_members[room_id] = list(room.users)

    async def _on_member_event(self, client: AsyncClient, room, event: RoomMemberEvent):
        if client is not self.client:
            return
        # nio has already applied the event, room.users is the full member list
        self.matrix_room_members[room.room_id] = list(room.users)

    async def _on_sync_state(self, client: AsyncClient, response: SyncResponse):
        # nio runs event callbacks for timeline events only, members and
        # aliases delivered in the state block are picked up here
        if client is not self.client:
            return
        for room_id, join_info in response.rooms.join.items():
            events = list(join_info.state) + list(join_info.timeline.events)
            if any(isinstance(event, RoomMemberEvent) for event in events):
                self._update_members(client, room_id)
            for event in events:
                if event.source.get("type") == "m.room.canonical_alias":
                    content = event.source.get("content") or {}
                    self.matrix_room_alt_aliases[room_id] = list(content.get("alt_aliases") or [])

    async def _on_sync(self, client: AsyncClient, response: SyncResponse):
        if client is not self.client:
            return
        if not self._ready.done():
            log.info("synced")
            self._ready.set_result(None)

    async def _on_sync_error(self, client: AsyncClient, response: SyncError):
        if client is not self.client:
            return
        if not self._ready.done():
            self._ready.set_exception(
                SessionStartError(f"Initial sync failed: {response.message}")
            )
        else:
            log.warning("Sync failed: %s", response.message)

    def _on_sync_stopped(self, task: asyncio.Task):
        if task.cancelled():
            if not self._ready.done():
                self._ready.set_exception(SessionStartError("Sync was cancelled"))
            return

        exc = task.exception()
        if self._ready.done():
            if exc is not None:
                log.error("Sync loop stopped", exc_info=exc)
            return

        error = SessionStartError(f"Sync loop stopped before the first sync: {exc}")
        error.__cause__ = exc
        self._ready.set_exception(error)

    def get_room_members(self, room_id: str) -> list[str]:
        """Members seen so far in room_id, empty if the room is unknown."""
        return list(self.matrix_room_members.get(room_id, []))

    def get_user_id(self) -> str:
        return self._require_client("get_user_id").user_id

    def get_client(self) -> AsyncClient | None:
        """The underlying nio client, for calls this class does not wrap."""
        return self.client

    async def resolve_room_alias(self, alias: str) -> str | None:
        """Resolve a room alias to room ID.

        Returns:
            Room ID, or None if the alias does not resolve (e.g. the room was
            never created). Lookup errors are logged, never raised.
        """
        client = self._require_client("resolve_room_alias")
        try:
            response = await client.room_resolve_alias(alias)
        except Exception as e:
            log.debug("Could not resolve %s: %s", alias, e)
            return None

        if isinstance(response, RoomResolveAliasResponse):
            log.debug("found matrix room via alias. room_id: %s", response.room_id)
            return response.room_id

        log.debug("the room %s doesn't exist. we need to create it for the first time", alias)
        return None

    def get_room_aliases(self, room_id: str) -> list[str] | None:
        """Aliases of a room the client knows about.

        Returns:
            Canonical alias first, then the alternative aliases seen in the
            room state (possibly empty), or None if the room is not in the
            client's room list
        """
        client = self._require_client("get_room_aliases")
        room = client.rooms.get(room_id)
        if room is None:
            return None

        aliases = [room.canonical_alias] if room.canonical_alias else []
        for alias in self.matrix_room_alt_aliases.get(room_id, []):
            if alias not in aliases:
                aliases.append(alias)
        return aliases

    async def join_room(self, room_id: str) -> bool | None:
        """Join room_id as the puppet.

        Returns:
            True if the room can never be joined again and must be replaced
            by a new room under the same alias, None otherwise. Other join
            failures are logged and ignored.
        """
        client = self._require_client("join_room")
        try:
            response = await client.join(room_id)
        except Exception as e:
            response = e

        if not isinstance(response, (JoinError, Exception)):
            return None

        kind = classify_join_error(response)
        if kind is JoinErrorKind.NEEDS_REALIAS:
            log.warning(
                "we cannot use room %s anymore because you cannot currently rejoin an empty room. "
                "we need to de-alias it now so a new room gets created that we can actually use.",
                room_id,
            )
            return True

        message = response.message if isinstance(response, JoinError) else str(response)
        log.warning("ignoring error from puppet join room (%s): %s", kind.value, message)
        return None

    async def _invite_one(self, room_id: str, user_id: str) -> str | None:
        try:
            response = await self.client.room_invite(room_id, user_id)
        except Exception as e:
            return str(e) or type(e).__name__

        if isinstance(response, RoomInviteError):
            return response.message or str(response)

        log.debug("New user %s invited to room %s", user_id, room_id)
        return None

    async def invite_users(self, room_id: str, user_ids: list[str] | None):
        """Invite all user_ids to room_id concurrently.

        Raises:
            InviteError if any invite failed
        """
        self._require_client("invite_users")
        if not user_ids:
            log.debug("All members are already joined to Matrix room: %s", room_id)
            return

        log.info("Users to invite to %s: %s", room_id, ", ".join(user_ids))
        results = await asyncio.gather(
            *(self._invite_one(room_id, user_id) for user_id in user_ids)
        )

        failed = {
            user_id: error
            for user_id, error in zip(user_ids, results)
            if error is not None
        }
        if failed:
            raise InviteError(room_id, failed)

    async def associate(self) -> dict:
        """Log in with the user's password and store the access token.

        Prompts for the localpart and password (the password is not stored),
        then rewrites the config file with a new puppet section. Every other
        key of the config is preserved.

        Returns:
            The config that was written
        """
        try:
            log.info(PUPPET_NOTICE)
            bridge = self.config["bridge"]
            localpart = self.prompt("Enter your user's localpart\n").strip()
            user_id = make_user_id(localpart, bridge["domain"])
            password = self.secret_prompt(f"Enter password for {user_id}\n")

            client = self.client_factory(bridge["homeserverUrl"], user_id)
            try:
                response = await client.login(password)
            finally:
                await client.close()

            if not isinstance(response, LoginResponse):
                raise AssociationError(f"Login failed for {user_id}: {response}")
            log.info("log in success")

            config = merge_puppet(self.config, user_id, localpart, response.access_token)
            save_config(self.config_path, config)
            log.info("Updated config file %s", self.config_path)
        except Exception as e:
            log.error("Could not associate puppet account: %s", e)
            raise

        self.config = config
        return config

    def get_http_url(self, url: str) -> str | None:
        """Turn an MXC URL into an HTTP one, None if url is not an MXC URL.

        Built with the puppet's access token, homeservers with
        authenticated media refuse anonymous downloads.
        """
        client = self._require_client("get_http_url")
        return mxc_to_http(url, self.config["bridge"]["homeserverUrl"], client.access_token)
