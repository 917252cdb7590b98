import asyncio
import json
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import pytest_asyncio
from nio import SyncError, SyncResponse

from matrix_puppet.session import PuppetSession

SYNCED = Mock(spec=SyncResponse)
SYNCED.rooms = SimpleNamespace(join={}, invite={}, leave={})


class FakeClient:
    """Stands in for nio.AsyncClient.

    ``sync_forever`` feeds every entry of ``sync_responses`` through the
    registered response callbacks, then blocks like the real loop does.
    An exception in ``sync_responses`` is raised from the loop instead.
    """

    def __init__(self, homeserver, user=""):
        self.homeserver = homeserver
        self.user = user
        self.user_id = ""
        self.access_token = ""
        self.rooms = {}
        self.event_callbacks = []
        self.response_callbacks = []
        self.sync_responses = [SYNCED]
        self.sync_kwargs = None
        self.closed = False

        self.alias_responses = {}
        self.join_response = None
        self.invite_responses = {}
        self.invited = []
        self.login_response = None
        self.login_passwords = []

    def add_event_callback(self, func, filter):
        self.event_callbacks.append((func, filter))

    def add_response_callback(self, func, filter):
        self.response_callbacks.append((func, filter))

    async def emit_response(self, response):
        for func, filter in self.response_callbacks:
            if isinstance(response, filter):
                await func(response)

    async def emit_member_event(self, room_id, members):
        room = SimpleNamespace(room_id=room_id, users={user: None for user in members})
        for func, _ in self.event_callbacks:
            await func(room, SimpleNamespace(state_key=members[-1] if members else None))

    async def sync_forever(self, **kwargs):
        self.sync_kwargs = kwargs
        for response in self.sync_responses:
            if isinstance(response, BaseException):
                raise response
            await self.emit_response(response)
        await asyncio.Event().wait()

    async def close(self):
        self.closed = True

    async def room_resolve_alias(self, alias):
        response = self.alias_responses[alias]
        if isinstance(response, BaseException):
            raise response
        return response

    async def join(self, room_id):
        if isinstance(self.join_response, BaseException):
            raise self.join_response
        return self.join_response

    async def room_invite(self, room_id, user_id):
        self.invited.append((room_id, user_id))
        await asyncio.sleep(0)
        return self.invite_responses[user_id]

    async def login(self, password):
        self.login_passwords.append(password)
        return self.login_response


class ClientFactory:
    """Records every client the session builds."""

    def __init__(self):
        self.clients = []
        self.setup = lambda client: None

    def __call__(self, homeserver, user=""):
        client = FakeClient(homeserver, user)
        self.setup(client)
        self.clients.append(client)
        return client


@pytest.fixture
def config():
    return {
        "bridge": {"homeserverUrl": "https://hs.example", "domain": "example.org"},
        "puppet": {"id": "@bob:example.org", "token": "tok"},
    }


@pytest.fixture
def config_file(tmp_path, config):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config, indent=2))
    return path


@pytest.fixture
def factory():
    return ClientFactory()


@pytest.fixture
def session(config, config_file, factory):
    return PuppetSession(config, config_file, client_factory=factory)


@pytest_asyncio.fixture
async def started(session, factory):
    await session.start()
    yield session, factory.clients[-1]
    await session.close()


def sync_error(message="Invalid access token", errcode="M_UNKNOWN_TOKEN"):
    return SyncError(message, errcode)
