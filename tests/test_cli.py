import json

import pytest
from nio import Api, JoinError, JoinResponse, RoomInviteError, RoomResolveAliasResponse

from matrix_puppet import cli
from matrix_puppet.session import PuppetSession

AUTHENTICATED_DOWNLOAD = "https://hs.example/_matrix/client/v1/media/download/example.org/abc123"


@pytest.fixture
def fake_session(monkeypatch, factory):
    def make(config, config_path):
        return PuppetSession(config, config_path, client_factory=factory)

    monkeypatch.setattr(cli, "PuppetSession", make)
    return factory


def run_cli(*argv):
    with pytest.raises(SystemExit) as e:
        cli.main(list(argv))
    return e.value.code


def test_media(config_file, capsys):
    cli.main(["--config", str(config_file), "media", "mxc://example.org/abc123"])
    out = capsys.readouterr().out.strip()
    assert out.startswith(AUTHENTICATED_DOWNLOAD)
    assert out == Api.mxc_to_http("mxc://example.org/abc123", "https://hs.example", access_token="tok")


def test_media_rejects_http_urls(config_file, capsys):
    assert run_cli("--config", str(config_file), "media", "https://example.org/x") == 1
    assert "Error: Not an MXC URL" in capsys.readouterr().err


def test_missing_config(tmp_path, capsys):
    assert run_cli("--config", str(tmp_path / "nope.json"), "join", "!abc:example.org") == 1
    err = capsys.readouterr().err
    assert "Config file not found" in err
    assert '"homeserverUrl"' in err


def test_missing_config_json(tmp_path, capsys):
    assert run_cli("--json", "--config", str(tmp_path / "nope.json"), "members", "!a:b.c") == 1
    assert "Config file not found" in json.loads(capsys.readouterr().out)["error"]


def test_resolve_needs_alias(config_file, capsys):
    assert run_cli("--config", str(config_file), "resolve", "!abc:example.org") == 1
    assert "Alias must start with #" in capsys.readouterr().err


def test_room_argument_is_checked(config_file, capsys):
    assert run_cli("--config", str(config_file), "join", "general") == 1
    assert "Not a room alias or room ID: general" in capsys.readouterr().err


def test_resolve(config_file, fake_session, capsys):
    response = RoomResolveAliasResponse(
        room_alias="#room:example.org", room_id="!abc:example.org", servers=[]
    )
    fake_session.setup = lambda c: c.alias_responses.update({"#room:example.org": response})
    cli.main(["--json", "--config", str(config_file), "resolve", "#room:example.org"])
    assert json.loads(capsys.readouterr().out) == {
        "alias": "#room:example.org",
        "room_id": "!abc:example.org",
    }
    assert fake_session.clients[0].closed


def test_members_of_unknown_room(config_file, fake_session, capsys):
    cli.main(["--config", str(config_file), "members", "!abc:example.org"])
    assert "No members found" in capsys.readouterr().out


def test_join(config_file, fake_session, capsys):
    fake_session.setup = lambda c: setattr(c, "join_response", JoinResponse("!abc:example.org"))
    cli.main(["--config", str(config_file), "join", "!abc:example.org"])
    assert "Joined !abc:example.org" in capsys.readouterr().out


def test_join_needs_realias(config_file, fake_session, capsys):
    error = JoinError("No known servers", "M_UNKNOWN")
    fake_session.setup = lambda c: setattr(c, "join_response", error)
    assert run_cli("--config", str(config_file), "join", "!abc:example.org") == cli.EXIT_NEEDS_REALIAS
    assert "re-aliased" in capsys.readouterr().out


def test_invite_failure(config_file, fake_session, capsys):
    fake_session.setup = lambda c: c.invite_responses.update(
        {"@alice:example.org": RoomInviteError("banned", "M_FORBIDDEN")}
    )
    code = run_cli("--config", str(config_file), "invite", "!abc:example.org", "@alice:example.org")
    assert code == 1
    assert "Could not invite @alice:example.org" in capsys.readouterr().err
