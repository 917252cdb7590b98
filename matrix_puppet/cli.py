"""Command line interface for the Matrix puppet.

Usage:
    matrix-puppet associate
    matrix-puppet resolve ALIAS [--json]
    matrix-puppet members ROOM [--json]
    matrix-puppet aliases ROOM [--json]
    matrix-puppet join ROOM [--json]
    matrix-puppet invite ROOM USER [USER ...] [--json]
    matrix-puppet media MXC_URL [--json]
    matrix-puppet --help

Arguments:
    ROOM        Room alias (#room:server) or room ID (!id:server)

Options:
    --config PATH   Config file [default: ~/.config/matrix-puppet/config.json]
    --json          Output as JSON
    --debug         Show debug information
    --help          Show this help
"""

import argparse
import asyncio
import json
import logging
import sys

from matrix_puppet.config import example_config, get_config_path, load_config
from matrix_puppet.errors import ConfigError, PuppetError
from matrix_puppet.rooms import is_room_alias, is_room_id, localpart_of, mxc_to_http
from matrix_puppet.session import PuppetSession

# Exit code of `join` when the room has to be recreated under its alias
EXIT_NEEDS_REALIAS = 2


def fail(message: str, as_json: bool = False, code: int = 1):
    if as_json:
        print(json.dumps({"error": message}))
    else:
        print(f"Error: {message}", file=sys.stderr)
    sys.exit(code)


async def room_id_for(session: PuppetSession, room: str) -> str | None:
    """Accept either a room ID or an alias."""
    if is_room_alias(room):
        return await session.resolve_room_alias(room)
    return room


async def cmd_associate(session: PuppetSession, args) -> dict:
    config = await session.associate()
    return {
        "success": True,
        "user_id": config["puppet"]["id"],
        "config": str(session.config_path),
    }


async def cmd_resolve(session: PuppetSession, args) -> dict:
    room_id = await session.resolve_room_alias(args.alias)
    if room_id is None:
        return {"error": f"Could not resolve room alias: {args.alias}"}
    return {"alias": args.alias, "room_id": room_id}


async def cmd_members(session: PuppetSession, args) -> dict:
    room_id = await room_id_for(session, args.room)
    if room_id is None:
        return {"error": f"Room not found: {args.room}"}
    return {"room_id": room_id, "members": session.get_room_members(room_id)}


async def cmd_aliases(session: PuppetSession, args) -> dict:
    room_id = await room_id_for(session, args.room)
    aliases = session.get_room_aliases(room_id) if room_id else None
    if aliases is None:
        return {"error": f"Room not found: {args.room}"}
    return {"room_id": room_id, "aliases": aliases}


async def cmd_join(session: PuppetSession, args) -> dict:
    room_id = await room_id_for(session, args.room)
    if room_id is None:
        return {"error": f"Room not found: {args.room}"}
    needs_realias = bool(await session.join_room(room_id))
    return {"room_id": room_id, "needs_realias": needs_realias}


async def cmd_invite(session: PuppetSession, args) -> dict:
    room_id = await room_id_for(session, args.room)
    if room_id is None:
        return {"error": f"Room not found: {args.room}"}
    await session.invite_users(room_id, args.users)
    return {"room_id": room_id, "invited": args.users}


COMMANDS = {
    "associate": cmd_associate,
    "resolve": cmd_resolve,
    "members": cmd_members,
    "aliases": cmd_aliases,
    "join": cmd_join,
    "invite": cmd_invite,
}


async def run(args, config: dict) -> dict:
    session = PuppetSession(config, args.config)
    command = COMMANDS[args.command]
    if args.command == "associate":
        return await command(session, args)

    async with session:
        return await command(session, args)


def print_result(args, result: dict):
    if args.json:
        print(json.dumps(result, indent=2))
        return

    if args.command == "associate":
        print("Puppet account associated!")
        print(f"  User:   {result['user_id']}")
        print(f"  Config: {result['config']}")
    elif args.command == "resolve":
        print(f"Alias: {result['alias']}")
        print(f"Room ID: {result['room_id']}")
    elif args.command == "members":
        if not result["members"]:
            print("No members found")
        for member in result["members"]:
            print(f"{localpart_of(member):<20} {member}")
    elif args.command == "aliases":
        if not result["aliases"]:
            print("No aliases found")
        for alias in result["aliases"]:
            print(alias)
    elif args.command == "join":
        if result["needs_realias"]:
            print(f"Room {result['room_id']} cannot be rejoined, it must be recreated and re-aliased")
        else:
            print(f"Joined {result['room_id']}")
    elif args.command == "invite":
        print(f"Invited {len(result['invited'])} user(s) to {result['room_id']}")
    elif args.command == "media":
        print(result["url"])


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="matrix-puppet",
        description="Act on Matrix as your own user",
    )
    parser.add_argument("--config", "-c", default=None,
                        help=f"Config file (default: {get_config_path()})")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--debug", action="store_true", help="Show debug info")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("associate", help="Log in once and store the puppet access token")

    p = sub.add_parser("resolve", help="Resolve a room alias to room ID")
    p.add_argument("alias", help="Room alias (e.g., #myroom:matrix.org)")

    p = sub.add_parser("members", help="List members of a room")
    p.add_argument("room", help="Room alias (#room:server) or room ID (!id:server)")

    p = sub.add_parser("aliases", help="List known aliases of a room")
    p.add_argument("room", help="Room alias (#room:server) or room ID (!id:server)")

    p = sub.add_parser("join", help="Join a room as the puppet")
    p.add_argument("room", help="Room alias (#room:server) or room ID (!id:server)")

    p = sub.add_parser("invite", help="Invite users to a room")
    p.add_argument("room", help="Room alias (#room:server) or room ID (!id:server)")
    p.add_argument("users", nargs="+", help="User IDs to invite (@user:server)")

    p = sub.add_parser("media", help="Turn an MXC URL into an HTTP URL")
    p.add_argument("url", help="MXC URL (mxc://server/media_id)")

    return parser


def main(argv=None):
    parser = get_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "resolve" and not args.alias.startswith("#"):
        fail("Alias must start with #", args.json)
    room = getattr(args, "room", None)
    if room is not None and not (is_room_alias(room) or is_room_id(room)):
        fail(f"Not a room alias or room ID: {room}", args.json)

    try:
        config = load_config(args.config, require_puppet=args.command != "associate")
    except ConfigError as e:
        if args.json:
            fail(str(e), as_json=True)
        print(f"Error: {e}", file=sys.stderr)
        print("Expected format:", file=sys.stderr)
        print(json.dumps(example_config(), indent=2), file=sys.stderr)
        sys.exit(1)

    if args.command == "media":
        url = mxc_to_http(
            args.url, config["bridge"]["homeserverUrl"], config["puppet"]["token"]
        )
        if url is None:
            fail(f"Not an MXC URL: {args.url}", args.json)
        print_result(args, {"mxc": args.url, "url": url})
        return

    try:
        result = asyncio.run(run(args, config))
    except KeyboardInterrupt:
        sys.exit(130)
    except (PuppetError, OSError) as e:
        fail(str(e), args.json)

    if "error" in result:
        fail(result["error"], args.json)

    print_result(args, result)
    if result.get("needs_realias"):
        sys.exit(EXIT_NEEDS_REALIAS)


if __name__ == "__main__":
    main()
