from __future__ import annotations

import argparse
import json
import os
import sys
import threading
from typing import Any, List, Optional

from . import __version__
from .contracts.v1 import AppEntry, SnapshotMessage
from .daemon.client_ops import DaemonUnavailableError, connect_session_client, shutdown_session_server
from .daemon.serve_ops import DaemonAlreadyRunning
from .daemon.server import serve_forever
from .kernel.config import config_to_entry, load_config
from .paths import default_paths
from .util.conv import coerce_bool
from .util.obslog import setup_root_json_logging

SNAPSHOT_TIMEOUT_S = 5.0


def _env_flag(name: str, default: bool = False) -> bool:
    return coerce_bool(os.environ.get(name), default=default)


def _log_level(args: argparse.Namespace, default: str = "INFO") -> str:
    override = str(os.environ.get("TUIDOSCOPE_LOG_LEVEL") or "").strip()
    if override:
        return override.upper()
    if getattr(args, "debug", False) or _env_flag("TUIDOSCOPE_DEBUG"):
        return "DEBUG"
    return default


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _configured_entries() -> List[AppEntry]:
    loaded = load_config()
    return [config_to_entry(a) for a in loaded.config.apps]


def _find_entry(name_or_id: str, entries: List[AppEntry]) -> Optional[AppEntry]:
    for entry in entries:
        if entry.id == name_or_id:
            return entry
    for entry in entries:
        if entry.name == name_or_id:
            return entry
    return None


def cmd_daemon(args: argparse.Namespace) -> int:
    paths = default_paths()
    log_path = None if args.foreground else paths.log_path
    setup_root_json_logging(component="daemon", level=_log_level(args), log_path=log_path, force=True)
    try:
        return serve_forever(paths)
    except DaemonAlreadyRunning as e:
        print(f"tuidoscope: {e}", file=sys.stderr)
        return 1


def cmd_shutdown(args: argparse.Namespace) -> int:
    if shutdown_session_server(default_paths(), clear_session=bool(args.clear_session)):
        return 0
    print("tuidoscope: no session daemon is running", file=sys.stderr)
    return 1


def cmd_list(args: argparse.Namespace) -> int:
    try:
        client = connect_session_client(default_paths())
    except DaemonUnavailableError as e:
        print(f"tuidoscope: {e}", file=sys.stderr)
        return 1

    got = threading.Event()
    holder: List[SnapshotMessage] = []

    def _on_snapshot(msg: SnapshotMessage) -> None:
        holder.append(msg)
        got.set()

    client.on("snapshot", _on_snapshot)
    client.on("disconnect", got.set)
    client.listen()
    got.wait(SNAPSHOT_TIMEOUT_S)
    client.disconnect()
    if not holder:
        print("tuidoscope: no snapshot received", file=sys.stderr)
        return 1
    snap = holder[0]
    _print_json(
        {
            "activeTabId": snap.active_tab_id,
            "runningApps": [
                {"id": a.entry.id, "name": a.entry.name, "status": a.status, "runId": a.run_id}
                for a in snap.running_apps
            ],
        }
    )
    return 0


def _with_client(fn: Any) -> int:
    try:
        client = connect_session_client(default_paths())
    except DaemonUnavailableError as e:
        print(f"tuidoscope: {e}", file=sys.stderr)
        return 1
    try:
        fn(client)
    finally:
        client.disconnect()
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    entry = _find_entry(args.name_or_id, _configured_entries())
    if entry is None:
        print(f"tuidoscope: no configured app named {args.name_or_id!r}", file=sys.stderr)
        return 2
    return _with_client(lambda c: c.start(entry))


def cmd_stop(args: argparse.Namespace) -> int:
    return _with_client(lambda c: c.stop(args.id))


def cmd_send(args: argparse.Namespace) -> int:
    text = args.text
    if not args.no_newline:
        text += "\r"
    return _with_client(lambda c: c.send_input(args.id, text))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tuidoscope", description="Terminal session daemon and client")
    parser.add_argument("-v", "--version", action="version", version=f"tuidoscope {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("daemon", help="Run the session daemon")
    p.add_argument("--foreground", action="store_true", help="Log to stderr instead of the daemon log file")
    p.set_defaults(func=cmd_daemon)

    p = sub.add_parser(
        "shutdown",
        help="Stop the daemon and every app it runs",
        description=(
            "Stop the daemon and every app it runs. The running apps and active tab are saved "
            "and restored by the next daemon unless --clear-session is given."
        ),
    )
    p.add_argument("--clear-session", action="store_true", help="Forget the saved session instead of keeping it")
    p.set_defaults(func=cmd_shutdown)

    p = sub.add_parser("list", help="Show running apps")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("start", help="Start a configured app")
    p.add_argument("name_or_id")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("stop", help="Stop a running app")
    p.add_argument("id")
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("send", help="Type text into a running app")
    p.add_argument("id")
    p.add_argument("text")
    p.add_argument("-n", "--no-newline", action="store_true", help="Do not press enter after the text")
    p.set_defaults(func=cmd_send)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    if args.func is not cmd_daemon:
        setup_root_json_logging(component="cli", level=_log_level(args, default="WARNING"))
    return int(args.func(args))
