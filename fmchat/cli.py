#!/usr/bin/env python3
"""
fmchat CLI: talk to the on-device model from a terminal.

Every command has a short name and standard aliases:

    NAME            ALIASES             WHAT IT DOES
    ----            -------             ----------------------------------
    talk            chat, ask           Chat with the model (REPL or one-shot)
    ring            health, status      Check the server, optionally keep polling
    tune            settings            Show or edit advanced settings
    flash           info, config        Show config and effective settings
    tap             log, tail           Watch the wire log
    tone            banner              Print the banner
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from fmchat import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║   ███████ ███    ███                             ║
    ║   ██      ████  ████     c h a t                 ║
    ║   █████   ██ ████ ██                             ║
    ║   ██      ██  ██  ██                             ║
    ║   ██      ██      ██                             ║
    ║                                                  ║
    ║   On-device model. Off-the-record refusals.      ║
    ║                                          v""" + __version__ + r"""  ║
    ╚══════════════════════════════════════════════════╝
"""

EXIT_WORDS = ("/exit", "/quit", "exit", "quit")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_cfg() -> dict:
    from fmchat.config import DEFAULTS, get_config
    try:
        return get_config()
    except FileNotFoundError as e:
        print(f"  ⚠  {e} — using built-in defaults", file=sys.stderr)
        return DEFAULTS


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "WARNING")).upper(), logging.WARNING)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _make_backend(cfg: dict, url: str | None = None):
    from fmchat.backends.local import LocalLLMBackend
    srv = cfg["server"]
    return LocalLLMBackend(
        url=url or srv["url"],
        timeout=srv.get("timeout", 120),
        health_timeout=srv.get("health_timeout", 3),
    )


def _settings_store(cfg: dict):
    from fmchat.settings import SettingsStore
    return SettingsStore(cfg["settings"]["path"])


def _print_setup(cfg: dict):
    print("  ✗  Model server is not available.")
    print("     Start it with:")
    print()
    print(f"       {cfg['server']['setup_command']}")
    print()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _run_turn(session, text: str, store) -> None:
    """Stream one reply to stdout. Ctrl-C cancels the reply, not the program."""
    from fmchat.session import TurnStatus

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
        handler_set = True
    except (NotImplementedError, RuntimeError):
        handler_set = False

    print("  ◀ ", end="", flush=True)
    streamed = []

    def show(fragment: str):
        streamed.append(fragment)
        print(fragment, end="", flush=True)

    try:
        outcome = await session.submit(text, on_fragment=show, settings=store.effective())
    finally:
        if handler_set:
            loop.remove_signal_handler(signal.SIGINT)

    if outcome.status == TurnStatus.SUCCESS:
        if outcome.filtered:
            # Blocked replies stream nothing; show the fallback text instead
            if not "".join(streamed).strip():
                print(outcome.turn.content, end="")
            print("\n  \033[95m[filtered — left out of future prompts]\033[0m")
        else:
            print()
    elif outcome.status == TurnStatus.CANCELLED:
        print("\n  \033[2m[stopped]\033[0m")
    else:
        print(f"\n  \033[91m{outcome.turn.content if outcome.turn else outcome.error}\033[0m")
        print(f"  \033[2m({outcome.error})\033[0m")
    print()


async def _talk(args, cfg: dict) -> int:
    from fmchat.backends.health import HealthMonitor
    from fmchat.session import ChatSession
    from fmchat.wiretap import WireLog

    backend = _make_backend(cfg, args.url)
    monitor = HealthMonitor(backend, poll_interval=cfg["server"].get("poll_interval", 2))

    if not await monitor.check():
        _print_setup(cfg)
        if not args.wait:
            return 1
        print("  Waiting for the server... (Ctrl-C to give up)")
        await monitor.wait_until_available()

    health = monitor.last_health
    store = _settings_store(cfg)
    wire = WireLog(cfg["wiretap"]["path"]) if cfg["wiretap"].get("enabled", True) else None
    session = ChatSession(backend, wire=wire)

    try:
        if args.message:
            await _run_turn(session, " ".join(args.message), store)
            return 0

        print(f"  ☎  Connected to {backend.url} ({health.model if health else '?'})")
        print("     /clear to start over, /exit to hang up. Ctrl-C stops a reply.\n")
        while True:
            try:
                text = input("  ▶ ")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text.lower() in EXIT_WORDS:
                break
            if text == "/clear":
                session.clear()
                print("  [conversation cleared]\n")
                continue
            if not await backend.is_available():
                print("  ⚠  Connection lost — restart the server to continue:")
                print(f"       {cfg['server']['setup_command']}\n")
                continue
            await _run_turn(session, text, store)
    finally:
        if wire:
            wire.close()
    print("  [line disconnected]")
    return 0


def cmd_talk(args):
    """Chat with the model."""
    cfg = _load_cfg()
    _setup_logging(cfg)
    if not args.message:
        print(BANNER)
    try:
        code = asyncio.run(_talk(args, cfg))
    except KeyboardInterrupt:
        print("\n  [line disconnected]")
        code = 0
    sys.exit(code)


async def _ring(args, cfg: dict) -> int:
    from fmchat.backends.health import AppState, HealthMonitor

    backend = _make_backend(cfg, args.url)

    def report(mon):
        h = mon.last_health
        if mon.connected and h:
            print(f"  ☎  {backend.url} is UP — model: {h.model or '?'} ({h.status or 'ok'})")
        elif mon.state == AppState.SETUP:
            print(f"  ✗  Dead line — nothing available at {backend.url}")
        else:
            print(f"  ⚠  Lost the line to {backend.url} — reconnecting...")

    monitor = HealthMonitor(
        backend,
        poll_interval=cfg["server"].get("poll_interval", 2),
        on_change=report if args.watch else None,
    )
    if args.watch:
        await monitor.run()
        return 0

    ok = await monitor.check()
    report(monitor)
    if not ok:
        print(f"     Start it with: {cfg['server']['setup_command']}")
    return 0 if ok else 1


def cmd_ring(args):
    """Check the model server health."""
    cfg = _load_cfg()
    _setup_logging(cfg)
    try:
        code = asyncio.run(_ring(args, cfg))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


def _print_settings(s, header: str = "Advanced settings"):
    print(f"  {header}: {'enabled' if s.enabled else 'disabled (defaults in use)'}")
    print("  ├─ System prompt:")
    print(f"  │    {s.system_prompt}")
    print("  └─ Refusal prefixes:")
    for p in s.refusal_prefixes:
        print(f"       • {p!r}")


def cmd_tune(args):
    """Show or edit advanced settings."""
    from fmchat.settings import AdvancedSettings

    cfg = _load_cfg()
    store = _settings_store(cfg)

    if args.disable or args.reset:
        store.toggle(False)
    elif args.enable or args.system_prompt is not None or args.prefix:
        current = store.toggle(True)
        prefixes = list(current.refusal_prefixes)
        if args.prefix:
            prefixes = prefixes + [p for p in args.prefix if p not in prefixes]
        store.update(AdvancedSettings(
            enabled=True,
            system_prompt=args.system_prompt if args.system_prompt is not None else current.system_prompt,
            refusal_prefixes=prefixes,
        ))

    _print_settings(store.settings)
    print(f"\n  Stored at: {store.path}")


def cmd_flash(args):
    """Show config at a glance."""
    cfg = _load_cfg()
    srv = cfg["server"]
    wt = cfg["wiretap"]

    print(BANNER)
    print("  Configuration")
    print(f"  ├─ Server:        {srv['url']}")
    print(f"  ├─ Timeout:       {srv.get('timeout')}s (health {srv.get('health_timeout')}s)")
    print(f"  ├─ Poll interval: {srv.get('poll_interval')}s")
    print(f"  ├─ Wire log:      {wt['path'] if wt.get('enabled', True) else 'disabled'}")
    print(f"  ├─ Settings file: {cfg['settings']['path']}")
    print(f"  └─ Log level:     {cfg['logging'].get('level', 'WARNING')}")
    print()
    _print_settings(_settings_store(cfg).settings)


def cmd_tap(args):
    """Watch the wire log."""
    from fmchat.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fmchat",
        description="fmchat — chat with a local on-device model.",
        epilog=(
            "Each command has aliases: 'fmchat talk' and 'fmchat chat' are the same.\n"
            "Run 'fmchat <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"fmchat {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_talk(p):
        p.add_argument("message", nargs="*", help="Send one message and exit (omit for the REPL)")
        p.add_argument("--url", "-u", default=None, help="Override server URL")
        p.add_argument("--wait", "-w", action="store_true", help="Poll until the server is up")

    _add_command(sub, ["talk", "chat", "ask"], "Chat with the model", cmd_talk, setup_talk)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="Override server URL")
        p.add_argument("--watch", action="store_true", help="Keep polling and report changes")

    _add_command(sub, ["ring", "health", "status", "ping"],
                 "Check the model server health", cmd_ring, setup_ring)

    def setup_tune(p):
        g = p.add_mutually_exclusive_group()
        g.add_argument("--enable", action="store_true", help="Enable advanced settings")
        g.add_argument("--disable", action="store_true", help="Disable and reset to defaults")
        g.add_argument("--reset", action="store_true", help="Same as --disable")
        p.add_argument("--system-prompt", default=None, help="Replace the system prompt")
        p.add_argument("--prefix", action="append", default=None,
                       help="Add a refusal prefix (can specify multiple times)")

    _add_command(sub, ["tune", "settings"], "Show or edit advanced settings", cmd_tune, setup_tune)

    _add_command(sub, ["flash", "info", "config"], "Show config at a glance", cmd_flash)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant"], default=None, help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Watch the wire log", cmd_tap, setup_tap)

    _add_command(sub, ["tone", "banner"], "Print the banner", cmd_tone)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
