#!/usr/bin/env python3
"""
threadbox CLI.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    dial            start, serve    Start the threadbox API server
    recover         repair          Mark interrupted generations as failed
    engines         search-engines  List search engines / pick the active one
    ring            status, ping    Ping a running instance
    tone            banner          Print the banner
"""

import argparse
import asyncio

from threadbox import __version__

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║   ▀█▀ █ █ █▀█ █▀▀ ▄▀█ █▀▄ █▄▄ █▀█ ▀▄▀            ║
    ║    █  █▀█ █▀▄ ██▄ █▀█ █▄▀ █▄█ █▄█ █ █            ║
    ║                                                  ║
    ║   Every reply, block by block.        v""" + __version__ + r"""   ║
    ║                                                  ║
    ╚══════════════════════════════════════════════════╝
"""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the threadbox API server."""
    import uvicorn
    from threadbox.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(BANNER)
    print(f"  Dialing up on {host}:{port}")
    print(f"  Providers: {', '.join(p.get('name', '?') for p in cfg.get('providers', [])) or 'none'}")
    print(f"  Storage: {cfg['storage']['sqlite_path']}")
    print()

    uvicorn.run(
        "threadbox.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_recover(args):
    """Run the startup recovery pass once, without serving."""
    from threadbox.config import get_config
    from threadbox.main import _setup_logging, build_orchestrator

    cfg = get_config()
    _setup_logging(cfg)
    orchestrator = build_orchestrator(cfg)
    try:
        recovered = asyncio.run(orchestrator.recover_unfinished_messages())
    finally:
        orchestrator.close()
    print(f"  ✓  Recovered {recovered} interrupted message(s)")


def cmd_engines(args):
    """List search engines, optionally switching the active one."""
    from threadbox.config import get_config
    from threadbox.search.engines import SearchManager

    manager = SearchManager(get_config().get("search", {}))
    if args.use:
        try:
            manager.set_active_engine(args.use)
        except ValueError as e:
            print(f"  ✗  {e}")
            return
    active = manager.get_active_engine().name
    for engine in manager.get_engines():
        marker = "●" if engine["name"] == active else " "
        print(f"  {marker} {engine['name']:<12} {engine['label']}")


def cmd_ring(args):
    """Ping a running threadbox instance."""
    import httpx

    url = args.url or "http://localhost:8700"
    try:
        resp = httpx.get(f"{url}/api/v1/health", timeout=5)
        if resp.status_code == 200:
            data = resp.json()
            print(f"  ☎  Ring ring... {url} is UP (v{data.get('version', '?')})")
            for name, status in data.get("providers", {}).items():
                mark = "✓" if status.get("healthy") else "✗"
                print(f"  {mark}  provider {name}")
            print(f"  🔍 Search engine: {data.get('search_engine', '?')}")
        else:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
    except httpx.ConnectError:
        print(f"  ✗  Dead line, nothing at {url}")
    except Exception as e:
        print(f"  ✗  Error: {e}")


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name plus aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadbox",
        description="threadbox: conversation threads with streamed, searchable replies.",
        epilog="Run 'threadbox <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"threadbox {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["dial", "start", "serve"],
                 "Start the threadbox API server", cmd_dial, setup_dial)

    _add_command(sub, ["recover", "repair"],
                 "Mark generations interrupted by a crash as failed", cmd_recover)

    def setup_engines(p):
        p.add_argument("--use", default=None, help="Make this engine the active one")

    _add_command(sub, ["engines", "search-engines"],
                 "List search engines", cmd_engines, setup_engines)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="threadbox URL (default: http://localhost:8700)")

    _add_command(sub, ["ring", "status", "ping"],
                 "Ping a running threadbox instance", cmd_ring, setup_ring)

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
