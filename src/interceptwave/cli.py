"""
Intercept Wave command line entry point.

Starts the proxy groups of a configuration file and serves them until
interrupted.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from . import __version__
from .common.logging_utils import configure_logging
from .config.loader import FileConfigSource
from .config.models import ServerSettings
from .orchestrator import OrchestratorError, ServerOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='interceptwave',
        description="Intercept Wave - mock and intercept proxy for HTTP and WebSocket traffic",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start every enabled group of a configuration file
  %(prog)s --config interceptwave.json

  # Start two groups only
  %(prog)s --config interceptwave.yaml --group api --group socket

  # Listen on all interfaces with debug logging
  %(prog)s --config interceptwave.json --host 0.0.0.0 --log-level debug
        """
    )
    parser.add_argument('-c', '--config', default='interceptwave.json',
                        help='Configuration file, JSON or YAML (default: interceptwave.json; created if missing)')
    parser.add_argument('-g', '--group', action='append', metavar='ID',
                        help='Start only this group id (repeatable; default: all enabled groups)')
    parser.add_argument('--host', default='127.0.0.1', help='Host to bind (default: 127.0.0.1)')
    parser.add_argument('--log-level', default='info', choices=['debug', 'info', 'warning', 'error'],
                        help='Log level (default: info)')
    parser.add_argument('-q', '--quiet', action='store_true', help='Only log warnings and errors')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


async def _start_selected(orchestrator: ServerOrchestrator, group_ids: List[str]) -> List[str]:
    started = []
    for group_id in group_ids:
        try:
            started.append(await orchestrator.start_group_by_id(group_id))
        except OrchestratorError as e:
            print(f"⚠️  {e}", file=sys.stderr)
    if not started:
        raise OrchestratorError('None of the requested groups could be started')
    return started


async def _wait_for_shutdown() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead.
            pass
    await stop_event.wait()


async def run(args: argparse.Namespace) -> int:
    """Start the requested groups, serve until a signal arrives, then stop them."""
    source = FileConfigSource(args.config)
    settings = ServerSettings(host=args.host, log_level=args.log_level)
    orchestrator = ServerOrchestrator(source, settings)

    print(f"🌊 Intercept Wave {__version__}")
    print(f"   Config: {source.path}")

    try:
        if args.group:
            urls = await _start_selected(orchestrator, args.group)
        else:
            urls = [await orchestrator.start()]
    except OrchestratorError as e:
        print(f"❌ {e}", file=sys.stderr)
        await orchestrator.stop_all()
        return 1

    for url in urls:
        print(f"   ✅ {url}")
    print("   Press Ctrl+C to stop")
    print()

    try:
        await _wait_for_shutdown()
    finally:
        await orchestrator.stop_all()
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging('warning' if args.quiet else args.log_level)

    try:
        exit_code = asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n🛑 Stopped")
        exit_code = 0

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
