"""
Sandbox entry point - boots and serves the openclaw gateway in a container.

Usage:
    # Cold boot: restore, reconcile, launch and stay attached to the gateway
    moltbot-sandbox start

    # Public HTTP surface with lazy gateway activation
    moltbot-sandbox serve --port 8080

    # One-off status check / backup to the R2 mount
    moltbot-sandbox status
    moltbot-sandbox backup
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from gateway.backup import BackupSynchronizer
from gateway.sandbox_server import SandboxServer
from gateway.settings import MOLTBOT_HOME, SandboxSettings, load_settings
from gateway.supervisor import GatewaySupervisor, SupervisorState

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def load_environment(home: Path = MOLTBOT_HOME) -> None:
    """Load ~/.moltbot/.env, then a project .env; existing variables win."""
    env_path = home / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "sandbox.log", maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8",
        )
    except OSError as e:
        logger.warning("File logging disabled (%s): %s", log_dir, e)
        return
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _start(settings: SandboxSettings, detach: bool) -> int:
    supervisor = GatewaySupervisor(settings)
    outcome = await supervisor.ensure_running()

    if outcome.state == SupervisorState.PORT_OPEN:
        logger.info("Gateway already running, exiting.")
        return 0
    if outcome.state == SupervisorState.FAILED:
        return 1
    if detach or outcome.process is None:
        return 0

    returncode = await _wait_attached(outcome.process)
    logger.info("Gateway exited with status %s", returncode)
    return returncode


def _relay_signal(process, sig: int) -> None:
    logger.info("Forwarding %s to gateway (pid %s)", signal.Signals(sig).name, process.pid)
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        pass


async def _wait_attached(process) -> int:
    """Wait on the gateway, passing SIGTERM and SIGINT through to it.

    The gateway runs in its own session, so a stop request aimed at this
    process would otherwise leave it orphaned.
    """
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _relay_signal, process, sig)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    try:
        return await process.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _status(settings: SandboxSettings) -> int:
    server = SandboxServer(GatewaySupervisor(settings))
    status = await server.gateway_status()
    print(json.dumps(status, indent=2))
    return 0 if status.get("ok") else 1


def _backup(settings: SandboxSettings) -> int:
    report = BackupSynchronizer(settings).backup()
    return 0 if report.ok else 1


def _serve(settings: SandboxSettings, host: str, port: int) -> int:
    from aiohttp import web

    server = SandboxServer(GatewaySupervisor(settings))
    logger.info("Starting sandbox server on %s:%s", host, port)
    web.run_app(server.create_app(), host=host, port=port, print=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moltbot-sandbox",
        description="Run and supervise the openclaw gateway inside the sandbox container",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Restore, configure and launch the gateway")
    start.add_argument("--detach", action="store_true",
                       help="Return once the gateway is launched instead of waiting on it")

    serve = sub.add_parser("serve", help="Run the public HTTP server with lazy gateway activation")
    serve.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    serve.add_argument("--port", type=int, default=8080, help="Port to listen on")

    sub.add_parser("status", help="Print gateway status as JSON")
    sub.add_parser("backup", help="Mirror local state to the R2 mount")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_environment()
    settings = load_settings()
    setup_logging(settings.log_dir, verbose=args.verbose)

    if args.command == "start":
        return asyncio.run(_start(settings, args.detach))
    if args.command == "status":
        return asyncio.run(_status(settings))
    if args.command == "backup":
        return _backup(settings)
    return _serve(settings, args.host, args.port)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
