"""
Process-level view of the openclaw gateway inside the container.

The listening port is the authoritative liveness signal. The process table
(pgrep/pkill on the gateway's command line) is only used to find and clear
stale instances that hold no port.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

import moltbot_constants as C

logger = logging.getLogger(__name__)


class GatewayBinaryNotFound(RuntimeError):
    """Raised when no openclaw binary can be located."""


async def is_port_open(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to host:port succeeds within timeout."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def _run(argv: Sequence[str], timeout: float) -> Optional[tuple]:
    """Run argv and return (returncode, stdout), or None if it could not run."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug("Could not run %s: %s", argv[0], e)
        return None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.debug("%s timed out after %ss", argv[0], timeout)
        return None
    return proc.returncode, (stdout or b"").decode("utf-8", errors="replace")


class GatewayProcessControl:
    """
    Probes, reaps and launches the gateway process.

    All methods are safe to call when the gateway is absent.
    """

    def __init__(
        self,
        host: str = C.GATEWAY_HOST,
        port: int = C.GATEWAY_PORT,
        pattern: str = C.GATEWAY_PROCESS_PATTERN,
        preferred_binary: str = C.PREFERRED_GATEWAY_BINARY,
        command_timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.pattern = pattern
        self.preferred_binary = preferred_binary
        self.command_timeout = command_timeout

    # ----- Liveness -----

    async def is_port_open(self, timeout: float = C.PORT_PROBE_TIMEOUT_SECONDS) -> bool:
        return await is_port_open(self.host, self.port, timeout)

    # ----- Process table -----

    async def find_gateway_pids(self) -> List[int]:
        result = await _run(["pgrep", "-f", self.pattern], self.command_timeout)
        if result is None:
            return []
        returncode, stdout = result
        if returncode != 0:
            return []
        pids = []
        for line in stdout.split():
            if line.isdigit() and int(line) != os.getpid():
                pids.append(int(line))
        return pids

    async def terminate_gateway(self, settle_seconds: float = 1.0) -> bool:
        """Best-effort kill of every process matching the gateway signature."""
        result = await _run(["pkill", "-f", self.pattern], self.command_timeout)
        if result is None or result[0] not in (0, 1):
            logger.warning("Failed to terminate stale gateway process (pkill result: %s)",
                           None if result is None else result[0])
            return False
        if settle_seconds:
            await asyncio.sleep(settle_seconds)
        return True

    # ----- Launch -----

    def locate_binary(self) -> Optional[str]:
        """Prefer the image binary path over whatever PATH resolves to."""
        if self.preferred_binary and os.access(self.preferred_binary, os.X_OK):
            return self.preferred_binary
        return shutil.which(C.GATEWAY_BINARY_NAME)

    def require_binary(self) -> str:
        binary = self.locate_binary()
        if not binary:
            raise GatewayBinaryNotFound(f"{C.GATEWAY_BINARY_NAME} binary not found")
        return binary

    @staticmethod
    def clear_lock_files(paths: Iterable[Path]) -> None:
        for path in paths:
            try:
                Path(path).unlink()
                logger.debug("Removed stale lock file %s", path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not remove lock file %s: %s", path, e)

    async def launch(self, argv: Sequence[str], env: Optional[Mapping[str, str]] = None):
        """Start the gateway in its own session and return the process handle."""
        return await asyncio.create_subprocess_exec(
            *argv,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
