"""
Gateway supervisor - converges the container to exactly one live gateway.

One supervisory cycle:

    UNKNOWN -> port open?            -> PORT_OPEN (done, no side effects)
            -> matching process?     -> STALE_PROCESS (kill it) / ABSENT
            -> restore backup, reconcile config, resolve command profile
            -> LAUNCHING             -> RUNNING, or FAILED if no binary

ensure_running() may be called redundantly and concurrently; launches are
serialized so only one cycle ever starts a process.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import moltbot_constants as C
from gateway.backup import BackupSynchronizer, RestoreReport
from gateway.command_profile import CommandProfile, CommandProfileResolver
from gateway.config import ConfigReconciler, ReconcileInputs
from gateway.process import GatewayBinaryNotFound, GatewayProcessControl
from gateway.settings import SandboxSettings

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    UNKNOWN = "unknown"
    PORT_OPEN = "port_open"
    STALE_PROCESS = "stale_process"
    ABSENT = "absent"
    LAUNCHING = "launching"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class SupervisorOutcome:
    state: SupervisorState
    launched: bool = False
    process: Any = None
    restore: Optional[RestoreReport] = None
    profile: Optional[CommandProfile] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in (SupervisorState.PORT_OPEN, SupervisorState.RUNNING)


class GatewaySupervisor:
    """
    Owns the gateway lifecycle for one supervisor process.

    Usage:
        supervisor = GatewaySupervisor(load_settings())
        outcome = await supervisor.ensure_running()
        if outcome.ok:
            await supervisor.wait_until_ready()
    """

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        control: Optional[GatewayProcessControl] = None,
        synchronizer: Optional[BackupSynchronizer] = None,
        reconciler: Optional[ConfigReconciler] = None,
        resolver: Optional[CommandProfileResolver] = None,
        inputs_factory: Callable[[], ReconcileInputs] = ReconcileInputs.from_env,
    ):
        self.settings = settings
        self.control = control or GatewayProcessControl(preferred_binary=settings.binary_path)
        self.synchronizer = synchronizer or BackupSynchronizer(settings)
        self.reconciler = reconciler or ConfigReconciler(settings.config_file, settings.template_file)
        self.resolver = resolver or CommandProfileResolver()
        self.inputs_factory = inputs_factory
        self.state = SupervisorState.UNKNOWN
        self.launch_count = 0
        self._process = None
        self._launch_lock = asyncio.Lock()

    @property
    def process(self):
        """The gateway process this supervisor started, if any."""
        return self._process

    def _own_process_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _finish(self, outcome: SupervisorOutcome) -> SupervisorOutcome:
        self.state = outcome.state
        return outcome

    async def _port_open(self) -> bool:
        return await self.control.is_port_open(timeout=self.settings.port_probe_timeout)

    async def ensure_running(self) -> SupervisorOutcome:
        """Make sure exactly one gateway is running, launching it if needed."""
        self.state = SupervisorState.UNKNOWN
        if await self._port_open():
            logger.info("Gateway port %s is already reachable", C.GATEWAY_PORT)
            return self._finish(SupervisorOutcome(SupervisorState.PORT_OPEN))

        async with self._launch_lock:
            # Another caller may have launched while we waited for the lock
            if await self._port_open():
                return self._finish(SupervisorOutcome(SupervisorState.PORT_OPEN))
            if self._own_process_alive():
                logger.debug("Gateway launch already in progress (pid %s)", self._process.pid)
                return self._finish(SupervisorOutcome(SupervisorState.RUNNING, process=self._process))
            return await self._converge()

    async def _converge(self) -> SupervisorOutcome:
        pids = await self.control.find_gateway_pids()
        if pids:
            self.state = SupervisorState.STALE_PROCESS
            logger.warning("Found stale gateway process %s without listening port; terminating it", pids)
            if not await self.control.terminate_gateway():
                logger.warning("Continuing despite failed termination of stale gateway")
        else:
            self.state = SupervisorState.ABSENT

        restore = await asyncio.to_thread(self.synchronizer.restore)
        inputs = self.inputs_factory()
        await asyncio.to_thread(self.reconciler.run, inputs)

        try:
            binary = self.control.require_binary()
        except GatewayBinaryNotFound as e:
            logger.error("ERROR: %s", e)
            return self._finish(SupervisorOutcome(SupervisorState.FAILED, restore=restore, error=str(e)))

        profile = await self.resolver.resolve(binary)
        argv = profile.build_args(binary, C.GATEWAY_PORT, inputs.gateway_token)

        self.control.clear_lock_files(self.settings.lock_files)
        env = dict(os.environ)
        # Newer gateway versions read the config path from either variable
        env["OPENCLAW_CONFIG_PATH"] = str(self.settings.config_file)
        env["CLAWDBOT_CONFIG_PATH"] = str(self.settings.config_file)

        self.state = SupervisorState.LAUNCHING
        if inputs.gateway_token:
            logger.info("Starting gateway with token auth (%s)...", profile.mode)
        else:
            logger.info("Starting gateway with device pairing, no token (%s)...", profile.mode)
        try:
            process = await self.control.launch(argv, env)
        except OSError as e:
            logger.error("Failed to start gateway: %s", e)
            return self._finish(SupervisorOutcome(
                SupervisorState.FAILED, restore=restore, profile=profile, error=str(e),
            ))

        self._process = process
        self.launch_count += 1
        logger.info("Gateway started (pid %s), will listen on port %s", process.pid, C.GATEWAY_PORT)
        return self._finish(SupervisorOutcome(
            SupervisorState.RUNNING, launched=True, process=process, restore=restore, profile=profile,
        ))

    async def wait_until_ready(self, timeout: Optional[float] = None, interval: float = 0.5) -> bool:
        """Wait for the gateway port to accept connections.

        Returns False on timeout, or early if the process this supervisor
        launched exits before it starts listening.
        """
        if timeout is None:
            timeout = self.settings.startup_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while True:
            if await self._port_open():
                return True
            if self._process is not None and self._process.returncode is not None:
                logger.error("Gateway exited with status %s before listening", self._process.returncode)
                return False
            if loop.time() >= deadline:
                logger.warning("Gateway not reachable after %ss", timeout)
                return False
            await asyncio.sleep(interval)
