"""
Sandbox Server - public HTTP surface of the container.

API:
    GET  /sandbox-health     - Liveness of this server (not of the gateway)
    GET  /api/status         - Gateway status: running / not_responding / not_running / error
    POST /telegram-webhook   - Wake the gateway if needed and forward the update
                               to its Telegram webhook listener

Webhook failures are answered with 200 so Telegram does not enter a retry
storm; the real error is logged.
"""

import asyncio
import logging
from typing import Optional

import aiohttp
from aiohttp import web

import moltbot_constants as C
from gateway.supervisor import GatewaySupervisor, SupervisorState

logger = logging.getLogger(__name__)

# Not forwarded in either direction
_HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
})
# aiohttp already decoded the body, so encoding headers no longer apply
_RESPONSE_DROP_HEADERS = _HOP_BY_HOP_HEADERS | {"content-encoding"}


class GatewayNotReady(RuntimeError):
    """Raised when the gateway cannot be started or does not come up in time."""


class SandboxServer:
    """aiohttp application wrapping a GatewaySupervisor."""

    def __init__(
        self,
        supervisor: GatewaySupervisor,
        *,
        webhook_host: str = C.GATEWAY_HOST,
        webhook_port: int = C.TELEGRAM_WEBHOOK_PORT,
        forward_timeout: float = 60.0,
        status_timeout: float = C.STATUS_PROBE_TIMEOUT_SECONDS,
        status_poll_interval: float = 0.25,
    ):
        self.supervisor = supervisor
        self.webhook_base = f"http://{webhook_host}:{webhook_port}"
        self.forward_timeout = forward_timeout
        self.status_timeout = status_timeout
        self.status_poll_interval = status_poll_interval
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.forward_timeout),
                auto_decompress=True,
            )
        return self._session

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    # ----- Status -----

    async def _port_opens_within(self, timeout: float) -> bool:
        control = self.supervisor.control
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while True:
            remaining = deadline - loop.time()
            if await control.is_port_open(timeout=max(0.1, min(1.0, remaining))):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.status_poll_interval)

    async def gateway_status(self) -> dict:
        """Describe the gateway the way /api/status reports it.

        A matching process gets up to status_timeout to start listening
        before it is reported as not responding.
        """
        control = self.supervisor.control
        try:
            pids = await control.find_gateway_pids()
            if pids:
                port_open = await self._port_opens_within(self.status_timeout)
            else:
                port_open = await control.is_port_open(timeout=min(1.0, self.status_timeout))
            if port_open:
                status = {"ok": True, "status": "running"}
                if pids:
                    status["processId"] = pids[0]
                return status
            if pids:
                return {"ok": False, "status": "not_responding", "processId": pids[0]}
            return {"ok": False, "status": "not_running"}
        except Exception as e:
            logger.exception("Gateway status check failed")
            return {"ok": False, "status": "error", "error": str(e) or type(e).__name__}

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "service": "moltbot-sandbox",
            "gateway_port": C.GATEWAY_PORT,
        })

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(await self.gateway_status())

    # ----- Telegram webhook -----

    async def _wake_gateway(self) -> None:
        outcome = await self.supervisor.ensure_running()
        if outcome.state == SupervisorState.FAILED:
            raise GatewayNotReady(outcome.error or "gateway failed to start")
        if outcome.state != SupervisorState.PORT_OPEN and not await self.supervisor.wait_until_ready():
            raise GatewayNotReady("gateway did not start listening in time")

    async def _forward(self, request: web.Request) -> web.Response:
        body = await request.read()
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP_HEADERS}
        url = f"{self.webhook_base}{request.rel_url}"

        session = await self._get_session()
        async with session.request(request.method, url, data=body, headers=headers) as upstream:
            payload = await upstream.read()
            out_headers = {
                k: v for k, v in upstream.headers.items() if k.lower() not in _RESPONSE_DROP_HEADERS
            }
            return web.Response(status=upstream.status, body=payload, headers=out_headers)

    async def handle_telegram_webhook(self, request: web.Request) -> web.Response:
        logger.info("[TELEGRAM-WEBHOOK] Received webhook POST")
        try:
            await self._wake_gateway()
            response = await self._forward(request)
        except Exception:
            logger.error("[TELEGRAM-WEBHOOK] Forwarding failed", exc_info=True)
            return web.json_response({"ok": True, "error": "Gateway not ready"})
        logger.info("[TELEGRAM-WEBHOOK] Gateway response status: %s", response.status)
        return response

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()

        app.router.add_get("/sandbox-health", self.handle_health)
        app.router.add_get("/api/status", self.handle_status)
        app.router.add_post(C.TELEGRAM_WEBHOOK_PATH, self.handle_telegram_webhook)
        app.on_cleanup.append(self._on_cleanup)

        return app
