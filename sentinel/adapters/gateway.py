"""
Execution Gateway Adapter

Talks to the local execution gateway that runs commands and drives a
browser on the agent's behalf:
- POST /rpc {"method": "exec", ...}      run a shell command (bounty work, file reads)
- POST /rpc {"method": "browser", ...}   navigate / snapshot (explorer verification)
- GET  /health                           liveness probe for the health check

Auth: bearer token (GATEWAY_TOKEN). Without a token, exec/browser are
unavailable and read_file() returns "".
"""

import logging
import shlex
from typing import Any, Optional

import aiohttp

from ..decoding import decode_browser_response, decode_exec_response
from ..errors import GatewayError
from ..results import BrowserSnapshot, ExecResponse

logger = logging.getLogger("sentinel.adapter.gateway")

DEFAULT_GATEWAY_URL = "http://127.0.0.1:18789"


class GatewayClient:
    """Thin async RPC client for the execution gateway."""

    def __init__(self, base_url: str = DEFAULT_GATEWAY_URL, token: str = "", timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def is_configured(self) -> bool:
        return bool(self._token)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    # ============================================================
    # RPC
    # ============================================================

    async def rpc(self, method: str, params: dict) -> Any:
        """POST one RPC call, returning the decoded JSON body. Raises GatewayError."""
        if not self._token:
            raise GatewayError(f"GATEWAY_TOKEN is required for gateway {method}")

        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/rpc",
                json={"method": method, "params": params},
            ) as resp:
                if resp.status != 200:
                    raise GatewayError(f"Gateway {method} failed: HTTP {resp.status}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise GatewayError(f"Gateway {method} unreachable: {type(e).__name__}: {e}") from e
        except ValueError as e:
            # 200 with a non-JSON body (proxy error page, truncated reply)
            raise GatewayError(f"Gateway {method}: invalid JSON reply: {e}") from e

    async def exec(
        self,
        command: str,
        host: str = "gateway",
        timeout: int = 30,
        security: str = "normal",
    ) -> ExecResponse:
        payload = await self.rpc("exec", {
            "command": command,
            "host": host,
            "timeout": timeout,
            "security": security,
        })
        return decode_exec_response(payload)

    async def browser(self, action: str, url: Optional[str] = None) -> BrowserSnapshot:
        params = {"action": action}
        if url:
            params["url"] = url
        payload = await self.rpc("browser", params)
        return decode_browser_response(payload)

    # ============================================================
    # CONVENIENCE
    # ============================================================

    async def is_reachable(self) -> bool:
        """GET /health → True on HTTP 200, False on anything else."""
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}/health") as resp:
                return resp.status == 200
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.debug(f"Gateway health probe failed: {e}")
            return False

    async def read_file(self, path: str) -> str:
        """Contents of a file on the gateway host, or "" if it cannot be read."""
        if not self._token:
            return ""
        # ~ must stay unquoted for the remote shell to expand it
        target = "~/" + shlex.quote(path[2:]) if path.startswith("~/") else shlex.quote(path)
        try:
            result = await self.exec(f"cat {target}", timeout=5)
        except GatewayError as e:
            logger.debug(f"read_file({path}) failed: {e}")
            return ""
        return result.output if result.exit_code == 0 else ""
