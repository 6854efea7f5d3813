"""Tool server capability interface, HTTP transport and registry."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from shipwright.config import BridgeConfig, get_config
from shipwright.exceptions import ToolServerNotFoundError, TransportError
from shipwright.logging import get_logger

log = get_logger(__name__)


async def _default_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass
class RetryPolicy:
    """Per-endpoint retry behavior for tool server calls."""

    backoff_ms: list[int] = field(default_factory=lambda: [1000, 2000, 4000])
    retry_status: frozenset[int] = frozenset({502, 503, 504, 429})
    fatal_status: frozenset[int] = frozenset({400, 401, 403, 404})
    timeout_seconds: float = 30.0
    sleep: Callable[[float], Awaitable[None]] = _default_sleep

    @classmethod
    def from_config(cls, bridge: BridgeConfig | None = None) -> "RetryPolicy":
        bridge = bridge or get_config().bridge
        return cls(
            backoff_ms=list(bridge.backoff_ms),
            retry_status=frozenset(bridge.retry_status),
            fatal_status=frozenset(bridge.fatal_status),
            timeout_seconds=float(bridge.timeout_seconds),
        )


class ToolServer(ABC):
    """Something that can run named tools."""

    server_id: str = ""

    @abstractmethod
    async def invoke(self, name: str, input: dict[str, Any]) -> Any:
        """Run a tool and return its decoded result.

        Raises:
            TransportError if the call could not be completed
        """
        pass

    async def list_tools(self) -> list[dict[str, Any]]:
        return []

    async def close(self) -> None:
        return None


class HttpToolServer(ToolServer):
    """Tool server reached over HTTP at `<base>/tools/<name>`."""

    def __init__(
        self,
        server_id: str,
        base_url: str,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        fallback_prefix: str = ".well-known/mcp",
    ):
        self.server_id = server_id
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy.from_config()
        self.fallback_prefix = fallback_prefix.strip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.policy.timeout_seconds,
            follow_redirects=True,
        )

    def endpoints(self, suffix: str) -> list[str]:
        """Primary endpoint followed by the well-known fallback."""
        return [
            f"{self.base_url}/{suffix}",
            f"{self.base_url}/{self.fallback_prefix}/{suffix}",
        ]

    async def _post_with_retry(self, endpoint: str, body: dict[str, Any]) -> Any:
        """POST to one endpoint, retrying transient failures on the backoff schedule."""
        attempt = 0
        while True:
            retryable = False
            try:
                response = await self.client.post(
                    endpoint,
                    json=body,
                    timeout=self.policy.timeout_seconds,
                )
            except httpx.RequestError as e:
                error = TransportError(f"Request to {endpoint} failed: {e}")
                retryable = True
            else:
                if response.is_success:
                    try:
                        return response.json()
                    except ValueError:
                        return response.text
                status = response.status_code
                error = TransportError(f"HTTP {status} from {endpoint}", status_code=status)
                if status not in self.policy.fatal_status:
                    retryable = status in self.policy.retry_status

            if not retryable or attempt >= len(self.policy.backoff_ms):
                raise error
            delay_ms = self.policy.backoff_ms[attempt]
            attempt += 1
            log.info(
                "Retrying tool call",
                server=self.server_id,
                endpoint=endpoint,
                attempt=attempt,
                delay_ms=delay_ms,
                error=str(error),
            )
            await self.policy.sleep(delay_ms / 1000.0)

    async def invoke(self, name: str, input: dict[str, Any]) -> Any:
        """Call a tool, falling back to the secondary endpoint on failure."""
        last_error: TransportError | None = None
        for endpoint in self.endpoints(f"tools/{quote(name, safe='')}"):
            try:
                return await self._post_with_retry(endpoint, {"input": input})
            except TransportError as e:
                log.warning("Tool endpoint failed", server=self.server_id, endpoint=endpoint, error=str(e))
                last_error = e
        raise last_error or TransportError("Tool call failed")

    async def list_tools(self) -> list[dict[str, Any]]:
        """Fetch the tool listing, accepting a bare list or `{"tools": [...]}`."""
        last_error: Exception | None = None
        for endpoint in self.endpoints("tools"):
            try:
                response = await self.client.get(endpoint, timeout=self.policy.timeout_seconds)
            except httpx.RequestError as e:
                last_error = e
                continue
            if not response.is_success:
                last_error = TransportError(f"HTTP {response.status_code} from {endpoint}", response.status_code)
                continue
            try:
                data = response.json()
            except ValueError as e:
                last_error = e
                continue
            if isinstance(data, list):
                return data
            if isinstance(data, dict) and isinstance(data.get("tools"), list):
                return data["tools"]
        if isinstance(last_error, TransportError):
            raise last_error
        raise TransportError(f"Tool listing failed for {self.server_id}: {last_error}")

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class ToolServerRegistry:
    """Registry of tool servers keyed by server id."""

    def __init__(self, servers: list[ToolServer] | None = None):
        self._servers: dict[str, ToolServer] = {}
        for server in servers or []:
            self.register(server)

    def register(self, server: ToolServer) -> None:
        """Register a tool server."""
        if not server.server_id:
            raise ValueError("Tool server must have an id")
        log.debug("Registering tool server", server=server.server_id)
        self._servers[server.server_id] = server

    def unregister(self, server_id: str) -> None:
        self._servers.pop(server_id, None)

    def has_server(self, server_id: str) -> bool:
        return server_id in self._servers

    def get(self, server_id: str) -> ToolServer:
        """Get a server by id.

        Raises:
            ToolServerNotFoundError if not found
        """
        if server_id not in self._servers:
            raise ToolServerNotFoundError(server_id)
        return self._servers[server_id]

    def list_servers(self) -> list[str]:
        return list(self._servers)

    async def close(self) -> None:
        for server in self._servers.values():
            await server.close()
