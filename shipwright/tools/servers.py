"""Persisted catalog of attached tool servers."""

import json
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel

from shipwright.config import Config, get_config
from shipwright.exceptions import ConfigurationError, ToolServerNotFoundError, TransportError
from shipwright.logging import get_logger
from shipwright.tools.registry import HttpToolServer, RetryPolicy, ToolServerRegistry

log = get_logger(__name__)

CATALOG_FILENAME = "mcp-servers.json"


class ServerEntry(BaseModel):
    """Attached tool server."""

    id: str
    url: str


class ServerHealth(BaseModel):
    """Health probe result."""

    id: str
    ok: bool
    status: int | None = None
    error: str | None = None


class ServerCatalog:
    """JSON list of `{id, url}` kept in the project state directory."""

    def __init__(self, path: Path | str | None = None, config: Config | None = None):
        if path is None:
            cfg = config or get_config()
            path = cfg.state_dir() / CATALOG_FILENAME
        self.path = Path(path).expanduser()

    def entries(self) -> list[ServerEntry]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Server catalog unreadable", path=str(self.path), error=str(e))
            return []
        if not isinstance(raw, list):
            return []
        return [ServerEntry(**item) for item in raw if isinstance(item, dict) and item.get("id")]

    def _save(self, entries: list[ServerEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [entry.model_dump() for entry in entries]
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get(self, server_id: str) -> ServerEntry:
        for entry in self.entries():
            if entry.id == server_id:
                return entry
        raise ToolServerNotFoundError(server_id)

    def attach(self, server_id: str, url: str) -> ServerEntry:
        """Add a server; ids are unique."""
        server_id = server_id.strip()
        url = url.strip()
        if not server_id or not url:
            raise ConfigurationError("Server id and url are required")
        entries = self.entries()
        if any(entry.id == server_id for entry in entries):
            raise ConfigurationError(f"Tool server already attached: {server_id}")
        entry = ServerEntry(id=server_id, url=url)
        entries.append(entry)
        self._save(entries)
        log.info("Attached tool server", server=server_id, url=url)
        return entry

    def detach(self, server_id: str) -> bool:
        """Remove a server; returns whether anything was removed."""
        entries = self.entries()
        remaining = [entry for entry in entries if entry.id != server_id]
        if len(remaining) == len(entries):
            return False
        self._save(remaining)
        log.info("Detached tool server", server=server_id)
        return True

    def build_registry(
        self,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        config: Config | None = None,
    ) -> ToolServerRegistry:
        """Create an HTTP-backed registry for every attached server."""
        cfg = config or get_config()
        policy = policy or RetryPolicy.from_config(cfg.bridge)
        registry = ToolServerRegistry()
        for entry in self.entries():
            registry.register(
                HttpToolServer(
                    entry.id,
                    entry.url,
                    policy=policy,
                    client=client,
                    fallback_prefix=cfg.bridge.fallback_prefix,
                )
            )
        return registry

    async def health(
        self,
        server_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> list[ServerHealth]:
        """Probe servers; a status below 500 counts as reachable."""
        targets = [entry for entry in self.entries() if server_id is None or entry.id == server_id]
        results: list[ServerHealth] = []
        own_client = client is None
        client = client or httpx.AsyncClient(timeout=10.0)
        try:
            for entry in targets:
                try:
                    response = await client.head(entry.url)
                except httpx.RequestError as e:
                    results.append(ServerHealth(id=entry.id, ok=False, error=str(e)))
                    continue
                status = response.status_code
                results.append(ServerHealth(id=entry.id, ok=200 <= status < 500, status=status))
        finally:
            if own_client:
                await client.aclose()
        return results

    async def list_tools(
        self,
        server_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Tool listings per server; unreachable servers list no tools."""
        registry = self.build_registry(client=client)
        out: dict[str, list[dict[str, Any]]] = {}
        try:
            for sid in registry.list_servers():
                if server_id is not None and sid != server_id:
                    continue
                try:
                    out[sid] = await registry.get(sid).list_tools()
                except TransportError as e:
                    log.warning("Tool listing failed", server=sid, error=str(e))
                    out[sid] = []
        finally:
            await registry.close()
        return out
