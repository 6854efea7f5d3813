"""Tool-call bridge: parse, authorize and dispatch model-issued tool calls."""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from shipwright.exceptions import (
    ConfigurationError,
    PermissionDeniedError,
    ProtocolError,
    ToolServerNotFoundError,
    TransportError,
)
from shipwright.logging import get_logger
from shipwright.permissions import (
    CONFIRM,
    DENY,
    ConfirmCallback,
    PermissionEngine,
    PermissionQuery,
    request_confirmation,
)
from shipwright.tools.registry import ToolServerRegistry

log = get_logger(__name__)

BRIDGE_PERMISSION_TOOL = "mcp"

_FENCE_RE = re.compile(r"^```([A-Za-z0-9_+-]*)[ \t]*\n(.*?)^```", re.MULTILINE | re.DOTALL)


@dataclass
class ToolCallRequest:
    """Tool call requested by the model."""

    server: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{self.server}:{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {"server": self.server, "name": self.name, "input": self.input}


@dataclass
class ToolCallResult:
    """Outcome of a bridged tool call."""

    request: ToolCallRequest
    success: bool
    value: Any = None
    error: str | None = None
    denied: bool = False

    def to_content(self) -> str:
        """Text stored as the tool_result message."""
        if self.success:
            if isinstance(self.value, str):
                return self.value
            return json.dumps(self.value, ensure_ascii=False)
        if self.denied:
            return f"PermissionDenied: {self.error}"
        return f"Error: {self.error}"


def _candidate_blocks(text: str) -> list[str]:
    """Bodies of json/unlabelled fenced blocks that mention `tool_call`."""
    blocks = []
    for match in _FENCE_RE.finditer(text or ""):
        language = match.group(1).strip().lower()
        body = match.group(2)
        if language not in ("", "json"):
            continue
        if '"tool_call"' in body:
            blocks.append(body)
    return blocks


def parse_tool_call_block(text: str) -> ToolCallRequest | None:
    """Parse the single tool-call block in model output.

    Zero blocks, several blocks, invalid JSON or a body that is not exactly
    ``{"tool_call": {...}}`` all mean "no tool call". Missing server or name
    are left empty for the bridge to reject.
    """
    blocks = _candidate_blocks(text)
    if len(blocks) != 1:
        if len(blocks) > 1:
            log.info("Ignoring response with multiple tool-call blocks", count=len(blocks))
        return None
    try:
        data = json.loads(blocks[0])
    except json.JSONDecodeError as e:
        log.info("Ignoring malformed tool-call block", error=str(e))
        return None
    if not isinstance(data, dict) or set(data) != {"tool_call"}:
        return None
    call = data["tool_call"]
    if not isinstance(call, dict):
        return None
    arguments = call.get("input", {})
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return None
    server = call.get("server")
    name = call.get("name")
    return ToolCallRequest(
        server=server if isinstance(server, str) else "",
        name=name if isinstance(name, str) else "",
        input=arguments,
    )


class ToolCallBridge:
    """Authorize a tool call and dispatch it to the addressed server."""

    def __init__(
        self,
        registry: ToolServerRegistry,
        permissions: PermissionEngine,
        confirm: ConfirmCallback | None = None,
    ):
        self.registry = registry
        self.permissions = permissions
        self.confirm = confirm

    def _denied(self, request: ToolCallRequest, reason: str) -> ToolCallResult:
        error = PermissionDeniedError(request.qualified_name, reason)
        log.info("Tool call denied", tool=request.qualified_name, reason=reason)
        return ToolCallResult(request=request, success=False, error=str(error), denied=True)

    async def invoke(self, request: ToolCallRequest) -> ToolCallResult:
        """Run one tool call; failures come back as unsuccessful results.

        Raises:
            ProtocolError: server or name missing; nothing is dispatched
        """
        if not request.server.strip() or not request.name.strip():
            raise ProtocolError("Tool call must name both a server and a tool")

        try:
            verdict = self.permissions.check(
                PermissionQuery(tool=BRIDGE_PERMISSION_TOOL, command=request.name)
            )
        except ConfigurationError as e:
            log.warning("Permission check failed", tool=request.qualified_name, error=str(e))
            return ToolCallResult(request=request, success=False, error=str(e))
        if verdict == DENY:
            return self._denied(request, "denied by permission rules")
        if verdict == CONFIRM:
            question = (
                "Allow tool call?\n"
                f"Tool: {request.qualified_name}\n"
                f"Input: {json.dumps(request.input, ensure_ascii=False)[:2000]}"
            )
            if not await request_confirmation(self.confirm, question):
                return self._denied(request, "not confirmed")

        try:
            server = self.registry.get(request.server)
        except ToolServerNotFoundError as e:
            return ToolCallResult(request=request, success=False, error=str(e))

        log.info("Executing tool call", tool=request.qualified_name)
        try:
            value = await server.invoke(request.name, request.input)
        except TransportError as e:
            log.warning("Tool call failed", tool=request.qualified_name, error=str(e))
            return ToolCallResult(request=request, success=False, error=str(e))
        except Exception as e:
            log.error("Tool call raised", tool=request.qualified_name, error=str(e))
            return ToolCallResult(request=request, success=False, error=str(e))

        log.info("Tool call completed", tool=request.qualified_name)
        return ToolCallResult(request=request, success=True, value=value)
