"""Tool-call and patch block handling for Orchestrator."""

import asyncio
from typing import Any

from shipwright.exceptions import (
    PatchConflictError,
    PatchError,
    ProtocolError,
    TurnCancelledError,
)
from shipwright.llm import ROLE_ASSISTANT, ROLE_TOOL_RESULT
from shipwright.logging import get_logger
from shipwright.patch_engine import extract_patch_blocks, touched_paths
from shipwright.permissions import authorize_paths
from shipwright.tools.bridge import ToolCallRequest, ToolCallResult, parse_tool_call_block

log = get_logger(__name__)

PATCH_PERMISSION_TOOL = "fs_patch"


class AgentToolLoopMixin:
    """Detect tool calls and patches in model output and act on them."""

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TurnCancelledError()

    @staticmethod
    def _detect_blocks(text: str) -> tuple[ToolCallRequest | None, str | None]:
        """Return the tool call (if exactly one) and the last patch block."""
        request = parse_tool_call_block(text)
        patches = extract_patch_blocks(text)
        return request, (patches[-1] if patches else None)

    async def _bridge_tool_call(
        self,
        request: ToolCallRequest,
        cancel_event: asyncio.Event | None,
    ) -> ToolCallResult | None:
        """Invoke the bridge; a protocol violation counts as no tool call."""
        self._check_cancelled(cancel_event)
        try:
            result = await self.bridge.invoke(request)
        except ProtocolError as e:
            log.info("Tool call ignored", error=str(e))
            return None
        self._check_cancelled(cancel_event)
        return result

    def _record_tool_cycle(self, content: str, result: ToolCallResult) -> None:
        """Append the assistant tool-call message and its result."""
        self._add_message(
            ROLE_ASSISTANT,
            content,
            payload={"tool_call": result.request.to_dict()},
        )
        self._append_tool_result(result)

    def _append_tool_result(self, result: ToolCallResult) -> None:
        last = self._history[-1] if self._history else None
        if last is None or last.role != ROLE_ASSISTANT or not (last.payload or {}).get("tool_call"):
            raise ProtocolError("A tool result must follow an assistant tool call")
        payload: dict[str, Any] = {
            "tool_call": result.request.to_dict(),
            "success": result.success,
        }
        if result.denied:
            payload["denied"] = True
        self._add_message(ROLE_TOOL_RESULT, result.to_content(), payload=payload)

    def _stage_patch(self, patch: str | None) -> None:
        if not patch:
            return
        if self._pending_patch is not None:
            log.info("Replacing uncommitted pending patch")
        self._pending_patch = patch

    @property
    def pending_patch(self) -> str | None:
        return self._pending_patch

    def clear_pending_patch(self) -> None:
        self._pending_patch = None

    async def commit_pending_patch(self) -> list[str]:
        """Authorize, dry-run and apply the pending patch.

        Returns:
            Paths touched by the patch

        Raises:
            PatchError: no pending patch, or check/apply failed
            PermissionDeniedError: a touched path is denied or not confirmed
        """
        diff = self._pending_patch
        if not diff:
            raise PatchError("No pending patch to commit")
        paths = touched_paths(diff)
        await authorize_paths(self.permissions, PATCH_PERMISSION_TOOL, paths, self.patch_engine.root, self.confirm)
        check = await self.patch_engine.dry_run_apply(diff)
        if not check.ok:
            raise PatchConflictError(check.conflicts, action="check")
        await self.patch_engine.apply(diff)
        self._pending_patch = None
        log.info("Committed pending patch", files=paths)
        return paths

    async def revert_last_patch(self) -> bool:
        """Undo the most recently applied patch."""
        return await self.patch_engine.revert_last()
