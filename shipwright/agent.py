"""Turn orchestration for Shipwright."""

import asyncio
import copy
import inspect
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from shipwright.agent_context_mixin import AgentContextMixin
from shipwright.agent_session_mixin import AgentSessionMixin
from shipwright.agent_tool_loop_mixin import AgentToolLoopMixin
from shipwright.config import Config, get_config
from shipwright.exceptions import OrchestratorBusyError, TurnCancelledError
from shipwright.llm import (
    ROLE_ASSISTANT,
    ROLE_USER,
    LengthTokenEstimator,
    LLMProvider,
    Message,
    TokenEstimator,
)
from shipwright.logging import get_logger
from shipwright.patch_engine import BEGIN_MARKER, END_MARKER, PatchEngine
from shipwright.permissions import ConfirmCallback, PermissionEngine, PermissionStore
from shipwright.session import Session, SessionStore
from shipwright.tools.bridge import ToolCallBridge
from shipwright.tools.registry import ToolServerRegistry

log = get_logger(__name__)

EMPTY_CONTENT = "(no content)"

DEFAULT_SYSTEM_PROMPT = f"""You are Shipwright, a coding assistant working in a local project.

To call a tool, reply with exactly one fenced JSON block and nothing else inside the fence:

```json
{{"tool_call": {{"server": "<server id>", "name": "<tool name>", "input": {{}}}}}}
```

The tool result is sent back to you as the next message.

To change files, propose a unified diff with paths relative to the project root, framed by:

{BEGIN_MARKER}
--- a/path/to/file
+++ b/path/to/file
@@ ... @@
{END_MARKER}

Proposed patches are applied only after the user commits them.
"""


class TurnState(str, Enum):
    """Orchestrator turn state."""

    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_BRIDGING = "tool_bridging"
    ERROR = "error"


@dataclass
class TurnMetrics:
    """Cumulative counters across turns."""

    input_tokens: int = 0
    output_tokens: int = 0
    model_calls: int = 0
    duration_ms: int = 0
    turns: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TurnMetrics":
        data = data or {}
        return cls(**{key: int(data.get(key, 0) or 0) for key in cls.__dataclass_fields__})


DeltaCallback = Callable[[str], Any]


class Orchestrator(AgentToolLoopMixin, AgentContextMixin, AgentSessionMixin):
    """Own one conversation: history, streaming, tool cycles and the pending patch."""

    def __init__(
        self,
        provider: LLMProvider,
        bridge: ToolCallBridge | None = None,
        patch_engine: PatchEngine | None = None,
        permissions: PermissionEngine | None = None,
        confirm: ConfirmCallback | None = None,
        session_store: SessionStore | None = None,
        config: Config | None = None,
        token_estimator: TokenEstimator | None = None,
        system_prompt: str | None = None,
        project_root: Path | str | None = None,
        session_name: str = "default",
    ):
        """Initialize the orchestrator.

        Args:
            provider: Streaming chat provider
            bridge: Tool-call bridge; defaults to one with no servers
            patch_engine: Patch engine for the project root
            permissions: Permission engine shared by bridge and patch commits
            confirm: Confirmation surface for `confirm` verdicts
            session_store: Optional snapshot store
            config: Configuration override
            token_estimator: Token estimate heuristic
            system_prompt: Operating instructions prepended to every call
            project_root: Project directory (defaults to cwd)
            session_name: Name used when a new session snapshot is created
        """
        self.config = config or get_config()
        self.provider = provider
        self.project_root = Path(project_root).expanduser().resolve() if project_root else Path.cwd().resolve()
        self.confirm = confirm
        self.permissions = permissions or PermissionEngine(PermissionStore(self.project_root))
        self.bridge = bridge or ToolCallBridge(ToolServerRegistry(), self.permissions, confirm)
        self.patch_engine = patch_engine or PatchEngine(self.project_root, config=self.config)
        self.session_store = session_store
        self.session_name = session_name
        self.session: Session | None = None
        self.token_estimator = token_estimator or LengthTokenEstimator()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._history: list[Message] = []
        self._metrics = TurnMetrics()
        self._pending_patch: str | None = None
        self._state = TurnState.IDLE

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> list[Message]:
        return [replace(msg, payload=copy.deepcopy(msg.payload)) for msg in self._history]

    @property
    def metrics(self) -> TurnMetrics:
        return replace(self._metrics)

    def reset_metrics(self) -> None:
        self._metrics = TurnMetrics()

    def reset_history(self) -> None:
        self._ensure_not_busy()
        self._history = []
        self._pending_patch = None

    def _ensure_not_busy(self) -> None:
        if self._state not in (TurnState.IDLE, TurnState.ERROR):
            raise OrchestratorBusyError(f"A turn is already active (state={self._state.value})")

    async def _emit_delta(self, on_delta: DeltaCallback | None, delta: str) -> None:
        if on_delta is None:
            return
        result = on_delta(delta)
        if inspect.isawaitable(result):
            await result

    async def _stream_once(
        self,
        on_delta: DeltaCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> str:
        """Run one streamed provider call and return the accumulated text."""
        self._state = TurnState.STREAMING
        messages = self._build_messages()
        self._metrics.model_calls += 1
        self._metrics.input_tokens += sum(self._count_tokens(msg.content) for msg in messages)
        log.info("Calling LLM", call=self._metrics.model_calls, message_count=len(messages))

        self._check_cancelled(cancel_event)
        parts: list[str] = []
        stream = self.provider.complete_streaming(messages)
        try:
            async for delta in stream:
                self._check_cancelled(cancel_event)
                if not delta:
                    continue
                parts.append(delta)
                await self._emit_delta(on_delta, delta)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        self._check_cancelled(cancel_event)

        text = "".join(parts)
        self._metrics.output_tokens += self._count_tokens(text)
        return text

    async def _run_turn(
        self,
        on_delta: DeltaCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> str:
        max_followups = max(0, int(self.config.bridge.max_followups))
        followups = 0
        while True:
            text = await self._stream_once(on_delta, cancel_event)
            content = text if text.strip() else EMPTY_CONTENT
            request, patch = self._detect_blocks(text)

            if request is not None and self.config.bridge.enabled:
                if followups >= max_followups:
                    log.warning("Tool follow-up limit reached", limit=max_followups)
                else:
                    self._state = TurnState.TOOL_BRIDGING
                    result = await self._bridge_tool_call(request, cancel_event)
                    if result is not None:
                        self._record_tool_cycle(content, result)
                        self._stage_patch(patch)
                        followups += 1
                        continue

            self._add_message(ROLE_ASSISTANT, content)
            self._stage_patch(patch)
            return content

    async def respond(
        self,
        user_text: str,
        on_delta: DeltaCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Run one user turn and return the final assistant text.

        Args:
            user_text: The user's instruction
            on_delta: Called with every streamed text delta
            cancel_event: Set to cancel the turn cooperatively

        Returns:
            Final assistant output of the turn

        Raises:
            OrchestratorBusyError: a turn is already active
            TurnCancelledError: the cancel event was set
            LLMError: the provider failed; state becomes ERROR
        """
        self._ensure_not_busy()
        self._state = TurnState.STREAMING
        started = time.monotonic()
        try:
            self._add_message(ROLE_USER, user_text)
            self._auto_compact_if_needed()
            final = await self._run_turn(on_delta, cancel_event)
        except (TurnCancelledError, asyncio.CancelledError):
            log.info("Turn cancelled")
            self._state = TurnState.IDLE
            raise
        except Exception as e:
            log.error("Turn failed", error=str(e))
            self._state = TurnState.ERROR
            raise
        finally:
            self._metrics.duration_ms += int((time.monotonic() - started) * 1000)

        self._metrics.turns += 1
        self._state = TurnState.IDLE
        await self._auto_save()
        return final
