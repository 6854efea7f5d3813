import asyncio
from pathlib import Path
from typing import Any

import pytest

from shipwright.agent import EMPTY_CONTENT, Orchestrator, TurnState
from shipwright.config import Config
from shipwright.exceptions import (
    LLMAPIError,
    OrchestratorBusyError,
    PatchConflictError,
    PermissionDeniedError,
    TurnCancelledError,
)
from shipwright.journal import PatchJournal
from shipwright.llm import LLMProvider, Message
from shipwright.patch_engine import PatchEngine
from shipwright.permissions import PermissionEngine, PermissionStore
from shipwright.tools.bridge import ToolCallBridge
from shipwright.tools.registry import ToolServer, ToolServerRegistry
from shipwright.vcs import VcsOutput, VersionControl

TOOL_CALL = '```json\n{"tool_call": {"server": "files", "name": "read", "input": {"path": "a.py"}}}\n```'

PATCH = (
    "Here is the change.\n"
    "*** Begin Patch\n"
    "--- a/app.py\n"
    "+++ b/app.py\n"
    "@@ -1 +1 @@\n"
    "-old\n"
    "+new\n"
    "*** End Patch\n"
)


class ScriptedProvider(LLMProvider):
    """Streams canned responses, one per call, in small chunks."""

    def __init__(self, responses: list[str], chunk_size: int = 7):
        self.responses = list(responses)
        self.chunk_size = chunk_size
        self.calls: list[list[Message]] = []

    async def complete_streaming(self, messages, temperature=None, max_tokens=None):
        self.calls.append(list(messages))
        text = self.responses.pop(0) if self.responses else "done"
        for idx in range(0, len(text), self.chunk_size):
            yield text[idx : idx + self.chunk_size]


class FailingProvider(LLMProvider):
    async def complete_streaming(self, messages, temperature=None, max_tokens=None):
        yield "partial"
        raise LLMAPIError("Chat API error 500: boom", status_code=500)


class RecordingServer(ToolServer):
    server_id = "files"

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    async def invoke(self, name: str, input: dict[str, Any]) -> Any:
        self.calls.append((name, input))
        return {"content": "print('hi')"}


class FakeVcs(VersionControl):
    def __init__(self, check_ok: bool = True):
        self.check_ok = check_ok
        self.applied: list[str] = []

    async def is_repo(self) -> bool:
        return True

    async def check_apply(self, diff: str) -> VcsOutput:
        return VcsOutput(ok=self.check_ok, stderr="" if self.check_ok else "error: app.py: patch does not apply")

    async def apply(self, diff: str, reverse: bool = False) -> VcsOutput:
        self.applied.append(("-R " if reverse else "") + diff)
        return VcsOutput(ok=True)


def _orchestrator(
    tmp_path: Path,
    provider: LLMProvider,
    server: ToolServer | None = None,
    vcs: VersionControl | None = None,
    config: Config | None = None,
    confirm=None,
) -> Orchestrator:
    cfg = config or Config()
    permissions = PermissionEngine(PermissionStore(tmp_path, tmp_path / "global.yaml"))
    registry = ToolServerRegistry([server] if server else [])
    patch_engine = PatchEngine(
        tmp_path,
        vcs=vcs or FakeVcs(),
        journal=PatchJournal(tmp_path / "journal.json"),
        config=cfg,
    )
    return Orchestrator(
        provider=provider,
        bridge=ToolCallBridge(registry, permissions, confirm),
        patch_engine=patch_engine,
        permissions=permissions,
        confirm=confirm,
        config=cfg,
        project_root=tmp_path,
    )


@pytest.mark.asyncio
async def test_plain_turn_streams_and_records_history(tmp_path: Path):
    provider = ScriptedProvider(["Hello there, how can I help?"])
    orchestrator = _orchestrator(tmp_path, provider)
    deltas: list[str] = []

    final = await orchestrator.respond("hi", on_delta=deltas.append)

    assert final == "Hello there, how can I help?"
    assert "".join(deltas) == final
    assert [(m.role, m.content) for m in orchestrator.history] == [
        ("user", "hi"),
        ("assistant", final),
    ]
    assert provider.calls[0][0].role == "system"
    assert orchestrator.state == TurnState.IDLE
    metrics = orchestrator.metrics
    assert metrics.model_calls == 1
    assert metrics.turns == 1
    assert metrics.output_tokens == len(final) // 4
    assert metrics.input_tokens > 0


@pytest.mark.asyncio
async def test_empty_output_is_stored_as_placeholder(tmp_path: Path):
    orchestrator = _orchestrator(tmp_path, ScriptedProvider(["   "]))

    final = await orchestrator.respond("hi")

    assert final == EMPTY_CONTENT
    assert orchestrator.history[-1].content == EMPTY_CONTENT


@pytest.mark.asyncio
async def test_tool_call_result_feeds_follow_up_turn(tmp_path: Path):
    server = RecordingServer()
    provider = ScriptedProvider([TOOL_CALL, "The file prints hi."])
    orchestrator = _orchestrator(tmp_path, provider, server=server)

    final = await orchestrator.respond("what does a.py do?")

    assert final == "The file prints hi."
    assert server.calls == [("read", {"path": "a.py"})]
    history = orchestrator.history
    assert [m.role for m in history] == ["user", "assistant", "tool_result", "assistant"]
    assert history[1].payload["tool_call"]["name"] == "read"
    assert history[2].content == '{"content": "print(\'hi\')"}'
    assert provider.calls[1][-1].role == "tool_result"


@pytest.mark.asyncio
async def test_history_copies_do_not_share_payloads(tmp_path: Path):
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([TOOL_CALL, "ok"]), server=RecordingServer())
    await orchestrator.respond("read it")

    snapshot = orchestrator.history
    snapshot[1].payload["tool_call"]["input"]["path"] = "/etc/passwd"

    assert orchestrator.history[1].payload["tool_call"]["input"] == {"path": "a.py"}


@pytest.mark.asyncio
async def test_follow_up_chain_is_capped(tmp_path: Path):
    server = RecordingServer()
    provider = ScriptedProvider([TOOL_CALL] * 10)
    orchestrator = _orchestrator(tmp_path, provider, server=server)

    final = await orchestrator.respond("loop forever")

    assert final == TOOL_CALL
    assert len(server.calls) == 3
    assert len(provider.calls) == 4
    history = orchestrator.history
    assert history[-1].role == "assistant"
    assert history[-1].payload is None
    for idx, msg in enumerate(history):
        if msg.role == "tool_result":
            assert history[idx - 1].role == "assistant"
            assert history[idx - 1].payload["tool_call"]["server"] == "files"


@pytest.mark.asyncio
async def test_malformed_tool_call_is_kept_as_prose(tmp_path: Path):
    server = RecordingServer()
    broken = '```json\n{"tool_call": {"server": "files", "name": "read",}}\n```'
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([broken]), server=server)

    final = await orchestrator.respond("read it")

    assert final == broken
    assert server.calls == []
    assert [m.role for m in orchestrator.history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_tool_call_without_server_is_treated_as_absent(tmp_path: Path):
    server = RecordingServer()
    incomplete = '```json\n{"tool_call": {"name": "read"}}\n```'
    provider = ScriptedProvider([incomplete])
    orchestrator = _orchestrator(tmp_path, provider, server=server)

    await orchestrator.respond("read it")

    assert server.calls == []
    assert len(provider.calls) == 1
    assert orchestrator.history[-1].payload is None


@pytest.mark.asyncio
async def test_bridge_disabled_skips_tool_calls(tmp_path: Path):
    cfg = Config()
    cfg.bridge.enabled = False
    server = RecordingServer()
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([TOOL_CALL]), server=server, config=cfg)

    await orchestrator.respond("read it")

    assert server.calls == []


@pytest.mark.asyncio
async def test_denied_tool_call_is_recorded_not_raised(tmp_path: Path):
    server = RecordingServer()
    provider = ScriptedProvider([TOOL_CALL, "Understood."])
    orchestrator = _orchestrator(tmp_path, provider, server=server)
    orchestrator.permissions.add_rule({"match": {"tool": "mcp"}, "action": "deny"})

    final = await orchestrator.respond("read it")

    assert final == "Understood."
    assert server.calls == []
    tool_result = orchestrator.history[2]
    assert tool_result.role == "tool_result"
    assert tool_result.content.startswith("PermissionDenied:")


@pytest.mark.asyncio
async def test_failing_confirmation_prompt_denies_tool_call(tmp_path: Path):
    def broken_prompt(question: str) -> bool:
        raise RuntimeError("prompt backend crashed")

    server = RecordingServer()
    provider = ScriptedProvider([TOOL_CALL, "after"])
    orchestrator = _orchestrator(tmp_path, provider, server=server, confirm=broken_prompt)
    orchestrator.permissions.set_default("mcp", "confirm")

    final = await orchestrator.respond("read it")

    assert final == "after"
    assert orchestrator.state == TurnState.IDLE
    assert server.calls == []
    tool_result = orchestrator.history[2]
    assert tool_result.role == "tool_result"
    assert tool_result.content.startswith("PermissionDenied:")


@pytest.mark.asyncio
async def test_invalid_permission_config_becomes_tool_error(tmp_path: Path):
    config_file = tmp_path / ".shipwright" / "config.yaml"
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text("permissions:\n  defaults:\n    mcp: maybe\n", encoding="utf-8")
    server = RecordingServer()
    provider = ScriptedProvider([TOOL_CALL, "after"])
    orchestrator = _orchestrator(tmp_path, provider, server=server)

    final = await orchestrator.respond("read it")

    assert final == "after"
    assert orchestrator.state == TurnState.IDLE
    assert server.calls == []
    tool_result = orchestrator.history[2]
    assert tool_result.role == "tool_result"
    assert tool_result.content.startswith("Error: Invalid permissions")


@pytest.mark.asyncio
async def test_cancellation_discards_in_flight_text(tmp_path: Path):
    cancel_event = asyncio.Event()
    provider = ScriptedProvider(["a long answer that will be cut off"], chunk_size=3)
    orchestrator = _orchestrator(tmp_path, provider)

    def on_delta(delta: str) -> None:
        cancel_event.set()

    with pytest.raises(TurnCancelledError):
        await orchestrator.respond("hi", on_delta=on_delta, cancel_event=cancel_event)

    assert [m.role for m in orchestrator.history] == ["user"]
    assert orchestrator.state == TurnState.IDLE
    assert orchestrator.pending_patch is None


@pytest.mark.asyncio
async def test_provider_failure_moves_to_error_and_allows_retry(tmp_path: Path):
    orchestrator = _orchestrator(tmp_path, FailingProvider())

    with pytest.raises(LLMAPIError):
        await orchestrator.respond("hi")
    assert orchestrator.state == TurnState.ERROR

    orchestrator.provider = ScriptedProvider(["recovered"])
    assert await orchestrator.respond("again") == "recovered"
    assert orchestrator.state == TurnState.IDLE


@pytest.mark.asyncio
async def test_overlapping_respond_raises_busy(tmp_path: Path):
    release = asyncio.Event()

    class SlowProvider(LLMProvider):
        async def complete_streaming(self, messages, temperature=None, max_tokens=None):
            await release.wait()
            yield "slow"

    orchestrator = _orchestrator(tmp_path, SlowProvider())
    first = asyncio.create_task(orchestrator.respond("one"))
    await asyncio.sleep(0)

    with pytest.raises(OrchestratorBusyError):
        await orchestrator.respond("two")

    release.set()
    assert await first == "slow"


@pytest.mark.asyncio
async def test_task_cancellation_leaves_orchestrator_idle(tmp_path: Path):
    class HangingProvider(LLMProvider):
        async def complete_streaming(self, messages, temperature=None, max_tokens=None):
            await asyncio.Event().wait()
            yield ""

    orchestrator = _orchestrator(tmp_path, HangingProvider())
    task = asyncio.create_task(orchestrator.respond("hi"))
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert orchestrator.state == TurnState.IDLE


@pytest.mark.asyncio
async def test_patch_block_is_staged_last_wins_and_not_applied(tmp_path: Path):
    vcs = FakeVcs()
    second = PATCH.replace("+new", "+newer")
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([PATCH, second]), vcs=vcs)

    await orchestrator.respond("change it")
    await orchestrator.respond("actually, change it more")

    assert "+newer" in orchestrator.pending_patch
    assert vcs.applied == []


@pytest.mark.asyncio
async def test_commit_pending_patch_applies_and_clears(tmp_path: Path):
    vcs = FakeVcs()
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([PATCH]), vcs=vcs)
    await orchestrator.respond("change it")

    paths = await orchestrator.commit_pending_patch()

    assert paths == ["app.py"]
    assert orchestrator.pending_patch is None
    assert len(vcs.applied) == 1
    assert [e.action for e in orchestrator.patch_engine.entries()] == ["apply"]

    assert await orchestrator.revert_last_patch() is True
    assert vcs.applied[-1].startswith("-R ")


@pytest.mark.asyncio
async def test_commit_denied_path_keeps_patch_pending(tmp_path: Path):
    vcs = FakeVcs()
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([PATCH]), vcs=vcs)
    orchestrator.permissions.add_rule(
        {"match": {"tool": "fs_patch", "path": f"{tmp_path.resolve().as_posix()}/**"}, "action": "deny"}
    )
    await orchestrator.respond("change it")

    with pytest.raises(PermissionDeniedError):
        await orchestrator.commit_pending_patch()

    assert orchestrator.pending_patch is not None
    assert vcs.applied == []


@pytest.mark.asyncio
async def test_commit_confirmation_declined(tmp_path: Path):
    vcs = FakeVcs()
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([PATCH]), vcs=vcs, confirm=lambda q: False)
    orchestrator.permissions.set_default("fs_patch", "confirm")
    await orchestrator.respond("change it")

    with pytest.raises(PermissionDeniedError):
        await orchestrator.commit_pending_patch()
    assert vcs.applied == []


@pytest.mark.asyncio
async def test_commit_dry_run_failure_raises_conflict(tmp_path: Path):
    vcs = FakeVcs(check_ok=False)
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([PATCH]), vcs=vcs)
    await orchestrator.respond("change it")

    with pytest.raises(PatchConflictError) as exc_info:
        await orchestrator.commit_pending_patch()

    assert exc_info.value.conflicts == ["error: app.py: patch does not apply"]
    assert vcs.applied == []
    assert orchestrator.pending_patch is not None


@pytest.mark.asyncio
async def test_reset_metrics_and_history(tmp_path: Path):
    orchestrator = _orchestrator(tmp_path, ScriptedProvider([PATCH]))
    await orchestrator.respond("change it")

    orchestrator.reset_metrics()
    orchestrator.reset_history()

    assert orchestrator.metrics.model_calls == 0
    assert orchestrator.history == []
    assert orchestrator.pending_patch is None
