"""History bookkeeping, token accounting and compaction for Orchestrator."""

import re
from typing import Any

from shipwright.llm import ROLE_SYSTEM, ROLE_TOOL_RESULT, ROLE_USER, Message
from shipwright.logging import get_logger

log = get_logger(__name__)

COMPACTION_HEADER = "Conversation summary of earlier messages (compacted memory):"


class AgentContextMixin:
    """Own the message list the provider sees."""

    def _count_tokens(self, text: str) -> int:
        """Estimate tokens for text with the configured estimator."""
        if not text:
            return 0
        return max(0, int(self.token_estimator.estimate(text)))

    def _history_token_count(self, messages: list[Message] | None = None) -> int:
        source = messages if messages is not None else self._history
        return sum(self._count_tokens(msg.content) for msg in source)

    def _add_message(
        self,
        role: str,
        content: str,
        payload: dict[str, Any] | None = None,
    ) -> Message:
        message = Message(role=role, content=content, payload=payload)
        self._history.append(message)
        return message

    def _build_messages(self) -> list[Message]:
        """System prompt followed by the current history."""
        messages = [Message(role=ROLE_SYSTEM, content=self.system_prompt)]
        messages.extend(self._history)
        return messages

    @staticmethod
    def _compact_role(role: str) -> str:
        """Normalize role label for summaries."""
        normalized = (role or "").strip().lower()
        return normalized if normalized else "unknown"

    def _compaction_summary(self, messages: list[Message]) -> str:
        """Plain-text digest of the dropped messages."""
        if not messages:
            return "No prior messages available for summary."
        highlights: list[str] = []
        for msg in messages[-8:]:
            role = self._compact_role(msg.role)
            content = re.sub(r"\s+", " ", (msg.content or "").strip())
            if not content:
                continue
            snippet = content[:180].rstrip()
            if len(content) > 180:
                snippet += "..."
            highlights.append(f"- {role}: {snippet}")
        if not highlights:
            return "Prior conversation compacted."
        return "Key points from earlier conversation:\n" + "\n".join(highlights)

    def _compaction_start(self, keep_last: int) -> int:
        """Index of the first message that survives compaction."""
        history = self._history
        start = max(0, len(history) - max(0, int(keep_last)))
        last_user = next(
            (idx for idx in range(len(history) - 1, -1, -1) if history[idx].role == ROLE_USER),
            None,
        )
        if last_user is not None:
            start = min(start, last_user)
        # A tool result must stay next to the assistant message that asked for it.
        while 0 < start < len(history) and history[start].role == ROLE_TOOL_RESULT:
            start -= 1
        return start

    def compact(self, keep_last: int) -> tuple[bool, dict[str, Any]]:
        """Replace all but the last `keep_last` messages with a system summary.

        The last user message and everything after it is always kept.

        Returns:
            (compacted, stats)
        """
        history = self._history
        if len(history) < 2:
            return False, {"reason": "too_few_messages", "message_count": len(history)}

        start = self._compaction_start(keep_last)
        if start <= 0:
            return False, {"reason": "nothing_to_compact", "message_count": len(history)}

        before_tokens = self._history_token_count()
        dropped = history[:start]
        kept = history[start:]
        summary = Message(
            role=ROLE_SYSTEM,
            content=f"{COMPACTION_HEADER}\n{self._compaction_summary(dropped)}",
            payload={"compaction": {"compacted_messages": len(dropped)}},
        )
        self._history = [summary, *kept]
        after_tokens = self._history_token_count()
        stats = {
            "before_tokens": before_tokens,
            "after_tokens": after_tokens,
            "compacted_messages": len(dropped),
            "kept_messages": len(kept),
        }
        log.info("History compacted", **stats)
        return True, stats

    def _auto_compact_if_needed(self) -> None:
        """Compact when estimated history size crosses the configured threshold."""
        context = self.config.context
        threshold_tokens = max(1, int(context.max_tokens * float(context.compaction_threshold)))
        total_tokens = self._history_token_count()
        if total_tokens <= threshold_tokens:
            return
        compacted, stats = self.compact(context.keep_last)
        if compacted:
            log.info(
                "Auto compaction completed",
                threshold_tokens=threshold_tokens,
                before_tokens=stats.get("before_tokens"),
                after_tokens=stats.get("after_tokens"),
            )
