"""Append-only journal of applied and reverted patches."""

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from shipwright.logging import get_logger

log = get_logger(__name__)

JournalAction = Literal["apply", "revert"]


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class JournalEntry:
    """One journaled patch operation."""

    action: JournalAction
    diff: str
    timestamp: str = field(default_factory=_utcnow_iso)
    reverted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JournalEntry":
        return cls(
            action="revert" if data.get("action") == "revert" else "apply",
            diff=str(data.get("diff", "")),
            timestamp=str(data.get("timestamp") or data.get("at") or _utcnow_iso()),
            reverted=bool(data.get("reverted", False)),
        )


class PatchJournal:
    """JSON-file journal; a missing or unreadable file reads as empty."""

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()

    def read(self) -> list[JournalEntry]:
        """Load all entries in order."""
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Journal unreadable, treating as empty", path=str(self.path), error=str(e))
            return []
        if not isinstance(raw, list):
            return []
        return [JournalEntry.from_dict(item) for item in raw if isinstance(item, dict)]

    def write(self, entries: list[JournalEntry]) -> None:
        """Persist all entries."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [entry.to_dict() for entry in entries]
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def append(self, entry: JournalEntry) -> None:
        """Append one entry."""
        entries = self.read()
        entries.append(entry)
        self.write(entries)

    @staticmethod
    def last_unreverted_apply(entries: list[JournalEntry]) -> int | None:
        """Index of the most recent apply entry not yet paired with a revert."""
        for idx in range(len(entries) - 1, -1, -1):
            entry = entries[idx]
            if entry.action == "apply" and not entry.reverted:
                return idx
        return None

    def record_revert(self, diff: str, subject_index: int | None = None) -> JournalEntry:
        """Append a revert entry and mark its apply entry as reverted.

        Without an explicit subject, the most recent un-reverted apply of the
        same diff is paired with the revert.
        """
        entries = self.read()
        if subject_index is None:
            for idx in range(len(entries) - 1, -1, -1):
                entry = entries[idx]
                if entry.action == "apply" and not entry.reverted and entry.diff == diff:
                    subject_index = idx
                    break
        if subject_index is not None and 0 <= subject_index < len(entries):
            entries[subject_index].reverted = True
        revert_entry = JournalEntry(action="revert", diff=diff)
        entries.append(revert_entry)
        self.write(entries)
        return revert_entry
