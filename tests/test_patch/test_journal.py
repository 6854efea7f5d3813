from pathlib import Path

from shipwright.journal import JournalEntry, PatchJournal


def test_missing_and_corrupt_journal_read_as_empty(tmp_path: Path):
    journal = PatchJournal(tmp_path / "journal.json")
    assert journal.read() == []

    journal.path.write_text("{not json", encoding="utf-8")
    assert journal.read() == []


def test_last_unreverted_apply_skips_revert_entries():
    entries = [
        JournalEntry(action="revert", diff="d1"),
        JournalEntry(action="apply", diff="d2"),
    ]

    assert PatchJournal.last_unreverted_apply(entries) == 1


def test_last_unreverted_apply_skips_reverted_applies():
    entries = [
        JournalEntry(action="apply", diff="d1"),
        JournalEntry(action="apply", diff="d2", reverted=True),
        JournalEntry(action="revert", diff="d2"),
    ]

    assert PatchJournal.last_unreverted_apply(entries) == 0
    assert PatchJournal.last_unreverted_apply(entries[1:]) is None


def test_record_revert_pairs_with_matching_apply(tmp_path: Path):
    journal = PatchJournal(tmp_path / "journal.json")
    journal.append(JournalEntry(action="apply", diff="d1"))
    journal.append(JournalEntry(action="apply", diff="d2"))

    journal.record_revert("d1")

    entries = journal.read()
    assert [(e.action, e.diff, e.reverted) for e in entries] == [
        ("apply", "d1", True),
        ("apply", "d2", False),
        ("revert", "d1", False),
    ]


def test_entries_accept_legacy_timestamp_key():
    entry = JournalEntry.from_dict({"action": "apply", "diff": "d", "at": "2024-01-01T00:00:00"})

    assert entry.timestamp == "2024-01-01T00:00:00"
    assert entry.reverted is False
