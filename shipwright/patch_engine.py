"""Patch sanitization and reversible application.

Diffs proposed by the model arrive as unified diffs framed by
``*** Begin Patch`` / ``*** End Patch`` lines. :func:`sanitize` turns such a
block into text `git apply` accepts and rejects paths outside the work tree;
:class:`PatchEngine` checks, applies and reverts sanitized diffs through a
:class:`~shipwright.vcs.VersionControl` collaborator, journaling every
successful operation so the latest change can be undone.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path

from shipwright.config import Config, get_config
from shipwright.exceptions import PatchConflictError, PathTraversalError, VcsRequiredError
from shipwright.journal import JournalEntry, PatchJournal
from shipwright.logging import get_logger
from shipwright.vcs import GitVersionControl, VcsUnavailableError, VersionControl

log = get_logger(__name__)

BEGIN_MARKER = "*** Begin Patch"
END_MARKER = "*** End Patch"

_MARKER_LINE_RE = re.compile(r"^\*\*\*\s+(?:Begin|End) Patch.*$", re.IGNORECASE | re.MULTILINE)
_FENCE_LINE_RE = re.compile(r"^```.*$", re.MULTILINE)
_SUBSTITUTION_RE = re.compile(r"(?<!\\)\$\(")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_DIFF_GIT_RE = re.compile(r"^diff --git (\S+) (\S+)")
_RENAME_COPY_RE = re.compile(r"^(?:rename|copy) (?:from|to) (.+)$")
_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_DEV_NULL = "/dev/null"


@dataclass
class DryRunResult:
    """Outcome of an applicability check."""

    ok: bool
    conflicts: list[str] = field(default_factory=list)


def _header_path(raw: str) -> str:
    """Path part of a header value, without timestamp or quotes."""
    return raw.split("\t", 1)[0].strip().strip('"')


def _strip_side_prefix(path: str) -> str:
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def _check_path(path: str) -> None:
    """Reject absolute paths and parent-directory segments."""
    if not path or path == _DEV_NULL:
        return
    bare = _strip_side_prefix(path)
    if (
        path.startswith(("/", "\\"))
        or bare.startswith(("/", "\\"))
        or _WINDOWS_DRIVE_RE.match(bare)
    ):
        raise PathTraversalError(path)
    if ".." in re.split(r"[\\/]+", bare):
        raise PathTraversalError(path)


def _iter_header_paths(lines: list[str]) -> list[tuple[int, str, str]]:
    """Yield (line index, marker, path) for every file header line.

    A `---` line only counts as a header when a `+++` line follows it, so a
    removed line starting with `-- ` is not mistaken for one.
    """
    headers: list[tuple[int, str, str]] = []
    for idx, line in enumerate(lines):
        if line.startswith("--- ") and idx + 1 < len(lines) and lines[idx + 1].startswith("+++ "):
            headers.append((idx, "---", _header_path(line[4:])))
            headers.append((idx + 1, "+++", _header_path(lines[idx + 1][4:])))
            continue
        git_match = _DIFF_GIT_RE.match(line)
        if git_match:
            headers.append((idx, "diff", _header_path(git_match.group(1))))
            headers.append((idx, "diff", _header_path(git_match.group(2))))
            continue
        copy_match = _RENAME_COPY_RE.match(line)
        if copy_match:
            headers.append((idx, "rename", _header_path(copy_match.group(1))))
    return headers


def sanitize(diff: str) -> str:
    """Clean a model-proposed diff for `git apply`.

    Raises:
        PathTraversalError: a header path is absolute or climbs out of the tree
    """
    text = (diff or "").replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _MARKER_LINE_RE.sub("", text)
    text = _FENCE_LINE_RE.sub("", text)
    text = _SUBSTITUTION_RE.sub(r"\\$(", text)
    text = text.strip("\n")
    if not text.strip():
        return ""

    lines = text.split("\n")
    for idx, marker, path in _iter_header_paths(lines):
        _check_path(path)
        if path == _DEV_NULL:
            continue
        if marker == "---" and not path.startswith(("a/", "b/")):
            lines[idx] = lines[idx].replace("--- ", "--- a/", 1)
        elif marker == "+++" and not path.startswith(("a/", "b/")):
            lines[idx] = lines[idx].replace("+++ ", "+++ b/", 1)
    return "\n".join(lines) + "\n"


def touched_paths(diff: str) -> list[str]:
    """Work-tree paths named by the file headers of a diff."""
    lines = sanitize(diff).split("\n")
    paths: list[str] = []
    headers = _iter_header_paths(lines)
    for pos, (_, marker, path) in enumerate(headers):
        if path == _DEV_NULL:
            continue
        if marker == "---":
            # Deleted files only have a path on the `---` side.
            following = headers[pos + 1][2] if pos + 1 < len(headers) else ""
            if following != _DEV_NULL:
                continue
        bare = _strip_side_prefix(path)
        if bare and bare not in paths:
            paths.append(bare)
    return paths


def extract_patch_blocks(text: str) -> list[str]:
    """Return every `*** Begin Patch` ... `*** End Patch` block in text."""
    pattern = re.compile(
        r"^\*\*\* Begin Patch[^\n]*\n.*?^\*\*\* End Patch[^\n]*$",
        re.MULTILINE | re.DOTALL,
    )
    return [match.group(0) for match in pattern.finditer(text or "")]


class PatchEngine:
    """Apply and revert diffs with a journal; requires a version-controlled tree."""

    def __init__(
        self,
        root: Path | str | None = None,
        vcs: VersionControl | None = None,
        journal: PatchJournal | None = None,
        config: Config | None = None,
    ):
        cfg = config or get_config()
        self.root = Path(root).expanduser().resolve() if root is not None else Path.cwd().resolve()
        self.vcs = vcs or GitVersionControl(self.root)
        self.journal = journal or PatchJournal(cfg.state_dir(self.root) / cfg.patch.journal_file)

    @staticmethod
    def sanitize(diff: str) -> str:
        return sanitize(diff)

    async def _ensure_repo(self) -> None:
        try:
            is_repo = await self.vcs.is_repo()
        except VcsUnavailableError:
            is_repo = False
        if not is_repo:
            raise VcsRequiredError(str(self.root))

    async def dry_run_apply(self, diff: str) -> DryRunResult:
        """Check whether a diff applies cleanly without touching the tree."""
        clean = sanitize(diff)
        await self._ensure_repo()
        if not clean:
            return DryRunResult(ok=False, conflicts=["Patch is empty"])
        result = await self.vcs.check_apply(clean)
        if result.ok:
            return DryRunResult(ok=True)
        conflicts = result.diagnostics or ["git apply --check failed"]
        log.info("Patch dry-run failed", conflicts=conflicts[:5])
        return DryRunResult(ok=False, conflicts=conflicts)

    async def apply(self, diff: str) -> str:
        """Apply a diff and journal it; returns the sanitized diff.

        Raises:
            PathTraversalError: unsafe header path
            VcsRequiredError: root is not a git work tree
            PatchConflictError: git refused the diff; nothing is journaled
        """
        clean = sanitize(diff)
        await self._ensure_repo()
        if not clean:
            raise PatchConflictError(["Patch is empty"])
        result = await self.vcs.apply(clean)
        if not result.ok:
            raise PatchConflictError(result.diagnostics or ["git apply failed"])
        self.journal.append(JournalEntry(action="apply", diff=clean))
        log.info("Patch applied", files=touched_paths(clean))
        return clean

    async def _apply_reverse(self, clean: str) -> None:
        result = await self.vcs.apply(clean, reverse=True)
        if not result.ok:
            raise PatchConflictError(result.diagnostics or ["git apply -R failed"], action="revert")

    async def revert(self, diff: str) -> None:
        """Apply a diff in reverse and journal the revert."""
        clean = sanitize(diff)
        await self._ensure_repo()
        if not clean:
            raise PatchConflictError(["Patch is empty"], action="revert")
        await self._apply_reverse(clean)
        self.journal.record_revert(clean)
        log.info("Patch reverted", files=touched_paths(clean))

    async def revert_last(self) -> bool:
        """Revert the most recent un-reverted apply.

        Returns False when there is nothing to revert or no usable repository.
        """
        entries = self.journal.read()
        subject = PatchJournal.last_unreverted_apply(entries)
        if subject is None:
            return False
        try:
            await self._ensure_repo()
        except VcsRequiredError as e:
            log.warning("Cannot revert without a repository", error=str(e))
            return False
        clean = sanitize(entries[subject].diff)
        await self._apply_reverse(clean)
        self.journal.record_revert(clean, subject_index=subject)
        log.info("Reverted last patch", files=touched_paths(clean))
        return True

    def entries(self) -> list[JournalEntry]:
        """Journal entries, oldest first."""
        return self.journal.read()
