"""Version-control collaborator used by the patch engine."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from shipwright.logging import get_logger

log = get_logger(__name__)


@dataclass
class VcsOutput:
    """Outcome of a version-control command."""

    ok: bool
    stdout: str = ""
    stderr: str = ""

    @property
    def diagnostics(self) -> list[str]:
        """Non-empty diagnostic lines, stderr first."""
        text = self.stderr or self.stdout
        return [line for line in text.splitlines() if line.strip()]


class VcsUnavailableError(OSError):
    """Version-control executable cannot be run."""

    pass


class VersionControl(ABC):
    """Minimal interface the patch engine needs from a VCS."""

    @abstractmethod
    async def is_repo(self) -> bool:
        pass

    @abstractmethod
    async def check_apply(self, diff: str) -> VcsOutput:
        pass

    @abstractmethod
    async def apply(self, diff: str, reverse: bool = False) -> VcsOutput:
        pass


class GitVersionControl(VersionControl):
    """Git-backed collaborator; patches are fed to `git apply` on stdin."""

    def __init__(self, root: Path | str | None = None, executable: str = "git"):
        self.root = Path(root).expanduser().resolve() if root is not None else Path.cwd().resolve()
        self.executable = executable

    async def _run(self, args: list[str], stdin: str | None = None) -> VcsOutput:
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(self.root),
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            raise VcsUnavailableError(f"Cannot run {self.executable}: {e}") from e

        stdout, stderr = await process.communicate(
            stdin.encode("utf-8") if stdin is not None else None
        )
        result = VcsOutput(
            ok=process.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        log.debug("git command finished", args=args, ok=result.ok, returncode=process.returncode)
        return result

    async def is_repo(self) -> bool:
        """Whether the root is inside a git work tree."""
        try:
            result = await self._run(["rev-parse", "--is-inside-work-tree"])
        except VcsUnavailableError as e:
            log.warning("git unavailable", error=str(e))
            return False
        return result.ok and result.stdout.strip() == "true"

    async def check_apply(self, diff: str) -> VcsOutput:
        """Check whether a diff applies, without writing."""
        return await self._run(["apply", "--check", "--whitespace=nowarn", "-"], stdin=diff)

    async def apply(self, diff: str, reverse: bool = False) -> VcsOutput:
        """Apply a diff (or its reverse) to the work tree."""
        args = ["apply", "--whitespace=nowarn"]
        if reverse:
            args.append("-R")
        args.append("-")
        return await self._run(args, stdin=diff)
