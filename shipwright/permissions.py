"""Rule-based permission engine.

Every tool invocation and patch commit asks :class:`PermissionEngine` for a
verdict before acting. Rules are ordered and the first rule whose every
specified field matches wins; otherwise a per-tool default applies, and
otherwise the action is allowed.

Rules and defaults live under the ``permissions`` key of the layered YAML
configuration (global file, then project file) and are re-read on every
query so edits made by other processes take effect immediately.
"""

import inspect
import re
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from shipwright.config import (
    GLOBAL_CONFIG_PATH,
    PermissionAction,
    PermissionRule,
    PermissionsConfig,
    RuleMatch,
    project_config_path,
    read_yaml_file,
    write_yaml_file,
)
from shipwright.exceptions import ConfigurationError, PermissionDeniedError
from shipwright.logging import get_logger

log = get_logger(__name__)

ALLOW: PermissionAction = "allow"
DENY: PermissionAction = "deny"
CONFIRM: PermissionAction = "confirm"

_prompts_disabled = False

ConfirmCallback = Callable[[str], bool | Awaitable[bool]]


def set_prompts_disabled(disabled: bool) -> None:
    """Process-wide switch that makes every check return allow."""
    global _prompts_disabled
    _prompts_disabled = bool(disabled)


def prompts_disabled() -> bool:
    """Return the process-wide prompt override."""
    return _prompts_disabled


class PermissionQuery(BaseModel):
    """Action being authorized."""

    tool: str
    path: str | None = None
    command: str | None = None


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a path glob; `**` crosses directories, `*` and `?` do not."""
    out: list[str] = []
    idx = 0
    while idx < len(pattern):
        char = pattern[idx]
        if pattern.startswith("**", idx):
            out.append(".*")
            idx += 2
            continue
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        idx += 1
    return re.compile("^" + "".join(out) + "$")


def path_matches(target: str, pattern: str) -> bool:
    """Return whether a path matches a glob pattern."""
    return bool(glob_to_regex(pattern).match(target))


def _compile_command_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def rule_matches(match: RuleMatch, query: PermissionQuery) -> bool:
    """A rule matches when every field it specifies matches the query."""
    if match.tool is not None and match.tool != query.tool:
        return False
    if match.path is not None:
        if query.path is None or not path_matches(query.path, match.path):
            return False
    if match.command is not None:
        if query.command is None:
            return False
        if not _compile_command_pattern(match.command).search(query.command):
            return False
    return True


def evaluate(permissions: PermissionsConfig, query: PermissionQuery) -> PermissionAction:
    """Evaluate a query against an already-loaded permission set."""
    if prompts_disabled() or permissions.disable_prompts:
        return ALLOW
    for rule in permissions.rules:
        if rule_matches(rule.match, query):
            return rule.action
    return permissions.defaults.get(query.tool, ALLOW)


class PermissionStore:
    """Layered (global, project) permission configuration on disk."""

    def __init__(
        self,
        project_root: Path | str | None = None,
        global_path: Path | str | None = None,
    ):
        self.project_path = project_config_path(project_root)
        self.global_path = Path(global_path).expanduser() if global_path else GLOBAL_CONFIG_PATH

    @staticmethod
    def _section(path: Path) -> dict[str, Any]:
        """Read the raw `permissions` mapping of one config file."""
        raw = read_yaml_file(path).get("permissions")
        return raw if isinstance(raw, dict) else {}

    @staticmethod
    def _parse(raw: dict[str, Any], source: Path) -> PermissionsConfig:
        try:
            return PermissionsConfig(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid permissions in {source}: {e}") from e

    def load(self) -> PermissionsConfig:
        """Merge global and project permissions; project rules are checked first."""
        global_raw = self._section(self.global_path)
        project_raw = self._section(self.project_path)
        global_perms = self._parse(global_raw, self.global_path)
        project_perms = self._parse(project_raw, self.project_path)
        return PermissionsConfig(
            disable_prompts=bool(project_raw.get("disable_prompts", global_perms.disable_prompts)),
            defaults={**global_perms.defaults, **project_perms.defaults},
            rules=[*project_perms.rules, *global_perms.rules],
        )

    def load_project(self) -> PermissionsConfig:
        """Load only the project layer."""
        return self._parse(self._section(self.project_path), self.project_path)

    def save_project(self, permissions: PermissionsConfig) -> None:
        """Replace the project `permissions` key, keeping other keys intact."""
        current = read_yaml_file(self.project_path)
        current["permissions"] = permissions.model_dump(exclude_none=True)
        write_yaml_file(self.project_path, current)


class PermissionEngine:
    """Authorization gate for tool calls and patch commits."""

    def __init__(self, store: PermissionStore | None = None):
        self.store = store or PermissionStore()

    def check(self, query: PermissionQuery | dict[str, Any]) -> PermissionAction:
        """Return allow, deny or confirm for the query."""
        if isinstance(query, dict):
            query = PermissionQuery(**query)
        if prompts_disabled():
            return ALLOW
        verdict = evaluate(self.store.load(), query)
        log.debug(
            "Permission check",
            tool=query.tool,
            path=query.path,
            command=query.command,
            verdict=verdict,
        )
        return verdict

    def rules(self) -> list[PermissionRule]:
        """Effective ordered rules."""
        return list(self.store.load().rules)

    def defaults(self) -> dict[str, PermissionAction]:
        """Effective tool defaults."""
        return dict(self.store.load().defaults)

    def set_default(self, tool: str, action: PermissionAction) -> None:
        """Set the project default for a tool."""
        current = self.store.load_project()
        defaults = {**current.defaults, tool: action}
        self.store.save_project(current.model_copy(update={"defaults": defaults}))
        log.info("Permission default set", tool=tool, action=action)

    def add_rule(self, rule: PermissionRule | dict[str, Any]) -> None:
        """Append a rule to the project rule list."""
        if isinstance(rule, dict):
            rule = PermissionRule(**rule)
        current = self.store.load_project()
        rules = [*current.rules, rule]
        self.store.save_project(current.model_copy(update={"rules": rules}))
        log.info("Permission rule added", rule=rule.model_dump(exclude_none=True))

    def remove_rule(self, index: int) -> None:
        """Remove a project rule by index; out-of-range indexes are ignored."""
        current = self.store.load_project()
        if index < 0 or index >= len(current.rules):
            return
        rules = list(current.rules)
        removed = rules.pop(index)
        self.store.save_project(current.model_copy(update={"rules": rules}))
        log.info("Permission rule removed", index=index, rule=removed.model_dump(exclude_none=True))


async def request_confirmation(callback: ConfirmCallback | None, question: str) -> bool:
    """Ask the confirmation surface; no surface or a failed prompt means no."""
    if callback is None:
        log.warning("Confirmation required but no prompt is configured; denying", question=question)
        return False
    try:
        answer = callback(question)
        if inspect.isawaitable(answer):
            answer = await answer
    except (EOFError, KeyboardInterrupt):
        log.info("Confirmation prompt cancelled", question=question)
        return False
    except Exception as e:
        log.warning("Confirmation prompt failed; denying", question=question, error=str(e))
        return False
    return bool(answer)


async def authorize_paths(
    engine: PermissionEngine,
    tool: str,
    paths: list[str],
    root: Path,
    confirm: ConfirmCallback | None = None,
) -> None:
    """Check every path (resolved under root) for a tool; all must pass.

    Raises:
        PermissionDeniedError: a path is denied or its confirmation is declined
    """
    for rel in paths:
        target = (Path(root) / rel).as_posix()
        verdict = engine.check(PermissionQuery(tool=tool, path=target))
        if verdict == DENY:
            raise PermissionDeniedError(rel, "denied by permission rules")
        if verdict == CONFIRM:
            if not await request_confirmation(confirm, f"Allow {tool} on {rel}?"):
                raise PermissionDeniedError(rel, "not confirmed")
