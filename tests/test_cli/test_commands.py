import importlib
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from shipwright.llm import LLMProvider

# The package re-exports `main`, which shadows the submodule attribute.
main_module = importlib.import_module("shipwright.main")
runner = CliRunner()


class CannedProvider(LLMProvider):
    def __init__(self, text: str):
        self.text = text

    async def complete_streaming(self, messages, temperature=None, max_tokens=None):
        yield self.text


@pytest.fixture(autouse=True)
def keep_default_logging(monkeypatch: pytest.MonkeyPatch):
    """Leave structlog unconfigured so cached loggers never hold the runner's streams."""
    monkeypatch.setattr(main_module, "configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    root.mkdir()
    return root


def invoke(project: Path, *args: str):
    return runner.invoke(
        main_module.app,
        ["-C", str(project), "-c", str(project.parent / "global.yaml"), *args],
    )


def project_config(project: Path) -> dict:
    return yaml.safe_load((project / ".shipwright" / "config.yaml").read_text(encoding="utf-8"))


def test_permissions_add_and_remove(project: Path):
    result = invoke(project, "permissions", "add", "deny", "--tool", "fs_patch", "--path", "**/*.lock")
    assert result.exit_code == 0, result.output

    rules = project_config(project)["permissions"]["rules"]
    assert rules == [{"match": {"tool": "fs_patch", "path": "**/*.lock"}, "action": "deny"}]

    result = invoke(project, "permissions", "remove", "0")
    assert result.exit_code == 0, result.output
    assert project_config(project)["permissions"]["rules"] == []


def test_permissions_default_and_show(project: Path):
    result = invoke(project, "permissions", "default", "mcp", "confirm")
    assert result.exit_code == 0, result.output
    assert project_config(project)["permissions"]["defaults"] == {"mcp": "confirm"}

    result = invoke(project, "permissions", "show")
    assert result.exit_code == 0, result.output
    assert "mcp" in result.output
    assert "confirm" in result.output


def test_permissions_rejects_unknown_action(project: Path):
    result = invoke(project, "permissions", "default", "mcp", "maybe")

    assert result.exit_code != 0
    assert not (project / ".shipwright" / "config.yaml").exists()


def test_servers_attach_list_detach(project: Path):
    result = invoke(project, "servers", "attach", "files", "http://localhost:9000")
    assert result.exit_code == 0, result.output

    result = invoke(project, "servers", "list")
    assert result.exit_code == 0, result.output
    assert "files" in result.output

    result = invoke(project, "servers", "detach", "files")
    assert result.exit_code == 0, result.output
    assert "Detached files" in result.output

    result = invoke(project, "servers", "list")
    assert "No tool servers attached" in result.output


def test_servers_attach_duplicate_fails(project: Path):
    invoke(project, "servers", "attach", "files", "http://localhost:9000")

    result = invoke(project, "servers", "attach", "files", "http://localhost:9001")

    assert result.exit_code == 1
    assert "already attached" in result.output


def test_revert_last_with_empty_journal(project: Path):
    result = invoke(project, "patch", "revert-last")

    assert result.exit_code == 0, result.output
    assert "Nothing to revert" in result.output


def test_invalid_global_config_exits_with_error(project: Path):
    (project.parent / "global.yaml").write_text("model: [unclosed\n", encoding="utf-8")

    result = invoke(project, "servers", "list")

    assert result.exit_code == 1
    assert "Invalid YAML" in result.output


def test_run_streams_the_reply(project: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(main_module, "provider_from_config", lambda: CannedProvider("All done."))

    result = invoke(project, "run", "tidy up")

    assert result.exit_code == 0, result.output
    assert "All done." in result.output


def test_run_reports_proposed_patch(project: Path, monkeypatch: pytest.MonkeyPatch):
    reply = "*** Begin Patch\n--- a/app.py\n+++ b/app.py\n@@ -1 +1 @@\n-old\n+new\n*** End Patch\n"
    monkeypatch.setattr(main_module, "provider_from_config", lambda: CannedProvider(reply))

    result = invoke(project, "run", "change app")

    assert result.exit_code == 0, result.output
    assert "Patch proposed" in result.output


def test_permissions_show_includes_rules_from_global_config_file(project: Path):
    global_file = project.parent / "global.yaml"
    global_file.write_text(
        yaml.safe_dump({"permissions": {"rules": [{"match": {"tool": "fs_patch"}, "action": "deny"}]}}),
        encoding="utf-8",
    )

    result = invoke(project, "permissions", "show")

    assert result.exit_code == 0, result.output
    assert "fs_patch" in result.output
    assert "deny" in result.output
