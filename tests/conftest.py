from pathlib import Path

import pytest

import shipwright.config as config_module
import shipwright.permissions as permissions_module
from shipwright.config import Config, set_config
from shipwright.permissions import set_prompts_disabled


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path):
    """Keep tests away from the user's global config and the process-wide override."""
    global_cfg = tmp_path / "global-config.yaml"
    monkeypatch.setattr(config_module, "GLOBAL_CONFIG_PATH", global_cfg)
    monkeypatch.setattr(permissions_module, "GLOBAL_CONFIG_PATH", global_cfg)
    cfg = Config()
    cfg.session.path = str(tmp_path / "sessions.db")
    set_config(cfg)
    set_prompts_disabled(False)
    yield cfg
    set_prompts_disabled(False)
    set_config(None)
