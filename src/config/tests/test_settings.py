import os
from dataclasses import FrozenInstanceError

import pytest
from pydantic import ValidationError

from src.config.agent_config import AgentConfig, parse_allowlist, prepare_sandbox_root
from src.config.settings import Settings, load_settings

SECRET = "s" * 32
SERVICE_KEY = "service-role-key-0123456789"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in list(Settings.model_fields) + ["HOCKER_PROJECT_ID"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_with_memory_backend(monkeypatch):
    monkeypatch.setenv("COMMAND_HMAC_SECRET", SECRET)
    monkeypatch.setenv("BACKEND", "memory")

    settings = load_settings()

    assert settings.PROJECT_ID == "global"
    assert settings.NODE_ID == "node-agent-1"
    assert settings.SHELL_TIMEOUT_SECONDS == 60
    assert settings.PORT == 8080
    assert settings.SHELL_ALLOWLIST.split(",")[0] == "ls"


def test_legacy_project_variable_is_accepted(monkeypatch):
    monkeypatch.setenv("COMMAND_HMAC_SECRET", SECRET)
    monkeypatch.setenv("BACKEND", "memory")
    monkeypatch.setenv("HOCKER_PROJECT_ID", "legacy-project")

    assert load_settings().PROJECT_ID == "legacy-project"


def test_short_secret_is_rejected():
    with pytest.raises(ValidationError):
        load_settings(COMMAND_HMAC_SECRET="short", BACKEND="memory")


def test_missing_secret_is_rejected():
    with pytest.raises(ValidationError):
        load_settings(BACKEND="memory")


def test_rest_backend_requires_credentials():
    with pytest.raises(ValidationError):
        load_settings(COMMAND_HMAC_SECRET=SECRET, BACKEND="rest")

    settings = load_settings(
        COMMAND_HMAC_SECRET=SECRET,
        BACKEND="REST",
        SUPABASE_URL="https://example.supabase.co/",
        SUPABASE_SERVICE_ROLE_KEY=SERVICE_KEY,
    )
    assert settings.BACKEND == "rest"
    assert settings.SUPABASE_URL == "https://example.supabase.co"


def test_rest_url_must_be_http():
    with pytest.raises(ValidationError):
        load_settings(
            COMMAND_HMAC_SECRET=SECRET,
            SUPABASE_URL="ftp://example",
            SUPABASE_SERVICE_ROLE_KEY=SERVICE_KEY,
        )


def test_sql_backend_requires_dsn():
    with pytest.raises(ValidationError):
        load_settings(COMMAND_HMAC_SECRET=SECRET, BACKEND="sql")

    assert load_settings(COMMAND_HMAC_SECRET=SECRET, BACKEND="sql", DATABASE_URL="sqlite://").DATABASE_URL


def test_unknown_backend_is_rejected():
    with pytest.raises(ValidationError):
        load_settings(COMMAND_HMAC_SECRET=SECRET, BACKEND="redis")


def test_non_positive_limits_are_rejected():
    with pytest.raises(ValidationError):
        load_settings(COMMAND_HMAC_SECRET=SECRET, BACKEND="memory", SHELL_TIMEOUT_SECONDS=0)
    with pytest.raises(ValidationError):
        load_settings(COMMAND_HMAC_SECRET=SECRET, BACKEND="memory", BATCH_SIZE=0)


def test_agent_config_from_settings_prepares_sandbox(tmp_path):
    settings = load_settings(
        COMMAND_HMAC_SECRET=SECRET,
        BACKEND="memory",
        SANDBOX_ROOT=str(tmp_path / "box"),
        SHELL_ALLOWLIST=" ls, whoami ,,ls,git-* ",
        NODE_ID="node-7",
    )

    config = AgentConfig.from_settings(settings)

    assert os.path.isdir(config.sandbox_root)
    assert config.sandbox_root == os.path.realpath(str(tmp_path / "box"))
    assert config.shell_allowlist == ("ls", "whoami", "git-*")
    assert config.node_id == "node-7"
    assert config.signing_secret == SECRET


def test_agent_config_is_frozen_and_validated(tmp_path):
    config = AgentConfig(signing_secret=SECRET, project_id="p1", node_id="n1", sandbox_root=str(tmp_path))

    with pytest.raises(FrozenInstanceError):
        config.node_id = "other"
    with pytest.raises(ValueError):
        AgentConfig(signing_secret=SECRET, project_id="p1", node_id="n1", sandbox_root="relative/path")
    with pytest.raises(ValueError):
        AgentConfig(signing_secret="", project_id="p1", node_id="n1", sandbox_root=str(tmp_path))
    with pytest.raises(ValueError):
        AgentConfig(
            signing_secret=SECRET, project_id="p1", node_id="n1", sandbox_root=str(tmp_path), max_output_bytes=0
        )


def test_parse_allowlist_and_prepare_root(tmp_path):
    assert parse_allowlist("") == ()
    link = tmp_path / "link"
    target = tmp_path / "real"
    target.mkdir()
    os.symlink(str(target), str(link))

    assert prepare_sandbox_root(str(link)) == os.path.realpath(str(target))
