import pytest
from pydantic import ValidationError

from chat_hub.config.settings import Settings


def test_settings_defaults_and_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHAT_HUB_OLLAMA_BASE_URL", "http://gpu-box:11434/")
    monkeypatch.setenv("CHAT_HUB_STREAM_ENABLED", "false")
    cfg = Settings(_env_file=None)
    assert cfg.ollama_base_url == "http://gpu-box:11434"
    assert cfg.stream_enabled is False
    assert cfg.http_timeout == 120.0
    assert cfg.cancelled_text == "[Generation cancelled]"


def test_settings_yaml_file(monkeypatch, tmp_path):
    config = tmp_path / "chat.yaml"
    config.write_text("default_provider: litellm\nhttp_timeout: 30\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_HUB_CONFIG_FILE", str(config))
    cfg = Settings(_env_file=None)
    assert cfg.default_provider == "litellm"
    assert cfg.http_timeout == 30.0


def test_settings_rejects_short_api_key():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, litellm_api_key="short")
