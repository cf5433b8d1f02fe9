"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from wayfinder.services.settings import AgentSettings, SecretVault, SettingsStore, redact_secret


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == AgentSettings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = AgentSettings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="gpt-4.1-mini",
        organization="acme",
        max_iterations=6,
        loop_timeout=120.0,
        enable_inline_citations=False,
        default_headers={"X-Test": "1"},
    )

    store.save(original)
    reloaded = _store(tmp_path).load()

    assert reloaded == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    store = _store(tmp_path)
    path = store.save(AgentSettings(api_key="super-secret"))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert "api_key" not in payload
    assert payload["api_key_ciphertext"]
    assert "super-secret" not in path.read_text(encoding="utf-8")
    assert payload["version"] == 1
    assert (tmp_path / "settings.key").exists()


def test_undecryptable_key_is_dropped(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"model": "gpt-4o", "api_key_ciphertext": "not-a-token"}), encoding="utf-8")

    settings = _store(tmp_path).load()

    assert settings.model == "gpt-4o"
    assert settings.api_key == ""


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text("{not json", encoding="utf-8")
    assert _store(tmp_path).load() == AgentSettings()


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"model": "gpt-4o", "theme": "dark"}), encoding="utf-8")
    assert _store(tmp_path).load().model == "gpt-4o"


def test_load_applies_runtime_overrides(tmp_path: Path) -> None:
    settings = _store(tmp_path).load(overrides={"model": "override-model", "max_tokens": None, "bogus": 1})
    assert settings.model == "override-model"
    assert settings.max_tokens is None


def test_env_overrides_win_over_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(AgentSettings(model="file-model", api_key="from-file"))
    monkeypatch.setenv("WAYFINDER_MODEL", "env-model")
    monkeypatch.setenv("WAYFINDER_API_KEY", "from-env")

    settings = store.load()

    assert settings.model == "env-model"
    assert settings.api_key == "from-env"


def test_env_overrides_parse_types() -> None:
    settings = AgentSettings().with_env_overrides(
        {
            "WAYFINDER_MAX_ITERATIONS": "8",
            "WAYFINDER_LOOP_TIMEOUT": "42.5",
            "WAYFINDER_INLINE_CITATIONS": "off",
            "WAYFINDER_EXCLUDE_THINKING": "yes",
            "WAYFINDER_MAX_RETRIES": "many",
        }
    )

    assert settings.max_iterations == 8
    assert settings.loop_timeout == 42.5
    assert settings.enable_inline_citations is False
    assert settings.exclude_thinking is True
    assert settings.max_retries == AgentSettings().max_retries


def test_no_env_overrides_returns_same_instance() -> None:
    settings = AgentSettings()
    assert settings.with_env_overrides({}) is settings


def test_client_settings_and_loop_config() -> None:
    settings = AgentSettings(
        model="gpt-4o",
        log_level="debug",
        max_iterations=7,
        retry_base_delay=0.5,
        default_headers={"X-Test": "1"},
    )

    client = settings.client_settings()
    assert client.model == "gpt-4o"
    assert client.debug_logging is True
    assert client.default_headers == {"X-Test": "1"}

    config = settings.loop_config()
    assert config.max_iterations == 7
    assert config.retry_base_delay == 0.5
    assert config.model_name == "gpt-4o"
    assert config.temperature == settings.temperature


def test_client_settings_without_headers() -> None:
    assert AgentSettings().client_settings().default_headers is None


class TestSecretVault:
    def test_roundtrip_with_explicit_key(self, tmp_path: Path) -> None:
        vault = SecretVault(key_path=tmp_path / "unused.key", key=Fernet.generate_key())
        token = vault.encrypt("sk-test")
        assert token != "sk-test"
        assert vault.decrypt(token) == "sk-test"
        assert not (tmp_path / "unused.key").exists()

    def test_empty_values(self, tmp_path: Path) -> None:
        vault = SecretVault(key_path=tmp_path / "key")
        assert vault.encrypt("") == ""
        assert vault.decrypt(None) == ""

    def test_invalid_token(self, tmp_path: Path) -> None:
        vault = SecretVault(key_path=tmp_path / "key")
        with pytest.raises(ValueError):
            vault.decrypt("garbage")

    def test_key_from_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        key = Fernet.generate_key().decode("ascii")
        monkeypatch.setenv("WAYFINDER_SECRET_KEY", key)
        token = SecretVault(key_path=tmp_path / "key").encrypt("sk-test")

        assert SecretVault(key_path=tmp_path / "other", key=key).decrypt(token) == "sk-test"
        assert not (tmp_path / "key").exists()

    def test_key_file_is_reused(self, tmp_path: Path) -> None:
        token = SecretVault(key_path=tmp_path / "key").encrypt("sk-test")
        assert SecretVault(key_path=tmp_path / "key").decrypt(token) == "sk-test"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", ""),
        ("abc", "***"),
        ("sk-123456", "sk*****56"),
        ("  sk-123456  ", "sk*****56"),
    ],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
