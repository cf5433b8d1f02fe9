"""Agent settings and their persistence."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.agent.loop import LoopConfig
from ..ai.client import ClientSettings

__all__ = [
    "AgentSettings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".wayfinder"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "WAYFINDER_API_KEY": "api_key",
    "WAYFINDER_BASE_URL": "base_url",
    "WAYFINDER_MODEL": "model",
    "WAYFINDER_ORGANIZATION": "organization",
    "WAYFINDER_LOG_LEVEL": "log_level",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "WAYFINDER_INLINE_CITATIONS": "enable_inline_citations",
    "WAYFINDER_EXCLUDE_THINKING": "exclude_thinking",
    "WAYFINDER_TELEMETRY_OPT_IN": "telemetry_opt_in",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "WAYFINDER_TEMPERATURE": "temperature",
    "WAYFINDER_REQUEST_TIMEOUT": "request_timeout",
    "WAYFINDER_LOOP_TIMEOUT": "loop_timeout",
    "WAYFINDER_TOOL_TIMEOUT": "tool_timeout",
    "WAYFINDER_RETRY_BASE_DELAY": "retry_base_delay",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "WAYFINDER_MAX_TOKENS": "max_tokens",
    "WAYFINDER_MAX_ITERATIONS": "max_iterations",
    "WAYFINDER_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_API_KEY_FIELD = "api_key_ciphertext"
_SECRET_KEY_ENV = "WAYFINDER_SECRET_KEY"


@dataclass(slots=True)
class AgentSettings:
    """User-configurable settings for the model client and the agent loop."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float | None = 0.2
    max_tokens: int | None = None
    request_timeout: float = 90.0
    max_iterations: int = 4
    loop_timeout: float = 300.0
    tool_timeout: float = 30.0
    max_retries: int = 2
    retry_base_delay: float = 1.0
    enable_inline_citations: bool = True
    exclude_thinking: bool = False
    reveal_chunk_size: int = 20
    reveal_delay: float = 0.0
    reasoning_tick_interval: float = 0.1
    telemetry_opt_in: bool = False
    log_level: str = "INFO"
    default_headers: dict[str, str] = field(default_factory=dict)

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> AgentSettings:
        """Return a copy with ``WAYFINDER_*`` environment overrides applied."""

        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if not overrides:
            return self
        LOGGER.debug("Applying environment settings overrides: %s", sorted(overrides))
        return replace(self, **overrides)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.log_level.strip().upper() == "DEBUG",
        )

    def loop_config(self) -> LoopConfig:
        return LoopConfig(
            max_iterations=self.max_iterations,
            loop_timeout=self.loop_timeout,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            enable_inline_citations=self.enable_inline_citations,
            exclude_thinking=self.exclude_thinking,
            reveal_chunk_size=self.reveal_chunk_size,
            reveal_delay=self.reveal_delay,
            reasoning_tick_interval=self.reasoning_tick_interval,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            model_name=self.model,
        )


class SecretVault:
    """Encrypts and decrypts the API key with a symmetric Fernet key.

    The key comes from ``WAYFINDER_SECRET_KEY`` when set, otherwise from a key
    file that is created on first use.
    """

    def __init__(self, *, key_path: Path | None = None, key: bytes | str | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._key = key.encode("ascii") if isinstance(key, str) else key
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        try:
            return self._get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._resolve_key())
        return self._fernet

    def _resolve_key(self) -> bytes:
        if self._key:
            return self._key
        env_key = os.environ.get(_SECRET_KEY_ENV)
        if env_key:
            return env_key.strip().encode("ascii")
        return self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """JSON persistence for :class:`AgentSettings` with the API key encrypted at rest."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> AgentSettings:
        """Load settings from disk, then apply explicit and environment overrides."""

        payload = self._read_payload()
        settings = AgentSettings()
        if payload:
            api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None))
            data = _filter_fields(payload)
            try:
                settings = AgentSettings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = AgentSettings()
            if api_key:
                settings = replace(settings, api_key=api_key)

        if overrides:
            settings = _apply_overrides(settings, overrides)
        return settings.with_env_overrides()

    def save(self, settings: AgentSettings) -> Path:
        """Persist settings with an atomic file replace."""

        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _decrypt_api_key(self, ciphertext: Any) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Unable to decrypt stored API key: %s", exc)
            return ""


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(AgentSettings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _apply_overrides(settings: AgentSettings, overrides: Mapping[str, Any]) -> AgentSettings:
    allowed = {item.name for item in fields(AgentSettings)}
    filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
    if not filtered:
        return settings
    LOGGER.debug("Applying runtime settings overrides: %s", sorted(filtered))
    return replace(settings, **filtered)


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
