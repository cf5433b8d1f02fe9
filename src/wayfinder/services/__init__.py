"""Service layer helpers (settings persistence)."""

from .settings import AgentSettings, SecretVault, SettingsStore, redact_secret

__all__ = ["AgentSettings", "SettingsStore", "SecretVault", "redact_secret"]
