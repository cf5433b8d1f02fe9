"""Model client, streaming decoder, agent loop and citation post-processing."""

from .client import AIClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter"]
