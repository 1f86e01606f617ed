"""AI client, tool contracts and turn orchestration."""

from .client import AIClient, AIStreamEvent, ClientSettings

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings"]
