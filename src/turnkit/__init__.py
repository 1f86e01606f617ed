"""Agent-turn orchestration for tool-calling OpenAI-compatible backends."""

__all__ = ["__version__"]

__version__ = "0.1.0"
