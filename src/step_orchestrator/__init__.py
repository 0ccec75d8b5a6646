"""Step orchestration core for LLM-driven plans."""

__version__ = "0.1.0"
