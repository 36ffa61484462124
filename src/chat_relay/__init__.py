"""Chat Relay - stream LLM responses to browser clients over server-sent events."""

__version__ = "0.1.0"
