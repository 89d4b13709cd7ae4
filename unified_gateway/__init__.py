"""OpenAI-compatible gateway that routes requests across configured providers."""

__version__ = "0.1.0"
