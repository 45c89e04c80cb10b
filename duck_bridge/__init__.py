"""OpenAI-compatible chat API bridged onto the Duck.ai chat backend."""

__version__ = "0.1.0"
