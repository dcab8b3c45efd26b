"""Terminal client for browsing, managing and chatting with local Ollama models."""
import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
