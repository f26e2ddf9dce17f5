"""
chatline — a single-user chat client for a local Ollama server.
Streams replies token by token and keeps every conversation on disk.
"""

__version__ = "0.3.0"
