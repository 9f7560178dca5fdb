"""Multi-agent task coordination over a shared file-backed state store."""

__version__ = "0.1.0"
