"""TextMe: drive a Claude CLI worker from text messages."""

__version__ = "0.3.0"
