"""Convoy: supervise multiple coding-agent CLI sessions from one front-end."""

__version__ = "0.3.0"
