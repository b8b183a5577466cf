"""Teamwork realtime back end: presence, chat rooms and work distribution."""

__version__ = "0.1.0"
