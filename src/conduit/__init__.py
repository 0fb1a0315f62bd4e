"""Conduit: drive an agent CLI as a typed, event-driven session."""

__version__ = "0.1.0"
