"""Presence tracking: which users currently have an open connection."""

from .registry import PresenceChange, PresenceRegistry, PresenceSnapshot

__all__ = ["PresenceChange", "PresenceRegistry", "PresenceSnapshot"]
