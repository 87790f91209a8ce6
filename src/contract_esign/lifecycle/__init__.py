"""Signing session lifecycle."""

from .tracker import ALLOWED_TRANSITIONS, LifecycleTracker, can_transition

__all__ = ["ALLOWED_TRANSITIONS", "LifecycleTracker", "can_transition"]
