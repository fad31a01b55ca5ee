"""Core app configuration, clock and credential primitives."""

from app.core.clock import Clock, SystemClock
from app.core.config import get_settings, settings

__all__ = ["Clock", "SystemClock", "get_settings", "settings"]
