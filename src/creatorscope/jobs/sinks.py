"""
Profile sinks: where reduced metrics rows end up.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)


class ProfileSink(ABC):
    """Abstract interface for saving creator profiles."""

    @abstractmethod
    async def save_profiles(self, profiles: list[dict[str, Any]]) -> int:
        """Upsert profiles by username; returns how many were written."""
        pass

    @abstractmethod
    def get_profile(self, username: str) -> dict[str, Any] | None:
        pass


class InMemoryProfileSink(ProfileSink):
    """Process-local sink, keyed by username."""

    def __init__(self):
        self._lock = threading.Lock()
        self._profiles: dict[str, dict[str, Any]] = {}

    async def save_profiles(self, profiles: list[dict[str, Any]]) -> int:
        saved = 0
        with self._lock:
            for profile in profiles:
                username = profile.get("username")
                if not username:
                    continue
                self._profiles[username] = {**self._profiles.get(username, {}), **profile}
                saved += 1
        logger.info("Profiles saved", count=saved)
        return saved

    def get_profile(self, username: str) -> dict[str, Any] | None:
        with self._lock:
            profile = self._profiles.get(username)
        return dict(profile) if profile else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)
