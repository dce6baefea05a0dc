# src/catalog/directory.py - v1
"""Container directory: per-container facts the archive needs (expiry)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime


class BaseContainerDirectory(ABC):
    """Lookup of container (gallery) attributes."""

    @abstractmethod
    async def get_expires_at(self, container_id: str) -> datetime | None:
        """Expiry of the container, or None when it never expires."""


class StaticContainerDirectory(BaseContainerDirectory):
    """In-memory directory, configured up front."""

    def __init__(self, expiries: dict[str, datetime] | None = None) -> None:
        self._expiries: dict[str, datetime] = dict(expiries or {})

    def set_expires_at(self, container_id: str, expires_at: datetime | None) -> None:
        if expires_at is None:
            self._expiries.pop(container_id, None)
        else:
            self._expiries[container_id] = expires_at

    async def get_expires_at(self, container_id: str) -> datetime | None:
        return self._expiries.get(container_id)
