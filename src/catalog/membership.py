# src/catalog/membership.py - v1
"""Membership index: which source keys belong to an order's archive.

Final-image sets are not passed by the caller; they are derived from an
index. The prefix-backed index lists the order's final prefix directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from chunkzip.core.models import OrderKey
from chunkzip.storage.base_object_store import BaseObjectStore
from chunkzip.storage.layout import DEFAULT_ROOT, is_derivative_key, source_prefix

COUNT_PAGE_SIZE = 1000


class BaseMembershipIndex(ABC):
    """Source of derived key sets."""

    @abstractmethod
    def iter_keys(self, key: OrderKey, page_size: int = COUNT_PAGE_SIZE) -> AsyncIterator[str]:
        """Yield the archive members of an order, page by page."""

    async def list_keys(self, key: OrderKey) -> list[str]:
        return [k async for k in self.iter_keys(key)]

    async def count(self, key: OrderKey) -> int:
        """Count members with a paginated query (no full materialisation)."""
        total = 0
        async for _ in self.iter_keys(key, page_size=COUNT_PAGE_SIZE):
            total += 1
        return total


class PrefixMembershipIndex(BaseMembershipIndex):
    """Derives members by listing the order's source prefix.

    Derivative renditions and nested sub-paths are excluded; returned keys
    are relative to the source prefix.
    """

    def __init__(self, store: BaseObjectStore, root: str = DEFAULT_ROOT) -> None:
        self._store = store
        self._root = root

    async def iter_keys(self, key: OrderKey, page_size: int = COUNT_PAGE_SIZE) -> AsyncIterator[str]:
        prefix = source_prefix(key, self._root)
        async for item in self._store.iter_prefix(prefix, page_size=page_size):
            if is_derivative_key(item.key):
                continue
            name = item.key[len(prefix):]
            if not name or "/" in name:
                continue
            yield name


class StaticMembershipIndex(BaseMembershipIndex):
    """Fixed membership per order (tests, CLI-supplied manifests)."""

    def __init__(self, members: dict[OrderKey, list[str]] | None = None) -> None:
        self._members: dict[OrderKey, list[str]] = dict(members or {})

    def register(self, key: OrderKey, keys: list[str]) -> None:
        self._members[key] = list(keys)

    async def iter_keys(self, key: OrderKey, page_size: int = COUNT_PAGE_SIZE) -> AsyncIterator[str]:
        for name in self._members.get(key, []):
            yield name
