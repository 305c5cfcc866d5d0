"""Registry of failover groups under reconciliation."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterator

from drcore.alerts.models import AlertBook
from drcore.failover.controller import FailoverController
from drcore.failover.errors import InvalidRequest, UnknownGroup


@dataclass
class GroupEntry:
    controller: FailoverController
    book: AlertBook = field(default_factory=AlertBook)
    task: asyncio.Task[None] | None = None
    cycles: int = 0

    @property
    def group_id(self) -> str:
        return self.controller.group_id


class GroupRegistry:
    def __init__(self) -> None:
        self._entries: dict[str, GroupEntry] = {}

    def add(self, entry: GroupEntry) -> GroupEntry:
        if entry.group_id in self._entries:
            raise InvalidRequest(f"group {entry.group_id} already registered")
        self._entries[entry.group_id] = entry
        return entry

    def get(self, group_id: str) -> GroupEntry:
        try:
            return self._entries[group_id]
        except KeyError:
            raise UnknownGroup(f"unknown failover group {group_id!r}") from None

    def remove(self, group_id: str) -> GroupEntry:
        entry = self.get(group_id)
        del self._entries[group_id]
        return entry

    def ids(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._entries

    def __iter__(self) -> Iterator[GroupEntry]:
        return iter([self._entries[k] for k in self.ids()])

    def __len__(self) -> int:
        return len(self._entries)
