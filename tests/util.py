from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

from marketchat.backend import AuthUser
from marketchat.errors import TransientError
from marketchat.local import Datastore, LocalBackend
from marketchat.rows import format_timestamp


async def settle(*components, rounds: int = 10) -> None:
    """Run queued change deliveries and the tasks they spawn."""

    for _ in range(rounds):
        await asyncio.sleep(0)
        for component in components:
            await component.settle()


def at(seconds: int) -> str:
    return format_timestamp(datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds))


class RecordingBackend(LocalBackend):
    """Local backend that records mutations and can be told to fail calls."""

    def __init__(self, datastore: Datastore) -> None:
        super().__init__(datastore)
        self.calls: List[tuple] = []
        self.fail: set[str] = set()

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise TransientError(f"{name} unavailable")

    def count(self, name: str, table: str | None = None) -> int:
        return sum(1 for call in self.calls if call[0] == name and (table is None or call[1] == table))

    async def query(self, table, where=None, **kwargs):
        self._record("query", table, where)
        return await super().query(table, where, **kwargs)

    async def insert(self, table, row):
        self._record("insert", table, row)
        return await super().insert(table, row)

    async def upsert(self, table, row, on_conflict):
        self._record("upsert", table, row)
        return await super().upsert(table, row, on_conflict)

    async def update(self, table, where, patch):
        self._record("update", table, where, patch)
        return await super().update(table, where, patch)

    async def delete(self, table, where):
        self._record("delete", table, where)
        return await super().delete(table, where)

    async def upload_blob(self, bucket, path, data, content_type=None):
        self._record("upload_blob", bucket, path)
        return await super().upload_blob(bucket, path, data, content_type)


def signed_in(datastore: Datastore, user_id: str, *, recording: bool = False, **metadata) -> LocalBackend:
    backend = RecordingBackend(datastore) if recording else LocalBackend(datastore)
    backend.sign_in(AuthUser(id=user_id, email=f"{user_id}@example.com", metadata=metadata))
    return backend
