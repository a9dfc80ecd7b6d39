"""Credential store with single-flight resolution per account."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable

from aws_ops_gateway.aws_credentials.sts_provider import CredentialSet
from aws_ops_gateway.utils.time import utc_now


@dataclass(frozen=True)
class CredentialCacheEntry:
    credential_set: CredentialSet
    last_validated_at: datetime | None = None
    validation_result: bool | None = None

    @property
    def expires_at(self) -> datetime:
        return self.credential_set.expires_at


class CredentialStore:
    """Async credential cache keyed by account id.

    Entries whose credentials expire within ``refresh_buffer_seconds`` are
    never returned; concurrent misses for one account share a single
    in-flight resolution.
    """

    def __init__(self, refresh_buffer_seconds: int, max_entries: int = 1000) -> None:
        self._refresh_buffer_seconds = refresh_buffer_seconds
        self._max_entries = max_entries
        self._cache: OrderedDict[str, CredentialCacheEntry] = OrderedDict()
        self._in_flight: dict[str, asyncio.Future[CredentialSet]] = {}
        self._lock = asyncio.Lock()

    @property
    def refresh_buffer_seconds(self) -> int:
        return self._refresh_buffer_seconds

    async def get_or_resolve(
        self,
        account_id: str,
        resolve_fn: Callable[[], Awaitable[CredentialSet]],
    ) -> CredentialSet:
        while True:
            async with self._lock:
                entry = self._cache.get(account_id)
                if entry is not None:
                    if not entry.credential_set.expires_within(self._refresh_buffer_seconds):
                        self._cache.move_to_end(account_id)
                        return entry.credential_set
                    if entry.credential_set.is_expired():
                        del self._cache[account_id]

                in_flight = self._in_flight.get(account_id)
                if in_flight is None:
                    in_flight = asyncio.get_running_loop().create_future()
                    self._in_flight[account_id] = in_flight
                    should_resolve = True
                else:
                    should_resolve = False

            if should_resolve:
                return await self._resolve(account_id, in_flight, resolve_fn)

            try:
                return await asyncio.shield(in_flight)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                own_cancel = task is not None and task.cancelling() > 0
                if own_cancel or not in_flight.cancelled():
                    raise
                # The resolving task was cancelled; take over on the next pass.

    async def _resolve(
        self,
        account_id: str,
        future: asyncio.Future[CredentialSet],
        resolve_fn: Callable[[], Awaitable[CredentialSet]],
    ) -> CredentialSet:
        try:
            creds = await resolve_fn()
        except BaseException as exc:
            async with self._lock:
                if self._in_flight.get(account_id) is future:
                    del self._in_flight[account_id]
            if not future.done():
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # Mark retrieved; waiters (if any) still receive it.
                    future.exception()
            raise

        async with self._lock:
            # clear() detaches the future; a detached result must not
            # repopulate the cache.
            if self._in_flight.get(account_id) is future:
                del self._in_flight[account_id]
                self._cache[account_id] = CredentialCacheEntry(credential_set=creds)
                self._cache.move_to_end(account_id)
                while len(self._cache) > self._max_entries:
                    self._cache.popitem(last=False)
        if not future.done():
            future.set_result(creds)
        return creds

    async def peek(self, account_id: str) -> CredentialCacheEntry | None:
        async with self._lock:
            return self._cache.get(account_id)

    async def evict(self, account_id: str, credential_set: CredentialSet | None = None) -> bool:
        """Remove an entry; with ``credential_set`` only if it is still the cached one."""
        async with self._lock:
            entry = self._cache.get(account_id)
            if entry is None:
                return False
            if credential_set is not None and entry.credential_set != credential_set:
                return False
            del self._cache[account_id]
            return True

    async def record_validation(
        self, account_id: str, credential_set: CredentialSet, result: bool
    ) -> None:
        async with self._lock:
            entry = self._cache.get(account_id)
            if entry is not None and entry.credential_set == credential_set:
                self._cache[account_id] = replace(
                    entry, last_validated_at=utc_now(), validation_result=result
                )

    async def clear(self, account_id: str | None = None) -> None:
        async with self._lock:
            if account_id is None:
                self._cache.clear()
                self._in_flight.clear()
            else:
                self._cache.pop(account_id, None)
                self._in_flight.pop(account_id, None)

    def __len__(self) -> int:
        return len(self._cache)
