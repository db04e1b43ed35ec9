from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from lieng.errors import InsufficientFunds, LedgerError
from lieng.models import Location

LOGGER = logging.getLogger("lieng_ledger")

# Buttons attached to a message: [{"id": ..., "label": ..., "style": ...}]
Actions = List[Dict[str, str]]


class Ledger(Protocol):
    async def balance(self, player_id: str) -> int: ...

    async def check_funds(self, player_ids: Sequence[str], amount: int) -> List[str]: ...

    async def deduct(self, player_ids: Sequence[str], amount: int) -> None: ...

    async def credit(self, player_id: str, amount: int) -> None: ...


class Messenger(Protocol):
    async def notify_channel(
        self, location: Location, text: str, actions: Optional[Actions] = None
    ) -> Optional[str]: ...

    async def notify_player(self, player_id: str, text: str, location: Optional[Location] = None) -> None: ...

    async def update_message(self, message_ref: str, text: str, actions: Optional[Actions] = None) -> None: ...

    async def delete_message(self, message_ref: str) -> None: ...


class IdentityResolver(Protocol):
    async def display_name(self, player_id: str) -> Optional[str]: ...


class MemoryLedger:
    """Player balances held in memory, optionally mirrored to a JSON file.

    Every mutation takes the affected players' locks (in sorted order) so a
    balance check and the write that follows it cannot interleave with
    another game's deduction for the same player.
    """

    def __init__(self, starting_balance: int = 0, path: Optional[Union[str, Path]] = None) -> None:
        self.starting_balance = starting_balance
        self.path = Path(path) if path else None
        self.balances: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        if self.path and self.path.exists():
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self.balances = {str(player_id): int(amount) for player_id, amount in raw.items()}
            LOGGER.info("Loaded %s balances from %s", len(self.balances), self.path)

    def open_account(self, player_id: str, balance: Optional[int] = None) -> int:
        if player_id not in self.balances:
            self.balances[player_id] = self.starting_balance if balance is None else balance
        return self.balances[player_id]

    async def balance(self, player_id: str) -> int:
        return self.balances.get(player_id, 0)

    async def check_funds(self, player_ids: Sequence[str], amount: int) -> List[str]:
        return [player_id for player_id in player_ids if self.balances.get(player_id, 0) < amount]

    async def deduct(self, player_ids: Sequence[str], amount: int) -> None:
        if amount < 0:
            raise LedgerError("Cannot deduct a negative amount")
        ordered = sorted(set(player_ids))
        async with contextlib.AsyncExitStack() as stack:
            for player_id in ordered:
                await stack.enter_async_context(self._lock(player_id))
            short = [player_id for player_id in ordered if self.balances.get(player_id, 0) < amount]
            if short:
                raise InsufficientFunds(short, amount)
            updated = dict(self.balances)
            for player_id in ordered:
                updated[player_id] = updated.get(player_id, 0) - amount
            self._commit(updated)

    async def credit(self, player_id: str, amount: int) -> None:
        if amount < 0:
            raise LedgerError("Cannot credit a negative amount")
        async with self._lock(player_id):
            updated = dict(self.balances)
            updated[player_id] = updated.get(player_id, 0) + amount
            self._commit(updated)

    def _lock(self, player_id: str) -> asyncio.Lock:
        lock = self._locks.get(player_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[player_id] = lock
        return lock

    def _commit(self, updated: Dict[str, int]) -> None:
        # Write first so a failed save leaves the in-memory balances untouched.
        if self.path:
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                tmp_path.write_text(json.dumps(updated, indent=2, sort_keys=True), encoding="utf-8")
                os.replace(tmp_path, self.path)
            except OSError as exc:
                raise LedgerError(f"Could not save balances: {exc}") from exc
        self.balances = updated


class Directory:
    """Display names learned from connected clients and invites."""

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}

    def register(self, player_id: str, name: Optional[str]) -> None:
        if name:
            self.names[player_id] = name

    async def display_name(self, player_id: str) -> Optional[str]:
        return self.names.get(player_id)


class NullMessenger:
    """Messenger that drops everything; used when the engine runs headless."""

    async def notify_channel(self, location: Location, text: str, actions: Optional[Actions] = None) -> Optional[str]:
        return None

    async def notify_player(self, player_id: str, text: str, location: Optional[Location] = None) -> None:
        return None

    async def update_message(self, message_ref: str, text: str, actions: Optional[Actions] = None) -> None:
        return None

    async def delete_message(self, message_ref: str) -> None:
        return None


class SafeMessenger:
    """Wraps a Messenger so delivery failures are logged and never reach game logic."""

    def __init__(self, inner: Messenger, logger: logging.Logger) -> None:
        self.inner = inner
        self.logger = logger

    async def notify_channel(self, location: Location, text: str, actions: Optional[Actions] = None) -> Optional[str]:
        return await self._call("notify_channel", self.inner.notify_channel(location, text, actions))

    async def notify_player(self, player_id: str, text: str, location: Optional[Location] = None) -> None:
        await self._call("notify_player", self.inner.notify_player(player_id, text, location))

    async def update_message(self, message_ref: Optional[str], text: str, actions: Optional[Actions] = None) -> None:
        if message_ref:
            await self._call("update_message", self.inner.update_message(message_ref, text, actions))

    async def delete_message(self, message_ref: Optional[str]) -> None:
        if message_ref:
            await self._call("delete_message", self.inner.delete_message(message_ref))

    async def _call(self, name: str, call: Any) -> Any:
        try:
            return await call
        except Exception as exc:
            self.logger.warning("Messenger %s failed: %s", name, exc)
            return None
