from __future__ import annotations

import itertools
import random
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from lieng.cards import build_deck, parse_cards
from lieng.errors import LedgerError
from lieng.game import LiengEngine
from lieng.models import GameKey, GameState, LiengConfig, Location
from lieng_host.gateways import Directory, MemoryLedger
from lieng_host.service import LiengService

LOCATION = Location("clan1", "general")
PLAYERS = ("alice", "bob", "carol")


class RecordingMessenger:
    """Messenger fake that keeps everything it was asked to deliver."""

    def __init__(self) -> None:
        self.channel: List[Tuple[Location, str, list]] = []
        self.private: List[Tuple[str, str]] = []
        self.updates: List[Tuple[str, str]] = []
        self.deleted: List[str] = []
        self._counter = itertools.count(1)

    async def notify_channel(self, location, text, actions=None):
        self.channel.append((location, text, list(actions or [])))
        return f"msg-{next(self._counter)}"

    async def notify_player(self, player_id, text, location=None):
        self.private.append((player_id, text))

    async def update_message(self, message_ref, text, actions=None):
        self.updates.append((message_ref, text))

    async def delete_message(self, message_ref):
        self.deleted.append(message_ref)

    def channel_texts(self) -> List[str]:
        return [text for _, text, _ in self.channel]


class BrokenMessenger(RecordingMessenger):
    async def notify_channel(self, location, text, actions=None):
        raise ConnectionError("chat platform down")

    async def notify_player(self, player_id, text, location=None):
        raise ConnectionError("chat platform down")


class FlakyLedger(MemoryLedger):
    """MemoryLedger whose deductions or credits fail for chosen players."""

    def __init__(
        self,
        starting_balance: int = 10_000,
        fail_deduct: Iterable[str] = (),
        fail_credit: Iterable[str] = (),
    ) -> None:
        super().__init__(starting_balance)
        self.fail_deduct = set(fail_deduct)
        self.fail_credit = set(fail_credit)

    async def deduct(self, player_ids, amount):
        if self.fail_deduct.intersection(player_ids):
            raise LedgerError("ledger offline")
        await super().deduct(player_ids, amount)

    async def credit(self, player_id, amount):
        if player_id in self.fail_credit:
            raise LedgerError("ledger offline")
        await super().credit(player_id, amount)


class OfflineLedger(MemoryLedger):
    """MemoryLedger whose reads fail as if the backing store were unreachable."""

    async def balance(self, player_id):
        raise ConnectionError("ledger down")

    async def check_funds(self, player_ids, amount):
        raise ConnectionError("ledger down")


def create_service(
    *,
    players: Sequence[str] = PLAYERS,
    balance: int = 10_000,
    balances: Optional[Dict[str, int]] = None,
    move_time_ms: int = 0,
    invite_time_ms: int = 30_000,
    ledger: Optional[MemoryLedger] = None,
    messenger: Optional[RecordingMessenger] = None,
    seed: int = 7,
) -> Tuple[LiengService, MemoryLedger, RecordingMessenger]:
    """Service wired to an in-memory ledger, a name directory and a recording messenger."""
    config = LiengConfig(invite_time_ms=invite_time_ms, move_time_ms=move_time_ms, default_bet=100)
    ledger = ledger or MemoryLedger(balance)
    messenger = messenger or RecordingMessenger()
    directory = Directory()
    for player_id in players:
        ledger.open_account(player_id, (balances or {}).get(player_id, balance))
        directory.register(player_id, player_id.capitalize())
    service = LiengService(config, ledger, messenger, directory, rng=random.Random(seed))
    return service, ledger, messenger


def create_game(
    *,
    players: Sequence[str] = PLAYERS,
    bet: int = 100,
    hands: Optional[Sequence[Sequence[str]]] = None,
    seed: int = 42,
) -> Tuple[LiengEngine, GameState]:
    engine = LiengEngine(LiengConfig())
    key = GameKey(LOCATION, "lieng_1_1")
    roster = [(player_id, player_id.capitalize()) for player_id in players]
    game = engine.new_game(key, players[0], roster, bet, rng=random.Random(seed))
    if hands:
        set_hands(game, hands)
    return engine, game


def set_hands(game: GameState, hands: Sequence[Sequence[str]]) -> None:
    for player, labels in zip(game.players, hands):
        player.hole = parse_cards(labels)


def rig_deck(monkeypatch, hands: Sequence[Sequence[str]]) -> None:
    """Make the next dealt game hand out ``hands`` in seat order."""
    wanted = [card for hand in hands for card in parse_cards(hand)]
    rest = [card for card in build_deck() if card not in wanted]
    # deal() pops from the end of the deck.
    deck = rest + list(reversed(wanted))
    monkeypatch.setattr("lieng.game.build_deck", lambda: list(deck))
    monkeypatch.setattr("lieng.game.shuffle", lambda deck, rng=None: None)
