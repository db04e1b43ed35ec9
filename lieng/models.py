from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from .cards import Card


class Round(str, Enum):
    WAITING = "waiting"
    BETTING = "betting"
    SHOWDOWN = "showdown"


class ActionType(str, Enum):
    CHECK = "check"
    CALL = "call"
    FOLD = "fold"
    RAISE = "raise"
    ALLIN = "allin"


class Decision(str, Enum):
    CONFIRM = "confirm"
    DECLINE = "decline"


@dataclass
class LiengConfig:
    invite_time_ms: int = 30_000
    move_time_ms: int = 30_000
    default_bet: int = 1_000
    min_players: int = 2
    max_players: int = 17
    starting_balance: int = 10_000


@dataclass(frozen=True)
class Location:
    clan_id: str
    channel_id: str


@dataclass(frozen=True)
class GameKey:
    location: Location
    game_id: str


@dataclass
class Player:
    id: str
    name: str
    seat: int
    hole: List[Card] = field(default_factory=list)
    has_folded: bool = False
    is_all_in: bool = False
    current_bet: int = 0

    @property
    def is_live(self) -> bool:
        return not self.has_folded and not self.is_all_in


@dataclass
class ActionRecord:
    player_id: str
    action: ActionType
    amount: int
    timestamp: datetime
    round: Round
    accepted: bool = True
    forced: bool = False


@dataclass
class Invite:
    game_id: str
    creator_id: str
    location: Location
    mentioned: List[str]
    bet_amount: int
    expires_at: datetime
    names: Dict[str, str] = field(default_factory=dict)
    confirmed: Set[str] = field(default_factory=set)
    declined: Set[str] = field(default_factory=set)
    message_ref: Optional[str] = None
    timer: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> GameKey:
        return GameKey(self.location, self.game_id)

    def respond(self, user_id: str, decision: Decision) -> bool:
        """Move ``user_id`` into the chosen set; returns False when nothing changed."""
        chosen, other = (
            (self.confirmed, self.declined) if decision == Decision.CONFIRM else (self.declined, self.confirmed)
        )
        if user_id in chosen:
            return False
        other.discard(user_id)
        chosen.add(user_id)
        return True

    @property
    def responded(self) -> int:
        return len(self.confirmed) + len(self.declined)

    @property
    def pending(self) -> int:
        return len(self.mentioned) - self.responded

    def has_quorum(self) -> bool:
        return self.responded == len(self.mentioned)

    def confirmed_in_order(self) -> List[str]:
        return [user_id for user_id in self.mentioned if user_id in self.confirmed]

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


@dataclass
class GameState:
    # Everything mutable about one game. Only the engine writes to it.
    key: GameKey
    creator_id: str
    bet_amount: int
    players: List[Player]
    deck: List[Card]
    pot: int = 0
    current_bet: int = 0
    round: Round = Round.WAITING
    dealer_button: int = 0
    current_player_index: int = 0
    to_act_ids: Set[str] = field(default_factory=set)
    action_history: List[ActionRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    turn_seq: int = 0
    turn_timer: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    turn_message_ref: Optional[str] = None

    @property
    def game_id(self) -> str:
        return self.key.game_id

    @property
    def location(self) -> Location:
        return self.key.location

    @property
    def current_player(self) -> Player:
        return self.players[self.current_player_index]

    def player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def active_players(self) -> List[Player]:
        return [player for player in self.players if not player.has_folded]

    def payload(self) -> Dict[str, object]:
        return {
            "id": self.game_id,
            "clan_id": self.location.clan_id,
            "channel_id": self.location.channel_id,
            "creator_id": self.creator_id,
            "created_at": self.created_at.isoformat(),
            "round": self.round.value,
            "pot": self.pot,
            "current_bet": self.current_bet,
            "bet_amount": self.bet_amount,
            "dealer_button": self.dealer_button,
            "current_player_index": self.current_player_index,
            "to_act_ids": sorted(self.to_act_ids),
            "deck_remaining": len(self.deck),
            "players": [
                {
                    "id": player.id,
                    "name": player.name,
                    "seat": player.seat,
                    "has_folded": player.has_folded,
                    "is_all_in": player.is_all_in,
                    "current_bet": player.current_bet,
                }
                for player in self.players
            ],
            "action_history": [
                {
                    "player_id": record.player_id,
                    "action": record.action.value,
                    "amount": record.amount,
                    "timestamp": record.timestamp.isoformat(),
                    "round": record.round.value,
                    "accepted": record.accepted,
                    "forced": record.forced,
                }
                for record in self.action_history
            ],
        }
