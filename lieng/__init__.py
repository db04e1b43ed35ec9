"""Lieng rules: cards, hand ranking and the betting state machine."""

from .buttons import ButtonId, encode_button_id, parse_button_id
from .cards import Card, RANKS, SUITS, build_deck, deal, parse_cards, shuffle
from .errors import (
    GameNotFound,
    InsufficientFunds,
    InvalidAction,
    InviteExpired,
    InviteNotFound,
    LedgerError,
    LiengError,
    NotYourTurn,
    SettlementFailure,
)
from .evaluator import HandCategory, HandRank, evaluate_hand
from .game import LiengEngine
from .models import ActionType, Decision, GameKey, GameState, Invite, LiengConfig, Location, Player, Round

__all__ = [
    "ButtonId",
    "encode_button_id",
    "parse_button_id",
    "Card",
    "RANKS",
    "SUITS",
    "build_deck",
    "deal",
    "parse_cards",
    "shuffle",
    "GameNotFound",
    "InsufficientFunds",
    "InvalidAction",
    "InviteExpired",
    "InviteNotFound",
    "LedgerError",
    "LiengError",
    "NotYourTurn",
    "SettlementFailure",
    "HandCategory",
    "HandRank",
    "evaluate_hand",
    "LiengEngine",
    "ActionType",
    "Decision",
    "GameKey",
    "GameState",
    "Invite",
    "LiengConfig",
    "Location",
    "Player",
    "Round",
]
