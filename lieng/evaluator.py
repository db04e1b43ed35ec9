from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from .cards import Card

TRIPLE_BASE = 900
STRAIGHT_BASE = 800
FACE_SCORE = 700

_FACE_VALUES = {11, 12, 13}
_WRAP_STRAIGHT = [1, 12, 13]  # A-Q-K


class HandCategory(str, Enum):
    TRIPLE = "TRIPLE"
    STRAIGHT = "STRAIGHT"
    FACE = "FACE"
    POINT = "POINT"


@dataclass(frozen=True)
class HandRank:
    category: HandCategory
    score: int
    label: str


def evaluate_hand(cards: Sequence[Card]) -> HandRank:
    """Rank a 3-card Lieng hand.

    Categories live in disjoint score bands (Sáp 901-913, Liêng 803-813,
    Ảnh 700, Điểm 0-9), so comparing ``score`` alone orders any two hands.
    """
    if len(cards) != 3:
        raise ValueError("Lieng hands have exactly 3 cards")

    values = sorted(card.straight_value for card in cards)

    if values[0] == values[1] == values[2]:
        rank = cards[0].rank
        return HandRank(HandCategory.TRIPLE, TRIPLE_BASE + values[0], f"Sáp {rank}")

    consecutive = values[1] == values[0] + 1 and values[2] == values[1] + 1
    if consecutive or values == _WRAP_STRAIGHT:
        return HandRank(HandCategory.STRAIGHT, STRAIGHT_BASE + values[2], "Liêng")

    if all(value in _FACE_VALUES for value in values):
        return HandRank(HandCategory.FACE, FACE_SCORE, "Ảnh")

    points = sum(card.point_value for card in cards) % 10
    return HandRank(HandCategory.POINT, points, f"{points} Điểm")
