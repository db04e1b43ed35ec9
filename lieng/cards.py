from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

RANKS = ("2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K", "A")
SUITS = ("♠", "♥", "♦", "♣")

_SUIT_ALIASES = {"s": "♠", "h": "♥", "d": "♦", "c": "♣"}
_RANK_ALIASES = {"T": "10"}

# Two value mappings: straight values drive Sáp/Liêng/Ảnh, point values drive Điểm.
STRAIGHT_VALUE = {rank: idx for idx, rank in enumerate(RANKS[:-1], start=2)}
STRAIGHT_VALUE["A"] = 1
POINT_VALUE = {rank: (value if value < 10 else 0) for rank, value in STRAIGHT_VALUE.items()}


@dataclass(frozen=True)
class Card:
    rank: str
    suit: str

    def __post_init__(self) -> None:
        if self.rank not in RANKS:
            raise ValueError(f"Invalid rank: {self.rank}")
        if self.suit not in SUITS:
            raise ValueError(f"Invalid suit: {self.suit}")

    @property
    def label(self) -> str:
        return f"{self.rank}{self.suit}"

    @property
    def straight_value(self) -> int:
        return STRAIGHT_VALUE[self.rank]

    @property
    def point_value(self) -> int:
        return POINT_VALUE[self.rank]


def build_deck() -> List[Card]:
    return [Card(rank, suit) for suit in SUITS for rank in RANKS]


def shuffle(deck: List[Card], rng: Optional[random.Random] = None) -> None:
    """Fisher-Yates in place: swap each index, from the top down, with a random lower-or-equal one."""
    rng = rng or random.Random()
    for i in range(len(deck) - 1, 0, -1):
        j = rng.randint(0, i)
        deck[i], deck[j] = deck[j], deck[i]


def deal(deck: List[Card], count: int) -> List[Card]:
    if len(deck) < count:
        raise ValueError("Not enough cards left in deck")
    return [deck.pop() for _ in range(count)]


def cards_to_labels(cards: Sequence[Card]) -> List[str]:
    return [card.label for card in cards]


def parse_label(label: str) -> Card:
    text = label.strip().replace("\ufe0f", "")
    if len(text) < 2:
        raise ValueError(f"Invalid card label: {label}")
    rank, suit = text[:-1], text[-1]
    rank = _RANK_ALIASES.get(rank.upper(), rank.upper())
    suit = _SUIT_ALIASES.get(suit.lower(), suit)
    return Card(rank, suit)


def parse_cards(labels: Sequence[str]) -> List[Card]:
    return [parse_label(label) for label in labels]
