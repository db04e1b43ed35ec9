from __future__ import annotations

from dataclasses import dataclass

from .models import GameKey, Location

DOMAIN = "lieng"
SEPARATOR = "_"


@dataclass(frozen=True)
class ButtonId:
    domain: str
    action: str
    game_id: str
    clan_id: str
    channel_id: str

    @property
    def location(self) -> Location:
        return Location(self.clan_id, self.channel_id)

    @property
    def key(self) -> GameKey:
        return GameKey(self.location, self.game_id)


def encode_button_id(action: str, key: GameKey) -> str:
    return SEPARATOR.join(
        (DOMAIN, action, key.game_id, key.location.clan_id, key.location.channel_id)
    )


def parse_button_id(button_id: str) -> ButtonId:
    # Game ids contain the separator too, so the location is read from the end
    # and everything between the action and the location is the game id.
    parts = button_id.split(SEPARATOR)
    if len(parts) < 5:
        raise ValueError(f"Malformed button id: {button_id}")
    return ButtonId(
        domain=parts[0],
        action=parts[1],
        game_id=SEPARATOR.join(parts[2:-2]),
        clan_id=parts[-2],
        channel_id=parts[-1],
    )
