from __future__ import annotations

from typing import Sequence


class LiengError(Exception):
    """Base for every error the engine reports back to a player."""

    code = "LIENG_ERROR"

    def __init__(self, msg: str) -> None:
        super().__init__(msg)
        self.msg = msg


class InsufficientFunds(LiengError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, players: Sequence[str], amount: int) -> None:
        self.players = list(players)
        self.amount = amount
        super().__init__(f"Not enough funds: {', '.join(self.players)} (needs {amount:,})")


class InviteNotFound(LiengError):
    code = "INVITE_NOT_FOUND"

    def __init__(self, game_id: str) -> None:
        self.game_id = game_id
        super().__init__(f"No pending invite {game_id}")


class InviteExpired(LiengError):
    code = "INVITE_EXPIRED"

    def __init__(self, game_id: str) -> None:
        self.game_id = game_id
        super().__init__(f"Invite {game_id} has expired")


class GameNotFound(LiengError):
    code = "GAME_NOT_FOUND"

    def __init__(self, game_id: str) -> None:
        self.game_id = game_id
        super().__init__(f"No active game {game_id}")


class NotYourTurn(LiengError):
    code = "NOT_YOUR_TURN"

    def __init__(self, player_id: str) -> None:
        self.player_id = player_id
        super().__init__("Not your turn")


class InvalidAction(LiengError):
    code = "INVALID_ACTION"


class LedgerError(LiengError):
    code = "LEDGER_ERROR"


class SettlementFailure(LiengError):
    code = "SETTLEMENT_FAILURE"

    def __init__(self, player_id: str, amount: int, reason: str) -> None:
        self.player_id = player_id
        self.amount = amount
        self.reason = reason
        super().__init__(f"Could not pay {amount:,} to {player_id}: {reason}")
