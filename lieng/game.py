from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from .cards import build_deck, cards_to_labels, deal, shuffle
from .errors import InvalidAction, NotYourTurn
from .evaluator import HandRank, evaluate_hand
from .models import ActionRecord, ActionType, GameKey, GameState, LiengConfig, Player, Round

# LiengEngine owns the rules only: dealing, betting order, pot bookkeeping and
# showdown. Money and messages live in lieng_host; the engine returns events.

HOLE_CARDS = 3


class LiengEngine:
    """Betting state machine for one 3-card Lieng game at a time."""

    def __init__(self, config: LiengConfig) -> None:
        self.config = config

    # Game lifecycle --------------------------------------------------

    def new_game(
        self,
        key: GameKey,
        creator_id: str,
        roster: Sequence[Tuple[str, str]],
        bet_amount: int,
        rng: Optional[random.Random] = None,
    ) -> GameState:
        self.validate_table(len(roster), bet_amount)

        deck = build_deck()
        shuffle(deck, rng)
        players = [Player(id=player_id, name=name, seat=idx) for idx, (player_id, name) in enumerate(roster)]
        for player in players:
            player.hole = deal(deck, HOLE_CARDS)

        game = GameState(
            key=key,
            creator_id=creator_id,
            bet_amount=bet_amount,
            players=players,
            deck=deck,
            pot=len(players) * bet_amount,
        )
        self._open_betting(game)
        return game

    def validate_table(self, player_count: int, bet_amount: int) -> None:
        if bet_amount <= 0:
            raise InvalidAction("Bet amount must be positive")
        if player_count < self.config.min_players:
            raise InvalidAction(f"Need at least {self.config.min_players} players")
        max_players = seat_limit(self.config)
        if player_count > max_players:
            raise InvalidAction(f"At most {max_players} players can sit at one game")

    def _open_betting(self, game: GameState) -> None:
        game.round = Round.BETTING
        game.current_bet = 0
        game.current_player_index = (game.dealer_button + 1) % len(game.players)
        game.to_act_ids = {player.id for player in game.players}

    # Action handling -------------------------------------------------

    def require_turn(self, game: GameState, player_id: str) -> Player:
        if game.round != Round.BETTING:
            raise InvalidAction("Game is not accepting actions")
        player = game.current_player
        if player.id != player_id:
            raise NotYourTurn(player_id)
        return player

    def to_call(self, game: GameState, player: Player) -> int:
        return max(game.current_bet - player.current_bet, 0)

    def legal_actions(self, game: GameState, player: Player) -> List[ActionType]:
        legal = [ActionType.FOLD]
        legal.append(ActionType.CALL if self.to_call(game, player) > 0 else ActionType.CHECK)
        legal.extend([ActionType.RAISE, ActionType.ALLIN])
        return legal

    def action_cost(
        self,
        game: GameState,
        player: Player,
        action: ActionType,
        amount: int = 0,
        balance: Optional[int] = None,
    ) -> int:
        """Chips ``player`` must pay for ``action``; raises InvalidAction for illegal moves."""
        if amount < 0:
            raise InvalidAction("Amount cannot be negative")
        if action == ActionType.FOLD:
            return 0
        if action == ActionType.CHECK:
            if self.to_call(game, player) > 0:
                raise InvalidAction("Cannot check when facing a bet")
            return 0
        if action == ActionType.CALL:
            return self.to_call(game, player)
        if action == ActionType.RAISE:
            if 0 < amount < game.bet_amount:
                raise InvalidAction(f"Raise below minimum ({game.bet_amount})")
            return self.raise_target(game, amount) - player.current_bet
        if action == ActionType.ALLIN:
            if not balance or balance <= 0:
                raise InvalidAction("Nothing left to go all-in with")
            return balance
        raise InvalidAction(f"Unsupported action {action}")

    def raise_target(self, game: GameState, amount: int) -> int:
        # Default raise is one betting unit on top of the table bet.
        raise_unit = amount if amount > 0 else game.bet_amount
        return game.current_bet + raise_unit

    def apply_action(
        self,
        game: GameState,
        player_id: str,
        action: ActionType,
        amount: int = 0,
        *,
        balance: Optional[int] = None,
        forced: bool = False,
    ) -> List[Dict[str, object]]:
        player = self.require_turn(game, player_id)
        cost = self.action_cost(game, player, action, amount, balance)

        events: List[Dict[str, object]] = []

        # Each branch records what happened so the host can announce it.
        if action == ActionType.FOLD:
            player.has_folded = True
            events.append({"ev": "FOLD", "player": player.id, "name": player.name, "forced": forced})
        elif action == ActionType.CHECK:
            events.append({"ev": "CHECK", "player": player.id, "name": player.name})
        elif action == ActionType.CALL:
            self._commit(game, player, cost)
            events.append({"ev": "CALL", "player": player.id, "name": player.name, "amount": cost})
        elif action == ActionType.RAISE:
            previous_bet = game.current_bet
            target = self.raise_target(game, amount)
            self._commit(game, player, cost)
            game.current_bet = target
            self._reopen_action(game, player)
            events.append(
                {
                    "ev": "RAISE",
                    "player": player.id,
                    "name": player.name,
                    "amount": cost,
                    "raise_by": target - previous_bet,
                    "total": target,
                }
            )
        else:
            self._commit(game, player, cost)
            player.is_all_in = True
            if player.current_bet > game.current_bet:
                game.current_bet = player.current_bet
                self._reopen_action(game, player)
            events.append(
                {"ev": "ALLIN", "player": player.id, "name": player.name, "amount": cost, "total": player.current_bet}
            )

        game.action_history.append(
            ActionRecord(
                player_id=player.id,
                action=action,
                amount=cost,
                timestamp=_now(),
                round=game.round,
                forced=forced,
            )
        )

        events.extend(self.next_turn(game, player))
        return events

    def record_rejection(self, game: GameState, player_id: str, action: ActionType, amount: int) -> None:
        game.action_history.append(
            ActionRecord(
                player_id=player_id,
                action=action,
                amount=amount,
                timestamp=_now(),
                round=game.round,
                accepted=False,
            )
        )

    def _commit(self, game: GameState, player: Player, amount: int) -> None:
        player.current_bet += amount
        game.pot += amount

    def _reopen_action(self, game: GameState, raiser: Player) -> None:
        game.to_act_ids = {player.id for player in game.players if player.is_live and player.id != raiser.id}

    # Turn order ------------------------------------------------------

    def next_turn(self, game: GameState, actor: Player) -> List[Dict[str, object]]:
        active = game.active_players()
        if len(active) == 1:
            return self._award_uncontested(game, active[0])

        if actor.has_folded or actor.is_all_in or actor.current_bet == game.current_bet:
            game.to_act_ids.discard(actor.id)

        all_matched = all(player.current_bet == game.current_bet or player.is_all_in for player in active)
        if not game.to_act_ids and all_matched:
            return self._resolve_showdown(game)

        next_idx = self._next_eligible_index(game)
        if next_idx is None:
            return self._resolve_showdown(game)
        game.current_player_index = next_idx
        player = game.current_player
        return [{"ev": "TURN", "player": player.id, "name": player.name, "to_call": self.to_call(game, player)}]

    def _next_eligible_index(self, game: GameState) -> Optional[int]:
        count = len(game.players)
        for step in range(1, count + 1):
            idx = (game.current_player_index + step) % count
            if game.players[idx].is_live:
                return idx
        return None

    # Showdown --------------------------------------------------------

    def rank_players(self, game: GameState) -> List[Tuple[Player, HandRank]]:
        ranked = [(player, evaluate_hand(player.hole)) for player in game.active_players()]
        ranked.sort(key=lambda item: item[1].score, reverse=True)
        return ranked

    def _resolve_showdown(self, game: GameState) -> List[Dict[str, object]]:
        self._close(game)
        ranked = self.rank_players(game)
        events: List[Dict[str, object]] = [
            {
                "ev": "SHOWDOWN",
                "player": player.id,
                "name": player.name,
                "hand": cards_to_labels(player.hole),
                "category": rank.category.value,
                "score": rank.score,
                "rank": rank.label,
            }
            for player, rank in ranked
        ]
        best = ranked[0][1].score
        winners = [player for player, rank in ranked if rank.score == best]
        events.extend(self._split_pot(game, winners, uncontested=False))
        return events

    def _award_uncontested(self, game: GameState, winner: Player) -> List[Dict[str, object]]:
        self._close(game)
        return self._split_pot(game, [winner], uncontested=True)

    def _close(self, game: GameState) -> None:
        game.round = Round.SHOWDOWN
        game.to_act_ids.clear()

    def _split_pot(self, game: GameState, winners: List[Player], uncontested: bool) -> List[Dict[str, object]]:
        # Floor division: the remainder is not paid to anyone and is reported as such.
        share, remainder = divmod(game.pot, len(winners))
        events: List[Dict[str, object]] = [
            {
                "ev": "POT_AWARD",
                "player": winner.id,
                "name": winner.name,
                "amount": share,
                "uncontested": uncontested,
            }
            for winner in winners
        ]
        if remainder:
            events.append({"ev": "POT_REMAINDER", "amount": remainder})
        return events


def seat_limit(config: LiengConfig) -> int:
    # 52 cards, 3 each.
    return min(config.max_players, len(build_deck()) // HOLE_CARDS)


def awards_from_events(events: Sequence[Dict[str, object]]) -> List[Tuple[str, int]]:
    return [(str(event["player"]), int(event["amount"])) for event in events if event["ev"] == "POT_AWARD"]


def _now() -> datetime:
    return datetime.now(timezone.utc)
