from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from lieng.buttons import DOMAIN, encode_button_id, parse_button_id
from lieng.cards import cards_to_labels
from lieng.errors import GameNotFound, InsufficientFunds, InvalidAction, LedgerError, LiengError, SettlementFailure
from lieng.evaluator import evaluate_hand
from lieng.game import LiengEngine, awards_from_events
from lieng.models import ActionType, Decision, GameKey, GameState, Invite, LiengConfig, Location, Player, Round

from .gateways import Actions, IdentityResolver, Ledger, Messenger, NullMessenger, SafeMessenger
from .invites import InviteManager, InviteResponse
from .store import Registry

LOGGER = logging.getLogger("lieng_service")

# LiengService glues the rules engine to money, messages and timers.
# State changes happen under the game's lock; notifications go out after it.

_BUTTON_DECISIONS = {"join": Decision.CONFIRM, "decline": Decision.DECLINE}


class StartStatus(str, Enum):
    STARTED = "started"
    ROLLED_BACK = "rolled_back"


@dataclass
class StartResult:
    status: StartStatus
    key: GameKey
    game: Optional[GameState] = None
    failed: List[str] = field(default_factory=list)
    refunded: List[str] = field(default_factory=list)
    refund_failures: List[SettlementFailure] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ActionResult:
    game: GameState
    events: List[Dict[str, object]]
    payouts: List[Tuple[str, int]] = field(default_factory=list)
    settlement_failures: List[SettlementFailure] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.game.round == Round.SHOWDOWN


class LiengService:
    def __init__(
        self,
        config: LiengConfig,
        ledger: Ledger,
        messenger: Optional[Messenger] = None,
        identity: Optional[IdentityResolver] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.engine = LiengEngine(config)
        self.ledger = ledger
        self.messenger = SafeMessenger(messenger or NullMessenger(), LOGGER)
        self.identity = identity
        self.rng = rng
        self.games: Registry[GameKey, GameState] = Registry()
        self.invites = InviteManager(config, ledger, self.messenger, starter=self, identity=identity)

    # Invites ---------------------------------------------------------

    async def create_invite(
        self,
        creator_id: str,
        location: Location,
        mentioned: Sequence[str],
        bet_amount: Optional[int] = None,
        names: Optional[Mapping[str, str]] = None,
    ) -> Invite:
        amount = self.config.default_bet if bet_amount is None else bet_amount
        return await self.invites.create_invite(creator_id, location, mentioned, amount, names)

    async def respond_to_invite(
        self, key: Union[GameKey, str], user_id: str, decision: Union[Decision, str]
    ) -> InviteResponse:
        return await self.invites.respond(key, user_id, decision)

    # Game start ------------------------------------------------------

    async def start_game(
        self,
        creator_id: str,
        location: Location,
        player_ids: Sequence[str],
        bet_amount: int,
        game_id: Optional[str] = None,
    ) -> StartResult:
        key = GameKey(location, game_id or self.invites.new_game_id())
        self.engine.validate_table(len(player_ids), bet_amount)
        roster = [(player_id, await self._display_name(player_id, idx)) for idx, player_id in enumerate(player_ids)]
        names = dict(roster)

        async with self.games.lock(key):
            charged, failed_id, error = await self._collect_antes(player_ids, bet_amount)
            if failed_id is not None:
                refunded, refund_failures = await self._refund(charged, bet_amount)
                self.games.pop(key)
                result = StartResult(
                    status=StartStatus.ROLLED_BACK,
                    key=key,
                    failed=[failed_id],
                    refunded=refunded,
                    refund_failures=refund_failures,
                    error=error,
                )
            else:
                game = self.engine.new_game(key, creator_id, roster, bet_amount, self.rng)
                self.games.insert(key, game)
                seq = self._arm_turn_timer(game)
                result = StartResult(status=StartStatus.STARTED, key=key, game=game)

        if result.status == StartStatus.ROLLED_BACK:
            LOGGER.warning("Game %s rolled back: %s could not pay (%s)", key.game_id, failed_id, error)
            await self._announce_rollback(location, result, names, bet_amount)
            return result

        LOGGER.info("Game %s started with %s players (pot=%s)", key.game_id, len(game.players), game.pot)
        await self.messenger.notify_channel(
            location, f"🎴 **Lieng game #{key.game_id} started!**\n💰 Pot: {game.pot:,}"
        )
        for player in game.players:
            rank = evaluate_hand(player.hole)
            await self.messenger.notify_player(
                player.id,
                f"🎴 Your cards: {' '.join(cards_to_labels(player.hole))}\n📊 Hand: **{rank.label}**",
                location,
            )
        await self._prompt(game, seq)
        return result

    async def _collect_antes(
        self, player_ids: Sequence[str], amount: int
    ) -> Tuple[List[str], Optional[str], Optional[str]]:
        charged: List[str] = []
        for player_id in player_ids:
            try:
                await self.ledger.deduct([player_id], amount)
            except Exception as exc:
                return charged, player_id, str(exc)
            charged.append(player_id)
        return charged, None, None

    async def _refund(self, player_ids: Sequence[str], amount: int) -> Tuple[List[str], List[SettlementFailure]]:
        refunded: List[str] = []
        failures: List[SettlementFailure] = []
        for player_id in player_ids:
            try:
                await self.ledger.credit(player_id, amount)
            except Exception as exc:
                LOGGER.error("Refund of %s to %s failed: %s", amount, player_id, exc)
                failures.append(SettlementFailure(player_id, amount, str(exc)))
                continue
            refunded.append(player_id)
        return refunded, failures

    async def _announce_rollback(
        self, location: Location, result: StartResult, names: Mapping[str, str], amount: int
    ) -> None:
        failed = ", ".join(names.get(player_id, player_id) for player_id in result.failed)
        lines = [f"❌ Could not collect the {amount:,} bet from {failed}: {result.error}"]
        if result.refunded:
            lines.append(f"↩️ Refunded {len(result.refunded)} player(s).")
        for failure in result.refund_failures:
            lines.append(
                f"⚠️ Refund of {failure.amount:,} to {names.get(failure.player_id, failure.player_id)} failed."
            )
        await self.messenger.notify_channel(location, "\n".join(lines))

    # Actions ---------------------------------------------------------

    async def apply_action(
        self,
        key: GameKey,
        player_id: str,
        action: Union[ActionType, str],
        amount: int = 0,
    ) -> ActionResult:
        try:
            action = ActionType(action)
        except ValueError:
            raise InvalidAction(f"Unknown action {action}") from None
        result = await self._act(key, player_id, action, amount)
        assert result is not None
        return result

    async def handle_button(self, button_id: str, user_id: str) -> Union[ActionResult, InviteResponse]:
        try:
            button = parse_button_id(button_id)
        except ValueError as exc:
            raise InvalidAction(str(exc)) from None
        if button.domain != DOMAIN:
            raise InvalidAction(f"Not a Lieng button: {button_id}")
        try:
            if button.action in _BUTTON_DECISIONS:
                return await self.respond_to_invite(button.key, user_id, _BUTTON_DECISIONS[button.action])
            return await self.apply_action(button.key, user_id, button.action)
        except LiengError as exc:
            await self.messenger.notify_player(user_id, f"❌ {exc.msg}", button.location)
            raise

    async def _act(
        self,
        key: GameKey,
        player_id: str,
        action: ActionType,
        amount: int = 0,
        *,
        forced: bool = False,
        turn_seq: Optional[int] = None,
    ) -> Optional[ActionResult]:
        if key not in self.games:
            raise GameNotFound(key.game_id)
        async with self.games.lock(key):
            game = self.games.get(key)
            if game is None:
                raise GameNotFound(key.game_id)
            if forced and game.turn_seq != turn_seq:
                return None
            player = self.engine.require_turn(game, player_id)
            balance = None
            try:
                if action == ActionType.ALLIN:
                    balance = await self._balance(player_id)
                cost = self.engine.action_cost(game, player, action, amount, balance)
                if cost > 0:
                    await self._deduct(player, cost)
            except LiengError as exc:
                self.engine.record_rejection(game, player_id, action, amount)
                LOGGER.warning(
                    "Rejected action game=%s player=%s action=%s amount=%s reason=%s",
                    key.game_id,
                    player_id,
                    action.value,
                    amount,
                    exc,
                )
                raise

            if forced:
                game.turn_timer = None
            else:
                self._cancel_turn_timer(game)
            stale_prompt, game.turn_message_ref = game.turn_message_ref, None

            events = self.engine.apply_action(game, player_id, action, amount, balance=balance, forced=forced)
            result = ActionResult(game=game, events=events)
            seq = None
            if result.finished:
                result.payouts = awards_from_events(events)
                result.settlement_failures = await self._pay_out(game, result.payouts)
                self.games.pop(key)
            else:
                seq = self._arm_turn_timer(game)

        LOGGER.debug(
            "Applied action game=%s player=%s action=%s amount=%s forced=%s",
            key.game_id,
            player_id,
            action.value,
            amount,
            forced,
        )
        await self.messenger.delete_message(stale_prompt)
        await self._announce(game, events, result)
        if seq is not None:
            await self._prompt(game, seq)
        else:
            LOGGER.info("Game %s finished; payouts=%s", key.game_id, result.payouts)
        return result

    async def _balance(self, player_id: str) -> int:
        try:
            return await self.ledger.balance(player_id)
        except LiengError:
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger unavailable: {exc}") from exc

    async def _deduct(self, player: Player, amount: int) -> None:
        try:
            await self.ledger.deduct([player.id], amount)
        except InsufficientFunds:
            raise InsufficientFunds([player.name], amount) from None
        except LiengError:
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger unavailable: {exc}") from exc

    async def _pay_out(self, game: GameState, payouts: Sequence[Tuple[str, int]]) -> List[SettlementFailure]:
        failures: List[SettlementFailure] = []
        for player_id, amount in payouts:
            if amount <= 0:
                continue
            try:
                await self.ledger.credit(player_id, amount)
            except Exception as exc:
                failure = SettlementFailure(player_id, amount, str(exc))
                LOGGER.error("Settlement failed for game %s: %s", game.game_id, failure.msg)
                failures.append(failure)
        return failures

    # Turn scheduler --------------------------------------------------

    def _arm_turn_timer(self, game: GameState) -> int:
        game.turn_seq += 1
        if self.config.move_time_ms > 0:
            game.turn_timer = asyncio.create_task(
                self._turn_timeout(game.key, game.current_player.id, game.turn_seq, self.config.move_time_ms / 1000)
            )
        return game.turn_seq

    def _cancel_turn_timer(self, game: GameState) -> None:
        timer, game.turn_timer = game.turn_timer, None
        if timer and timer is not asyncio.current_task():
            timer.cancel()

    async def _turn_timeout(self, key: GameKey, player_id: str, turn_seq: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            result = await self._act(key, player_id, ActionType.FOLD, forced=True, turn_seq=turn_seq)
        except LiengError as exc:
            LOGGER.info("Turn timeout for %s in game %s ignored: %s", player_id, key.game_id, exc)
            return
        except Exception:
            LOGGER.exception("Turn timeout for %s in game %s failed", player_id, key.game_id)
            return
        if result is not None:
            LOGGER.info("Player %s timed out in game %s and was folded", player_id, key.game_id)

    async def shutdown(self) -> None:
        await self.invites.shutdown()
        for key in self.games:
            game = self.games.pop(key)
            if game:
                self._cancel_turn_timer(game)

    # Queries ---------------------------------------------------------

    def get_game(self, key: GameKey) -> Optional[GameState]:
        return self.games.get(key)

    def find_game(self, game_id: str) -> Optional[GameState]:
        for game in self.games.values():
            if game.game_id == game_id:
                return game
        return None

    # Messages --------------------------------------------------------

    async def _display_name(self, player_id: str, idx: int) -> str:
        if self.identity is not None:
            try:
                name = await self.identity.display_name(player_id)
            except Exception as exc:
                LOGGER.warning("Identity lookup for %s failed: %s", player_id, exc)
                name = None
            if name:
                return name
        return f"Player {idx + 1}"

    async def _prompt(self, game: GameState, turn_seq: int) -> None:
        player = game.current_player
        to_call = self.engine.to_call(game, player)
        text = f"👉 **{player.name}**'s turn\n💰 Pot: {game.pot:,} | Table bet: {game.current_bet:,}"
        message_ref = await self.messenger.notify_channel(game.location, text, self._turn_buttons(game, to_call))
        if game.turn_seq == turn_seq and game.round == Round.BETTING:
            game.turn_message_ref = message_ref
        else:
            await self.messenger.delete_message(message_ref)

    def _turn_buttons(self, game: GameState, to_call: int) -> Actions:
        if to_call > 0:
            first = {"id": encode_button_id("call", game.key), "label": f"Call ({to_call:,})", "style": "primary"}
        else:
            first = {"id": encode_button_id("check", game.key), "label": "Check", "style": "secondary"}
        return [
            first,
            {"id": encode_button_id("fold", game.key), "label": "Fold", "style": "danger"},
            {"id": encode_button_id("raise", game.key), "label": f"Raise (+{game.bet_amount:,})", "style": "success"},
            {"id": encode_button_id("allin", game.key), "label": "All-in", "style": "danger"},
        ]

    async def _announce(self, game: GameState, events: Sequence[Dict[str, object]], result: ActionResult) -> None:
        lines = [line for line in (describe_event(event) for event in events) if line]
        if lines:
            await self.messenger.notify_channel(game.location, "\n".join(lines))
        if result.finished:
            await self.messenger.notify_channel(game.location, results_text(game, events, result.settlement_failures))


def describe_event(event: Dict[str, object]) -> Optional[str]:
    ev = event["ev"]
    name = event.get("name")
    if ev == "FOLD":
        if event.get("forced"):
            return f"⏰ **{name}** ran out of time and folds."
        return f"💀 **{name}** folds."
    if ev == "CHECK":
        return f"👀 **{name}** checks."
    if ev == "CALL":
        if not event["amount"]:
            return f"👀 **{name}** checks."
        return f"💸 **{name}** calls {event['amount']:,}."
    if ev == "RAISE":
        return f"🚀 **{name}** raises {event['raise_by']:,}! (total {event['total']:,})"
    if ev == "ALLIN":
        return f"🔥 **{name}** goes all-in with {event['amount']:,}! (total {event['total']:,})"
    return None


def results_text(
    game: GameState, events: Sequence[Dict[str, object]], failures: Sequence[SettlementFailure]
) -> str:
    awards = [event for event in events if event["ev"] == "POT_AWARD"]
    reveals = [event for event in events if event["ev"] == "SHOWDOWN"]
    remainder = sum(int(event["amount"]) for event in events if event["ev"] == "POT_REMAINDER")
    ranks = {event["player"]: event["rank"] for event in reveals}

    lines: List[str] = []
    if len(awards) > 1:
        lines.append(f"🤝 **Tie!** {len(awards)} players split {game.pot:,}:")
        for award in awards:
            lines.append(f"👑 {award['name']} ({ranks.get(award['player'], '?')}) receives {award['amount']:,}")
    else:
        award = awards[0]
        rank = ranks.get(award["player"])
        suffix = f" ({rank})" if rank else ""
        lines.append(f"🏆 **Winner:** {award['name']}{suffix}")
        lines.append(f"💰 Won: {award['amount']:,}")
    if remainder:
        lines.append(f"🪙 {remainder:,} could not be split evenly and is not paid out.")
    for failure in failures:
        player = game.player(failure.player_id)
        name = player.name if player else failure.player_id
        lines.append(f"⚠️ Payout of {failure.amount:,} to {name} failed; the chips are stuck in the pot.")
    if reveals:
        lines.append("**Hands:**")
        lines.extend(f"> {event['name']}: {' '.join(event['hand'])} - {event['rank']}" for event in reveals)
    return "\n".join(lines)
