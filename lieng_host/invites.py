from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Union

from lieng.buttons import encode_button_id
from lieng.errors import InsufficientFunds, InvalidAction, InviteExpired, InviteNotFound, LedgerError, LiengError
from lieng.game import seat_limit
from lieng.models import Decision, GameKey, Invite, LiengConfig, Location

from .gateways import Actions, IdentityResolver, Ledger, SafeMessenger
from .store import Registry

LOGGER = logging.getLogger("lieng_invites")


class GameStarter(Protocol):
    async def start_game(
        self,
        creator_id: str,
        location: Location,
        player_ids: Sequence[str],
        bet_amount: int,
        game_id: Optional[str] = None,
    ) -> Any: ...


@dataclass
class InviteResponse:
    invite: Invite
    changed: bool
    resolved: bool
    result: Any = None


class InviteManager:
    """Pending invitations: collects confirmations until quorum or expiry, then hands off."""

    def __init__(
        self,
        config: LiengConfig,
        ledger: Ledger,
        messenger: SafeMessenger,
        starter: GameStarter,
        identity: Optional[IdentityResolver] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.messenger = messenger
        self.starter = starter
        self.identity = identity
        self.invites: Registry[GameKey, Invite] = Registry()
        self._counter = itertools.count(1)

    def new_game_id(self) -> str:
        return f"lieng_{int(time.time() * 1000)}_{next(self._counter)}"

    async def create_invite(
        self,
        creator_id: str,
        location: Location,
        mentioned: Sequence[str],
        bet_amount: int,
        names: Optional[Mapping[str, str]] = None,
    ) -> Invite:
        if bet_amount <= 0:
            raise InvalidAction("Bet amount must be positive")
        users = list(dict.fromkeys([*mentioned, creator_id]))
        if len(users) < self.config.min_players:
            raise InvalidAction("Mention at least one other player")
        limit = seat_limit(self.config)
        if len(users) > limit:
            raise InvalidAction(f"At most {limit} players can join one game")

        resolved_names = {user_id: await self._name(user_id, names) for user_id in users}
        try:
            short = await self.ledger.check_funds(users, bet_amount)
        except LiengError:
            raise
        except Exception as exc:
            raise LedgerError(f"Ledger unavailable: {exc}") from exc
        if short:
            raise InsufficientFunds([resolved_names[user_id] for user_id in short], bet_amount)

        invite = Invite(
            game_id=self.new_game_id(),
            creator_id=creator_id,
            location=location,
            mentioned=users,
            bet_amount=bet_amount,
            expires_at=datetime.now(timezone.utc) + timedelta(milliseconds=self.config.invite_time_ms),
            names=resolved_names,
            confirmed={creator_id},
        )
        async with self.invites.lock(invite.key):
            self.invites.insert(invite.key, invite)
            invite.timer = asyncio.create_task(self._expire_after(invite.key, self.config.invite_time_ms / 1000))
        LOGGER.info(
            "Invite %s created by %s for %s players (bet=%s)",
            invite.game_id,
            creator_id,
            len(users),
            bet_amount,
        )

        invite.message_ref = await self.messenger.notify_channel(
            location, self._invite_text(invite), self._buttons(invite)
        )
        return invite

    def get(self, key: GameKey) -> Optional[Invite]:
        return self.invites.get(key)

    def find(self, game_id: str) -> Optional[Invite]:
        for invite in self.invites.values():
            if invite.game_id == game_id:
                return invite
        return None

    async def respond(
        self, key: Union[GameKey, str], user_id: str, decision: Union[Decision, str]
    ) -> InviteResponse:
        decision = Decision(decision)
        if isinstance(key, str):
            pending = self.find(key)
            if pending is None:
                raise InviteNotFound(key)
            key = pending.key
        if key not in self.invites:
            raise InviteNotFound(key.game_id)
        async with self.invites.lock(key):
            invite = self.invites.get(key)
            if invite is None:
                raise InviteNotFound(key.game_id)
            if invite.is_expired():
                raise InviteExpired(key.game_id)
            if user_id not in invite.mentioned:
                raise InvalidAction("You were not invited to this game")
            changed = invite.respond(user_id, decision)
            ready = invite.has_quorum()
            if ready:
                # Leaving the registry is what makes this the only resolution.
                self.invites.pop(key)
                self._cancel_timer(invite)

        ack = "✅ You joined the Lieng game!" if decision == Decision.CONFIRM else "You declined the Lieng game."
        await self.messenger.notify_player(user_id, ack, invite.location)
        if not ready:
            await self.messenger.update_message(invite.message_ref, self._status_text(invite), self._buttons(invite))
            return InviteResponse(invite=invite, changed=changed, resolved=False)

        result = await self._resolve(invite, reason="quorum")
        return InviteResponse(invite=invite, changed=changed, resolved=True, result=result)

    async def shutdown(self) -> None:
        for key in self.invites:
            invite = self.invites.pop(key)
            if invite:
                self._cancel_timer(invite)

    def _cancel_timer(self, invite: Invite) -> None:
        timer, invite.timer = invite.timer, None
        if timer and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire_after(self, key: GameKey, delay: float) -> None:
        await asyncio.sleep(delay)
        if key not in self.invites:
            return
        async with self.invites.lock(key):
            invite = self.invites.pop(key)
            if invite is None:
                return
            invite.timer = None
        LOGGER.info("Invite %s expired with %s/%s responses", key.game_id, invite.responded, len(invite.mentioned))
        try:
            await self._resolve(invite, reason="timeout")
        except Exception:
            LOGGER.exception("Invite %s failed to resolve after timeout", key.game_id)

    async def _resolve(self, invite: Invite, reason: str) -> Any:
        players = invite.confirmed_in_order()
        await self.messenger.update_message(invite.message_ref, self._closed_text(invite))
        if len(players) < self.config.min_players:
            LOGGER.info("Invite %s discarded (%s): only %s confirmed", invite.game_id, reason, len(players))
            await self.messenger.notify_channel(
                invite.location, f"❌ Not enough players (need at least {self.config.min_players})."
            )
            return None

        LOGGER.info("Invite %s resolved (%s): starting with %s players", invite.game_id, reason, len(players))
        try:
            return await self.starter.start_game(
                invite.creator_id,
                invite.location,
                players,
                invite.bet_amount,
                game_id=invite.game_id,
            )
        except LiengError as exc:
            LOGGER.warning("Game %s could not start: %s", invite.game_id, exc)
            await self.messenger.notify_channel(invite.location, f"❌ Could not start the game: {exc.msg}")
            return None

    async def _name(self, user_id: str, names: Optional[Mapping[str, str]]) -> str:
        if names and names.get(user_id):
            return names[user_id]
        if self.identity is not None:
            try:
                resolved = await self.identity.display_name(user_id)
            except Exception as exc:
                LOGGER.warning("Identity lookup for %s failed: %s", user_id, exc)
                resolved = None
            if resolved:
                return resolved
        return user_id

    # Message text ----------------------------------------------------

    def _invite_text(self, invite: Invite) -> str:
        mentions = " ".join(f"@{invite.names.get(user_id, user_id)}" for user_id in invite.mentioned)
        seconds = self.config.invite_time_ms // 1000
        return (
            "🎴 **Lieng invite**\n"
            f"{mentions}\n"
            f"💰 Bet: {invite.bet_amount:,}\n"
            f"⏰ The game starts automatically in {seconds}s!"
        )

    def _status_text(self, invite: Invite) -> str:
        return (
            "🎴 **Lieng invite**\n"
            f"💰 Bet: {invite.bet_amount:,}\n"
            f"✅ Joined: {len(invite.confirmed)}\n"
            f"❌ Declined: {len(invite.declined)}\n"
            f"⏳ Waiting: {invite.pending}\n"
            "⏰ The game starts as soon as everyone has answered!"
        )

    def _closed_text(self, invite: Invite) -> str:
        joined = ", ".join(invite.names.get(user_id, user_id) for user_id in invite.confirmed_in_order())
        return f"🎴 **Lieng invite closed**\n💰 Bet: {invite.bet_amount:,}\n✅ Joined: {joined or 'nobody'}"

    def _buttons(self, invite: Invite) -> Actions:
        return [
            {
                "id": encode_button_id("join", invite.key),
                "label": f"🎯 Join ({len(invite.confirmed)})",
                "style": "success",
            },
            {
                "id": encode_button_id("decline", invite.key),
                "label": f"❌ Decline ({len(invite.declined)})",
                "style": "danger",
            },
        ]


def invite_summary(invite: Invite) -> Dict[str, object]:
    return {
        "game_id": invite.game_id,
        "creator_id": invite.creator_id,
        "bet_amount": invite.bet_amount,
        "mentioned": list(invite.mentioned),
        "confirmed": invite.confirmed_in_order(),
        "declined": [user_id for user_id in invite.mentioned if user_id in invite.declined],
        "expires_at": invite.expires_at.isoformat(),
    }
