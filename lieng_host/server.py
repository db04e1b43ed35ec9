from __future__ import annotations

import asyncio
import itertools
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from lieng.errors import GameNotFound, InvalidAction, LiengError
from lieng.models import GameKey, LiengConfig, Location

from .gateways import Actions, Directory, MemoryLedger
from .invites import invite_summary
from .service import LiengService

LOGGER = logging.getLogger("lieng_host")

# HostServer glues the Lieng service to WebSocket clients. Every network
# concern lives here; the service only sees the Messenger interface.

HELP_TEXT = (
    "📖 **How to play Lieng**\n\n"
    "**Commands:**\n"
    "• `start` with a bet and the players you mention\n\n"
    "**Rules:**\n"
    "• Everyone gets 3 cards\n"
    "• Ranking: Sáp > Liêng > Ảnh > Điểm\n"
    "• On your turn: Call/Check, Raise or Fold"
)


@dataclass
class ClientSession:
    user_id: str
    name: str
    location: Location
    websocket: Any


class WebSocketMessenger:
    """Delivers service notifications to the sessions watching a location or owned by a user."""

    def __init__(self, host: "HostServer") -> None:
        self.host = host
        self.message_locations: Dict[str, Location] = {}
        self._counter = itertools.count(1)

    async def notify_channel(self, location: Location, text: str, actions: Optional[Actions] = None) -> Optional[str]:
        message_ref = f"m-{next(self._counter)}"
        # Only messages with buttons are ever edited or removed later.
        if actions:
            self.message_locations[message_ref] = location
        await self.host.broadcast(location, "message", {"ref": message_ref, "text": text, "actions": actions or []})
        return message_ref

    async def notify_player(self, player_id: str, text: str, location: Optional[Location] = None) -> None:
        payload: Dict[str, object] = {"text": text}
        if location is not None:
            payload.update({"clan": location.clan_id, "channel": location.channel_id})
        await self.host.send_to_user(player_id, "private", payload)

    async def update_message(self, message_ref: str, text: str, actions: Optional[Actions] = None) -> None:
        location = self.message_locations.get(message_ref)
        if location is None:
            return
        if not actions:
            del self.message_locations[message_ref]
        await self.host.broadcast(
            location, "message/update", {"ref": message_ref, "text": text, "actions": actions or []}
        )

    async def delete_message(self, message_ref: str) -> None:
        location = self.message_locations.pop(message_ref, None)
        if location is None:
            return
        await self.host.broadcast(location, "message/delete", {"ref": message_ref})


class HostServer:
    def __init__(
        self,
        config: LiengConfig,
        ledger: Optional[MemoryLedger] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger or MemoryLedger(config.starting_balance)
        self.directory = Directory()
        self.messenger = WebSocketMessenger(self)
        self.service = LiengService(config, self.ledger, self.messenger, self.directory, rng)
        self.sessions: Dict[Any, ClientSession] = {}
        self._handlers: Dict[str, Callable[[ClientSession, Dict[str, Any]], Awaitable[None]]] = {
            "start": self._handle_start,
            "button": self._handle_button,
            "action": self._handle_action,
            "balance": self._handle_balance,
            "state": self._handle_state,
            "help": self._handle_help,
        }

    async def start(self, host: str = "0.0.0.0", port: int = 8765) -> None:
        async with websockets.serve(self._handle_connection, host, port):
            LOGGER.info("Lieng host listening on %s:%s", host, port)
            try:
                await asyncio.Future()
            finally:
                await self.service.shutdown()

    async def _handle_connection(self, websocket: Any) -> None:
        # First message must be "hello" so we know who and where the client is.
        hello = await self._read_message(websocket)
        if hello is None or hello.get("type") != "hello":
            await self._send_error(websocket, code="BAD_HELLO", msg="Expected hello")
            await websocket.close()
            return
        fields = [hello.get(name) for name in ("user", "clan", "channel")]
        if not all(isinstance(value, str) and value.strip() for value in fields):
            await self._send_error(websocket, code="BAD_SCHEMA", msg="user, clan and channel required")
            await websocket.close()
            return
        user_id, clan_id, channel_id = (value.strip() for value in fields)
        name_raw = hello.get("name")
        name = name_raw.strip() if isinstance(name_raw, str) and name_raw.strip() else user_id

        session = ClientSession(user_id=user_id, name=name, location=Location(clan_id, channel_id), websocket=websocket)
        self.sessions[websocket] = session
        self.directory.register(user_id, name)
        balance = self.ledger.open_account(user_id)
        LOGGER.info("User %s (%s) connected to %s/%s", user_id, name, clan_id, channel_id)

        await self._send_json(
            websocket,
            "welcome",
            {
                "user": user_id,
                "balance": balance,
                "config": {
                    "default_bet": self.config.default_bet,
                    "invite_time_ms": self.config.invite_time_ms,
                    "move_time_ms": self.config.move_time_ms,
                    "min_players": self.config.min_players,
                    "max_players": self.config.max_players,
                },
            },
        )

        try:
            async for raw in websocket:
                await self._dispatch(session, self._decode(raw))
        except websockets.ConnectionClosed:
            pass
        finally:
            self.sessions.pop(websocket, None)
        LOGGER.info("User %s disconnected", user_id)

    async def _dispatch(self, session: ClientSession, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            await self._send_error(session.websocket, code="UNKNOWN_TYPE", msg="Unsupported message type")
            return
        try:
            await handler(session, message)
        except LiengError as exc:
            LOGGER.warning("Request %s from %s rejected: %s", message.get("type"), session.user_id, exc)
            await self._send_error(session.websocket, code=exc.code, msg=exc.msg)

    async def _handle_start(self, session: ClientSession, message: Dict[str, Any]) -> None:
        bet = message.get("bet")
        if bet is not None and (not isinstance(bet, int) or isinstance(bet, bool)):
            raise InvalidAction("bet must be an integer")
        mentions = message.get("mentions") or []
        if not isinstance(mentions, list) or not mentions:
            raise InvalidAction("Mention at least one player")
        names: Dict[str, str] = {session.user_id: session.name}
        user_ids: List[str] = []
        for mention in mentions:
            user_id = mention.get("user") if isinstance(mention, dict) else mention
            if not isinstance(user_id, str) or not user_id:
                raise InvalidAction("Every mention needs a user id")
            user_ids.append(user_id)
            if isinstance(mention, dict) and isinstance(mention.get("name"), str):
                names[user_id] = mention["name"]
                self.directory.register(user_id, mention["name"])
        invite = await self.service.create_invite(session.user_id, session.location, user_ids, bet, names)
        await self._send_json(session.websocket, "invite", invite_summary(invite))

    async def _handle_button(self, session: ClientSession, message: Dict[str, Any]) -> None:
        button_id = message.get("button_id")
        if not isinstance(button_id, str):
            raise InvalidAction("button_id required")
        await self.service.handle_button(button_id, session.user_id)
        await self._send_json(session.websocket, "ack", {"button_id": button_id})

    async def _handle_action(self, session: ClientSession, message: Dict[str, Any]) -> None:
        game_id = message.get("game_id")
        amount = message.get("amount") or 0
        if not isinstance(game_id, str) or not isinstance(amount, int):
            raise InvalidAction("game_id and an integer amount required")
        key = GameKey(session.location, game_id)
        result = await self.service.apply_action(key, session.user_id, str(message.get("action")), amount)
        await self._send_json(session.websocket, "ack", {"game_id": game_id, "finished": result.finished})

    async def _handle_balance(self, session: ClientSession, message: Dict[str, Any]) -> None:
        balance = await self.ledger.balance(session.user_id)
        await self._send_json(session.websocket, "balance", {"user": session.user_id, "balance": balance})

    async def _handle_state(self, session: ClientSession, message: Dict[str, Any]) -> None:
        game_id = str(message.get("game_id"))
        game = self.service.get_game(GameKey(session.location, game_id))
        if game is None:
            raise GameNotFound(game_id)
        await self._send_json(session.websocket, "state", game.payload())

    async def _handle_help(self, session: ClientSession, message: Dict[str, Any]) -> None:
        await self._send_json(session.websocket, "help", {"text": HELP_TEXT})

    # Delivery --------------------------------------------------------

    async def broadcast(self, location: Location, msg_type: str, payload: Dict[str, object]) -> None:
        targets = [session.websocket for session in self.sessions.values() if session.location == location]
        await self._send_many(targets, msg_type, payload)

    async def send_to_user(self, user_id: str, msg_type: str, payload: Dict[str, object]) -> None:
        targets = [session.websocket for session in self.sessions.values() if session.user_id == user_id]
        await self._send_many(targets, msg_type, payload)

    async def _send_many(self, targets: List[Any], msg_type: str, payload: Dict[str, object]) -> None:
        if not targets:
            return
        message = self._envelope(msg_type, payload)
        await asyncio.gather(*(socket.send(message) for socket in targets), return_exceptions=True)

    async def _send_json(self, websocket: Any, msg_type: str, payload: Dict[str, object]) -> None:
        try:
            await websocket.send(self._envelope(msg_type, payload))
        except websockets.ConnectionClosed:
            pass

    async def _send_error(self, websocket: Any, code: str, msg: str) -> None:
        await self._send_json(websocket, "error", {"code": code, "msg": msg})

    def _envelope(self, msg_type: str, payload: Dict[str, object]) -> str:
        body = {"type": msg_type, "v": 1, "ts": datetime.now(timezone.utc).isoformat()}
        body.update(payload)
        return json.dumps(body, ensure_ascii=False)

    async def _read_message(self, websocket: Any) -> Optional[Dict[str, Any]]:
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=5)
            return self._decode(raw)
        except Exception:
            return None

    def _decode(self, raw: str) -> Dict[str, Any]:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return message if isinstance(message, dict) else {}
