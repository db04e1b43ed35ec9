import asyncio
import logging

import pytest

from lieng.errors import InsufficientFunds, InvalidAction, InviteExpired, InviteNotFound, LedgerError
from lieng.models import Decision, LiengConfig
from lieng_host.gateways import MemoryLedger, SafeMessenger
from lieng_host.invites import InviteManager, invite_summary
from lieng_host.service import StartStatus

from .helpers import LOCATION, OfflineLedger, RecordingMessenger, create_service


class CountingStarter:
    def __init__(self):
        self.calls = []

    async def start_game(self, creator_id, location, player_ids, bet_amount, game_id=None):
        self.calls.append((creator_id, list(player_ids), bet_amount, game_id))
        return "started"


def create_manager(invite_time_ms=30_000):
    ledger = MemoryLedger(10_000)
    for player_id in ("alice", "bob", "carol"):
        ledger.open_account(player_id)
    messenger = RecordingMessenger()
    starter = CountingStarter()
    manager = InviteManager(
        LiengConfig(invite_time_ms=invite_time_ms),
        ledger,
        SafeMessenger(messenger, logging.getLogger("test")),
        starter,
    )
    return manager, starter, messenger


def test_create_invite_confirms_creator_and_posts_buttons():
    service, ledger, messenger = create_service()

    async def run():
        invite = await service.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        await service.shutdown()
        return invite

    invite = asyncio.run(run())
    assert invite.mentioned == ["bob", "carol", "alice"]
    assert invite.confirmed == {"alice"}
    assert invite.game_id.startswith("lieng_")
    assert invite.message_ref == "msg-1"

    _, text, actions = messenger.channel[0]
    assert "@Bob @Carol @Alice" in text
    assert [action["id"] for action in actions] == [
        f"lieng_join_{invite.game_id}_clan1_general",
        f"lieng_decline_{invite.game_id}_clan1_general",
    ]
    assert invite_summary(invite)["confirmed"] == ["alice"]


def test_create_invite_uses_default_bet():
    service, ledger, messenger = create_service()

    async def run():
        invite = await service.create_invite("alice", LOCATION, ["bob"])
        await service.shutdown()
        return invite

    assert asyncio.run(run()).bet_amount == service.config.default_bet


def test_create_invite_rejects_short_funds_by_name():
    service, ledger, messenger = create_service(balances={"carol": 50})

    async def run():
        with pytest.raises(InsufficientFunds, match="Carol") as excinfo:
            await service.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        return excinfo.value

    error = asyncio.run(run())
    assert error.players == ["Carol"]
    assert len(service.invites.invites) == 0
    assert messenger.channel == []


def test_create_invite_requires_another_player():
    service, ledger, messenger = create_service()

    async def run():
        with pytest.raises(InvalidAction):
            await service.create_invite("alice", LOCATION, ["alice"], 100)
        with pytest.raises(InvalidAction):
            await service.create_invite("alice", LOCATION, ["bob"], 0)

    asyncio.run(run())


def test_quorum_starts_game_once_and_cancels_timer():
    manager, starter, messenger = create_manager(invite_time_ms=50)

    async def run():
        invite = await manager.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        timer = invite.timer
        first = await manager.respond(invite.key, "bob", Decision.CONFIRM)
        second = await manager.respond(invite.key, "carol", Decision.CONFIRM)
        await asyncio.sleep(0.15)
        return invite, timer, first, second

    invite, timer, first, second = asyncio.run(run())
    assert not first.resolved
    assert second.resolved
    assert second.result == "started"
    assert timer.cancelled()
    assert invite.timer is None
    assert starter.calls == [("alice", ["bob", "carol", "alice"], 100, invite.game_id)]
    assert "Not enough players" not in " ".join(messenger.channel_texts())


def test_switching_answers_moves_user_between_sets():
    manager, starter, messenger = create_manager()

    async def run():
        invite = await manager.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        await manager.respond(invite.key, "bob", Decision.CONFIRM)
        changed = await manager.respond(invite.key, "bob", Decision.DECLINE)
        again = await manager.respond(invite.key, "bob", "decline")
        await manager.shutdown()
        return invite, changed, again

    invite, changed, again = asyncio.run(run())
    assert changed.changed
    assert not again.changed
    assert invite.confirmed == {"alice"}
    assert invite.declined == {"bob"}
    assert starter.calls == []
    assert len(messenger.updates) == 3


def test_expiry_with_too_few_confirmations_discards_invite():
    service, ledger, messenger = create_service(invite_time_ms=20)

    async def run():
        invite = await service.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        await service.respond_to_invite(invite.key, "bob", Decision.DECLINE)
        await asyncio.sleep(0.15)
        return invite

    invite = asyncio.run(run())
    assert invite.key not in service.invites.invites
    assert len(service.games) == 0
    assert "❌ Not enough players (need at least 2)." in messenger.channel_texts()
    assert ledger.balances == {"alice": 10_000, "bob": 10_000, "carol": 10_000}


def test_expiry_starts_game_with_confirmed_players():
    service, ledger, messenger = create_service(invite_time_ms=20)

    async def run():
        invite = await service.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        await service.respond_to_invite(invite.key, "bob", Decision.CONFIRM)
        await asyncio.sleep(0.15)
        game = service.find_game(invite.game_id)
        await service.shutdown()
        return invite, game

    invite, game = asyncio.run(run())
    assert game is not None
    assert [player.id for player in game.players] == ["bob", "alice"]
    assert game.key == invite.key
    assert ledger.balances == {"alice": 9_900, "bob": 9_900, "carol": 10_000}


def test_responding_after_resolution_is_rejected():
    manager, starter, messenger = create_manager()

    async def run():
        invite = await manager.create_invite("alice", LOCATION, ["bob"], 100)
        await manager.respond(invite.key, "bob", Decision.CONFIRM)
        with pytest.raises(InviteNotFound):
            await manager.respond(invite.key, "bob", Decision.DECLINE)

    asyncio.run(run())
    assert len(starter.calls) == 1


def test_responding_after_deadline_is_rejected():
    manager, starter, messenger = create_manager()

    async def run():
        invite = await manager.create_invite("alice", LOCATION, ["bob", "carol"], 100)
        invite.expires_at = invite.expires_at.replace(year=2000)
        with pytest.raises(InviteExpired):
            await manager.respond(invite.key, "bob", Decision.CONFIRM)
        await manager.shutdown()

    asyncio.run(run())
    assert starter.calls == []


def test_only_mentioned_users_may_respond():
    manager, starter, messenger = create_manager()

    async def run():
        invite = await manager.create_invite("alice", LOCATION, ["bob"], 100)
        with pytest.raises(InvalidAction, match="not invited"):
            await manager.respond(invite.key, "mallory", Decision.CONFIRM)
        await manager.shutdown()

    asyncio.run(run())


def test_invite_quorum_with_short_funds_rolls_back():
    service, ledger, messenger = create_service()

    async def run():
        invite = await service.create_invite("alice", LOCATION, ["bob"], 100)
        ledger.balances["bob"] = 10
        return await service.respond_to_invite(invite.key, "bob", Decision.CONFIRM)

    response = asyncio.run(run())
    assert response.resolved
    assert response.result.status == StartStatus.ROLLED_BACK
    assert response.result.failed == ["bob"]
    assert ledger.balances == {"alice": 10_000, "bob": 10, "carol": 10_000}
    assert len(service.games) == 0


def test_respond_accepts_a_bare_game_id():
    manager, starter, messenger = create_manager()

    async def run():
        invite = await manager.create_invite("alice", LOCATION, ["bob"], 100)
        response = await manager.respond(invite.game_id, "bob", Decision.CONFIRM)
        with pytest.raises(InviteNotFound):
            await manager.respond("lieng_0_0", "bob", Decision.CONFIRM)
        return response

    assert asyncio.run(run()).resolved
    assert len(starter.calls) == 1


def test_ledger_outage_during_funds_check_is_reported_as_ledger_error():
    service, ledger, messenger = create_service(ledger=OfflineLedger(10_000))

    async def run():
        with pytest.raises(LedgerError, match="Ledger unavailable: ledger down"):
            await service.create_invite("alice", LOCATION, ["bob"], 100)

    asyncio.run(run())
    assert len(service.invites.invites) == 0
    assert messenger.channel == []


def test_invite_size_is_capped_by_the_deck():
    manager, starter, messenger = create_manager()
    manager.config.max_players = 30

    async def run():
        with pytest.raises(InvalidAction, match="At most 17"):
            await manager.create_invite("alice", LOCATION, [f"p{idx}" for idx in range(17)], 100)

    asyncio.run(run())
    assert len(manager.invites) == 0
