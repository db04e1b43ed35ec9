import asyncio
import json

import pytest

from lieng.errors import InsufficientFunds, LedgerError
from lieng_host.gateways import MemoryLedger


def test_deduct_is_all_or_nothing():
    ledger = MemoryLedger()
    ledger.open_account("alice", 500)
    ledger.open_account("bob", 50)

    async def run():
        with pytest.raises(InsufficientFunds) as excinfo:
            await ledger.deduct(["alice", "bob"], 100)
        assert excinfo.value.players == ["bob"]
        assert await ledger.balance("alice") == 500
        await ledger.deduct(["alice"], 100)
        await ledger.credit("bob", 25)
        assert await ledger.check_funds(["alice", "bob", "nobody"], 100) == ["bob", "nobody"]

    asyncio.run(run())
    assert ledger.balances == {"alice": 400, "bob": 75}


def test_negative_amounts_are_rejected():
    ledger = MemoryLedger(100)
    ledger.open_account("alice")

    async def run():
        with pytest.raises(LedgerError):
            await ledger.deduct(["alice"], -1)
        with pytest.raises(LedgerError):
            await ledger.credit("alice", -1)

    asyncio.run(run())
    assert ledger.balances == {"alice": 100}


def test_concurrent_deductions_cannot_overdraw():
    ledger = MemoryLedger()
    ledger.open_account("alice", 100)

    async def run():
        return await asyncio.gather(
            ledger.deduct(["alice"], 60),
            ledger.deduct(["alice"], 60),
            return_exceptions=True,
        )

    results = asyncio.run(run())
    assert sum(isinstance(result, InsufficientFunds) for result in results) == 1
    assert ledger.balances["alice"] == 40


def test_balances_persist_to_json(tmp_path):
    path = tmp_path / "balances.json"
    ledger = MemoryLedger(1_000, path=path)
    ledger.open_account("alice")
    ledger.open_account("bob")

    async def run():
        await ledger.deduct(["alice", "bob"], 300)
        await ledger.credit("alice", 600)

    asyncio.run(run())
    assert json.loads(path.read_text(encoding="utf-8")) == {"alice": 1_300, "bob": 700}

    reloaded = MemoryLedger(1_000, path=path)
    assert reloaded.balances == {"alice": 1_300, "bob": 700}
    assert reloaded.open_account("carol") == 1_000
