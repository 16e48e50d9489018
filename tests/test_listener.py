"""
Treasury listener: cursor seeding and monotonicity, crash resume, and the
DepositPoller restart policy.
"""

import asyncio
from decimal import Decimal

import pytest

from conftest import ALICE, BOB, ONE_TOKEN, balance_of, deposit_log, tx_hash
from trustledger import listener
from trustledger.listener import DepositPoller, backoff_seconds, get_cursor, scan_once, set_cursor


async def _cursor(db):
    async with db.session_scope() as s:
        cur = await get_cursor(s)
    return cur.last_block if cur else None


class TestCursor:
    @pytest.mark.asyncio
    async def test_seeds_below_head_without_start_block(self, db, provider, contract):
        provider.logs.append(deposit_log(ALICE, ONE_TOKEN, tx_hash(1), 0, 50))
        provider.logs.append(deposit_log(ALICE, ONE_TOKEN, tx_hash(2), 0, 100))

        res = await scan_once(db, provider, contract, start_block=0)

        assert (res.from_block, res.to_block, res.processed) == (100, 100, 1)
        assert provider.queries == [(100, 100)], "history before the head is never replayed"
        assert await _cursor(db) == 100

        provider.head = 105
        again = await scan_once(db, provider, contract, start_block=0)

        assert (again.from_block, again.processed) == (101, 0)
        assert await balance_of(db, ALICE) == Decimal("1.0000"), "the head-block deposit is credited once"

    @pytest.mark.asyncio
    async def test_seeds_so_start_block_is_scanned(self, db, provider, contract):
        provider.logs.append(deposit_log(ALICE, ONE_TOKEN, tx_hash(1), 0, 90))

        res = await scan_once(db, provider, contract, start_block=90)

        assert res.from_block == 90
        assert res.processed == 1
        assert await balance_of(db, ALICE) == Decimal("1.0000")
        assert await _cursor(db) == 100

    @pytest.mark.asyncio
    async def test_set_cursor_never_moves_back(self, db):
        async with db.session_scope() as s:
            assert await set_cursor(s, 120) == 120
        async with db.session_scope() as s:
            assert await set_cursor(s, 80) == 120
        assert await _cursor(db) == 120

    @pytest.mark.asyncio
    async def test_empty_range_still_advances(self, db, provider, contract):
        await scan_once(db, provider, contract)
        provider.head = 130

        res = await scan_once(db, provider, contract)

        assert (res.from_block, res.to_block, res.processed) == (101, 130, 0)
        assert await _cursor(db) == 130

    @pytest.mark.asyncio
    async def test_nothing_to_scan_when_head_not_moved(self, db, provider, contract):
        await scan_once(db, provider, contract)
        res = await scan_once(db, provider, contract)
        assert res.processed == 0
        assert res.from_block == 101
        assert provider.queries == [(100, 100)], "the second scan does not query the node"

    @pytest.mark.asyncio
    async def test_max_block_range_caps_each_scan(self, db, provider, contract):
        provider.logs.append(deposit_log(ALICE, ONE_TOKEN, tx_hash(1), 0, 95))

        first = await scan_once(db, provider, contract, start_block=81, max_block_range=10)
        second = await scan_once(db, provider, contract, start_block=81, max_block_range=10)

        assert (first.from_block, first.to_block, first.processed) == (81, 90, 0)
        assert (second.from_block, second.to_block, second.processed) == (91, 100, 1)
        assert provider.queries == [(81, 90), (91, 100)]


class TestCrashResume:
    @pytest.mark.asyncio
    async def test_failure_mid_range_resumes_without_double_credit(self, db, provider, contract, monkeypatch):
        """
        Three events in blocks 101..103; the second credit blows up. The first
        is committed, the cursor stops at 100, and the rescan credits the rest
        exactly once.
        """
        provider.head = 105
        provider.logs.extend([
            deposit_log(ALICE, ONE_TOKEN, tx_hash(1), 0, 101),
            deposit_log(BOB, 2 * ONE_TOKEN, tx_hash(2), 0, 102),
            deposit_log(ALICE, 4 * ONE_TOKEN, tx_hash(3), 0, 103),
        ])

        real_credit = listener.credit_wallet_on_deposit
        calls = {"n": 0}

        async def flaky_credit(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("db went away")
            return await real_credit(*args, **kwargs)

        monkeypatch.setattr(listener, "credit_wallet_on_deposit", flaky_credit)
        with pytest.raises(RuntimeError):
            await scan_once(db, provider, contract, start_block=100)

        assert await _cursor(db) == 100
        assert await balance_of(db, ALICE) == Decimal("1.0000")
        assert await balance_of(db, BOB) == Decimal("0.0000")

        monkeypatch.setattr(listener, "credit_wallet_on_deposit", real_credit)
        res = await scan_once(db, provider, contract, start_block=100)

        assert res.from_block == 101
        assert await balance_of(db, ALICE) == Decimal("5.0000")
        assert await balance_of(db, BOB) == Decimal("2.0000")
        assert await _cursor(db) == 105

    @pytest.mark.asyncio
    async def test_foreign_logs_are_ignored(self, db, provider, contract):
        provider.head = 105
        provider.logs.append(deposit_log(ALICE, ONE_TOKEN, tx_hash(1), 0, 101, emitter=BOB))
        res = await scan_once(db, provider, contract, start_block=100)
        assert res.processed == 0
        assert await balance_of(db, ALICE) == Decimal("0.0000")


class TestDepositPoller:
    def test_backoff_schedule(self):
        assert [backoff_seconds(n) for n in (1, 2, 3, 5, 6, 20)] == [2, 4, 8, 32, 60, 60]

    @pytest.mark.asyncio
    async def test_fails_after_max_retry(self, db, provider, contract):
        provider.fail_times = 10
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        poller = DepositPoller(db, provider, contract, max_retry=3, sleep=fake_sleep)
        await poller.run()

        assert poller.state == "FAILED"
        assert poller.fatal is True
        assert poller.attempts == 3
        assert sleeps == [2, 4]
        assert "node unavailable" in poller.fatal_error
        assert poller.status()["state"] == "FAILED"

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, db, provider, contract):
        provider.fail_times = 2
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            if poller.last_result is not None:
                await poller.stop()

        poller = DepositPoller(db, provider, contract, max_retry=5, interval=15, sleep=fake_sleep)
        await poller.run()

        assert sleeps == [2, 4, 15]
        assert poller.attempts == 0
        assert poller.state == "STOPPED"
        assert poller.last_result.to_block == 100
        assert poller.status()["last_success_at"] is not None

    @pytest.mark.asyncio
    async def test_start_and_stop_task(self, db, provider, contract):
        poller = DepositPoller(db, provider, contract, interval=3600)
        task = poller.start()
        assert poller.start() is task, "a running poller is not started twice"

        # let the first scan complete, then stop while it waits for the interval
        for _ in range(200):
            if poller.last_result is not None:
                break
            await asyncio.sleep(0.01)
        await poller.stop()

        assert task.done()
        assert poller.state == "STOPPED"
        assert await _cursor(db) == 100
