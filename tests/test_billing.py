"""
Paid actions: idempotent charge by action_id, one-way refunds, and the
concurrent first-charge race.
"""

from decimal import Decimal

import pytest

from conftest import ALICE, BOB, INSTITUTION, balance_of, fund
from trustledger import billing
from trustledger.audit import list_audit
from trustledger.billing import charge_for_action, fee_for, get_action, refund_action, validate_action_id
from trustledger.errors import (
    ActionAlreadyRefunded,
    ActionNotFound,
    ActionOwnershipError,
    InsufficientBalance,
    InvalidActionId,
    InvalidAmount,
)
from trustledger.wallets import get_revenue, get_wallet


class TestChargeAndRefund:
    @pytest.mark.asyncio
    async def test_upload_charge_then_refund_nets_zero(self, db):
        await fund(db, ALICE, "1")

        charge = await charge_for_action(db, "upload:42", ALICE, "USER", "0.2", "UPLOAD")
        assert charge.duplicated is False
        assert charge.balance == Decimal("0.8000")
        assert charge.entry.status == "DEBITED"

        refund = await refund_action(db, "upload:42", ALICE)
        assert refund.refunded is True
        assert refund.duplicated is False
        assert refund.balance == Decimal("1.0000")

        again = await refund_action(db, "upload:42", ALICE)
        assert again.duplicated is True, "second refund is a no-op"
        assert await balance_of(db, ALICE) == Decimal("1.0000")

        async with db.session_scope() as s:
            entry = await get_action(s, "upload:42")
            refunds = await list_audit(s, action_type="BILL_UPLOAD_REFUND")
            revenue = await get_revenue(s)
        assert entry.status == "REFUNDED"
        assert len(refunds) == 1
        assert refunds[0].amount == Decimal("0.2000")
        assert revenue.balance == Decimal("0.2000"), "refunds do not claw back revenue"

    @pytest.mark.asyncio
    async def test_duplicate_charge_reports_prior_outcome(self, db):
        await fund(db, ALICE, "2")
        await charge_for_action(db, "apply:1", ALICE, "USER", "0.8", "APPLY_SUBMIT")

        dup = await charge_for_action(db, "apply:1", ALICE, "USER", "0.8", "APPLY_SUBMIT")

        assert dup.duplicated is True
        assert dup.balance == Decimal("1.2000")
        assert dup.entry.amount == Decimal("0.8000")
        assert await balance_of(db, ALICE) == Decimal("1.2000")

    @pytest.mark.asyncio
    async def test_action_id_belongs_to_first_wallet(self, db):
        await fund(db, ALICE, "2")
        await fund(db, BOB, "2")
        await charge_for_action(db, "upload:7", ALICE, "USER", "0.2", "UPLOAD")

        with pytest.raises(ActionOwnershipError):
            await charge_for_action(db, "upload:7", BOB, "USER", "0.2", "UPLOAD")
        with pytest.raises(ActionOwnershipError):
            await refund_action(db, "upload:7", BOB)
        assert await balance_of(db, BOB) == Decimal("2.0000")

    @pytest.mark.asyncio
    async def test_refunded_action_cannot_be_charged_again(self, db):
        await fund(db, ALICE, "2")
        await charge_for_action(db, "upload:8", ALICE, "USER", "0.2", "UPLOAD")
        await refund_action(db, "upload:8", ALICE)

        with pytest.raises(ActionAlreadyRefunded):
            await charge_for_action(db, "upload:8", ALICE, "USER", "0.2", "UPLOAD")
        assert await balance_of(db, ALICE) == Decimal("2.0000")

    @pytest.mark.asyncio
    async def test_refund_of_unknown_action(self, db):
        with pytest.raises(ActionNotFound):
            await refund_action(db, "upload:404", ALICE)

    @pytest.mark.asyncio
    async def test_insufficient_balance_records_nothing(self, db):
        await fund(db, ALICE, "0.1")
        with pytest.raises(InsufficientBalance):
            await charge_for_action(db, "upload:9", ALICE, "USER", "0.2", "UPLOAD")
        async with db.session_scope() as s:
            assert await get_action(s, "upload:9") is None

    @pytest.mark.asyncio
    async def test_institution_charge_keeps_role_on_entry(self, db):
        await fund(db, INSTITUTION, "10", role="INSTITUTION")
        res = await charge_for_action(db, "req:1", INSTITUTION, "INSTITUTION", "5", "requirement_create")
        assert res.entry.role == "INSTITUTION"
        assert res.entry.action_type == "REQUIREMENT_CREATE"
        refund = await refund_action(db, "req:1", INSTITUTION)
        assert refund.balance == Decimal("10.0000")

    @pytest.mark.asyncio
    async def test_refund_keeps_current_wallet_role(self, db):
        await fund(db, ALICE, "1")
        await charge_for_action(db, "upload:role", ALICE, "USER", "0.2", "UPLOAD")
        async with db.session_scope() as s:
            await get_wallet(s, ALICE, "INSTITUTION")

        await refund_action(db, "upload:role", ALICE)

        async with db.session_scope() as s:
            assert (await get_wallet(s, ALICE)).role == "INSTITUTION"
            refunds = await list_audit(s, action_type="BILL_UPLOAD_REFUND")
        assert refunds[0].actor_type == "INSTITUTION"


class TestValidation:
    @pytest.mark.parametrize("bad", ["", "   ", None, "x" * 81])
    def test_action_id(self, bad):
        with pytest.raises(InvalidActionId):
            validate_action_id(bad)

    def test_action_id_max_length_ok(self):
        assert validate_action_id("x" * 80) == "x" * 80

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1"])
    async def test_charge_amount_must_be_positive(self, db, amount):
        with pytest.raises(InvalidAmount):
            await charge_for_action(db, "upload:1", ALICE, "USER", amount, "UPLOAD")

    def test_fee_schedule(self):
        assert fee_for("upload") == Decimal("0.2000")
        assert fee_for("REQUIREMENT_CREATE") == Decimal("5.0000")
        with pytest.raises(InvalidAmount):
            fee_for("MINT")


class TestChargeRace:
    @staticmethod
    def _stale_lookups(monkeypatch, misses):
        """The first `misses` action_id lookups see no entry."""
        real_lookup = billing._entry_for_update
        calls = {"n": 0}

        async def stale_lookup(session, action_id):
            calls["n"] += 1
            if calls["n"] <= misses:
                return None
            return await real_lookup(session, action_id)

        monkeypatch.setattr(billing, "_entry_for_update", stale_lookup)

    @pytest.mark.asyncio
    async def test_losing_insert_reports_duplicate_without_debit(self, db, monkeypatch):
        """
        Simulates the loser of two concurrent first charges: both of its
        lookups saw no entry, but the winner committed before its insert.
        """
        await fund(db, ALICE, "1")
        await charge_for_action(db, "upload:race", ALICE, "USER", "0.2", "UPLOAD")

        self._stale_lookups(monkeypatch, misses=2)
        res = await charge_for_action(db, "upload:race", ALICE, "USER", "0.2", "UPLOAD")

        assert res.duplicated is True
        assert res.balance == Decimal("0.8000")
        assert await balance_of(db, ALICE) == Decimal("0.8000"), "the loser's debit was rolled back"
        async with db.session_scope() as s:
            assert (await get_revenue(s)).balance == Decimal("0.2000")

    @pytest.mark.asyncio
    async def test_retry_waiting_on_wallet_lock_with_exact_balance(self, db, monkeypatch):
        """
        The retry's first lookup ran before the winner committed; it looks again
        once it holds the wallet row, so the spent balance never surfaces as 402.
        """
        await fund(db, ALICE, "0.2")
        await charge_for_action(db, "upload:race", ALICE, "USER", "0.2", "UPLOAD")

        self._stale_lookups(monkeypatch, misses=1)
        res = await charge_for_action(db, "upload:race", ALICE, "USER", "0.2", "UPLOAD")

        assert res.duplicated is True
        assert res.balance == Decimal("0.0000")
        assert await balance_of(db, ALICE) == Decimal("0.0000")
        async with db.session_scope() as s:
            assert len(await list_audit(s, action_type="BILL_UPLOAD")) == 1
