"""
Tests for the discrepancy resolution workflow.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from lab_billing.core.discrepancies import (
    DiscrepancyNotFoundError,
    DiscrepancyResolutionError,
    DiscrepancyService,
)
from lab_billing.core.matching import MatchingTolerances
from lab_billing.core.reconciliation import ReconciliationEngine
from lab_billing.database.models import AuditLog, Payment, ReconciliationItem
from lab_billing.integrations.mock_gateway import MockGateway
from lab_billing.timeutils import utcnow

GATEWAY_REPORT = [
    {"transaction_id": "TXN-2", "amount": "1400.00", "status": "COMPLETED"},
    {"transaction_id": "TXN-3", "amount": "800.00", "status": "COMPLETED"},
    {"transaction_id": "G-5", "reference": "Y-9", "amount": "290.00", "status": "COMPLETED"},
]


@pytest.fixture
def service() -> DiscrepancyService:
    return DiscrepancyService()


@pytest_asyncio.fixture
async def payments(test_db):
    rows = {
        "short": Payment(
            amount=Decimal("1500.00"), status="paid", reference="SUB-2", transaction_id="TXN-2"
        ),
        "unconfirmed": Payment(
            amount=Decimal("800.00"), status="pending", reference="SUB-3", transaction_id="TXN-3"
        ),
        "orphan": Payment(
            amount=Decimal("300.00"), status="paid", reference="X-1", transaction_id="A-9"
        ),
    }
    test_db.add_all(rows.values())
    await test_db.commit()
    return rows


@pytest_asyncio.fixture
async def run_id(test_db, payments) -> str:
    """Run with one amount mismatch, one status mismatch and one unmatched item per side."""
    engine = ReconciliationEngine(gateway=MockGateway(), tolerances=MatchingTolerances())
    now = utcnow()
    summary = await engine.reconcile_period(
        test_db,
        now - timedelta(hours=1),
        now + timedelta(hours=1),
        gateway_transactions=GATEWAY_REPORT,
    )
    return summary["run_id"]


async def _item(db, status: str, source: str) -> ReconciliationItem:
    stmt = select(ReconciliationItem).where(
        ReconciliationItem.status == status, ReconciliationItem.source == source
    )
    return (await db.execute(stmt)).scalars().first()


class TestListing:
    """Discrepancy queries."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_by_default(self, test_db, service, run_id):
        listing = await service.list_discrepancies(test_db)

        assert listing["total"] == 6
        assert all(item.status != "matched" for item in listing["items"])
        assert all(item.resolution_status == "open" for item in listing["items"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_filters(self, test_db, service, run_id):
        by_status = await service.list_discrepancies(test_db, status="amount_mismatch")
        assert by_status["total"] == 2

        by_run = await service.list_discrepancies(test_db, run_id=run_id, per_page=4)
        assert by_run["total"] == 6
        assert len(by_run["items"]) == 4

        other_run = await service.list_discrepancies(test_db, run_id="not-a-run")
        assert other_run["total"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_counts(self, test_db, service, run_id):
        item = await _item(test_db, "unmatched_app", "app")
        await service.ignore(test_db, item.id, resolved_by="finance")

        counts = await service.open_counts(test_db)

        assert counts == [{"run_id": run_id, "open": 5, "resolved": 0, "ignored": 1}]


class TestResolve:
    """Resolving pairs and single items."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accept_gateway_amount(self, test_db, service, run_id, payments):
        """Accepting the gateway amount corrects the payment and closes both sides."""
        app_item = await _item(test_db, "amount_mismatch", "app")
        gateway_item = await _item(test_db, "amount_mismatch", "gateway")

        resolved = await service.resolve(
            test_db, app_item.id, "accept_gateway", "finance@lab.example", note="Settlement"
        )

        assert resolved.resolution_status == "resolved"
        assert resolved.resolution_action == "accept_gateway"
        assert resolved.resolved_by == "finance@lab.example"
        assert resolved.resolved_at is not None
        assert gateway_item.resolution_status == "resolved"
        assert payments["short"].amount == Decimal("1400.00")

        audit = (
            await test_db.execute(
                select(AuditLog).where(AuditLog.action == "discrepancy_accept_gateway")
            )
        ).scalar_one()
        assert audit.model_id == str(app_item.id)
        assert audit.new_values["payment_changes"]["amount"] == {
            "old": "1500.00",
            "new": "1400.00",
        }
        assert sorted(audit.new_values["resolved_items"]) == sorted(
            [app_item.id, gateway_item.id]
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accept_gateway_status(self, test_db, service, run_id, payments):
        """A gateway completion marks the pending payment paid."""
        gateway_item = await _item(test_db, "status_mismatch", "gateway")

        await service.resolve(test_db, gateway_item.id, "accept_gateway", "finance")

        assert payments["unconfirmed"].status == "paid"
        assert payments["unconfirmed"].paid_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accept_app_leaves_payment(self, test_db, service, run_id, payments):
        app_item = await _item(test_db, "amount_mismatch", "app")

        await service.resolve(test_db, app_item.id, "accept_app", "finance")

        assert payments["short"].amount == Decimal("1500.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_write_off_single_item(self, test_db, service, run_id):
        orphan = await _item(test_db, "unmatched_app", "app")

        resolved = await service.resolve(test_db, orphan.id, "write_off", "finance")

        assert resolved.resolution_action == "write_off"
        remaining = await service.list_discrepancies(test_db)
        assert remaining["total"] == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_requests(self, test_db, service, run_id):
        orphan = await _item(test_db, "unmatched_app", "app")

        with pytest.raises(DiscrepancyResolutionError):
            await service.resolve(test_db, orphan.id, "shrug", "finance")
        with pytest.raises(DiscrepancyNotFoundError):
            await service.resolve(test_db, 99999, "write_off", "finance")

        await service.resolve(test_db, orphan.id, "write_off", "finance")
        with pytest.raises(DiscrepancyResolutionError):
            await service.resolve(test_db, orphan.id, "write_off", "finance")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matched_items_cannot_be_resolved(self, test_db, service):
        engine = ReconciliationEngine(gateway=MockGateway(), tolerances=MatchingTolerances())
        await engine.run_from_data(
            test_db,
            [{"transaction_id": "T-1", "amount": "10"}],
            [{"transaction_id": "T-1", "amount": "10"}],
        )
        matched = await _item(test_db, "matched", "app")

        with pytest.raises(DiscrepancyResolutionError):
            await service.resolve(test_db, matched.id, "accept_app", "finance")


class TestIgnoreAndReopen:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignore_pair(self, test_db, service, run_id):
        app_item = await _item(test_db, "amount_mismatch", "app")
        gateway_item = await _item(test_db, "amount_mismatch", "gateway")

        await service.ignore(test_db, gateway_item.id, resolved_by="finance", note="Known fee")

        assert gateway_item.resolution_status == "ignored"
        assert app_item.resolution_status == "ignored"
        assert app_item.resolution_note == "Known fee"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignore_duplicate_leaves_pair_open(self, test_db, service):
        """A repeated gateway record closes alone, never the pair sharing its id."""
        engine = ReconciliationEngine(gateway=MockGateway(), tolerances=MatchingTolerances())
        await engine.run_from_data(
            test_db,
            [{"transaction_id": "T1", "amount": "100"}],
            [
                {"transaction_id": "T1", "amount": "80"},
                {"transaction_id": "T1", "amount": "80"},
            ],
        )
        app_item = await _item(test_db, "amount_mismatch", "app")
        gateway_item = await _item(test_db, "amount_mismatch", "gateway")
        duplicate = await _item(test_db, "duplicate", "gateway")

        await service.ignore(test_db, duplicate.id, resolved_by="finance", note="Resent")

        assert duplicate.resolution_status == "ignored"
        assert app_item.resolution_status == "open"
        assert gateway_item.resolution_status == "open"

        await service.ignore(test_db, app_item.id, resolved_by="finance")

        assert gateway_item.resolution_status == "ignored"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reopen(self, test_db, service, run_id, payments):
        """Reopening restores both sides but keeps payment corrections."""
        app_item = await _item(test_db, "amount_mismatch", "app")
        gateway_item = await _item(test_db, "amount_mismatch", "gateway")
        await service.resolve(test_db, app_item.id, "accept_gateway", "finance")

        reopened = await service.reopen(test_db, app_item.id, actor="auditor", note="Recheck")

        assert reopened.resolution_status == "open"
        assert reopened.resolved_by is None
        assert reopened.resolution_action is None
        assert gateway_item.resolution_status == "open"
        assert payments["short"].amount == Decimal("1400.00")

        audit = (
            await test_db.execute(
                select(AuditLog).where(AuditLog.action == "discrepancy_reopened")
            )
        ).scalar_one()
        assert audit.old_values["resolution_status"] == "resolved"
        assert audit.actor == "auditor"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reopen_requires_closed_item(self, test_db, service, run_id):
        orphan = await _item(test_db, "unmatched_app", "app")
        with pytest.raises(DiscrepancyResolutionError):
            await service.reopen(test_db, orphan.id, actor="auditor")


class TestManualMatch:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pairs_unmatched_items(self, test_db, service, run_id):
        app_item = await _item(test_db, "unmatched_app", "app")
        gateway_item = await _item(test_db, "unmatched_gateway", "gateway")

        app_side, gateway_side = await service.manual_match(
            test_db, app_item.id, gateway_item.id, resolved_by="finance", note="Same payer"
        )

        assert app_side.linked_transaction_id == "G-5"
        assert gateway_side.linked_transaction_id == "A-9"
        assert app_side.discrepancy_amount == Decimal("10.00")
        assert gateway_side.discrepancy_amount == Decimal("10.00")
        assert app_side.resolution_action == "manual_match"
        assert gateway_side.resolution_status == "resolved"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_wrong_sides(self, test_db, service, run_id):
        app_item = await _item(test_db, "unmatched_app", "app")
        gateway_item = await _item(test_db, "unmatched_gateway", "gateway")
        mismatch = await _item(test_db, "amount_mismatch", "app")

        with pytest.raises(DiscrepancyResolutionError):
            await service.manual_match(test_db, gateway_item.id, app_item.id, "finance")
        with pytest.raises(DiscrepancyResolutionError):
            await service.manual_match(test_db, mismatch.id, gateway_item.id, "finance")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejects_items_from_different_runs(self, test_db, service):
        engine = ReconciliationEngine(gateway=MockGateway(), tolerances=MatchingTolerances())
        await engine.run_from_data(test_db, [{"transaction_id": "A-1", "amount": "10"}], [])
        await engine.run_from_data(test_db, [], [{"transaction_id": "G-1", "amount": "10"}])
        app_item = await _item(test_db, "unmatched_app", "app")
        gateway_item = await _item(test_db, "unmatched_gateway", "gateway")

        with pytest.raises(DiscrepancyResolutionError):
            await service.manual_match(test_db, app_item.id, gateway_item.id, "finance")
