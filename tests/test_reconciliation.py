"""
Tests for the reconciliation engine.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from lab_billing.core.matching import MatchingTolerances, TransactionMatcher
from lab_billing.core.reconciliation import (
    InvalidTransactionDataError,
    ReconciliationEngine,
    ReconciliationError,
)
from lab_billing.database.models import (
    Donation,
    OutboxEvent,
    Payment,
    ReconciliationItem,
    ReconciliationRun,
)
from lab_billing.integrations.gateway import GatewayError, GatewayErrorType
from lab_billing.integrations.mock_gateway import MockGateway
from lab_billing.timeutils import utcnow

APP_TRANSACTIONS = [
    {"transaction_id": "TXN-1", "reference": "SUB-1", "amount": "1500.00", "status": "paid"},
    {"transaction_id": "TXN-2", "reference": "SUB-2", "amount": "1500.00", "status": "paid"},
    {"transaction_id": "TXN-3", "reference": "DON-1", "amount": "500.00", "status": "paid"},
]
GATEWAY_TRANSACTIONS = [
    {"transaction_id": "TXN-1", "reference": "SUB-1", "amount": "1500.00", "status": "COMPLETED"},
    {"transaction_id": "TXN-2", "reference": "SUB-2", "amount": "1400.00", "status": "COMPLETED"},
    {"transaction_id": "TXN-9", "reference": "ZZZ-9", "amount": "200.00", "status": "COMPLETED"},
]


@pytest.fixture
def engine() -> ReconciliationEngine:
    return ReconciliationEngine(gateway=MockGateway(), tolerances=MatchingTolerances())


async def _count(db, model) -> int:
    return (await db.execute(select(func.count(model.id)))).scalar_one()


class TestRunFromData:
    """Reconciling submitted transaction lists."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_persists_run_and_items(self, test_db, engine):
        """Outcome rows and totals are stored; discrepancies start open."""
        summary = await engine.run_from_data(
            test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS, created_by="finance"
        )

        assert summary["status"] == "partial"
        assert summary["dry_run"] is False
        assert summary["total_matched"] == 1
        assert summary["total_amount_mismatch"] == 1
        assert summary["total_unmatched_app"] == 1
        assert summary["total_unmatched_gateway"] == 1
        assert summary["item_counts"]["matched"] == 2

        run = (
            await test_db.execute(
                select(ReconciliationRun).where(ReconciliationRun.run_id == summary["run_id"])
            )
        ).scalar_one()
        assert run.status == "partial"
        assert run.created_by == "finance"
        assert run.completed_at is not None
        assert run.options["app_count"] == 3
        assert run.total_app_amount == Decimal("3500.00")
        assert run.total_gateway_amount == Decimal("3100.00")
        assert run.total_discrepancy == Decimal("400.00")

        items = (
            await test_db.execute(
                select(ReconciliationItem).where(
                    ReconciliationItem.reconciliation_run_id == run.id
                )
            )
        ).scalars().all()
        assert len(items) == 6
        for item in items:
            if item.status == "matched":
                assert item.resolution_status is None
            else:
                assert item.resolution_status == "open"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clean_run_is_success(self, test_db, engine):
        summary = await engine.run_from_data(
            test_db, APP_TRANSACTIONS[:1], GATEWAY_TRANSACTIONS[:1]
        )
        assert summary["status"] == "success"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_writes_outbox_event(self, test_db, engine):
        """Completion is announced through the outbox in the same transaction."""
        summary = await engine.run_from_data(test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS)

        event = (
            await test_db.execute(
                select(OutboxEvent).where(OutboxEvent.event_type == "reconciliation.completed")
            )
        ).scalar_one()
        assert event.aggregate_id == summary["run_id"]
        assert event.payload["status"] == "partial"
        assert event.published is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, test_db, engine):
        """Dry runs return the discrepancies without touching the database."""
        summary = await engine.run_from_data(
            test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS, dry_run=True
        )

        assert summary["run_id"] is None
        assert summary["dry_run"] is True
        assert len(summary["discrepancies"]) == 4
        assert await _count(test_db, ReconciliationRun) == 0
        assert await _count(test_db, ReconciliationItem) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tolerance_override(self, test_db, engine):
        """A wider per-run amount tolerance turns the mismatch into a match."""
        summary = await engine.run_from_data(
            test_db,
            APP_TRANSACTIONS[1:2],
            GATEWAY_TRANSACTIONS[1:2],
            options={"amount_percentage_tolerance": 0.1},
        )
        assert summary["total_matched"] == 1

        run = (await test_db.execute(select(ReconciliationRun))).scalar_one()
        assert run.options["tolerances"]["amount_percentage"] == 0.1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_transaction_rejected(self, test_db, engine):
        """Validation failures abort before a run is created."""
        with pytest.raises(InvalidTransactionDataError):
            await engine.run_from_data(test_db, [{"amount": "lots"}], [])
        assert await _count(test_db, ReconciliationRun) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matching_failure_marks_run_failed(self, test_db, engine, mocker):
        """A crash mid-run leaves a failed run with the error and no partial items."""
        mocker.patch.object(
            TransactionMatcher, "match", side_effect=RuntimeError("matcher exploded")
        )

        with pytest.raises(ReconciliationError, match="matcher exploded"):
            await engine.run_from_data(test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS)

        run = (await test_db.execute(select(ReconciliationRun))).scalar_one()
        assert run.status == "failed"
        assert run.completed_at is not None
        assert "matcher exploded" in run.error_message
        assert await _count(test_db, ReconciliationItem) == 0
        assert await _count(test_db, OutboxEvent) == 0


class TestReconcilePeriod:
    """Reconciling stored payments and donations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_collects_payments_and_unbacked_donations(self, test_db, engine, member):
        now = utcnow()
        payment = Payment(
            member_id=member.id,
            amount=Decimal("1500.00"),
            status="paid",
            reference="SUB-100",
            transaction_id="MOCK-AAA",
            county="Nairobi",
            created_at=now - timedelta(hours=2),
        )
        test_db.add(payment)
        await test_db.flush()
        test_db.add_all(
            [
                Donation(
                    donor_name="Akinyi",
                    amount=Decimal("300.00"),
                    reference="DON-100",
                    status="paid",
                    created_at=now - timedelta(hours=1),
                ),
                Donation(
                    amount=Decimal("1500.00"),
                    reference="DON-101",
                    status="paid",
                    payment_id=payment.id,
                    created_at=now - timedelta(hours=1),
                ),
                Payment(
                    amount=Decimal("99.00"),
                    status="cancelled",
                    reference="SUB-101",
                    created_at=now - timedelta(hours=1),
                ),
                Payment(
                    amount=Decimal("75.00"),
                    status="paid",
                    reference="SUB-OLD",
                    created_at=now - timedelta(days=5),
                ),
            ]
        )
        await test_db.commit()

        records = await engine.collect_app_transactions(
            test_db, now - timedelta(days=1), now
        )

        assert [r.reference for r in records] == ["SUB-100", "DON-100"]
        assert records[0].transaction_id == "MOCK-AAA"
        assert records[0].metadata["payment_id"] == payment.id
        assert records[1].payer_name == "Akinyi"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_county_filter(self, test_db, engine):
        now = utcnow()
        test_db.add_all(
            [
                Payment(amount=Decimal("10"), reference="A", county="Nairobi", created_at=now),
                Payment(amount=Decimal("20"), reference="B", county="Kisumu", created_at=now),
            ]
        )
        await test_db.commit()

        records = await engine.collect_app_transactions(
            test_db, now - timedelta(hours=1), now + timedelta(hours=1), county="Kisumu"
        )
        assert [r.reference for r in records] == ["B"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_queries_gateway(self, test_db, member):
        """Payments known to the gateway match; unknown ones stay unmatched."""
        gateway = MockGateway()
        charge = await gateway.charge("254701234567", 150000)
        engine = ReconciliationEngine(gateway=gateway, tolerances=MatchingTolerances())

        now = utcnow()
        test_db.add_all(
            [
                Payment(
                    member_id=member.id,
                    amount=Decimal("1500.00"),
                    status="paid",
                    reference="SUB-200",
                    transaction_id=charge.reference,
                    created_at=now - timedelta(hours=1),
                ),
                Payment(
                    member_id=member.id,
                    amount=Decimal("800.00"),
                    status="paid",
                    reference="SUB-201",
                    transaction_id="MOCK-UNKNOWN",
                    created_at=now - timedelta(hours=1),
                ),
            ]
        )
        await test_db.commit()

        summary = await engine.reconcile_period(
            test_db, now - timedelta(days=1), now + timedelta(minutes=1), sync=True
        )

        assert summary["total_matched"] == 1
        assert summary["total_unmatched_app"] == 1
        run = (await test_db.execute(select(ReconciliationRun))).scalar_one()
        assert run.notes == "gateway sync"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_sync_leaves_gateway_side_empty(self, test_db, engine):
        now = utcnow()
        test_db.add(Payment(amount=Decimal("10"), reference="A", status="paid", created_at=now))
        await test_db.commit()

        summary = await engine.reconcile_period(
            test_db, now - timedelta(hours=1), now + timedelta(hours=1), sync=False
        )
        assert summary["total_unmatched_app"] == 1
        assert summary["total_unmatched_gateway"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_skips_gateway_errors(self, test_db, mocker):
        """A failing status query leaves that payment unmatched instead of failing the run."""
        gateway = MockGateway()
        query = mocker.patch.object(
            gateway,
            "query_status",
            side_effect=GatewayError("timeout", GatewayErrorType.TRANSIENT),
        )
        engine = ReconciliationEngine(gateway=gateway, tolerances=MatchingTolerances())
        now = utcnow()
        test_db.add(
            Payment(
                amount=Decimal("10"),
                reference="A",
                transaction_id="T-1",
                status="paid",
                created_at=now,
            )
        )
        await test_db.commit()

        summary = await engine.reconcile_period(
            test_db, now - timedelta(hours=1), now + timedelta(hours=1)
        )

        query.assert_awaited_once_with("T-1")
        assert summary["status"] == "partial"
        assert summary["total_unmatched_app"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_explicit_gateway_list(self, test_db, engine):
        now = utcnow()
        test_db.add(
            Payment(
                amount=Decimal("10"),
                reference="A",
                transaction_id="T-1",
                status="paid",
                created_at=now,
            )
        )
        await test_db.commit()

        summary = await engine.reconcile_period(
            test_db,
            now - timedelta(hours=1),
            now + timedelta(hours=1),
            gateway_transactions=[{"transaction_id": "T-1", "amount": "10", "status": "paid"}],
        )
        assert summary["total_matched"] == 1


class TestRunQueries:
    """Listing, detail, stats and deletion."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_and_get(self, test_db, engine):
        first = await engine.run_from_data(test_db, APP_TRANSACTIONS[:1], GATEWAY_TRANSACTIONS[:1])
        second = await engine.run_from_data(
            test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS, county="Nairobi"
        )

        listing = await engine.list_runs(test_db)
        assert listing["total"] == 2
        assert [r.run_id for r in listing["items"]] == [second["run_id"], first["run_id"]]

        partial = await engine.list_runs(test_db, status="partial")
        assert [r.run_id for r in partial["items"]] == [second["run_id"]]

        by_county = await engine.list_runs(test_db, county="Nairobi")
        assert by_county["total"] == 1

        detail = await engine.get_run(test_db, second["run_id"])
        assert detail["run"].run_id == second["run_id"]
        assert detail["summary"]["total_items"] == 6
        assert detail["summary"]["items_by_status"]["amount_mismatch"] == 2
        assert detail["summary"]["discrepancies_by_resolution"]["open"] == 4

        assert await engine.get_run(test_db, "missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats(self, test_db, engine):
        await engine.run_from_data(test_db, APP_TRANSACTIONS[:1], GATEWAY_TRANSACTIONS[:1])
        latest = await engine.run_from_data(test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS)

        stats = await engine.get_stats(test_db)

        assert stats["total_runs"] == 2
        assert stats["runs_by_status"] == {"success": 1, "partial": 1}
        assert stats["success_rate"] == 50.0
        assert stats["last_run"].run_id == latest["run_id"]
        assert stats["total_matched"] == 2
        assert stats["open_discrepancies"] == 4
        assert stats["total_discrepancy"] == Decimal("400")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats_without_runs(self, test_db, engine):
        stats = await engine.get_stats(test_db)
        assert stats["total_runs"] == 0
        assert stats["success_rate"] == 0.0
        assert stats["last_run"] is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_run(self, test_db, engine):
        """Deleting a run removes its items too."""
        summary = await engine.run_from_data(test_db, APP_TRANSACTIONS, GATEWAY_TRANSACTIONS)

        assert await engine.delete_run(test_db, summary["run_id"]) is True
        assert await _count(test_db, ReconciliationRun) == 0
        assert await _count(test_db, ReconciliationItem) == 0
        assert await engine.delete_run(test_db, summary["run_id"]) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reconcile_yesterday_window(self, test_db, engine):
        summary = await engine.reconcile_yesterday(test_db, sync=False)

        start = datetime.fromisoformat(summary["period_start"])
        end = datetime.fromisoformat(summary["period_end"])
        assert end - start == timedelta(days=1)
        assert end.hour == 0 and end.minute == 0
        run = (await test_db.execute(select(ReconciliationRun))).scalar_one()
        assert run.created_by == "scheduler"
