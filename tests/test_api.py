"""
End-to-end tests for the admin and webhook HTTP API.
"""
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from lab_billing.database.models import Donation, Payment, WebhookEvent

RUN_REQUEST = {
    "app_transactions": [
        {"transaction_id": "TXN-1", "reference": "SUB-1", "amount": "1500.00", "status": "paid"},
        {"transaction_id": "TXN-2", "reference": "SUB-2", "amount": "1000.00", "status": "paid"},
        {"transaction_id": "TXN-3", "reference": "DON-3", "amount": "250.00", "status": "paid"},
    ],
    "gateway_transactions": [
        {"transaction_id": "TXN-1", "amount": "1500.00", "status": "COMPLETED"},
        {"transaction_id": "TXN-2", "amount": "900.00", "status": "COMPLETED"},
        {"transaction_id": "GW-9", "reference": "ZZZ-9", "amount": "75.00", "status": "COMPLETED"},
    ],
    "county": "Nairobi",
    "created_by": "finance@lab.example",
}


async def _create_run(client) -> dict:
    response = await client.post("/admin/reconciliation/runs", json=RUN_REQUEST)
    assert response.status_code == 201
    return response.json()


class TestReconciliationRuns:
    """Run lifecycle over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_get_delete(self, client):
        summary = await _create_run(client)

        assert summary["status"] == "partial"
        assert summary["dry_run"] is False
        assert summary["total_matched"] == 1
        assert summary["total_amount_mismatch"] == 1
        assert summary["total_unmatched_app"] == 1
        assert summary["total_unmatched_gateway"] == 1
        run_id = summary["run_id"]

        detail = await client.get(f"/admin/reconciliation/runs/{run_id}")
        assert detail.status_code == 200
        assert detail.json()["run"]["run_id"] == run_id
        assert detail.json()["run"]["county"] == "Nairobi"

        listing = await client.get("/admin/reconciliation/runs", params={"status": "partial"})
        assert listing.json()["total"] == 1

        deleted = await client.delete(f"/admin/reconciliation/runs/{run_id}")
        assert deleted.status_code == 204
        missing = await client.get(f"/admin/reconciliation/runs/{run_id}")
        assert missing.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_dry_run(self, client):
        response = await client.post(
            "/admin/reconciliation/runs", json={**RUN_REQUEST, "dry_run": True}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["run_id"] is None
        assert len(body["discrepancies"]) == 4

        listing = await client.get("/admin/reconciliation/runs")
        assert listing.json()["total"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_amount(self, client):
        response = await client.post(
            "/admin/reconciliation/runs",
            json={"app_transactions": [{"transaction_id": "X", "amount": "lots"}]},
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_run(self, client):
        assert (await client.get("/admin/reconciliation/runs/nope")).status_code == 404
        assert (await client.delete("/admin/reconciliation/runs/nope")).status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stats(self, client):
        await _create_run(client)

        response = await client.get("/admin/reconciliation/stats")

        assert response.status_code == 200
        stats = response.json()
        assert stats["total_runs"] == 1
        assert stats["open_discrepancies"] == 4

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_trigger_rejects_inverted_window(self, client):
        response = await client.post(
            "/admin/reconciliation/trigger",
            json={"period_start": "2024-03-02T00:00:00", "period_end": "2024-03-01T00:00:00"},
        )

        assert response.status_code == 400


class TestExport:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_csv(self, client):
        run_id = (await _create_run(client))["run_id"]

        response = await client.get("/admin/reconciliation/export", params={"run_id": run_id})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.startswith(b"\xef\xbb\xbf")
        lines = response.content.decode("utf-8-sig").strip().split("\n")
        assert lines[0] == "run_id,transaction_id,reference,source,date,amount,status"
        assert len(lines) == 7

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_errors(self, client):
        missing = await client.get("/admin/reconciliation/export", params={"run_id": "nope"})
        assert missing.status_code == 404

        invalid = await client.get("/admin/reconciliation/export", params={"status": "lost"})
        assert invalid.status_code == 400


class TestDiscrepancyEndpoints:
    """Discrepancy review over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolve_and_reopen(self, client):
        await _create_run(client)
        listing = await client.get(
            "/admin/reconciliation/discrepancies", params={"status": "amount_mismatch"}
        )
        assert listing.json()["total"] == 2
        item = listing.json()["items"][0]

        resolved = await client.post(
            f"/admin/reconciliation/discrepancies/{item['id']}/resolve",
            json={"action": "write_off", "resolved_by": "finance"},
        )
        assert resolved.status_code == 200
        assert resolved.json()["resolution_status"] == "resolved"

        again = await client.post(
            f"/admin/reconciliation/discrepancies/{item['id']}/resolve",
            json={"action": "write_off", "resolved_by": "finance"},
        )
        assert again.status_code == 409

        remaining = await client.get(
            "/admin/reconciliation/discrepancies", params={"status": "amount_mismatch"}
        )
        assert remaining.json()["total"] == 0

        reopened = await client.post(
            f"/admin/reconciliation/discrepancies/{item['id']}/reopen",
            json={"actor": "auditor"},
        )
        assert reopened.status_code == 200
        assert reopened.json()["resolution_status"] == "open"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolve_errors(self, client):
        missing = await client.post(
            "/admin/reconciliation/discrepancies/99999/resolve",
            json={"action": "write_off", "resolved_by": "finance"},
        )
        assert missing.status_code == 404

        bad_action = await client.post(
            "/admin/reconciliation/discrepancies/1/resolve",
            json={"action": "shrug", "resolved_by": "finance"},
        )
        assert bad_action.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ignore_and_counts(self, client):
        summary = await _create_run(client)
        listing = await client.get(
            "/admin/reconciliation/discrepancies", params={"status": "unmatched_app"}
        )
        item = listing.json()["items"][0]

        ignored = await client.post(
            f"/admin/reconciliation/discrepancies/{item['id']}/ignore",
            json={"resolved_by": "finance", "note": "Test entry"},
        )
        assert ignored.status_code == 200
        assert ignored.json()["resolution_status"] == "ignored"

        counts = await client.get("/admin/reconciliation/discrepancies/open-counts")
        assert counts.json() == [
            {"run_id": summary["run_id"], "open": 3, "resolved": 0, "ignored": 1}
        ]

        everything = await client.get(
            "/admin/reconciliation/discrepancies", params={"resolution_status": "all"}
        )
        assert everything.json()["total"] == 4

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_match(self, client):
        await _create_run(client)
        app_item = (
            await client.get(
                "/admin/reconciliation/discrepancies", params={"status": "unmatched_app"}
            )
        ).json()["items"][0]
        gateway_item = (
            await client.get(
                "/admin/reconciliation/discrepancies", params={"status": "unmatched_gateway"}
            )
        ).json()["items"][0]

        reversed_pair = await client.post(
            "/admin/reconciliation/discrepancies/manual-match",
            json={
                "app_item_id": gateway_item["id"],
                "gateway_item_id": app_item["id"],
                "resolved_by": "finance",
            },
        )
        assert reversed_pair.status_code == 409

        matched = await client.post(
            "/admin/reconciliation/discrepancies/manual-match",
            json={
                "app_item_id": app_item["id"],
                "gateway_item_id": gateway_item["id"],
                "resolved_by": "finance",
            },
        )
        assert matched.status_code == 200
        body = matched.json()
        assert body["app_item"]["linked_transaction_id"] == "GW-9"
        assert body["gateway_item"]["linked_transaction_id"] == "TXN-3"
        assert Decimal(body["app_item"]["discrepancy_amount"]) == Decimal("175.00")


class TestFinanceEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_report_and_flag(self, client, test_db):
        test_db.add(Payment(amount=Decimal("300.00"), status="pending", reference="P-1"))
        await test_db.commit()

        report = await client.get("/admin/finance/report")
        assert report.status_code == 200
        assert report.json()["has_discrepancies"] is True
        assert report.json()["payments"]["pending_count"] == 1

        flagged = await client.post(
            "/admin/finance/flag",
            json={"model_type": "payment", "model_id": "1", "reason": "No receipt"},
        )
        assert flagged.status_code == 201
        assert flagged.json()["action"] == "discrepancy_flagged"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_donation_endpoints(self, client, test_db):
        test_db.add(Donation(amount=Decimal("100.00"), reference="DON-1", status="paid"))
        await test_db.commit()

        found = await client.get("/admin/finance/donations/discrepancies")
        assert [d["reference"] for d in found.json()["missing_payments"]] == ["DON-1"]

        reconciled = await client.post("/admin/finance/donations/reconcile")
        assert reconciled.json()["total_checked"] == 0

        summary = await client.get("/admin/finance/donations/summary")
        assert summary.status_code == 200
        assert summary.json()["by_county"][0]["total_donations"] == 1


class TestRenewalAndSubscriptionEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_jobs(self, client):
        listing = await client.get("/admin/renewals/jobs")
        assert listing.status_code == 200
        assert listing.json()["total"] == 0

        assert (await client.get("/admin/renewals/jobs/999")).status_code == 404
        assert (await client.post("/admin/renewals/jobs/999/retry")).status_code == 404
        assert (await client.post("/admin/renewals/jobs/999/cancel")).status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_process_expired(self, client):
        response = await client.post("/admin/subscriptions/process-expired")

        assert response.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_extend_grace_period(self, client, subscription):
        missing = await client.post(
            "/admin/subscriptions/999/grace-period/extend", json={"days": 3}
        )
        assert missing.status_code == 404

        active = await client.post(
            f"/admin/subscriptions/{subscription.id}/grace-period/extend",
            json={"days": 3, "actor": "ops"},
        )
        assert active.status_code == 409

        invalid = await client.post(
            f"/admin/subscriptions/{subscription.id}/grace-period/extend", json={"days": 0}
        )
        assert invalid.status_code == 422


@pytest_asyncio.fixture
async def pending_payment(test_db) -> Payment:
    payment = Payment(
        amount=Decimal("500.00"),
        status="pending",
        reference="DON-5",
        external_reference="MOCK-ABC",
    )
    test_db.add(payment)
    await test_db.commit()
    return payment


class TestWebhookEndpoint:
    """Gateway callbacks over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mock_completion(self, client, pending_payment, mock_redis, session_factory):
        response = await client.post(
            "/webhooks/mock",
            json={
                "event_type": "payment.completed",
                "reference": "MOCK-ABC",
                "merchant_reference": "DON-5",
                "status": "completed",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["result"]["payment_status"] == "paid"
        mock_redis.setex.assert_awaited_once()

        async with session_factory() as session:
            payment = await session.get(Payment, pending_payment.id)
            assert payment.status == "paid"
            event = await session.get(WebhookEvent, body["event_id"])
            assert event.status == "processed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment(self, client, session_factory):
        response = await client.post(
            "/webhooks/mock",
            json={"event_type": "payment.completed", "reference": "MOCK-NONE", "status": "paid"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "payment_not_found"

        async with session_factory() as session:
            events = (await session.execute(select(WebhookEvent))).scalars().all()
            assert [event.status for event in events] == ["failed"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        response = await client.post("/webhooks/paypal", json={"status": "paid"})

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_body_must_be_object(self, client):
        response = await client.post("/webhooks/mock", json=["paid"])

        assert response.status_code == 400


class TestMonitoringEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await _create_run(client)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
