"""
Operator workflow over the discrepancy ledger.

Every non-matched reconciliation item starts ``open``. Operators resolve it
with one of the actions below, ignore it, or reopen a closed one. Pairs
(amount/status mismatches, manual matches) are always closed together, and
every decision is written to the audit log.
"""
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.core.matching import normalize_status
from lab_billing.database.models import AuditLog, Payment, ReconciliationItem, ReconciliationRun
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

RESOLUTION_ACTIONS = ("accept_app", "accept_gateway", "write_off", "manual_match")

# Normalised gateway status -> payment status
_PAYMENT_STATUS_FOR = {
    "completed": "paid",
    "failed": "failed",
    "cancelled": "cancelled",
    "refunded": "refunded",
    "pending": "pending",
}


class DiscrepancyResolutionError(Exception):
    """Raised when a discrepancy cannot be resolved as requested."""

    pass


class DiscrepancyNotFoundError(DiscrepancyResolutionError):
    """Raised when a reconciliation item does not exist."""

    pass


class DiscrepancyService:
    """Lists, resolves, ignores and reopens discrepancies."""

    async def list_discrepancies(
        self,
        db: AsyncSession,
        run_id: Optional[str] = None,
        status: Optional[str] = None,
        resolution_status: Optional[str] = "open",
        county: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """
        Paginated discrepancy listing.

        Args:
            run_id: Restrict to one run (its uuid)
            status: Item status, e.g. ``amount_mismatch``
            resolution_status: ``open``, ``resolved``, ``ignored``, or None for all
        """
        conditions = [ReconciliationItem.status != "matched"]
        if run_id:
            conditions.append(ReconciliationRun.run_id == run_id)
        if status:
            conditions.append(ReconciliationItem.status == status)
        if resolution_status:
            conditions.append(ReconciliationItem.resolution_status == resolution_status)
        if county:
            conditions.append(ReconciliationItem.county == county)

        base = select(ReconciliationItem).join(
            ReconciliationRun, ReconciliationRun.id == ReconciliationItem.reconciliation_run_id
        )
        total = (
            await db.execute(
                select(func.count()).select_from(base.where(*conditions).subquery())
            )
        ).scalar_one()
        stmt = (
            base.where(*conditions)
            .order_by(ReconciliationItem.created_at.desc(), ReconciliationItem.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        items = list((await db.execute(stmt)).scalars().all())
        return {"items": items, "total": total, "page": page, "per_page": per_page}

    async def _get_item(self, db: AsyncSession, item_id: int) -> ReconciliationItem:
        item = await db.get(ReconciliationItem, item_id)
        if item is None:
            raise DiscrepancyNotFoundError(f"Reconciliation item {item_id} not found")
        return item

    async def _get_open_discrepancy(self, db: AsyncSession, item_id: int) -> ReconciliationItem:
        item = await self._get_item(db, item_id)
        if item.status == "matched":
            raise DiscrepancyResolutionError(f"Item {item_id} is matched, nothing to resolve")
        if item.resolution_status != "open":
            raise DiscrepancyResolutionError(
                f"Item {item_id} is already {item.resolution_status}"
            )
        return item

    async def _counterpart(
        self, db: AsyncSession, item: ReconciliationItem
    ) -> Optional[ReconciliationItem]:
        """The other side of a linked pair in the same run, if any."""
        # Duplicates point at their own id and have no other side
        if not item.linked_transaction_id or item.status == "duplicate":
            return None
        own_ids = [value for value in (item.transaction_id, item.reference) if value]
        stmt = (
            select(ReconciliationItem)
            .where(
                ReconciliationItem.reconciliation_run_id == item.reconciliation_run_id,
                ReconciliationItem.id != item.id,
                ReconciliationItem.source != item.source,
                ReconciliationItem.status != "duplicate",
                or_(
                    ReconciliationItem.transaction_id == item.linked_transaction_id,
                    ReconciliationItem.reference == item.linked_transaction_id,
                ),
            )
            .order_by(ReconciliationItem.id)
        )
        candidates = (await db.execute(stmt)).scalars().all()
        for candidate in candidates:
            if candidate.linked_transaction_id in own_ids:
                return candidate
        return candidates[0] if candidates else None

    @staticmethod
    def _close(
        item: ReconciliationItem,
        resolution_status: str,
        action: Optional[str],
        actor: Optional[str],
        note: Optional[str],
    ) -> None:
        item.resolution_status = resolution_status
        item.resolution_action = action
        item.resolved_by = actor
        item.resolved_at = utcnow()
        item.resolution_note = note

    async def _find_payment(
        self, db: AsyncSession, app_item: ReconciliationItem
    ) -> Optional[Payment]:
        payment_id = (app_item.meta or {}).get("payment_id")
        if payment_id is not None:
            return await db.get(Payment, payment_id)

        conditions = []
        if app_item.transaction_id:
            conditions.append(Payment.transaction_id == app_item.transaction_id)
            conditions.append(Payment.external_reference == app_item.transaction_id)
        if app_item.reference:
            conditions.append(Payment.reference == app_item.reference)
        if not conditions:
            return None
        stmt = select(Payment).where(or_(*conditions)).order_by(Payment.id).limit(1)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _accept_gateway(
        self,
        db: AsyncSession,
        item: ReconciliationItem,
        counterpart: Optional[ReconciliationItem],
    ) -> Dict[str, Any]:
        """Bring the app payment in line with the gateway side. Returns the changes."""
        if counterpart is None:
            return {}
        if item.source == "app":
            app_item, gateway_item = item, counterpart
        else:
            app_item, gateway_item = counterpart, item
        payment = await self._find_payment(db, app_item)
        if payment is None:
            logger.warning("discrepancy_payment_not_found", item_id=app_item.id)
            return {}

        changes: Dict[str, Any] = {"payment_id": payment.id}
        if item.status == "amount_mismatch" and payment.amount != gateway_item.amount:
            changes["amount"] = {"old": str(payment.amount), "new": str(gateway_item.amount)}
            payment.amount = gateway_item.amount

        if item.status == "status_mismatch":
            gateway_status = normalize_status((gateway_item.meta or {}).get("record_status"))
            new_status = _PAYMENT_STATUS_FOR.get(gateway_status or "")
            if new_status and new_status != payment.status:
                changes["status"] = {"old": payment.status, "new": new_status}
                payment.status = new_status
                if new_status == "paid" and payment.paid_at is None:
                    payment.paid_at = gateway_item.transaction_date or utcnow()

        if len(changes) > 1:
            logger.info("payment_corrected_from_gateway", **changes)
        return changes

    async def resolve(
        self,
        db: AsyncSession,
        item_id: int,
        action: str,
        resolved_by: str,
        note: Optional[str] = None,
    ) -> ReconciliationItem:
        """
        Resolve an open discrepancy, together with its linked counterpart.

        ``accept_gateway`` on a mismatch pair also corrects the app payment.

        Raises:
            DiscrepancyNotFoundError: If the item does not exist
            DiscrepancyResolutionError: If the action is unknown or the item is not open
        """
        if action not in RESOLUTION_ACTIONS:
            raise DiscrepancyResolutionError(
                f"Unknown action '{action}'. Expected one of {', '.join(RESOLUTION_ACTIONS)}"
            )

        item = await self._get_open_discrepancy(db, item_id)
        counterpart = await self._counterpart(db, item)

        payment_changes: Dict[str, Any] = {}
        if action == "accept_gateway":
            payment_changes = await self._accept_gateway(db, item, counterpart)

        self._close(item, "resolved", action, resolved_by, note)
        closed_ids = [item.id]
        if counterpart is not None and counterpart.resolution_status == "open":
            self._close(counterpart, "resolved", action, resolved_by, note)
            closed_ids.append(counterpart.id)

        db.add(
            AuditLog(
                action=f"discrepancy_{action}",
                model_type="reconciliation_item",
                model_id=str(item.id),
                actor=resolved_by,
                old_values={"resolution_status": "open", "status": item.status},
                new_values={
                    "resolution_status": "resolved",
                    "resolved_items": closed_ids,
                    "payment_changes": payment_changes or None,
                },
                notes=note,
            )
        )
        await db.commit()

        metrics.record_discrepancy_resolved(action)
        logger.info(
            "discrepancy_resolved",
            item_id=item.id,
            action=action,
            resolved_by=resolved_by,
            resolved_items=closed_ids,
        )
        return item

    async def ignore(
        self,
        db: AsyncSession,
        item_id: int,
        resolved_by: str,
        note: Optional[str] = None,
    ) -> ReconciliationItem:
        """Close an open discrepancy without acting on it."""
        item = await self._get_open_discrepancy(db, item_id)
        counterpart = await self._counterpart(db, item)

        self._close(item, "ignored", "ignore", resolved_by, note)
        if counterpart is not None and counterpart.resolution_status == "open":
            self._close(counterpart, "ignored", "ignore", resolved_by, note)

        db.add(
            AuditLog(
                action="discrepancy_ignored",
                model_type="reconciliation_item",
                model_id=str(item.id),
                actor=resolved_by,
                old_values={"resolution_status": "open"},
                new_values={"resolution_status": "ignored"},
                notes=note,
            )
        )
        await db.commit()

        metrics.record_discrepancy_resolved("ignore")
        logger.info("discrepancy_ignored", item_id=item.id, resolved_by=resolved_by)
        return item

    async def reopen(
        self,
        db: AsyncSession,
        item_id: int,
        actor: str,
        note: Optional[str] = None,
    ) -> ReconciliationItem:
        """
        Put a resolved or ignored discrepancy back in the open queue.

        Payment corrections made on resolution are not reverted.
        """
        item = await self._get_item(db, item_id)
        if item.resolution_status not in ("resolved", "ignored"):
            raise DiscrepancyResolutionError(
                f"Item {item_id} cannot be reopened from '{item.resolution_status}'"
            )

        previous = {
            "resolution_status": item.resolution_status,
            "resolution_action": item.resolution_action,
            "resolved_by": item.resolved_by,
        }
        counterpart = await self._counterpart(db, item)
        for target in (item, counterpart):
            if target is None or target.resolution_status not in ("resolved", "ignored"):
                continue
            target.resolution_status = "open"
            target.resolution_action = None
            target.resolved_by = None
            target.resolved_at = None
            target.resolution_note = None

        db.add(
            AuditLog(
                action="discrepancy_reopened",
                model_type="reconciliation_item",
                model_id=str(item.id),
                actor=actor,
                old_values=previous,
                new_values={"resolution_status": "open"},
                notes=note,
            )
        )
        await db.commit()

        logger.info("discrepancy_reopened", item_id=item.id, actor=actor)
        return item

    async def manual_match(
        self,
        db: AsyncSession,
        app_item_id: int,
        gateway_item_id: int,
        resolved_by: str,
        note: Optional[str] = None,
    ) -> Tuple[ReconciliationItem, ReconciliationItem]:
        """
        Pair an unmatched app item with an unmatched gateway item of the same run.

        Raises:
            DiscrepancyNotFoundError: If either item does not exist
            DiscrepancyResolutionError: If the items cannot be paired
        """
        app_item = await self._get_open_discrepancy(db, app_item_id)
        gateway_item = await self._get_open_discrepancy(db, gateway_item_id)

        if app_item.source != "app" or app_item.status != "unmatched_app":
            raise DiscrepancyResolutionError(f"Item {app_item_id} is not an unmatched app item")
        if gateway_item.source != "gateway" or gateway_item.status != "unmatched_gateway":
            raise DiscrepancyResolutionError(
                f"Item {gateway_item_id} is not an unmatched gateway item"
            )
        if app_item.reconciliation_run_id != gateway_item.reconciliation_run_id:
            raise DiscrepancyResolutionError("Items belong to different reconciliation runs")

        difference = app_item.amount - gateway_item.amount
        app_item.linked_transaction_id = gateway_item.transaction_id or gateway_item.reference
        gateway_item.linked_transaction_id = app_item.transaction_id or app_item.reference
        for target in (app_item, gateway_item):
            target.discrepancy_amount = difference
            self._close(target, "resolved", "manual_match", resolved_by, note)

        db.add(
            AuditLog(
                action="discrepancy_manual_match",
                model_type="reconciliation_item",
                model_id=str(app_item.id),
                actor=resolved_by,
                old_values={"resolution_status": "open"},
                new_values={
                    "resolution_status": "resolved",
                    "app_item_id": app_item.id,
                    "gateway_item_id": gateway_item.id,
                    "discrepancy_amount": str(difference),
                },
                notes=note,
            )
        )
        await db.commit()

        metrics.record_discrepancy_resolved("manual_match")
        logger.info(
            "discrepancy_manual_match",
            app_item_id=app_item.id,
            gateway_item_id=gateway_item.id,
            discrepancy_amount=str(difference),
            resolved_by=resolved_by,
        )
        return app_item, gateway_item

    async def open_counts(
        self, db: AsyncSession, run_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Open/resolved/ignored discrepancy counts per run, newest run first."""
        stmt = (
            select(
                ReconciliationRun.run_id,
                ReconciliationItem.resolution_status,
                func.count(ReconciliationItem.id),
            )
            .join(
                ReconciliationRun,
                ReconciliationRun.id == ReconciliationItem.reconciliation_run_id,
            )
            .where(ReconciliationItem.resolution_status.is_not(None))
            .group_by(ReconciliationRun.run_id, ReconciliationItem.resolution_status)
        )
        if run_id:
            stmt = stmt.where(ReconciliationRun.run_id == run_id)

        counts: Dict[str, Dict[str, Any]] = {}
        for run_uuid, resolution_status, count in (await db.execute(stmt)).all():
            entry = counts.setdefault(
                run_uuid, {"run_id": run_uuid, "open": 0, "resolved": 0, "ignored": 0}
            )
            entry[resolution_status] = count

        order = (
            await db.execute(
                select(ReconciliationRun.run_id).order_by(
                    ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc()
                )
            )
        ).scalars().all()
        return [counts[run_uuid] for run_uuid in order if run_uuid in counts]
