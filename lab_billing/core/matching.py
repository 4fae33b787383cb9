"""
Transaction matching between app records and gateway records.

Pure functions and a matcher with no database access, so the same logic
serves persisted runs, dry runs and tests. Matching order per app record:

1. exact transaction_id (amount outside tolerance -> amount_mismatch pair)
2. exact reference with amount within tolerance
3. fuzzy reference (similarity >= threshold) with amount and date within tolerance
4. records without a reference: amount and date within tolerance
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, Field, field_validator

from lab_billing.config import Settings
from lab_billing.timeutils import to_naive_utc

ITEM_STATUSES = (
    "matched",
    "unmatched_app",
    "unmatched_gateway",
    "amount_mismatch",
    "status_mismatch",
    "duplicate",
)

_STATUS_ALIASES = {
    "paid": "completed",
    "completed": "completed",
    "complete": "completed",
    "success": "completed",
    "succeeded": "completed",
    "successful": "completed",
    "failed": "failed",
    "declined": "failed",
    "invalid": "failed",
    "reversed": "refunded",
    "refunded": "refunded",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "pending": "pending",
}


class TransactionRecord(BaseModel):
    """One transaction as seen by either the app or the gateway."""

    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    amount: Decimal = Decimal("0")
    date: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("date", "transaction_date")
    )
    status: Optional[str] = None
    currency: Optional[str] = None
    payer_name: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_email: Optional[str] = None
    account: Optional[str] = None
    county: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("transaction_id", "reference", mode="before")
    @classmethod
    def blank_identifier_to_none(cls, v: Any) -> Optional[str]:
        """Identifiers are compared as strings; blanks mean 'absent'."""
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, v: Any) -> Decimal:
        """Accept ints, floats and numeric strings without float noise."""
        if v is None or v == "":
            return Decimal("0")
        try:
            return Decimal(str(v))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {v!r}")

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v: Any) -> Optional[datetime]:
        """Unparseable dates are treated as unknown rather than rejected."""
        try:
            return to_naive_utc(v)
        except (TypeError, ValueError):
            return None


@dataclass
class MatchingTolerances:
    """Tolerances applied when pairing records."""

    amount_percentage: float = 0.01
    amount_absolute: float = 0.0
    date_days: int = 3
    fuzzy_threshold: int = 80

    def __post_init__(self) -> None:
        self.amount_percentage = max(0.0, float(self.amount_percentage))
        self.amount_absolute = max(0.0, float(self.amount_absolute))
        self.date_days = max(0, int(self.date_days))
        self.fuzzy_threshold = min(100, max(0, int(self.fuzzy_threshold)))

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchingTolerances":
        return cls(
            amount_percentage=settings.reconciliation_amount_tolerance_percentage,
            amount_absolute=settings.reconciliation_amount_tolerance_absolute,
            date_days=settings.reconciliation_date_tolerance_days,
            fuzzy_threshold=settings.reconciliation_fuzzy_match_threshold,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "amount_percentage": self.amount_percentage,
            "amount_absolute": self.amount_absolute,
            "date_days": self.date_days,
            "fuzzy_threshold": self.fuzzy_threshold,
        }


@dataclass
class MatchedItem:
    """A single outcome row; pairs produce one item per side."""

    source: str
    status: str
    record: TransactionRecord
    linked_transaction_id: Optional[str] = None
    discrepancy_amount: Optional[Decimal] = None
    match_confidence: Optional[int] = None
    match_method: Optional[str] = None

    @property
    def is_discrepancy(self) -> bool:
        return self.status != "matched"


@dataclass
class MatchResult:
    """Items produced by a matcher pass plus the run totals."""

    items: List[MatchedItem] = field(default_factory=list)
    total_matched: int = 0
    total_unmatched_app: int = 0
    total_unmatched_gateway: int = 0
    total_amount_mismatch: int = 0
    total_status_mismatch: int = 0
    total_duplicates: int = 0
    total_app_amount: Decimal = Decimal("0")
    total_gateway_amount: Decimal = Decimal("0")

    @property
    def total_discrepancy(self) -> Decimal:
        return abs(self.total_app_amount - self.total_gateway_amount)

    @property
    def has_discrepancies(self) -> bool:
        return any(
            (
                self.total_unmatched_app,
                self.total_unmatched_gateway,
                self.total_amount_mismatch,
                self.total_status_mismatch,
                self.total_duplicates,
            )
        )

    def item_counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in ITEM_STATUSES}
        for item in self.items:
            counts[item.status] += 1
        return counts

    def summary(self) -> Dict[str, Any]:
        return {
            "total_matched": self.total_matched,
            "total_unmatched_app": self.total_unmatched_app,
            "total_unmatched_gateway": self.total_unmatched_gateway,
            "total_amount_mismatch": self.total_amount_mismatch,
            "total_status_mismatch": self.total_status_mismatch,
            "total_duplicates": self.total_duplicates,
            "total_app_amount": str(self.total_app_amount),
            "total_gateway_amount": str(self.total_gateway_amount),
            "total_discrepancy": str(self.total_discrepancy),
        }


def amounts_match(
    amount1: Decimal, amount2: Decimal, tolerances: MatchingTolerances
) -> bool:
    """
    Check whether two amounts agree within tolerance.

    The absolute tolerance is tried first; otherwise the difference is taken
    relative to the first positive amount.
    """
    amount1 = Decimal(str(amount1))
    amount2 = Decimal(str(amount2))
    diff = abs(amount1 - amount2)

    if diff <= Decimal(str(tolerances.amount_absolute)):
        return True

    percentage = Decimal(str(tolerances.amount_percentage))
    if amount1 > 0:
        return diff / amount1 <= percentage
    if amount2 > 0:
        return diff / amount2 <= percentage
    return diff == 0


def dates_match(
    date1: Optional[datetime], date2: Optional[datetime], tolerances: MatchingTolerances
) -> bool:
    """Dates agree when either is unknown or they are within ``date_days`` whole days."""
    if date1 is None or date2 is None:
        return True
    return abs(date1 - date2).days <= tolerances.date_days


def levenshtein(s1: str, s2: str) -> int:
    """Edit distance (insert/delete/substitute, unit cost)."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (c1 != c2),
                )
            )
        previous = current
    return previous[-1]


def reference_similarity(ref1: Optional[str], ref2: Optional[str]) -> int:
    """
    Similarity score 0-100 between two references.

    Comparison is case-insensitive and ignores surrounding whitespace.
    """
    s1 = (ref1 or "").strip().lower()
    s2 = (ref2 or "").strip().lower()
    if s1 == s2:
        return 100
    max_len = max(len(s1), len(s2))
    score = int((max_len - levenshtein(s1, s2)) / max_len * 100)
    return min(100, max(0, score))


def normalize_status(status: Optional[str]) -> Optional[str]:
    """Lower-case a status and fold gateway spellings onto one word (``paid`` -> ``completed``)."""
    if status is None or not status.strip():
        return None
    value = status.strip().lower()
    return _STATUS_ALIASES.get(value, value)


class TransactionMatcher:
    """
    Pairs app transactions with gateway transactions.

    Each gateway record is consumed at most once. Repeated transaction ids on
    the same side are reported as duplicates and never matched.
    """

    def __init__(self, tolerances: Optional[MatchingTolerances] = None):
        self.tolerances = tolerances or MatchingTolerances()

    def match(
        self,
        app_transactions: Sequence[TransactionRecord],
        gateway_transactions: Sequence[TransactionRecord],
    ) -> MatchResult:
        result = MatchResult()
        result.total_app_amount = sum((t.amount for t in app_transactions), Decimal("0"))
        result.total_gateway_amount = sum(
            (t.amount for t in gateway_transactions), Decimal("0")
        )

        app_records, app_duplicates = self._split_duplicates(app_transactions)
        gateway_records, gateway_duplicates = self._split_duplicates(gateway_transactions)

        by_transaction_id: Dict[str, int] = {}
        by_reference: Dict[str, List[int]] = {}
        for index, record in enumerate(gateway_records):
            if record.transaction_id is not None:
                by_transaction_id[record.transaction_id] = index
            if record.reference is not None:
                by_reference.setdefault(record.reference, []).append(index)

        consumed: set[int] = set()

        for app in app_records:
            index, method, confidence = self._find_counterpart(
                app, gateway_records, by_transaction_id, by_reference, consumed
            )

            if index is None:
                result.items.append(
                    MatchedItem(
                        source="app",
                        status="unmatched_app",
                        record=app,
                        discrepancy_amount=app.amount,
                    )
                )
                result.total_unmatched_app += 1
                continue

            consumed.add(index)
            gateway = gateway_records[index]
            status = self._pair_status(app, gateway, method)
            if status == "matched":
                result.total_matched += 1
            elif status == "amount_mismatch":
                result.total_amount_mismatch += 1
            else:
                result.total_status_mismatch += 1

            difference = app.amount - gateway.amount
            result.items.append(
                MatchedItem(
                    source="app",
                    status=status,
                    record=app,
                    linked_transaction_id=gateway.transaction_id or gateway.reference,
                    discrepancy_amount=difference,
                    match_confidence=confidence,
                    match_method=method,
                )
            )
            result.items.append(
                MatchedItem(
                    source="gateway",
                    status=status,
                    record=gateway,
                    linked_transaction_id=app.transaction_id or app.reference,
                    discrepancy_amount=difference,
                    match_confidence=confidence,
                    match_method=method,
                )
            )

        for index, gateway in enumerate(gateway_records):
            if index in consumed:
                continue
            result.items.append(
                MatchedItem(
                    source="gateway",
                    status="unmatched_gateway",
                    record=gateway,
                    discrepancy_amount=gateway.amount,
                )
            )
            result.total_unmatched_gateway += 1

        for source, duplicates in (("app", app_duplicates), ("gateway", gateway_duplicates)):
            for record in duplicates:
                result.items.append(
                    MatchedItem(
                        source=source,
                        status="duplicate",
                        record=record,
                        linked_transaction_id=record.transaction_id,
                        discrepancy_amount=record.amount,
                    )
                )
                result.total_duplicates += 1

        return result

    @staticmethod
    def _split_duplicates(
        records: Sequence[TransactionRecord],
    ) -> tuple[List[TransactionRecord], List[TransactionRecord]]:
        seen: set[str] = set()
        unique: List[TransactionRecord] = []
        duplicates: List[TransactionRecord] = []
        for record in records:
            if record.transaction_id is not None:
                if record.transaction_id in seen:
                    duplicates.append(record)
                    continue
                seen.add(record.transaction_id)
            unique.append(record)
        return unique, duplicates

    def _find_counterpart(
        self,
        app: TransactionRecord,
        gateway_records: List[TransactionRecord],
        by_transaction_id: Dict[str, int],
        by_reference: Dict[str, List[int]],
        consumed: set[int],
    ) -> tuple[Optional[int], Optional[str], Optional[int]]:
        """Return (gateway index, match method, confidence) or (None, None, None)."""
        tol = self.tolerances

        if app.transaction_id is not None:
            index = by_transaction_id.get(app.transaction_id)
            if index is not None and index not in consumed:
                # Same transaction id is authoritative even when amounts disagree
                return index, "transaction_id", 100

        if app.reference is not None:
            for index in by_reference.get(app.reference, []):
                if index in consumed:
                    continue
                if amounts_match(app.amount, gateway_records[index].amount, tol):
                    return index, "reference", 100

            best_index: Optional[int] = None
            best_score = -1
            for index, gateway in enumerate(gateway_records):
                if index in consumed or gateway.reference is None:
                    continue
                score = reference_similarity(app.reference, gateway.reference)
                if score < tol.fuzzy_threshold or score <= best_score:
                    continue
                if amounts_match(app.amount, gateway.amount, tol) and dates_match(
                    app.date, gateway.date, tol
                ):
                    best_index, best_score = index, score
            if best_index is not None:
                return best_index, "fuzzy_reference", best_score

            return None, None, None

        for index, gateway in enumerate(gateway_records):
            if index in consumed or gateway.reference is not None:
                continue
            if amounts_match(app.amount, gateway.amount, tol) and dates_match(
                app.date, gateway.date, tol
            ):
                return index, "amount_date", None

        return None, None, None

    def _pair_status(
        self, app: TransactionRecord, gateway: TransactionRecord, method: Optional[str]
    ) -> str:
        if method == "transaction_id" and not amounts_match(
            app.amount, gateway.amount, self.tolerances
        ):
            return "amount_mismatch"
        app_status = normalize_status(app.status)
        gateway_status = normalize_status(gateway.status)
        if app_status and gateway_status and app_status != gateway_status:
            return "status_mismatch"
        return "matched"
