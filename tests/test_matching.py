"""
Unit tests for transaction matching.
"""
from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from lab_billing.core.matching import (
    MatchingTolerances,
    TransactionMatcher,
    TransactionRecord,
    amounts_match,
    dates_match,
    levenshtein,
    normalize_status,
    reference_similarity,
)


def record(**kwargs: object) -> TransactionRecord:
    kwargs.setdefault("date", datetime(2024, 5, 1, 9, 30))
    return TransactionRecord(**kwargs)


class TestMatchingHelpers:
    """Tolerance and similarity helpers."""

    @pytest.mark.unit
    def test_amounts_within_percentage(self) -> None:
        """1% of 1000 allows a difference of 10."""
        tolerances = MatchingTolerances(amount_percentage=0.01)
        assert amounts_match(Decimal("1000"), Decimal("1009"), tolerances)
        assert not amounts_match(Decimal("1000"), Decimal("1011"), tolerances)

    @pytest.mark.unit
    def test_amounts_within_absolute(self) -> None:
        """The absolute tolerance applies regardless of size."""
        tolerances = MatchingTolerances(amount_percentage=0.0, amount_absolute=5.0)
        assert amounts_match(Decimal("10"), Decimal("15"), tolerances)
        assert not amounts_match(Decimal("10"), Decimal("15.01"), tolerances)

    @pytest.mark.unit
    def test_zero_amounts(self) -> None:
        """Two zero amounts agree; zero against a positive amount uses the positive base."""
        tolerances = MatchingTolerances(amount_percentage=0.0)
        assert amounts_match(Decimal("0"), Decimal("0"), tolerances)
        assert not amounts_match(Decimal("0"), Decimal("1"), tolerances)

    @pytest.mark.unit
    def test_dates(self) -> None:
        """Unknown dates never block a match; known ones must be within the window."""
        tolerances = MatchingTolerances(date_days=3)
        base = datetime(2024, 5, 1)
        assert dates_match(None, base, tolerances)
        assert dates_match(base, datetime(2024, 5, 4), tolerances)
        assert not dates_match(base, datetime(2024, 5, 5), tolerances)

    @pytest.mark.unit
    def test_levenshtein(self) -> None:
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    @pytest.mark.unit
    def test_reference_similarity(self) -> None:
        """Case and surrounding whitespace are ignored."""
        assert reference_similarity(" DON-001 ", "don-001") == 100
        assert reference_similarity("DON-2024-001", "DON-2024-01") == 91
        assert reference_similarity("ABC", "XYZ") == 0

    @pytest.mark.unit
    def test_normalize_status(self) -> None:
        assert normalize_status("PAID") == "completed"
        assert normalize_status("Completed") == "completed"
        assert normalize_status("canceled") == "cancelled"
        assert normalize_status("  ") is None
        assert normalize_status("on_hold") == "on_hold"

    @pytest.mark.unit
    def test_tolerances_are_clamped(self) -> None:
        tolerances = MatchingTolerances(
            amount_percentage=-1, amount_absolute=-5, date_days=-2, fuzzy_threshold=150
        )
        assert tolerances.as_dict() == {
            "amount_percentage": 0.0,
            "amount_absolute": 0.0,
            "date_days": 0,
            "fuzzy_threshold": 100,
        }


class TestTransactionRecord:
    """Input parsing."""

    @pytest.mark.unit
    def test_parses_strings(self) -> None:
        """Amounts keep decimal precision; ISO dates with Z become naive UTC."""
        parsed = TransactionRecord.model_validate(
            {
                "transaction_id": " TXN-1 ",
                "reference": "",
                "amount": "1500.50",
                "transaction_date": "2024-05-01T12:00:00Z",
            }
        )
        assert parsed.transaction_id == "TXN-1"
        assert parsed.reference is None
        assert parsed.amount == Decimal("1500.50")
        assert parsed.date == datetime(2024, 5, 1, 12, 0)

    @pytest.mark.unit
    def test_unparseable_date_is_unknown(self) -> None:
        parsed = TransactionRecord.model_validate({"amount": 10, "date": "yesterday"})
        assert parsed.date is None

    @pytest.mark.unit
    def test_invalid_amount_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TransactionRecord.model_validate({"amount": "ten shillings"})


class TestTransactionMatcher:
    """Pairing rules."""

    @pytest.mark.unit
    def test_exact_transaction_id_match(self) -> None:
        """Same id and amount gives a matched pair with full confidence."""
        result = TransactionMatcher().match(
            [record(transaction_id="TXN-1", amount="1500")],
            [record(transaction_id="TXN-1", amount="1500")],
        )

        assert result.total_matched == 1
        assert [item.status for item in result.items] == ["matched", "matched"]
        app_item, gateway_item = result.items
        assert app_item.source == "app"
        assert gateway_item.source == "gateway"
        assert app_item.match_method == "transaction_id"
        assert app_item.match_confidence == 100
        assert app_item.linked_transaction_id == "TXN-1"
        assert app_item.discrepancy_amount == Decimal("0")
        assert not result.has_discrepancies

    @pytest.mark.unit
    def test_transaction_id_amount_mismatch(self) -> None:
        """A shared id outside amount tolerance is still paired, as a mismatch."""
        result = TransactionMatcher().match(
            [record(transaction_id="TXN-1", amount="1500")],
            [record(transaction_id="TXN-1", amount="1450")],
        )

        assert result.total_amount_mismatch == 1
        assert result.total_matched == 0
        assert {item.status for item in result.items} == {"amount_mismatch"}
        assert result.items[0].discrepancy_amount == Decimal("50")
        assert result.total_discrepancy == Decimal("50")

    @pytest.mark.unit
    def test_status_mismatch(self) -> None:
        """Paired records whose normalised statuses disagree."""
        result = TransactionMatcher().match(
            [record(transaction_id="TXN-1", amount="100", status="paid")],
            [record(transaction_id="TXN-1", amount="100", status="FAILED")],
        )
        assert result.total_status_mismatch == 1
        assert result.item_counts()["status_mismatch"] == 2

    @pytest.mark.unit
    def test_equivalent_statuses_match(self) -> None:
        result = TransactionMatcher().match(
            [record(transaction_id="TXN-1", amount="100", status="paid")],
            [record(transaction_id="TXN-1", amount="100", status="COMPLETED")],
        )
        assert result.total_matched == 1

    @pytest.mark.unit
    def test_reference_match(self) -> None:
        """Without ids, an exact reference with a close amount matches."""
        result = TransactionMatcher().match(
            [record(reference="DON-001", amount="1000")],
            [record(transaction_id="PSP-9", reference="DON-001", amount="1005")],
        )
        assert result.total_matched == 1
        assert result.items[0].match_method == "reference"
        assert result.items[0].linked_transaction_id == "PSP-9"
        assert result.items[1].linked_transaction_id == "DON-001"

    @pytest.mark.unit
    def test_fuzzy_reference_match(self) -> None:
        """Similar references match with the similarity as confidence."""
        result = TransactionMatcher().match(
            [record(reference="DON-2024-001", amount="1000")],
            [record(transaction_id="PSP-9", reference="DON-2024-01", amount="1000")],
        )
        assert result.total_matched == 1
        assert result.items[0].match_method == "fuzzy_reference"
        assert result.items[0].match_confidence == 91

    @pytest.mark.unit
    def test_fuzzy_reference_below_threshold(self) -> None:
        result = TransactionMatcher(MatchingTolerances(fuzzy_threshold=95)).match(
            [record(reference="DON-2024-001", amount="1000")],
            [record(transaction_id="PSP-9", reference="DON-2024-01", amount="1000")],
        )
        assert result.total_unmatched_app == 1
        assert result.total_unmatched_gateway == 1

    @pytest.mark.unit
    def test_fuzzy_picks_best_score(self) -> None:
        """The closest reference wins even when a weaker candidate comes first."""
        result = TransactionMatcher(MatchingTolerances(fuzzy_threshold=70)).match(
            [record(reference="DON-2024-0001", amount="500")],
            [
                record(transaction_id="G-1", reference="DON-2024-0900", amount="500"),
                record(transaction_id="G-2", reference="DON-2024-001", amount="500"),
            ],
        )
        assert result.items[0].linked_transaction_id == "G-2"
        assert result.total_unmatched_gateway == 1

    @pytest.mark.unit
    def test_amount_and_date_fallback(self) -> None:
        """Records without references pair on amount and date, with no confidence."""
        result = TransactionMatcher().match(
            [record(amount="250", date=datetime(2024, 5, 1))],
            [record(amount="250", date=datetime(2024, 5, 2))],
        )
        assert result.total_matched == 1
        assert result.items[0].match_method == "amount_date"
        assert result.items[0].match_confidence is None

    @pytest.mark.unit
    def test_gateway_record_consumed_once(self) -> None:
        """A gateway record pairs with at most one app record."""
        result = TransactionMatcher().match(
            [record(reference="R-1", amount="100"), record(reference="R-1", amount="100")],
            [record(reference="R-1", amount="100")],
        )
        assert result.total_matched == 1
        assert result.total_unmatched_app == 1

    @pytest.mark.unit
    def test_duplicates_reported_not_matched(self) -> None:
        """Repeated ids on one side become duplicate items after the first occurrence."""
        result = TransactionMatcher().match(
            [
                record(transaction_id="TXN-1", amount="100"),
                record(transaction_id="TXN-1", amount="100"),
            ],
            [record(transaction_id="TXN-1", amount="100")],
        )
        assert result.total_matched == 1
        assert result.total_duplicates == 1
        duplicate = [item for item in result.items if item.status == "duplicate"][0]
        assert duplicate.source == "app"
        assert duplicate.linked_transaction_id == "TXN-1"

    @pytest.mark.unit
    def test_unmatched_both_sides(self) -> None:
        """Leftovers on each side carry their full amount as the discrepancy."""
        result = TransactionMatcher().match(
            [record(transaction_id="A-1", reference="X-1", amount="300")],
            [record(transaction_id="G-1", reference="Y-9", amount="120")],
        )

        assert result.total_unmatched_app == 1
        assert result.total_unmatched_gateway == 1
        unmatched_app = [i for i in result.items if i.status == "unmatched_app"][0]
        unmatched_gateway = [i for i in result.items if i.status == "unmatched_gateway"][0]
        assert unmatched_app.discrepancy_amount == Decimal("300")
        assert unmatched_gateway.discrepancy_amount == Decimal("120")
        assert result.total_app_amount == Decimal("300")
        assert result.total_gateway_amount == Decimal("120")
        assert result.total_discrepancy == Decimal("180")
        assert result.summary()["total_discrepancy"] == "180"

    @pytest.mark.unit
    def test_empty_inputs(self) -> None:
        result = TransactionMatcher().match([], [])
        assert result.items == []
        assert not result.has_discrepancies
        assert result.total_discrepancy == Decimal("0")
