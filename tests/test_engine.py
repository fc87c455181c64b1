"""
test_engine.py
---------------
Test suite for the ledger pattern recognition engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config
    - Stats, Calendar & Text Normalization
    - Validation
    - Recurrence Detector
    - Anomaly Detector
    - Smart Categorizer
    - Full Pipeline (integration)
"""

import sys
import os
import json
import pytest
import numpy as np
import pandas as pd
from datetime import datetime, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import (
    get_categorization_config,
    get_recurrence_detection_config,
    load_config,
    reset_config,
)
from core import calendar_utils
from core.errors import ConfigurationError, InvalidTransactionError
from core.models import CategorySuggestion, RecurringPattern, Transaction
from core.recurrence_detector import RecurrenceDetector
from core.stats import calculate_mean, calculate_median, calculate_percentile, calculate_std_dev, safe_ratio
from core.text_normalizer import (
    descriptions_are_similar,
    extract_merchant_key,
    normalize_description,
    tokenize_description,
)
from core.validation import coerce_transactions, to_transaction
from categorization.smart_categorizer import SmartCategorizer
from monitoring.anomaly_detector import AnomalyDetector
from pipeline import PatternRecognitionPipeline


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_txn(
    txn_id: str = "tx1",
    description: str = "Coffee House",
    amount: float = 4.50,
    date: datetime = datetime(2024, 3, 10, 8, 0),
    category: str = "Dining",
    type: str = "expense",
    status: str = "paid",
) -> Transaction:
    """Helper: builds a single ledger transaction."""
    return Transaction(
        id=txn_id,
        description=description,
        amount=amount,
        date=date,
        category=category,
        type=type,
        status=status,
    )


# Netflix charged 30±2 days apart, six times.
NETFLIX_DATES = [
    datetime(2024, 1, 15),
    datetime(2024, 2, 14),
    datetime(2024, 3, 16),
    datetime(2024, 4, 14),
    datetime(2024, 5, 16),
    datetime(2024, 6, 13),
]


def _make_netflix_txns(amount: float = 15.0) -> list:
    """Helper: six monthly Netflix charges, last one on 2024-06-13."""
    return [
        _make_txn(f"nf{i}", "NETFLIX.COM", amount, d, "Subscriptions")
        for i, d in enumerate(NETFLIX_DATES)
    ]


def _make_series(
    description: str,
    amounts: list,
    category: str,
    start: datetime = datetime(2024, 3, 1, 10, 0),
    prefix: str = "s",
) -> list:
    """Helper: one transaction per day starting at `start`."""
    return [
        _make_txn(f"{prefix}{i}", description, amt, start + timedelta(days=i), category)
        for i, amt in enumerate(amounts)
    ]


def _make_ledger() -> list:
    """Helper: a small mixed ledger. Only Netflix recurs on a known cadence."""
    ledger = _make_netflix_txns()

    uber_offsets = [0, 1, 5, 6, 13, 20, 21, 35, 40, 41]   # average gap ~4.6 days: no band
    ledger += [
        _make_txn(f"ub{i}", "UBER TRIP", 12.0, datetime(2024, 4, 1, 18, 30) + timedelta(days=d), "Transportation")
        for i, d in enumerate(uber_offsets)
    ]

    grocery_offsets = [0, 2, 22, 25, 40]                    # average gap 10 days: no band
    ledger += [
        _make_txn(f"gr{i}", "WHOLE FOODS MARKET", 80.0, datetime(2024, 4, 2, 17, 0) + timedelta(days=d), "Groceries")
        for i, d in enumerate(grocery_offsets)
    ]

    ledger.append(_make_txn("inc1", "SALARY ACME CORP", 3000.0, datetime(2024, 6, 1), "Income", type="income"))
    return ledger


# =============================================================================
# CONFIG TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for section in ["text_normalization", "anomaly_detection", "recurrence_detection",
                        "categorization", "validation", "storage"]:
            assert section in config

    def test_recurrence_constants(self):
        cfg = get_recurrence_detection_config()
        assert cfg["min_occurrences"] == 2
        assert cfg["interval_tolerance"] == pytest.approx(0.20)
        assert cfg["amount_tolerance"] == pytest.approx(0.15)
        assert cfg["confidence_threshold"] == pytest.approx(0.70)

    def test_missing_config_file_raises(self):
        with pytest.raises(ConfigurationError):
            load_config("/nonexistent/config.yaml")


# =============================================================================
# STATS, CALENDAR & TEXT NORMALIZATION TESTS
# =============================================================================

class TestStats:
    def test_empty_inputs_return_zero(self):
        assert calculate_mean([]) == 0
        assert calculate_std_dev([]) == 0
        assert calculate_median([]) == 0
        assert calculate_percentile([], 0.95) == 0

    def test_population_std_dev(self):
        assert calculate_std_dev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)

    def test_nearest_rank_percentile(self):
        values = list(range(1, 11))
        assert calculate_percentile(values, 0.95) == 10
        assert calculate_percentile([5.0], 0.95) == 5.0

    def test_median_even_count(self):
        assert calculate_median([1, 2, 3, 4]) == pytest.approx(2.5)

    def test_safe_ratio_zero_denominator(self):
        assert safe_ratio(5, 0) == 0.0
        assert safe_ratio(6, 3) == 2.0


class TestCalendar:
    def test_day_of_week_sunday_is_zero(self):
        assert calendar_utils.day_of_week(datetime(2024, 1, 7)) == 0   # Sunday
        assert calendar_utils.day_of_week(datetime(2024, 1, 13)) == 6  # Saturday

    def test_time_of_day_buckets(self):
        assert calendar_utils.time_of_day_bucket(6) == "morning"
        assert calendar_utils.time_of_day_bucket(12) == "afternoon"
        assert calendar_utils.time_of_day_bucket(23) == "evening"
        assert calendar_utils.time_of_day_bucket(3) == "night"

    def test_month_step_clamps_and_recovers(self):
        anchor = datetime(2024, 1, 31)
        assert calendar_utils.step(anchor, "monthly", 1) == datetime(2024, 2, 29)
        assert calendar_utils.step(anchor, "monthly", 2) == datetime(2024, 3, 31)
        assert calendar_utils.step(anchor, "quarterly", 1) == datetime(2024, 4, 30)

    def test_subtract_months_clamps(self):
        assert calendar_utils.subtract_months(datetime(2024, 3, 31), 1) == datetime(2024, 2, 29)
        assert calendar_utils.subtract_months(datetime(2024, 3, 15, 9), 6) == datetime(2023, 9, 15, 9)

    def test_annual_step_from_leap_day(self):
        assert calendar_utils.step(datetime(2024, 2, 29), "annual", 1) == datetime(2025, 2, 28)

    def test_unknown_step_type_raises(self):
        with pytest.raises(ValueError):
            calendar_utils.step(datetime(2024, 1, 1), "fortnightly", 1)

    def test_whole_units_truncate(self):
        a = datetime(2024, 3, 1, 8, 0)
        assert calendar_utils.whole_hours_between(a, a + timedelta(hours=10, minutes=59)) == 10
        assert calendar_utils.whole_days_between(a, a + timedelta(days=2, hours=23)) == 2
        assert calendar_utils.whole_hours_between(a + timedelta(hours=5), a) == -5


class TestTextNormalizer:
    def test_merchant_key_strips_prefix_ids_and_dates(self):
        assert extract_merchant_key("Payment to STARBUCKS 4521 12/01/24") == "starbucks"
        assert extract_merchant_key("STARBUCKS") == "starbucks"

    def test_merchant_key_strips_suffix_and_truncates(self):
        assert extract_merchant_key("Purchase at Shell Gas Station Downtown Card") == "shell gas station"
        assert extract_merchant_key("AMAZON MARKETPLACE DEBIT") == "amazon marketplace"

    def test_merchant_key_is_deterministic(self):
        desc = "from At Home Depot #123456"
        assert extract_merchant_key(desc) == extract_merchant_key(desc)

    def test_tokenize_drops_short_and_stop_words(self):
        assert tokenize_description("UBER *TRIP HELP.UBER.COM") == ["uber", "trip", "help", "uber", "com"]
        assert tokenize_description("The card payment for a gym") == ["gym"]

    def test_normalize_description_removes_ids_and_dates(self):
        assert normalize_description("NETFLIX.COM 123456 01/02/2024") == "netflixcom"

    def test_similarity_rules(self):
        assert descriptions_are_similar("netflix", "netflix", 0.7)
        assert descriptions_are_similar("spotify", "spotify premium", 0.7)
        assert not descriptions_are_similar("", "spotify", 0.7)
        assert not descriptions_are_similar("amazon prime video", "amazon music", 0.7)
        assert descriptions_are_similar("amazon prime video", "amazon music", 0.5)


# =============================================================================
# VALIDATION TESTS
# =============================================================================

class TestValidation:
    def test_invalid_records_skipped_by_default(self):
        records = [
            {"id": "a", "description": "Coffee", "amount": 4.5, "date": "2024-03-01", "category": "Dining"},
            {"id": "b", "description": "Broken", "amount": -3, "date": "2024-03-01", "category": "Dining"},
            {"id": "c", "description": "Broken", "amount": 3, "date": "not a date", "category": "Dining"},
        ]
        txns = coerce_transactions(records)
        assert [t.id for t in txns] == ["a"]

    def test_fail_fast_when_skipping_disabled(self):
        records = [{"id": "b", "description": "Broken", "amount": -3, "date": "2024-03-01"}]
        with pytest.raises(InvalidTransactionError):
            coerce_transactions(records, skip_invalid=False)

    def test_non_finite_and_unknown_type_rejected(self):
        with pytest.raises(InvalidTransactionError):
            to_transaction({"description": "x", "amount": float("nan"), "date": "2024-03-01"})
        with pytest.raises(InvalidTransactionError):
            to_transaction({"description": "x", "amount": 5, "date": "2024-03-01", "type": "transfer"})

    def test_dataframe_input(self):
        df = pd.DataFrame([
            {"id": "a", "description": "Coffee", "amount": 4.5, "date": "2024-03-01 08:00", "category": "Dining"},
            {"id": "b", "description": "Lunch", "amount": 12.0, "date": "2024-03-01 12:30", "category": "Dining"},
        ])
        txns = coerce_transactions(df)
        assert len(txns) == 2
        assert txns[1].date == datetime(2024, 3, 1, 12, 30)

    def test_host_camel_case_flag(self):
        tx = to_transaction({"id": "a", "description": "Gym", "amount": 30, "date": "2024-03-01",
                             "category": "Health", "isRecurring": True})
        assert tx.is_recurring

    def test_missing_description_rejected(self):
        with pytest.raises(InvalidTransactionError):
            to_transaction({"id": "x", "amount": 5, "date": "2024-03-01", "category": "Dining"})
        with pytest.raises(InvalidTransactionError):
            to_transaction({"id": "x", "description": None, "amount": 5, "date": "2024-03-01"})
        with pytest.raises(InvalidTransactionError):
            to_transaction(_make_txn(description=None))

    def test_dataframe_blank_description_skipped(self):
        df = pd.DataFrame([
            {"id": "a", "description": "Coffee", "amount": 4.5, "date": "2024-03-01", "category": "Dining"},
            {"id": "b", "description": None, "amount": 3.0, "date": "2024-03-01", "category": "Dining"},
        ])
        assert [t.id for t in coerce_transactions(df)] == ["a"]


# =============================================================================
# RECURRENCE DETECTOR TESTS
# =============================================================================

class TestRecurrenceDetector:
    @pytest.mark.parametrize("days,expected", [
        (1, "daily"), (7, "weekly"), (14, "biweekly"), (30, "monthly"),
        (25, "monthly"), (35, "monthly"), (90, "quarterly"), (365, "annual"),
        (4, None), (50, None),
    ])
    def test_interval_classification(self, days, expected):
        assert RecurrenceDetector().classify_interval(days) == expected

    def test_netflix_monthly_pattern(self):
        patterns = RecurrenceDetector().detect_recurring_patterns(_make_netflix_txns())
        assert len(patterns) == 1
        p = patterns[0]
        assert p.type == "monthly"
        assert p.interval == 30
        assert p.expected_amount == pytest.approx(15.0)
        assert p.amount_variance == pytest.approx(0.0)
        # 0.4 * 1.0 + 0.3 * 1.0 + 0.3 * 6/12
        assert p.confidence == pytest.approx(0.85)
        assert p.next_expected_date == datetime(2024, 7, 13)
        assert p.description == "netflixcom"

    def test_netflix_predictions_within_window(self):
        detector = RecurrenceDetector()
        patterns = detector.detect_recurring_patterns(_make_netflix_txns())
        predictions = detector.predict_upcoming_transactions(patterns, 30, today=datetime(2024, 7, 1))
        assert 0 <= len(predictions) <= 2
        assert [p.date for p in predictions] == [datetime(2024, 7, 13)]
        pred = predictions[0]
        assert pred.amount == pytest.approx(15.0)
        assert pred.description == "Monthly recurring payment"
        assert pred.category == "Subscriptions"
        assert pred.based_on == "pattern_monthly_30"

    def test_detection_is_deterministic(self):
        detector = RecurrenceDetector()
        txns = _make_netflix_txns()
        assert detector.detect_recurring_patterns(txns) == detector.detect_recurring_patterns(list(reversed(txns)))

    def test_irregular_and_single_transactions_ignored(self):
        txns = [
            _make_txn(f"c{i}", "Corner Shop", 10.0, datetime(2024, 3, 1) + timedelta(days=4 * i), "Groceries")
            for i in range(5)
        ]
        txns.append(_make_txn("one", "Furniture Outlet", 900.0, datetime(2024, 3, 2), "Home"))
        assert RecurrenceDetector().detect_recurring_patterns(txns) == []

    def test_inconsistent_amounts_lower_confidence(self):
        amounts = [15.0, 40.0, 15.0, 60.0, 15.0, 90.0]
        txns = [
            _make_txn(f"v{i}", "NETFLIX.COM", amt, d, "Subscriptions")
            for i, (amt, d) in enumerate(zip(amounts, NETFLIX_DATES))
        ]
        # 0.4 * 1.0 + 0.3 * 1/6 + 0.3 * 0.5 = 0.60 < 0.70
        assert RecurrenceDetector().detect_recurring_patterns(txns) == []

    def test_monthly_predictions_clamp_to_month_end(self):
        pattern = RecurringPattern(
            type="monthly", interval=30, expected_amount=50.0, amount_variance=0.0,
            next_expected_date=datetime(2024, 1, 31), confidence=0.9,
        )
        predictions = RecurrenceDetector().predict_upcoming_transactions(
            [pattern], days_ahead=70, today=datetime(2024, 1, 31)
        )
        assert [p.date for p in predictions] == [
            datetime(2024, 1, 31), datetime(2024, 2, 29), datetime(2024, 3, 31),
        ]

    def test_annual_prediction_from_leap_day(self):
        pattern = RecurringPattern(
            type="annual", interval=365, expected_amount=120.0, amount_variance=0.0,
            next_expected_date=datetime(2024, 2, 29), confidence=0.8,
        )
        predictions = RecurrenceDetector().predict_upcoming_transactions(
            [pattern], days_ahead=30, today=datetime(2025, 2, 1)
        )
        assert [p.date for p in predictions] == [datetime(2025, 2, 28)]
        assert predictions[0].description == "Annual recurring payment"

    def test_predictions_sorted_across_patterns(self):
        weekly = RecurringPattern(
            type="weekly", interval=7, expected_amount=30.0, amount_variance=0.0,
            next_expected_date=datetime(2024, 7, 3), confidence=0.8,
        )
        monthly = RecurringPattern(
            type="monthly", interval=30, expected_amount=15.0, amount_variance=0.0,
            next_expected_date=datetime(2024, 7, 5), confidence=0.9,
        )
        predictions = RecurrenceDetector().predict_upcoming_transactions(
            [monthly, weekly], days_ahead=14, today=datetime(2024, 7, 1)
        )
        dates = [p.date for p in predictions]
        assert dates == sorted(dates)
        assert dates == [datetime(2024, 7, 3), datetime(2024, 7, 5), datetime(2024, 7, 10)]

    def test_matches_recurring_pattern_tolerances(self):
        detector = RecurrenceDetector()
        patterns = detector.detect_recurring_patterns(_make_netflix_txns())

        near = _make_txn("n", "NETFLIX.COM", 15.5, datetime(2024, 7, 17), "Subscriptions")
        assert detector.matches_recurring_pattern(near, patterns) is patterns[0]

        too_late = _make_txn("n", "NETFLIX.COM", 15.0, datetime(2024, 7, 20), "Subscriptions")
        assert detector.matches_recurring_pattern(too_late, patterns) is None

        too_expensive = _make_txn("n", "NETFLIX.COM", 20.0, datetime(2024, 7, 13), "Subscriptions")
        assert detector.matches_recurring_pattern(too_expensive, patterns) is None

    def test_weekly_pattern_uses_narrow_tolerance(self):
        pattern = RecurringPattern(
            type="weekly", interval=7, expected_amount=30.0, amount_variance=0.0,
            next_expected_date=datetime(2024, 7, 10), confidence=0.8,
        )
        detector = RecurrenceDetector()
        assert detector.matches_recurring_pattern(
            _make_txn(amount=30.0, date=datetime(2024, 7, 13)), [pattern]) is pattern
        assert detector.matches_recurring_pattern(
            _make_txn(amount=30.0, date=datetime(2024, 7, 14)), [pattern]) is None

    def test_update_pattern_returns_new_pattern(self):
        detector = RecurrenceDetector()
        pattern = detector.detect_recurring_patterns(_make_netflix_txns())[0]
        updated = detector.update_pattern(
            pattern, _make_txn("nf6", "NETFLIX.COM", 18.0, datetime(2024, 7, 14), "Subscriptions")
        )

        assert len(pattern.occurrences) == 6
        assert len(updated.occurrences) == 7
        assert updated.next_expected_date == datetime(2024, 8, 13)
        assert updated.expected_amount == pytest.approx(np.mean([15.0] * 6 + [18.0]))
        assert updated.amount_variance == pytest.approx(np.std([15.0] * 6 + [18.0]))
        assert 0.0 < updated.confidence <= 1.0

    def test_description_matches_pattern(self):
        detector = RecurrenceDetector()
        pattern = detector.detect_recurring_patterns(_make_netflix_txns())[0]
        assert detector.description_matches_pattern("Netflix.com", pattern)
        assert not detector.description_matches_pattern("Spotify", pattern)

    def test_pattern_round_trip(self):
        pattern = RecurrenceDetector().detect_recurring_patterns(_make_netflix_txns())[0]
        restored = RecurringPattern.from_dict(json.loads(json.dumps(pattern.to_dict())))
        assert restored == pattern


# =============================================================================
# ANOMALY DETECTOR TESTS
# =============================================================================

class TestAnomalyDetector:
    def _grocery_detector(self) -> AnomalyDetector:
        # Mean 100, population std-dev 20, max 120.
        history = _make_series("Grocery Mart", [80.0, 120.0] * 5, "Groceries")
        detector = AnomalyDetector()
        detector.build_profiles(history, as_of=datetime(2024, 3, 20))
        return detector

    def test_zscore_medium(self):
        detector = self._grocery_detector()
        alerts = detector.detect_anomalies(
            _make_txn("c", "Grocery Mart", 170.0, datetime(2024, 3, 20, 10), "Groceries")
        )
        amount_alerts = [a for a in alerts if a.type == "amount"]
        assert len(amount_alerts) == 1
        assert amount_alerts[0].severity == "medium"
        assert amount_alerts[0].details.deviation == pytest.approx(3.5)

    def test_zscore_high_and_historical_max(self):
        detector = self._grocery_detector()
        alerts = detector.detect_anomalies(
            _make_txn("c", "Grocery Mart", 200.0, datetime(2024, 3, 20, 10), "Groceries")
        )
        amount_alerts = [a for a in alerts if a.type == "amount"]
        assert [a.severity for a in amount_alerts] == ["high", "high"]
        assert amount_alerts[0].details.deviation == pytest.approx(5.0)
        assert amount_alerts[1].details.expected == pytest.approx(120.0)

    def test_zscore_low(self):
        detector = self._grocery_detector()
        alerts = detector.detect_anomalies(
            _make_txn("c", "Grocery Mart", 155.0, datetime(2024, 3, 20, 10), "Groceries")
        )
        assert [(a.type, a.severity) for a in alerts] == [("amount", "low")]
        assert alerts[0].details.deviation == pytest.approx(2.75)

    def test_historical_max_without_spread(self):
        history = _make_series("Pharmacy Plus", [50.0] * 5, "Health")
        detector = AnomalyDetector()
        detector.build_profiles(history, as_of=datetime(2024, 3, 20))
        alerts = detector.detect_anomalies(
            _make_txn("c", "Pharmacy Plus", 80.0, datetime(2024, 3, 20, 10), "Health")
        )
        assert [(a.type, a.severity) for a in alerts] == [("amount", "high")]
        assert alerts[0].message == "Amount exceeds historical maximum for Health"
        assert alerts[0].details.deviation == pytest.approx(1.6)

    def test_unusual_weekday_for_large_amount(self):
        # Eleven Saturday purchases at 10:00.
        history = [
            _make_txn(f"h{i}", "Garden Center", 20.0, datetime(2024, 3, 2, 10) + timedelta(weeks=i), "Garden")
            for i in range(11)
        ]
        detector = AnomalyDetector()
        detector.build_profiles(history, as_of=datetime(2024, 5, 20))

        wednesday = datetime(2024, 3, 13, 10)
        large = detector.detect_anomalies(_make_txn("c", "Garden Center", 100.0, wednesday, "Garden"))
        time_alerts = [(a.severity, a.details.actual) for a in large if a.type == "time"]
        assert time_alerts == [("low", "Wednesday")]

        small = detector.detect_anomalies(_make_txn("c", "Garden Center", 20.0, wednesday, "Garden"))
        assert [a for a in small if a.type == "time"] == []

    def test_typical_amount_no_alerts(self):
        detector = self._grocery_detector()
        assert detector.detect_anomalies(
            _make_txn("c", "Grocery Mart", 100.0, datetime(2024, 3, 20, 10), "Groceries")
        ) == []

    def test_new_merchant_with_large_amount(self):
        detector = self._grocery_detector()
        alerts = detector.detect_anomalies(
            _make_txn("c", "Gourmet Deli", 210.0, datetime(2024, 3, 20, 10), "Groceries")
        )
        merchant_alerts = [a for a in alerts if a.type == "merchant"]
        assert len(merchant_alerts) == 1
        assert merchant_alerts[0].severity == "medium"
        assert merchant_alerts[0].details.actual == "gourmet deli"

    def test_income_short_circuits(self):
        detector = self._grocery_detector()
        income = _make_txn("i", "Grocery Mart", 5000.0, datetime(2024, 3, 20), "Groceries", type="income")
        assert detector.detect_anomalies(income) == []

    def test_duplicate_within_window(self):
        detector = AnomalyDetector()
        detector.build_profiles([_make_txn()], as_of=datetime(2024, 3, 11))
        dup = _make_txn("new", date=datetime(2024, 3, 10, 18, 0))          # 10 hours later
        alerts = detector.detect_anomalies(dup)
        assert [(a.type, a.severity) for a in alerts] == [("duplicate", "high")]

    def test_duplicate_outside_window(self):
        detector = AnomalyDetector()
        detector.build_profiles([_make_txn()], as_of=datetime(2024, 3, 11))
        later = _make_txn("new", date=datetime(2024, 3, 11, 14, 0))        # 30 hours later
        assert [a for a in detector.detect_anomalies(later) if a.type == "duplicate"] == []

    def test_stored_transaction_is_not_its_own_duplicate(self):
        detector = AnomalyDetector()
        original = _make_txn()
        detector.build_profiles([original], as_of=datetime(2024, 3, 11))
        assert detector.detect_anomalies(original) == []

    def test_recent_cache_anchored_on_as_of(self):
        detector = AnomalyDetector()
        detector.build_profiles([_make_txn()], as_of=datetime(2024, 3, 30))
        assert detector.recent_transactions == []

    def test_suspicious_merchant_without_profile(self):
        detector = AnomalyDetector()
        alerts = detector.detect_anomalies(
            _make_txn("c", "Lucky Casino", 50.0, datetime(2024, 3, 9, 22), "Entertainment")
        )
        assert [(a.type, a.severity) for a in alerts] == [("merchant", "high")]

    def test_crypto_allowed_for_investments(self):
        detector = AnomalyDetector()
        invest = _make_txn("c", "Binance Deposit", 500.0, datetime(2024, 3, 9), "Investments")
        shop = _make_txn("c", "Binance Deposit", 500.0, datetime(2024, 3, 9), "Shopping")
        assert detector.detect_anomalies(invest) == []
        assert [a.type for a in detector.detect_anomalies(shop)] == ["merchant"]

    def test_unusual_hour(self):
        history = _make_series("Bakery Bread", [5.0] * 11, "Bakery", start=datetime(2024, 3, 1, 9, 0))
        detector = AnomalyDetector()
        detector.build_profiles(history, as_of=datetime(2024, 4, 1))
        alerts = detector.detect_anomalies(
            _make_txn("c", "Bakery Bread", 5.0, datetime(2024, 3, 12, 3, 0), "Bakery")
        )
        assert [(a.type, a.severity, a.details.actual) for a in alerts] == [("time", "low", "3:00")]

    def test_velocity_alerts(self):
        history = _make_series("Lunch Spot", [20.0] * 10, "Dining", start=datetime(2024, 3, 1, 12, 0))
        detector = AnomalyDetector()
        detector.build_profiles(history, as_of=datetime(2024, 3, 15))
        assert detector.velocity_profile.max_hourly_transactions == 1
        assert detector.velocity_profile.max_daily_amount == pytest.approx(20.0)

        burst = [
            _make_txn(f"b{i}", "Lunch Spot", 20.0, datetime(2024, 3, 15, 11, minute), "Dining")
            for i, minute in enumerate([20, 40, 50])
        ]
        candidate = _make_txn("c", "Lunch Spot", 20.0, datetime(2024, 3, 15, 12, 0), "Dining")
        alerts = detector.detect_anomalies(candidate, all_transactions=history + burst)
        frequency = [(a.severity, a.message) for a in alerts if a.type == "frequency"]
        assert frequency == [
            ("high", "Unusually high transaction frequency"),
            ("high", "Daily spending limit exceeded"),
            ("medium", "Multiple Dining transactions in short time"),
        ]

    def test_velocity_window_excludes_boundary(self):
        history = _make_series("Lunch Spot", [20.0] * 10, "Dining", start=datetime(2024, 3, 1, 12, 0))
        detector = AnomalyDetector()
        detector.build_profiles(history, as_of=datetime(2024, 3, 15))
        edge = _make_txn("e", "Lunch Spot", 20.0, datetime(2024, 3, 15, 11, 0), "Dining")
        candidate = _make_txn("c", "Lunch Spot", 20.0, datetime(2024, 3, 15, 12, 0), "Dining")
        alerts = detector.detect_anomalies(candidate, all_transactions=history + [edge])
        assert [a for a in alerts if a.type == "frequency"] == []

    def test_velocity_defaults_without_expenses(self):
        detector = AnomalyDetector()
        detector.build_profiles([_make_txn(type="income")], as_of=datetime(2024, 3, 11))
        stats = detector.get_statistics()
        assert stats["velocity_limits"] == {
            "max_daily_transactions": 20,
            "max_hourly_transactions": 5,
            "max_daily_amount": 1000.0,
            "typical_daily_transactions": 5.0,
            "typical_daily_amount": 200.0,
        }
        assert stats["profiles_built"] == 0

    def test_repeated_monthly_bill(self):
        rent = _make_txn("r1", "City Apartments Rent", 1200.0, datetime(2024, 3, 1), "Housing")
        detector = AnomalyDetector()
        detector.build_profiles([rent], as_of=datetime(2024, 3, 5))

        again = _make_txn("r2", "City Apartments Rent", 1200.0, datetime(2024, 3, 4), "Housing")
        alerts = detector.detect_anomalies(again)
        assert [(a.type, a.severity) for a in alerts] == [("frequency", "medium")]

        next_month = _make_txn("r3", "City Apartments Rent", 1200.0, datetime(2024, 4, 1), "Housing")
        assert detector.detect_anomalies(next_month) == []

    def test_weekday_entertainment(self):
        detector = AnomalyDetector()
        wednesday = _make_txn("e", "Cinema City", 150.0, datetime(2024, 3, 6, 20), "Entertainment")
        saturday = _make_txn("e", "Cinema City", 150.0, datetime(2024, 3, 9, 20), "Entertainment")
        assert [(a.type, a.severity) for a in detector.detect_anomalies(wednesday)] == [("amount", "low")]
        assert detector.detect_anomalies(saturday) == []

    def test_detection_is_deterministic(self):
        detector = self._grocery_detector()
        candidate = _make_txn("c", "Grocery Mart", 200.0, datetime(2024, 3, 20, 10), "Groceries")
        assert detector.detect_anomalies(candidate) == detector.detect_anomalies(candidate)

    def test_negative_candidate_raises(self):
        with pytest.raises(InvalidTransactionError):
            AnomalyDetector().detect_anomalies(_make_txn(amount=-1.0))


# =============================================================================
# SMART CATEGORIZER TESTS
# =============================================================================

class TestSmartCategorizer:
    def _uber_categorizer(self) -> SmartCategorizer:
        categorizer = SmartCategorizer()
        for txn in _make_series("UBER TRIP", [12.0] * 10, "Transportation"):
            categorizer.learn_from_transaction(txn, now=datetime(2024, 3, 20))
        return categorizer

    def test_uber_suggestion(self):
        suggestion = self._uber_categorizer().suggest_category("UBER TRIP", 12)
        assert suggestion is not None
        assert suggestion.category == "Transportation"
        assert suggestion.confidence > 0.65
        assert suggestion.confidence == pytest.approx(0.9)
        assert "Recognized merchant pattern" in suggestion.reasons
        assert "Known merchant: uber trip" in suggestion.reasons
        assert suggestion.alternative_suggestions is None
        assert suggestion.confidence_level == "high"

    def test_confidence_bands_read_from_config(self):
        get_categorization_config()["high_confidence_threshold"] = 0.95
        assert CategorySuggestion("Transportation", 0.9).confidence_level == "medium"
        assert CategorySuggestion("Transportation", 0.7).confidence_level == "low"

    def test_alternatives_ranked(self):
        categorizer = self._uber_categorizer()
        for txn in _make_series("UBER EATS", [12.0] * 10, "Dining", prefix="d"):
            categorizer.learn_from_transaction(txn, now=datetime(2024, 3, 20))
        suggestion = categorizer.suggest_category("UBER EATS", 12)
        assert suggestion.category == "Dining"
        alternatives = suggestion.alternative_suggestions or []
        assert all(a.confidence <= suggestion.confidence for a in alternatives)

    def test_unknown_description_returns_none(self):
        categorizer = self._uber_categorizer()
        assert categorizer.suggest_category("Hardware Store", 450.0) is None
        assert SmartCategorizer().suggest_category("", 10.0) is None

    def test_running_statistics(self):
        categorizer = SmartCategorizer()
        for txn in _make_series("Book Shop", [10.0, 20.0, 30.0], "Shopping"):
            categorizer.learn_from_transaction(txn, now=datetime(2024, 3, 20))
        profile = categorizer.category_profiles["Shopping"]
        assert profile.total_transactions == 3
        assert profile.avg_amount == pytest.approx(20.0)
        assert profile.std_deviation == pytest.approx(np.std([10.0, 20.0, 30.0]))
        assert profile.min_amount == 10.0
        assert profile.max_amount == 30.0
        assert profile.merchant_frequency == {"book shop": 3}
        assert profile.time_distribution.morning == 3
        assert sum(profile.day_of_week_distribution) == 3
        assert profile.monthly_distribution[:3] == [1, 1, 1]

    def test_amount_score_insufficient_history(self):
        categorizer = SmartCategorizer()
        for txn in _make_series("Book Shop", [10.0, 20.0], "Shopping"):
            categorizer.learn_from_transaction(txn, now=datetime(2024, 3, 20))
        profile = categorizer.category_profiles["Shopping"]
        assert categorizer._calculate_amount_score(15.0, profile) == pytest.approx(0.3)
        assert categorizer._calculate_amount_score(9999.0, profile) == pytest.approx(0.3)

    def test_income_and_uncategorized_ignored(self):
        categorizer = SmartCategorizer()
        categorizer.learn_from_transaction(_make_txn(type="income"))
        categorizer.learn_from_transaction(_make_txn(category=""))
        assert categorizer.category_profiles == {}
        assert categorizer.merchant_profiles == {}

    def test_pattern_merge_bumps_confidence(self):
        categorizer = SmartCategorizer()
        txn = _make_txn("u", "UBER TRIP", 12.0, datetime(2024, 3, 1, 18), "Transportation")
        categorizer.learn_from_transaction(txn, now=datetime(2024, 3, 1))
        categorizer.learn_from_transaction(txn, now=datetime(2024, 3, 2))
        patterns = {(p.pattern_type.value, str(p.value)): p
                    for p in categorizer.category_profiles["Transportation"].patterns}
        uber = patterns[("description", "uber")]
        assert uber.frequency == 2
        assert uber.confidence == pytest.approx(0.72)
        assert uber.first_seen == datetime(2024, 3, 1)
        assert uber.last_seen == datetime(2024, 3, 2)
        assert patterns[("amount", "small")].confidence == pytest.approx(0.62)

    def test_stale_rare_patterns_pruned(self):
        categorizer = SmartCategorizer()
        categorizer.learn_from_transaction(
            _make_txn("a", "RARE SHOP", 25.0, datetime(2024, 1, 1), "Shopping"), now=datetime(2024, 1, 1)
        )
        categorizer.learn_from_transaction(
            _make_txn("b", "OTHER STORE", 25.0, datetime(2024, 8, 1), "Shopping"), now=datetime(2024, 8, 1)
        )
        values = [p.value for p in categorizer.category_profiles["Shopping"].patterns]
        assert "rare" not in values
        assert "other" in values
        assert "small" in values

    def test_merchant_profile_tracks_majority_category(self):
        categorizer = SmartCategorizer()
        categorizer.learn_from_transaction(_make_txn("1", "ACME", 10.0, category="Shopping"))
        categorizer.learn_from_transaction(_make_txn("2", "ACME Store", 20.0, category="Office"))
        merchant = categorizer.merchant_profiles["acme"]
        assert merchant.common_category == "Shopping"

        categorizer.learn_from_transaction(_make_txn("3", "ACME", 30.0, category="Office"))
        assert merchant.common_category == "Shopping"          # tie keeps current
        categorizer.learn_from_transaction(_make_txn("4", "ACME", 30.0, category="Office"))
        assert merchant.common_category == "Office"
        assert merchant.transaction_count == 3
        assert merchant.avg_amount == pytest.approx((10.0 + 30.0 + 30.0) / 3)

    def test_alias_match(self):
        categorizer = SmartCategorizer()
        categorizer.learn_from_transaction(_make_txn("1", "SPOTIFY PREMIUM FAMILY PLAN", 16.0, category="Subscriptions"))
        suggestion = categorizer.suggest_category("Spotify", 16.0)
        assert suggestion.category == "Subscriptions"
        assert suggestion.reasons[0].startswith("Known merchant")

    def test_export_and_restore(self):
        categorizer = self._uber_categorizer()
        snapshot = json.loads(json.dumps(categorizer.export_profiles()))
        assert set(snapshot) == {"categories", "merchants"}

        restored = SmartCategorizer(existing_profiles=snapshot)
        assert restored.export_profiles() == categorizer.export_profiles()
        assert restored.suggest_category("UBER TRIP", 12) == categorizer.suggest_category("UBER TRIP", 12)

    def test_suggestion_is_deterministic(self):
        categorizer = self._uber_categorizer()
        when = datetime(2024, 3, 21, 10)
        assert categorizer.suggest_category("UBER TRIP", 12, when) == categorizer.suggest_category("UBER TRIP", 12, when)

    def test_negative_amount_raises(self):
        with pytest.raises(InvalidTransactionError):
            self._uber_categorizer().suggest_category("UBER TRIP", -12)

    def test_statistics(self):
        stats = self._uber_categorizer().get_statistics()
        assert stats["categories_learned"] == 1
        assert stats["merchants_recognized"] == 1
        assert stats["total_patterns_learned"] > 0
        assert 0.5 <= stats["avg_confidence"] <= 0.95


# =============================================================================
# FULL PIPELINE INTEGRATION TESTS
# =============================================================================

class TestPipeline:
    def _trained(self) -> PatternRecognitionPipeline:
        pipeline = PatternRecognitionPipeline()
        pipeline.train(_make_ledger(), as_of=datetime(2024, 7, 1))
        return pipeline

    def test_training_detects_only_netflix(self):
        pipeline = self._trained()
        assert [p.description for p in pipeline.recurring_patterns] == ["netflixcom"]
        assert pipeline.anomaly_detector.get_statistics()["profiles_built"] == 3

    def test_upcoming(self):
        upcoming = self._trained().upcoming(days_ahead=30, today=datetime(2024, 7, 1))
        assert [(u.date, u.amount) for u in upcoming] == [(datetime(2024, 7, 13), 15.0)]

    def test_analyze_candidate(self):
        insights = self._trained().analyze_candidate("NETFLIX.COM", 15.0, date=datetime(2024, 7, 13))
        assert insights.suggestion.category == "Subscriptions"
        assert insights.recurring_match is not None
        assert insights.matching_pattern is insights.recurring_match
        assert [a for a in insights.alerts if a.severity == "high"] == []

    def test_analyze_candidate_flags_large_amount(self):
        insights = self._trained().analyze_candidate(
            "UBER TRIP", 95.0, category="Transportation", date=datetime(2024, 7, 2, 18, 30)
        )
        assert any(a.type == "amount" and a.severity == "high" for a in insights.alerts)
        assert insights.recurring_match is None

    def test_record_transaction_advances_pattern(self):
        pipeline = self._trained()
        updated = pipeline.record_transaction(
            _make_txn("nf6", "NETFLIX.COM", 15.0, datetime(2024, 7, 14), "Subscriptions")
        )
        assert updated is not None
        assert updated.next_expected_date == datetime(2024, 8, 13)
        assert pipeline.recurring_patterns[0] is updated

    def test_state_round_trip(self):
        pipeline = self._trained()
        state = json.loads(json.dumps(pipeline.export_state()))
        assert state["version"] == 1
        assert state["statistics"]["transactions_analyzed"] == len(_make_ledger())
        assert state["statistics"]["last_training_date"] == "2024-07-01T00:00:00"

        restored = PatternRecognitionPipeline.from_state(state)
        assert restored.recurring_patterns == pipeline.recurring_patterns
        assert (restored.categorizer.suggest_category("UBER TRIP", 12.0)
                == pipeline.categorizer.suggest_category("UBER TRIP", 12.0))

    def test_dataframe_training(self):
        df = pd.DataFrame([t.to_dict() for t in _make_ledger()])
        pipeline = PatternRecognitionPipeline()
        pipeline.train(df, as_of=datetime(2024, 7, 1))
        assert len(pipeline.recurring_patterns) == 1

    def test_empty_input(self):
        pipeline = PatternRecognitionPipeline()
        pipeline.train([], as_of=datetime(2024, 7, 1))
        assert pipeline.recurring_patterns == []
        assert pipeline.upcoming(today=datetime(2024, 7, 1)) == []
        assert pipeline.analyze_candidate("Anything", 10.0).suggestion is None

    def test_training_twice_does_not_double_count(self):
        pipeline = self._trained()
        pipeline.train(_make_ledger(), as_of=datetime(2024, 7, 1))
        assert pipeline.categorizer.category_profiles["Transportation"].total_transactions == 10
        assert pipeline.categorizer.merchant_profiles["uber trip"].transaction_count == 10

    def test_training_restored_pipeline_does_not_double_count(self):
        restored = PatternRecognitionPipeline.from_state(self._trained().export_state())
        restored.train(_make_ledger(), as_of=datetime(2024, 7, 1))
        assert restored.categorizer.category_profiles["Transportation"].total_transactions == 10

    def test_uncategorized_candidate_still_checked(self):
        pipeline = PatternRecognitionPipeline()
        insights = pipeline.analyze_candidate("Lucky Casino", 50.0, date=datetime(2024, 7, 1, 21))
        assert insights.suggestion is None
        assert [(a.type, a.severity) for a in insights.alerts] == [("merchant", "high")]

    def test_recurring_merchants_flagged(self):
        merchants = self._trained().categorizer.merchant_profiles
        assert merchants[extract_merchant_key("NETFLIX.COM")].is_recurring
        assert not merchants["uber trip"].is_recurring
        assert not merchants[extract_merchant_key("WHOLE FOODS MARKET")].is_recurring


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
