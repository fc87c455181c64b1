"""
recurrence_detector.py
-----------------------
Recurring payment detection and prediction.

Answers three questions about a ledger:

    "Which payments repeat, how often, and for how much?"
    "When will they next hit the account?"
    "Does this new transaction belong to one of them?"

Design decisions:
    - Grouping is greedy on normalized-description similarity, in
      chronological order. The first group whose base description is similar
      wins.
    - Periodicity comes from the average gap between consecutive occurrences,
      classified into fixed bands. Groups outside every band are discarded.
    - Confidence is a weighted blend of interval consistency, amount
      consistency and occurrence count (saturating at 12).
    - The detector holds no state between calls: detection is a pure
      function of its input.
    - All thresholds and tolerances are read from config.yaml.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.config_loader import get_recurrence_detection_config
from core import calendar_utils
from core.models import PredictedTransaction, RecurrenceType, RecurringPattern, Transaction
from core.stats import calculate_mean, calculate_std_dev, safe_ratio
from core.text_normalizer import descriptions_are_similar, normalize_description
from core.validation import coerce_transactions, to_transaction

logger = logging.getLogger(__name__)


_TYPE_LABELS = {
    RecurrenceType.DAILY.value: "Daily",
    RecurrenceType.WEEKLY.value: "Weekly",
    RecurrenceType.BIWEEKLY.value: "Bi-weekly",
    RecurrenceType.MONTHLY.value: "Monthly",
    RecurrenceType.QUARTERLY.value: "Quarterly",
    RecurrenceType.ANNUAL.value: "Annual",
}


@dataclass
class _TransactionGroup:
    base_description: str
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def amounts(self) -> List[float]:
        return [tx.amount for tx in self.transactions]

    @property
    def dates(self) -> List[datetime]:
        return [tx.date for tx in self.transactions]


class RecurrenceDetector:
    """
    Detects recurring payment patterns in transaction history.

    Usage:
        detector = RecurrenceDetector()
        patterns = detector.detect_recurring_patterns(transactions)
        upcoming = detector.predict_upcoming_transactions(patterns, days_ahead=30)
    """

    def __init__(self):
        self.config = get_recurrence_detection_config()
        self.min_occurrences = self.config["min_occurrences"]
        self.interval_tolerance = self.config["interval_tolerance"]
        self.amount_tolerance = self.config["amount_tolerance"]
        self.confidence_threshold = self.config["confidence_threshold"]
        self.similarity_threshold = self.config["similarity_threshold"]
        self.weights = self.config["confidence_weights"]
        self.interval_bands = self.config["interval_bands"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect_recurring_patterns(self, transactions: Any) -> List[RecurringPattern]:
        """
        Detect recurring patterns from transaction history.

        Args:
            transactions: Iterable of Transaction / host dicts, or a DataFrame.

        Returns:
            Patterns whose confidence clears the threshold, highest
            confidence first.
        """
        txns = coerce_transactions(transactions)
        groups = self._group_by_description(txns)

        patterns: List[RecurringPattern] = []
        for group in groups:
            if len(group.transactions) < self.min_occurrences:
                continue
            pattern = self._analyze_group(group)
            if pattern is not None:
                patterns.append(pattern)

        # Stable sort keeps first-seen group order among equal confidences.
        patterns.sort(key=lambda p: p.confidence, reverse=True)

        logger.info(
            f"Recurrence detection: {len(txns):,} transactions, "
            f"{len(groups):,} description groups, {len(patterns):,} recurring patterns."
        )
        return patterns

    def predict_upcoming_transactions(
        self,
        patterns: List[RecurringPattern],
        days_ahead: int = 30,
        today: Optional[datetime] = None,
    ) -> List[PredictedTransaction]:
        """
        Project each pattern forward from its next expected date.

        Args:
            patterns: Detected (or updated) recurring patterns.
            days_ahead: Size of the prediction window in days.
            today: Start of the window. Defaults to the current day.

        Returns:
            Predictions dated within [today, today + days_ahead], earliest first.
        """
        start = calendar_utils.start_of_day(today or datetime.now())
        end = calendar_utils.add_days(start, days_ahead)

        predictions: List[PredictedTransaction] = []
        for pattern in patterns:
            for date in self._occurrences_between(pattern, start, end):
                predictions.append(PredictedTransaction(
                    description=self._generate_description(pattern),
                    amount=pattern.expected_amount,
                    category=self.config["prediction_category"],
                    date=date,
                    confidence=pattern.confidence,
                    is_recurring=True,
                    based_on=f"pattern_{pattern.type}_{pattern.interval}",
                ))

        predictions.sort(key=lambda p: p.date)
        return predictions

    def matches_recurring_pattern(
        self, transaction: Any, patterns: List[RecurringPattern]
    ) -> Optional[RecurringPattern]:
        """
        Returns the first pattern whose amount and expected date fit the
        transaction, or None.

        Raises:
            InvalidTransactionError: If the transaction violates the caller contract.
        """
        tx = to_transaction(transaction)
        for pattern in patterns:
            if self._transaction_matches_pattern(tx, pattern):
                return pattern
        return None

    def description_matches_pattern(self, description: str, pattern: RecurringPattern) -> bool:
        """True when a typed description names the payee of a pattern."""
        if not pattern.description:
            return False
        return descriptions_are_similar(
            normalize_description(description), pattern.description, self.similarity_threshold
        )

    def update_pattern(self, pattern: RecurringPattern, transaction: Any) -> RecurringPattern:
        """
        Fold a new occurrence into a pattern.

        The input pattern is left untouched; a new pattern is returned with
        the occurrence appended, amount statistics recomputed from the true
        occurrence amounts, the next expected date advanced by one interval
        and the confidence recalculated.

        Raises:
            InvalidTransactionError: If the transaction violates the caller contract.
        """
        tx = to_transaction(transaction)

        # Older snapshots carry no amount history; seed it with the expectation.
        history = list(pattern.amounts) or [pattern.expected_amount] * len(pattern.occurrences)
        pairs = sorted(
            list(zip(pattern.occurrences, history)) + [(tx.date, tx.amount)],
            key=lambda pair: pair[0],
        )
        occurrences = [d for d, _ in pairs]
        amounts = [a for _, a in pairs]

        intervals = self._calculate_intervals(occurrences)
        confidence = self._calculate_confidence(
            self._calculate_consistency(intervals, pattern.interval),
            self._calculate_amount_consistency(amounts),
            len(occurrences),
        )

        return replace(
            pattern,
            occurrences=occurrences,
            amounts=amounts,
            expected_amount=calculate_mean(amounts),
            amount_variance=calculate_std_dev(amounts),
            next_expected_date=calendar_utils.add_days(occurrences[-1], pattern.interval),
            confidence=confidence,
        )

    def classify_interval(self, avg_interval: float) -> Optional[str]:
        """
        Map an average interval in days to a periodicity, or None.

        Bands are inclusive. The monthly band (25–35 days) absorbs calendar
        month length variation.
        """
        for recurrence_type, (low, high) in self.interval_bands.items():
            if low <= avg_interval <= high:
                return recurrence_type
        return None

    # -------------------------------------------------------------------------
    # INTERNAL: GROUPING
    # -------------------------------------------------------------------------

    def _group_by_description(self, transactions: List[Transaction]) -> List[_TransactionGroup]:
        """
        Greedy chronological grouping. Each transaction joins the first group
        whose base description is similar to its own, else starts a new one.
        """
        groups: List[_TransactionGroup] = []
        for tx in sorted(transactions, key=lambda t: t.date):
            base = normalize_description(tx.description)
            target = next(
                (g for g in groups
                 if descriptions_are_similar(base, g.base_description, self.similarity_threshold)),
                None,
            )
            if target is None:
                target = _TransactionGroup(base_description=base)
                groups.append(target)
            target.transactions.append(tx)
        return groups

    # -------------------------------------------------------------------------
    # INTERNAL: PATTERN CONSTRUCTION
    # -------------------------------------------------------------------------

    def _analyze_group(self, group: _TransactionGroup) -> Optional[RecurringPattern]:
        """
        Builds a RecurringPattern from one description group.

        Returns None when the cadence matches no band or the confidence is
        below threshold.
        """
        dates = group.dates
        amounts = group.amounts
        intervals = self._calculate_intervals(dates)

        avg_interval = calculate_mean(intervals)
        if avg_interval == 0:
            return None

        recurrence_type = self.classify_interval(avg_interval)
        if recurrence_type is None:
            logger.debug(
                f"Group '{group.base_description}': average interval {avg_interval:.1f}d matches no band."
            )
            return None

        confidence = self._calculate_confidence(
            self._calculate_consistency(intervals, avg_interval),
            self._calculate_amount_consistency(amounts),
            len(dates),
        )
        if confidence < self.confidence_threshold:
            return None

        interval = int(round(avg_interval))
        return RecurringPattern(
            type=recurrence_type,
            interval=interval,
            expected_amount=calculate_mean(amounts),
            amount_variance=calculate_std_dev(amounts),
            next_expected_date=calendar_utils.add_days(dates[-1], interval),
            confidence=confidence,
            occurrences=list(dates),
            amounts=list(amounts),
            description=group.base_description,
        )

    @staticmethod
    def _calculate_intervals(dates: List[datetime]) -> List[int]:
        """Whole days between consecutive dates."""
        return [
            calendar_utils.whole_days_between(dates[i - 1], dates[i])
            for i in range(1, len(dates))
        ]

    def _calculate_consistency(self, intervals: List[int], average: float) -> float:
        """Fraction of intervals within the tolerance of `average`."""
        if not intervals or average == 0:
            return 0.0
        consistent = sum(
            1 for interval in intervals
            if abs(interval - average) / average <= self.interval_tolerance
        )
        return consistent / len(intervals)

    def _calculate_amount_consistency(self, amounts: List[float]) -> float:
        """Fraction of amounts within the tolerance of the group mean."""
        if not amounts:
            return 0.0
        avg = calculate_mean(amounts)
        if avg == 0:
            # All-zero amounts are perfectly consistent with each other.
            return 1.0 if all(a == 0 for a in amounts) else 0.0
        consistent = sum(
            1 for amount in amounts
            if abs(amount - avg) / avg <= self.amount_tolerance
        )
        return consistent / len(amounts)

    def _calculate_confidence(
        self, interval_consistency: float, amount_consistency: float, occurrences: int
    ) -> float:
        """
        confidence = w_interval * interval_consistency
                   + w_amount * amount_consistency
                   + w_occurrences * min(1, occurrences / saturation)
        """
        w = self.weights
        occurrence_score = min(1.0, safe_ratio(occurrences, self.config["occurrence_saturation"]))
        return (
            w["interval"] * interval_consistency
            + w["amount"] * amount_consistency
            + w["occurrences"] * occurrence_score
        )

    # -------------------------------------------------------------------------
    # INTERNAL: MATCHING & PREDICTION
    # -------------------------------------------------------------------------

    def _transaction_matches_pattern(self, tx: Transaction, pattern: RecurringPattern) -> bool:
        if pattern.expected_amount <= 0:
            return False
        deviation = abs(tx.amount - pattern.expected_amount) / pattern.expected_amount
        if deviation > self.amount_tolerance:
            return False

        tolerances = self.config["match_tolerance_days"]
        if pattern.type in self.config["extended_tolerance_types"]:
            tolerance = tolerances["extended"]
        else:
            tolerance = tolerances["default"]
        days_diff = abs(calendar_utils.whole_days_between(pattern.next_expected_date, tx.date))
        return days_diff <= tolerance

    @staticmethod
    def _occurrences_between(
        pattern: RecurringPattern, start: datetime, end: datetime
    ) -> List[datetime]:
        """
        Steps forward from the pattern's next expected date by its calendar
        unit, collecting the steps whose day falls within [start, end].
        """
        occurrences: List[datetime] = []
        anchor = pattern.next_expected_date
        count = 0
        current = anchor
        while current.date() <= end.date():
            if current.date() >= start.date():
                occurrences.append(current)
            count += 1
            current = calendar_utils.step(anchor, pattern.type, count)
        return occurrences

    @staticmethod
    def _generate_description(pattern: RecurringPattern) -> str:
        label = _TYPE_LABELS.get(pattern.type, pattern.type.capitalize())
        return f"{label} recurring payment"

    def summarize(self, patterns: List[RecurringPattern]) -> Dict[str, Any]:
        """Pattern counts by periodicity and the mean confidence."""
        by_type: Dict[str, int] = {}
        for p in patterns:
            by_type[p.type] = by_type.get(p.type, 0) + 1
        return {
            "patterns_detected": len(patterns),
            "by_type": by_type,
            "avg_confidence": calculate_mean(p.confidence for p in patterns),
        }
