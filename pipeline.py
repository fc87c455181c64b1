"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. SmartCategorizer     →  learns categories from the ledger, suggests new ones
    2. AnomalyDetector      →  rebuilds spending profiles, flags unusual entries
    3. RecurrenceDetector   →  finds recurring payments and predicts the next ones

This is the single entry point for hosts (entry forms, importers, the CLI).
One pipeline instance belongs to one ledger session. A coarse lock keeps
training and recording from interleaving with queries when the instance is
shared between threads.

Usage:
    from pipeline import PatternRecognitionPipeline

    pipeline = PatternRecognitionPipeline()
    pipeline.train(transactions)
    insights = pipeline.analyze_candidate("NETFLIX.COM", 15.99, category="Subscriptions")
    upcoming = pipeline.upcoming(days_ahead=30)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from categorization.smart_categorizer import SmartCategorizer
from config.config_loader import get_storage_config
from core.models import (
    AnomalyAlert,
    CategorySuggestion,
    PredictedTransaction,
    RecurringPattern,
    Transaction,
    TransactionStatus,
    TransactionType,
    parse_datetime,
)
from core.recurrence_detector import RecurrenceDetector
from core.validation import coerce_transactions, to_transaction, validate_amount
from monitoring.anomaly_detector import AnomalyDetector

logger = logging.getLogger(__name__)


@dataclass
class CandidateInsights:
    """Everything the engines have to say about a transaction being entered."""
    suggestion: Optional[CategorySuggestion] = None
    alerts: List[AnomalyAlert] = field(default_factory=list)
    recurring_match: Optional[RecurringPattern] = None     # amount and date fit a pattern
    matching_pattern: Optional[RecurringPattern] = None    # description names a pattern's payee


class PatternRecognitionPipeline:
    """
    End-to-end pattern recognition over one ledger.

    train() rebuilds every engine from the full history, so calling it again
    never double-counts. Between trainings the categorizer learns
    incrementally through record_transaction(); its profiles and the
    recurring patterns are the state carried across sessions (see
    export_state()).
    """

    def __init__(self, categorizer: Optional[SmartCategorizer] = None):
        self.categorizer = categorizer or SmartCategorizer()
        self.anomaly_detector = AnomalyDetector()
        self.recurrence_detector = RecurrenceDetector()

        self.recurring_patterns: List[RecurringPattern] = []
        self._history: List[Transaction] = []
        self._as_of: Optional[datetime] = None
        self._last_training_date: Optional[datetime] = None
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: MUTATION
    # -------------------------------------------------------------------------

    def train(self, transactions: Any, as_of: Optional[datetime] = None) -> None:
        """
        Train every engine on the full ledger history.

        Args:
            transactions: Iterable of Transaction / host dicts, or a DataFrame.
            as_of: Reference instant for time windows and pattern bookkeeping.
                Defaults to now.
        """
        with self._lock:
            as_of = as_of or datetime.now()
            history = coerce_transactions(transactions)
            logger.info(f"Training starting. Input: {len(history):,} transactions.")

            # --- Stage 1: Category learning (from scratch; history is the full ledger) ---
            self.categorizer = SmartCategorizer()
            self.categorizer.learn_from_transactions(history, now=as_of)

            # --- Stage 2: Anomaly profiles ---
            self.anomaly_detector.build_profiles(history, as_of=as_of)

            # --- Stage 3: Recurring payments ---
            self.recurring_patterns = self.recurrence_detector.detect_recurring_patterns(history)
            for tx in history:
                if any(self.recurrence_detector.description_matches_pattern(tx.description, p)
                       for p in self.recurring_patterns):
                    self.categorizer.mark_recurring(tx.description)

            self._history = history
            self._as_of = as_of
            self._last_training_date = as_of
            logger.info(
                f"Training complete. Recurring patterns: {len(self.recurring_patterns):,}. "
                f"Categories learned: {len(self.categorizer.category_profiles):,}."
            )

    def record_transaction(self, transaction: Any) -> Optional[RecurringPattern]:
        """
        Fold a newly saved transaction into the session.

        The categorizer learns it, anomaly profiles are rebuilt on the
        extended history, and a matched recurring pattern is advanced.

        Returns:
            The updated recurring pattern, or None when nothing matched.

        Raises:
            InvalidTransactionError: If the transaction violates the caller contract.
        """
        tx = to_transaction(transaction)
        with self._lock:
            self._history.append(tx)
            self.categorizer.learn_from_transaction(tx, now=self._as_of)
            self.anomaly_detector.build_profiles(self._history, as_of=self._as_of)

            matched = self.recurrence_detector.matches_recurring_pattern(tx, self.recurring_patterns)
            if matched is None:
                return None

            updated = self.recurrence_detector.update_pattern(matched, tx)
            self.categorizer.mark_recurring(tx.description)
            index = next(i for i, p in enumerate(self.recurring_patterns) if p is matched)
            self.recurring_patterns[index] = updated
            logger.info(
                f"'{tx.description}' continues a {updated.type} pattern; "
                f"next expected {updated.next_expected_date:%Y-%m-%d}."
            )
            return updated

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: QUERIES
    # -------------------------------------------------------------------------

    def analyze_candidate(
        self,
        description: str,
        amount: float,
        category: Optional[str] = None,
        date: Optional[Any] = None,
    ) -> CandidateInsights:
        """
        Analyze a transaction being entered before it is saved.

        Args:
            description: Raw description typed by the user.
            amount: Non-negative amount.
            category: Chosen category. Falls back to the suggested one for
                the anomaly checks; with neither, only the checks that need
                no category profile can fire.
            date: Transaction timestamp. Defaults to now.

        Raises:
            InvalidTransactionError: On a negative or non-finite amount.
        """
        amount = validate_amount(amount)
        when = parse_datetime(date) if date is not None else datetime.now()

        with self._lock:
            insights = CandidateInsights()
            insights.suggestion = self.categorizer.suggest_category(description, amount, when)

            effective_category = category or (insights.suggestion.category if insights.suggestion else "")
            candidate = Transaction(
                id="",
                description=description,
                amount=amount,
                date=when,
                category=effective_category,
                type=TransactionType.EXPENSE.value,
                status=TransactionStatus.PENDING.value,
            )
            insights.alerts = self.anomaly_detector.detect_anomalies(
                candidate, all_transactions=self._history
            )

            insights.recurring_match = self.recurrence_detector.matches_recurring_pattern(
                candidate, self.recurring_patterns
            )
            insights.matching_pattern = next(
                (p for p in self.recurring_patterns
                 if self.recurrence_detector.description_matches_pattern(description, p)),
                None,
            )
            return insights

    def upcoming(
        self, days_ahead: int = 30, today: Optional[datetime] = None
    ) -> List[PredictedTransaction]:
        with self._lock:
            return self.recurrence_detector.predict_upcoming_transactions(
                self.recurring_patterns, days_ahead=days_ahead, today=today
            )

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "transactions_analyzed": len(self._history),
                "categorizer": self.categorizer.get_statistics(),
                "anomaly_detector": self.anomaly_detector.get_statistics(),
                "recurrence": self.recurrence_detector.summarize(self.recurring_patterns),
            }

    # -------------------------------------------------------------------------
    # PERSISTENCE
    # -------------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        """JSON-serializable storage blob for the host's settings file."""
        with self._lock:
            profiles = self.categorizer.export_profiles()
            return {
                "version": get_storage_config()["version"],
                "last_updated": datetime.now().isoformat(),
                "patterns": {
                    "categories": profiles["categories"],
                    "merchants": profiles["merchants"],
                    "recurring": [p.to_dict() for p in self.recurring_patterns],
                },
                "statistics": {
                    "transactions_analyzed": len(self._history),
                    "last_training_date": (
                        self._last_training_date.isoformat() if self._last_training_date else None
                    ),
                },
            }

    @classmethod
    def from_state(
        cls,
        state: Dict[str, Any],
        transactions: Optional[Any] = None,
        as_of: Optional[datetime] = None,
    ) -> "PatternRecognitionPipeline":
        """
        Restore a pipeline from export_state() output.

        Categorizer profiles and recurring patterns come from the blob.
        Anomaly profiles are rebuilt from `transactions` when given.
        """
        patterns = state.get("patterns") or {}
        stored_version = state.get("version")
        if stored_version != get_storage_config()["version"]:
            logger.warning(f"Restoring state with storage version {stored_version!r}.")

        pipeline = cls(categorizer=SmartCategorizer(existing_profiles={
            "categories": patterns.get("categories") or {},
            "merchants": patterns.get("merchants") or {},
        }))
        pipeline.recurring_patterns = [
            RecurringPattern.from_dict(p) for p in patterns.get("recurring") or []
        ]

        last_training = (state.get("statistics") or {}).get("last_training_date")
        pipeline._last_training_date = parse_datetime(last_training) if last_training else None

        if transactions is not None:
            pipeline._as_of = as_of or datetime.now()
            pipeline._history = coerce_transactions(transactions)
            pipeline.anomaly_detector.build_profiles(pipeline._history, as_of=pipeline._as_of)

        logger.info(
            f"Pipeline restored: {len(pipeline.recurring_patterns)} recurring patterns, "
            f"{len(pipeline._history):,} history transactions."
        )
        return pipeline
