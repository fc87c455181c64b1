"""
anomaly_detector.py
--------------------
Anomaly detection for candidate ledger transactions.

Six independent checks run against profiles rebuilt from history:
    1. Amount: z-score against the category, and historical maximum.
    2. Merchant: unseen merchant with a large amount; suspicious terms.
    3. Time: hour / weekday never seen for the category.
    4. Duplicate: same amount, similar description within 24 hours.
    5. Velocity: trailing-hour count, trailing-day spend, category bursts.
    6. Category rules: repeated monthly bills; large weekday entertainment.

Every alert that fires is returned; the checks are not mutually exclusive.

Profiles are rebuilt wholesale by build_profiles() and never updated
incrementally. The recent-transaction cache is anchored on the build's
`as_of` instant: callers refresh it by rebuilding.

All thresholds come from config.yaml.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from config.config_loader import get_anomaly_detection_config
from core import calendar_utils
from core.models import (
    AlertDetails,
    AlertType,
    AnomalyAlert,
    Severity,
    SpendingProfile,
    Transaction,
    VelocityProfile,
)
from core.stats import calculate_mean, calculate_median, calculate_percentile, calculate_std_dev
from core.text_normalizer import descriptions_are_similar, extract_merchant_key
from core.validation import coerce_transactions, to_transaction

logger = logging.getLogger(__name__)

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class AnomalyDetector:
    """
    Flags unusual expense transactions against per-category spending profiles.

    Usage:
        detector = AnomalyDetector()
        detector.build_profiles(history)
        alerts = detector.detect_anomalies(candidate, all_transactions=history)
    """

    def __init__(self):
        self.config = get_anomaly_detection_config()
        self.spending_profiles: Dict[str, SpendingProfile] = {}
        self.velocity_profile = self._default_velocity_profile()
        self.recent_transactions: List[Transaction] = []

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def build_profiles(self, transactions: Any, as_of: Optional[datetime] = None) -> None:
        """
        Rebuild all detector state from history.

        Args:
            transactions: Iterable of Transaction / host dicts, or a DataFrame.
            as_of: Anchor of the recent-transaction window. Defaults to now.
        """
        txns = coerce_transactions(transactions)
        as_of = as_of or datetime.now()

        groups: Dict[str, List[Transaction]] = {}
        for tx in txns:
            if tx.is_paid_expense:
                groups.setdefault(tx.category, []).append(tx)

        min_txns = self.config["min_profile_transactions"]
        self.spending_profiles = {
            category: self._build_category_profile(category, group)
            for category, group in groups.items()
            if len(group) >= min_txns
        }

        self.velocity_profile = self._build_velocity_profile(txns)

        window_start = as_of - timedelta(days=self.config["recent_window_days"])
        recent = [tx for tx in txns if tx.date > window_start]
        recent.sort(key=lambda tx: tx.date, reverse=True)
        self.recent_transactions = recent[: self.config["max_recent_transactions"]]

        logger.info(
            f"Anomaly profiles built: {len(self.spending_profiles)} categories profiled, "
            f"{len(self.recent_transactions)} recent transactions cached."
        )

    def detect_anomalies(
        self, transaction: Any, all_transactions: Optional[Any] = None
    ) -> List[AnomalyAlert]:
        """
        Run every check against a candidate transaction.

        Args:
            transaction: The candidate (Transaction or host dict).
            all_transactions: History for the velocity checks. Velocity is
                skipped when omitted.

        Returns:
            All alerts that fired, in check order. Empty for income.

        Raises:
            InvalidTransactionError: If the candidate violates the caller contract.
        """
        tx = to_transaction(transaction)
        if not tx.is_expense:
            return []

        alerts: List[AnomalyAlert] = []
        alerts.extend(self._detect_amount_anomalies(tx))
        alerts.extend(self._detect_merchant_anomalies(tx))
        alerts.extend(self._detect_time_anomalies(tx))
        alerts.extend(self._detect_duplicate(tx))
        if all_transactions is not None:
            history = coerce_transactions(all_transactions)
            alerts.extend(self._detect_velocity_anomalies(tx, history))
        alerts.extend(self._detect_category_specific_anomalies(tx))

        if alerts:
            logger.debug(
                f"{len(alerts)} anomalies for '{tx.description}' ({tx.amount:.2f}): "
                f"{[a.type for a in alerts]}"
            )
        return alerts

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "profiles_built": len(self.spending_profiles),
            "categories_covered": list(self.spending_profiles.keys()),
            "known_merchants": sum(len(p.known_merchants) for p in self.spending_profiles.values()),
            "velocity_limits": self.velocity_profile.to_dict(),
        }

    # -------------------------------------------------------------------------
    # INTERNAL: PROFILE BUILDING
    # -------------------------------------------------------------------------

    def _default_velocity_profile(self) -> VelocityProfile:
        defaults = self.config["default_velocity"]
        return VelocityProfile(
            max_daily_transactions=int(defaults["max_daily_transactions"]),
            max_hourly_transactions=int(defaults["max_hourly_transactions"]),
            max_daily_amount=float(defaults["max_daily_amount"]),
            typical_daily_transactions=float(defaults["typical_daily_transactions"]),
            typical_daily_amount=float(defaults["typical_daily_amount"]),
        )

    def _build_category_profile(
        self, category: str, transactions: List[Transaction]
    ) -> SpendingProfile:
        amounts = sorted(tx.amount for tx in transactions)
        hours = np.bincount([tx.date.hour for tx in transactions], minlength=24)
        weekdays = np.bincount(
            [calendar_utils.day_of_week(tx.date) for tx in transactions], minlength=7
        )
        return SpendingProfile(
            category=category,
            mean=calculate_mean(amounts),
            std_dev=calculate_std_dev(amounts),
            median=calculate_median(amounts),
            percentile_95=calculate_percentile(amounts, 0.95),
            min_amount=amounts[0],
            max_amount=amounts[-1],
            typical_time_of_day=hours.tolist(),
            typical_day_of_week=weekdays.tolist(),
            known_merchants={extract_merchant_key(tx.description) for tx in transactions},
        )

    def _build_velocity_profile(self, transactions: List[Transaction]) -> VelocityProfile:
        """
        Daily grouping of all expenses. The hourly limit is an estimate
        (busiest day / 12), not an hourly histogram.
        """
        expenses = [tx for tx in transactions if tx.is_expense]
        if not expenses:
            return self._default_velocity_profile()

        df = pd.DataFrame({
            "day": [tx.date.date() for tx in expenses],
            "amount": [tx.amount for tx in expenses],
        })
        daily = df.groupby("day")["amount"].agg(["count", "sum"])

        max_daily = int(daily["count"].max())
        return VelocityProfile(
            max_daily_transactions=max_daily,
            max_hourly_transactions=math.ceil(max_daily / self.config["hourly_estimate_divisor"]),
            max_daily_amount=float(daily["sum"].max()),
            typical_daily_transactions=calculate_mean(daily["count"]),
            typical_daily_amount=calculate_mean(daily["sum"]),
        )

    # -------------------------------------------------------------------------
    # INTERNAL: CHECKS
    # -------------------------------------------------------------------------

    def _detect_amount_anomalies(self, tx: Transaction) -> List[AnomalyAlert]:
        profile = self.spending_profiles.get(tx.category)
        if profile is None:
            return []

        alerts = []
        if profile.std_dev > 0:
            z_score = abs(tx.amount - profile.mean) / profile.std_dev
            if z_score > self.config["zscore_threshold"]:
                if z_score > self.config["zscore_high"]:
                    severity = Severity.HIGH
                elif z_score > self.config["zscore_medium"]:
                    severity = Severity.MEDIUM
                else:
                    severity = Severity.LOW
                alerts.append(AnomalyAlert(
                    type=AlertType.AMOUNT.value,
                    severity=severity.value,
                    message=f"Unusual amount for {tx.category}",
                    details=AlertDetails(expected=profile.mean, actual=tx.amount, deviation=z_score),
                ))

        if profile.max_amount > 0 and tx.amount > profile.max_amount * self.config["max_amount_multiplier"]:
            alerts.append(AnomalyAlert(
                type=AlertType.AMOUNT.value,
                severity=Severity.HIGH.value,
                message=f"Amount exceeds historical maximum for {tx.category}",
                details=AlertDetails(
                    expected=profile.max_amount,
                    actual=tx.amount,
                    deviation=tx.amount / profile.max_amount,
                ),
            ))
        return alerts

    def _detect_merchant_anomalies(self, tx: Transaction) -> List[AnomalyAlert]:
        alerts = []
        merchant_key = extract_merchant_key(tx.description)
        profile = self.spending_profiles.get(tx.category)

        if (
            profile is not None
            and merchant_key not in profile.known_merchants
            and tx.amount > profile.mean * self.config["new_merchant_mean_multiplier"]
        ):
            alerts.append(AnomalyAlert(
                type=AlertType.MERCHANT.value,
                severity=Severity.MEDIUM.value,
                message=f"New merchant in {tx.category} category",
                details=AlertDetails(
                    expected=", ".join(sorted(profile.known_merchants)[:3]),
                    actual=merchant_key,
                ),
            ))

        if self._is_suspicious_merchant(merchant_key, tx.category):
            alerts.append(AnomalyAlert(
                type=AlertType.MERCHANT.value,
                severity=Severity.HIGH.value,
                message="Potentially suspicious merchant",
                details=AlertDetails(actual=merchant_key),
            ))
        return alerts

    def _detect_time_anomalies(self, tx: Transaction) -> List[AnomalyAlert]:
        profile = self.spending_profiles.get(tx.category)
        if profile is None:
            return []

        alerts = []
        min_history = self.config["min_time_history"]
        hour = tx.date.hour
        weekday = calendar_utils.day_of_week(tx.date)

        if sum(profile.typical_time_of_day) > min_history and profile.typical_time_of_day[hour] == 0:
            alerts.append(AnomalyAlert(
                type=AlertType.TIME.value,
                severity=Severity.LOW.value,
                message=f"Unusual time for {tx.category} transaction",
                details=AlertDetails(actual=f"{hour}:00"),
            ))

        if (
            sum(profile.typical_day_of_week) > min_history
            and profile.typical_day_of_week[weekday] == 0
            and tx.amount > profile.mean * self.config["large_amount_mean_multiplier"]
        ):
            alerts.append(AnomalyAlert(
                type=AlertType.TIME.value,
                severity=Severity.LOW.value,
                message=f"Unusual day for large {tx.category} transaction",
                details=AlertDetails(actual=_DAY_NAMES[weekday]),
            ))
        return alerts

    def _detect_duplicate(self, tx: Transaction) -> List[AnomalyAlert]:
        window = self.config["duplicate_window_hours"]
        epsilon = self.config["duplicate_amount_epsilon"]
        for recent in self.recent_transactions:
            # A stored transaction is not a duplicate of itself.
            if tx.id and recent.id == tx.id:
                continue
            if abs(calendar_utils.whole_hours_between(recent.date, tx.date)) > window:
                continue
            if abs(tx.amount - recent.amount) >= epsilon:
                continue
            if self._similar(tx.description, recent.description):
                return [AnomalyAlert(
                    type=AlertType.DUPLICATE.value,
                    severity=Severity.HIGH.value,
                    message="Possible duplicate transaction detected",
                    details=AlertDetails(
                        expected=f"Previous: {recent.description} on {recent.date:%b %d}",
                        actual=f"Current: {tx.description}",
                    ),
                )]
        return []

    def _detect_velocity_anomalies(
        self, tx: Transaction, history: List[Transaction]
    ) -> List[AnomalyAlert]:
        """Trailing windows are open intervals ending at the candidate's timestamp."""
        hour_start = tx.date - timedelta(hours=self.config["velocity_window_hours"])
        day_start = tx.date - timedelta(hours=self.config["velocity_day_window_hours"])

        last_hour = [t for t in history if t.is_expense and hour_start < t.date < tx.date]
        last_day = [t for t in history if t.is_expense and day_start < t.date < tx.date]

        alerts = []
        limits = self.velocity_profile
        if len(last_hour) > limits.max_hourly_transactions:
            alerts.append(AnomalyAlert(
                type=AlertType.FREQUENCY.value,
                severity=Severity.HIGH.value,
                message="Unusually high transaction frequency",
                details=AlertDetails(expected=limits.max_hourly_transactions, actual=len(last_hour)),
            ))

        daily_total = sum(t.amount for t in last_day)
        if daily_total > limits.max_daily_amount:
            alerts.append(AnomalyAlert(
                type=AlertType.FREQUENCY.value,
                severity=Severity.HIGH.value,
                message="Daily spending limit exceeded",
                details=AlertDetails(expected=limits.max_daily_amount, actual=daily_total),
            ))

        same_category = sum(1 for t in last_hour if t.category == tx.category)
        if same_category >= self.config["burst_same_category_count"]:
            alerts.append(AnomalyAlert(
                type=AlertType.FREQUENCY.value,
                severity=Severity.MEDIUM.value,
                message=f"Multiple {tx.category} transactions in short time",
                details=AlertDetails(actual=same_category),
            ))
        return alerts

    def _detect_category_specific_anomalies(self, tx: Transaction) -> List[AnomalyAlert]:
        if tx.category in self.config["monthly_bill_categories"]:
            similar_this_month = [
                t for t in self.recent_transactions
                if t.category == tx.category
                and not (tx.id and t.id == tx.id)
                and calendar_utils.same_month(t.date, tx.date)
                and self._similar(t.description, tx.description)
            ]
            if similar_this_month:
                return [AnomalyAlert(
                    type=AlertType.FREQUENCY.value,
                    severity=Severity.MEDIUM.value,
                    message=f"Possible duplicate {tx.category} payment this month",
                    details=AlertDetails(
                        expected="One payment per month",
                        actual=f"{len(similar_this_month) + 1} similar payments",
                    ),
                )]

        if tx.category in self.config["weekday_spend_categories"]:
            weekday = calendar_utils.day_of_week(tx.date)
            if 1 <= weekday <= 5 and tx.amount > self.config["weekday_spend_limit"]:
                return [AnomalyAlert(
                    type=AlertType.AMOUNT.value,
                    severity=Severity.LOW.value,
                    message=f"High {tx.category.lower()} spending on a weekday",
                    details=AlertDetails(actual=tx.amount),
                )]
        return []

    # -------------------------------------------------------------------------
    # INTERNAL: HELPERS
    # -------------------------------------------------------------------------

    def _is_suspicious_merchant(self, merchant_key: str, category: str) -> bool:
        crypto_terms = set(self.config["crypto_terms"])
        for term in self.config["suspicious_merchant_terms"]:
            if term in merchant_key:
                if term in crypto_terms and category in self.config["crypto_allowed_categories"]:
                    return False
                return True
        return False

    def _similar(self, desc1: str, desc2: str) -> bool:
        return descriptions_are_similar(
            extract_merchant_key(desc1),
            extract_merchant_key(desc2),
            self.config["similarity_threshold"],
        )
