"""
smart_categorizer.py
---------------------
Online category suggestion for ledger transactions.

The one engine with true incremental learning: every categorized expense
updates a CategoryProfile and a MerchantProfile in place. Suggestions combine
four weighted signals per known category:

    merchant     0.4   how often this merchant key was seen in the category
    amount       0.3   distance from the category's running mean
    description  0.2   overlap with learned description tokens
    temporal     0.1   day-of-week and time-of-day frequency (date given)

A direct or alias hit on a MerchantProfile adds a fixed high-confidence
"known merchant" candidate. Candidates for the same category are merged:
the higher score wins and reasons are combined.

State round-trips through export_profiles() / SmartCategorizer(existing_profiles=...).
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.config_loader import get_categorization_config
from core import calendar_utils
from core.models import (
    AlternativeSuggestion,
    AmountPattern,
    CategoryProfile,
    CategorySuggestion,
    DescriptionPattern,
    MerchantProfile,
    Pattern,
    PatternType,
    TemporalPattern,
    TemporalValue,
    Transaction,
    parse_datetime,
)
from core.stats import safe_ratio
from core.text_normalizer import extract_merchant_key, tokenize_description
from core.validation import coerce_transactions, to_transaction, validate_amount

logger = logging.getLogger(__name__)


class SmartCategorizer:
    """
    Learns category profiles from categorized expenses and suggests
    categories for new descriptions.

    Usage:
        categorizer = SmartCategorizer()
        categorizer.learn_from_transactions(history)
        suggestion = categorizer.suggest_category("UBER TRIP", 12.0)
    """

    def __init__(self, existing_profiles: Optional[Dict[str, Any]] = None):
        self.config = get_categorization_config()
        self.category_profiles: Dict[str, CategoryProfile] = {}
        self.merchant_profiles: Dict[str, MerchantProfile] = {}

        if existing_profiles:
            self._load_profiles(existing_profiles)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: LEARNING
    # -------------------------------------------------------------------------

    def learn_from_transaction(self, transaction: Any, now: Optional[datetime] = None) -> None:
        """
        Fold one categorized expense into the profiles. Income and
        uncategorized transactions are ignored.

        Args:
            transaction: Transaction or host dict.
            now: Learning instant for pattern bookkeeping and pruning.
                Defaults to the current time.

        Raises:
            InvalidTransactionError: If the transaction violates the caller contract.
        """
        tx = to_transaction(transaction)
        if not tx.category or not tx.is_expense:
            return

        now = now or datetime.now()
        patterns = self._extract_patterns(tx, now)
        self._update_category_profile(tx, patterns, now)
        self._update_merchant_profile(tx, now)

    def learn_from_transactions(self, transactions: Any, now: Optional[datetime] = None) -> int:
        """
        Batch learning in input order.

        Returns:
            Number of transactions that were valid (learned or ignored as
            income / uncategorized).
        """
        txns = coerce_transactions(transactions)
        for tx in txns:
            self.learn_from_transaction(tx, now=now)
        logger.info(
            f"Categorizer learned from {len(txns):,} transactions: "
            f"{len(self.category_profiles)} categories, {len(self.merchant_profiles)} merchants."
        )
        return len(txns)

    def mark_recurring(self, description: str) -> bool:
        """
        Flag the merchant behind a description as a recurring payee.

        Returns:
            True if a learned merchant profile was flagged.
        """
        profile = self.merchant_profiles.get(extract_merchant_key(description))
        if profile is None:
            return False
        profile.is_recurring = True
        return True

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: QUERIES
    # -------------------------------------------------------------------------

    def suggest_category(
        self, description: str, amount: float, date: Optional[Any] = None
    ) -> Optional[CategorySuggestion]:
        """
        Suggest a category for a description and amount.

        Args:
            description: Raw transaction description.
            amount: Non-negative amount.
            date: Optional timestamp; enables the temporal signal.

        Returns:
            Top suggestion with up to `max_alternatives` runners-up, or None
            when no candidate clears the minimum confidence.

        Raises:
            InvalidTransactionError: On a negative or non-finite amount.
        """
        amount = validate_amount(amount)
        when = parse_datetime(date) if date is not None else None

        # category -> (score, reasons)
        candidates: Dict[str, tuple] = {}

        merchant = self._find_merchant_match(description)
        if merchant is not None and merchant.common_category:
            self._merge_candidate(
                candidates,
                merchant.common_category,
                self.config["known_merchant_confidence"],
                [f"Known merchant: {merchant.name}"],
            )

        threshold = self.config["min_confidence_threshold"]
        for category, profile in self.category_profiles.items():
            score, reasons = self._calculate_category_score(description, amount, when, profile)
            if score > threshold:
                self._merge_candidate(candidates, category, score, reasons)

        if not candidates:
            return None

        ranked = sorted(candidates.items(), key=lambda item: item[1][0], reverse=True)
        top_category, (top_score, top_reasons) = ranked[0]
        alternatives = [
            AlternativeSuggestion(category=category, confidence=score)
            for category, (score, _) in ranked[1: 1 + self.config["max_alternatives"]]
        ]

        return CategorySuggestion(
            category=top_category,
            confidence=top_score,
            reasons=top_reasons,
            alternative_suggestions=alternatives or None,
        )

    def export_profiles(self) -> Dict[str, Dict[str, Any]]:
        """JSON-serializable snapshot: {"categories": {...}, "merchants": {...}}."""
        return {
            "categories": {name: p.to_dict() for name, p in self.category_profiles.items()},
            "merchants": {key: m.to_dict() for key, m in self.merchant_profiles.items()},
        }

    def get_statistics(self) -> Dict[str, Any]:
        confidences = [
            p.confidence for profile in self.category_profiles.values() for p in profile.patterns
        ]
        return {
            "categories_learned": len(self.category_profiles),
            "merchants_recognized": len(self.merchant_profiles),
            "total_patterns_learned": len(confidences),
            "avg_confidence": safe_ratio(sum(confidences), len(confidences)),
        }

    # -------------------------------------------------------------------------
    # INTERNAL: LEARNING
    # -------------------------------------------------------------------------

    def _load_profiles(self, existing_profiles: Dict[str, Any]) -> None:
        for name, data in (existing_profiles.get("categories") or {}).items():
            profile = data if isinstance(data, CategoryProfile) else CategoryProfile.from_dict(data)
            self.category_profiles[name] = profile
        for key, data in (existing_profiles.get("merchants") or {}).items():
            profile = data if isinstance(data, MerchantProfile) else MerchantProfile.from_dict(data)
            self.merchant_profiles[key] = profile
        logger.info(
            f"Categorizer restored {len(self.category_profiles)} category and "
            f"{len(self.merchant_profiles)} merchant profiles."
        )

    def _extract_patterns(self, tx: Transaction, now: datetime) -> List[Pattern]:
        seeds = self.config["pattern_seed_confidence"]
        patterns: List[Pattern] = [
            DescriptionPattern(
                value=word, confidence=seeds["description"], first_seen=now, last_seen=now
            )
            for word in tokenize_description(tx.description)
        ]
        patterns.append(AmountPattern(
            value=self._amount_bucket(tx.amount),
            confidence=seeds["amount"],
            first_seen=now,
            last_seen=now,
        ))
        patterns.append(TemporalPattern(
            value=TemporalValue(
                day_of_week=calendar_utils.day_of_week(tx.date),
                day_of_month=tx.date.day,
                hour=tx.date.hour,
            ),
            confidence=seeds["temporal"],
            first_seen=now,
            last_seen=now,
        ))
        return patterns

    def _update_category_profile(
        self, tx: Transaction, patterns: List[Pattern], now: datetime
    ) -> None:
        profile = self.category_profiles.get(tx.category)
        if profile is None:
            profile = CategoryProfile(category_name=tx.category)
            self.category_profiles[tx.category] = profile

        profile.total_transactions += 1
        profile.last_updated = now
        n = profile.total_transactions

        # Welford: running mean and population std-dev.
        delta = tx.amount - profile.avg_amount
        profile.avg_amount += delta / n
        profile.sum_of_squares += delta * (tx.amount - profile.avg_amount)
        profile.std_deviation = math.sqrt(max(profile.sum_of_squares, 0.0) / n)

        profile.min_amount = tx.amount if profile.min_amount is None else min(profile.min_amount, tx.amount)
        profile.max_amount = max(profile.max_amount, tx.amount)

        profile.time_distribution.increment(calendar_utils.time_of_day_bucket(tx.date.hour))
        profile.day_of_week_distribution[calendar_utils.day_of_week(tx.date)] += 1
        profile.monthly_distribution[min(tx.date.day - 1, 30)] += 1

        merchant_key = extract_merchant_key(tx.description)
        profile.merchant_frequency[merchant_key] = profile.merchant_frequency.get(merchant_key, 0) + 1

        existing = {p.key: p for p in profile.patterns}
        for pattern in patterns:
            match = existing.get(pattern.key)
            if match is not None:
                match.frequency += 1
                match.last_seen = now
                match.confidence = min(
                    self.config["max_pattern_confidence"],
                    match.confidence + self.config["confidence_increment"],
                )
            else:
                profile.patterns.append(pattern)
                existing[pattern.key] = pattern

        self._prune_patterns(profile, now)

    def _prune_patterns(self, profile: CategoryProfile, now: datetime) -> None:
        """Drop rare patterns not seen within the retention window."""
        cutoff = calendar_utils.subtract_months(now, self.config["prune_after_months"])
        max_frequency = self.config["prune_max_frequency"]
        before = len(profile.patterns)
        profile.patterns = [
            p for p in profile.patterns
            if p.frequency > max_frequency or (p.last_seen is not None and p.last_seen > cutoff)
        ]
        pruned = before - len(profile.patterns)
        if pruned:
            logger.debug(f"Pruned {pruned} stale patterns from '{profile.category_name}'.")

    def _update_merchant_profile(self, tx: Transaction, now: datetime) -> None:
        merchant_key = extract_merchant_key(tx.description)
        profile = self.merchant_profiles.get(merchant_key)

        if profile is None:
            self.merchant_profiles[merchant_key] = MerchantProfile(
                name=merchant_key,
                aliases=[tx.description],
                common_category=tx.category,
                avg_amount=tx.amount,
                transaction_count=1,
                last_seen=now,
                category_counts={tx.category: 1},
            )
            return

        profile.transaction_count += 1
        n = profile.transaction_count
        profile.avg_amount = (profile.avg_amount * (n - 1) + tx.amount) / n
        profile.last_seen = now
        if tx.description not in profile.aliases:
            profile.aliases.append(tx.description)

        # Majority category; a tie keeps the current one.
        counts = profile.category_counts
        counts[tx.category] = counts.get(tx.category, 0) + 1
        if counts[tx.category] > counts.get(profile.common_category, 0):
            profile.common_category = tx.category

    def _amount_bucket(self, amount: float) -> str:
        for bucket, upper in self.config["amount_buckets"].items():
            if amount < upper:
                return bucket
        return "extra-large"

    # -------------------------------------------------------------------------
    # INTERNAL: SCORING
    # -------------------------------------------------------------------------

    def _calculate_category_score(
        self,
        description: str,
        amount: float,
        when: Optional[datetime],
        profile: CategoryProfile,
    ) -> tuple:
        weights = self.config["weights"]
        thresholds = self.config["reason_thresholds"]
        score = 0.0
        reasons: List[str] = []

        merchant_freq = profile.merchant_frequency.get(extract_merchant_key(description), 0)
        if merchant_freq > 0:
            merchant_score = min(1.0, merchant_freq / self.config["merchant_saturation"])
            score += merchant_score * weights["merchant"]
            if merchant_score > thresholds["merchant"]:
                reasons.append("Recognized merchant pattern")

        amount_score = self._calculate_amount_score(amount, profile)
        score += amount_score * weights["amount"]
        if amount_score > thresholds["amount"]:
            low = profile.min_amount if profile.min_amount is not None else 0.0
            reasons.append(f"Typical amount range ({low:.0f}-{profile.max_amount:.0f})")

        description_score = self._calculate_description_score(description, profile)
        score += description_score * weights["description"]
        if description_score > thresholds["description"]:
            reasons.append("Matching description patterns")

        if when is not None:
            temporal_score = self._calculate_temporal_score(when, profile)
            score += temporal_score * weights["temporal"]
            if temporal_score > thresholds["temporal"]:
                reasons.append("Typical time pattern")

        return score, reasons

    def _calculate_amount_score(self, amount: float, profile: CategoryProfile) -> float:
        scores = self.config["amount_scores"]
        if profile.total_transactions < self.config["min_amount_history"]:
            return scores["insufficient_history"]

        distance = abs(amount - profile.avg_amount)
        if distance <= profile.std_deviation:
            return scores["within_one_std"]
        if distance <= 2 * profile.std_deviation:
            return scores["within_two_std"]
        if profile.min_amount is not None and profile.min_amount <= amount <= profile.max_amount:
            return scores["within_range"]
        return scores["outside"]

    def _calculate_description_score(self, description: str, profile: CategoryProfile) -> float:
        words = set(tokenize_description(description))
        match_count = 0
        total = 0
        for pattern in profile.patterns:
            if pattern.pattern_type is not PatternType.DESCRIPTION:
                continue
            total += pattern.frequency
            if pattern.value in words:
                match_count += pattern.frequency

        if total == 0:
            return 0.0
        denominator = max(
            self.config["description_min_denominator"],
            total * self.config["description_frequency_factor"],
        )
        return min(1.0, match_count / denominator)

    def _calculate_temporal_score(self, when: datetime, profile: CategoryProfile) -> float:
        blend = self.config["temporal_blend"]

        day_frequency = profile.day_of_week_distribution[calendar_utils.day_of_week(when)]
        avg_day_frequency = profile.total_transactions / 7
        day_score = min(1.0, day_frequency / max(1.0, avg_day_frequency))

        bucket_count = profile.time_distribution.get(calendar_utils.time_of_day_bucket(when.hour))
        time_score = safe_ratio(bucket_count, profile.time_distribution.total())

        return day_score * blend["day_of_week"] + time_score * blend["time_of_day"]

    def _find_merchant_match(self, description: str) -> Optional[MerchantProfile]:
        merchant_key = extract_merchant_key(description)
        if not merchant_key:
            return None

        direct = self.merchant_profiles.get(merchant_key)
        if direct is not None:
            return direct

        for profile in self.merchant_profiles.values():
            for alias in profile.aliases:
                alias_lower = alias.lower()
                if alias_lower and (merchant_key in alias_lower or alias_lower in merchant_key):
                    return profile
        return None

    @staticmethod
    def _merge_candidate(
        candidates: Dict[str, tuple], category: str, score: float, reasons: List[str]
    ) -> None:
        if category not in candidates:
            candidates[category] = (score, list(reasons))
            return
        current_score, current_reasons = candidates[category]
        merged = current_reasons + [r for r in reasons if r not in current_reasons]
        candidates[category] = (max(current_score, score), merged)
