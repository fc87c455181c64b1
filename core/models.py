"""
models.py
----------
Core domain models. These are the typed contracts between the engines and
their callers.

- Transaction: read-only input record owned by the host ledger.
- CategoryProfile / MerchantProfile: SmartCategorizer's learned state.
  Serializable via to_dict()/from_dict() so hosts can persist snapshots.
- Pattern: tagged union of learned fragments (description / amount / temporal).
- SpendingProfile / VelocityProfile: AnomalyDetector's rebuilt state.
- RecurringPattern / PredictedTransaction: RecurrenceDetector output.
- AnomalyAlert / CategorySuggestion: ephemeral query results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

import pandas as pd

from config.config_loader import get_categorization_config


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class AlertType(str, Enum):
    """Anomaly alert categories"""
    AMOUNT = "amount"
    MERCHANT = "merchant"
    FREQUENCY = "frequency"
    DUPLICATE = "duplicate"
    TIME = "time"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecurrenceType(str, Enum):
    """Periodicity of a recurring payment"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class PatternType(str, Enum):
    DESCRIPTION = "description"
    AMOUNT = "amount"
    TEMPORAL = "temporal"


def parse_datetime(value: Any) -> datetime:
    """
    Coerce a str / date / datetime / pandas Timestamp into a naive datetime.

    Date-only inputs ("2024-03-01") become midnight of that day.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(value, datetime) and not isinstance(value, pd.Timestamp):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("Missing date")
    ts = pd.Timestamp(value)
    if pd.isna(ts):
        raise ValueError(f"Unparseable date: {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.to_pydatetime()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Any) -> Optional[datetime]:
    return parse_datetime(value) if value is not None else None


# =============================================================================
# INPUT
# =============================================================================

@dataclass
class Transaction:
    """
    A ledger transaction as supplied by the host.

    The engines only read transactions; they never mutate them.
    """

    id: str
    description: str
    amount: float
    date: datetime
    category: str
    type: str = TransactionType.EXPENSE.value        # "income" | "expense"
    status: str = TransactionStatus.PAID.value       # "pending" | "paid"
    is_recurring: bool = False

    @property
    def is_expense(self) -> bool:
        return self.type == TransactionType.EXPENSE.value

    @property
    def is_paid_expense(self) -> bool:
        return self.is_expense and self.status == TransactionStatus.PAID.value

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "Transaction":
        """
        Build a Transaction from a host record. Accepts the host's camelCase
        keys (isRecurring) as well as snake_case.

        Raises:
            ValueError / KeyError / TypeError: On malformed records. Callers
                convert these into InvalidTransactionError (see core.validation).
        """
        amount = record["amount"]
        if isinstance(amount, str):
            amount = float(amount)
        return cls(
            id=str(record.get("id", "")),
            description=str(record.get("description") or ""),
            amount=float(amount),
            date=parse_datetime(record["date"]),
            category=str(record.get("category") or ""),
            type=str(record.get("type", TransactionType.EXPENSE.value)),
            status=str(record.get("status", TransactionStatus.PAID.value)),
            is_recurring=bool(record.get("is_recurring", record.get("isRecurring", False))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": self.amount,
            "date": _iso(self.date),
            "category": self.category,
            "type": self.type,
            "status": self.status,
            "is_recurring": self.is_recurring,
        }


# =============================================================================
# LEARNED PATTERNS (tagged union keyed by PatternType)
# =============================================================================

@dataclass(frozen=True)
class TemporalValue:
    """Payload of a temporal pattern. day_of_week: 0 = Sunday."""
    day_of_week: int
    day_of_month: int
    hour: int


@dataclass
class Pattern:
    """
    Base for learned fragments. Subclasses fix `pattern_type` and the shape
    of `value`; two patterns merge when both type and value are equal.
    """

    pattern_type: ClassVar[PatternType]

    value: Any
    frequency: int = 1
    confidence: float = 0.5
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.pattern_type, self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.pattern_type.value,
            "value": self._value_to_json(),
            "frequency": self.frequency,
            "confidence": self.confidence,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
        }

    def _value_to_json(self) -> Any:
        return self.value

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Pattern":
        pattern_cls = _PATTERN_TYPES.get(data.get("type"))
        if pattern_cls is None:
            raise ValueError(f"Unknown pattern type: {data.get('type')!r}")
        return pattern_cls(
            value=pattern_cls._value_from_json(data["value"]),
            frequency=int(data.get("frequency", 1)),
            confidence=float(data.get("confidence", 0.5)),
            first_seen=_from_iso(data.get("first_seen")),
            last_seen=_from_iso(data.get("last_seen")),
        )

    @staticmethod
    def _value_from_json(value: Any) -> Any:
        return value


@dataclass
class DescriptionPattern(Pattern):
    """A description token, e.g. "netflix"."""
    pattern_type: ClassVar[PatternType] = PatternType.DESCRIPTION


@dataclass
class AmountPattern(Pattern):
    """An amount bucket: micro | small | medium | large | extra-large."""
    pattern_type: ClassVar[PatternType] = PatternType.AMOUNT


@dataclass
class TemporalPattern(Pattern):
    pattern_type: ClassVar[PatternType] = PatternType.TEMPORAL

    def _value_to_json(self) -> Any:
        return {
            "day_of_week": self.value.day_of_week,
            "day_of_month": self.value.day_of_month,
            "hour": self.value.hour,
        }

    @staticmethod
    def _value_from_json(value: Any) -> Any:
        return TemporalValue(
            day_of_week=int(value["day_of_week"]),
            day_of_month=int(value["day_of_month"]),
            hour=int(value["hour"]),
        )


_PATTERN_TYPES = {
    PatternType.DESCRIPTION.value: DescriptionPattern,
    PatternType.AMOUNT.value: AmountPattern,
    PatternType.TEMPORAL.value: TemporalPattern,
}


# =============================================================================
# SMART CATEGORIZER STATE
# =============================================================================

@dataclass
class TimeDistribution:
    """Counts by time-of-day bucket."""
    morning: int = 0     # 6-12
    afternoon: int = 0   # 12-18
    evening: int = 0     # 18-24
    night: int = 0       # 0-6

    def total(self) -> int:
        return self.morning + self.afternoon + self.evening + self.night

    def get(self, bucket: str) -> int:
        return getattr(self, bucket)

    def increment(self, bucket: str) -> None:
        setattr(self, bucket, getattr(self, bucket) + 1)


@dataclass
class CategoryProfile:
    """
    Incrementally learned aggregate for one category.

    Created lazily on the first learned transaction; never deleted.
    """

    category_name: str
    avg_amount: float = 0.0
    std_deviation: float = 0.0
    min_amount: Optional[float] = None               # None until the first transaction
    max_amount: float = 0.0
    time_distribution: TimeDistribution = field(default_factory=TimeDistribution)
    day_of_week_distribution: List[int] = field(default_factory=lambda: [0] * 7)   # 0 = Sunday
    monthly_distribution: List[int] = field(default_factory=lambda: [0] * 31)      # index 0 = 1st
    merchant_frequency: Dict[str, int] = field(default_factory=dict)
    patterns: List[Pattern] = field(default_factory=list)
    total_transactions: int = 0
    last_updated: Optional[datetime] = None
    sum_of_squares: float = 0.0                      # Welford M2 accumulator

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_name": self.category_name,
            "avg_amount": self.avg_amount,
            "std_deviation": self.std_deviation,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "time_distribution": {
                "morning": self.time_distribution.morning,
                "afternoon": self.time_distribution.afternoon,
                "evening": self.time_distribution.evening,
                "night": self.time_distribution.night,
            },
            "day_of_week_distribution": list(self.day_of_week_distribution),
            "monthly_distribution": list(self.monthly_distribution),
            "merchant_frequency": dict(self.merchant_frequency),
            "patterns": [p.to_dict() for p in self.patterns],
            "total_transactions": self.total_transactions,
            "last_updated": _iso(self.last_updated),
            "sum_of_squares": self.sum_of_squares,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryProfile":
        total = int(data.get("total_transactions", 0))
        std = float(data.get("std_deviation", 0.0))
        # Snapshots without the accumulator rebuild it from the population std-dev.
        sum_of_squares = data.get("sum_of_squares")
        if sum_of_squares is None:
            sum_of_squares = std * std * total
        min_amount = data.get("min_amount")
        return cls(
            category_name=str(data["category_name"]),
            avg_amount=float(data.get("avg_amount", 0.0)),
            std_deviation=std,
            min_amount=float(min_amount) if min_amount is not None else None,
            max_amount=float(data.get("max_amount", 0.0)),
            time_distribution=TimeDistribution(**data.get("time_distribution", {})),
            day_of_week_distribution=list(data.get("day_of_week_distribution", [0] * 7)),
            monthly_distribution=list(data.get("monthly_distribution", [0] * 31)),
            merchant_frequency=dict(data.get("merchant_frequency", {})),
            patterns=[Pattern.from_dict(p) for p in data.get("patterns", [])],
            total_transactions=total,
            last_updated=_from_iso(data.get("last_updated")),
            sum_of_squares=float(sum_of_squares),
        )


@dataclass
class MerchantProfile:
    """Learned profile for one merchant key."""

    name: str
    aliases: List[str] = field(default_factory=list)       # raw spellings, unique, first-seen order
    common_category: str = ""
    avg_amount: float = 0.0
    transaction_count: int = 0
    last_seen: Optional[datetime] = None
    category_counts: Dict[str, int] = field(default_factory=dict)
    is_recurring: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "aliases": list(self.aliases),
            "common_category": self.common_category,
            "avg_amount": self.avg_amount,
            "transaction_count": self.transaction_count,
            "last_seen": _iso(self.last_seen),
            "category_counts": dict(self.category_counts),
            "is_recurring": self.is_recurring,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerchantProfile":
        common = str(data.get("common_category", ""))
        count = int(data.get("transaction_count", 0))
        return cls(
            name=str(data["name"]),
            aliases=list(data.get("aliases", [])),
            common_category=common,
            avg_amount=float(data.get("avg_amount", 0.0)),
            transaction_count=count,
            last_seen=_from_iso(data.get("last_seen")),
            category_counts=dict(data.get("category_counts") or ({common: count} if common else {})),
            is_recurring=bool(data.get("is_recurring", False)),
        )


# =============================================================================
# ANOMALY DETECTOR STATE
# =============================================================================

@dataclass
class SpendingProfile:
    """Per-category amount and timing statistics. Rebuilt wholesale."""

    category: str
    mean: float
    std_dev: float
    median: float
    percentile_95: float
    min_amount: float
    max_amount: float
    typical_time_of_day: List[int]      # 24 hour buckets
    typical_day_of_week: List[int]      # 0 = Sunday
    known_merchants: set = field(default_factory=set)


@dataclass
class VelocityProfile:
    """Global spending-rate limits derived from daily groupings."""

    max_daily_transactions: int = 20
    max_hourly_transactions: int = 5
    max_daily_amount: float = 1000.0
    typical_daily_transactions: float = 5.0
    typical_daily_amount: float = 200.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_daily_transactions": self.max_daily_transactions,
            "max_hourly_transactions": self.max_hourly_transactions,
            "max_daily_amount": self.max_daily_amount,
            "typical_daily_transactions": self.typical_daily_transactions,
            "typical_daily_amount": self.typical_daily_amount,
        }


# =============================================================================
# RECURRENCE OUTPUT
# =============================================================================

@dataclass
class RecurringPattern:
    """
    A detected recurring payment.

    `amounts` holds the true amount of every occurrence so updates can
    recompute the mean and variance exactly.
    """

    type: str                          # RecurrenceType value
    interval: int                      # average days between occurrences, rounded
    expected_amount: float
    amount_variance: float             # population std-dev of amounts
    next_expected_date: datetime
    confidence: float
    occurrences: List[datetime] = field(default_factory=list)
    amounts: List[float] = field(default_factory=list)
    description: str = ""              # normalized base description of the group

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "interval": self.interval,
            "expected_amount": self.expected_amount,
            "amount_variance": self.amount_variance,
            "next_expected_date": _iso(self.next_expected_date),
            "confidence": self.confidence,
            "occurrences": [_iso(d) for d in self.occurrences],
            "amounts": list(self.amounts),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurringPattern":
        occurrences = [parse_datetime(d) for d in data.get("occurrences", [])]
        amounts = [float(a) for a in data.get("amounts", [])]
        if not amounts:
            amounts = [float(data["expected_amount"])] * len(occurrences)
        return cls(
            type=str(data["type"]),
            interval=int(data["interval"]),
            expected_amount=float(data["expected_amount"]),
            amount_variance=float(data.get("amount_variance", 0.0)),
            next_expected_date=parse_datetime(data["next_expected_date"]),
            confidence=float(data["confidence"]),
            occurrences=occurrences,
            amounts=amounts,
            description=str(data.get("description", "")),
        )


@dataclass
class PredictedTransaction:
    description: str
    amount: float
    category: str
    date: datetime
    confidence: float
    is_recurring: bool = True
    based_on: Optional[str] = None     # e.g. "pattern_monthly_30"


# =============================================================================
# QUERY RESULTS
# =============================================================================

@dataclass
class AlertDetails:
    expected: Any = None
    actual: Any = None
    deviation: Optional[float] = None


@dataclass
class AnomalyAlert:
    """A single anomaly finding for a candidate transaction."""

    type: str                          # AlertType value
    severity: str                      # Severity value
    message: str
    details: AlertDetails = field(default_factory=AlertDetails)


@dataclass
class AlternativeSuggestion:
    category: str
    confidence: float


@dataclass
class CategorySuggestion:
    """Top category suggestion with explanation and runners-up."""

    category: str
    confidence: float
    reasons: List[str] = field(default_factory=list)
    alternative_suggestions: Optional[List[AlternativeSuggestion]] = None

    @property
    def confidence_level(self) -> str:
        """Band used by entry forms to render the suggestion."""
        cfg = get_categorization_config()
        if self.confidence > cfg["high_confidence_threshold"]:
            return "high"
        if self.confidence > cfg["medium_confidence_threshold"]:
            return "medium"
        return "low"
