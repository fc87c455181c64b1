"""
validation.py
--------------
Input validation and coercion for transaction batches.

Queries fail fast on contract violations. Batch builds follow the
`validation.skip_invalid_transactions` setting: skip (and log) or raise.
"""

import logging
import math
from typing import Any, Iterable, List, Optional

import pandas as pd

from config.config_loader import get_validation_config
from core.errors import InvalidTransactionError
from core.models import Transaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

_VALID_TYPES = {t.value for t in TransactionType}
_VALID_STATUSES = {s.value for s in TransactionStatus}


def _is_missing(value: Any) -> bool:
    # DataFrame rows carry NaN for empty cells.
    return value is None or (isinstance(value, float) and math.isnan(value))


def validate_amount(amount: Any) -> float:
    """
    Raises:
        InvalidTransactionError: If the amount is not a finite, non-negative number.
    """
    try:
        value = float(amount)
    except (TypeError, ValueError) as e:
        raise InvalidTransactionError(f"Amount is not numeric: {amount!r}") from e
    if not math.isfinite(value):
        raise InvalidTransactionError(f"Amount is not finite: {amount!r}")
    if value < 0:
        raise InvalidTransactionError(f"Amount is negative: {amount!r}")
    return value


def validate_transaction(transaction: Transaction) -> Transaction:
    """
    Check a Transaction against the caller contract.

    Raises:
        InvalidTransactionError: On a negative/non-finite amount, an unknown
            type or status, a missing description, or a missing date.
    """
    validate_amount(transaction.amount)
    if not isinstance(transaction.description, str):
        raise InvalidTransactionError(f"Transaction {transaction.id!r} has no description")
    if transaction.type not in _VALID_TYPES:
        raise InvalidTransactionError(
            f"Transaction {transaction.id!r} has unknown type {transaction.type!r}"
        )
    if transaction.status not in _VALID_STATUSES:
        raise InvalidTransactionError(
            f"Transaction {transaction.id!r} has unknown status {transaction.status!r}"
        )
    if transaction.date is None:
        raise InvalidTransactionError(f"Transaction {transaction.id!r} has no date")
    return transaction


def to_transaction(record: Any) -> Transaction:
    """
    Coerce a Transaction or a host record (mapping) into a validated Transaction.

    Raises:
        InvalidTransactionError: If the record cannot be parsed or is invalid.
    """
    if isinstance(record, Transaction):
        return validate_transaction(record)
    if isinstance(record, dict) and _is_missing(record.get("description")):
        raise InvalidTransactionError(f"Transaction record has no description: {record!r}")
    try:
        transaction = Transaction.from_dict(record)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise InvalidTransactionError(f"Malformed transaction record {record!r}: {e}") from e
    return validate_transaction(transaction)


def coerce_transactions(
    transactions: Any, skip_invalid: Optional[bool] = None
) -> List[Transaction]:
    """
    Normalize a batch into a list of validated Transactions.

    Args:
        transactions: Iterable of Transaction objects or host dicts, or a
            pandas DataFrame with one row per transaction.
        skip_invalid: Override the configured skip/fail policy.

    Returns:
        Validated transactions in input order.

    Raises:
        InvalidTransactionError: On the first bad record when skipping is off.
    """
    if transactions is None:
        return []
    if skip_invalid is None:
        skip_invalid = bool(get_validation_config()["skip_invalid_transactions"])

    records: Iterable[Any]
    if isinstance(transactions, pd.DataFrame):
        records = transactions.to_dict("records")
    else:
        records = transactions

    result: List[Transaction] = []
    skipped = 0
    for record in records:
        try:
            result.append(to_transaction(record))
        except InvalidTransactionError as e:
            if not skip_invalid:
                raise
            skipped += 1
            logger.warning(f"Skipping invalid transaction: {e}")

    if skipped:
        logger.info(f"Skipped {skipped:,} invalid transactions out of {skipped + len(result):,}.")
    return result
