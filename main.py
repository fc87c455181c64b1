"""
main.py
--------
Entry point for the Ledger Pattern Recognition Engine.

Reads a ledger export (JSON), trains the engines, prints recurring payments
and upcoming predictions, and optionally analyzes a candidate transaction.

Usage (from the project root):
    python main.py --input ledger.json

    # With optional arguments:
    python main.py --input ledger.json --days-ahead 60 --as-of 2024-06-30
    python main.py --input ledger.json --description "NETFLIX.COM" --amount 15.99
    python main.py --input ledger.json --export state.json
"""

import sys
import os
import argparse
import json
import logging
from datetime import datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.errors import PatternRecognitionError
from core.models import parse_datetime
from pipeline import CandidateInsights, PatternRecognitionPipeline


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ledger Pattern Recognition Engine: categories, anomalies and recurring payments."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to a JSON file: a list of transactions, or an object with a 'transactions' key."
    )
    parser.add_argument(
        "--days-ahead", type=int, default=30,
        help="Prediction window for upcoming recurring payments. Default: 30."
    )
    parser.add_argument(
        "--as-of", type=str, default=None,
        help="Reference date (YYYY-MM-DD) for time windows and predictions. Defaults to now."
    )
    parser.add_argument("--description", type=str, default=None, help="Candidate description to analyze.")
    parser.add_argument("--amount", type=float, default=None, help="Candidate amount to analyze.")
    parser.add_argument("--category", type=str, default=None, help="Candidate category (optional).")
    parser.add_argument("--date", type=str, default=None, help="Candidate date (optional).")
    parser.add_argument(
        "--export", type=str, default=None,
        help="Write the pattern storage blob to this path."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def load_transactions(path: str) -> list:
    with open(path, "r") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        payload = payload.get("transactions", [])
    if not isinstance(payload, list):
        raise ValueError(f"Expected a list of transactions in {path}")
    return payload


def main(argv=None) -> int:
    args = parse_args(argv)

    # --- Load transactions ---
    logger.info(f"Loading transactions from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        return 1

    try:
        transactions = load_transactions(args.input)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read transactions: {e}")
        return 1
    logger.info(f"Loaded {len(transactions):,} transaction records.")

    as_of = parse_datetime(args.as_of) if args.as_of else datetime.now()

    # --- Train ---
    pipeline = PatternRecognitionPipeline()
    try:
        pipeline.train(transactions, as_of=as_of)
    except PatternRecognitionError as e:
        logger.error(f"Training failed: {e}")
        return 1

    _print_summary(pipeline, args.days_ahead, as_of)

    # --- Optional: candidate analysis ---
    if args.description is not None and args.amount is not None:
        try:
            insights = pipeline.analyze_candidate(
                args.description,
                args.amount,
                category=args.category,
                date=args.date or as_of,
            )
        except PatternRecognitionError as e:
            logger.error(f"Candidate rejected: {e}")
            return 1
        _print_candidate(args.description, args.amount, insights)

    # --- Optional: export ---
    if args.export:
        with open(args.export, "w") as f:
            json.dump(pipeline.export_state(), f, indent=2)
        logger.info(f"Pattern state saved to: {args.export}")

    return 0


def _print_summary(pipeline: PatternRecognitionPipeline, days_ahead: int, as_of: datetime):
    """Prints recurring patterns and upcoming payments to the console."""
    print("\n" + "=" * 80)
    print("  RECURRING PAYMENTS")
    print("=" * 80)

    if not pipeline.recurring_patterns:
        print("\n  No recurring payments detected.")
    for p in pipeline.recurring_patterns:
        print(
            f"    {p.description[:30]:30s}  {p.type:10s}  {p.expected_amount:>10,.2f}"
            f"  next {p.next_expected_date:%Y-%m-%d}  ({p.confidence:.0%})"
        )

    upcoming = pipeline.upcoming(days_ahead=days_ahead, today=as_of)
    print(f"\n  Upcoming ({days_ahead} days):")
    print("  " + "-" * 60)
    if not upcoming:
        print("    None.")
    for u in upcoming:
        print(f"    {u.date:%Y-%m-%d}  {u.description:30s}  {u.amount:>10,.2f}")

    stats = pipeline.categorizer.get_statistics()
    print(
        f"\n  Categories learned: {stats['categories_learned']:,}   "
        f"Merchants recognized: {stats['merchants_recognized']:,}"
    )
    print("=" * 80 + "\n")


def _print_candidate(description: str, amount: float, insights: CandidateInsights):
    print(f"  CANDIDATE: {description}  {amount:,.2f}")
    print("  " + "-" * 60)

    s = insights.suggestion
    if s is None:
        print("    Suggested category: none")
    else:
        print(f"    Suggested category: {s.category} ({s.confidence:.0%}, {s.confidence_level})")
        for reason in s.reasons:
            print(f"      - {reason}")
        for alt in s.alternative_suggestions or []:
            print(f"      alt: {alt.category} ({alt.confidence:.0%})")

    for alert in insights.alerts:
        print(f"    [{alert.severity.upper():6s}] {alert.type}: {alert.message}")

    if insights.matching_pattern is not None:
        p = insights.matching_pattern
        print(f"    Looks like a {p.type} recurring payment of {p.expected_amount:,.2f}")
    print()


if __name__ == "__main__":
    sys.exit(main())
