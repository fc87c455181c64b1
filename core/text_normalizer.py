"""
text_normalizer.py
-------------------
Description normalization shared by all three engines.

Every engine must derive merchant keys and similarity the same way, or the
categorizer, the anomaly detector and the recurrence detector would disagree
about which transactions belong to the same payee. These functions are pure.

    extract_merchant_key("Payment to STARBUCKS 4521 12/01/24")  ->  "starbucks"
    tokenize_description("UBER *TRIP HELP.UBER.COM")            ->  ["uber", "trip", "help", "uber", "com"]
    normalize_description("NETFLIX.COM 123456 01/02/2024")      ->  "netflixcom"
"""

import re
from functools import lru_cache
from typing import List, Sequence

from config.config_loader import get_text_normalization_config


_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_LONG_NUMBER = re.compile(r"\b\d{4,}\b")
_NUMERIC_ID = re.compile(r"\d{4,}")
# 12/01/24, 1-2-2024, 2024-01-02
_DATE_LIKE = re.compile(
    r"\b\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}\b|\b\d{4}[/.-]\d{1,2}[/.-]\d{1,2}\b"
)


@lru_cache(maxsize=8)
def _prefix_pattern(prefixes: tuple) -> re.Pattern:
    # Longest first so "payment to" wins over shorter alternatives.
    alternatives = sorted(prefixes, key=len, reverse=True)
    return re.compile(r"^(?:" + "|".join(re.escape(p) for p in alternatives) + r")\s+")


def extract_merchant_key(description: str) -> str:
    """
    Reduce a description to a short merchant key.

    Steps: lower-case, drop embedded dates, strip leading transaction
    prefixes, drop punctuation, strip trailing suffix words and trailing
    numeric IDs until stable, then keep the first few tokens.
    """
    cfg = get_text_normalization_config()
    suffixes = set(cfg["merchant_suffixes"])
    prefix_re = _prefix_pattern(tuple(cfg["merchant_prefixes"]))

    cleaned = _DATE_LIKE.sub(" ", (description or "").lower()).strip()
    cleaned = _WHITESPACE.sub(" ", cleaned)

    # Prefixes can stack ("from at ..."); strip until none match.
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = prefix_re.sub("", cleaned, count=1)

    tokens = _PUNCTUATION.sub(" ", cleaned).split()
    trimmed = list(tokens)
    while trimmed and (trimmed[-1] in suffixes or _NUMERIC_ID.fullmatch(trimmed[-1])):
        trimmed.pop()

    # A description made only of suffix words keeps its words rather than
    # collapsing to an empty key.
    if not trimmed:
        trimmed = tokens

    return " ".join(trimmed[: cfg["merchant_key_max_tokens"]]).strip()


def tokenize_description(description: str) -> List[str]:
    """Meaningful lower-case words of a description, stop words removed."""
    cfg = get_text_normalization_config()
    stop_words = set(cfg["stop_words"])
    min_length = cfg["min_token_length"]
    words = _PUNCTUATION.sub(" ", (description or "").lower()).split()
    return [w for w in words if len(w) >= min_length and w not in stop_words]


def normalize_description(description: str) -> str:
    """Base description used to group recurring payments."""
    text = _DATE_LIKE.sub(" ", (description or "").lower())
    text = _PUNCTUATION.sub("", text)
    text = _LONG_NUMBER.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def word_overlap(words_a: Sequence[str], words_b: Sequence[str], min_word_length: int) -> int:
    """Count of distinct words in both sequences that are at least `min_word_length` long."""
    set_b = set(words_b)
    return sum(1 for w in set(words_a) if w in set_b and len(w) >= min_word_length)


def descriptions_are_similar(desc1: str, desc2: str, threshold: float) -> bool:
    """
    True when two already-normalized strings name the same payee.

    Matches on equality, on non-empty containment, or when the shared
    long words reach `threshold` of the smaller word set.
    """
    if desc1 == desc2:
        return True
    if not desc1 or not desc2:
        return False
    if desc1 in desc2 or desc2 in desc1:
        return True

    words1 = set(desc1.split())
    words2 = set(desc2.split())
    if not words1 or not words2:
        return False

    min_length = get_text_normalization_config()["min_overlap_word_length"]
    overlap = word_overlap(words1, words2, min_length)
    return overlap > 0 and overlap >= min(len(words1), len(words2)) * threshold
