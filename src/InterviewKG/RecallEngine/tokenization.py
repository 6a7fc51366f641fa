"""Tokenization and analysis shared by the text index, the cache and highlights."""
from __future__ import annotations

import hashlib
import re
from functools import lru_cache
from typing import FrozenSet, Iterable, List, Sequence, Tuple

__all__ = (
    "STOPWORDS",
    "analyze",
    "fingerprint",
    "stem",
    "tokenize",
    "tokenize_with_spans",
)

_TOKEN_PATTERN = re.compile(r"[\w']+")

STOPWORDS: FrozenSet[str] = frozenset(
    {
        "a", "about", "above", "after", "again", "against", "all", "am", "an", "and",
        "any", "are", "as", "at", "be", "because", "been", "before", "being", "below",
        "between", "both", "but", "by", "can", "could", "did", "do", "does", "doing",
        "down", "during", "each", "few", "for", "from", "further", "had", "has", "have",
        "having", "he", "her", "here", "hers", "herself", "him", "himself", "his", "how",
        "i", "i'm", "if", "in", "into", "is", "it", "it's", "its", "itself", "just", "me",
        "more", "most", "my", "myself", "no", "nor", "not", "now", "of", "off", "on",
        "once", "only", "or", "other", "our", "ours", "ourselves", "out", "over", "own",
        "same", "she", "should", "so", "some", "such", "than", "that", "that's", "the",
        "their", "theirs", "them", "themselves", "then", "there", "these", "they", "this",
        "those", "through", "to", "too", "under", "until", "up", "very", "was", "we",
        "were", "what", "what's", "when", "where", "which", "while", "who", "whom", "why",
        "will", "with", "would", "you", "your", "yours", "yourself", "yourselves",
    }
)

# (suffix, replacement, minimum stem length left after stripping); first match wins.
_SUFFIX_RULES: Tuple[Tuple[str, str, int], ...] = (
    ("ational", "ate", 2),
    ("tional", "tion", 2),
    ("iveness", "ive", 2),
    ("fulness", "ful", 2),
    ("ousness", "ous", 2),
    ("ization", "ize", 2),
    ("isation", "ize", 2),
    ("ements", "e", 3),
    ("ement", "e", 3),
    ("ments", "", 3),
    ("ment", "", 3),
    ("ness", "", 3),
    ("ings", "", 3),
    ("ing", "", 3),
    ("ies", "y", 2),
    ("ied", "y", 2),
    ("ily", "y", 3),
    ("ally", "al", 3),
    ("ly", "", 4),
    ("ers", "er", 3),
    ("sses", "ss", 2),
    ("ed", "", 3),
    ("es", "e", 3),
    ("s", "", 3),
)

_IRREGULAR_STEMS = {
    "children": "child",
    "people": "person",
    "men": "man",
    "women": "woman",
    "analyses": "analysis",
    "indices": "index",
}


def tokenize(text: str) -> List[str]:
    """Tokenize text into lowercase alphanumeric tokens."""

    return [token.lower() for token in _TOKEN_PATTERN.findall(text)]


def tokenize_with_spans(text: str) -> Tuple[List[str], List[Tuple[int, int]]]:
    """Return tokens alongside their character spans."""

    tokens: List[str] = []
    spans: List[Tuple[int, int]] = []
    for match in _TOKEN_PATTERN.finditer(text):
        tokens.append(match.group(0).lower())
        spans.append((match.start(), match.end()))
    return tokens, spans


@lru_cache(maxsize=65536)
def stem(word: str) -> str:
    """Strip common English suffixes from a lowercase ``word``.

    The rules are a light Porter-style subset: good enough for keyword matching
    (``systems`` and ``system`` collapse) while staying deterministic.

    Args:
        word: Lowercase token.

    Returns:
        Stemmed token (``word`` unchanged when no rule applies).

    Examples:
        >>> stem("systems"), stem("distributed"), stem("interviews")
        ('system', 'distribut', 'interview')
    """
    if word in _IRREGULAR_STEMS:
        return _IRREGULAR_STEMS[word]
    if len(word) <= 3 or not word.isalpha():
        return word
    for suffix, replacement, min_remaining in _SUFFIX_RULES:
        if not word.endswith(suffix):
            continue
        base = word[: -len(suffix)]
        if len(base) < min_remaining:
            continue
        if suffix == "s" and base.endswith(("s", "u", "i")):
            return word
        return base + replacement
    return word


def analyze(
    text: str,
    *,
    use_stemming: bool = True,
    min_token_length: int = 2,
    stopwords: Iterable[str] = STOPWORDS,
) -> List[str]:
    """Lowercase, tokenize, drop stopwords, and stem ``text``.

    Args:
        text: Raw text to analyse.
        use_stemming: Apply :func:`stem` to every surviving token.
        min_token_length: Drop tokens shorter than this after stemming; numeric
            tokens are always kept because years/amounts carry meaning.
        stopwords: Tokens removed before stemming.

    Returns:
        Analysed tokens in document order (duplicates preserved for TF).
    """
    stop = stopwords if isinstance(stopwords, (set, frozenset)) else frozenset(stopwords)
    analysed: List[str] = []
    for token in tokenize(text):
        if token in stop:
            continue
        token = token.strip("'")
        if not token:
            continue
        term = stem(token) if use_stemming else token
        if len(term) < min_token_length and not term.isdigit():
            continue
        analysed.append(term)
    return analysed


def fingerprint(text: str) -> str:
    """Return a coarse, order-insensitive fingerprint of ``text``.

    Two queries that analyse to the same set of terms share a fingerprint, so
    near-identical phrasings ("What is the notice period?" / "what's the
    notice period") coalesce in the semantic cache's single-flight table.
    """

    terms: Sequence[str] = sorted(set(analyze(text)))
    if not terms:
        terms = sorted(set(tokenize(text)))
    digest = hashlib.sha1("\x1f".join(terms).encode("utf-8"))
    return digest.hexdigest()
