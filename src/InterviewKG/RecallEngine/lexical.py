"""In-memory inverted index scored with Okapi BM25.

``TextIndex`` is the keyword channel of hybrid retrieval. Documents are run
through :func:`~InterviewKG.RecallEngine.tokenization.analyze` (lowercase,
tokenise, drop stopwords, stem) and stored as postings ``term -> {id: tf}``
together with per-document lengths, so document frequencies and the average
document length are always current for BM25:

    idf(t)   = ln((N - df + 0.5) / (df + 0.5) + 1)
    score    = sum_t idf(t) * tf * (k1 + 1) / (tf + k1 * (1 - b + b * dl / avgdl))

Ties are ordered by id ascending so repeated queries are deterministic.
"""

from __future__ import annotations

import math
from collections import Counter
from threading import RLock
from typing import Callable, Collection, Dict, List, Mapping, Optional, Set, Union

from .config import TextIndexConfig
from .tokenization import analyze, stem, tokenize_with_spans
from .types import TextHit

__all__ = ("TextIndex",)

CandidateFilter = Union[Callable[[int], bool], Collection[int]]


class TextIndex:
    """Okapi BM25 keyword index keyed by integer ids.

    Attributes:
        config: BM25 parameters and analyser toggles.

    Examples:
        >>> index = TextIndex(TextIndexConfig())
        >>> _ = index.index(1, "Senior Java backend engineer")
        >>> _ = index.index(2, "Frontend React developer")
        >>> [hit.id for hit in index.search("java engineers", k=5)]
        [1]
    """

    def __init__(self, config: Optional[TextIndexConfig] = None) -> None:
        self.config = config or TextIndexConfig()
        self._lock = RLock()
        self._postings: Dict[str, Dict[int, int]] = {}
        self._doc_terms: Dict[int, Counter[str]] = {}
        self._doc_lengths: Dict[int, int] = {}
        self._total_length = 0

    def analyze(self, text: str) -> List[str]:
        """Analyse ``text`` with this index's settings."""

        return analyze(
            text,
            use_stemming=self.config.stem,
            min_token_length=self.config.min_token_length,
        )

    def __len__(self) -> int:
        return len(self._doc_lengths)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._doc_lengths

    def index(self, doc_id: int, text: str) -> frozenset[str]:
        """Index ``text`` under ``doc_id``, replacing previous postings.

        Returns:
            The analysed term set recorded for the document.
        """
        terms = Counter(self.analyze(text))
        with self._lock:
            self._drop(doc_id)
            for term, tf in terms.items():
                self._postings.setdefault(term, {})[doc_id] = tf
            self._doc_terms[doc_id] = terms
            length = sum(terms.values())
            self._doc_lengths[doc_id] = length
            self._total_length += length
        return frozenset(terms)

    def remove(self, doc_id: int) -> bool:
        """Drop postings for ``doc_id``; return ``False`` when it was unknown."""

        with self._lock:
            return self._drop(doc_id)

    def clear(self) -> None:
        """Remove every document."""

        with self._lock:
            self._postings.clear()
            self._doc_terms.clear()
            self._doc_lengths.clear()
            self._total_length = 0

    def search(
        self,
        query_text: str,
        k: int,
        candidate_filter: Optional[CandidateFilter] = None,
    ) -> List[TextHit]:
        """Return the top ``k`` documents for ``query_text`` by BM25.

        Args:
            query_text: Raw query; analysed like indexed documents.
            k: Maximum number of hits.
            candidate_filter: Predicate over ids or collection of admissible ids.

        Returns:
            Hits ordered by score descending, id ascending. Empty and
            all-stopword queries return an empty list.
        """
        if k <= 0:
            return []
        terms = sorted(set(self.analyze(query_text)))
        if not terms:
            return []
        if candidate_filter is None:
            admit: Optional[Callable[[int], bool]] = None
        elif callable(candidate_filter):
            admit = candidate_filter
        else:
            admit = frozenset(candidate_filter).__contains__

        k1 = self.config.bm25_k1
        b = self.config.bm25_b
        scores: Dict[int, float] = {}
        with self._lock:
            total_docs = len(self._doc_lengths)
            if total_docs == 0:
                return []
            avgdl = self._total_length / total_docs if self._total_length else 1.0
            for term in terms:
                postings = self._postings.get(term)
                if not postings:
                    continue
                df = len(postings)
                idf = math.log((total_docs - df + 0.5) / (df + 0.5) + 1.0)
                for doc_id, tf in postings.items():
                    if admit is not None and not admit(doc_id):
                        continue
                    dl = max(1.0, float(self._doc_lengths[doc_id]))
                    denom = tf + k1 * (1.0 - b + b * (dl / avgdl))
                    scores[doc_id] = scores.get(doc_id, 0.0) + idf * (tf * (k1 + 1.0)) / denom

        hits = [TextHit(id=doc_id, score=float(score)) for doc_id, score in scores.items() if score > 0.0]
        hits.sort(key=lambda hit: (-hit.score, hit.id))
        return hits[:k]

    def highlight(self, text: str, query_text: str) -> List[str]:
        """Return words of ``text`` matching a query term, stem-aware.

        Surface forms are returned in document order without duplicates.

        Examples:
            >>> TextIndex().highlight("We use distributed systems daily", "system design")
            ['systems']
        """
        wanted = set(self.analyze(query_text))
        if not wanted:
            return []
        tokens, spans = tokenize_with_spans(text)
        seen: Set[str] = set()
        highlights: List[str] = []
        for token, (start, end) in zip(tokens, spans):
            term = stem(token.strip("'")) if self.config.stem else token.strip("'")
            if term not in wanted:
                continue
            surface = text[start:end]
            if surface.lower() in seen:
                continue
            seen.add(surface.lower())
            highlights.append(surface)
        return highlights

    def stats(self) -> Mapping[str, float]:
        """Return corpus statistics."""

        with self._lock:
            docs = len(self._doc_lengths)
            return {
                "document_count": float(docs),
                "term_count": float(len(self._postings)),
                "avg_doc_length": float(self._total_length / docs) if docs else 0.0,
            }

    def _drop(self, doc_id: int) -> bool:
        terms = self._doc_terms.pop(doc_id, None)
        if terms is None:
            return False
        for term in terms:
            postings = self._postings.get(term)
            if postings is None:
                continue
            postings.pop(doc_id, None)
            if not postings:
                del self._postings[term]
        self._total_length -= self._doc_lengths.pop(doc_id, 0)
        return True
