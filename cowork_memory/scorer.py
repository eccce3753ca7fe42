"""
Hybrid relevance scorer.

Blends four signals per candidate memory into one score in [0, 1]:

- lexical: TF-IDF cosine (or any pluggable ranker) over title + content + tags
- dense:   Jaccard overlap of query tokens and memory tokens
- graph:   how well connected the memory is (related memories / sessions)
- rerank:  exact / substring heuristics on title, content and tags

    raw   = lexical*w_lex + dense*w_dense + graph*w_graph + rerank*w_rerank
    final = clamp01(raw * (0.7 + 0.3*coverage) * confidence)

Weights are clamped to [0, 1] individually and are not normalized.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .entities import Memory, ScoredMemory, clamp01
from .similarity import TFIDFIndex, coverage, jaccard, lexical_terms, normalize, tokenize

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.05

# Rerank tiers
RERANK_TITLE_EXACT = 1.0
RERANK_TITLE_CONTAINS = 0.9
RERANK_CONTENT_CONTAINS = 0.75
RERANK_TAG_MATCH = 0.55
RERANK_BASELINE = 0.2

LexicalRanker = Callable[[List[Memory], str], Dict[str, float]]


@dataclass
class ScoringWeights:
    lexical: float = 0.35
    dense: float = 0.4
    graph: float = 0.15
    rerank: float = 0.1

    def clamped(self) -> "ScoringWeights":
        return ScoringWeights(
            lexical=clamp01(self.lexical),
            dense=clamp01(self.dense),
            graph=clamp01(self.graph),
            rerank=clamp01(self.rerank),
        )


def memory_text(memory: Memory) -> str:
    return f"{memory.title} {memory.content}"


def tfidf_lexical_ranker(memories: List[Memory], query: str) -> Dict[str, float]:
    """
    Default lexical ranker: TF-IDF cosine over the candidate set.

    A memory whose text contains the whole normalized query scores 1.0.
    """
    index = TFIDFIndex()
    for memory in memories:
        index.add_document(memory.id, memory_text(memory), memory.tags)
    scores = index.score_all(query)

    phrase = normalize(query)
    if phrase:
        for memory in memories:
            if phrase in normalize(memory_text(memory)):
                scores[memory.id] = 1.0
    return scores


def dense_score(query_tokens: List[str], memory_tokens: List[str]) -> float:
    """Token-set overlap standing in for embedding similarity."""
    return jaccard(query_tokens, memory_tokens)


def graph_score(memory: Memory) -> float:
    by_memories = min(1.0, len(memory.related_memory_ids) / 5)
    by_sessions = 0.6 * min(1.0, len(memory.related_session_ids) / 8)
    return max(by_memories, by_sessions)


def rerank_score(memory: Memory, query: str) -> float:
    needle = query.strip().lower()
    title = memory.title.strip().lower()
    if title == needle:
        return RERANK_TITLE_EXACT
    if needle in title:
        return RERANK_TITLE_CONTAINS
    if needle in memory.content.lower():
        return RERANK_CONTENT_CONTAINS
    if any(tag.strip() and tag.strip().lower() in needle for tag in memory.tags):
        return RERANK_TAG_MATCH
    return RERANK_BASELINE


class HybridScorer:
    """Ranks candidate memories against a free-text query."""

    def __init__(
        self,
        lexical_ranker: Optional[LexicalRanker] = None,
        min_score: float = DEFAULT_MIN_SCORE
    ):
        self.lexical_ranker = lexical_ranker or tfidf_lexical_ranker
        self.min_score = min_score

    def score(
        self,
        memories: List[Memory],
        query: str,
        weights: Optional[ScoringWeights] = None,
        limit: int = 8
    ) -> List[ScoredMemory]:
        """
        Score, sort, threshold and truncate.

        Args:
            memories: Candidate set
            query: Free-text query; blank returns []
            weights: Signal weights (each clamped to [0, 1])
            limit: Maximum results returned

        Returns:
            ScoredMemory list, non-increasing by relevance_score, every score
            above ``min_score``.
        """
        if not query or not query.strip() or not memories or limit <= 0:
            return []

        w = (weights or ScoringWeights()).clamped()
        query_tokens = tokenize(query)
        lexical = self.lexical_ranker(memories, query)

        scored: List[ScoredMemory] = []
        for memory in memories:
            memory_tokens = tokenize(memory_text(memory))
            raw = (
                clamp01(lexical.get(memory.id, 0.0)) * w.lexical
                + dense_score(query_tokens, memory_tokens) * w.dense
                + graph_score(memory) * w.graph
                + rerank_score(memory, query) * w.rerank
            )
            coverage_factor = 0.7 + 0.3 * coverage(query_tokens, memory_tokens)
            final = clamp01(raw * coverage_factor * memory.confidence)

            if final > self.min_score:
                data = memory.to_dict()
                data["relevance_score"] = final
                scored.append(ScoredMemory(**data))

        scored.sort(key=lambda m: m.relevance_score, reverse=True)
        return scored[:limit]

    def find_similar(
        self,
        target: Memory,
        memories: List[Memory],
        weights: Optional[ScoringWeights] = None,
        limit: int = 5
    ) -> List[ScoredMemory]:
        """Memories most similar to ``target``, using its text as the query."""
        others = [m for m in memories if m.id != target.id]
        return self.score(others, memory_text(target), weights, limit)


def suggest_tags(content: str, existing_tags: Optional[List[str]] = None, limit: int = 5) -> List[str]:
    """Most frequent content terms (longer than three chars) not already used as tags."""
    existing = {t.lower() for t in (existing_tags or [])}
    counts = Counter(
        term for term in lexical_terms(content)
        if len(term) > 3 and term not in existing
    )
    return [term for term, _ in counts.most_common(limit)]
