"""Tests for the hybrid relevance scorer."""

import pytest

from cowork_memory.entities import Memory, ScoredMemory
from cowork_memory.scorer import (
    RERANK_BASELINE,
    RERANK_CONTENT_CONTAINS,
    RERANK_TAG_MATCH,
    RERANK_TITLE_CONTAINS,
    RERANK_TITLE_EXACT,
    HybridScorer,
    ScoringWeights,
    graph_score,
    rerank_score,
    suggest_tags,
    tfidf_lexical_ranker,
)


def _memory(memory_id, title, content, tags=None, confidence=1.0, **extra) -> Memory:
    return Memory(
        id=memory_id,
        title=title,
        content=content,
        group="learnings",
        tags=tags or [],
        confidence=confidence,
        **extra,
    )


@pytest.fixture
def corpus():
    return [
        _memory("lint", "Lint gate", "Run lint and typecheck before merge.", ["lint", "merge"]),
        _memory("tests", "Test gate", "Run the unit tests before merge.", ["tests"]),
        _memory("tone", "Tone", "Prefer concise answers in chat.", ["style"]),
        _memory("keys", "Secrets", "Store connector secrets in the keychain.", ["security"]),
        _memory("lint2", "Lint config", "Lint rules live in the shared config package.", ["lint"],
                confidence=0.6),
    ]


class TestScoreBasics:

    def test_blank_query_returns_empty(self, corpus):
        scorer = HybridScorer()
        assert scorer.score(corpus, "") == []
        assert scorer.score(corpus, "   ") == []

    def test_empty_candidates_return_empty(self):
        assert HybridScorer().score([], "lint") == []

    def test_non_positive_limit_returns_empty(self, corpus):
        assert HybridScorer().score(corpus, "lint", limit=0) == []

    def test_results_are_scored_memories(self, corpus):
        results = HybridScorer().score(corpus, "run lint before merge")
        assert results
        assert all(isinstance(r, ScoredMemory) for r in results)

    def test_best_match_first(self, corpus):
        results = HybridScorer().score(corpus, "run lint and typecheck before merge")
        assert results[0].id == "lint"


class TestScoreBounds:

    @pytest.mark.parametrize("query", [
        "run lint before merge",
        "lint",
        "concise answers",
        "secrets keychain connector",
        "Run lint and typecheck before merge.",
    ])
    def test_scores_bounded_and_sorted(self, corpus, query):
        results = HybridScorer().score(corpus, query, limit=10)
        scores = [r.relevance_score for r in results]
        assert all(0.05 < s <= 1.0 for s in scores)
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.parametrize("limit", [1, 2, 3])
    def test_limit_is_respected(self, corpus, limit):
        assert len(HybridScorer().score(corpus, "run lint tests merge", limit=limit)) <= limit

    def test_oversized_weights_are_clamped(self, corpus):
        weights = ScoringWeights(lexical=5, dense=5, graph=5, rerank=5)
        results = HybridScorer().score(corpus, "Lint gate", weights=weights)
        assert all(r.relevance_score <= 1.0 for r in results)

    def test_negative_weights_are_clamped_to_zero(self, corpus):
        weights = ScoringWeights(lexical=-1, dense=-1, graph=-1, rerank=-1)
        assert HybridScorer().score(corpus, "lint", weights=weights) == []

    def test_unrelated_memory_is_excluded(self):
        memories = [_memory("x", "Tone", "Prefer concise answers.", confidence=1.0)]
        # rerank baseline only: 0.2 * 0.1 * 0.7 = 0.014
        assert HybridScorer().score(memories, "database migrations") == []

    def test_confidence_scales_score(self):
        strong = _memory("strong", "Deploy", "Deploy with the release script.", confidence=1.0)
        weak = _memory("weak", "Deploy", "Deploy with the release script.", confidence=0.5)
        results = {r.id: r.relevance_score for r in HybridScorer().score([strong, weak], "release script")}
        assert results["weak"] == pytest.approx(results["strong"] * 0.5)

    def test_rescoring_scored_memories(self, corpus):
        scorer = HybridScorer()
        first = scorer.score(corpus, "lint")
        second = scorer.score(first, "lint")
        assert second
        assert {r.id for r in second} <= {r.id for r in first}


class TestSignals:

    def test_rerank_tiers(self):
        memory = _memory("m", "Lint gate", "Always run lint before merge.", ["ci"])
        assert rerank_score(memory, "lint gate") == RERANK_TITLE_EXACT
        assert rerank_score(memory, "LINT") == RERANK_TITLE_CONTAINS
        assert rerank_score(memory, "before merge") == RERANK_CONTENT_CONTAINS
        assert rerank_score(memory, "does ci pass") == RERANK_TAG_MATCH
        assert rerank_score(memory, "unrelated") == RERANK_BASELINE

    def test_graph_score(self):
        assert graph_score(_memory("m", "t", "c")) == 0.0
        assert graph_score(_memory("m", "t", "c", related_memory_ids=["a"] * 5)) == 1.0
        assert graph_score(_memory("m", "t", "c", related_session_ids=["s"] * 8)) == pytest.approx(0.6)
        assert graph_score(_memory("m", "t", "c", related_session_ids=["s"] * 4)) == pytest.approx(0.3)
        assert graph_score(_memory(
            "m", "t", "c", related_memory_ids=["a"], related_session_ids=["s"] * 8
        )) == pytest.approx(0.6)

    def test_graph_rewards_connected_memories(self):
        lonely = _memory("lonely", "Deploy", "Deploy with the release script.")
        linked = _memory("linked", "Deploy", "Deploy with the release script.",
                         related_memory_ids=["a", "b", "c", "d", "e"])
        results = HybridScorer().score([lonely, linked], "release script")
        assert results[0].id == "linked"

    def test_phrase_match_gets_full_lexical_score(self, corpus):
        scores = tfidf_lexical_ranker(corpus, "typecheck before merge")
        assert scores["lint"] == 1.0
        assert scores["tone"] < 1.0

    def test_custom_lexical_ranker(self, corpus):
        def only_tone(memories, query):
            return {m.id: (1.0 if m.id == "tone" else 0.0) for m in memories}

        weights = ScoringWeights(lexical=1.0, dense=0.0, graph=0.0, rerank=0.0)
        results = HybridScorer(lexical_ranker=only_tone).score(corpus, "anything", weights=weights)
        assert [r.id for r in results] == ["tone"]


class TestFindSimilar:

    def test_excludes_target(self, corpus):
        target = corpus[0]
        results = HybridScorer().find_similar(target, corpus)
        assert target.id not in [r.id for r in results]

    def test_finds_related_memory(self, corpus):
        results = HybridScorer().find_similar(corpus[0], corpus)
        assert results[0].id in ("tests", "lint2")


class TestSuggestTags:

    def test_suggests_frequent_terms(self):
        tags = suggest_tags("Deploy deploy deploy with the release script release", limit=2)
        assert tags == ["deploy", "release"]

    def test_skips_existing_tags(self):
        tags = suggest_tags("Deploy deploy with the release script", existing_tags=["Deploy"])
        assert "deploy" not in tags
        assert "release" in tags
