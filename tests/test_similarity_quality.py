from __future__ import annotations

import pytest

from llm_collab.quality import QualityWeights, score_responses
from llm_collab.similarity import (
    consensus_level,
    similarity_matrix,
    split_sentences,
    text_similarity,
    tokenize,
)

from conftest import make_response

hypothesis = pytest.importorskip("hypothesis")
st = hypothesis.strategies
given = hypothesis.given

_words = st.lists(st.sampled_from(["alpha", "beta", "gamma", "delta", "tau"]), max_size=8)


def test_tokenize_and_split_sentences() -> None:
    assert tokenize("Hello, World! 42") == ["hello", "world", "42"]
    assert split_sentences("One. Two!  Three?\nFour") == ["One.", "Two!", "Three?", "Four"]
    assert split_sentences("日本語です。\n次の文") == ["日本語です。", "次の文"]


def test_text_similarity_edge_cases() -> None:
    assert text_similarity("", "") == 1.0
    assert text_similarity("word", "") == 0.0
    assert text_similarity("a b c", "C B A") == 1.0
    assert text_similarity("a b", "b c") == pytest.approx(1 / 3)


def test_ngram_similarity_falls_back_for_short_texts() -> None:
    long_a = "the quick brown fox jumps"
    long_b = "the quick brown dog jumps"
    assert text_similarity(long_a, long_b, ngram=3) < text_similarity(long_a, long_b)
    assert text_similarity("a b", "a b", ngram=3) == 1.0
    with pytest.raises(ValueError):
        text_similarity("a", "b", ngram=0)


def test_consensus_level_counts_agreeing_pairs() -> None:
    texts = ["red green blue", "red green blue", "cat dog"]
    assert consensus_level(texts, 0.6) == pytest.approx(1 / 3)
    assert consensus_level(["only one"], 0.6) == 1.0
    assert consensus_level([], 0.6) == 1.0


def test_consensus_level_threshold_is_inclusive() -> None:
    pair = ["alpha beta", "alpha beta gamma delta"]
    assert text_similarity(*pair) == 0.5
    assert consensus_level(pair, 0.5) == 1.0
    assert consensus_level(pair, 0.51) == 0.0
    assert consensus_level(["same answer", "same answer"], 1.0) == 1.0


@given(_words.map(" ".join), _words.map(" ".join))
def test_similarity_is_symmetric_and_bounded(a: str, b: str) -> None:
    forward = text_similarity(a, b)
    assert forward == text_similarity(b, a)
    assert 0.0 <= forward <= 1.0
    assert text_similarity(a, a) == 1.0


@given(st.lists(_words.map(" ".join), max_size=5))
def test_similarity_matrix_is_symmetric_with_unit_diagonal(texts: list[str]) -> None:
    matrix = similarity_matrix(texts)
    for i in range(len(texts)):
        assert matrix[i][i] == 1.0
        for j in range(len(texts)):
            assert matrix[i][j] == matrix[j][i]


def test_quality_weights_validation() -> None:
    with pytest.raises(ValueError):
        QualityWeights(accuracy=0.5)
    with pytest.raises(ValueError):
        QualityWeights.from_mapping({"speed": 1.0})
    weights = QualityWeights.from_mapping({"accuracy": 0.5, "relevance": 0.5})
    assert weights.as_dict()["clarity"] == 0.0


def test_score_responses_prefers_relevant_agreeing_answers() -> None:
    prompt = "Explain how photosynthesis converts sunlight into chemical energy"
    responses = [
        make_response("a", "Photosynthesis converts sunlight into chemical energy stored in glucose."),
        make_response("b", "Plants use photosynthesis to turn sunlight into chemical energy."),
        make_response("c", "I like turtles."),
    ]

    scores = score_responses(prompt, responses)

    assert len(scores) == 3
    assert scores[0].overall > scores[2].overall
    assert scores[1].overall > scores[2].overall
    assert set(scores[0].dimensions) == {
        "accuracy",
        "completeness",
        "clarity",
        "novelty",
        "relevance",
    }
    assert all(0.0 <= score.overall <= 1.0 for score in scores)


def test_truncated_answers_lose_completeness() -> None:
    text = "A complete answer with several words in it."
    finished = make_response("a", text)
    truncated = make_response("b", text, finish_reason="length")

    scores = score_responses("question", [finished, truncated])

    assert scores[1].dimensions["completeness"] < scores[0].dimensions["completeness"]


def test_single_response_uses_neutral_peer_dimensions() -> None:
    (score,) = score_responses("q", [make_response("a", "short answer")])
    assert score.dimensions["accuracy"] == 0.5
    assert score.dimensions["novelty"] == 0.5
    assert score_responses("q", []) == []
