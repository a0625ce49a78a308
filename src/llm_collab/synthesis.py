"""Merge successful provider outcomes into one answer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
import logging
from typing import Any

from .errors import SynthesisError, ValidationError
from .models import ProviderOutcome, SynthesisMethod, SynthesisResult, successful
from .provider_spi import Response
from .quality import QualityScore, QualityWeights, score_responses
from .similarity import (
    DEFAULT_SIMILARITY_THRESHOLD,
    consensus_level,
    split_sentences,
    text_similarity,
    tokenize,
)

LOGGER = logging.getLogger(__name__)

Summarizer = Callable[[str, Sequence[str]], Awaitable[str]]

_MIN_INSIGHT_WORDS = 4
_CONFIDENCE_QUALITY_WEIGHT = 0.6


@dataclass(frozen=True)
class SynthesisOptions:
    prompt: str = ""
    weights: QualityWeights = field(default_factory=QualityWeights)
    max_insights: int = 5
    max_sentences: int = 8
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    quality_threshold: float = 0.0
    summarizer: Summarizer | None = None

    def __post_init__(self) -> None:
        problems: list[str] = []
        if self.max_insights <= 0:
            problems.append("max_insights must be positive")
        if self.max_sentences <= 0:
            problems.append("max_sentences must be positive")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            problems.append("similarity_threshold must be within [0, 1]")
        if not 0.0 <= self.quality_threshold <= 1.0:
            problems.append("quality_threshold must be within [0, 1]")
        if problems:
            raise ValidationError(problems)


@dataclass(slots=True)
class SynthesisCandidate:
    provider_id: str
    response: Response
    score: QualityScore

    @property
    def content(self) -> str:
        return self.response.content


def parse_method(method: SynthesisMethod | str) -> SynthesisMethod:
    if isinstance(method, SynthesisMethod):
        return method
    try:
        return SynthesisMethod(str(method).strip().lower())
    except ValueError:
        raise ValidationError([f"unknown synthesis method: {method}"]) from None


def best_of_key(candidate: SynthesisCandidate) -> tuple[float, int, str]:
    """Higher quality first, then lower latency, then provider id."""

    return (-candidate.score.overall, candidate.response.latency_ms, candidate.provider_id)


def _distinct_sentences(
    sentences: Sequence[str], chosen: list[str], threshold: float, limit: int
) -> list[str]:
    added: list[str] = []
    for sentence in sentences:
        if len(chosen) + len(added) >= limit:
            break
        pool = chosen + added
        if any(text_similarity(sentence, other) >= threshold for other in pool):
            continue
        added.append(sentence)
    return added


class SynthesisEngine:
    """Implements the six synthesis methods over scored candidates."""

    def __init__(self, default_options: SynthesisOptions | None = None) -> None:
        self._defaults = default_options or SynthesisOptions()

    @property
    def default_options(self) -> SynthesisOptions:
        return self._defaults

    def score(self, prompt: str, responses: Sequence[Response]) -> list[float]:
        return [item.overall for item in score_responses(prompt, responses, self._defaults.weights)]

    async def create_synthesis(
        self,
        responses: Sequence[Response],
        method: SynthesisMethod | str = SynthesisMethod.CONSENSUS,
        options: SynthesisOptions | None = None,
    ) -> SynthesisResult:
        outcomes = [
            ProviderOutcome.ok(response.provider_id, response, response.latency_ms)
            for response in responses
        ]
        return await self.synthesize(outcomes, method, options)

    async def synthesize(
        self,
        outcomes: Sequence[ProviderOutcome],
        method: SynthesisMethod | str = SynthesisMethod.CONSENSUS,
        options: SynthesisOptions | None = None,
    ) -> SynthesisResult:
        method = parse_method(method)
        options = options or self._defaults
        succeeded = successful(outcomes)
        if not succeeded:
            raise SynthesisError("no successful responses to synthesize")

        responses = [outcome.response for outcome in succeeded if outcome.response is not None]
        scores = score_responses(options.prompt, responses, options.weights)
        candidates = [
            SynthesisCandidate(outcome.provider_id, response, score)
            for outcome, response, score in zip(succeeded, responses, scores)
        ]
        quality_scores = {candidate.provider_id: candidate.score.overall for candidate in candidates}

        kept = [c for c in candidates if c.score.overall >= options.quality_threshold]
        dropped = [c.provider_id for c in candidates if c not in kept]
        if not kept:
            kept, dropped = candidates, []
        ranked = sorted(kept, key=best_of_key)

        level = consensus_level(
            [candidate.content for candidate in kept], options.similarity_threshold
        )
        insights = self._key_insights(ranked, options)

        if len(ranked) == 1:
            content, sources = ranked[0].content, [ranked[0].provider_id]
        elif method is SynthesisMethod.BEST_OF:
            content, sources = ranked[0].content, [ranked[0].provider_id]
        elif method is SynthesisMethod.CONSENSUS:
            content, sources = self._consensus(ranked)
        elif method is SynthesisMethod.WEIGHTED_MERGE:
            content, sources = self._weighted_merge(ranked, options)
        elif method is SynthesisMethod.COMPREHENSIVE:
            content, sources = self._comprehensive(ranked, options)
        elif method is SynthesisMethod.EXTRACTIVE:
            content, sources = self._extractive(ranked, options)
        elif method is SynthesisMethod.ABSTRACTIVE:
            content, sources = await self._abstractive(ranked, insights, options)
        else:
            raise SynthesisError(f"method {method.value} cannot synthesize responses")

        top = ranked[0].score.overall
        confidence = _CONFIDENCE_QUALITY_WEIGHT * top + (1 - _CONFIDENCE_QUALITY_WEIGHT) * level
        metadata: dict[str, Any] = {
            "candidate_count": len(candidates),
            "dimensions": {c.provider_id: dict(c.score.dimensions) for c in candidates},
            "ranking": [candidate.provider_id for candidate in ranked],
        }
        if dropped:
            metadata["below_quality_threshold"] = dropped
        return SynthesisResult(
            content=content,
            confidence=round(min(1.0, max(0.0, confidence)), 6),
            consensus_level=round(level, 6),
            key_insights=tuple(insights),
            method=method,
            quality_scores=quality_scores,
            sources=tuple(sources),
            metadata=metadata,
        )

    @staticmethod
    def _key_insights(ranked: Sequence[SynthesisCandidate], options: SynthesisOptions) -> list[str]:
        insights: list[str] = []
        for candidate in ranked:
            sentences = [
                sentence
                for sentence in split_sentences(candidate.content)
                if len(tokenize(sentence)) >= _MIN_INSIGHT_WORDS
            ]
            insights.extend(
                _distinct_sentences(
                    sentences, insights, options.similarity_threshold, options.max_insights
                )
            )
            if len(insights) >= options.max_insights:
                break
        return insights

    @staticmethod
    def _consensus(ranked: Sequence[SynthesisCandidate]) -> tuple[str, list[str]]:
        agreement: list[float] = []
        for index, candidate in enumerate(ranked):
            peers = [
                text_similarity(candidate.content, other.content)
                for position, other in enumerate(ranked)
                if position != index
            ]
            agreement.append(sum(peers) / len(peers))
        chosen = min(range(len(ranked)), key=lambda index: (-round(agreement[index], 9), index))
        return ranked[chosen].content, [ranked[chosen].provider_id]

    @staticmethod
    def _weighted_merge(
        ranked: Sequence[SynthesisCandidate], options: SynthesisOptions
    ) -> tuple[str, list[str]]:
        # each group: representative sentence, accumulated weight, first position, sources
        groups: list[tuple[str, float, int, list[str]]] = []
        position = 0
        for candidate in ranked:
            weight = max(candidate.score.overall, 1e-6)
            for sentence in split_sentences(candidate.content):
                for index, (text, total, first, sources) in enumerate(groups):
                    if text_similarity(sentence, text) >= options.similarity_threshold:
                        if candidate.provider_id not in sources:
                            sources.append(candidate.provider_id)
                        groups[index] = (text, total + weight, first, sources)
                        break
                else:
                    groups.append((sentence, weight, position, [candidate.provider_id]))
                position += 1
        selected = sorted(groups, key=lambda group: (-group[1], group[2]))[: options.max_sentences]
        selected.sort(key=lambda group: group[2])
        sources: list[str] = []
        for _, _, _, group_sources in selected:
            sources.extend(source for source in group_sources if source not in sources)
        return " ".join(group[0] for group in selected), sources

    @staticmethod
    def _comprehensive(
        ranked: Sequence[SynthesisCandidate], options: SynthesisOptions
    ) -> tuple[str, list[str]]:
        best = ranked[0]
        chosen = split_sentences(best.content)
        limit = len(chosen) + options.max_sentences
        sources = [best.provider_id]
        extras: list[str] = []
        for candidate in ranked[1:]:
            added = _distinct_sentences(
                split_sentences(candidate.content),
                chosen + extras,
                options.similarity_threshold,
                limit,
            )
            if added:
                extras.extend(added)
                sources.append(candidate.provider_id)
        if not extras:
            return best.content, sources
        return f"{best.content}\n\n{' '.join(extras)}", sources

    @staticmethod
    def _extractive(
        ranked: Sequence[SynthesisCandidate], options: SynthesisOptions
    ) -> tuple[str, list[str]]:
        entries: list[tuple[float, int, str, str]] = []
        position = 0
        per_candidate = [split_sentences(candidate.content) for candidate in ranked]
        for index, candidate in enumerate(ranked):
            others = [
                sentence
                for other_index, sentences in enumerate(per_candidate)
                if other_index != index
                for sentence in sentences
            ]
            for sentence in per_candidate[index]:
                centrality = (
                    sum(text_similarity(sentence, other) for other in others) / len(others)
                    if others
                    else 0.0
                )
                entries.append(
                    (centrality * candidate.score.overall, position, sentence, candidate.provider_id)
                )
                position += 1
        entries.sort(key=lambda entry: (-entry[0], entry[1]))
        chosen: list[str] = []
        sources: list[str] = []
        for _, _, sentence, provider_id in entries:
            if len(chosen) >= options.max_sentences:
                break
            if any(
                text_similarity(sentence, other) >= options.similarity_threshold for other in chosen
            ):
                continue
            chosen.append(sentence)
            if provider_id not in sources:
                sources.append(provider_id)
        if not chosen:
            return ranked[0].content, [ranked[0].provider_id]
        return " ".join(chosen), sources

    @staticmethod
    async def _abstractive(
        ranked: Sequence[SynthesisCandidate],
        insights: Sequence[str],
        options: SynthesisOptions,
    ) -> tuple[str, list[str]]:
        sources = [candidate.provider_id for candidate in ranked]
        if options.summarizer is None:
            if not insights:
                return ranked[0].content, [ranked[0].provider_id]
            return " ".join(insights), sources
        try:
            summary = await options.summarizer(
                options.prompt, [candidate.content for candidate in ranked]
            )
        except SynthesisError:
            raise
        except Exception as exc:
            raise SynthesisError(f"summarizer failed: {exc}") from exc
        if not summary or not summary.strip():
            raise SynthesisError("summarizer returned no content")
        return summary.strip(), sources


def with_prompt(options: SynthesisOptions, prompt: str) -> SynthesisOptions:
    if options.prompt:
        return options
    return replace(options, prompt=prompt)


__all__ = [
    "SynthesisCandidate",
    "SynthesisEngine",
    "SynthesisOptions",
    "Summarizer",
    "best_of_key",
    "parse_method",
    "with_prompt",
]
