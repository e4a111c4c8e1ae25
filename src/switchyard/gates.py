from __future__ import annotations

import inspect
import json
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol

from switchyard.errors import ConfigurationError, GateFailure

if TYPE_CHECKING:
    from switchyard.session import CoordinationSession, ParticipantResult

logger = logging.getLogger(__name__)

GATE_NAMES: tuple[str, ...] = ("alignment", "coherence", "feasibility", "integrity")
DEFAULT_THRESHOLDS: dict[str, float] = {
    "alignment": 0.85,
    "coherence": 0.80,
    "feasibility": 0.75,
    "integrity": 0.80,
}

CONCERN_INDICATORS: tuple[str, ...] = (
    "bypass",
    "exploit",
    "surveil",
    "deceive",
    "manipulat",
    "scrape-personal",
    "dark-pattern",
    "discriminat",
)
STOPWORDS = frozenset(
    {"about", "after", "before", "from", "into", "that", "their", "there", "this", "with", "without"}
)

_WORD = re.compile(r"[a-z0-9][a-z0-9\-]*")

EventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class QualityGateResult:
    gate_name: str
    score: float
    threshold: float
    passed: bool
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QualityGateResult:
        return cls(
            gate_name=str(data["gate_name"]),
            score=float(data["score"]),
            threshold=float(data["threshold"]),
            passed=bool(data["passed"]),
            detail=str(data.get("detail", "")),
        )


class AlignmentAssessor(Protocol):
    def assess_alignment(self, session: CoordinationSession) -> float | Awaitable[float]:
        """Score how well the session's work aligns with its stated purpose."""


class ConcernKeywordAssessor:
    """Default assessor: penalise concern indicators in the task and outputs."""

    def __init__(self, indicators: tuple[str, ...] = CONCERN_INDICATORS, penalty: float = 0.25) -> None:
        self.indicators = indicators
        self.penalty = penalty

    def assess_alignment(self, session: CoordinationSession) -> float:
        parts = [session.task.text()]
        for phase in session.phase_log:
            for result in phase.participants.values():
                if result.succeeded:
                    parts.append(json.dumps(result.output, sort_keys=True, default=str))
        words = _WORD.findall(" ".join(parts).lower())
        hits = [
            indicator
            for indicator in self.indicators
            if any(word.startswith(indicator) for word in words)
        ]
        return max(0.0, 1.0 - self.penalty * len(hits))


def objective_terms(session: CoordinationSession) -> set[str]:
    words = _WORD.findall(session.task.description.lower())
    terms = {word for word in words if len(word) >= 4 and word not in STOPWORDS}
    terms.update(session.task.tags)
    return terms


def _mentions(output: Mapping[str, Any], terms: set[str]) -> bool:
    if not terms:
        return True
    text = json.dumps(output, sort_keys=True, default=str).lower()
    return any(term in text for term in terms)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class QualityGateValidator:
    """Scores the four quality gates against a session's current state.

    Only the alignment gate calls out to a collaborator; its score is
    cached per (session, phase) so repeated checks within a phase agree.
    The other gates are pure functions of the phase log.
    """

    def __init__(
        self,
        thresholds: Mapping[str, float] | None = None,
        *,
        assessor: AlignmentAssessor | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        merged = dict(DEFAULT_THRESHOLDS)
        for name, value in (thresholds or {}).items():
            if name not in GATE_NAMES:
                raise ConfigurationError(f"Unknown quality gate: {name}")
            merged[name] = float(value)
        self.thresholds = merged
        self.assessor: AlignmentAssessor = assessor or ConcernKeywordAssessor()
        self.event_hook = event_hook
        self._alignment_cache: dict[tuple[str, int], float] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _alignment(self, session: CoordinationSession) -> tuple[float, str]:
        key = (session.id, session.current_phase_index)
        if key in self._alignment_cache:
            return self._alignment_cache[key], "cached assessment"
        try:
            value = self.assessor.assess_alignment(session)
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            self._emit(
                {"event": "assessor_failed", "session_id": session.id, "error": str(exc)}
            )
            raise GateFailure(
                "alignment", 0.0, self.thresholds["alignment"], f"assessor error: {exc}"
            ) from exc
        score = min(1.0, max(0.0, float(value)))
        self._alignment_cache[key] = score
        return score, f"assessed by {type(self.assessor).__name__}"

    def _participant_scores(
        self,
        session: CoordinationSession,
        hint: str,
        fallback: Callable[[list[ParticipantResult]], float],
    ) -> dict[str, float]:
        scores: dict[str, float] = {}
        for worker in session.participants:
            results = session.participant_results(worker)
            if not results:
                continue
            hinted = [item.quality_hints[hint] for item in results if hint in item.quality_hints]
            scores[worker] = _mean(hinted) if hinted else fallback(results)
        return scores

    def _coherence(self, session: CoordinationSession) -> dict[str, float]:
        terms = objective_terms(session)

        def referencing(results: list[ParticipantResult]) -> float:
            return _mean(
                [1.0 if item.succeeded and _mentions(item.output, terms) else 0.0 for item in results]
            )

        return self._participant_scores(session, "coherence", referencing)

    def _feasibility(self, session: CoordinationSession) -> dict[str, float]:
        return self._participant_scores(
            session,
            "feasibility",
            lambda results: _mean([1.0 if item.succeeded else 0.0 for item in results]),
        )

    def _integrity(self, session: CoordinationSession) -> dict[str, float]:
        return self._participant_scores(
            session,
            "integrity",
            lambda results: _mean([1.0 if item.succeeded and item.output else 0.0 for item in results]),
        )

    async def validate(self, gate_name: str, session: CoordinationSession) -> QualityGateResult:
        if gate_name not in GATE_NAMES:
            raise ConfigurationError(f"Unknown quality gate: {gate_name}")
        threshold = self.thresholds[gate_name]
        if gate_name == "alignment":
            score, detail = await self._alignment(session)
        else:
            estimators = {
                "coherence": self._coherence,
                "feasibility": self._feasibility,
                "integrity": self._integrity,
            }
            per_worker = estimators[gate_name](session)
            if per_worker:
                score = _mean(list(per_worker.values()))
                detail = ", ".join(f"{name}={value:.2f}" for name, value in per_worker.items())
            else:
                score, detail = 0.0, "no participant output"
        result = QualityGateResult(
            gate_name=gate_name,
            score=round(score, 4),
            threshold=threshold,
            passed=round(score, 4) >= threshold,
            detail=detail,
        )
        logger.debug(
            "gate %s for %s: %.3f (threshold %.2f)", gate_name, session.id, result.score, threshold
        )
        self._emit(
            {
                "event": "gate_checked",
                "session_id": session.id,
                "gate": gate_name,
                "score": result.score,
                "threshold": threshold,
                "passed": result.passed,
            }
        )
        return result

    async def enforce(self, gate_name: str, session: CoordinationSession) -> QualityGateResult:
        result = await self.validate(gate_name, session)
        if not result.passed:
            raise GateFailure(gate_name, result.score, result.threshold, result.detail)
        return result

    def forget(self, session_id: str) -> None:
        for key in [key for key in self._alignment_cache if key[0] == session_id]:
            del self._alignment_cache[key]
