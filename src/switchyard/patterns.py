from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from switchyard.errors import ConfigurationError
from switchyard.gates import GATE_NAMES
from switchyard.registry import CapabilityRegistry
from switchyard.router import Task

PhaseMode = Literal["sequential", "concurrent", "led"]

BUILTIN_PATTERNS: tuple[str, ...] = ("sequential", "parallel", "collaborative", "orchestrated")
PHASE_MODES: frozenset[str] = frozenset({"sequential", "concurrent", "led"})
PATTERN_MODES: dict[str, PhaseMode] = {
    "sequential": "sequential",
    "parallel": "concurrent",
    "collaborative": "concurrent",
    "orchestrated": "led",
}

_WORD = re.compile(r"[a-z0-9][a-z0-9\-]*")


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    name: str
    required_gate: str | None = None
    consciousness_checkpoint: bool = False
    participants: tuple[str, ...] = ()
    mode: PhaseMode | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigurationError("PhaseSpec requires a non-empty name.")
        if self.required_gate is not None and self.required_gate not in GATE_NAMES:
            raise ConfigurationError(
                f"PhaseSpec '{self.name}' names unknown gate '{self.required_gate}'."
            )
        if self.mode is not None and self.mode not in PHASE_MODES:
            raise ConfigurationError(f"PhaseSpec '{self.name}' has unknown mode '{self.mode}'.")
        if isinstance(self.participants, str):
            object.__setattr__(self, "participants", (self.participants,))
        else:
            object.__setattr__(self, "participants", tuple(self.participants))


BUILTIN_PHASES: dict[str, tuple[PhaseSpec, ...]] = {
    "sequential": (
        PhaseSpec("initiation", required_gate="alignment"),
        PhaseSpec("department_sequence", required_gate="coherence"),
        PhaseSpec("handoff_validation", consciousness_checkpoint=True),
        PhaseSpec("completion", required_gate="integrity"),
    ),
    "parallel": (
        PhaseSpec("initiation", required_gate="alignment"),
        PhaseSpec("parallel_setup", required_gate="feasibility"),
        PhaseSpec("synchronized_execution", consciousness_checkpoint=True),
        PhaseSpec("convergence", required_gate="coherence"),
        PhaseSpec("completion", required_gate="integrity"),
    ),
    "collaborative": (
        PhaseSpec("initiation", required_gate="alignment"),
        PhaseSpec("collaboration_setup", required_gate="feasibility"),
        PhaseSpec("deep_collaboration", consciousness_checkpoint=True),
        PhaseSpec("knowledge_synthesis", consciousness_checkpoint=True),
        PhaseSpec("collaborative_completion", required_gate="coherence"),
        PhaseSpec("final_validation", required_gate="integrity"),
    ),
    "orchestrated": (
        PhaseSpec("executive_initiation", required_gate="alignment"),
        PhaseSpec("organizational_alignment", required_gate="coherence"),
        PhaseSpec("coordinated_execution", consciousness_checkpoint=True),
        PhaseSpec("executive_oversight", consciousness_checkpoint=True),
        PhaseSpec("organizational_completion", required_gate="integrity"),
    ),
}

# (bucket, keywords, project phase owning the bucket, gate the bucket demands)
CUSTOM_BUCKETS: tuple[tuple[str, tuple[str, ...], str, str | None], ...] = (
    ("strategy_phase", ("requirement", "product", "feature", "roadmap", "prd", "stakeholder"), "strategy", None),
    ("design_phase", ("ui", "ux", "design", "user", "interface", "frontend"), "design", None),
    ("technical_phase", ("build", "develop", "code", "implement", "deploy", "api"), "development", None),
    ("security_phase", ("secure", "security", "audit", "vulnerab"), "development", "integrity"),
)

AUTO_SELECTION: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "orchestrated",
        (
            "enterprise",
            "organization",
            "organisation",
            "platform",
            "ecosystem",
            "transformation",
            "initiative",
            "company-wide",
        ),
    ),
    ("collaborative", ("collaborat", "cross-functional", "workshop", "co-design", "pairing")),
    ("parallel", ("parallel", "independent", "concurrent", "batch", "multiple")),
)


def _words(text: str) -> list[str]:
    return _WORD.findall(text.lower())


def _matches(words: Iterable[str], keywords: Iterable[str]) -> bool:
    keyword_list = tuple(keywords)
    return any(word.startswith(keyword) for word in words for keyword in keyword_list)


@dataclass(frozen=True, slots=True)
class PatternPlan:
    pattern: str
    phases: tuple[PhaseSpec, ...]
    participants: tuple[str, ...]
    mode: PhaseMode
    lead: str | None = None
    custom: bool = False

    def phase_participants(self, phase: PhaseSpec) -> tuple[str, ...]:
        return phase.participants or self.participants

    def phase_mode(self, phase: PhaseSpec) -> PhaseMode:
        return phase.mode or self.mode


@dataclass
class PatternCatalog:
    """Resolves a pattern name (or ``auto``) into an executable plan."""

    registry: CapabilityRegistry
    lead_worker: str
    default_worker: str
    tables: dict[str, tuple[PhaseSpec, ...]] = field(default_factory=lambda: dict(BUILTIN_PHASES))

    def __post_init__(self) -> None:
        self.registry.require([self.lead_worker], where="orchestration.lead_worker")
        self.registry.require([self.default_worker], where="routing.default_worker")
        for name, phases in self.tables.items():
            if name not in BUILTIN_PATTERNS:
                raise ConfigurationError(f"Unknown built-in pattern table: {name}")
            self._validate_phases(name, phases)

    @classmethod
    def with_overrides(
        cls,
        registry: CapabilityRegistry,
        *,
        lead_worker: str,
        default_worker: str,
        overrides: Mapping[str, Sequence[PhaseSpec]] | None = None,
    ) -> PatternCatalog:
        tables = dict(BUILTIN_PHASES)
        for name, phases in (overrides or {}).items():
            tables[name] = tuple(phases)
        return cls(registry, lead_worker, default_worker, tables)

    def _validate_phases(self, name: str, phases: Sequence[PhaseSpec]) -> None:
        if not phases:
            raise ConfigurationError(f"Pattern '{name}' declares no phases.")
        seen: set[str] = set()
        for phase in phases:
            if not isinstance(phase, PhaseSpec):
                raise ConfigurationError(f"Pattern '{name}' contains a malformed phase: {phase!r}")
            if phase.name in seen:
                raise ConfigurationError(f"Pattern '{name}' repeats phase '{phase.name}'.")
            seen.add(phase.name)
            if len(set(phase.participants)) != len(phase.participants):
                raise ConfigurationError(
                    f"Phase '{phase.name}' in pattern '{name}' lists a participant more than once."
                )
            self.registry.require(phase.participants, where=f"Phase '{phase.name}'")

    def select_pattern(self, task: Task) -> str:
        words = _words(task.text())
        for pattern, keywords in AUTO_SELECTION:
            if _matches(words, keywords):
                return pattern
        return "sequential"

    def _required_roles(self, pattern: str) -> tuple[str, ...]:
        names = [profile.name for profile in self.registry.specialists()]
        if not names:
            names = [self.default_worker]
        if pattern == "orchestrated":
            names = [self.lead_worker, *[name for name in names if name != self.lead_worker]]
        return tuple(names)

    def _owner(self, project_phase: str) -> str:
        owner = self.registry.phase_owner(project_phase)
        if owner is None:
            raise ConfigurationError(f"No worker owns the '{project_phase}' project phase.")
        return owner

    def _security_owner(self) -> str:
        for profile in self.registry.specialists():
            if "security" in profile.capabilities:
                return profile.name
        return self._owner("development")

    def derive_custom_phases(self, task: Task) -> tuple[PhaseSpec, ...]:
        words = _words(task.text())
        phases: list[PhaseSpec] = []
        for bucket, keywords, project_phase, gate in CUSTOM_BUCKETS:
            if not _matches(words, keywords):
                continue
            owner = self._security_owner() if bucket == "security_phase" else self._owner(project_phase)
            phases.append(PhaseSpec(bucket, required_gate=gate, participants=(owner,)))
        if not phases:
            phases.append(PhaseSpec("general_phase", participants=(self.default_worker,)))
        return tuple(phases)

    def plan(self, pattern: str, task: Task) -> PatternPlan:
        name = (pattern or "auto").strip().lower()
        if name == "auto":
            name = self.select_pattern(task)
        if name in self.tables:
            participants = self._required_roles(name)
            mode = PATTERN_MODES[name]
            return PatternPlan(
                pattern=name,
                phases=self.tables[name],
                participants=participants,
                mode=mode,
                lead=participants[0] if mode == "led" else None,
            )
        phases = self.derive_custom_phases(task)
        ordered: list[str] = []
        for phase in phases:
            for participant in phase.participants:
                if participant not in ordered:
                    ordered.append(participant)
        return PatternPlan(
            pattern=name,
            phases=phases,
            participants=tuple(ordered),
            mode="sequential",
            custom=True,
        )
