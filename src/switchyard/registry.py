from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from switchyard.errors import ConfigurationError

WorkerKind = Literal["specialist", "generic"]
ProjectPhase = Literal["strategy", "design", "development"]

WORKER_KINDS: frozenset[str] = frozenset({"specialist", "generic"})
PROJECT_PHASES: frozenset[str] = frozenset({"strategy", "design", "development"})


def _as_tuple(values: Iterable[str] | None) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(item) for item in values)


@dataclass(frozen=True, slots=True)
class WorkerProfile:
    name: str
    kind: WorkerKind = "specialist"
    primary_commands: tuple[str, ...] = ()
    secondary_commands: tuple[str, ...] = ()
    capabilities: tuple[str, ...] = ()
    core_activities: tuple[str, ...] = ()
    quality_focus: tuple[str, ...] = ()
    handoff_targets: tuple[str, ...] = ()
    qa_specializations: tuple[str, ...] = ()
    project_phase: ProjectPhase | None = None

    @property
    def is_generic(self) -> bool:
        return self.kind == "generic"

    @classmethod
    def generic(cls, name: str, handoff_targets: Iterable[str] = ()) -> WorkerProfile:
        """The stand-in worker used when no specialist covers a task."""
        return cls(
            name=name,
            kind="generic",
            quality_focus=("task_completion",),
            handoff_targets=_as_tuple(handoff_targets),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkerProfile:
        name = str(data.get("name", "")).strip()
        if not name:
            raise ConfigurationError("Worker definition is missing a name.")
        kind = str(data.get("kind", "specialist"))
        if kind not in WORKER_KINDS:
            raise ConfigurationError(f"Worker '{name}' has unsupported kind '{kind}'.")
        phase = data.get("project_phase")
        if phase is not None and phase not in PROJECT_PHASES:
            raise ConfigurationError(f"Worker '{name}' has unknown project phase '{phase}'.")
        return cls(
            name=name,
            kind=kind,  # type: ignore[arg-type]
            primary_commands=_as_tuple(data.get("primary_commands")),
            secondary_commands=_as_tuple(data.get("secondary_commands")),
            capabilities=_as_tuple(data.get("capabilities")),
            core_activities=_as_tuple(data.get("core_activities")),
            quality_focus=_as_tuple(data.get("quality_focus")),
            handoff_targets=_as_tuple(data.get("handoff_targets")),
            qa_specializations=_as_tuple(data.get("qa_specializations")),
            project_phase=phase,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "primary_commands": list(self.primary_commands),
            "secondary_commands": list(self.secondary_commands),
            "capabilities": list(self.capabilities),
            "core_activities": list(self.core_activities),
            "quality_focus": list(self.quality_focus),
            "handoff_targets": list(self.handoff_targets),
            "qa_specializations": list(self.qa_specializations),
        }
        if self.project_phase is not None:
            payload["project_phase"] = self.project_phase
        return payload


DEFAULT_PROFILES: tuple[WorkerProfile, ...] = (
    WorkerProfile(
        name="strategy",
        primary_commands=(
            "prd",
            "requirements",
            "roadmap",
            "research-market",
            "docs-business",
            "analyze-business",
            "improve-strategy",
        ),
        secondary_commands=("research", "docs", "analyze", "improve", "checkpoint", "test", "validate"),
        capabilities=(
            "strategy",
            "planning",
            "requirements",
            "stakeholder",
            "business_analysis",
            "market_research",
        ),
        core_activities=(
            "stakeholder_alignment",
            "business_value_validation",
            "compliance_regulatory",
            "success_criteria_definition",
        ),
        quality_focus=(
            "business_validation",
            "requirement_completeness",
            "stakeholder_alignment",
            "roi_analysis",
        ),
        handoff_targets=("design", "backend"),
        qa_specializations=(
            "requirements_testing",
            "business_logic_validation",
            "uat",
            "compliance_testing",
        ),
        project_phase="strategy",
    ),
    WorkerProfile(
        name="design",
        primary_commands=(
            "design",
            "figma",
            "ui",
            "visual",
            "snippets",
            "research-design",
            "docs-design",
            "analyze-ux",
            "improve-design",
        ),
        secondary_commands=("implement", "analyze", "improve", "docs", "test", "validate"),
        capabilities=(
            "design",
            "frontend",
            "ui/ux",
            "prototyping",
            "accessibility",
            "design_systems",
        ),
        core_activities=(
            "user_experience_research",
            "design_system_maintenance",
            "accessibility_compliance",
            "component_architecture",
        ),
        quality_focus=(
            "design_consistency",
            "accessibility",
            "user_experience",
            "component_reusability",
        ),
        handoff_targets=("backend", "strategy"),
        qa_specializations=(
            "ui_testing",
            "ux_validation",
            "accessibility_testing",
            "design_consistency_checks",
        ),
        project_phase="design",
    ),
    WorkerProfile(
        name="backend",
        primary_commands=(
            "secure",
            "scan",
            "publish",
            "research-technical",
            "docs-technical",
            "analyze-technical",
            "improve-performance",
        ),
        secondary_commands=("implement", "improve", "checkpoint", "docs", "analyze", "test", "validate"),
        capabilities=(
            "backend",
            "architecture",
            "security",
            "deployment",
            "performance",
            "scalability",
        ),
        core_activities=(
            "system_architecture",
            "security_implementation",
            "performance_optimization",
            "devops_automation",
        ),
        quality_focus=("code_quality", "security_validation", "performance", "scalability"),
        handoff_targets=("strategy", "design"),
        qa_specializations=(
            "api_testing",
            "security_testing",
            "performance_testing",
            "integration_testing",
        ),
        project_phase="development",
    ),
    WorkerProfile.generic("generalist", handoff_targets=("strategy", "design", "backend")),
)


@dataclass(frozen=True)
class CapabilityRegistry:
    """Immutable, ordered table of worker profiles.

    Declaration order matters: it is the router's tie-breaker and the default
    participant order for coordination patterns.
    """

    profiles: tuple[WorkerProfile, ...]
    _index: dict[str, WorkerProfile] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index: dict[str, WorkerProfile] = {}
        for profile in self.profiles:
            if profile.name in index:
                raise ConfigurationError(f"Duplicate worker name in registry: {profile.name}")
            index[profile.name] = profile
        if not index:
            raise ConfigurationError("Capability registry must declare at least one worker.")
        object.__setattr__(self, "_index", index)
        self.validate()

    @classmethod
    def default(cls) -> CapabilityRegistry:
        return cls(DEFAULT_PROFILES)

    @classmethod
    def from_config(cls, workers: Iterable[Mapping[str, Any]]) -> CapabilityRegistry:
        definitions = list(workers)
        if not definitions:
            return cls.default()
        return cls(tuple(WorkerProfile.from_dict(item) for item in definitions))

    def validate(self) -> None:
        for profile in self.profiles:
            unknown = [target for target in profile.handoff_targets if target not in self._index]
            if unknown:
                raise ConfigurationError(
                    f"Worker '{profile.name}' hands off to unknown workers: {', '.join(unknown)}"
                )

    def require(self, names: Iterable[str], *, where: str) -> None:
        unknown = [name for name in names if name not in self._index]
        if unknown:
            raise ConfigurationError(f"{where} references unknown workers: {', '.join(unknown)}")

    def get_profile(self, name: str) -> WorkerProfile:
        profile = self._index.get(name)
        if profile is None:
            raise ConfigurationError(f"Unknown worker: {name}")
        return profile

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[WorkerProfile]:
        return iter(self.profiles)

    def __len__(self) -> int:
        return len(self.profiles)

    def names(self) -> list[str]:
        return [profile.name for profile in self.profiles]

    def specialists(self) -> list[WorkerProfile]:
        return [profile for profile in self.profiles if not profile.is_generic]

    def phase_owner(self, phase: str) -> str | None:
        for profile in self.profiles:
            if profile.project_phase == phase:
                return profile.name
        return None

    def position(self, name: str) -> int:
        self.get_profile(name)
        return self.names().index(name)
