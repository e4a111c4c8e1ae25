from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from switchyard.config import RoutingConfig
from switchyard.registry import CapabilityRegistry, WorkerProfile

Priority = Literal["normal", "high", "urgent"]
ConflictKind = Literal["capability_overlap", "quality_tension", "domain_boundary"]
RiskLevel = Literal["low", "medium", "high"]

PRIORITIES: tuple[str, ...] = ("normal", "high", "urgent")
TOKEN_PATTERN = re.compile(r"[a-z0-9][a-z0-9_\-/]*")

PHASE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "strategy": ("requirement", "planning", "strategy"),
    "design": ("design", "ui", "ux"),
    "development": ("implement", "code", "deploy"),
}

OPPOSING_QUALITY_PAIRS: tuple[tuple[str, str, str], ...] = (
    ("user_experience", "performance", "User experience vs raw performance trade-offs"),
    (
        "business_validation",
        "technical_feasibility",
        "Business requirements vs technical constraints",
    ),
)

VALIDATION_PRIORITY_ORDER = {"urgent": 0, "high": 1, "medium": 2, "low": 3}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _tokens(text: str) -> list[str]:
    return TOKEN_PATTERN.findall(text.lower())


def _has_prefix_token(tokens: Iterable[str], keywords: Iterable[str]) -> bool:
    keyword_list = [keyword.lower() for keyword in keywords]
    return any(token.startswith(keyword) for token in tokens for keyword in keyword_list)


def _phrase(value: str) -> str:
    return value.lower().replace("_", " ")


@dataclass(frozen=True, slots=True)
class Task:
    description: str = ""
    tags: tuple[str, ...] = ()
    priority: Priority | None = None
    command: str | None = None
    id: str = field(default_factory=lambda: f"task-{uuid4().hex[:12]}")

    def __post_init__(self) -> None:
        tags = self.tags
        if isinstance(tags, str):
            tags = (tags,)
        normalized = tuple(str(tag).strip().lower() for tag in tags if str(tag).strip())
        object.__setattr__(self, "tags", normalized)
        object.__setattr__(self, "description", (self.description or "").strip())
        if self.command is not None:
            object.__setattr__(self, "command", self.command.strip().lower() or None)
        if self.priority is not None and self.priority not in PRIORITIES:
            raise ValueError(f"Unsupported task priority: {self.priority}")

    @property
    def primary_type(self) -> str:
        if self.command:
            return self.command
        return self.tags[0] if self.tags else ""

    @property
    def scope_tags(self) -> tuple[str, ...]:
        return tuple(tag for tag in self.tags if tag != self.primary_type)

    def text(self) -> str:
        return " ".join([self.description.lower(), *self.tags]).strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "tags": list(self.tags),
            "priority": self.priority,
            "command": self.command,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Task:
        return cls(
            description=str(data.get("description", "")),
            tags=tuple(data.get("tags", ())),
            priority=data.get("priority"),
            command=data.get("command"),
            id=str(data.get("id") or f"task-{uuid4().hex[:12]}"),
        )


@dataclass(slots=True)
class RoutingContext:
    last_worker: str | None = None
    active_workers: tuple[str, ...] = ()
    preserved_state: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScoreContribution:
    worker: str
    rule: str
    points: int
    detail: str = ""


@dataclass(frozen=True, slots=True)
class ConflictRecord:
    kind: ConflictKind
    detail: str
    risk_level: RiskLevel
    suggested_resolution: str


@dataclass(slots=True)
class HandoffContext:
    from_worker: str
    to_worker: str
    preserved_state: dict[str, Any] = field(default_factory=dict)
    quality_expectations: dict[str, list[str]] = field(default_factory=dict)
    reason: str = ""


@dataclass(slots=True)
class RoutingDecision:
    task: Task
    assigned_worker: str
    priority: Priority
    reasoning_trace: list[ScoreContribution] = field(default_factory=list)
    handoff_required: bool = False
    handoff: HandoffContext | None = None
    conflicts: list[ConflictRecord] = field(default_factory=list)
    override: str | None = None
    scores: dict[str, int] = field(default_factory=dict)

    @property
    def urgent(self) -> bool:
        return self.priority == "urgent"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "assigned_worker": self.assigned_worker,
            "priority": self.priority,
            "reasoning_trace": [asdict(item) for item in self.reasoning_trace],
            "handoff_required": self.handoff_required,
            "handoff": asdict(self.handoff) if self.handoff else None,
            "conflicts": [asdict(item) for item in self.conflicts],
            "override": self.override,
            "scores": dict(self.scores),
        }


@dataclass(frozen=True, slots=True)
class DomainBoundaryRule:
    from_phase: str | None
    to_phase: str | None
    terms: tuple[str, ...]
    detail: str
    risk_level: RiskLevel
    suggested_resolution: str
    commands: tuple[str, ...] = ()


DEFAULT_DOMAIN_BOUNDARY_RULES: tuple[DomainBoundaryRule, ...] = (
    DomainBoundaryRule(
        from_phase="design",
        to_phase=None,
        terms=("performance",),
        detail="Design worker handing off performance-scoped work",
        risk_level="low",
        suggested_resolution="Ensure UX requirements are clearly communicated",
        commands=("implement", "improve-performance", "performance"),
    ),
    DomainBoundaryRule(
        from_phase=None,
        to_phase="design",
        terms=("security", "vulnerability", "auth"),
        detail="Security-scoped work routed to the design worker",
        risk_level="medium",
        suggested_resolution="Pair with the security owner before changes ship",
    ),
    DomainBoundaryRule(
        from_phase="development",
        to_phase="strategy",
        terms=("deploy", "release", "rollout"),
        detail="Technical rollout handed back to strategy mid-delivery",
        risk_level="low",
        suggested_resolution="Confirm rollout constraints with the technical owner",
    ),
)


@dataclass(frozen=True)
class OverrideTables:
    """Explicit 1:1 routes that bypass scoring entirely."""

    domain: Mapping[str, str]
    qa: Mapping[str, Mapping[str, str]]
    qa_fallback: Mapping[str, str]

    @classmethod
    def default(cls) -> OverrideTables:
        return cls(
            domain={
                "business-impact": "strategy",
                "docs-business": "strategy",
                "analyze-business": "strategy",
                "research-market": "strategy",
                "improve-strategy": "strategy",
                "docs-design": "design",
                "analyze-ux": "design",
                "research-design": "design",
                "improve-design": "design",
                "docs-technical": "backend",
                "analyze-technical": "backend",
                "research-technical": "backend",
                "improve-performance": "backend",
            },
            qa={
                "test": {
                    "ui": "design",
                    "ux": "design",
                    "design": "design",
                    "accessibility": "design",
                    "component": "design",
                    "frontend": "design",
                    "api": "backend",
                    "security": "backend",
                    "performance": "backend",
                    "backend": "backend",
                    "integration": "backend",
                    "system": "backend",
                    "requirements": "strategy",
                    "business": "strategy",
                    "uat": "strategy",
                    "acceptance": "strategy",
                    "compliance": "strategy",
                },
                "validate": {
                    "design": "design",
                    "accessibility": "design",
                    "ux": "design",
                    "ui": "design",
                    "security": "backend",
                    "performance": "backend",
                    "technical": "backend",
                    "architecture": "backend",
                    "business": "strategy",
                    "requirements": "strategy",
                    "compliance": "strategy",
                    "regulatory": "strategy",
                },
            },
            qa_fallback={"test": "backend", "validate": "strategy"},
        )

    def referenced_workers(self) -> set[str]:
        names = set(self.domain.values()) | set(self.qa_fallback.values())
        for table in self.qa.values():
            names.update(table.values())
        return names


@dataclass(slots=True)
class CrossValidationStep:
    worker: str
    validation_types: list[str]
    quality_focus: list[str]
    expected_checks: list[str]
    priority: str


class Router:
    """Scores registry workers against a task and picks one.

    Routing is stateless per call; the caller persists decisions.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        config: RoutingConfig | None = None,
        *,
        overrides: OverrideTables | None = None,
        boundary_rules: tuple[DomainBoundaryRule, ...] = DEFAULT_DOMAIN_BOUNDARY_RULES,
    ) -> None:
        self.registry = registry
        self.config = config or RoutingConfig()
        self.overrides = overrides or OverrideTables.default()
        self.boundary_rules = boundary_rules
        registry.require([self.config.default_worker], where="routing.default_worker")
        registry.require(sorted(self.overrides.referenced_workers()), where="Router override table")

    def _domain_override(self, task: Task) -> tuple[str, str] | None:
        candidates = [task.primary_type, *task.tags] if task.primary_type else list(task.tags)
        for tag in candidates:
            worker = self.overrides.domain.get(tag)
            if worker:
                return worker, tag
        return None

    def _qa_override(self, task: Task) -> tuple[str, str] | None:
        command = task.primary_type
        table = self.overrides.qa.get(command)
        if table is None:
            return None
        scope = task.scope_tags[0] if task.scope_tags else ""
        if scope and scope in table:
            return table[scope], scope
        text = " ".join([*task.scope_tags, task.description.lower()])
        for keyword, worker in table.items():
            if keyword in text:
                return worker, keyword
        if not task.scope_tags and not task.description:
            # Unscoped QA runs across every worker; let scoring decide.
            return None
        fallback = self.overrides.qa_fallback.get(command)
        if fallback:
            return fallback, f"{command} fallback"
        return None

    def detect_project_phase(self, task: Task) -> str:
        tokens = _tokens(task.text())
        for phase, keywords in PHASE_KEYWORDS.items():
            if _has_prefix_token(tokens, keywords):
                return phase
        return "general"

    def _score_worker(
        self,
        profile: WorkerProfile,
        task: Task,
        context: RoutingContext,
        project_phase: str,
        last_profile: WorkerProfile | None,
    ) -> list[ScoreContribution]:
        cfg = self.config
        text = task.text()
        command = task.primary_type
        contributions: list[ScoreContribution] = []

        if command and command in profile.primary_commands:
            contributions.append(
                ScoreContribution(profile.name, "primary_command", cfg.primary_command_weight, command)
            )
        if command and command in profile.secondary_commands:
            contributions.append(
                ScoreContribution(
                    profile.name, "secondary_command", cfg.secondary_command_weight, command
                )
            )
        if text:
            for capability in profile.capabilities:
                if capability.lower() in text or _phrase(capability) in text:
                    contributions.append(
                        ScoreContribution(profile.name, "capability", cfg.capability_weight, capability)
                    )
            for activity in profile.core_activities:
                if _phrase(activity) in text:
                    contributions.append(
                        ScoreContribution(
                            profile.name, "core_activity", cfg.core_activity_weight, activity
                        )
                    )
        if last_profile is not None and profile.name in last_profile.handoff_targets:
            contributions.append(
                ScoreContribution(
                    profile.name, "handoff_chain", cfg.handoff_chain_weight, last_profile.name
                )
            )
        if profile.name in context.active_workers:
            contributions.append(
                ScoreContribution(profile.name, "active_worker", cfg.active_worker_weight)
            )
        if project_phase != "general" and profile.project_phase == project_phase:
            contributions.append(
                ScoreContribution(
                    profile.name, "project_phase", cfg.project_phase_weight, project_phase
                )
            )
        return contributions

    def determine_priority(self, task: Task) -> Priority:
        tokens = [*_tokens(task.description), *task.tags]
        if task.primary_type:
            tokens.append(task.primary_type)
        if _has_prefix_token(tokens, self.config.urgent_keywords):
            return "urgent"
        if task.priority is not None:
            return task.priority
        if task.primary_type in self.config.high_priority_commands:
            return "high"
        return "normal"

    def route(self, task: Task, context: RoutingContext | None = None) -> RoutingDecision:
        context = context or RoutingContext()
        if context.last_worker is not None:
            self.registry.get_profile(context.last_worker)
        self.registry.require(context.active_workers, where="RoutingContext.active_workers")

        priority = self.determine_priority(task)
        override = self._domain_override(task)
        override_name = "domain" if override else None
        if override is None:
            override = self._qa_override(task)
            override_name = "qa_scope" if override else None

        if override is not None:
            worker, matched = override
            decision = RoutingDecision(
                task=task,
                assigned_worker=worker,
                priority=priority,
                reasoning_trace=[ScoreContribution(worker, f"override:{override_name}", 0, matched)],
                override=override_name,
            )
        else:
            decision = self._route_by_score(task, context, priority)

        if context.last_worker and context.last_worker != decision.assigned_worker:
            decision.handoff_required = True
            decision.handoff = self.build_handoff(
                context.last_worker, decision.assigned_worker, context.preserved_state
            )
            decision.conflicts = self.detect_conflicts(
                context.last_worker, decision.assigned_worker, task
            )
        return decision

    def _route_by_score(
        self, task: Task, context: RoutingContext, priority: Priority
    ) -> RoutingDecision:
        last_profile = (
            self.registry.get_profile(context.last_worker) if context.last_worker else None
        )
        if not task.text() and task.command is None:
            # An empty task ignores context bonuses.
            return RoutingDecision(
                task=task,
                assigned_worker=self.config.default_worker,
                priority=priority,
                reasoning_trace=[
                    ScoreContribution(self.config.default_worker, "default_worker", 0, "empty task")
                ],
            )
        project_phase = self.detect_project_phase(task)
        trace: list[ScoreContribution] = []
        scores: dict[str, int] = {}
        for profile in self.registry:
            contributions = self._score_worker(profile, task, context, project_phase, last_profile)
            trace.extend(contributions)
            scores[profile.name] = sum(item.points for item in contributions)

        best_name: str | None = None
        best_score = 0
        for name, score in scores.items():
            if score > best_score:
                best_name, best_score = name, score
        if best_name is None:
            best_name = self.config.default_worker
            trace.append(ScoreContribution(best_name, "default_worker", 0, "no positive score"))

        return RoutingDecision(
            task=task,
            assigned_worker=best_name,
            priority=priority,
            reasoning_trace=trace,
            scores=scores,
        )

    def build_handoff(
        self, from_worker: str, to_worker: str, preserved_state: Mapping[str, Any] | None = None
    ) -> HandoffContext:
        from_profile = self.registry.get_profile(from_worker)
        to_profile = self.registry.get_profile(to_worker)
        state = dict(preserved_state or {})
        for key in ("decisions", "constraints", "stakeholder_requirements"):
            state.setdefault(key, [])
        return HandoffContext(
            from_worker=from_worker,
            to_worker=to_worker,
            preserved_state=state,
            quality_expectations={
                "from": list(from_profile.quality_focus),
                "to": list(to_profile.quality_focus),
            },
            reason=f"Routing moved the task from {from_worker} to {to_worker}",
        )

    def detect_conflicts(self, from_worker: str, to_worker: str, task: Task) -> list[ConflictRecord]:
        from_profile = self.registry.get_profile(from_worker)
        to_profile = self.registry.get_profile(to_worker)
        conflicts: list[ConflictRecord] = []

        overlap = [cap for cap in from_profile.capabilities if cap in to_profile.capabilities]
        if overlap:
            conflicts.append(
                ConflictRecord(
                    kind="capability_overlap",
                    detail="Shared capabilities: " + ", ".join(overlap),
                    risk_level="medium",
                    suggested_resolution="Define clear boundaries and defer to receiving worker",
                )
            )

        tensions: list[str] = []
        for left, right, label in OPPOSING_QUALITY_PAIRS:
            forward = left in from_profile.quality_focus and right in to_profile.quality_focus
            backward = right in from_profile.quality_focus and left in to_profile.quality_focus
            if forward or backward:
                tensions.append(label)
        if tensions:
            conflicts.append(
                ConflictRecord(
                    kind="quality_tension",
                    detail="; ".join(tensions),
                    risk_level="high",
                    suggested_resolution="Require explicit consensus or escalation",
                )
            )

        tokens = _tokens(task.text())
        for rule in self.boundary_rules:
            if rule.from_phase is not None and from_profile.project_phase != rule.from_phase:
                continue
            if rule.to_phase is not None and to_profile.project_phase != rule.to_phase:
                continue
            if rule.commands and task.primary_type not in rule.commands and not (
                set(rule.terms) & set(task.tags)
            ):
                continue
            if not _has_prefix_token(tokens, rule.terms):
                continue
            conflicts.append(
                ConflictRecord(
                    kind="domain_boundary",
                    detail=rule.detail,
                    risk_level=rule.risk_level,
                    suggested_resolution=rule.suggested_resolution,
                )
            )
        return conflicts

    def _validation_priority(self, profile: WorkerProfile, task: Task) -> str:
        tokens = _tokens(task.text())
        if _has_prefix_token(tokens, ("security", "vulnerab")):
            return "urgent" if "security" in profile.capabilities else "high"
        if _has_prefix_token(tokens, ("accessibility", "a11y")):
            return "urgent" if "accessibility" in profile.capabilities else "medium"
        if _has_prefix_token(tokens, ("user", "customer")):
            return "high" if profile.project_phase == "strategy" else "medium"
        command_owners = {"secure": "development", "design": "design", "requirements": "strategy"}
        owner_phase = command_owners.get(task.primary_type)
        if owner_phase is not None:
            if profile.project_phase == owner_phase:
                return "urgent" if task.primary_type == "secure" else "high"
            return "medium" if task.primary_type == "secure" else "low"
        return "medium"

    def cross_validation(self, primary_worker: str, task: Task) -> list[CrossValidationStep]:
        """Plan validation of ``primary_worker``'s output by every other specialist."""
        self.registry.get_profile(primary_worker)
        steps: list[CrossValidationStep] = []
        for profile in self.registry.specialists():
            if profile.name == primary_worker:
                continue
            steps.append(
                CrossValidationStep(
                    worker=profile.name,
                    validation_types=list(profile.qa_specializations) or ["general_validation"],
                    quality_focus=list(profile.quality_focus),
                    expected_checks=[
                        f"Validate {_phrase(focus)}" for focus in profile.quality_focus
                    ]
                    or ["General quality validation"],
                    priority=self._validation_priority(profile, task),
                )
            )
        steps.sort(key=lambda step: VALIDATION_PRIORITY_ORDER[step.priority])
        return steps


def routing_record(decision: RoutingDecision) -> dict[str, Any]:
    """Flatten a decision into a history record."""
    return {
        "kind": "routing",
        "task_id": decision.task.id,
        "recorded_at": _utcnow_iso(),
        "assigned_worker": decision.assigned_worker,
        "priority": decision.priority,
        "handoff_required": decision.handoff_required,
        "handoff_from": decision.handoff.from_worker if decision.handoff else None,
        "override": decision.override,
        "conflicts": [item.kind for item in decision.conflicts],
        "scores": dict(decision.scores),
        "description": decision.task.description,
        "tags": list(decision.task.tags),
    }
