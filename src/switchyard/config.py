from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from switchyard.errors import ConfigurationError

PatternName = Literal["auto", "sequential", "parallel", "collaborative", "orchestrated"]


@dataclass(slots=True)
class RoutingConfig:
    default_worker: str = "backend"
    primary_command_weight: int = 100
    secondary_command_weight: int = 50
    capability_weight: int = 25
    core_activity_weight: int = 30
    handoff_chain_weight: int = 30
    active_worker_weight: int = 15
    project_phase_weight: int = 20
    urgent_keywords: list[str] = field(
        default_factory=lambda: [
            "urgent",
            "emergency",
            "critical",
            "blocker",
            "broken",
            "outage",
            "security-breach",
            "vulnerability",
        ]
    )
    high_priority_commands: list[str] = field(
        default_factory=lambda: ["secure", "scan", "validate", "test"]
    )


@dataclass(slots=True)
class GatesConfig:
    alignment: float = 0.85
    coherence: float = 0.80
    feasibility: float = 0.75
    integrity: float = 0.80

    def thresholds(self) -> dict[str, float]:
        return {
            "alignment": float(self.alignment),
            "coherence": float(self.coherence),
            "feasibility": float(self.feasibility),
            "integrity": float(self.integrity),
        }


@dataclass(slots=True)
class OrchestrationConfig:
    default_pattern: PatternName = "auto"
    lead_worker: str = "strategy"
    invocation_timeout_seconds: float = 30.0
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class HistoryConfig:
    path: str = ".switchyard/history"
    max_records: int = 1000


@dataclass(slots=True)
class SwitchyardConfig:
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    workers: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def default(cls) -> SwitchyardConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SwitchyardConfig:
        try:
            config = cls(
                routing=RoutingConfig(**data.get("routing", {})),
                gates=GatesConfig(**data.get("gates", {})),
                orchestration=OrchestrationConfig(**data.get("orchestration", {})),
                history=HistoryConfig(**data.get("history", {})),
                workers=[dict(item) for item in data.get("workers", [])],
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Malformed configuration: {exc}") from exc
        for gate, threshold in config.gates.thresholds().items():
            if not 0.0 <= threshold <= 1.0:
                raise ConfigurationError(
                    f"Gate threshold for '{gate}' must be within [0, 1], got {threshold}."
                )
        if config.orchestration.invocation_timeout_seconds <= 0:
            raise ConfigurationError("invocation_timeout_seconds must be positive.")
        return config

    def to_dict(self) -> dict:
        return {
            "routing": {
                "default_worker": self.routing.default_worker,
                "primary_command_weight": self.routing.primary_command_weight,
                "secondary_command_weight": self.routing.secondary_command_weight,
                "capability_weight": self.routing.capability_weight,
                "core_activity_weight": self.routing.core_activity_weight,
                "handoff_chain_weight": self.routing.handoff_chain_weight,
                "active_worker_weight": self.routing.active_worker_weight,
                "project_phase_weight": self.routing.project_phase_weight,
                "urgent_keywords": list(self.routing.urgent_keywords),
                "high_priority_commands": list(self.routing.high_priority_commands),
            },
            "gates": self.gates.thresholds(),
            "orchestration": {
                "default_pattern": self.orchestration.default_pattern,
                "lead_worker": self.orchestration.lead_worker,
                "invocation_timeout_seconds": self.orchestration.invocation_timeout_seconds,
                "max_retries": self.orchestration.max_retries,
                "retry_backoff_seconds": self.orchestration.retry_backoff_seconds,
            },
            "history": {
                "path": self.history.path,
                "max_records": self.history.max_records,
            },
            "workers": [dict(item) for item in self.workers],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SwitchyardConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["routing", "gates", "orchestration", "history"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for worker in data["workers"]:
        lines.append("[[workers]]")
        for key, value in worker.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SwitchyardConfig:
    if not path.exists():
        return SwitchyardConfig.default()
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc
    return SwitchyardConfig.from_dict(payload)


def save_config(path: Path, config: SwitchyardConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
