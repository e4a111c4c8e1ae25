import tomllib
from pathlib import Path

import pytest

from switchyard import __version__
from switchyard.config import SwitchyardConfig, dumps_toml, load_config, save_config
from switchyard.errors import ConfigurationError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "switchyard.toml"
    config = SwitchyardConfig.default()
    config.routing.default_worker = "strategy"
    config.routing.capability_weight = 40
    config.routing.urgent_keywords = ["urgent", "sev1"]
    config.gates.coherence = 0.7
    config.orchestration.default_pattern = "parallel"
    config.orchestration.max_retries = 2
    config.orchestration.invocation_timeout_seconds = 12.5
    config.history.max_records = 50

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.routing.default_worker == "strategy"
    assert loaded.routing.capability_weight == 40
    assert loaded.routing.primary_command_weight == 100
    assert loaded.routing.urgent_keywords == ["urgent", "sev1"]
    assert loaded.gates.coherence == pytest.approx(0.7)
    assert loaded.gates.alignment == pytest.approx(0.85)
    assert loaded.orchestration.default_pattern == "parallel"
    assert loaded.orchestration.max_retries == 2
    assert loaded.orchestration.invocation_timeout_seconds == pytest.approx(12.5)
    assert loaded.history.max_records == 50
    assert loaded.workers == []


def test_worker_tables_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "switchyard.toml"
    config = SwitchyardConfig.default()
    config.workers = [
        {"name": "solo", "kind": "specialist", "capabilities": ["docs"], "handoff_targets": []},
        {"name": "fallback", "kind": "generic"},
    ]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert [worker["name"] for worker in loaded.workers] == ["solo", "fallback"]
    assert loaded.workers[0]["capabilities"] == ["docs"]
    assert loaded.workers[1]["kind"] == "generic"


def test_toml_dump_contains_sections_and_weights() -> None:
    rendered = dumps_toml(SwitchyardConfig.default())

    assert "[routing]" in rendered
    assert "[gates]" in rendered
    assert "[orchestration]" in rendered
    assert "[history]" in rendered
    assert "primary_command_weight = 100" in rendered
    assert "handoff_chain_weight = 30" in rendered
    assert "alignment = 0.85" in rendered
    assert "invocation_timeout_seconds" in rendered
    assert "[[workers]]" not in rendered


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.routing.default_worker == "backend"
    assert loaded.gates.thresholds() == {
        "alignment": 0.85,
        "coherence": 0.80,
        "feasibility": 0.75,
        "integrity": 0.80,
    }


def test_invalid_values_raise_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        SwitchyardConfig.from_dict({"gates": {"coherence": 1.5}})
    with pytest.raises(ConfigurationError):
        SwitchyardConfig.from_dict({"orchestration": {"invocation_timeout_seconds": 0}})
    with pytest.raises(ConfigurationError):
        SwitchyardConfig.from_dict({"routing": {"no_such_weight": 1}})

    broken = tmp_path / "broken.toml"
    broken.write_text("[routing\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(broken)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
