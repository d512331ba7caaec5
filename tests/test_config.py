import tomllib
from pathlib import Path

from conductor import __version__
from conductor.config import ConductorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.parser.max_tasks = 4
    config.parser.min_fragment_length = 8
    config.safety.penalty = 0.25
    config.safety.instruction_min_score = 0.4
    config.safety.instruction_blocking_categories = ["prompt_injection", "privilege_escalation"]
    config.execution.approval_risk_levels = ["critical"]
    config.execution.persist_on_create = False
    config.gateway.provider = "openai"
    config.gateway.model = "gpt-4o"
    config.gateway.base_url = "http://localhost:8080/v1"
    config.gateway.timeout_seconds = 15.0
    config.state.directory = ".state"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == ConductorConfig.default()
    assert loaded.parser.max_tasks == 10
    assert loaded.safety.penalty == 0.3
    assert loaded.gateway.provider == "keyword"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    for section in ["[parser]", "[safety]", "[execution]", "[gateway]", "[state]", "[logging]"]:
        assert section in rendered
    assert "instruction_blocking_categories" in rendered
    assert "approval_risk_levels" in rendered
    assert "timeout_seconds = 60.0" in rendered
    tomllib.loads(rendered)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
