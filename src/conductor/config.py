from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

GatewayProvider = Literal["keyword", "openai"]


@dataclass(slots=True)
class ParserConfig:
    max_tasks: int = 10
    min_fragment_length: int = 6


@dataclass(slots=True)
class SafetyConfig:
    penalty: float = 0.3
    instruction_min_score: float = 0.5
    instruction_blocking_categories: list[str] = field(
        default_factory=lambda: ["prompt_injection"]
    )


@dataclass(slots=True)
class ExecutionConfig:
    approval_risk_levels: list[str] = field(default_factory=lambda: ["high", "critical"])
    persist_on_create: bool = True


@dataclass(slots=True)
class GatewayConfig:
    provider: GatewayProvider = "keyword"
    model: str = "gpt-4o-mini"
    base_url: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    timeout_seconds: float = 60.0
    temperature: float = 0.0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".conductor"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ConductorConfig:
    parser: ParserConfig = field(default_factory=ParserConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            parser=ParserConfig(**data.get("parser", {})),
            safety=SafetyConfig(**data.get("safety", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            gateway=GatewayConfig(**data.get("gateway", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "parser": {
                "max_tasks": self.parser.max_tasks,
                "min_fragment_length": self.parser.min_fragment_length,
            },
            "safety": {
                "penalty": self.safety.penalty,
                "instruction_min_score": self.safety.instruction_min_score,
                "instruction_blocking_categories": list(
                    self.safety.instruction_blocking_categories
                ),
            },
            "execution": {
                "approval_risk_levels": list(self.execution.approval_risk_levels),
                "persist_on_create": self.execution.persist_on_create,
            },
            "gateway": {
                "provider": self.gateway.provider,
                "model": self.gateway.model,
                "base_url": self.gateway.base_url,
                "api_key_env": self.gateway.api_key_env,
                "timeout_seconds": self.gateway.timeout_seconds,
                "temperature": self.gateway.temperature,
            },
            "state": {
                "directory": self.state.directory,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["parser", "safety", "execution", "gateway", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
