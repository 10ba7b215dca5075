"""
Configuration model for patchwright.

The CLI constructs a Config instance and passes it down into the planning,
signing, and apply stages so behavior can be adjusted without relying on
global state.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping

from .errors import ConfigError

DEFAULT_METADATA_DIR = ".patchwright"

# Accepted camelCase spellings for the documented configuration surface.
_ALIASES = {
    "autoApplyThreshold": "auto_apply_threshold",
    "criticalThreshold": "critical_threshold",
    "highThreshold": "high_threshold",
    "mediumThreshold": "medium_threshold",
    "maxSteps": "max_steps",
    "keyId": "key_id",
    "keysPath": "keys_path",
    "tokenBudget": "token_budget",
    "commandTimeout": "command_timeout",
    "maxOutputBytes": "max_output_bytes",
    "metadataDir": "metadata_dir",
}


@dataclass(frozen=True)
class RiskThresholds:
    """
    Score cut-offs used by the risk engine.

    A plan may be applied unattended only when its score is strictly
    below `auto_apply`.
    """

    auto_apply: int = 30
    critical: int = 70
    high: int = 50
    medium: int = 30

    def level_for(self, score: int) -> str:
        if score >= self.critical:
            return "critical"
        if score >= self.high:
            return "high"
        if score >= self.medium:
            return "medium"
        return "low"


@dataclass
class Config:
    """
    Top-level configuration for a patchwright run.
    """

    auto_apply_threshold: int = 30
    critical_threshold: int = 70
    high_threshold: int = 50
    medium_threshold: int = 30
    max_steps: int = 100
    token_budget: int = 100_000
    key_id: str = "local-dev"
    keys_path: str = field(default_factory=lambda: str(Path.home() / DEFAULT_METADATA_DIR / "keys"))
    command_timeout: float = 300.0
    max_output_bytes: int = 1_000_000
    metadata_dir: str = DEFAULT_METADATA_DIR
    verbosity: int = 0

    def __post_init__(self) -> None:
        if not (0 <= self.medium_threshold <= self.high_threshold <= self.critical_threshold <= 100):
            raise ConfigError(
                "risk thresholds must satisfy 0 <= medium <= high <= critical <= 100 "
                f"(got medium={self.medium_threshold}, high={self.high_threshold}, "
                f"critical={self.critical_threshold})"
            )
        if not 0 <= self.auto_apply_threshold <= 100:
            raise ConfigError(f"auto_apply_threshold must be within 0..100, got {self.auto_apply_threshold}")
        if self.max_steps <= 0:
            raise ConfigError(f"max_steps must be positive, got {self.max_steps}")
        if self.command_timeout <= 0:
            raise ConfigError(f"command_timeout must be positive, got {self.command_timeout}")
        if self.max_output_bytes <= 0:
            raise ConfigError(f"max_output_bytes must be positive, got {self.max_output_bytes}")

    @property
    def risk_thresholds(self) -> RiskThresholds:
        return RiskThresholds(
            auto_apply=self.auto_apply_threshold,
            critical=self.critical_threshold,
            high=self.high_threshold,
            medium=self.medium_threshold,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Config":
        """
        Build a Config from a mapping of snake_case or camelCase keys.

        Unknown keys are rejected so that typos do not silently fall
        back to defaults.
        """

        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in values.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ConfigError(f"unknown configuration option: {key}")
            kwargs[name] = value
        return cls(**kwargs)

    def merged(self, **overrides: Any) -> "Config":
        """
        Return a copy with the given non-None overrides applied.
        """

        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return Config.from_mapping(values)


def load_config(path: str) -> Config:
    """
    Load configuration from a JSON file.
    """

    try:
        raw = json.loads(Path(path).read_text())
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"config file {path} is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return Config.from_mapping(raw)
