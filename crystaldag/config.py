"""
Engine configuration.

Settings are a validated pydantic model. They can be loaded from a YAML file
and overridden per field through ``CRYSTALDAG_<FIELD>`` environment variables:

    poll_interval: 10
    continuation_extension: .f9
    success_keywords:
      - EEEEEEEEEE TERMINATION

    $ CRYSTALDAG_POLL_INTERVAL=2 crystaldag run workflow.yaml
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CRYSTALDAG_"


class EngineSettings(BaseModel):
    """
    Tunables for polling, cancellation and artifact naming.

    Attributes:
        poll_interval: Seconds a monitor task sleeps between polls
        poll_timeout: Upper bound for a single status query
        submit_timeout: Upper bound for a scheduler submission command
        cancel_grace_period: Seconds between interrupt and kill for local jobs
        shutdown_grace_window: Seconds to wait for cancel confirmations
        hook_timeout: Default upper bound for a hook command (None = unbounded)
        max_unknown_polls: Consecutive undeterminable polls before a job is failed
        continuation_extension: Extension of the artifact a child resumes from
        output_extension: Extension of the job's main output listing
        success_keywords: Output text marking a normal termination
        failure_keywords: Output text marking an error termination
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    poll_interval: float = Field(default=5.0, gt=0)
    poll_timeout: float = Field(default=30.0, gt=0)
    submit_timeout: float = Field(default=60.0, gt=0)
    cancel_grace_period: float = Field(default=10.0, ge=0)
    shutdown_grace_window: float = Field(default=30.0, gt=0)
    hook_timeout: Optional[float] = Field(default=None, gt=0)
    max_unknown_polls: int = Field(default=10, ge=1)
    continuation_extension: str = ".f9"
    output_extension: str = ".out"
    success_keywords: List[str] = Field(default_factory=lambda: ["EEEEEEEEEE TERMINATION"])
    failure_keywords: List[str] = Field(default_factory=lambda: ["ERROR ****"])

    @field_validator("continuation_extension", "output_extension")
    @classmethod
    def _dotted_extension(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("extension must not be empty")
        return value if value.startswith(".") else f".{value}"

    @model_validator(mode="after")
    def _kill_within_shutdown(self) -> "EngineSettings":
        # A local cancel must reach SIGKILL before shutdown stops waiting for it
        if self.cancel_grace_period >= self.shutdown_grace_window:
            raise ValueError(
                f"cancel_grace_period ({self.cancel_grace_period}s) must be shorter than "
                f"shutdown_grace_window ({self.shutdown_grace_window}s)"
            )
        return self


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``CRYSTALDAG_*`` variables that name a settings field."""
    overrides: Dict[str, Any] = {}
    for name, field_info in EngineSettings.model_fields.items():
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if field_info.annotation == List[str]:
            overrides[name] = [item.strip() for item in raw.split(",") if item.strip()]
        elif raw.strip().lower() in ("", "none") and name == "hook_timeout":
            overrides[name] = None
        else:
            # pydantic coerces numeric strings
            overrides[name] = raw
    return overrides


def load_settings(
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> EngineSettings:
    """
    Load engine settings from an optional YAML file plus the environment.

    Precedence, lowest first: defaults, the settings file, ``overrides``
    (a workflow's ``engine:`` section), then ``CRYSTALDAG_*`` variables.

    Args:
        config_path: YAML file with settings at the top level (or under an
                     ``engine:`` key). None means defaults only.
        env: Environment mapping (defaults to os.environ)
        overrides: Values layered over the file, below the environment

    Returns:
        Validated EngineSettings

    Raises:
        ConfigurationError: File missing or unreadable, or values invalid
    """
    data: Dict[str, Any] = {}

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}", source=config_path)
        try:
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", source=config_path) from e

        if not isinstance(loaded, dict):
            raise ConfigurationError(
                f"Expected a mapping at the top of {config_path}", source=config_path
            )
        data = dict(loaded.get("engine", loaded))
        logger.debug(f"Loaded settings from {config_path}: {sorted(data)}")

    if overrides:
        data.update(overrides)
    data.update(_env_overrides(os.environ if env is None else env))

    try:
        return EngineSettings(**data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid engine settings: {e}", config_key=key, source=config_path
        ) from e
