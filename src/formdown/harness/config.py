"""Harness budgets and their resolution.

Values are merged from four sources, highest precedence first:

1. explicit overrides (API keywords or CLI options),
2. a YAML or JSON config file,
3. the ``harness`` hints in the document's front-matter,
4. the defaults below.

Config file format::

    # formdown.yaml
    max_turns: 30
    max_patches_per_turn: 10
    max_issues_per_turn: 5
    max_parallel_agents: 2
    target_roles: [agent]
    concurrent: true
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.models import ALL_ROLES, FormDocument
from ..errors import ConfigError

logger = logging.getLogger("formdown.config")

DEFAULT_MAX_TURNS = 50
DEFAULT_MAX_PATCHES_PER_TURN = 20
DEFAULT_MAX_ISSUES_PER_TURN = 10
DEFAULT_MAX_PARALLEL_AGENTS = 4


class HarnessConfig(BaseModel):
    """Budgets and targeting for one fill run."""

    model_config = ConfigDict(extra="forbid")

    max_turns: int = Field(default=DEFAULT_MAX_TURNS, ge=1)
    max_patches_per_turn: int = Field(default=DEFAULT_MAX_PATCHES_PER_TURN, ge=1)
    max_issues_per_turn: int = Field(default=DEFAULT_MAX_ISSUES_PER_TURN, ge=1)
    max_parallel_agents: int = Field(default=DEFAULT_MAX_PARALLEL_AGENTS, ge=1)
    target_roles: list[str] = Field(default_factory=lambda: [ALL_ROLES])
    # False runs the threads of an order level one after another
    concurrent: bool = True


def _read_config_file(config_path: str | Path) -> dict[str, Any]:
    path = Path(config_path).expanduser().resolve()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    raw = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(raw) or {}
        elif path.suffix == ".json":
            data = json.loads(raw)
        else:
            # Try JSON first, then YAML
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = yaml.safe_load(raw) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not parse config file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    # A full formdown front-matter block is accepted too
    if "formdown" in data and isinstance(data["formdown"], dict):
        data = data["formdown"].get("harness") or {}
    return data


def load_harness_config(
    config_path: str | Path | None = None,
    *,
    doc: Optional[FormDocument] = None,
    max_turns: int | None = None,
    max_patches_per_turn: int | None = None,
    max_issues_per_turn: int | None = None,
    max_parallel_agents: int | None = None,
    target_roles: list[str] | None = None,
    concurrent: bool | None = None,
) -> HarnessConfig:
    """Resolve a ``HarnessConfig``.

    Parameters
    ----------
    config_path
        Optional YAML or JSON file with harness settings.
    doc
        Document whose front-matter ``harness`` hints act as defaults.
    max_turns, max_patches_per_turn, max_issues_per_turn,
    max_parallel_agents, target_roles, concurrent
        Explicit overrides; ``None`` leaves the lower-precedence value.
    """
    data: dict[str, Any] = {}

    # -- Front-matter hints ----------------------------------------------
    if doc is not None:
        data.update(doc.form.harness_hints)

    # -- Config file -----------------------------------------------------
    if config_path:
        data.update(_read_config_file(config_path))
        logger.debug("Loaded harness config from %s", config_path)

    # -- Explicit overrides ----------------------------------------------
    overrides = {
        "max_turns": max_turns,
        "max_patches_per_turn": max_patches_per_turn,
        "max_issues_per_turn": max_issues_per_turn,
        "max_parallel_agents": max_parallel_agents,
        "target_roles": target_roles,
        "concurrent": concurrent,
    }
    for key, value in overrides.items():
        if value is not None:
            data[key] = value

    try:
        return HarnessConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid harness configuration: {exc}") from exc
