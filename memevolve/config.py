"""
Configuration - Every threshold and cadence the engine uses.

Sources, lowest to highest precedence:
1. Dataclass defaults below
2. YAML file (~/.memevolve/config/memevolve.yaml, or $MEMEVOLVE_CONFIG)
3. MEMEVOLVE_* environment variables
4. Overrides passed to load_config()
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from memevolve.log import get_logger

logger = get_logger("memevolve.config")

DEFAULT_CONFIG_PATH = Path.home() / ".memevolve" / "config" / "memevolve.yaml"


@dataclass
class EvolutionConfig:
    """Tunable parameters of the evolution engine."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".memevolve" / "data")
    log_level: str = "INFO"

    # Lifecycle (memory_strength thresholds)
    consolidate_strength: float = 0.3
    archive_strength: float = 0.1
    forget_strength: float = 0.01
    min_access_for_consolidation: int = 2

    # Consolidation / promotion
    promotion_similarity: float = 0.85
    promotion_min_importance: float = 0.5
    promotion_min_access: int = 2
    promotion_cap: int = 20
    project_discount: float = 0.8
    user_discount: float = 0.7
    user_min_sessions: int = 3
    episodic_group_min: int = 3

    # Knowledge graph
    entity_similarity: float = 0.88
    entity_prune_confidence: float = 0.3
    entity_prune_mentions: int = 2
    edge_invalidate_confidence: float = 0.2
    graph_stale_days: int = 30

    # Strategy adaptation
    adaptation_window_days: int = 30
    adaptation_min_samples: int = 5
    learning_rate: float = 0.1
    convergence_epsilon: float = 0.005
    convergence_rounds: int = 3
    implicit_feedback: bool = True

    # Scheduler cadence
    full_every: int = 5
    reflect_every: int = 20
    light_budget_seconds: float = 2.0
    lock_ttl_seconds: float = 600.0

    # Reflection
    noise_age_days: int = 14
    noise_max_importance: float = 0.3

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()


def _coerce(value: str, current: Any) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path):
        return Path(value)
    return value


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not load config file {path}: {e}")
        return {}


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> EvolutionConfig:
    """Build an EvolutionConfig from file, environment and overrides."""
    known = {f.name for f in fields(EvolutionConfig)}
    values: Dict[str, Any] = {}

    path = config_path or Path(os.environ.get("MEMEVOLVE_CONFIG", DEFAULT_CONFIG_PATH))
    path = Path(path).expanduser()
    if path.exists():
        file_config = _read_yaml(path)
        unknown = set(file_config) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        values.update({k: v for k, v in file_config.items() if k in known})

    defaults = EvolutionConfig()
    for name in known:
        env_value = os.environ.get(f"MEMEVOLVE_{name.upper()}")
        if env_value is not None:
            values[name] = _coerce(env_value, getattr(defaults, name))

    if overrides:
        values.update({k: v for k, v in overrides.items() if k in known})

    return EvolutionConfig(**values)
