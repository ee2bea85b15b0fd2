"""
Configuration Manager for OPT-IA.

Central place for the methodology thresholds and runtime parameters.
Every empirical value is declared explicitly and can be overridden.

Usage:
    from optia.config_manager import config
    minimum = config.MIN_IDEAS
"""
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from optia.exceptions import ConfigError


CONFIG_DIR = Path(__file__).parent.parent / "config"
RUNTIME_CONFIG_PATH = CONFIG_DIR / "runtime.yaml"


@dataclass
class SystemConfig:
    """
    Runtime constants for the staged methodology.

    Per-draft overrides (e.g. `minCategories` stored inside a cause tree) win
    over these defaults where a stage supports them.
    """

    # === Stage 0: case context ===

    # Products/services and process-focus areas accepted per case
    MAX_CONTEXT_ITEMS: int = 3

    # === Stage 1: productivity ===

    # Size of the fixed cost-item list
    REQUIRED_COSTS: int = 3

    # Points the productivity rubric needs for validation (0-100)
    PRODUCTIVITY_READY_SCORE: int = 70

    # === Stage 2: quadrants ===

    # Items required in each of F / D / O / A
    QUADRANT_MIN_ITEMS: int = 3

    # === Stage 3: brainstorm ===

    MIN_IDEAS: int = 10

    # === Stage 4: cause tree ===

    MIN_CATEGORIES: int = 4
    MIN_MAIN_CAUSES_PER_CATEGORY: int = 2
    MIN_SUB_CAUSES_PER_MAIN: int = 2
    MAX_WHY_DEPTH: int = 5

    # Non-empty sub-causes needed before Pareto can start
    MIN_ROOT_CANDIDATES: int = 10

    # Seeded when a tree starts empty (6M)
    DEFAULT_CATEGORIES: List[Dict[str, str]] = None

    # === Stage 5: Pareto ===

    PARETO_MIN_SELECTED: int = 10
    PARETO_MAX_SELECTED: int = 15
    PARETO_CRITERIA_COUNT: int = 3
    CRITERION_MIN_WEIGHT: int = 1
    CRITERION_MAX_WEIGHT: int = 10
    CRITICAL_RATIO: float = 0.2

    # === Stage 6: objectives ===

    MIN_GENERAL_OBJECTIVE_CHARS: int = 15
    MIN_SPECIFIC_OBJECTIVES: int = 3

    # === Oracle ===

    # Re-asks after a malformed oracle response
    ORACLE_MAX_RETRIES: int = 1

    # Low temperature keeps structured output stable
    ORACLE_TEMPERATURE: float = 0.2
    ORACLE_MAX_TOKENS: int = 2048

    # Messages of history forwarded to the oracle
    HISTORY_WINDOW: int = 12

    def __post_init__(self):
        if self.DEFAULT_CATEGORIES is None:
            self.DEFAULT_CATEGORIES = [
                {"id": "cat_man", "name": "Man"},
                {"id": "cat_machine", "name": "Machine"},
                {"id": "cat_method", "name": "Method"},
                {"id": "cat_material", "name": "Material"},
                {"id": "cat_measurement", "name": "Measurement"},
                {"id": "cat_environment", "name": "Environment"},
            ]


def _load_runtime_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load runtime overrides if the file exists."""
    target = path or RUNTIME_CONFIG_PATH
    if not target.exists():
        return {}

    try:
        with open(target, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as exc:
        raise ConfigError(f"Cannot read runtime config: {exc}", str(target))

    if not isinstance(data, dict):
        raise ConfigError("Runtime config must be a mapping", str(target))
    return data


def get_config(path: Optional[Path] = None) -> SystemConfig:
    """
    Build the configuration.

    Priority: runtime.yaml > defaults. Unknown keys are ignored.
    """
    base = SystemConfig()
    overrides = _load_runtime_config(path)
    known = {f.name for f in fields(base)}

    for key, value in overrides.items():
        if key in known:
            setattr(base, key, value)

    return base


config = get_config()
