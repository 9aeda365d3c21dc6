"""
Configuration utilities for the simulation engine.
Engine resource limits, execution backend selection, default parameters and logging setup.
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "engine_config.json"
ENV_PREFIX = "PORTFOLIO_SIM_"

BACKENDS = ("auto", "sequential", "parallel", "gpu")

# Recording budget: (recorded steps + 1) * paths stays below this
MAX_TOTAL_DATA_POINTS = 10_000_000
MAX_CHART_STEPS = 500

SEQUENTIAL_PATH_LIMIT = 500
DEFAULT_BLOCK_SIZE = 4_096


@dataclass(frozen=True)
class EngineConfig:
    """Execution and resource settings for a simulation run"""
    max_total_data_points: int = MAX_TOTAL_DATA_POINTS
    max_chart_steps: int = MAX_CHART_STEPS
    sequential_path_limit: int = SEQUENTIAL_PATH_LIMIT
    backend: str = "auto"
    block_size: int = DEFAULT_BLOCK_SIZE
    n_jobs: int = -1

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{self.backend}', expected one of {BACKENDS}")
        if self.max_total_data_points < 1:
            raise ValueError("max_total_data_points must be positive")
        if self.max_chart_steps < 2:
            raise ValueError("max_chart_steps must be at least 2")
        if self.block_size < 1:
            raise ValueError("block_size must be positive")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")


DEFAULT_ENGINE_CONFIG = EngineConfig()


def _coerce(value: str, current: Any) -> Any:
    """Convert an environment string to the type of the current setting"""
    if isinstance(current, int):
        return int(value)
    return value


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration.

    Settings come from the JSON file at `path` (or engine_config.json in the
    working directory when present), then PORTFOLIO_SIM_<SETTING> environment
    variables override individual values.

    Args:
        path: Optional path to a JSON config file

    Returns:
        EngineConfig
    """
    config_path = path or CONFIG_FILENAME
    overrides: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            overrides.update(json.load(f))
        logger.debug("Loaded engine config from %s with %d keys", config_path, len(overrides))
    elif path is not None:
        raise FileNotFoundError(f"Engine config file not found: {path}")

    known = {f.name for f in fields(EngineConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown engine config keys: {sorted(unknown)}")

    config = replace(DEFAULT_ENGINE_CONFIG, **overrides)

    env_overrides = {}
    for name in known:
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is not None:
            env_overrides[name] = _coerce(raw, getattr(config, name))
    if env_overrides:
        logger.debug("Engine config environment overrides: %s", env_overrides)
        config = replace(config, **env_overrides)

    return config


def get_default_simulation_params(mode: str = "growth") -> Dict[str, Any]:
    """Get default simulation parameters for a mode ('growth' or 'withdrawal')"""
    if mode == "growth":
        return {
            'initial_value': 100_000,
            'expected_return': 0.07,
            'volatility': 0.15,
            'duration': 30,
            'cashflow_amount': 500,
            'cashflow_frequency': 'monthly',
            'inflation_rate': 0.02,
            'exclude_inflation_adjustment': False,
            'num_paths': 1_000,
            'portfolio_goal': 1_000_000,
            'tax_enabled': False,
            'tax_rate': 0.15,
            'tax_type': 'capital_gains',
            'calculation_mode': 'effective',
        }
    if mode == "withdrawal":
        return {
            'initial_value': 1_000_000,
            'expected_return': 0.05,
            'volatility': 0.12,
            'duration': 30,
            'cashflow_amount': 3_500,
            'cashflow_frequency': 'monthly',
            'inflation_rate': 0.025,
            'exclude_inflation_adjustment': False,
            'num_paths': 1_000,
            'portfolio_goal': None,
            'tax_enabled': False,
            'tax_rate': 0.22,
            'tax_type': 'tax_deferred',
            'calculation_mode': 'effective',
        }
    raise ValueError(f"Unknown mode '{mode}', expected 'growth' or 'withdrawal'")


def configure_logging(level: int = logging.INFO) -> None:
    """Basic logging setup for command-line use"""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
