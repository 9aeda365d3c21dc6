"""
IO utilities for simulation parameters and results.
Converts parameters to and from plain dicts (so a run can be replayed from
{mode, params, seed}), saves replays as JSON and exposes result series as
pandas DataFrames and CSV text.
"""
import json
from dataclasses import asdict, fields
from typing import Any, Dict, Tuple

import pandas as pd

from simulation import (
    InvalidSimulationParams,
    SimulationParams,
    SimulationResult,
)
from stepper import MODES
from tax import TaxConfig

# camelCase keys of shared payloads -> SimulationParams fields
CAMEL_CASE_KEYS = {
    'initialValue': 'initial_value',
    'startingCostBasis': 'starting_cost_basis',
    'expectedReturn': 'expected_return',
    'volatility': 'volatility',
    'duration': 'duration',
    'cashflowAmount': 'cashflow_amount',
    'cashflowFrequency': 'cashflow_frequency',
    'inflationAdjustment': 'inflation_rate',
    'excludeInflationAdjustment': 'exclude_inflation_adjustment',
    'numPaths': 'num_paths',
    'portfolioGoal': 'portfolio_goal',
    'taxEnabled': 'tax_enabled',
    'taxRate': 'tax_rate',
    'taxType': 'tax_type',
    'calculationMode': 'calculation_mode',
}

# Shared payloads carry rates in percent
PERCENT_KEYS = {'expectedReturn', 'volatility', 'inflationAdjustment', 'taxRate'}

TAX_KEYS = {'tax_enabled', 'tax_rate', 'tax_type'}


def params_to_dict(params: SimulationParams) -> Dict[str, Any]:
    """
    Convert SimulationParams to a flat dictionary.

    The tax configuration is flattened into tax_enabled/tax_rate/tax_type.

    Args:
        params: SimulationParams object

    Returns:
        Dictionary representation
    """
    param_dict = asdict(params)
    tax = param_dict.pop('tax')
    param_dict['tax_enabled'] = tax['enabled']
    param_dict['tax_rate'] = tax['rate']
    param_dict['tax_type'] = tax['tax_type']
    return param_dict


def _normalize_keys(param_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase payload keys (percent rates) onto snake_case fields (fraction rates)"""
    normalized = {}
    for key, value in param_dict.items():
        if key in CAMEL_CASE_KEYS:
            if key in PERCENT_KEYS and value is not None:
                value = float(value) / 100.0
            normalized[CAMEL_CASE_KEYS[key]] = value
        else:
            normalized[key] = value
    return normalized


def dict_to_params(param_dict: Dict[str, Any]) -> SimulationParams:
    """
    Convert a dictionary to SimulationParams.

    Accepts the snake_case keys produced by params_to_dict or the camelCase
    keys of a shared payload. Keys that are not simulation parameters are
    ignored.

    Args:
        param_dict: Dictionary with parameter values

    Returns:
        SimulationParams object (not yet validated)
    """
    normalized = _normalize_keys(param_dict)
    known = {f.name for f in fields(SimulationParams)}

    tax = normalized.get('tax')
    if not isinstance(tax, TaxConfig):
        defaults = TaxConfig()
        tax = TaxConfig(
            enabled=bool(normalized.get('tax_enabled', defaults.enabled)),
            rate=float(normalized.get('tax_rate') or defaults.rate),
            tax_type=normalized.get('tax_type') or defaults.tax_type,
        )

    kwargs = {key: value for key, value in normalized.items() if key in known and key != 'tax'}
    if 'num_paths' in kwargs and isinstance(kwargs['num_paths'], float) and kwargs['num_paths'].is_integer():
        kwargs['num_paths'] = int(kwargs['num_paths'])
    return SimulationParams(tax=tax, **kwargs)


def create_replay_payload(params: SimulationParams, mode: str, seed) -> Dict[str, Any]:
    """Everything needed to reproduce a run"""
    return {'mode': mode, 'params': params_to_dict(params), 'seed': seed}


def create_replay_json(params: SimulationParams, mode: str, seed) -> str:
    """
    Create JSON string for saving a run so it can be replayed.

    Args:
        params: SimulationParams object
        mode: 'growth' or 'withdrawal'
        seed: Seed reported on the result

    Returns:
        JSON string
    """
    return json.dumps(create_replay_payload(params, mode, seed), indent=2)


def parse_replay_json(json_string: str) -> Tuple[SimulationParams, str, Any]:
    """Parse a saved replay JSON string into (params, mode, seed)"""
    try:
        payload = json.loads(json_string)
    except json.JSONDecodeError as e:
        raise InvalidSimulationParams(f"Invalid replay JSON: {e}") from e
    if not isinstance(payload, dict):
        raise InvalidSimulationParams("Replay JSON must be an object")
    return load_replay_payload(payload)


def load_replay_payload(payload: Dict[str, Any]) -> Tuple[SimulationParams, str, Any]:
    """
    Parse a replay payload.

    Also accepts the shared-payload layout ('mcParams' and 'rngSeed').

    Returns:
        (params, mode, seed)
    """
    mode = payload.get('mode')
    if mode not in MODES:
        raise InvalidSimulationParams(f"Unknown simulation mode '{mode}', expected one of {MODES}")
    raw_params = payload.get('params', payload.get('mcParams'))
    if raw_params is None:
        raise InvalidSimulationParams("Replay payload has no parameters")
    seed = payload.get('seed', payload.get('rngSeed'))
    return dict_to_params(raw_params), mode, seed


def validate_parameters_dict(param_dict: Dict[str, Any]) -> Tuple[bool, str]:
    """
    Validate a parameter dictionary.

    Returns:
        (is_valid, error_message)
    """
    try:
        dict_to_params(param_dict).validate()
    except (InvalidSimulationParams, TypeError, ValueError) as e:
        return False, f"Parameter validation error: {e}"
    return True, ""


def result_to_frames(result: SimulationResult) -> Dict[str, pd.DataFrame]:
    """
    Result series as DataFrames, keyed by table name.

    Tables: ending_values, account_value, account_value_gross, annual_returns,
    solvency, loss_probabilities, investment, deterministic, deterministic_years.
    """
    bands = result.account_value_bands
    cagr = result.annual_return_bands

    annual_returns = pd.DataFrame({key: cagr[key] for key in ('year', 'p10', 'p25', 'p50', 'p75', 'p90')})
    for threshold, probability in cagr['prob_at_least'].items():
        annual_returns[f'prob_at_least_{threshold:.0%}'] = probability

    return {
        'ending_values': pd.DataFrame({
            'path': range(1, result.num_paths + 1),
            'ending_value': result.ending_values,
            'pre_tax_ending_value': result.pre_tax_ending_values,
            'lowest_value': result.lowest_values,
            'max_drawdown': result.max_drawdowns,
        }),
        'account_value': pd.DataFrame(bands),
        'account_value_gross': pd.DataFrame(result.gross_value_bands),
        'annual_returns': annual_returns,
        'solvency': pd.DataFrame(result.solvency_series),
        'loss_probabilities': pd.DataFrame(result.loss_probabilities),
        'investment': pd.DataFrame(result.investment_series),
        'deterministic': pd.DataFrame(result.deterministic_series),
        'deterministic_years': pd.DataFrame([asdict(row) for row in result.deterministic_year_data]),
    }


def export_result_csv(result: SimulationResult) -> Dict[str, str]:
    """CSV text of every result table, keyed by table name"""
    return {name: frame.to_csv(index=False) for name, frame in result_to_frames(result).items()}


def format_currency(value: float, precision: int = 0) -> str:
    """
    Format currency values for display.

    Args:
        value: Numeric value to format
        precision: Number of decimal places

    Returns:
        Formatted string, e.g. $1.2M, $350K, $75
    """
    if abs(value) >= 1_000_000:
        return f"${value/1_000_000:.{precision}f}M"
    if abs(value) >= 1_000:
        return f"${value/1_000:.{precision}f}K"
    return f"${value:.{precision}f}"
