"""
Statistical reduction of simulated scenarios.
Percentiles, summary statistics, CAGR distributions, loss probabilities and display hints.
"""
from typing import Dict, List, Sequence

import numpy as np

BAND_PERCENTILES = {'p10': 0.10, 'p25': 0.25, 'p50': 0.50, 'p75': 0.75, 'p90': 0.90}

SUMMARY_PERCENTILES = {
    'p5': 0.05, 'p10': 0.10, 'p25': 0.25, 'median': 0.50,
    'p75': 0.75, 'p90': 0.90, 'p95': 0.95,
}

CAGR_THRESHOLDS = (0.05, 0.08, 0.10, 0.12, 0.15, 0.20, 0.25, 0.30)
LOSS_THRESHOLDS = (0.0, 0.025, 0.05, 0.10, 0.15, 0.20, 0.30, 0.50)

SOLVENCY_FLOOR = 0.01


def calculate_percentile(sorted_values: Sequence[float], p: float) -> float:
    """
    Percentile of pre-sorted values with linear interpolation at p * (n - 1).

    Args:
        sorted_values: Values sorted ascending
        p: Percentile as a fraction in [0, 1]

    Returns:
        Interpolated value; 0 for an empty input
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    if n == 1:
        return float(sorted_values[0])
    index = p * (n - 1)
    lower = int(np.floor(index))
    upper = int(np.ceil(index))
    weight = index - lower
    return float(sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight)


def percentile_rows(sorted_rows: np.ndarray, p: float) -> np.ndarray:
    """Row-wise `calculate_percentile` for a matrix whose rows are sorted ascending"""
    n = sorted_rows.shape[1]
    if n == 0:
        return np.zeros(sorted_rows.shape[0])
    index = p * (n - 1)
    lower = int(np.floor(index))
    upper = int(np.ceil(index))
    weight = index - lower
    return sorted_rows[:, lower] + (sorted_rows[:, upper] - sorted_rows[:, lower]) * weight


def calculate_summary_stats(ending_values: np.ndarray) -> Dict[str, float]:
    """Summary statistics for ending values"""
    if len(ending_values) == 0:
        return {key: 0.0 for key in ['mean', *SUMMARY_PERCENTILES, 'best', 'worst']}

    sorted_values = np.sort(ending_values)
    stats = {'mean': float(np.mean(sorted_values))}
    for key, p in SUMMARY_PERCENTILES.items():
        stats[key] = calculate_percentile(sorted_values, p)
    stats['best'] = float(sorted_values[-1])
    stats['worst'] = float(sorted_values[0])
    return stats


def calculate_percentiles(records: np.ndarray, years: np.ndarray) -> Dict[str, np.ndarray]:
    """
    Percentile bands over time.

    Args:
        records: (num_records + 1, num_paths) values at each recorded point;
                 sorted in place
        years: Elapsed years at each recorded point

    Returns:
        Dict with 'year' and p10/p25/p50/p75/p90 arrays
    """
    records.sort(axis=1)
    bands = {'year': np.asarray(years, dtype=float)}
    for key, p in BAND_PERCENTILES.items():
        bands[key] = percentile_rows(records, p)
    return bands


def calculate_solvency_series(records: np.ndarray, years: np.ndarray) -> Dict[str, np.ndarray]:
    """Percentage of paths whose net value is above one cent at each recorded point"""
    num_paths = records.shape[1]
    solvent = np.count_nonzero(records > SOLVENCY_FLOOR, axis=1)
    rate = solvent / num_paths * 100.0 if num_paths else np.zeros(records.shape[0])
    return {'year': np.asarray(years, dtype=float), 'solvent_rate': rate}


def calculate_cagr_bands(performance: np.ndarray, years: np.ndarray) -> Dict[str, np.ndarray]:
    """
    Annualised return (CAGR) bands from the pure-performance index.

    Year 0 has no annualised return and is skipped. The performance buffer is
    overwritten with CAGRs and sorted in place.

    Returns:
        Dict with 'year', p10..p90 arrays and 'prob_at_least' mapping each
        threshold to the percentage of paths whose CAGR is at or above it
    """
    years = np.asarray(years, dtype=float)
    cagr = performance[1:]
    elapsed = years[1:]
    if len(elapsed) == 0:
        empty = np.zeros(0)
        bands = {'year': empty}
        bands.update({key: empty for key in BAND_PERCENTILES})
        bands['prob_at_least'] = {t: empty for t in CAGR_THRESHOLDS}
        return bands

    np.power(cagr, (1.0 / elapsed)[:, None], out=cagr)
    cagr -= 1.0

    num_paths = cagr.shape[1]
    prob_at_least = {
        t: np.count_nonzero(cagr >= t, axis=1) / num_paths * 100.0
        for t in CAGR_THRESHOLDS
    }

    cagr.sort(axis=1)
    bands = {'year': elapsed}
    for key, p in BAND_PERCENTILES.items():
        bands[key] = percentile_rows(cagr, p)
    bands['prob_at_least'] = prob_at_least
    return bands


def calculate_loss_probabilities(ending_values: np.ndarray, lowest_values: np.ndarray,
                                 initial_value: float) -> List[Dict[str, float]]:
    """
    Probability of losing at least each threshold of the initial value.

    end_period looks at ending values, intra_period at the lowest value seen
    along the path. Only values strictly below the initial value count as a
    loss, so the 0% row is the probability of ending (or dipping) below it.

    Returns:
        One dict per threshold with 'threshold', 'end_period', 'intra_period'
        (percentages of paths)
    """
    num_paths = len(ending_values)
    end_loss = (initial_value - ending_values) / initial_value
    intra_loss = (initial_value - lowest_values) / initial_value
    ended_below = ending_values < initial_value
    dipped_below = lowest_values < initial_value

    table = []
    for threshold in LOSS_THRESHOLDS:
        if num_paths == 0:
            end_pct = intra_pct = 0.0
        else:
            end_pct = np.count_nonzero(ended_below & (end_loss >= threshold)) / num_paths * 100.0
            intra_pct = np.count_nonzero(dipped_below & (intra_loss >= threshold)) / num_paths * 100.0
        table.append({
            'threshold': threshold,
            'end_period': float(end_pct),
            'intra_period': float(intra_pct),
        })
    return table


def calculate_drawdown_stats(max_drawdowns: np.ndarray) -> Dict[str, float]:
    """Distribution of per-path maximum drawdowns"""
    if len(max_drawdowns) == 0:
        return {'mean': 0.0, 'median': 0.0, 'p90': 0.0, 'worst': 0.0}
    sorted_dd = np.sort(max_drawdowns)
    return {
        'mean': float(np.mean(sorted_dd)),
        'median': calculate_percentile(sorted_dd, 0.50),
        'p90': calculate_percentile(sorted_dd, 0.90),
        'worst': float(sorted_dd[-1]),
    }


def _safe_ratio(numerator: float, denominator: float) -> float:
    """Ratio of two positive values, 0 when either is not positive"""
    if numerator > 0 and denominator > 0:
        return numerator / denominator
    return 0.0


def get_scale_recommendations(summary: Dict[str, float], drawdown_stats: Dict[str, float],
                              initial_value: float) -> Dict[str, bool]:
    """
    Whether charts should switch to a log scale.

    - log_histogram: wide ending-value spread (p95/p5 > 15 or best/worst > 50)
    - log_linear: strong upside (p90 / initial value > 20)
    - log_drawdown: mostly shallow drawdowns with a deep tail
    """
    spread_ratio = _safe_ratio(summary['p95'], summary['p5'])
    extreme_ratio = _safe_ratio(summary['best'], summary['worst'])
    growth_ratio = _safe_ratio(summary['p90'], initial_value)
    return {
        'log_histogram': bool(spread_ratio > 15 or extreme_ratio > 50),
        'log_linear': bool(growth_ratio > 20),
        'log_drawdown': bool(drawdown_stats['median'] < 0.1 and drawdown_stats['worst'] > 0.6),
    }
