"""
Monte Carlo portfolio simulation engine.
Geometric Brownian Motion paths with periodic contributions or withdrawals and
tax-aware net values. Pure functions for simulation logic, decoupled from UI.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import numpy as np

from config_utils import DEFAULT_ENGINE_CONFIG, EngineConfig
from deterministic import DeterministicProjector, GrowthState, ProjectionResult, WithdrawalState, YearRow
from execution import RecordingSchedule, SimulationCancelled, select_strategy
from rng import SeedLike, resolve_seed, seed_to_u32
from stats_utils import (
    calculate_cagr_bands,
    calculate_drawdown_stats,
    calculate_loss_probabilities,
    calculate_percentiles,
    calculate_solvency_series,
    calculate_summary_stats,
    get_scale_recommendations,
)
from stepper import (
    CALCULATION_MODES,
    EFFECTIVE,
    GROWTH,
    MODES,
    STEPS_PER_YEAR,
    StepModel,
    classify_scenarios,
)
from tax import NO_TAX, TaxConfig

logger = logging.getLogger(__name__)

__all__ = [
    "InvalidSimulationParams",
    "MonteCarloSimulator",
    "SimulationCancelled",
    "SimulationParams",
    "SimulationResult",
    "run_stochastic_simulation",
    "state_from_params",
]


class InvalidSimulationParams(ValueError):
    """Raised when simulation parameters cannot describe a valid run"""


@dataclass
class SimulationParams:
    """Parameters for Monte Carlo simulation"""
    initial_value: float = 100_000
    starting_cost_basis: Optional[float] = None  # None means the initial value

    # Return model (annual)
    expected_return: float = 0.07
    volatility: float = 0.15
    duration: float = 30  # years

    # Periodic contribution (growth) or withdrawal (withdrawal mode)
    cashflow_amount: float = 0.0
    cashflow_frequency: str = "monthly"  # yearly, quarterly, monthly, weekly
    inflation_rate: float = 0.0
    exclude_inflation_adjustment: bool = False

    num_paths: int = 1_000
    portfolio_goal: Optional[float] = None

    tax: TaxConfig = NO_TAX
    calculation_mode: str = EFFECTIVE  # "effective" or "nominal"

    def __post_init__(self):
        if self.tax is None:
            self.tax = NO_TAX

    @property
    def steps_per_year(self) -> int:
        return STEPS_PER_YEAR[self.cashflow_frequency]

    @property
    def total_steps(self) -> int:
        return int(math.floor(self.duration * self.steps_per_year))

    @property
    def clamped_cost_basis(self) -> float:
        """Starting cost basis clamped into [0, initial_value]"""
        if self.starting_cost_basis is None:
            return float(self.initial_value)
        return float(min(max(self.starting_cost_basis, 0.0), self.initial_value))

    def validate(self):
        """Validate simulation parameters; raises InvalidSimulationParams"""
        if not _is_finite(self.initial_value) or self.initial_value <= 0:
            raise InvalidSimulationParams("Initial portfolio value must be greater than zero.")

        for name in ("expected_return", "volatility", "duration", "cashflow_amount", "inflation_rate"):
            if not _is_finite(getattr(self, name)):
                raise InvalidSimulationParams(f"{name} must be a finite number, got {getattr(self, name)!r}")
        for name in ("starting_cost_basis", "portfolio_goal"):
            value = getattr(self, name)
            if value is not None and not _is_finite(value):
                raise InvalidSimulationParams(f"{name} must be a finite number, got {value!r}")

        if self.expected_return <= -1.0:
            raise InvalidSimulationParams("Expected return must be greater than -100%")
        if self.volatility < 0:
            raise InvalidSimulationParams("Volatility cannot be negative")
        if self.cashflow_amount < 0:
            raise InvalidSimulationParams("Cash flow amount cannot be negative")
        if self.inflation_rate <= -1.0:
            raise InvalidSimulationParams("Inflation rate must be greater than -100%")
        if self.cashflow_frequency not in STEPS_PER_YEAR:
            raise InvalidSimulationParams(
                f"Unknown cash-flow frequency '{self.cashflow_frequency}', "
                f"expected one of {tuple(STEPS_PER_YEAR)}"
            )
        if self.calculation_mode not in CALCULATION_MODES:
            raise InvalidSimulationParams(
                f"Unknown calculation mode '{self.calculation_mode}', expected one of {CALCULATION_MODES}"
            )
        if self.duration <= 0 or self.total_steps < 1:
            raise InvalidSimulationParams("Duration must cover at least one time step")
        if isinstance(self.num_paths, bool) or not isinstance(self.num_paths, (int, np.integer)) \
                or self.num_paths < 1:
            raise InvalidSimulationParams(f"Number of paths must be a positive integer, got {self.num_paths!r}")

        if not isinstance(self.tax, TaxConfig):
            raise InvalidSimulationParams(
                f"tax must be a TaxConfig, got {type(self.tax).__name__}"
            )
        try:
            self.tax.validate()
        except ValueError as e:
            raise InvalidSimulationParams(str(e)) from e


def _is_finite(value) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool) \
        and math.isfinite(value)


def _validate_mode(mode: str):
    if mode not in MODES:
        raise InvalidSimulationParams(f"Unknown simulation mode '{mode}', expected one of {MODES}")


def _read_only(values: np.ndarray) -> np.ndarray:
    values.setflags(write=False)
    return values


@dataclass(frozen=True)
class SimulationResult:
    """Results from Monte Carlo simulation"""
    mode: str
    seed: Union[str, int]
    strategy: str
    num_paths: int
    schedule: RecordingSchedule

    ending_values: np.ndarray
    pre_tax_ending_values: np.ndarray
    lowest_values: np.ndarray
    max_drawdowns: np.ndarray

    summary: Dict[str, float]
    gross_summary: Dict[str, float]
    drawdown_stats: Dict[str, float]

    account_value_bands: Dict[str, np.ndarray]
    gross_value_bands: Dict[str, np.ndarray]
    annual_return_bands: Dict[str, object]
    solvency_series: Dict[str, np.ndarray]
    loss_probabilities: List[Dict[str, float]]
    investment_series: Dict[str, np.ndarray]

    deterministic: ProjectionResult
    deterministic_series: Dict[str, np.ndarray]

    mean_pre_tax: float
    tax_drag_amount: float

    portfolio_goal: Optional[float]
    paths_reaching_goal: int
    paths_profitable: int
    paths_solvent: int
    goal_probability: float
    profitable_rate: float
    solvent_rate: float

    recommendations: Dict[str, bool]

    @property
    def mean(self) -> float:
        return self.summary['mean']

    @property
    def median(self) -> float:
        return self.summary['median']

    @property
    def best(self) -> float:
        return self.summary['best']

    @property
    def worst(self) -> float:
        return self.summary['worst']

    @property
    def log_linear(self) -> bool:
        return self.recommendations['log_linear']

    @property
    def log_histogram(self) -> bool:
        return self.recommendations['log_histogram']

    @property
    def log_drawdown(self) -> bool:
        return self.recommendations['log_drawdown']

    @property
    def deterministic_year_data(self) -> List[YearRow]:
        return self.deterministic.year_data


def state_from_params(params: SimulationParams, mode: str):
    """GrowthState or WithdrawalState describing the same portfolio as `params`"""
    common = dict(
        starting_balance=params.initial_value,
        annual_return=params.expected_return,
        duration=params.duration,
        frequency=params.cashflow_frequency,
        inflation_adjustment=params.inflation_rate,
        exclude_inflation_adjustment=params.exclude_inflation_adjustment,
        starting_cost_basis=params.starting_cost_basis,
        tax=params.tax,
        calculation_mode=params.calculation_mode,
    )
    if mode == GROWTH:
        return GrowthState(periodic_addition=params.cashflow_amount,
                           target_value=params.portfolio_goal, **common)
    return WithdrawalState(periodic_withdrawal=params.cashflow_amount, **common)


def calculate_investment_series(params: SimulationParams, mode: str,
                                schedule: RecordingSchedule) -> Dict[str, np.ndarray]:
    """Initial value and cumulative contributions at each recorded point"""
    cashflow = params.cashflow_amount if mode == GROWTH else 0.0
    inflation_factor = 1.0 + params.inflation_rate
    contributions = [0.0]
    total = 0.0
    for step in range(1, schedule.total_steps + 1):
        total += cashflow
        if step % schedule.record_frequency == 0:
            contributions.append(total)
        if not params.exclude_inflation_adjustment and step % schedule.steps_per_year == 0:
            cashflow *= inflation_factor

    contributions = np.array(contributions)
    initial = np.full(len(contributions), float(params.initial_value))
    return {
        'year': schedule.record_years,
        'initial': initial,
        'contributions': contributions,
        'total': initial + contributions,
    }


def _reduce_net_records(records, years):
    """Solvency series and value bands; the net buffer is freed on return"""
    with records.take("net") as net:
        solvency_series = calculate_solvency_series(net, years)
        # sorts in place, so it runs last
        return solvency_series, calculate_percentiles(net, years)


def _reduce_gross_records(records, years):
    with records.take("gross") as gross:
        return calculate_percentiles(gross, years)


def _reduce_performance_records(records, years):
    with records.take("performance") as performance:
        return calculate_cagr_bands(performance, years)


class MonteCarloSimulator:
    """Monte Carlo portfolio simulation (growth or withdrawal mode)"""

    def __init__(self, params: SimulationParams, mode: str = GROWTH,
                 config: Optional[EngineConfig] = None):
        self.params = params
        self.mode = mode
        self.config = config or DEFAULT_ENGINE_CONFIG
        self._validate_params()

    def _validate_params(self):
        """Validate simulation parameters"""
        _validate_mode(self.mode)
        self.params.validate()

    def run_simulation(self, seed: SeedLike = None, cancel_event=None) -> SimulationResult:
        """
        Run Monte Carlo simulation.

        Args:
            seed: Run seed (string or integer); a fresh seed is drawn when None
                  and reported on the result so the run can be replayed
            cancel_event: Optional threading.Event; setting it aborts the run
                          with SimulationCancelled

        Returns:
            SimulationResult
        """
        params = self.params
        seed = resolve_seed(seed)
        try:
            run_seed = seed_to_u32(seed)
        except TypeError as e:
            raise InvalidSimulationParams(str(e)) from e

        schedule = RecordingSchedule.for_params(params.total_steps, params.steps_per_year,
                                                params.num_paths, self.config)
        model = StepModel.from_params(params, self.mode, schedule.record_frequency, schedule.num_records)
        strategy = select_strategy(params.num_paths, self.config)

        logger.info("Starting %s simulation: %d paths, %d steps, seed=%r",
                    self.mode, params.num_paths, params.total_steps, seed)
        started = time.perf_counter()
        output = strategy.run(model, run_seed, params.num_paths, cancel_event)
        logger.info("Simulated %d paths in %.2fs using %s strategy",
                    params.num_paths, time.perf_counter() - started, output.strategy)

        return self._reduce(output, schedule, seed)

    def _reduce(self, output, schedule: RecordingSchedule, seed) -> SimulationResult:
        """Reduce scenario outputs into a SimulationResult, releasing record buffers one at a time"""
        params = self.params
        years = schedule.record_years

        solvency_series, account_value_bands = _reduce_net_records(output.records, years)
        gross_value_bands = _reduce_gross_records(output.records, years)
        annual_return_bands = _reduce_performance_records(output.records, years)
        output.records.release()

        summary = calculate_summary_stats(output.ending_values)
        gross_summary = calculate_summary_stats(output.pre_tax_ending_values)
        drawdown_stats = calculate_drawdown_stats(output.max_drawdowns)
        recommendations = get_scale_recommendations(summary, drawdown_stats, params.initial_value)
        loss_probabilities = calculate_loss_probabilities(
            output.ending_values, output.lowest_values, params.initial_value)

        reaching_goal, profitable, solvent = classify_scenarios(
            output.ending_values, output.total_invested, params.portfolio_goal)
        num_paths = params.num_paths

        mean_pre_tax = float(np.mean(output.pre_tax_ending_values))
        tax_drag_amount = 0.0
        if params.tax.enabled and self.mode == GROWTH:
            tax_drag_amount = mean_pre_tax - summary['mean']

        deterministic = DeterministicProjector(state_from_params(params, self.mode)).run_projection(
            record_frequency=schedule.record_frequency)
        deterministic_series = {
            'year': deterministic.series_years,
            'net': deterministic.series_net,
            'gross': deterministic.series_gross,
        }

        return SimulationResult(
            mode=self.mode,
            seed=seed,
            strategy=output.strategy,
            num_paths=num_paths,
            schedule=schedule,
            ending_values=_read_only(output.ending_values),
            pre_tax_ending_values=_read_only(output.pre_tax_ending_values),
            lowest_values=_read_only(output.lowest_values),
            max_drawdowns=_read_only(output.max_drawdowns),
            summary=summary,
            gross_summary=gross_summary,
            drawdown_stats=drawdown_stats,
            account_value_bands=account_value_bands,
            gross_value_bands=gross_value_bands,
            annual_return_bands=annual_return_bands,
            solvency_series=solvency_series,
            loss_probabilities=loss_probabilities,
            investment_series=calculate_investment_series(params, self.mode, schedule),
            deterministic=deterministic,
            deterministic_series=deterministic_series,
            mean_pre_tax=mean_pre_tax,
            tax_drag_amount=tax_drag_amount,
            portfolio_goal=params.portfolio_goal,
            paths_reaching_goal=reaching_goal,
            paths_profitable=profitable,
            paths_solvent=solvent,
            goal_probability=reaching_goal / num_paths * 100.0 if params.portfolio_goal else 0.0,
            profitable_rate=profitable / num_paths * 100.0,
            solvent_rate=solvent / num_paths * 100.0,
            recommendations=recommendations,
        )


def run_stochastic_simulation(params: SimulationParams, mode: str, seed: SeedLike = None, *,
                              config: Optional[EngineConfig] = None,
                              cancel_event=None) -> SimulationResult:
    """
    Run a Monte Carlo simulation.

    Parameters are validated once, before any scenario runs. The same params,
    mode and seed always give the same result for a given execution strategy.
    """
    return MonteCarloSimulator(params, mode, config).run_simulation(seed, cancel_event)
