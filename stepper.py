"""
Geometric Brownian Motion path stepper and scenario driver.

The stepper works on "lanes": numpy (or CuPy) arrays holding the state of one
or more independent scenarios. The sequential strategy drives a single lane
per call, the data-parallel strategy drives a whole block of lanes at once;
both go through the same functions below so the math cannot drift apart.
"""
import math
from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np

from tax import (
    TaxConfig,
    net_liquidation_value,
    post_tax_return,
    reduce_basis,
)

GROWTH = "growth"
WITHDRAWAL = "withdrawal"
MODES = (GROWTH, WITHDRAWAL)

STEPS_PER_YEAR = {
    "yearly": 1,
    "quarterly": 4,
    "monthly": 12,
    "weekly": 52,
}

EFFECTIVE = "effective"
NOMINAL = "nominal"
CALCULATION_MODES = (EFFECTIVE, NOMINAL)


def get_steps_per_year(frequency: str) -> int:
    """Number of simulation steps per year for a cash-flow frequency"""
    try:
        return STEPS_PER_YEAR[frequency]
    except KeyError:
        raise ValueError(
            f"Unknown cash-flow frequency '{frequency}', expected one of {tuple(STEPS_PER_YEAR)}"
        ) from None


def nominal_to_effective(annual_rate: float, steps_per_year: int) -> float:
    """Effective annual rate of a nominal rate compounded `steps_per_year` times"""
    return (1.0 + annual_rate / steps_per_year) ** steps_per_year - 1.0


def annual_rates(expected_return: float, tax: TaxConfig,
                 calculation_mode: str, steps_per_year: int) -> Tuple[float, float]:
    """
    Pre-tax and post-tax effective annual returns.

    Args:
        expected_return: Expected annual return as entered
        tax: Tax configuration (income tax lowers the post-tax return)
        calculation_mode: 'effective' or 'nominal'
        steps_per_year: Compounding periods per year

    Returns:
        (pre_tax_return, post_tax_return)
    """
    pre_tax = expected_return
    post_tax = post_tax_return(expected_return, tax)
    if calculation_mode == NOMINAL:
        pre_tax = nominal_to_effective(pre_tax, steps_per_year)
        post_tax = nominal_to_effective(post_tax, steps_per_year)
    return pre_tax, post_tax


def per_step_rate(annual_return: float, steps_per_year: int) -> float:
    """Deterministic growth rate per step: (1 + r)^(1/n) - 1"""
    return (1.0 + annual_return) ** (1.0 / steps_per_year) - 1.0


@dataclass(frozen=True)
class StepModel:
    """Read-only parameter block shared by every lane of a run"""
    mode: str
    initial_value: float
    starting_cost_basis: float
    steps_per_year: int
    total_steps: int
    drift: float
    drift_pre_tax: float
    diffusion: float
    cashflow: float
    inflation_factor: float
    escalate_cashflow: bool
    tax: TaxConfig
    record_frequency: int
    num_records: int

    @classmethod
    def from_params(cls, params, mode: str, record_frequency: int, num_records: int) -> "StepModel":
        """Build the step model from validated simulation parameters"""
        spy = get_steps_per_year(params.cashflow_frequency)
        dt = 1.0 / spy
        pre_tax, post_tax = annual_rates(params.expected_return, params.tax,
                                         params.calculation_mode, spy)
        return cls(
            mode=mode,
            initial_value=float(params.initial_value),
            starting_cost_basis=float(params.clamped_cost_basis),
            steps_per_year=spy,
            total_steps=params.total_steps,
            drift=math.log1p(post_tax) * dt,
            drift_pre_tax=math.log1p(pre_tax) * dt,
            diffusion=params.volatility * math.sqrt(dt),
            cashflow=float(params.cashflow_amount),
            inflation_factor=1.0 + params.inflation_rate,
            escalate_cashflow=not params.exclude_inflation_adjustment,
            tax=params.tax,
            record_frequency=record_frequency,
            num_records=num_records,
        )

    @property
    def initial_net_value(self) -> float:
        return float(net_liquidation_value(self.initial_value, self.starting_cost_basis, self.tax))


class LaneState:
    """Mutable per-lane state of a block of scenarios"""

    def __init__(self, model: StepModel, n_lanes: int, xp=np):
        self.xp = xp
        self.value = xp.full(n_lanes, model.initial_value, dtype=xp.float64)
        self.pre_tax_value = xp.full(n_lanes, model.initial_value, dtype=xp.float64)
        self.basis = xp.full(n_lanes, model.starting_cost_basis, dtype=xp.float64)
        self.total_invested = xp.full(n_lanes, model.starting_cost_basis, dtype=xp.float64)
        self.performance = xp.ones(n_lanes, dtype=xp.float64)
        self.peak = xp.full(n_lanes, model.initial_net_value, dtype=xp.float64)
        self.lowest = xp.full(n_lanes, model.initial_value, dtype=xp.float64)
        self.max_drawdown = xp.zeros(n_lanes, dtype=xp.float64)

    def net_value(self, tax: TaxConfig):
        return net_liquidation_value(self.value, self.basis, tax)


def advance_step(model: StepModel, state: LaneState, z, cashflow: float):
    """
    Advance every lane by one time step.

    Args:
        model: Shared parameter block
        state: Lane state, updated in place
        z: Standard normal draw per lane
        cashflow: Contribution or withdrawal for this step

    Returns:
        Net (after liquidation tax) value per lane
    """
    xp = state.xp
    tax = model.tax
    growth_factor = xp.exp(model.drift + model.diffusion * z)
    state.performance = state.performance * growth_factor

    if model.mode == GROWTH:
        state.value = state.value * growth_factor + cashflow
        state.total_invested = state.total_invested + cashflow
        state.basis = state.basis + cashflow
    else:
        grown = state.value * growth_factor
        withdrawal = xp.minimum(cashflow, grown)
        state.basis = reduce_basis(state.basis, withdrawal, grown, tax)
        state.value = xp.maximum(grown - withdrawal, 0.0)

    if tax.is_income_tax:
        # Pre-tax shadow trajectory reuses the same draw
        growth_factor_pre_tax = xp.exp(model.drift_pre_tax + model.diffusion * z)
        shadow = state.pre_tax_value * growth_factor_pre_tax
        if model.mode == GROWTH:
            state.pre_tax_value = shadow + cashflow
        else:
            state.pre_tax_value = xp.maximum(shadow - xp.minimum(cashflow, shadow), 0.0)

    net = state.net_value(tax)
    state.lowest = xp.minimum(state.lowest, net)
    state.peak = xp.maximum(state.peak, net)
    safe_peak = xp.where(state.peak > 0.0, state.peak, 1.0)
    drawdown = xp.where(state.peak > 0.0, (state.peak - net) / safe_peak, 0.0)
    state.max_drawdown = xp.clip(xp.maximum(state.max_drawdown, drawdown), 0.0, 1.0)
    return net


@dataclass
class ScenarioBlock:
    """Outputs of a block of scenarios, indexed by lane"""
    ending_values: object
    pre_tax_ending_values: object
    lowest_values: object
    max_drawdowns: object
    total_invested: object
    net_records: object
    gross_records: object
    performance_records: object


def drive_scenarios(model: StepModel, next_normals: Callable[[], object],
                    n_lanes: int, xp=np, out=None) -> ScenarioBlock:
    """
    Run every time step for a block of lanes and collect the outputs.

    Args:
        model: Shared parameter block
        next_normals: Returns one standard normal draw per lane on each call
        n_lanes: Number of scenarios in the block
        xp: Array module (numpy or CuPy)
        out: Optional (net, gross, performance) record arrays of shape
             (num_records + 1, n_lanes) to write snapshots into

    Returns:
        ScenarioBlock with per-lane results and recorded snapshots
        (rows are record indices, columns are lanes)
    """
    state = LaneState(model, n_lanes, xp)
    if out is None:
        shape = (model.num_records + 1, n_lanes)
        out = tuple(xp.empty(shape, dtype=xp.float64) for _ in range(3))
    net_records, gross_records, performance_records = out

    net_records[0] = state.net_value(model.tax)
    gross_records[0] = state.value
    performance_records[0] = state.performance

    cashflow = model.cashflow
    for step in range(1, model.total_steps + 1):
        net = advance_step(model, state, next_normals(), cashflow)

        if step % model.record_frequency == 0:
            row = step // model.record_frequency
            net_records[row] = net
            gross_records[row] = state.value
            performance_records[row] = state.performance

        if model.escalate_cashflow and step % model.steps_per_year == 0:
            cashflow *= model.inflation_factor

    ending = state.net_value(model.tax)
    pre_tax_ending = state.pre_tax_value if model.tax.is_income_tax else state.value

    return ScenarioBlock(
        ending_values=ending,
        pre_tax_ending_values=pre_tax_ending,
        lowest_values=state.lowest,
        max_drawdowns=state.max_drawdown,
        total_invested=state.total_invested,
        net_records=net_records,
        gross_records=gross_records,
        performance_records=performance_records,
    )


def classify_scenarios(ending_values, total_invested, portfolio_goal=None):
    """
    Count goal-reaching, profitable and solvent scenarios.

    Returns:
        (paths_reaching_goal, paths_profitable, paths_solvent)
    """
    reaching_goal = 0
    if portfolio_goal:
        reaching_goal = int(np.count_nonzero(ending_values >= portfolio_goal))
    profitable = int(np.count_nonzero(ending_values > total_invested))
    solvent = int(np.count_nonzero(ending_values > 0.0))
    return reaching_goal, profitable, solvent
