"""
Deterministic portfolio projection using the expected return (no randomness).
Provides the baseline scenario shown next to the Monte Carlo results; with zero
volatility the stochastic engine reproduces these numbers.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from stepper import (
    EFFECTIVE,
    GROWTH,
    WITHDRAWAL,
    annual_rates,
    get_steps_per_year,
    per_step_rate,
)
from tax import (
    NO_TAX,
    TaxConfig,
    income_tax_drag,
    liquidation_tax,
    net_liquidation_value,
    reduce_basis,
    withdrawal_tax,
)

logger = logging.getLogger(__name__)

MAX_TARGET_SEARCH_YEARS = 1_000
DEPLETED_BALANCE = 0.01


@dataclass
class GrowthState:
    """Inputs of a growth (accumulation) projection"""
    starting_balance: float = 100_000
    annual_return: float = 0.07
    duration: float = 30
    periodic_addition: float = 0.0
    frequency: str = "monthly"
    inflation_adjustment: float = 0.0
    exclude_inflation_adjustment: bool = False
    target_value: Optional[float] = None
    starting_cost_basis: Optional[float] = None
    tax: TaxConfig = NO_TAX
    calculation_mode: str = EFFECTIVE

    mode = GROWTH

    @property
    def periodic_amount(self) -> float:
        return self.periodic_addition


@dataclass
class WithdrawalState:
    """Inputs of a withdrawal (decumulation) projection"""
    starting_balance: float = 1_000_000
    annual_return: float = 0.05
    duration: float = 30
    periodic_withdrawal: float = 0.0
    frequency: str = "monthly"
    inflation_adjustment: float = 0.0
    exclude_inflation_adjustment: bool = False
    starting_cost_basis: Optional[float] = None
    tax: TaxConfig = NO_TAX
    calculation_mode: str = EFFECTIVE

    mode = WITHDRAWAL

    @property
    def periodic_amount(self) -> float:
        return self.periodic_withdrawal


@dataclass
class YearRow:
    """One year of a deterministic projection"""
    # Balances are net of liquidation tax; the _gross fields are before it
    year: int
    starting_balance: float
    starting_balance_gross: float
    cashflow: float
    growth: float
    tax_withheld: float
    tax_drag: float
    ending_balance: float
    ending_balance_gross: float
    net_cashflow: float = 0.0


@dataclass
class ProjectionResult:
    """Results from a deterministic projection (growth or withdrawal)"""
    mode: str
    final_value: float
    final_value_gross: float
    final_value_in_todays_dollars: float
    year_data: List[YearRow] = field(default_factory=list)
    series_years: np.ndarray = field(default_factory=lambda: np.zeros(0))
    series_net: np.ndarray = field(default_factory=lambda: np.zeros(0))
    series_gross: np.ndarray = field(default_factory=lambda: np.zeros(0))

    # Growth
    total_contributions: float = 0.0
    total_interest: float = 0.0
    total_profit: float = 0.0
    years_to_target: Optional[float] = None

    # Withdrawal
    total_withdrawn: float = 0.0
    total_withdrawn_net: float = 0.0
    total_withdrawn_in_todays_dollars: float = 0.0
    is_sustainable: bool = True
    years_until_zero: Optional[float] = None

    # Tax
    total_tax_withheld: float = 0.0
    total_tax_drag: float = 0.0
    total_tax_paid: float = 0.0

    @property
    def ending_balance(self) -> float:
        return self.final_value


class DeterministicProjector:
    """Deterministic projection stepping at the cash-flow frequency"""

    def __init__(self, state):
        self.state = state
        self.steps_per_year = get_steps_per_year(state.frequency)
        _, post_tax = annual_rates(state.annual_return, state.tax,
                                         state.calculation_mode, self.steps_per_year)
        self.step_rate = per_step_rate(post_tax, self.steps_per_year)
        self.total_steps = int(np.floor(state.duration * self.steps_per_year))
        self.inflation_factor = 1.0 + state.inflation_adjustment

    def _starting_basis(self) -> float:
        basis = self.state.starting_cost_basis
        if basis is None:
            return float(self.state.starting_balance)
        return float(min(max(basis, 0.0), self.state.starting_balance))

    def _escalates(self, step: int) -> bool:
        return not self.state.exclude_inflation_adjustment and step % self.steps_per_year == 0

    def _discount(self, years: float) -> float:
        return self.inflation_factor ** years

    def run_projection(self, record_frequency: Optional[int] = None) -> ProjectionResult:
        """
        Run the projection.

        Args:
            record_frequency: Steps between series points (defaults to one year)

        Returns:
            ProjectionResult with totals, a year-by-year table and the
            net/gross balance series
        """
        state = self.state
        tax = state.tax
        is_growth = state.mode == GROWTH
        record_frequency = record_frequency or self.steps_per_year

        balance = float(state.starting_balance)
        basis = self._starting_basis()
        cashflow = float(state.periodic_amount)

        total_contributions = balance if is_growth else 0.0
        total_withdrawn = total_withdrawn_net = total_withdrawn_today = 0.0
        total_tax_withheld = total_tax_drag = 0.0
        years_until_zero = None

        series_years = [0.0]
        series_net = [float(net_liquidation_value(balance, basis, tax))]
        series_gross = [balance]

        year_data: List[YearRow] = []
        year_start = series_net[0]
        year_start_gross = balance
        year_cashflow = year_growth = year_tax = year_drag = year_net_cashflow = 0.0

        for step in range(1, self.total_steps + 1):
            growth = balance * self.step_rate
            balance += growth
            drag = float(income_tax_drag(growth, tax))

            if is_growth:
                balance += cashflow
                basis += cashflow
                total_contributions += cashflow
                tax_withheld = 0.0
                paid = cashflow
            else:
                withdrawal = min(cashflow, balance)
                tax_withheld = float(withdrawal_tax(withdrawal, balance, basis, tax))
                basis = float(reduce_basis(basis, withdrawal, balance, tax))
                balance = max(balance - withdrawal, 0.0)
                paid = withdrawal - tax_withheld
                total_withdrawn += withdrawal
                total_withdrawn_net += paid
                total_withdrawn_today += withdrawal / self._discount(step / self.steps_per_year)
                if years_until_zero is None and balance <= DEPLETED_BALANCE:
                    years_until_zero = round(step / self.steps_per_year, 1)

            total_tax_withheld += tax_withheld
            total_tax_drag += drag
            year_cashflow += paid + tax_withheld
            year_net_cashflow += paid
            year_growth += growth
            year_tax += tax_withheld
            year_drag += drag

            if step % record_frequency == 0:
                series_years.append(step / self.steps_per_year)
                series_net.append(float(net_liquidation_value(balance, basis, tax)))
                series_gross.append(balance)

            if step % self.steps_per_year == 0 or step == self.total_steps:
                year_data.append(YearRow(
                    year=int(np.ceil(step / self.steps_per_year)),
                    starting_balance=year_start,
                    starting_balance_gross=year_start_gross,
                    cashflow=year_cashflow,
                    growth=year_growth,
                    tax_withheld=year_tax,
                    tax_drag=year_drag,
                    ending_balance=float(net_liquidation_value(balance, basis, tax)),
                    ending_balance_gross=balance,
                    net_cashflow=year_net_cashflow,
                ))
                year_start = year_data[-1].ending_balance
                year_start_gross = balance
                year_cashflow = year_growth = year_tax = year_drag = year_net_cashflow = 0.0

            if self._escalates(step):
                cashflow *= self.inflation_factor

        final_net = float(net_liquidation_value(balance, basis, tax))
        final_today = final_net / self._discount(self.total_steps / self.steps_per_year)
        total_tax_paid = total_tax_withheld + total_tax_drag + float(liquidation_tax(balance, basis, tax))

        result = ProjectionResult(
            mode=state.mode,
            final_value=final_net,
            final_value_gross=balance,
            final_value_in_todays_dollars=final_today,
            year_data=year_data,
            series_years=np.array(series_years),
            series_net=np.array(series_net),
            series_gross=np.array(series_gross),
            total_tax_withheld=total_tax_withheld,
            total_tax_drag=total_tax_drag,
            total_tax_paid=total_tax_paid,
        )

        if is_growth:
            result.total_contributions = total_contributions
            result.total_interest = balance - total_contributions
            result.total_profit = final_net - total_contributions
            result.years_to_target = self.years_to_target()
        else:
            result.total_withdrawn = total_withdrawn
            result.total_withdrawn_net = total_withdrawn_net
            result.total_withdrawn_in_todays_dollars = total_withdrawn_today
            result.years_until_zero = years_until_zero
            result.is_sustainable = years_until_zero is None

        logger.debug("Deterministic %s projection: %d steps, final value %.2f",
                     state.mode, self.total_steps, final_net)
        return result

    def years_to_target(self) -> Optional[float]:
        """
        Years until the gross balance first reaches the target value.

        Searched for up to 1,000 years; None when there is no target above the
        starting balance or it is never reached.
        """
        target = getattr(self.state, "target_value", None)
        if not target or target <= self.state.starting_balance:
            return None

        balance = float(self.state.starting_balance)
        cashflow = float(self.state.periodic_amount)
        for step in range(1, MAX_TARGET_SEARCH_YEARS * self.steps_per_year + 1):
            balance = balance * (1.0 + self.step_rate) + cashflow
            if balance >= target:
                return round(step / self.steps_per_year, 1)
            if self._escalates(step):
                cashflow *= self.inflation_factor
        return None


def run_deterministic_projection(state) -> ProjectionResult:
    """Run a deterministic projection for a GrowthState or WithdrawalState"""
    return DeterministicProjector(state).run_projection()

