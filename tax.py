"""
Flat-rate tax model shared by the Monte Carlo and deterministic engines.

Three account treatments are supported:
- capital_gains: tax is owed only on realised gains, pro-rata to the
  gain fraction of the balance at withdrawal/liquidation
- income: gains are taxed every year, modelled as a lower post-tax
  compounding rate (tax drag)
- tax_deferred: nothing is taxed while invested, every withdrawn dollar is
  taxed at the flat rate

All functions accept floats or numpy/CuPy arrays.
"""
from dataclasses import dataclass

from rng import array_module

CAPITAL_GAINS = "capital_gains"
INCOME = "income"
TAX_DEFERRED = "tax_deferred"
TAX_TYPES = (CAPITAL_GAINS, INCOME, TAX_DEFERRED)

MAX_TAX_RATE = 0.99


@dataclass(frozen=True)
class TaxConfig:
    """Tax configuration for a run"""
    enabled: bool = False
    rate: float = 0.0
    tax_type: str = CAPITAL_GAINS

    def validate(self):
        """Validate tax configuration"""
        if self.tax_type not in TAX_TYPES:
            raise ValueError(f"Unknown tax type '{self.tax_type}', expected one of {TAX_TYPES}")
        if not 0.0 <= self.rate <= 1.0:
            raise ValueError(f"Tax rate must be between 0 and 1, got {self.rate}")

    @property
    def effective_rate(self) -> float:
        """Flat rate actually applied; zero when disabled, never above 99%"""
        if not self.enabled:
            return 0.0
        return min(self.rate, MAX_TAX_RATE)

    @property
    def is_income_tax(self) -> bool:
        return self.enabled and self.tax_type == INCOME

    @property
    def is_capital_gains(self) -> bool:
        return self.enabled and self.tax_type == CAPITAL_GAINS

    @property
    def is_tax_deferred(self) -> bool:
        return self.enabled and self.tax_type == TAX_DEFERRED

    @property
    def tracks_cost_basis(self) -> bool:
        """Whether withdrawals shrink the cost basis (everything except tax-deferred accounts)"""
        return self.tax_type != TAX_DEFERRED


NO_TAX = TaxConfig()


def post_tax_return(annual_return: float, tax: TaxConfig) -> float:
    """
    Annual return after income tax drag.

    Args:
        annual_return: Pre-tax expected annual return
        tax: Tax configuration

    Returns:
        Return used for compounding (unchanged unless tax type is income)
    """
    if tax.is_income_tax:
        return annual_return * (1.0 - tax.effective_rate)
    return annual_return


def net_liquidation_value(balance, basis, tax: TaxConfig):
    """
    Value of the account if it were liquidated now, after tax.

    Args:
        balance: Gross account balance
        basis: Cost basis (already-taxed principal)
        tax: Tax configuration

    Returns:
        Net value; equal to balance when no liquidation tax applies
    """
    if tax.is_tax_deferred:
        return balance * (1.0 - tax.effective_rate)
    if tax.is_capital_gains:
        xp = array_module(balance)
        gain = xp.maximum(balance - basis, 0.0)
        return balance - gain * tax.effective_rate
    return balance


def liquidation_tax(balance, basis, tax: TaxConfig):
    """Tax owed if the account were liquidated now"""
    return balance - net_liquidation_value(balance, basis, tax)


def gain_fraction(balance, basis):
    """Fraction of the balance that is unrealised gain, zero when there is no gain"""
    xp = array_module(balance)
    safe_balance = xp.where(balance > 0.0, balance, 1.0)
    fraction = (balance - basis) / safe_balance
    return xp.where((balance > basis) & (balance > 0.0), fraction, 0.0)


def withdrawal_tax_rate(balance, basis, tax: TaxConfig):
    """
    Effective tax rate on the next withdrawn dollar.

    Capital gains are taxed pro-rata on the gain fraction of the balance and
    capped at 99%; tax-deferred withdrawals pay the flat rate; income-taxed
    accounts have already paid through the drag.
    """
    if tax.is_capital_gains:
        xp = array_module(balance)
        return xp.minimum(tax.effective_rate * gain_fraction(balance, basis), MAX_TAX_RATE)
    if tax.is_tax_deferred:
        return tax.effective_rate
    return 0.0


def withdrawal_tax(withdrawal, balance, basis, tax: TaxConfig):
    """
    Tax withheld from a gross withdrawal.

    Args:
        withdrawal: Gross amount taken from the account
        balance: Balance the withdrawal is taken from
        basis: Cost basis before the withdrawal
        tax: Tax configuration

    Returns:
        Tax withheld
    """
    return withdrawal * withdrawal_tax_rate(balance, basis, tax)


def reduce_basis(basis, withdrawal, balance, tax: TaxConfig):
    """
    Cost basis remaining after a withdrawal.

    The basis shrinks in proportion to the share of the balance withdrawn.
    Tax-deferred accounts do not track basis.
    """
    if not tax.tracks_cost_basis:
        return basis
    xp = array_module(balance)
    safe_balance = xp.where(balance > 0.0, balance, 1.0)
    remaining = basis * (1.0 - withdrawal / safe_balance)
    return xp.where(balance > 0.0, xp.maximum(remaining, 0.0), basis)


def income_tax_drag(growth, tax: TaxConfig):
    """
    Implied annual tax on post-tax growth for income-taxed accounts.

    Growth compounds at the post-tax rate, so the pre-tax growth is
    growth / (1 - t) and the tax paid is growth * t / (1 - t).
    """
    if not tax.is_income_tax:
        return 0.0 * growth
    t = tax.effective_rate
    return growth * (t / (1.0 - t))
