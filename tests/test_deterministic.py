"""
Unit tests for deterministic portfolio projection.
"""
import pytest
import numpy as np
from deterministic import (
    DeterministicProjector, GrowthState, WithdrawalState, run_deterministic_projection
)
from tax import TaxConfig, CAPITAL_GAINS, INCOME, TAX_DEFERRED


class TestGrowthProjection:
    """Test growth (accumulation) projections"""

    def test_compound_growth_no_cashflow(self):
        """Test 100,000 at 7% for 10 years"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100_000, annual_return=0.07, duration=10, frequency="yearly"))
        assert abs(result.final_value - 196_715.14) < 0.01
        assert result.final_value == result.final_value_gross
        assert len(result.year_data) == 10

    def test_monthly_compounding_matches_annual_rate(self):
        """Test that monthly steps compound to the effective annual rate"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100_000, annual_return=0.07, duration=10, frequency="monthly"))
        assert abs(result.final_value - 100_000 * 1.07 ** 10) < 1e-6

    def test_nominal_mode(self):
        """Test that nominal rates compound per period"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=1_000, annual_return=0.12, duration=1, frequency="monthly",
            calculation_mode="nominal"))
        assert abs(result.final_value - 1_000 * 1.01 ** 12) < 1e-9

    def test_contributions_and_interest(self):
        """Test contribution totals and interest split"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=1_000, annual_return=0.0, duration=3, periodic_addition=100,
            frequency="yearly"))
        assert abs(result.final_value - 1_300) < 1e-9
        assert abs(result.total_contributions - 1_300) < 1e-9
        assert abs(result.total_interest) < 1e-9

    def test_inflation_escalation(self):
        """Test that contributions rise once per year"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=0.01, annual_return=0.0, duration=2, periodic_addition=100,
            frequency="quarterly", inflation_adjustment=0.10))
        assert abs(result.final_value - (0.01 + 400 + 440)) < 1e-9

    def test_todays_dollars(self):
        """Test deflating the final value"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=1_000, annual_return=0.05, duration=10, frequency="yearly",
            inflation_adjustment=0.05))
        assert abs(result.final_value_in_todays_dollars - 1_000) < 1e-6

    def test_years_to_target(self):
        """Test the target search"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100_000, annual_return=0.07, duration=5, frequency="yearly",
            target_value=200_000))
        assert result.years_to_target == 11.0

    def test_years_to_target_not_applicable(self):
        """Test that a target at or below the start is not searched"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100_000, target_value=50_000))
        assert result.years_to_target is None

    def test_years_to_target_unreachable(self):
        """Test a target that is never reached"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100, annual_return=0.0, duration=1, frequency="yearly",
            target_value=1_000))
        assert result.years_to_target is None

    def test_capital_gains_final_value(self):
        """Test liquidation tax on the final gain"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100_000, annual_return=0.10, duration=1, frequency="yearly",
            tax=TaxConfig(True, 0.2, CAPITAL_GAINS)))
        assert abs(result.final_value_gross - 110_000) < 1e-6
        assert abs(result.final_value - 108_000) < 1e-6
        assert abs(result.total_tax_paid - 2_000) < 1e-6

    def test_income_tax_drag(self):
        """Test post-tax compounding and reported drag"""
        result = run_deterministic_projection(GrowthState(
            starting_balance=100_000, annual_return=0.10, duration=1, frequency="yearly",
            tax=TaxConfig(True, 0.25, INCOME)))
        assert abs(result.final_value - 107_500) < 1e-6
        assert abs(result.total_tax_drag - 2_500) < 1e-6


class TestWithdrawalProjection:
    """Test withdrawal (decumulation) projections"""

    def test_sustainable_withdrawals(self):
        """Test withdrawals below growth"""
        result = run_deterministic_projection(WithdrawalState(
            starting_balance=1_000_000, annual_return=0.05, duration=30,
            periodic_withdrawal=2_000, frequency="monthly"))
        assert result.is_sustainable
        assert result.years_until_zero is None
        assert result.final_value > 0
        assert abs(result.total_withdrawn - 2_000 * 360) < 1e-6

    def test_depletion(self):
        """Test that the balance is clamped at zero and depletion time recorded"""
        result = run_deterministic_projection(WithdrawalState(
            starting_balance=1_000, annual_return=0.0, duration=5,
            periodic_withdrawal=300, frequency="yearly"))
        assert result.final_value == 0.0
        assert not result.is_sustainable
        assert result.years_until_zero == 4.0
        assert abs(result.total_withdrawn - 1_000) < 1e-9
        assert all(row.ending_balance >= 0 for row in result.year_data)

    def test_tax_deferred_withholding(self):
        """Test flat-rate withholding on every withdrawn dollar"""
        result = run_deterministic_projection(WithdrawalState(
            starting_balance=100_000, annual_return=0.0, duration=2,
            periodic_withdrawal=10_000, frequency="yearly",
            tax=TaxConfig(True, 0.2, TAX_DEFERRED)))
        assert abs(result.total_tax_withheld - 4_000) < 1e-9
        assert abs(result.total_withdrawn_net - 16_000) < 1e-9
        assert abs(result.final_value - 80_000 * 0.8) < 1e-9
        assert abs(result.final_value_gross - 80_000) < 1e-9

    def test_capital_gains_withholding(self):
        """Test pro-rata withholding on the gain share"""
        result = run_deterministic_projection(WithdrawalState(
            starting_balance=200_000, starting_cost_basis=100_000, annual_return=0.0, duration=1,
            periodic_withdrawal=10_000, frequency="yearly",
            tax=TaxConfig(True, 0.2, CAPITAL_GAINS)))
        assert abs(result.total_tax_withheld - 1_000) < 1e-9
        assert abs(result.year_data[0].net_cashflow - 9_000) < 1e-9

    @pytest.mark.parametrize("tax", [TaxConfig(True, 0.2, CAPITAL_GAINS), TaxConfig(True, 0.2, TAX_DEFERRED)])
    def test_year_rows_chain_net_balances(self, tax):
        """Test that each year starts from the previous year's net ending balance"""
        result = run_deterministic_projection(WithdrawalState(
            starting_balance=200_000, starting_cost_basis=120_000, annual_return=0.06, duration=4,
            periodic_withdrawal=1_000, frequency="monthly", tax=tax))
        rows = result.year_data
        assert rows[0].starting_balance < rows[0].starting_balance_gross == 200_000
        for previous, row in zip(rows, rows[1:]):
            assert row.starting_balance == previous.ending_balance
            assert row.starting_balance_gross == previous.ending_balance_gross

    def test_series_at_record_frequency(self):
        """Test balance series sampling"""
        projector = DeterministicProjector(WithdrawalState(
            starting_balance=10_000, annual_return=0.0, duration=2,
            periodic_withdrawal=100, frequency="monthly"))
        result = projector.run_projection(record_frequency=6)
        np.testing.assert_allclose(result.series_years, [0.0, 0.5, 1.0, 1.5, 2.0])
        np.testing.assert_allclose(result.series_gross, [10_000, 9_400, 8_800, 8_200, 7_600])

    def test_todays_dollars_withdrawn(self):
        """Test deflated withdrawal totals"""
        result = run_deterministic_projection(WithdrawalState(
            starting_balance=10_000, annual_return=0.0, duration=1,
            periodic_withdrawal=1_100, frequency="yearly", inflation_adjustment=0.10))
        assert abs(result.total_withdrawn_in_todays_dollars - 1_000) < 1e-9
