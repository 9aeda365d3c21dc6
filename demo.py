#!/usr/bin/env python3
"""
Demo script showing how to use the portfolio simulation modules programmatically.
Runs a Monte Carlo simulation, the deterministic baseline and a cash-flow
sensitivity sweep, and prints the results.
"""
import argparse
import logging
import os
import sys
from dataclasses import replace

from config_utils import configure_logging, get_default_simulation_params, load_engine_config
from deterministic import run_deterministic_projection
from io_utils import create_replay_json, dict_to_params, export_result_csv, format_currency, parse_replay_json
from sensitivity import run_cashflow_sensitivity
from simulation import InvalidSimulationParams, run_stochastic_simulation, state_from_params
from stepper import MODES


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Portfolio Monte Carlo simulation demo")
    parser.add_argument("--mode", choices=MODES, default="growth", help="Simulation mode")
    parser.add_argument("--initial-value", type=float, help="Starting portfolio value")
    parser.add_argument("--expected-return", type=float, help="Expected annual return (0.07 = 7%%)")
    parser.add_argument("--volatility", type=float, help="Annual volatility (0.15 = 15%%)")
    parser.add_argument("--duration", type=float, help="Duration in years")
    parser.add_argument("--cashflow", type=float, help="Contribution or withdrawal per period")
    parser.add_argument("--frequency", choices=("yearly", "quarterly", "monthly", "weekly"),
                        help="Cash-flow frequency")
    parser.add_argument("--paths", type=int, help="Number of simulated paths")
    parser.add_argument("--seed", default=None, help="Run seed (string or integer)")
    parser.add_argument("--backend", choices=("auto", "sequential", "parallel", "gpu"),
                        help="Execution backend override")
    parser.add_argument("--config", default=None, help="Path to an engine config JSON file")
    parser.add_argument("--sensitivity", action="store_true", help="Also run the cash-flow stress test")
    parser.add_argument("--replay", default=None, help="Replay a run saved with --save-replay")
    parser.add_argument("--save-replay", default=None, help="Write params, mode and seed to this JSON file")
    parser.add_argument("--export-dir", default=None, help="Write result tables as CSV files to this directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_params(args):
    param_dict = get_default_simulation_params(args.mode)
    overrides = {
        'initial_value': args.initial_value,
        'expected_return': args.expected_return,
        'volatility': args.volatility,
        'duration': args.duration,
        'cashflow_amount': args.cashflow,
        'cashflow_frequency': args.frequency,
        'num_paths': args.paths,
    }
    param_dict.update({key: value for key, value in overrides.items() if value is not None})
    return dict_to_params(param_dict)


def parse_seed(raw):
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return raw


def main(argv=None):
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    config = load_engine_config(args.config)
    if args.backend:
        config = replace(config, backend=args.backend)

    seed = parse_seed(args.seed)
    if args.replay:
        with open(args.replay, "r") as f:
            params, args.mode, seed = parse_replay_json(f.read())
    else:
        params = build_params(args)

    print("Portfolio Simulation Demo")
    print("=" * 50)
    print(f"   Mode: {args.mode}")
    print(f"   Initial value: {format_currency(params.initial_value, 1)}")
    print(f"   Return / volatility: {params.expected_return:.1%} / {params.volatility:.1%}")
    print(f"   Cash flow: ${params.cashflow_amount:,.0f} {params.cashflow_frequency}")
    print(f"   Duration: {params.duration:g} years, {params.num_paths:,} paths")

    try:
        result = run_stochastic_simulation(params, args.mode, seed, config=config)
    except InvalidSimulationParams as e:
        print(f"\nInvalid parameters: {e}")
        return 2

    print(f"\nMonte Carlo Results ({result.strategy} strategy, seed {result.seed!r}):")
    summary = result.summary
    print(f"   Ending value P10/P50/P90: ${summary['p10']:,.0f} / ${summary['median']:,.0f} / ${summary['p90']:,.0f}")
    print(f"   Mean: ${summary['mean']:,.0f}   Best: ${summary['best']:,.0f}   Worst: ${summary['worst']:,.0f}")
    if args.mode == "growth":
        print(f"   Profitable paths: {result.profitable_rate:.1f}%")
        if result.portfolio_goal:
            print(f"   Probability of reaching ${result.portfolio_goal:,.0f}: {result.goal_probability:.1f}%")
    else:
        print(f"   Solvent paths: {result.solvent_rate:.1f}%")
    print(f"   Median max drawdown: {result.drawdown_stats['median']:.1%}")

    print("\nLoss Probabilities (end / intra-period):")
    for row in result.loss_probabilities:
        print(f"   >= {row['threshold']:>5.1%}: {row['end_period']:5.1f}% / {row['intra_period']:5.1f}%")

    projection = run_deterministic_projection(state_from_params(params, args.mode))
    print("\nDeterministic Projection:")
    print(f"   Final value: ${projection.final_value:,.0f} "
          f"(${projection.final_value_in_todays_dollars:,.0f} in today's dollars)")
    if args.mode == "growth":
        print(f"   Total contributions: ${projection.total_contributions:,.0f}")
        if projection.years_to_target is not None:
            print(f"   Years to goal: {projection.years_to_target}")
    else:
        print(f"   Total withdrawn: ${projection.total_withdrawn:,.0f}")
        print(f"   Sustainable: {projection.is_sustainable}"
              + (f" (depleted after {projection.years_until_zero} years)" if projection.years_until_zero else ""))

    print(f"\n   {'Year':<6} {'Start':>14} {'Cash flow':>12} {'Growth':>12} {'End':>14}")
    for row in projection.year_data[:5]:
        print(f"   {row.year:<6} {row.starting_balance:>14,.0f} {row.cashflow:>12,.0f} "
              f"{row.growth:>12,.0f} {row.ending_balance:>14,.0f}")

    if args.sensitivity:
        print("\nCash-flow Stress Test:")
        for row in run_cashflow_sensitivity(params, args.mode, result.seed, config=config):
            print(f"   x{row.modifier:.1f} ${row.amount:>10,.0f}: success {row.success_rate:5.1f}%, "
                  f"median ${row.median_ending_value:,.0f}")

    if args.export_dir:
        os.makedirs(args.export_dir, exist_ok=True)
        for name, csv_text in export_result_csv(result).items():
            with open(os.path.join(args.export_dir, f"{name}.csv"), "w") as f:
                f.write(csv_text)
        print(f"\nExported result tables to {args.export_dir}")

    replay_json = create_replay_json(params, args.mode, result.seed)
    if args.save_replay:
        with open(args.save_replay, "w") as f:
            f.write(replay_json)
        print(f"\nSaved replay to {args.save_replay}")
    else:
        print(f"\nSeed: {result.seed}. Add --seed {result.seed} --save-replay FILE to these arguments "
              f"to save the run, then use --replay FILE to reproduce it")
    return 0


if __name__ == "__main__":
    sys.exit(main())
