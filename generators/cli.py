"""
CLI for simulating A/B test traffic through the engine.

Usage:
    python -m generators.cli simulate --rates 0.05,0.07 --visitors 20000
    python -m generators.cli simulate --rates 0.05,0.06,0.065 --split 34,33,33 --output events.csv
    python -m generators.cli sample-size --baseline 0.05 --mde 0.01
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import List

from app.services.experiments.stats import calculate_sample_size_requirement
from generators.traffic_simulator import ArmConfig, SimulationConfig, TrafficSimulator


def parse_floats(value: str) -> List[float]:
    return [float(v) for v in value.split(",") if v.strip()]


def parse_ints(value: str) -> List[int]:
    return [int(v) for v in value.split(",") if v.strip()]


def even_split(arms: int) -> List[int]:
    """Integer allocations summing to 100; the first arm absorbs the remainder."""
    share = 100 // arms
    split = [share] * arms
    split[0] += 100 - share * arms
    return split


def build_config(args: argparse.Namespace) -> SimulationConfig:
    rates = parse_floats(args.rates)
    if len(rates) < 2:
        raise ValueError("At least two conversion rates are required")

    split = parse_ints(args.split) if args.split else even_split(len(rates))
    if len(split) != len(rates):
        raise ValueError("--split needs one allocation per rate")

    arms = [
        ArmConfig(
            name="control" if i == 0 else f"variant_{chr(ord('a') + i - 1)}",
            traffic_allocation=allocation,
            conversion_rate=rate,
            click_rate=args.click_rate,
        )
        for i, (rate, allocation) in enumerate(zip(rates, split))
    ]

    return SimulationConfig(
        arms=arms,
        visitors=args.visitors,
        hours=args.hours,
        sample_size=args.sample_size,
        duration_hours=args.duration,
        seed=args.seed,
    )


def cmd_simulate(args: argparse.Namespace) -> int:
    """Run synthetic traffic through a fresh in-memory engine."""
    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    print("\nTraffic Simulator")
    print("=================")
    for arm in config.arms:
        print(f"  {arm.name}: {arm.traffic_allocation}% traffic, {arm.conversion_rate:.2%} conversion")
    print(f"Visitors: {config.visitors:,} over {config.hours:g}h")
    print(f"Seed: {config.seed}")
    print()

    start_time = time.time()
    result = asyncio.run(TrafficSimulator(config).run())
    elapsed = time.time() - start_time

    print(result.summary().to_string(index=False))
    print()
    print(f"Final status: {result.test.status.value}")
    if result.completed_at_hour is not None:
        print(f"Completed after {result.completed_at_hour:.1f}h, winner: {result.test.winner or 'none'}")
    else:
        print("No decision within the simulated window")
    print(f"Time elapsed: {elapsed:.1f}s")

    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        result.events.to_csv(output, index=False)
        print(f"Event log written to: {output}")

    return 0


def cmd_sample_size(args: argparse.Namespace) -> int:
    """Per-arm sample size needed to detect an absolute lift."""
    n = calculate_sample_size_requirement(
        baseline_rate=args.baseline,
        minimum_detectable_effect=args.mde,
        significance=args.significance,
        power=args.power,
    )
    if n == 0:
        print("Error: baseline and baseline + mde must both lie strictly between 0 and 1")
        return 1

    print(f"Required sample size per variant: {n:,}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Splitbench traffic simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Simulate a 50/50 test with a 2-point lift:
    python -m generators.cli simulate --rates 0.05,0.07

  Three arms, uneven split, event log to CSV:
    python -m generators.cli simulate --rates 0.05,0.06,0.065 --split 34,33,33 --output events.csv

  Sample size for a 1-point lift over a 5% baseline:
    python -m generators.cli sample-size --baseline 0.05 --mde 0.01
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    sim_parser = subparsers.add_parser("simulate", help="Run synthetic traffic through the engine")
    sim_parser.add_argument(
        "--rates",
        type=str,
        default="0.05,0.07",
        help="Comma-separated true conversion rates, control first (default: 0.05,0.07)",
    )
    sim_parser.add_argument(
        "--split",
        type=str,
        default=None,
        help="Comma-separated traffic allocations summing to 100 (default: even)",
    )
    sim_parser.add_argument("--click-rate", type=float, default=0.2, help="Click probability per view")
    sim_parser.add_argument("--visitors", type=int, default=10_000, help="Number of visitors")
    sim_parser.add_argument("--hours", type=float, default=72.0, help="Simulated window in hours")
    sim_parser.add_argument(
        "--sample-size", type=int, default=1000, help="Minimum events before completion"
    )
    sim_parser.add_argument("--duration", type=int, default=24, help="Minimum test runtime in hours")
    sim_parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for reproducibility (default: 42)",
    )
    sim_parser.add_argument("--output", type=str, default=None, help="Write the event log as CSV")

    size_parser = subparsers.add_parser("sample-size", help="Required sample size per variant")
    size_parser.add_argument("--baseline", type=float, required=True, help="Baseline conversion rate")
    size_parser.add_argument("--mde", type=float, required=True, help="Absolute lift to detect")
    size_parser.add_argument("--significance", type=float, default=0.95)
    size_parser.add_argument("--power", type=float, default=0.8)

    args = parser.parse_args()

    if args.command == "simulate":
        return cmd_simulate(args)
    elif args.command == "sample-size":
        return cmd_sample_size(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
