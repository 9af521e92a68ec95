"""
Press Tracker CLI

Simple command-line interface for inspecting press runs and batch provenance.

Usage Examples:
    # Create tables in the configured database
    press-tracker init-db

    # List press runs (optionally by status)
    press-tracker press-run --status completed

    # Show one press run with its loads
    press-tracker press-run 12

    # Show a batch's composition
    press-tracker composition 7

    # Show juice merged into a batch
    press-tracker merge-history 7
"""

import argparse
import logging
import sys

from press_tracker.models import PressRunStatus
from press_tracker.services import (
    batch_composition_service,
    merge_history_service,
    press_run_service,
)
from press_tracker.services.database import initialize_app_database
from press_tracker.services.exceptions import ServiceError


def init_db_cmd() -> int:
    """Create all tables."""
    print("Database ready.")
    return 0


def press_run_cmd(press_run_id=None, status=None) -> int:
    """Show one press run, or list runs."""
    if press_run_id is None:
        runs = press_run_service.list_press_runs(status=status)
        if not runs:
            print("No press runs found.")
            return 0
        for run in runs:
            name = run["name"] or f"(unnamed #{run['id']})"
            juice = run["total_juice_volume_l"]
            juice_text = f"{juice:.2f}L" if juice is not None else "-"
            print(
                f"{run['id']:>5}  {name:<16} {run['status']:<12} "
                f"{run['total_input_weight_kg']:>10.2f}kg  {juice_text}"
            )
        return 0

    run = press_run_service.get_press_run(press_run_id)
    print(f"Press run {run['id']}: {run['name'] or '(unnamed)'}")
    print(f"  Status: {run['status']}")
    print(f"  Allocation mode: {run['allocation_mode']}")
    print(f"  Input weight: {run['total_input_weight_kg']:.2f}kg")
    if run["total_juice_volume_l"] is not None:
        print(f"  Juice: {run['total_juice_volume_l']:.2f}L")
        print(f"  Extraction rate: {run['extraction_rate']:.4f} L/kg")
    print(f"  Loads: {len(run['loads'])}")
    for load in run["loads"]:
        variety = load.get("variety_name") or ""
        print(
            f"    {load['load_sequence']:>3}. lot {load['lot_id']:<6} "
            f"{load['input_weight_kg']:>9.2f}kg  {variety}"
        )
    return 0


def composition_cmd(batch_id: int) -> int:
    """Show a batch's composition."""
    entries = batch_composition_service.get_composition(batch_id)
    print(f"Batch {batch_id} composition")
    print("-" * 60)
    for entry in entries:
        print(
            f"  lot {entry['lot_id']:<6} {entry['variety_name'] or '':<20} "
            f"{entry['juice_volume_l']:>9.2f}L  {entry['fraction_of_batch'] * 100:>6.2f}%  "
            f"cost {entry['material_cost']}"
        )
    return 0


def merge_history_cmd(batch_id: int) -> int:
    """Show merges into a batch."""
    records = merge_history_service.get_merge_history(batch_id)
    if not records:
        print(f"No merges recorded for batch {batch_id}.")
        return 0
    for record in records:
        source = record["source_press_run_id"]
        source_text = f"press run {source}" if source is not None else "(source removed)"
        print(
            f"  {record['merged_at']}  +{record['volume_added_l']:.2f}L from {source_text}: "
            f"{record['target_volume_before_l']:.2f}L -> {record['target_volume_after_l']:.2f}L"
        )
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Press run and batch provenance utility for Press Tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  press-tracker init-db
  press-tracker press-run --status in_progress
  press-tracker press-run 12
  press-tracker composition 7
  press-tracker merge-history 7
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("init-db", help="Create database tables")

    press_run_parser = subparsers.add_parser("press-run", help="Show or list press runs")
    press_run_parser.add_argument("press_run_id", nargs="?", type=int, help="Press run ID")
    press_run_parser.add_argument(
        "--status",
        choices=[status.value for status in PressRunStatus],
        help="Filter the list by status",
    )

    composition_parser = subparsers.add_parser("composition", help="Show batch composition")
    composition_parser.add_argument("batch_id", type=int, help="Batch ID")

    merge_parser = subparsers.add_parser("merge-history", help="Show merges into a batch")
    merge_parser.add_argument("batch_id", type=int, help="Batch ID")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    initialize_app_database()

    try:
        if args.command == "init-db":
            return init_db_cmd()
        elif args.command == "press-run":
            return press_run_cmd(args.press_run_id, args.status)
        elif args.command == "composition":
            return composition_cmd(args.batch_id)
        elif args.command == "merge-history":
            return merge_history_cmd(args.batch_id)
    except ServiceError as e:
        print(f"ERROR: {e}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
