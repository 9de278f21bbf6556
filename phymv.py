#!/usr/bin/env python3
"""Physically move the files of data objects from one resource to another.

Data objects that already have a replica on the destination resource are
never moved.  The rest is split into size cohorts; small files are moved by
many iphymv processes at once, large files by few processes that each get
more transfer threads.
"""
import argparse
import logging
import sys

import yaml

import cohorts
import utils
from inventory import IcatInventory, InventoryError
from mover import IPhymvExecutor, MoveRequest
from progress import ProgressTracker, RunState
from settings import build_settings, describe

LOG = logging.getLogger("phymv")

UNMOVABLE_WARNING = """WARNING: NOT ALL DATA OBJECTS COULD BE MOVED BECAUSE REPLICAS ARE ALREADY ON THE
DESTINATION RESOURCE"""


def run_cohort(state: RunState, items, budget, executor, settings, log, out=None, progress_stream=None) -> RunState:
    """Move one cohort and return the run state carried into the next one."""
    out = out if out is not None else sys.stdout
    cohort = cohorts.select_cohort(items, budget)
    print(f"Physically moving {len(cohort)} files with {cohorts.describe(budget)}", file=out, flush=True)
    if not cohort.items:
        return state

    request = MoveRequest(
        dest_resc=settings.dest_resc,
        src_resc=settings.src_resc,
        min_threads=budget.min_threads,
        max_procs=budget.effective_procs(settings.multiplier),
        batch_size=budget.batch_size(),
        paths=tuple(cohort.paths),
    )
    LOG.debug("cohort [%s, %s): %d files, %s, %d processes, %d paths per process",
              cohort.lower_bytes, cohort.upper_bytes, len(cohort), utils.format_bytes(cohort.total_bytes),
              request.max_procs, request.batch_size)
    tracker = ProgressTracker(state, len(cohort), progress_stream)
    try:
        return tracker.consume(executor.run(request, log))
    except (OSError, RuntimeError):
        # later cohorts still run; whatever was counted so far is kept
        LOG.error("cohort with %s failed after %d of %d files", cohorts.describe(budget), tracker.sub_cnt, len(cohort), exc_info=True)
        return tracker.state


def migrate(settings, inventory, executor, budgets=None, out=None, progress_stream=None) -> RunState:
    out = out if out is not None else sys.stdout
    budgets = budgets if budgets is not None else cohorts.default_budgets()
    LOG.debug("settings: %s", describe(settings))

    settings.log_file.write_text("")

    print("Checking to see if all data objects can be physically moved...", file=out, flush=True)
    if inventory.count_unmovable(settings.src_resc, settings.dest_resc, settings.collection) > 0:
        print(UNMOVABLE_WARNING, file=out, flush=True)

    print("Retrieving data objects to physically move...", file=out, flush=True)
    items = inventory.list_movable(settings.src_resc, settings.dest_resc, settings.collection)
    state = RunState(total_items=len(items))
    print(f"{state.total_items} data objects to physically move", file=out, flush=True)
    if not items:
        return state

    with settings.log_file.open("a", encoding="utf-8") as log:
        for budget in budgets:
            state = run_cohort(state, items, budget, executor, settings, log, out=out, progress_stream=progress_stream)

    print(f"{state.completed_count} data objects processed", file=out, flush=True)
    if state.failed_count:
        print(f"{state.failed_count} data objects failed to move, see {settings.log_file}", file=out, flush=True)
    return state


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _multiplier(value):
    try:
        mult = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid multiplier: {value!r}") from None
    if mult < 1:
        raise argparse.ArgumentTypeError("multiplier must be a positive integer")
    return mult


def parse_args(argv=None):
    p = _ArgumentParser(
        prog="phymv",
        description="Moves the files from one resource to another. It will not move any file "
                    "associated with a data object that has a replica on the destination resource.",
    )
    p.add_argument("src_resc", help="the resource where the files are moved from")
    p.add_argument("dest_resc", help="the resource where the files are moved to")
    p.add_argument("log_file", help="a file where the move related messages are logged")
    p.add_argument("-c", "--collection", help="only move the files associated with data objects in this collection")
    p.add_argument("-m", "--multiplier", type=_multiplier, default=None,
                   help="a multiplier on the number of processes to run at once (default: 1)")
    p.add_argument("--config", default=None, help="yaml file overriding database and tool settings")
    p.add_argument("--strict", action="store_true", help="exit with status 2 when any file failed to move")
    p.add_argument("-v", "--verbose", action="store_true")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    utils.setup_logging(args.verbose)
    try:
        settings = build_settings(args.src_resc, args.dest_resc, args.log_file, args.collection, args.multiplier, args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        LOG.error("invalid configuration: %s", exc)
        return 1

    utils.install_signal_handlers()
    executor = IPhymvExecutor(settings.iphymv, settings.thread_hint)
    try:
        state = migrate(settings, IcatInventory(settings), executor)
    except InventoryError as exc:
        LOG.error("%s", exc)
        return 1
    except OSError as exc:
        LOG.error("cannot write log file %s: %s", settings.log_file, exc)
        return 1
    except utils.GracefulExit:
        executor.terminate()
        LOG.warning("received termination signal, stopping")
        return 130

    if args.strict and state.failed_count:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
