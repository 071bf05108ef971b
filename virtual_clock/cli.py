# virtual_clock/cli.py

from __future__ import annotations
import argparse
import logging
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Callable

from virtual_clock.config import ClockConfig, load_config
from virtual_clock.engine.clock_engine import ClockEngine
from virtual_clock.errors import ConfigurationError
from virtual_clock.storage.file_store import FileStore


def _print_status(engine: ClockEngine) -> None:
    clock = engine.clock
    print(f"Virtual time: {clock.current_virtual_time().isoformat()}")
    print(f"Rate: {clock.rate:g}")
    print(f"Paused: {'yes' if clock.is_paused else 'no'}")


def _mutation(args: argparse.Namespace) -> Callable[[ClockEngine], None] | None:
    if args.command == "set-rate":
        return lambda engine: engine.clock.set_rate(args.rate)
    if args.command == "travel":
        target = datetime.fromisoformat(args.instant)
        return lambda engine: engine.clock.time_travel_to(target)
    if args.command == "fast-forward":
        return lambda engine: engine.clock.fast_forward(args.seconds)
    if args.command == "pause":
        return lambda engine: engine.clock.pause()
    if args.command == "resume":
        return lambda engine: engine.clock.resume()
    if args.command == "reset":
        return lambda engine: engine.clock.reset()
    return None


def _run(engine: ClockEngine, duration: float) -> None:
    for name, event in engine.scheduler.events.items():
        event.subscribe(
            lambda instant, name=name: print(f"{name} {instant.isoformat()}", flush=True)
        )
    engine.start()
    try:
        time.sleep(max(0.0, duration))
    finally:
        engine.scheduler.trigger_event_check()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="virtual-clock",
        description="Inspect and control a persisted virtual clock",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=Path(".virtual_clock"),
        help="Directory holding the persisted clock state",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log engine activity (DEBUG level) to stderr",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    def command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("config", type=Path, help="Path to the clock YAML configuration")
        return sub

    command("status", "Show the current virtual time")
    command("set-rate", "Change the clock rate").add_argument("rate", type=float)
    command("travel", "Jump to an ISO-8601 instant").add_argument("instant")
    command("fast-forward", "Advance by a number of virtual seconds").add_argument(
        "seconds", type=float
    )
    command("pause", "Freeze virtual time")
    command("resume", "Continue after a pause")
    command("reset", "Return virtual time to real time")

    check = command("check", "Evaluate request paths against the guard policy")
    check.add_argument("paths", nargs="+", help="Request paths to evaluate")

    run = command("run", "Run the engine and print boundary events as they fire")
    run.add_argument(
        "--duration",
        type=float,
        default=10.0,
        help="Real seconds to run for",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    if not args.config.exists():
        print(f"Config file not found: {args.config}", file=sys.stderr)
        return 1

    try:
        config: ClockConfig = load_config(args.config)
        engine = ClockEngine(config, store=FileStore(args.state_dir))
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        if args.command == "check":
            for path in args.paths:
                decision = engine.guard.evaluate(path)
                verdict = "ALLOW" if decision.allowed else "DENY"
                print(f"{verdict} {path} ({decision.reason})")
        elif args.command == "run":
            _run(engine, args.duration)
            _print_status(engine)
        else:
            mutate = _mutation(args)
            if mutate is not None:
                mutate(engine)
            _print_status(engine)
    except Exception as exc:
        print(f"Command failed: {exc}", file=sys.stderr)
        return 3
    finally:
        engine.shutdown()

    return 0


if __name__ == "__main__":

    signal.signal(signal.SIGPIPE, signal.SIG_DFL)  # Ignore broken pipe
    sys.exit(main())
