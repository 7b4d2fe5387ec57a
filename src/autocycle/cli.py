from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from autocycle.config import Settings
from autocycle.domain.cycle import CycleMode, parse_cycle_mode
from autocycle.domain.errors import ControllerError, GuardRejectedError, InvalidArgumentError
from autocycle.logging_utils import setup_logging
from autocycle.runtime.guards import normalize_run_id, resolve_path
from autocycle.security.redaction import redact_data, redact_free_text
from autocycle.services.cycle_controller import CycleContext, CycleController
from autocycle.services.run_history import DEFAULT_LIST_LIMIT, list_runs
from autocycle.services.state_store import CycleStateStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autocycle",
        epilog=(
            "Env overrides use the AUTOCYCLE_ prefix, e.g. AUTOCYCLE_CONFIRM_TEXT, "
            "AUTOCYCLE_EXECUTE_ACTIVE, AUTOCYCLE_LIVE_COMMAND, AUTOCYCLE_MAX_AMOUNT_RAW."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one autonomous cycle")
    run_parser.add_argument(
        "--mode",
        required=True,
        choices=[mode.value for mode in CycleMode],
        help="dryrun simulates; live may invoke the live command",
    )
    run_parser.add_argument("--run-id", default=None, help="Idempotency key for this run")
    run_parser.add_argument("--out", default=None, help="Latest proof path (env AUTOCYCLE_OUT)")
    run_parser.add_argument(
        "--state-path", default=None, help="Cycle state path (env AUTOCYCLE_STATE_PATH)"
    )
    run_parser.add_argument(
        "--history-dir", default=None, help="Proof history directory (env AUTOCYCLE_HISTORY_DIR)"
    )
    run_parser.add_argument(
        "--trigger-json",
        default=None,
        help="On-chain trigger proof JSON (env AUTOCYCLE_TRIGGER_JSON)",
    )
    run_parser.add_argument(
        "--confirm",
        default=None,
        help="Confirmation text; must match AUTOCYCLE_CONFIRM_TEXT for manual live runs",
    )

    runs_parser = subparsers.add_parser("runs", help="List recent cycle proofs")
    runs_parser.add_argument("--limit", type=int, default=DEFAULT_LIST_LIMIT)
    runs_parser.add_argument("--history-dir", default=None)
    runs_parser.add_argument("--latest", default=None, help="Latest proof path")

    state_parser = subparsers.add_parser("state", help="Print the normalized cycle state")
    state_parser.add_argument("--state-path", default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level)

    try:
        if args.command == "run":
            return run_cycle(settings, args)
        if args.command == "runs":
            return run_list(settings, args)
        if args.command == "state":
            return run_state(settings, args)
    except Exception:  # noqa: BLE001
        logger.exception("autocycle_command_failed", extra={"extra": {"command": args.command}})
        return 1
    parser.error(f"unknown command: {args.command}")
    return 2


def run_cycle(settings: Settings, args: argparse.Namespace) -> int:
    try:
        context = CycleContext(
            run_id=normalize_run_id(args.run_id),
            mode=parse_cycle_mode(args.mode),
            out_path=resolve_path(args.out or settings.out_path),
            state_path=resolve_path(args.state_path or settings.state_path),
            history_dir=resolve_path(args.history_dir or settings.history_dir),
            confirm_input=args.confirm or "",
            trigger_json=args.trigger_json or "",
        )
    except InvalidArgumentError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    controller = CycleController(settings)
    try:
        result = controller.run(context)
    except GuardRejectedError as exc:
        logger.warning(
            "cycle_guard_rejected",
            extra={"extra": {"run_id": context.run_id, "code": exc.code.value}},
        )
        _print_error(context.run_id, exc)
        return 2
    except ControllerError as exc:
        _print_error(context.run_id, exc)
        return 1

    payload = redact_free_text(
        redact_data(result.to_dict()), known_secrets=(settings.expected_confirm_text(),)
    )
    print(json.dumps(payload, indent=2, default=str))
    return 0 if result.ok else 1


def _print_error(run_id: str, exc: ControllerError) -> None:
    payload = {"ok": False, "runId": run_id, "error": exc.code.value, "message": str(exc)}
    print(json.dumps(payload), file=sys.stderr)


def run_list(settings: Settings, args: argparse.Namespace) -> int:
    try:
        history_dir = resolve_path(args.history_dir or settings.history_dir)
        latest_path = resolve_path(args.latest or settings.out_path)
        listing = list_runs(history_dir, latest_path, args.limit)
    except InvalidArgumentError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(json.dumps(listing.to_dict(), indent=2))
    return 0 if listing.ok else 1


def run_state(settings: Settings, args: argparse.Namespace) -> int:
    store = CycleStateStore(resolve_path(args.state_path or settings.state_path))
    print(json.dumps(store.load().to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
