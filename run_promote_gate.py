"""
================================================================================
 ProofKit PROMOTE Gate Runner
 ────────────────────────────
 Command-line entry point for the mutation safety workflow:

   1. idempotency  dual preview run of the autopilot against an account
                   fixture, verdict appended to the run log
   2. evaluate     PROMOTE gate decision from the run log
   3. run          one PRODUCTION pass (applies only with --promote)

 Usage:
   python run_promote_gate.py idempotency --log-dir run_logs --account-file account.json
   python run_promote_gate.py evaluate --log-dir run_logs --account-id 123-456-7890
   python run_promote_gate.py run --log-dir run_logs --account-file account.json --promote

 Exit codes: 0 promote approved / test passed, 1 blocked, failed or error.
================================================================================
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from ads_mutation_engine import AutopilotConfig, AutopilotRoutine, InMemoryAdsAccount, run_production
from idempotency_harness import (
    CONVERGENCE, REPEATABILITY, IdempotencyTestHarness, failure_report, promote_check,
)
from promote_gate import BackendGateClient, GateConfig, PromoteGate, format_decision
from run_log import FileRunLog

logger = logging.getLogger("PromoteGateCLI")

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_LOG_DIR = "run_logs"


def load_env() -> bool:
    """Load environment variables from the first .env file found."""
    for env_path in (Path.cwd() / ".env", PROJECT_ROOT / ".env"):
        if env_path.exists():
            load_dotenv(env_path)
            return True
    return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proofkit-gate",
                                     description="ProofKit PROMOTE gate and idempotency harness")
    sub = parser.add_subparsers(dest="command", required=True)

    evaluate = sub.add_parser("evaluate", help="Evaluate the PROMOTE gate from the run log")
    evaluate.add_argument("--log-dir", type=str, required=True, help="Run log directory")
    evaluate.add_argument("--account-id", type=str, default=None,
                          help="Account / tenant id for the backend gate check")
    evaluate.add_argument("--max-age", type=float, default=None,
                          help="Maximum idempotency verdict age in minutes (default: 1440)")
    evaluate.add_argument("--max-mutations", type=int, default=None,
                          help="Maximum mutations per run (default: 100)")
    evaluate.add_argument("--no-backend-validation", action="store_true",
                          help="Skip the backend PROMOTE gate status check")
    evaluate.add_argument("--no-label-guard", action="store_true",
                          help="Treat label guard evidence as advisory")
    evaluate.add_argument("--no-idempotency-required", action="store_true",
                          help="Do not require an idempotency verdict")
    evaluate.add_argument("--backend-url", type=str, default=None,
                          help="Backend base URL (default: $PROOFKIT_BACKEND_URL)")
    evaluate.add_argument("--no-exit", action="store_true",
                          help="Always exit 0 (report only)")

    for name, help_text in (("idempotency", "Run the dual-run idempotency test"),
                            ("run", "Run one PRODUCTION pass of the autopilot")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--log-dir", type=str, default=None,
                       help="Run log directory (default: $PROOFKIT_LOG_DIR or run_logs)")
        p.add_argument("--account-file", type=str, required=True,
                       help="JSON account fixture (campaigns, labels, negative_lists)")
        p.add_argument("--config", type=str, default=None, help="Autopilot config JSON")
        p.add_argument("--account-id", type=str, default=None, help="Account / tenant id")

    sub.choices["idempotency"].add_argument(
        "--converge", action="store_true",
        help="Apply first-run mutations to the simulated account before the second run")
    sub.choices["run"].add_argument(
        "--promote", action="store_true", help="Set PROMOTE=TRUE for this run")
    return parser


def _log_dir(args) -> str:
    return args.log_dir or os.getenv("PROOFKIT_LOG_DIR") or DEFAULT_LOG_DIR


def _account_id(args) -> str:
    return args.account_id or os.getenv("PROOFKIT_ACCOUNT_ID") or "default"


def _load_routine(args):
    account = InMemoryAdsAccount.load(args.account_file)
    config = AutopilotConfig.load(args.config) if args.config else AutopilotConfig()
    return account, AutopilotRoutine(account, config)


# ── COMMANDS ─────────────────────────────────────────────────────────────────

def cmd_evaluate(args) -> int:
    config = GateConfig.from_env(
        max_verdict_age_minutes=args.max_age,
        max_mutations_per_run=args.max_mutations,
        require_backend_validation=not args.no_backend_validation,
        require_label_guard=not args.no_label_guard,
        require_idempotency_test=not args.no_idempotency_required,
    )
    backend = None
    if config.require_backend_validation:
        backend = BackendGateClient(args.backend_url or os.getenv("PROOFKIT_BACKEND_URL"),
                                    os.getenv("PROOFKIT_HMAC_SECRET", ""),
                                    timeout=config.backend_timeout_seconds)

    gate = PromoteGate(FileRunLog(args.log_dir), config, backend=backend,
                       account_id=args.account_id or os.getenv("PROOFKIT_ACCOUNT_ID"))
    decision = gate.evaluate()
    print(format_decision(decision))
    return 0 if decision.can_promote else 1


def cmd_idempotency(args) -> int:
    account, routine = _load_routine(args)
    account_id = _account_id(args)
    harness = IdempotencyTestHarness(FileRunLog(_log_dir(args), create=True), account_id,
                                     strategy=CONVERGENCE if args.converge else REPEATABILITY)
    try:
        verdict = harness.run(routine, context=routine.new_context(account_id),
                              apply_between_runs=account.apply_mutations if args.converge else None)
    except Exception as e:
        logger.error(f"Idempotency test aborted: {e}")
        print(f"💥 Idempotency test error: {e}")
        return 1

    check = promote_check(verdict)
    print("=" * 60)
    print(f"🧪 IDEMPOTENCY TEST: {'PASSED' if verdict.passed else 'FAILED'} ({verdict.strategy})")
    print("=" * 60)
    print(f"  Account:    {verdict.account_id}")
    print(f"  First run:  {verdict.first_run.mutation_count} mutations")
    print(f"  Second run: {verdict.second_run.mutation_count} mutations")
    if not verdict.passed:
        print()
        print(failure_report(verdict))
    print()
    print(f"  {'✅' if check['canPromote'] else '❌'} {check['details']}")
    if harness.last_persist_error:
        print(f"  ⚠️  Verdict not saved: {harness.last_persist_error}")
    print("=" * 60)
    return 0 if verdict.passed else 1


def cmd_run(args) -> int:
    account, routine = _load_routine(args)
    if args.promote:
        routine.config.promote = True
    summary = run_production(routine, _account_id(args), FileRunLog(_log_dir(args), create=True))
    if summary["live"]:
        account.save(args.account_file)

    print("=" * 60)
    print(f"🚀 PRODUCTION RUN ({'LIVE' if summary['live'] else 'PROMOTE=FALSE, nothing applied'})")
    print("=" * 60)
    print(f"  Account:   {summary['account_id']}")
    print(f"  Mutations: {summary['run']['mutationCount']}")
    for m in summary["run"]["mutations"]:
        print(f"    - {m['type']}: {m['details']}")
    print("=" * 60)
    return 0


COMMANDS = {
    "evaluate": cmd_evaluate,
    "idempotency": cmd_idempotency,
    "run": cmd_run,
}


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(name)s] %(message)s')
    load_env()
    args = build_parser().parse_args(argv)

    try:
        code = COMMANDS[args.command](args)
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"💥 {args.command} failed: {e}")
        code = 1

    if getattr(args, "no_exit", False):
        return 0
    return code


if __name__ == "__main__":
    sys.exit(main())
