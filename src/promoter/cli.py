"""Promoter Command Line Interface.

Provides CLI commands for promoting an image through staging and
production, signalling approval, inspecting deployment state and
rolling back by hand.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any

from promoter.approval import (
    ApprovalGate,
    AutoApprovalGate,
    FileApprovalGate,
)
from promoter.config.settings import get_settings
from promoter.controller import PromotionController
from promoter.driver.docker import DockerDriver
from promoter.driver.executor import executor_for
from promoter.environment import PRODUCTION, STAGING, Environment
from promoter.errors import DeployError, EnvironmentLockedError, StateError
from promoter.health import HealthVerifier, HttpProbe
from promoter.image import ImageReference
from promoter.locking import EnvironmentLocks
from promoter.observability.logging import configure_logging, get_logger
from promoter.observability.metrics import MetricsCollector
from promoter.rollback import RollbackManager
from promoter.state import DeploymentRecordStore
from promoter.version import __version__

if TYPE_CHECKING:
    from argparse import Namespace

    from promoter.config.settings import Settings


log = get_logger(__name__)

EXIT_USAGE = 64


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        msg = f"must be at least 1, got {number}"
        raise argparse.ArgumentTypeError(msg)
    return number


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="promoter",
        description="Promoter - Deployment Promotion & Rollback Controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  promoter promote registry.example.com/app:3f2c1ab            Deploy to staging only
  promoter promote registry.example.com/app:3f2c1ab --production
  promoter approve registry.example.com/app:3f2c1ab            Approve the waiting run
  promoter status                                              Show deployment records
  promoter rollback production                                 Restore the previous image
  promoter verify http://localhost:8080/healthz                Poll a health endpoint

Exit codes (promote): 0 promoted/staged, 1 failed, 2 rolled back, 3 rollback failed
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for debug logs)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=None,
        help="Log output format (default from settings)",
    )
    parser.add_argument(
        "--state-dir",
        type=str,
        default=None,
        help="Directory for deployment records, locks and approval signals",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Promote command
    promote_parser = subparsers.add_parser(
        "promote", help="Deploy an image to staging and optionally production"
    )
    promote_parser.add_argument("image", help="Image reference with its content-derived tag")
    target_group = promote_parser.add_mutually_exclusive_group()
    target_group.add_argument(
        "--production",
        dest="to_production",
        action="store_true",
        default=None,
        help="Continue to production after staging is healthy",
    )
    target_group.add_argument(
        "--staging-only",
        dest="to_production",
        action="store_false",
        help="Stop after a healthy staging deploy",
    )
    promote_parser.add_argument(
        "--yes",
        action="store_true",
        help="Pre-approve the production deploy (no approval wait)",
    )
    promote_parser.add_argument(
        "--approval-timeout",
        type=float,
        default=None,
        help="Seconds to wait for an approval signal",
    )
    promote_parser.add_argument(
        "--max-attempts",
        type=_positive_int,
        default=None,
        help="Maximum health probes per environment",
    )
    promote_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between failed health probes",
    )
    promote_parser.add_argument(
        "--staging-health-url",
        type=str,
        default=None,
        help="Staging health URL as seen from the controller",
    )
    promote_parser.add_argument(
        "--production-health-url",
        type=str,
        default=None,
        help="Production health URL as seen from the controller",
    )

    # Approve / reject commands
    for name, help_text in (
        ("approve", "Approve a waiting production promotion"),
        ("reject", "Reject a waiting production promotion"),
    ):
        decision_parser = subparsers.add_parser(name, help=help_text)
        decision_parser.add_argument("image", help="Image reference the decision applies to")
        decision_parser.add_argument(
            "--environment",
            "-e",
            default=PRODUCTION,
            help="Environment awaiting approval",
        )
        decision_parser.add_argument("--approver", default=None, help="Who made the decision")
        decision_parser.add_argument("--reason", default=None, help="Reason for the decision")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show deployment records and locks")
    status_parser.add_argument(
        "--live",
        action="store_true",
        help="Also inspect the image running on each host",
    )

    # Rollback command
    rollback_parser = subparsers.add_parser(
        "rollback", help="Restore the previous image recorded for an environment"
    )
    rollback_parser.add_argument("environment", choices=[STAGING, PRODUCTION])

    # Unlock command
    unlock_parser = subparsers.add_parser(
        "unlock", help="Remove a stale environment lock left by a crashed run"
    )
    unlock_parser.add_argument("environment", choices=[STAGING, PRODUCTION])
    unlock_parser.add_argument(
        "--force",
        action="store_true",
        required=True,
        help="Confirm that no promotion is running",
    )

    # Verify command
    verify_parser = subparsers.add_parser("verify", help="Poll a health endpoint")
    verify_parser.add_argument("url", help="Health endpoint URL")
    verify_parser.add_argument("--max-attempts", type=_positive_int, default=None)
    verify_parser.add_argument("--interval", type=float, default=None)

    return parser


def load_settings(args: Namespace) -> Settings:
    """Load settings and apply global CLI overrides."""
    settings = get_settings()
    if args.state_dir:
        settings = settings.model_copy(update={"state_dir": Path(args.state_dir)})
    return settings


def build_controller(
    settings: Settings,
    *,
    approval_gate: ApprovalGate | None = None,
    staging: Environment | None = None,
    production: Environment | None = None,
    verifier: HealthVerifier | None = None,
    metrics: MetricsCollector | None = None,
    approval_timeout: float | None = None,
) -> PromotionController:
    """Wire a controller from settings."""

    def _executor(env: Environment):  # noqa: ANN202
        return executor_for(
            env,
            ssh_options=settings.executor.ssh_options,
            default_timeout=settings.executor.command_timeout_seconds,
        )

    driver = DockerDriver(_executor)
    store = DeploymentRecordStore(settings.state_dir)
    return PromotionController(
        staging=staging or settings.environment(STAGING),
        production=production or settings.environment(PRODUCTION),
        driver=driver,
        verifier=verifier
        or HealthVerifier(
            max_attempts=settings.health.max_attempts,
            interval=settings.health.interval_seconds,
        ),
        approval_gate=approval_gate
        or FileApprovalGate(
            settings.state_dir,
            poll_interval=settings.approval.poll_interval_seconds,
        ),
        rollback=RollbackManager(driver, store),
        locks=EnvironmentLocks(settings.state_dir),
        approval_timeout=approval_timeout or settings.approval.timeout_seconds,
        probe_timeout=settings.health.request_timeout_seconds,
        metrics=metrics,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _parse_image(text: str, settings: Settings) -> ImageReference | None:
    try:
        return ImageReference.parse(text, default_registry=settings.registry)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _install_cancel_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform/loop; cancellation then falls back to KeyboardInterrupt.
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, cancel.set)


def run_promote(args: Namespace) -> int:
    """Run a promotion and print its report."""
    settings = load_settings(args)
    image = _parse_image(args.image, settings)
    if image is None:
        return EXIT_USAGE

    to_production = settings.deploy_to_production if args.to_production is None else args.to_production

    staging = settings.staging
    if args.staging_health_url:
        staging = staging.model_copy(update={"health_url": args.staging_health_url})
    production = settings.production
    if args.production_health_url:
        production = production.model_copy(
            update={"health_url": args.production_health_url, "probe_from_host": False}
        )

    verifier = HealthVerifier(
        max_attempts=(
            settings.health.max_attempts if args.max_attempts is None else args.max_attempts
        ),
        interval=settings.health.interval_seconds if args.interval is None else args.interval,
    )
    metrics = MetricsCollector()
    metrics.set_build_info(__version__)

    controller = build_controller(
        settings,
        approval_gate=AutoApprovalGate(approver="cli --yes") if args.yes else None,
        staging=staging.to_environment(STAGING, settings.app_name),
        production=production.to_environment(PRODUCTION, settings.app_name),
        verifier=verifier,
        metrics=metrics,
        approval_timeout=args.approval_timeout,
    )

    async def _promote():  # noqa: ANN202
        cancel = asyncio.Event()
        _install_cancel_handlers(cancel)
        return await controller.promote(image, to_production=to_production, cancel=cancel)

    report = asyncio.run(_promote())
    print(report.model_dump_json(indent=2))

    if settings.observability.metrics_textfile:
        metrics.write_textfile(settings.observability.metrics_textfile)

    return report.exit_code


def run_decision(args: Namespace) -> int:
    """Write an approval or rejection signal for a waiting run."""
    settings = load_settings(args)
    image = _parse_image(args.image, settings)
    if image is None:
        return EXIT_USAGE

    gate = FileApprovalGate(settings.state_dir)
    approved = args.command == "approve"
    path = gate.write_signal(
        args.environment,
        image,
        approved=approved,
        approver=args.approver,
        reason=args.reason,
    )
    log.info(
        "approval_signal_written",
        environment=args.environment,
        image=str(image),
        approved=approved,
        path=str(path),
    )
    print(f"{'Approved' if approved else 'Rejected'} {image} for {args.environment}")
    return 0


def run_status(args: Namespace) -> int:
    """Print deployment records and lock holders."""
    settings = load_settings(args)
    store = DeploymentRecordStore(settings.state_dir)
    locks = EnvironmentLocks(settings.state_dir)

    status: dict[str, Any] = {}
    for name in (STAGING, PRODUCTION):
        status[name] = {"lock": locks.holder(name)}
        try:
            record = store.get(name)
        except StateError as e:
            status[name]["record"] = None
            status[name]["record_error"] = e.message
        else:
            status[name]["record"] = record.model_dump(mode="json")

    if args.live:
        controller = build_controller(settings)

        async def _inspect() -> None:
            for name in (STAGING, PRODUCTION):
                env = settings.environment(name)
                try:
                    current = await controller.driver.current_image(env)
                except DeployError as e:
                    status[name]["running"] = None
                    status[name]["inspect_error"] = e.message
                else:
                    status[name]["running"] = str(current) if current else None

        asyncio.run(_inspect())

    _print_json(status)
    return 0


def run_rollback(args: Namespace) -> int:
    """Restore the previous image of an environment."""
    settings = load_settings(args)
    controller = build_controller(settings)
    env = settings.environment(args.environment)

    try:
        report = asyncio.run(controller.rollback_environment(env))
    except EnvironmentLockedError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print(report.model_dump_json(indent=2))
    return report.exit_code


def run_unlock(args: Namespace) -> int:
    """Remove a stale environment lock."""
    settings = load_settings(args)
    locks = EnvironmentLocks(settings.state_dir)
    if locks.force_unlock(args.environment):
        print(f"Removed lock for {args.environment}")
    else:
        print(f"No lock held for {args.environment}")
    return 0


def run_verify(args: Namespace) -> int:
    """Poll a health endpoint; exit 0 when healthy."""
    settings = load_settings(args)
    verifier = HealthVerifier(
        max_attempts=(
            settings.health.max_attempts if args.max_attempts is None else args.max_attempts
        ),
        interval=settings.health.interval_seconds if args.interval is None else args.interval,
    )
    probe = HttpProbe(args.url, timeout=settings.health.request_timeout_seconds)

    async def _verify():  # noqa: ANN202
        cancel = asyncio.Event()
        _install_cancel_handlers(cancel)
        return await verifier.verify(probe, cancel=cancel)

    result = asyncio.run(_verify())
    print(result.status.value)
    return 0 if result.healthy else 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    observability = get_settings().observability
    configure_logging(
        level="DEBUG" if args.verbose else observability.log_level,
        format_type=args.log_format or observability.log_format,
    )

    command_handlers = {
        "promote": run_promote,
        "approve": run_decision,
        "reject": run_decision,
        "status": run_status,
        "rollback": run_rollback,
        "unlock": run_unlock,
        "verify": run_verify,
    }

    handler = command_handlers.get(args.command)
    if handler:
        return handler(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
