#!/usr/bin/env python3
"""
ARM Template Backup - Multi-Environment Runner

Backs up every configured environment, one after another or in parallel,
then writes a combined report once all of them have finished.

Usage:
    # Environments from ./arm-backup.yaml, one after another
    python3 backup_all.py

    # Fan out across environments
    python3 backup_all.py --config arm-backup.yaml --policy parallel --max-workers 4

    # Only some environments
    python3 backup_all.py --environments ALM-TEST,ALM-DEV

    # Print a sample config file
    python3 backup_all.py --sample-config > arm-backup.yaml
"""
import argparse
import logging
import sys
from datetime import datetime
from typing import Callable, List, Optional

from arm_backup import backup_environment
from armlib.config import generate_sample_config, load_config, load_environments
from armlib.constants import (
    ALL_POLICIES,
    MARK_ERROR,
    MARK_SUCCESS,
    MARK_WARNING,
    POLICY_PARALLEL,
    POLICY_SEQUENTIAL,
    STATUS_FAILURE,
    STATUS_SKIPPED,
)
from armlib.models import Environment, EnvironmentResult
from armlib.report import append_step_summary, build_report, write_report
from armlib.utils import (
    BackupError,
    get_file_timestamp,
    print_summary_table,
    run_tasks,
    setup_logging,
    utc_now,
)

logger = logging.getLogger(__name__)

EnvironmentRunner = Callable[[Environment], EnvironmentResult]


def run_environment(
    environment: Environment,
    output_dir: str,
    retry_attempts: int = 1,
    now: Optional[datetime] = None,
    show_progress: bool = True
) -> EnvironmentResult:
    """
    Back up one environment and always return its terminal state.

    Environment-level errors become a failure result instead of propagating,
    so one environment never stops the others.
    """
    if not environment.enabled:
        logger.info(f"Skipping disabled environment: {environment.name}")
        return EnvironmentResult(environment=environment.name, status=STATUS_SKIPPED)

    try:
        return backup_environment(
            environment,
            output_dir=output_dir,
            retry_attempts=retry_attempts,
            now=now,
            show_progress=show_progress,
        )
    except BackupError as e:
        logger.error(f"{MARK_ERROR} {environment.name}: {e}")
        return EnvironmentResult(environment=environment.name, status=STATUS_FAILURE, error=str(e))
    except Exception as e:
        logger.exception(f"{MARK_ERROR} {environment.name}: unexpected error: {e}")
        return EnvironmentResult(environment=environment.name, status=STATUS_FAILURE, error=str(e))


def run_environments(
    environments: List[Environment],
    runner: EnvironmentRunner,
    policy: str = POLICY_SEQUENTIAL,
    max_workers: int = 1
) -> List[EnvironmentResult]:
    """
    Run `runner` once per environment under the given policy.

    Returns one result per environment, in input order, after every
    environment has reached a terminal state.

    Args:
        environments: Environments to process
        runner: Processes one environment; must not share mutable state
            with other invocations
        policy: "sequential" or "parallel"
        max_workers: Thread count for the parallel policy

    Raises:
        ValueError: On an unknown policy
    """
    if policy not in ALL_POLICIES:
        raise ValueError(f"Unknown policy '{policy}'. Expected one of: {', '.join(ALL_POLICIES)}")

    workers = 1
    if policy == POLICY_PARALLEL:
        workers = max(1, min(max_workers, len(environments)))

    logger.info(f"Processing {len(environments)} environment(s) with {policy} policy")

    outcomes = run_tasks(
        [(env.name, runner, (env,)) for env in environments],
        parallel_workers=workers,
        logger=logger,
    )

    results = []
    for env in environments:
        outcome = outcomes.get(env.name)
        if isinstance(outcome, EnvironmentResult):
            results.append(outcome)
        else:
            # The runner raised; run_tasks handed back the exception
            results.append(EnvironmentResult(
                environment=env.name,
                status=STATUS_FAILURE,
                error=str(outcome) if outcome is not None else "No result",
            ))

    return results


def select_environments(environments: List[Environment], names: Optional[str]) -> List[Environment]:
    """Filter environments by a comma-separated list of names."""
    if not names:
        return environments

    wanted = [n.strip() for n in names.split(',') if n.strip()]
    known = {env.name for env in environments}
    for name in wanted:
        if name not in known:
            logger.warning(f"{MARK_WARNING} Environment {name} is not configured")

    return [env for env in environments if env.name in wanted]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='ARM Template Backup - back up all configured environments')
    parser.add_argument('--config', help='YAML config file (default: ./arm-backup.yaml if present)')
    parser.add_argument('--policy', choices=ALL_POLICIES, help='Run environments sequentially or in parallel')
    parser.add_argument('--max-workers', type=int, help='Threads for the parallel policy (default: 4)')
    parser.add_argument('--environments', help='Comma-separated environment names to run (default: all)')
    parser.add_argument('--output', help='Output directory (default: current directory)')
    parser.add_argument(
        '--retry-attempts',
        type=int,
        help='Attempts per export method for transient network errors (default: 1, no retry)'
    )
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--log-file', action='store_true', help='Also write a redacted log file to the output directory')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    parser.add_argument('--sample-config', action='store_true', help='Print a sample config file and exit')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.sample_config:
        print(generate_sample_config())
        return 0

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        setup_logging(args.log_level or 'INFO')
        logger.error(f"{MARK_ERROR} Error: Invalid configuration: {e}")
        return 1

    setup_logging(args.log_level, output_dir=args.output if args.log_file else None)

    environments = select_environments(load_environments(config), args.environments)
    if not environments:
        logger.error(f"{MARK_ERROR} Error: No environments configured. See --sample-config.")
        return 1

    now = utc_now()
    # Concurrent progress bars would fight over the terminal
    show_progress = args.policy == POLICY_SEQUENTIAL and not args.no_progress

    def runner(environment: Environment) -> EnvironmentResult:
        return run_environment(
            environment,
            output_dir=args.output,
            retry_attempts=args.retry_attempts,
            now=now,
            show_progress=show_progress,
        )

    results = run_environments(environments, runner, policy=args.policy, max_workers=args.max_workers)

    report = build_report(args.output, results)
    write_report(report, args.output, get_file_timestamp(now))
    append_step_summary(report)
    print_summary_table(report['environments'])

    failed = [r.environment for r in results if r.status == STATUS_FAILURE]
    if failed:
        logger.error(f"{MARK_ERROR} Backup failed for environment(s): {', '.join(failed)}")
        return 1

    logger.info(f"{MARK_SUCCESS} All environments processed")
    return 0


if __name__ == '__main__':
    sys.exit(main())
