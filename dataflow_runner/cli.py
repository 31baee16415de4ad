"""
dataflow-runner command line

Run templatable playbooks of Hadoop/Spark/et al jobs on Amazon EMR.

Commands:
  up             Launch a new EMR cluster and wait until it is WAITING
  run            Add the steps of a playbook to a running cluster
  down           Terminate a running cluster
  run-transient  up, run, then down, whatever the outcome of run
  watch          Follow the steps already present on a cluster
"""

import argparse
import logging
import os
import sys

import requests
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .cluster import BOOTSTRAP_FAILURE_SLEEP_SECONDS, ClusterLauncher
from .config import ConfigResolver, vars_to_map
from .errors import ConfigError, DataflowRunnerError, LockHeldError, LogRetrievalError, StepsFailedError
from .lock import get_lock
from .logs import LogRetriever
from .models import PlaybookConfig
from .steps import StepRunner

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# CONSTANTS
# ─────────────────────────────────────────────────────────────────────────────

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCK_HELD = 3

BACKOFF_ENV = "DATAFLOW_RUNNER_BOOTSTRAP_BACKOFF"
LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]

F_EMR_CONFIG = "emr-config"
F_EMR_PLAYBOOK = "emr-playbook"
F_EMR_CLUSTER = "emr-cluster"
F_VARS = "vars"
F_ASYNC = "async"
F_LOCK = "lock"
F_SOFT_LOCK = "softLock"
F_CONSUL = "consul"

console = Console()
err_console = Console(stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    if level != "debug":
        for noisy in ("botocore", "boto3", "urllib3"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def flag_to_error(flag: str) -> ConfigError:
    return ConfigError(f"--{flag} needs to be specified")


def resolve_backoff(value: int | None) -> int:
    """Max bootstrap-failure back-off: flag, then env var, then the default."""
    if value is None:
        raw = os.environ.get(BACKOFF_ENV)
        if not raw:
            return BOOTSTRAP_FAILURE_SLEEP_SECONDS
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"{BACKOFF_ENV} must be an integer, got '{raw}'")
    if value < 0:
        raise ConfigError("--bootstrap-backoff must not be negative")
    return value


def log_failed_steps(playbook: PlaybookConfig, jobflow_id: str, step_ids: list[str]) -> None:
    """Fetch and log the S3 logs of every failed step."""
    retriever = LogRetriever.from_credentials(
        playbook.credentials.access_key_id,
        playbook.credentials.secret_access_key,
        playbook.region,
        jobflow_id,
    )
    for step_id in step_ids:
        for filename, content in retriever.fetch_step_logs(step_id).items():
            logger.error("Logs for step %s, file %s:\n%s", step_id, filename, content)


def follow_steps(runner: StepRunner, playbook: PlaybookConfig, step_ids: list[str] | None, with_logs: bool) -> None:
    """Submit (or just watch) steps, logging failed step logs when asked to."""
    try:
        if step_ids is None:
            runner.submit()
        else:
            runner.watch(step_ids)
    except StepsFailedError as e:
        if with_logs and e.failed_step_ids:
            try:
                log_failed_steps(playbook, runner.jobflow_id, e.failed_step_ids)
            except LogRetrievalError as log_error:
                logger.error(str(log_error))
        raise


def display_summary(title: str, rows: list[tuple[str, str]]) -> None:
    table = Table(title=title, show_header=False, border_style="cyan")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="green")
    for field, value in rows:
        table.add_row(field, value)
    console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────────────

def up(emr_config: str, raw_vars: str | None, max_backoff: int | None = None) -> str:
    """Launch a new EMR cluster, returning its jobflow id."""
    if not emr_config:
        raise flag_to_error(F_EMR_CONFIG)

    variables = vars_to_map(raw_vars)
    config = ConfigResolver().resolve_cluster(emr_config, variables)

    launcher = ClusterLauncher(config, max_backoff=resolve_backoff(max_backoff))
    return launcher.launch()


def run(
    emr_playbook: str,
    emr_cluster: str,
    is_async: bool,
    hard_lock: str | None,
    soft_lock: str | None,
    consul: str | None,
    raw_vars: str | None,
    with_logs: bool = False,
) -> None:
    """Add the steps of a playbook to a running cluster."""
    if not emr_playbook:
        raise flag_to_error(F_EMR_PLAYBOOK)
    if not emr_cluster:
        raise flag_to_error(F_EMR_CLUSTER)
    if consul and not hard_lock and not soft_lock:
        raise ConfigError(f"--{F_LOCK} or --{F_SOFT_LOCK} is needed to make use of --{F_CONSUL}")
    if hard_lock and soft_lock:
        raise ConfigError(f"--{F_LOCK} and --{F_SOFT_LOCK} are mutually exclusive")
    if is_async and (hard_lock or soft_lock):
        raise ConfigError(f"--{F_ASYNC} and --{F_LOCK} or --{F_SOFT_LOCK} are not compatible")

    variables = vars_to_map(raw_vars)
    playbook = ConfigResolver().resolve_playbook(emr_playbook, variables)
    runner = StepRunner(playbook, emr_cluster, blocking=not is_async)

    lock = None
    if hard_lock or soft_lock:
        lock = get_lock(hard_lock or soft_lock, consul)
        lock.try_lock()

    succeeded = False
    try:
        follow_steps(runner, playbook, None, with_logs)
        succeeded = True
    finally:
        # A hard lock stays held after a failure until someone clears it
        if lock is not None and (succeeded or soft_lock):
            lock.unlock()


def down(emr_config: str, emr_cluster: str, raw_vars: str | None) -> None:
    """Terminate a running cluster."""
    if not emr_config:
        raise flag_to_error(F_EMR_CONFIG)
    if not emr_cluster:
        raise flag_to_error(F_EMR_CLUSTER)

    variables = vars_to_map(raw_vars)
    config = ConfigResolver().resolve_cluster(emr_config, variables)
    ClusterLauncher(config).terminate(emr_cluster)


def watch(emr_playbook: str, emr_cluster: str, raw_vars: str | None, with_logs: bool = False) -> None:
    """Wait for every step already on a cluster to finish."""
    if not emr_playbook:
        raise flag_to_error(F_EMR_PLAYBOOK)
    if not emr_cluster:
        raise flag_to_error(F_EMR_CLUSTER)

    variables = vars_to_map(raw_vars)
    playbook = ConfigResolver().resolve_playbook(emr_playbook, variables)
    runner = StepRunner(playbook, emr_cluster, blocking=True)

    step_ids = runner.get_step_ids()
    logger.info("Watching %d steps on EMR cluster with jobflow id '%s'...", len(step_ids), emr_cluster)
    follow_steps(runner, playbook, step_ids, with_logs)


def run_transient(args: argparse.Namespace) -> None:
    if not args.emr_config:
        raise flag_to_error(F_EMR_CONFIG)
    if not args.emr_playbook:
        raise flag_to_error(F_EMR_PLAYBOOK)

    jobflow_id = up(args.emr_config, args.vars, args.bootstrap_backoff)
    logger.info("EMR cluster launched successfully; Jobflow ID: %s", jobflow_id)

    run_error = None
    try:
        run(args.emr_playbook, jobflow_id, False, args.lock, args.soft_lock,
            args.consul, args.vars, args.log_failed_steps)
        logger.info("All steps completed successfully")
    except (DataflowRunnerError, ClientError, BotoCoreError, requests.RequestException) as e:
        logger.error(str(e))
        run_error = e
    finally:
        # Any other exception (including KeyboardInterrupt) propagates after teardown
        down(args.emr_config, jobflow_id, args.vars)
        logger.info("EMR cluster terminated successfully")

    display_summary("Transient EMR run", [
        ("Jobflow ID", jobflow_id),
        ("Steps", "[red]failed[/red]" if run_error else "completed"),
        ("Cluster", "terminated"),
    ])

    if run_error is not None:
        logger.error("Transient EMR run completed with errors")
        raise run_error
    logger.info("Transient EMR run completed successfully")


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dataflow-runner",
        description="Run templatable playbooks of Hadoop/Spark/et al jobs on Amazon EMR",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default="info",
                        help="logging level (default: info)")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    def emr_config(p):
        p.add_argument(f"--{F_EMR_CONFIG}", dest="emr_config", help="EMR config path")

    def emr_playbook(p):
        p.add_argument(f"--{F_EMR_PLAYBOOK}", dest="emr_playbook", help="Playbook path")

    def emr_cluster(p):
        p.add_argument(f"--{F_EMR_CLUSTER}", dest="emr_cluster", help="Jobflow ID")

    def variables(p):
        p.add_argument(f"--{F_VARS}", dest="vars",
                       help="Variables used by the templater, as key1,value1,key2,value2")

    def backoff(p):
        p.add_argument("--bootstrap-backoff", type=int, default=None,
                       help=f"Max seconds to wait before relaunching after a bootstrap failure "
                            f"(default: ${BACKOFF_ENV} or {BOOTSTRAP_FAILURE_SLEEP_SECONDS})")

    def locks(p):
        p.add_argument(f"--{F_LOCK}", dest="lock",
                       help="Path to the lock held for the duration of the jobflow steps. This is "
                            f"materialized by a file or a KV entry in Consul depending on --{F_CONSUL}.")
        p.add_argument(f"--{F_SOFT_LOCK}", dest="soft_lock",
                       help=f"Like --{F_LOCK}, but released no matter if the operation failed or succeeded.")
        p.add_argument(f"--{F_CONSUL}", dest="consul",
                       help="Address of the Consul server used for distributed locking")

    def failed_logs(p):
        p.add_argument("--log-failed-steps", action="store_true",
                       help="Fetch and log the S3 logs of failed steps")

    p_up = commands.add_parser("up", help="Launches a new EMR cluster")
    emr_config(p_up)
    variables(p_up)
    backoff(p_up)

    p_run = commands.add_parser("run", help="Adds jobflow steps to a running EMR cluster")
    emr_playbook(p_run)
    emr_cluster(p_run)
    p_run.add_argument(f"--{F_ASYNC}", dest="is_async", action="store_true",
                       help="Asynchronous execution of the jobflow steps")
    locks(p_run)
    failed_logs(p_run)
    variables(p_run)

    p_down = commands.add_parser("down", help="Terminates a running EMR cluster")
    emr_config(p_down)
    emr_cluster(p_down)
    variables(p_down)

    p_transient = commands.add_parser("run-transient", help="Launches, runs and then terminates an EMR cluster")
    emr_config(p_transient)
    emr_playbook(p_transient)
    locks(p_transient)
    failed_logs(p_transient)
    variables(p_transient)
    backoff(p_transient)

    p_watch = commands.add_parser("watch", help="Waits for the steps already on an EMR cluster")
    emr_playbook(p_watch)
    emr_cluster(p_watch)
    failed_logs(p_watch)
    variables(p_watch)

    return parser


def dispatch(args: argparse.Namespace) -> None:
    if args.command == "up":
        jobflow_id = up(args.emr_config, args.vars, args.bootstrap_backoff)
        logger.info("EMR cluster launched successfully; Jobflow ID: %s", jobflow_id)
        console.print(jobflow_id)
    elif args.command == "run":
        run(args.emr_playbook, args.emr_cluster, args.is_async, args.lock, args.soft_lock,
            args.consul, args.vars, args.log_failed_steps)
        if args.is_async:
            console.print("[green]✓ Steps submitted[/green]")
        else:
            console.print("[green]✓ All steps completed successfully[/green]")
    elif args.command == "down":
        down(args.emr_config, args.emr_cluster, args.vars)
        console.print("[green]✓ EMR cluster terminated successfully[/green]")
    elif args.command == "run-transient":
        run_transient(args)
    elif args.command == "watch":
        watch(args.emr_playbook, args.emr_cluster, args.vars, args.log_failed_steps)
        console.print("[green]✓ All steps completed successfully[/green]")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    setup_logging(args.log_level)

    try:
        dispatch(args)
    except LockHeldError as e:
        err_console.print(f"[red]❌ {e}[/red]")
        return EXIT_LOCK_HELD
    except (DataflowRunnerError, ClientError, BotoCoreError, requests.RequestException) as e:
        err_console.print(f"[red]❌ {e}[/red]")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted.[/yellow]")
        return EXIT_FAILURE

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
