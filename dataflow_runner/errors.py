"""Exceptions raised by dataflow-runner."""


class DataflowRunnerError(Exception):
    """Base exception for every failure dataflow-runner reports itself."""


class ConfigError(DataflowRunnerError):
    """Invalid or unusable configuration (records, templates, flags)."""


class LaunchError(DataflowRunnerError):
    """The cluster did not reach the WAITING state."""


class StepsFailedError(DataflowRunnerError):
    """One or more submitted steps ended FAILED, CANCELLED or INTERRUPTED."""

    def __init__(self, error_count: int, total: int, failed_step_ids: list[str]):
        super().__init__(f"{error_count}/{total} steps failed to complete successfully")
        self.error_count = error_count
        self.total = total
        self.failed_step_ids = failed_step_ids


class LogRetrievalError(DataflowRunnerError):
    """Step logs could not be located, downloaded or read."""


class LockError(DataflowRunnerError):
    """A lock could not be built, acquired or released."""


class LockHeldError(LockError):
    """The lock is currently held by someone else."""
