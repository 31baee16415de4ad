"""
Submit playbook steps to a running EMR cluster and follow them to completion.

Step states are only observed, never driven:

    PENDING / RUNNING  ->  COMPLETED | CANCELLED | FAILED | INTERRUPTED

Every polling round re-evaluates every step id, since steps can finish in any
order. Only FAILED and INTERRUPTED steps are reported back as failed ids; CANCELLED
steps were usually cancelled because an earlier step failed with CANCEL_AND_WAIT.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from .credentials import get_aws_session
from .errors import DataflowRunnerError, StepsFailedError
from .models import PlaybookConfig
from .params import build_step_request

logger = logging.getLogger(__name__)

STEP_POLL_SECONDS = 15


class StepState(str, Enum):
    """EMR step states."""
    PENDING = "PENDING"
    CANCEL_PENDING = "CANCEL_PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    INTERRUPTED = "INTERRUPTED"


ERROR_STATES = (StepState.FAILED.value, StepState.CANCELLED.value, StepState.INTERRUPTED.value)
# Error states worth fetching logs for
FAILED_STATES = (StepState.FAILED.value, StepState.INTERRUPTED.value)


@dataclass
class StepsRound:
    """Outcome of one polling round over every submitted step."""
    success_count: int = 0
    error_count: int = 0
    failed_step_ids: list[str] = field(default_factory=list)
    info_logs: list[str] = field(default_factory=list)
    error_logs: list[str] = field(default_factory=list)

    @property
    def decided(self) -> int:
        return self.success_count + self.error_count


def diff(previous: list[str], current: list[str]) -> list[str]:
    """Lines of current that were not already in previous."""
    seen = set(previous)
    return [line for line in current if line not in seen]


class StepRunner:
    """Adds the steps of a playbook to a cluster and tracks them."""

    def __init__(
        self,
        playbook: PlaybookConfig,
        jobflow_id: str,
        blocking: bool = True,
        emr=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.playbook = playbook
        self.jobflow_id = jobflow_id
        self.blocking = blocking
        self.sleep = sleep
        if emr is None:
            session = get_aws_session(
                playbook.credentials.access_key_id,
                playbook.credentials.secret_access_key,
                playbook.region,
            )
            emr = session.client("emr")
        self.emr = emr

    def build_step_request(self) -> dict[str, Any]:
        return build_step_request(self.playbook, self.jobflow_id)

    def submit(self) -> None:
        """
        Submit every step; when blocking, wait for all of them to finish.

        Returns quietly when all steps completed (or when not blocking). Raises
        StepsFailedError, carrying the FAILED step ids, otherwise.
        """
        params = self.build_step_request()

        step_ids = self.emr.add_job_flow_steps(**params)["StepIds"]
        logger.info(
            "Successfully added %d steps to the EMR cluster with jobflow id '%s'...",
            len(params["Steps"]), self.jobflow_id,
        )

        if self.blocking:
            self.watch(step_ids)

    def watch(self, step_ids: list[str]) -> None:
        """Poll step_ids until each one is COMPLETED, FAILED, CANCELLED or INTERRUPTED."""
        previous = StepsRound()
        while True:
            current = self.retrieve_steps_states(step_ids)

            for line in diff(previous.info_logs, current.info_logs):
                logger.info(line)
            for line in diff(previous.error_logs, current.error_logs):
                logger.error(line)
            previous = current

            if current.decided == len(step_ids):
                break
            self.sleep(STEP_POLL_SECONDS)

        if current.error_count > 0:
            raise StepsFailedError(current.error_count, len(step_ids), current.failed_step_ids)

    def retrieve_steps_states(self, step_ids: list[str]) -> StepsRound:
        result = StepsRound()
        for step_id in step_ids:
            state, lines = self.retrieve_step_state(step_id)
            if state == StepState.COMPLETED.value:
                result.info_logs.extend(lines)
                result.success_count += 1
            elif state in ERROR_STATES:
                result.error_logs.extend(lines)
                result.error_count += 1
                if state in FAILED_STATES:
                    result.failed_step_ids.append(step_id)
        return result

    def retrieve_step_state(self, step_id: str) -> tuple[str, list[str]]:
        """State of one step plus a log line when it has finished."""
        try:
            step = self.emr.describe_step(ClusterId=self.jobflow_id, StepId=step_id)["Step"]
        except (BotoCoreError, ClientError) as e:
            raise DataflowRunnerError(f"Couldn't retrieve step {step_id} state: {e}") from e

        status = step["Status"]
        state = status["State"]
        if state == StepState.COMPLETED.value:
            line = f"Step '{step['Name']}' with id '{step['Id']}' completed successfully"
        elif state in ERROR_STATES:
            line = f"Step '{step['Name']}' with id '{step['Id']}' was {state}"
        else:
            return state, []
        return state, [line + _timeline(status.get("Timeline", {}))]

    def get_step_ids(self) -> list[str]:
        """Ids of every step known to the cluster, oldest first."""
        step_ids = []
        paginator = self.emr.get_paginator("list_steps")
        for page in paginator.paginate(ClusterId=self.jobflow_id):
            step_ids.extend(s["Id"] for s in page.get("Steps", []))
        # list_steps returns the most recent step first
        step_ids.reverse()
        return step_ids


def _timeline(timeline: dict) -> str:
    started = timeline.get("StartDateTime")
    ended = timeline.get("EndDateTime")
    if started and ended:
        return f" (started {started}, ended {ended})"
    if started:
        return f" (started {started})"
    return ""
