"""
EMR cluster lifecycle: launch, wait and terminate.

Launching is retried when the cluster dies with a BOOTSTRAP_FAILURE, which is
usually transient (a flaky bootstrap script download, spot capacity, ...).
Every other failure is final.
"""

import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Iterable

from .credentials import get_aws_session
from .errors import LaunchError
from .models import ClusterConfig
from .params import build_launch_request

logger = logging.getLogger(__name__)

INVALID_STATE_SLEEP_SECONDS = 30
BOOTSTRAP_FAILURE_SLEEP_SECONDS = 300
LAUNCH_ATTEMPTS = 3
BOOTSTRAP_FAILURE = "BOOTSTRAP_FAILURE"


class ClusterState(str, Enum):
    """EMR cluster states."""
    STARTING = "STARTING"
    BOOTSTRAPPING = "BOOTSTRAPPING"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"
    TERMINATED_WITH_ERRORS = "TERMINATED_WITH_ERRORS"


LAUNCH_EXIT_STATES = frozenset({
    ClusterState.TERMINATED_WITH_ERRORS.value,
    ClusterState.TERMINATED.value,
    ClusterState.TERMINATING.value,
    ClusterState.WAITING.value,
})
TERMINATE_EXIT_STATES = frozenset({
    ClusterState.TERMINATED_WITH_ERRORS.value,
    ClusterState.TERMINATED.value,
})


class ClusterLauncher:
    """Starts and terminates clusters described by a ClusterConfig."""

    def __init__(
        self,
        config: ClusterConfig,
        emr=None,
        max_backoff: int = BOOTSTRAP_FAILURE_SLEEP_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.max_backoff = max_backoff
        self.sleep = sleep
        if emr is None:
            session = get_aws_session(
                config.credentials.access_key_id,
                config.credentials.secret_access_key,
                config.region,
            )
            emr = session.client("emr")
        self.emr = emr

    def build_launch_request(self) -> dict[str, Any]:
        return build_launch_request(self.config)

    def launch(self) -> str:
        """Launch the cluster and block until it is WAITING; returns the jobflow id."""
        params = self.build_launch_request()

        retries = LAUNCH_ATTEMPTS
        state = ""
        jobflow_id = ""
        while retries > 0:
            jobflow_id = self.emr.run_job_flow(**params)["JobFlowId"]
            logger.info("Launching EMR cluster with name '%s'...", self.config.name)

            status = self.wait_for_state(jobflow_id, ClusterState.WAITING.value, LAUNCH_EXIT_STATES)
            state = status["State"]

            if status.get("StateChangeReason", {}).get("Code") != BOOTSTRAP_FAILURE:
                break

            retries -= 1
            if retries == 0:
                break
            timeout = random.randint(0, self.max_backoff)
            logger.error("Bootstrap failure detected, retrying in %d seconds...", timeout)
            self.sleep(timeout)

        if retries <= 0:
            raise LaunchError("could not start the cluster due to bootstrap failure")
        if state != ClusterState.WAITING.value:
            raise LaunchError(f"EMR cluster failed to launch with state {state}")
        return jobflow_id

    def terminate(self, jobflow_id: str) -> None:
        self.emr.terminate_job_flows(JobFlowIds=[jobflow_id])
        logger.info("Terminating EMR cluster with jobflow id '%s'...", jobflow_id)
        self.wait_for_state(jobflow_id, ClusterState.TERMINATED.value, TERMINATE_EXIT_STATES)

    def wait_for_state(
        self,
        jobflow_id: str,
        needed_state: str,
        exit_states: Iterable[str],
    ) -> dict[str, Any]:
        """Poll the cluster until it is in one of exit_states and return its Status."""
        exit_states = set(exit_states)

        while True:
            status = self.emr.describe_cluster(ClusterId=jobflow_id)["Cluster"]["Status"]
            if status["State"] in exit_states:
                return status

            logger.info(
                "EMR cluster is in state %s - need state %s, checking again in %d seconds...",
                status["State"], needed_state, INVALID_STATE_SLEEP_SECONDS,
            )
            self.sleep(INVALID_STATE_SLEEP_SECONDS)
