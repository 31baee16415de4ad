import copy
import json
from collections import defaultdict

import pytest
from botocore.exceptions import ClientError

from dataflow_runner.config import ConfigResolver


CLUSTER_DATA = {
    "name": "xxx",
    "logUri": "s3://logging/",
    "region": "us-east-1",
    "credentials": {"accessKeyId": "env", "secretAccessKey": "env"},
    "roles": {"jobflow": "EMR_EC2_DefaultRole", "service": "EMR_DefaultRole"},
    "ec2": {
        "amiVersion": "4.5.0",
        "keyName": "snowplow-yyy-key",
        "location": {"classic": {"availabilityZone": "us-east-1a"}},
        "instances": {
            "master": {"type": "m1.medium"},
            "core": {"type": "c3.4xlarge", "count": 3},
            "task": {"type": "m1.medium", "count": 1, "bid": "0.015"},
        },
    },
}

PLAYBOOK_DATA = {
    "region": "us-east-1",
    "credentials": {"accessKeyId": "env", "secretAccessKey": "env"},
    "steps": [
        {
            "type": "CUSTOM_JAR",
            "name": "Combine Months",
            "actionOnFailure": "CANCEL_AND_WAIT",
            "jar": "/usr/share/aws/emr/s3-dist-cp/lib/s3-dist-cp.jar",
            "arguments": ["--src", "s3n://my-output-bucket/enriched/bad/", "--dest", "hdfs:///local/monthly/"],
        },
        {
            "type": "CUSTOM_JAR",
            "name": "Recover Events",
            "actionOnFailure": "CONTINUE",
            "jar": "s3://snowplow-hosted-assets/3-enrich/hadoop-event-recovery/snowplow-hadoop-event-recovery-0.2.0.jar",
            "arguments": ["com.snowplowanalytics.hadoop.scalding.SnowplowEventRecoveryJob", "--hdfs"],
        },
    ],
}


def record(schema: str, data: dict) -> str:
    return json.dumps({"schema": f"iglu:com.snowplowanalytics.dataflowrunner/{schema}/avro/1-0-0", "data": data})


def client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "InternalFailure", "Message": f"{operation} failed"}}, operation)


# ─────────────────────────────────────────────────────────────────────────────
# FAKE AWS CLIENTS
# ─────────────────────────────────────────────────────────────────────────────

class FakePaginator:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def paginate(self, **kwargs):
        self.calls.append(kwargs)
        return iter(self.pages(**kwargs))


class FakeEMR:
    """In-memory stand-in for the boto3 EMR client.

    cluster_states: list of (state, reason code) returned by describe_cluster in
    order; the last one repeats. step_states: step id -> list of states, same rule.
    """

    def __init__(self, cluster_states=None, step_states=None, log_uri="s3://logging/", listed_steps=None):
        self.cluster_states = list(cluster_states or [("WAITING", None)])
        self.step_states = {k: list(v) for k, v in (step_states or {}).items()}
        self.log_uri = log_uri
        self.listed_steps = listed_steps or []
        self.calls = defaultdict(list)
        self.fail = set()
        self._jobflows = 0

    def _check(self, operation, kwargs):
        self.calls[operation].append(kwargs)
        if operation in self.fail:
            raise client_error(operation)

    def run_job_flow(self, **kwargs):
        self._check("run_job_flow", kwargs)
        self._jobflows += 1
        return {"JobFlowId": f"j-{self._jobflows}"}

    def describe_cluster(self, **kwargs):
        self._check("describe_cluster", kwargs)
        state, code = self.cluster_states[0]
        if len(self.cluster_states) > 1:
            self.cluster_states.pop(0)
        status = {"State": state, "StateChangeReason": {"Code": code} if code else {}}
        return {"Cluster": {"Id": kwargs["ClusterId"], "Status": status, "LogUri": self.log_uri}}

    def terminate_job_flows(self, **kwargs):
        self._check("terminate_job_flows", kwargs)
        return {}

    def add_job_flow_steps(self, **kwargs):
        self._check("add_job_flow_steps", kwargs)
        return {"StepIds": [f"s-{i}" for i in range(1, len(kwargs["Steps"]) + 1)]}

    def describe_step(self, **kwargs):
        self._check("describe_step", kwargs)
        step_id = kwargs["StepId"]
        states = self.step_states[step_id]
        state = states[0]
        if len(states) > 1:
            states.pop(0)
        timeline = {}
        if state in ("COMPLETED", "FAILED", "CANCELLED", "INTERRUPTED"):
            timeline = {"StartDateTime": "2017-01-01 10:00:00", "EndDateTime": "2017-01-01 10:05:00"}
        return {"Step": {"Id": step_id, "Name": f"step {step_id}", "Status": {"State": state, "Timeline": timeline}}}

    def get_paginator(self, operation):
        assert operation == "list_steps"

        def pages(**kwargs):
            # newest first, two per page
            newest_first = list(reversed(self.listed_steps))
            return [
                {"Steps": [{"Id": s} for s in newest_first[i:i + 2]]}
                for i in range(0, len(newest_first), 2)
            ]

        return FakePaginator(pages)


class FakeS3:
    """In-memory stand-in for the boto3 S3 client, serving objects in pages of two."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.downloads = []
        self.fail = set()

    def get_paginator(self, operation):
        assert operation == "list_objects_v2"

        def pages(Bucket, Prefix):
            if "list_objects_v2" in self.fail:
                raise client_error("ListObjectsV2")
            keys = sorted(k for (b, k) in self.objects if b == Bucket and k.startswith(Prefix))
            return [{"Contents": [{"Key": k} for k in keys[i:i + 2]]} for i in range(0, len(keys), 2)]

        return FakePaginator(pages)

    def download_file(self, bucket, key, filename):
        if "download_file" in self.fail:
            raise client_error("GetObject")
        self.downloads.append(key)
        with open(filename, "wb") as fh:
            fh.write(self.objects[(bucket, key)])


# ─────────────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture()
def resolver():
    return ConfigResolver()


@pytest.fixture()
def cluster_data():
    return copy.deepcopy(CLUSTER_DATA)


@pytest.fixture()
def playbook_data():
    return copy.deepcopy(PLAYBOOK_DATA)


@pytest.fixture()
def cluster_config(resolver, cluster_data):
    return resolver.parse_cluster(record("ClusterConfig", cluster_data))


@pytest.fixture()
def playbook_config(resolver, playbook_data):
    return resolver.parse_playbook(record("PlaybookConfig", playbook_data))


@pytest.fixture()
def sleeps():
    """A sleep replacement recording every requested duration."""
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep
