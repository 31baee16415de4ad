"""Builders turning configuration records into EMR API request parameters."""

from typing import Any

from .errors import ConfigError
from .models import (
    BootstrapActionConfig,
    ClusterConfig,
    Configuration,
    EbsConfiguration,
    Location,
    PlaybookConfig,
    Tag,
    WorkerInstance,
)

ALLOWED_APPLICATIONS = ["Hadoop", "Hive", "Mahout", "Pig", "Spark"]
ALLOWED_FAILURE_ACTIONS = ["CANCEL_AND_WAIT", "CONTINUE"]
RELEASE_LABEL_PREFIX = "emr-"
# Versions below this major use AmiVersion, the rest use ReleaseLabel
RELEASE_LABEL_MIN_MAJOR = 4


# ─────────────────────────────────────────────────────────────────────────────
# CLUSTER LAUNCH
# ─────────────────────────────────────────────────────────────────────────────

def build_launch_request(config: ClusterConfig) -> dict[str, Any]:
    """Build the ``run_job_flow`` keyword arguments for a cluster config."""
    ec2 = config.ec2
    subnet_id, availability_zone = get_location(ec2.location)

    instances: dict[str, Any] = {
        "Ec2KeyName": ec2.key_name,
        "InstanceGroups": get_instance_groups(config),
        "KeepJobFlowAliveWhenNoSteps": True,
    }
    if subnet_id:
        instances["Ec2SubnetId"] = subnet_id
    else:
        instances["Placement"] = {"AvailabilityZone": availability_zone}

    params: dict[str, Any] = {
        "Name": config.name,
        "LogUri": config.log_uri,
        "JobFlowRole": config.roles.jobflow,
        "ServiceRole": config.roles.service,
        "Instances": instances,
        "VisibleToAllUsers": True,
    }

    optional = {
        "Tags": get_tags(config.tags),
        "BootstrapActions": get_bootstrap_actions(config.bootstrap_action_configs),
        "Configurations": get_configurations(config.configurations),
        "Applications": get_applications(config.applications),
    }
    params.update({k: v for k, v in optional.items() if v})

    if get_version_major(ec2.ami_version) < RELEASE_LABEL_MIN_MAJOR:
        params["AmiVersion"] = ec2.ami_version
    else:
        params["ReleaseLabel"] = RELEASE_LABEL_PREFIX + ec2.ami_version

    return params


def get_location(location: Location) -> tuple[str, str]:
    """Return ``(subnet_id, availability_zone)``; exactly one is non-empty."""
    if location.vpc is not None and location.classic is not None:
        raise ConfigError("Only one of Availability Zone and Subnet id should be provided")
    if location.vpc is not None:
        return location.vpc.subnet_id, ""
    if location.classic is not None:
        return "", location.classic.availability_zone
    raise ConfigError("At least one of Availability Zone and Subnet id is required")


def get_version_major(version: str) -> int:
    """Major version from the single leading character of the version string."""
    if not version or not version[0].isdigit():
        raise ConfigError(f"Couldn't parse major version from amiVersion '{version}'")
    return int(version[0])


def get_instance_groups(config: ClusterConfig) -> list[dict[str, Any]]:
    """Master, core and task groups; core and task are dropped when empty."""
    instances = config.ec2.instances

    master: dict[str, Any] = {
        "InstanceCount": 1,
        "InstanceRole": "MASTER",
        "InstanceType": instances.master.type,
    }
    if instances.master.ebs_configuration is not None:
        master["EbsConfiguration"] = get_ebs_configuration(instances.master.ebs_configuration)

    groups = [master]
    for role, worker in (("CORE", instances.core), ("TASK", instances.task)):
        if worker.count > 0:
            groups.append(_worker_group(role, worker))
    return groups


def _worker_group(role: str, worker: WorkerInstance) -> dict[str, Any]:
    group: dict[str, Any] = {
        "InstanceCount": worker.count,
        "InstanceRole": role,
        "InstanceType": worker.type,
    }
    # A bid price makes this a spot request
    if worker.bid:
        group["BidPrice"] = worker.bid
        group["Market"] = "SPOT"
    if worker.ebs_configuration is not None:
        group["EbsConfiguration"] = get_ebs_configuration(worker.ebs_configuration)
    return group


def get_ebs_configuration(ebs: EbsConfiguration) -> dict[str, Any]:
    result: dict[str, Any] = {"EbsOptimized": ebs.ebs_optimized}
    if ebs.ebs_block_device_configs:
        result["EbsBlockDeviceConfigs"] = [
            {
                "VolumesPerInstance": device.volumes_per_instance,
                "VolumeSpecification": {
                    "Iops": device.volume_specification.iops,
                    "SizeInGB": device.volume_specification.size_in_gb,
                    "VolumeType": device.volume_specification.volume_type,
                },
            }
            for device in ebs.ebs_block_device_configs
        ]
    return result


def get_tags(tags: list[Tag]) -> list[dict[str, str]]:
    return [{"Key": tag.key, "Value": tag.value} for tag in tags]


def get_bootstrap_actions(actions: list[BootstrapActionConfig]) -> list[dict[str, Any]]:
    return [
        {
            "Name": action.name,
            "ScriptBootstrapAction": {
                "Path": action.script_bootstrap_action.path,
                "Args": list(action.script_bootstrap_action.args),
            },
        }
        for action in actions
    ]


def get_configurations(configurations: list[Configuration]) -> list[dict[str, Any]]:
    return [
        {"Classification": c.classification, "Properties": dict(c.properties)}
        for c in configurations
    ]


def get_applications(applications: list[str]) -> list[dict[str, str]]:
    for app in applications:
        if app not in ALLOWED_APPLICATIONS:
            raise ConfigError(f"Only {', '.join(ALLOWED_APPLICATIONS)} are allowed applications")
    return [{"Name": app} for app in applications]


# ─────────────────────────────────────────────────────────────────────────────
# STEPS
# ─────────────────────────────────────────────────────────────────────────────

def build_step_request(playbook: PlaybookConfig, jobflow_id: str) -> dict[str, Any]:
    """Build the ``add_job_flow_steps`` keyword arguments, steps kept in order."""
    if not playbook.steps:
        raise ConfigError("No steps found in config, nothing to add")

    steps = []
    for step in playbook.steps:
        if step.action_on_failure not in ALLOWED_FAILURE_ACTIONS:
            raise ConfigError(
                "Only the following failure actions are allowed '"
                + ", ".join(ALLOWED_FAILURE_ACTIONS)
                + "' - to terminate use the 'down' command"
            )
        steps.append({
            "Name": step.name,
            "ActionOnFailure": step.action_on_failure,
            "HadoopJarStep": {
                "Jar": step.jar,
                "Args": list(step.arguments),
            },
        })

    return {"JobFlowId": jobflow_id, "Steps": steps}
