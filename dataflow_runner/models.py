"""Pydantic models for cluster and playbook configuration records."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    """Base for all records: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Credentials(Record):
    access_key_id: str = Field(..., alias="accessKeyId")
    secret_access_key: str = Field(..., alias="secretAccessKey")


# ─────────────────────────────────────────────────────────────────────────────
# CLUSTER
# ─────────────────────────────────────────────────────────────────────────────

class Roles(Record):
    jobflow: str = Field(..., description="EC2 instance profile role")
    service: str = Field(..., description="EMR service role")


class ClassicLocation(Record):
    availability_zone: str = Field(..., alias="availabilityZone")


class VpcLocation(Record):
    subnet_id: str = Field(..., alias="subnetId")


class Location(Record):
    """Either a classic availability zone or a VPC subnet, never both."""

    classic: Optional[ClassicLocation] = None
    vpc: Optional[VpcLocation] = None


class VolumeSpecification(Record):
    iops: int = 0
    size_in_gb: int = Field(..., alias="sizeInGB")
    volume_type: str = Field(..., alias="volumeType")


class EbsBlockDeviceConfig(Record):
    volumes_per_instance: int = Field(1, alias="volumesPerInstance")
    volume_specification: VolumeSpecification = Field(..., alias="volumeSpecification")


class EbsConfiguration(Record):
    ebs_optimized: bool = Field(False, alias="ebsOptimized")
    ebs_block_device_configs: List[EbsBlockDeviceConfig] = Field(
        default_factory=list, alias="ebsBlockDeviceConfigs"
    )


class MasterInstance(Record):
    type: str
    ebs_configuration: Optional[EbsConfiguration] = Field(None, alias="ebsConfiguration")


class WorkerInstance(Record):
    type: str
    count: int = 0
    bid: str = ""
    ebs_configuration: Optional[EbsConfiguration] = Field(None, alias="ebsConfiguration")


class Instances(Record):
    master: MasterInstance
    core: WorkerInstance
    task: WorkerInstance


class Ec2(Record):
    ami_version: str = Field(..., alias="amiVersion")
    key_name: str = Field(..., alias="keyName")
    location: Location
    instances: Instances


class Tag(Record):
    key: str
    value: str


class ScriptBootstrapAction(Record):
    path: str
    args: List[str] = Field(default_factory=list)


class BootstrapActionConfig(Record):
    name: str
    script_bootstrap_action: ScriptBootstrapAction = Field(..., alias="scriptBootstrapAction")


class Configuration(Record):
    classification: str
    properties: Dict[str, str] = Field(default_factory=dict)


class ClusterConfig(Record):
    """Declarative description of an EMR cluster to launch."""

    name: str
    log_uri: str = Field(..., alias="logUri")
    region: str
    credentials: Credentials
    roles: Roles
    ec2: Ec2
    tags: List[Tag] = Field(default_factory=list)
    bootstrap_action_configs: List[BootstrapActionConfig] = Field(
        default_factory=list, alias="bootstrapActionConfigs"
    )
    configurations: List[Configuration] = Field(default_factory=list)
    applications: List[str] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# PLAYBOOK
# ─────────────────────────────────────────────────────────────────────────────

class Step(Record):
    type: str = "CUSTOM_JAR"
    name: str
    action_on_failure: str = Field(..., alias="actionOnFailure")
    jar: str
    arguments: List[str] = Field(default_factory=list)


class PlaybookConfig(Record):
    """Declarative description of a batch of steps to run on an existing cluster."""

    region: str
    credentials: Credentials
    steps: List[Step] = Field(default_factory=list)
