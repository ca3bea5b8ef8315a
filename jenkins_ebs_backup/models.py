"""
Value objects passed between the CLI, the orchestrators and the gateway.

Everything here is immutable. Requests are built through their ``build``
classmethods so validation always runs before an orchestrator sees them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from jenkins_ebs_backup import validators

BACKUP_TAG_VALUE = "Jenkins-Backup"
RECOVERY_TAG_VALUE = "Jenkins-Recovery"
RECOVERY_NAME = "jenkins-recovery"


class RecoveryState(Enum):
    VALIDATING = "Validating"
    VOLUME_CREATING = "VolumeCreating"
    VOLUME_AVAILABLE = "VolumeAvailable"
    INSTANCE_LAUNCHING = "InstanceLaunching"
    INSTANCE_RUNNING = "InstanceRunning"
    ATTACHING = "Attaching"
    ATTACHED = "Attached"
    DONE = "Done"


class DeployStage(Enum):
    VALIDATING = "Validating"
    DEPLOYING = "Deploying"
    POLLING = "Polling"
    VERIFYING = "Verifying"
    TESTING = "Testing"
    DELETING = "Deleting"


class DeployMode(Enum):
    CREATE_OR_UPDATE = "create-or-update"
    DELETE = "delete"


@dataclass(frozen=True)
class RecoveryRequest:
    snapshot_id: str
    region: str
    instance_type: str
    key_name: str
    security_group_id: str
    subnet_id: str
    dry_run: bool = False

    @classmethod
    def build(cls, snapshot_id, region, instance_type, key_name, security_group_id, subnet_id, dry_run=False):
        """Validate every field up front and return the request."""
        return cls(
            snapshot_id=validators.validate_snapshot_id(snapshot_id),
            region=validators.validate_region(region),
            instance_type=validators.validate_instance_type(instance_type),
            key_name=validators.validate_key_name(key_name),
            security_group_id=validators.validate_security_group_id(security_group_id),
            subnet_id=validators.validate_subnet_id(subnet_id),
            dry_run=bool(dry_run),
        )


@dataclass(frozen=True)
class SnapshotDescriptor:
    id: str
    state: str
    size_gib: int
    encrypted: bool
    description: str = ""
    start_time: Optional[datetime] = None
    volume_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_completed(self):
        return self.state == "completed"


@dataclass(frozen=True)
class InstanceDescriptor:
    id: str
    state: str
    instance_type: str = ""
    name: Optional[str] = None
    platform: Optional[str] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    public_dns: Optional[str] = None
    volume_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvisionedVolume:
    volume_id: str
    availability_zone: str
    state: str = "creating"
    synthetic: bool = False


@dataclass(frozen=True)
class ProvisionedInstance:
    instance_id: str
    state: str = "pending"
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    public_dns: Optional[str] = None
    synthetic: bool = False


@dataclass(frozen=True)
class FollowUpStep:
    title: str
    commands: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RecoveryResult:
    snapshot_id: str
    region: str
    availability_zone: str
    image_id: str
    volume_id: str
    instance_id: str
    device_name: str
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    public_dns: Optional[str] = None
    synthetic: bool = False
    state: RecoveryState = RecoveryState.DONE
    follow_up_steps: Tuple[FollowUpStep, ...] = ()


@dataclass(frozen=True)
class StackConfig:
    stack_name: str
    region: str
    jenkins_instance_id: str
    retention_days: int
    backup_time_utc: str
    notification_email: Optional[str] = None

    @classmethod
    def build(cls, stack_name, region, jenkins_instance_id, retention_days=None,
              backup_time_utc=None, notification_email=None):
        """
        Validate and normalize a stack configuration. A malformed notification
        email is dropped (notifications disabled) rather than rejected.
        """
        return cls(
            stack_name=validators.validate_stack_name(stack_name),
            region=validators.validate_region(region),
            jenkins_instance_id=validators.validate_instance_id(jenkins_instance_id),
            retention_days=validators.validate_retention_days(retention_days).days,
            backup_time_utc=validators.validate_backup_time(backup_time_utc),
            notification_email=validators.normalize_email(notification_email),
        )

    @property
    def notifications_enabled(self):
        return self.notification_email is not None

    def parameters(self):
        """CloudFormation parameter list for create_stack/update_stack."""
        params = [
            {"ParameterKey": "JenkinsInstanceId", "ParameterValue": self.jenkins_instance_id},
            {"ParameterKey": "RetentionDays", "ParameterValue": str(self.retention_days)},
            {"ParameterKey": "BackupTime", "ParameterValue": self.backup_time_utc},
        ]
        if self.notification_email:
            params.append({"ParameterKey": "NotificationEmail", "ParameterValue": self.notification_email})
        return params


@dataclass(frozen=True)
class StackDescriptor:
    name: str
    status: str
    status_reason: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeploymentResult:
    stack_name: str
    mode: DeployMode
    status: str
    succeeded: bool
    action: str = "NONE"
    status_reason: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    dry_run: bool = False
    duration_seconds: float = 0.0
    remediation: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StackVerification:
    outputs: Dict[str, str]
    function_name: Optional[str] = None
    rule_name: Optional[str] = None

    @property
    def complete(self):
        return bool(self.function_name and self.rule_name)


@dataclass(frozen=True)
class BackupTestResult:
    function_name: str
    status_code: Optional[int]
    function_error: Optional[str]
    payload: object
    duration_seconds: float
    recent_snapshots: Tuple[SnapshotDescriptor, ...] = ()

    @property
    def succeeded(self):
        if self.function_error:
            return False
        if isinstance(self.payload, dict) and "statusCode" in self.payload:
            return self.payload["statusCode"] == 200
        return self.status_code == 200
