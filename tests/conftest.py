from datetime import datetime, timezone

import pytest

from jenkins_ebs_backup.models import (
    InstanceDescriptor,
    ProvisionedInstance,
    ProvisionedVolume,
    SnapshotDescriptor,
    StackDescriptor,
)

SNAPSHOT_ID = "snap-0123456789abcdef0"
INSTANCE_ID = "i-0123456789abcdef0"
SECURITY_GROUP_ID = "sg-0123456789abcdef0"
SUBNET_ID = "subnet-0123456789abcdef0"
NEW_VOLUME_ID = "vol-0fedcba9876543210"
NEW_INSTANCE_ID = "i-0fedcba9876543210"
IMAGE_ID = "ami-0a1b2c3d4e5f60718"


class FakeGateway:
    """
    Scripted in-memory Gateway. Every call is recorded in ``calls``; an entry
    in ``failures`` makes that operation raise instead.
    """

    MUTATING = {
        "create_volume",
        "wait_volume_available",
        "run_instance",
        "wait_instance_running",
        "attach_volume",
        "wait_volume_in_use",
        "deploy_stack",
        "delete_stack",
        "invoke_function",
    }

    def __init__(self, snapshot_state="completed", stack_statuses=None, failures=None,
                 deploy_action="CREATE", stack_outputs=None, invoke_response=None, snapshots=None):
        self.calls = []
        self.failures = dict(failures or {})
        self.snapshot_state = snapshot_state
        self.stack_statuses = list(stack_statuses or ["CREATE_COMPLETE"])
        self.deploy_action = deploy_action
        self.stack_outputs = stack_outputs if stack_outputs is not None else {
            "LambdaFunctionName": "jenkins-snapshot-backup-fn",
            "ScheduleRuleName": "jenkins-snapshot-backup-schedule",
        }
        self.invoke_response = invoke_response or {
            "status_code": 200,
            "function_error": None,
            "payload": {"statusCode": 200, "body": "snapshots created"},
        }
        self.snapshots = snapshots if snapshots is not None else [
            SnapshotDescriptor(SNAPSHOT_ID, "completed", 30, True, "Jenkins backup",
                               datetime(2024, 5, 2, 2, 0, tzinfo=timezone.utc), name="jenkins-daily"),
        ]
        self.key_pairs = ["jenkins-key"]

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name):
        return any(call[0] == name for call in self.calls)

    @property
    def operations(self):
        return [call[0] for call in self.calls]

    @property
    def mutating_calls(self):
        return [name for name in self.operations if name in self.MUTATING]

    def caller_identity(self):
        self._record("caller_identity")
        return {"Account": "123456789012", "Arn": "arn:aws:iam::123456789012:user/ops"}

    def check_region(self, region):
        self._record("check_region", region)

    def describe_instance(self, instance_id):
        self._record("describe_instance", instance_id)
        return InstanceDescriptor(
            id=instance_id, state="running", instance_type="t3.medium", name="jenkins-master",
            public_ip="54.10.20.30", private_ip="10.0.1.15",
            public_dns="ec2-54-10-20-30.compute-1.amazonaws.com",
            volume_ids=("vol-0aaaaaaaaaaaaaaaa",),
        )

    def find_instances(self, name_fragment="jenkins"):
        self._record("find_instances", name_fragment)
        return [InstanceDescriptor(id=INSTANCE_ID, state="running", instance_type="t3.medium", name="jenkins-master")]

    def volume_sizes(self, volume_ids):
        self._record("volume_sizes", tuple(volume_ids))
        return [40 for _ in volume_ids]

    def describe_snapshot(self, snapshot_id):
        self._record("describe_snapshot", snapshot_id)
        return SnapshotDescriptor(snapshot_id, self.snapshot_state, 30, True, "Jenkins backup")

    def list_snapshots(self, purpose="Jenkins-Backup", instance_id=None, started_after=None):
        self._record("list_snapshots", purpose, instance_id, started_after)
        return list(self.snapshots)

    def describe_subnet_zone(self, subnet_id):
        self._record("describe_subnet_zone", subnet_id)
        return "us-east-1b"

    def latest_image(self, name_pattern="amzn2-ami-hvm-*-x86_64-gp2", owner="amazon"):
        self._record("latest_image", name_pattern, owner)
        return IMAGE_ID

    def list_key_pairs(self):
        self._record("list_key_pairs")
        return list(self.key_pairs)

    def create_volume(self, snapshot_id, availability_zone, tags):
        self._record("create_volume", snapshot_id, availability_zone, tags)
        return ProvisionedVolume(NEW_VOLUME_ID, availability_zone, "creating")

    def wait_volume_available(self, volume_id):
        self._record("wait_volume_available", volume_id)

    def run_instance(self, image_id, instance_type, key_name, security_group_id, subnet_id, tags):
        self._record("run_instance", image_id, instance_type, key_name, security_group_id, subnet_id, tags)
        return ProvisionedInstance(NEW_INSTANCE_ID, "pending", private_ip="10.0.1.99")

    def wait_instance_running(self, instance_id):
        self._record("wait_instance_running", instance_id)

    def attach_volume(self, volume_id, instance_id, device):
        self._record("attach_volume", volume_id, instance_id, device)
        return "attaching"

    def wait_volume_in_use(self, volume_id):
        self._record("wait_volume_in_use", volume_id)

    def validate_template(self, template_body):
        self._record("validate_template")
        return {"Parameters": []}

    def deploy_stack(self, stack_name, template_body, parameters, capabilities=("CAPABILITY_NAMED_IAM",)):
        self._record("deploy_stack", stack_name, parameters)
        return self.deploy_action

    def describe_stack(self, stack_name):
        self._record("describe_stack", stack_name)
        status = self.stack_statuses.pop(0) if len(self.stack_statuses) > 1 else self.stack_statuses[0]
        if isinstance(status, Exception):
            raise status
        return StackDescriptor(stack_name, status, outputs=dict(self.stack_outputs))

    def delete_stack(self, stack_name):
        self._record("delete_stack", stack_name)

    def invoke_function(self, function_name, payload=None):
        self._record("invoke_function", function_name, payload)
        return dict(self.invoke_response)


@pytest.fixture
def gateway():
    return FakeGateway()
