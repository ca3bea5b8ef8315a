"""
AWS gateway. The orchestrators only ever talk to the ``Gateway`` protocol;
``AwsGateway`` is the boto3-backed implementation.

Every boto3 error is classified into the error taxonomy in ``errors.py``.
Throttling and other transient failures are retried here, by RetryPolicy, and
nowhere else. botocore's own retries are switched off so there is exactly one
retry owner.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from jenkins_ebs_backup.errors import ConflictError, GatewayError, NotFoundError, TransientError, classify
from jenkins_ebs_backup.models import (
    BACKUP_TAG_VALUE,
    InstanceDescriptor,
    ProvisionedInstance,
    ProvisionedVolume,
    SnapshotDescriptor,
    StackDescriptor,
)

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_NAME = "amzn2-ami-hvm-*-x86_64-gp2"
DEFAULT_IMAGE_OWNER = "amazon"
DEFAULT_CAPABILITIES = ("CAPABILITY_NAMED_IAM",)

# Same defaults as `aws ec2 wait`: 15 seconds between polls, 40 polls.
DEFAULT_WAITER_DELAY = 15
DEFAULT_WAITER_MAX_ATTEMPTS = 40

# CloudFormation reports an empty changeset on update_stack as a ValidationError
# with this message and no dedicated error code.
NO_UPDATES_MESSAGE = "No updates are to be performed"


@runtime_checkable
class Gateway(Protocol):
    """Everything the orchestrators need from AWS."""

    def caller_identity(self) -> dict: ...

    def check_region(self, region: str) -> None: ...

    def describe_instance(self, instance_id: str) -> InstanceDescriptor: ...

    def find_instances(self, name_fragment: str = "jenkins") -> List[InstanceDescriptor]: ...

    def volume_sizes(self, volume_ids) -> List[int]: ...

    def describe_snapshot(self, snapshot_id: str) -> SnapshotDescriptor: ...

    def list_snapshots(self, purpose: str = BACKUP_TAG_VALUE, instance_id: Optional[str] = None,
                       started_after: Optional[datetime] = None) -> List[SnapshotDescriptor]: ...

    def describe_subnet_zone(self, subnet_id: str) -> str: ...

    def latest_image(self, name_pattern: str = DEFAULT_IMAGE_NAME, owner: str = DEFAULT_IMAGE_OWNER) -> str: ...

    def list_key_pairs(self) -> List[str]: ...

    def create_volume(self, snapshot_id: str, availability_zone: str, tags: dict) -> ProvisionedVolume: ...

    def wait_volume_available(self, volume_id: str) -> None: ...

    def run_instance(self, image_id: str, instance_type: str, key_name: str, security_group_id: str,
                     subnet_id: str, tags: dict) -> ProvisionedInstance: ...

    def wait_instance_running(self, instance_id: str) -> None: ...

    def attach_volume(self, volume_id: str, instance_id: str, device: str) -> str: ...

    def wait_volume_in_use(self, volume_id: str) -> None: ...

    def validate_template(self, template_body: str) -> dict: ...

    def deploy_stack(self, stack_name: str, template_body: str, parameters: list,
                     capabilities=DEFAULT_CAPABILITIES) -> str: ...

    def describe_stack(self, stack_name: str) -> StackDescriptor: ...

    def delete_stack(self, stack_name: str) -> None: ...

    def invoke_function(self, function_name: str, payload: Optional[dict] = None) -> dict: ...


class RetryPolicy:
    """
    Bounded exponential backoff for TransientError only. Every other error
    class is raised on the first attempt.
    """

    def __init__(self, max_attempts=4, base_delay=1.0, max_delay=16.0, sleep=time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    def delay_for(self, attempt):
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def call(self, operation, fn, *args, **kwargs):
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except (ClientError, BotoCoreError) as exc:
                error = classify(exc, operation)
                if not isinstance(error, TransientError) or attempt >= self.max_attempts:
                    raise error from exc
                delay = self.delay_for(attempt)
                logger.warning("%s failed with %s (attempt %d/%d), retrying in %.1fs",
                               operation, error.code, attempt, self.max_attempts, delay)
                self.sleep(delay)
                attempt += 1


def _tag_list(tags):
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def _tag_value(resource, key):
    for tag in resource.get("Tags") or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def _snapshot_descriptor(raw):
    return SnapshotDescriptor(
        id=raw["SnapshotId"],
        state=raw.get("State", "unknown"),
        size_gib=raw.get("VolumeSize", 0),
        encrypted=bool(raw.get("Encrypted", False)),
        description=raw.get("Description", ""),
        start_time=raw.get("StartTime"),
        volume_id=raw.get("VolumeId"),
        name=_tag_value(raw, "Name"),
    )


def _instance_descriptor(raw):
    volume_ids = tuple(
        mapping["Ebs"]["VolumeId"]
        for mapping in raw.get("BlockDeviceMappings", [])
        if "Ebs" in mapping and "VolumeId" in mapping["Ebs"]
    )
    return InstanceDescriptor(
        id=raw["InstanceId"],
        state=raw.get("State", {}).get("Name", "unknown"),
        instance_type=raw.get("InstanceType", ""),
        name=_tag_value(raw, "Name"),
        platform=raw.get("Platform"),
        public_ip=raw.get("PublicIpAddress"),
        private_ip=raw.get("PrivateIpAddress"),
        public_dns=raw.get("PublicDnsName") or None,
        volume_ids=volume_ids,
    )


def _stack_descriptor(raw):
    outputs = {output["OutputKey"]: output.get("OutputValue", "") for output in raw.get("Outputs", [])}
    return StackDescriptor(
        name=raw["StackName"],
        status=raw["StackStatus"],
        status_reason=raw.get("StackStatusReason"),
        outputs=outputs,
    )


class AwsGateway:
    """
    boto3 implementation of the Gateway protocol.

    Args:
        region (str): AWS region every client is bound to.
        session (boto3.session.Session): Optional session, e.g. for a named profile.
        retry_policy (RetryPolicy): Retry policy for transient errors.
        waiter_delay (int): Seconds between waiter polls.
        waiter_max_attempts (int): Waiter polls before giving up.
        clients (dict): Pre-built clients keyed by service name ("ec2",
            "cloudformation", "lambda", "sts"). Tests hand in stubbed clients here.
    """

    def __init__(self, region, session=None, retry_policy=None, waiter_delay=DEFAULT_WAITER_DELAY,
                 waiter_max_attempts=DEFAULT_WAITER_MAX_ATTEMPTS, clients=None):
        self.region = region
        self.retry_policy = retry_policy or RetryPolicy()
        self.waiter_config = {"Delay": waiter_delay, "MaxAttempts": waiter_max_attempts}
        clients = dict(clients or {})
        session = session or boto3.session.Session(region_name=region)
        config = Config(region_name=region, retries={"total_max_attempts": 1})
        for service in ("ec2", "cloudformation", "lambda", "sts"):
            if service not in clients:
                clients[service] = session.client(service, config=config)
        self.ec2 = clients["ec2"]
        self.cloudformation = clients["cloudformation"]
        self.lambda_client = clients["lambda"]
        self.sts = clients["sts"]

    def _call(self, operation, fn, *args, **kwargs):
        return self.retry_policy.call(operation, fn, *args, **kwargs)

    def _wait(self, operation, waiter_name, **kwargs):
        waiter = self.ec2.get_waiter(waiter_name)
        logger.debug("Waiting on %s (%s)", waiter_name, kwargs)
        self._call(operation, waiter.wait, WaiterConfig=self.waiter_config, **kwargs)

    # Account and region

    def caller_identity(self):
        response = self._call("caller_identity", self.sts.get_caller_identity)
        return {"Account": response.get("Account"), "Arn": response.get("Arn")}

    def check_region(self, region):
        response = self._call("check_region", self.ec2.describe_regions, RegionNames=[region])
        if not response.get("Regions"):
            raise NotFoundError(f"Region {region} is not available to this account",
                                code="RegionNotFound", operation="check_region")

    # Instances

    def describe_instance(self, instance_id):
        response = self._call("describe_instance", self.ec2.describe_instances, InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return _instance_descriptor(instance)
        raise NotFoundError(f"Instance {instance_id} not found", code="InvalidInstanceID.NotFound",
                            operation="describe_instance")

    def find_instances(self, name_fragment="jenkins"):
        """Running or stopped Linux instances whose Name tag contains name_fragment (any case)."""
        paginator = self.ec2.get_paginator("describe_instances")
        pages = self._call("find_instances", lambda: list(paginator.paginate(
            Filters=[{"Name": "instance-state-name", "Values": ["running", "stopped"]}]
        )))
        needle = name_fragment.lower()
        found = []
        for page in pages:
            for reservation in page.get("Reservations", []):
                for raw in reservation.get("Instances", []):
                    instance = _instance_descriptor(raw)
                    if instance.platform == "windows":
                        continue
                    if instance.name and needle in instance.name.lower():
                        found.append(instance)
        return found

    def volume_sizes(self, volume_ids):
        if not volume_ids:
            return []
        response = self._call("volume_sizes", self.ec2.describe_volumes, VolumeIds=list(volume_ids))
        return [volume.get("Size", 0) for volume in response.get("Volumes", [])]

    # Snapshots, subnets, images, key pairs

    def describe_snapshot(self, snapshot_id):
        response = self._call("describe_snapshot", self.ec2.describe_snapshots, SnapshotIds=[snapshot_id])
        snapshots = response.get("Snapshots", [])
        if not snapshots:
            raise NotFoundError(f"Snapshot {snapshot_id} not found", code="InvalidSnapshot.NotFound",
                                operation="describe_snapshot")
        return _snapshot_descriptor(snapshots[0])

    def list_snapshots(self, purpose=BACKUP_TAG_VALUE, instance_id=None, started_after=None):
        """
        Snapshots we own tagged Purpose=<purpose>, newest first.

        Args:
            purpose (str): Value of the Purpose tag to filter on.
            instance_id (str): Only snapshots tagged InstanceId=<instance_id>.
            started_after (datetime): Only snapshots started at or after this time.

        Returns:
            list[SnapshotDescriptor]
        """
        filters = [{"Name": "tag:Purpose", "Values": [purpose]}]
        if instance_id:
            filters.append({"Name": "tag:InstanceId", "Values": [instance_id]})
        paginator = self.ec2.get_paginator("describe_snapshots")
        pages = self._call("list_snapshots", lambda: list(paginator.paginate(OwnerIds=["self"], Filters=filters)))
        snapshots = [_snapshot_descriptor(raw) for page in pages for raw in page.get("Snapshots", [])]
        if started_after is not None:
            snapshots = [s for s in snapshots if s.start_time and s.start_time >= started_after]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(snapshots, key=lambda s: s.start_time or oldest, reverse=True)

    def describe_subnet_zone(self, subnet_id):
        response = self._call("describe_subnet_zone", self.ec2.describe_subnets, SubnetIds=[subnet_id])
        subnets = response.get("Subnets", [])
        if not subnets:
            raise NotFoundError(f"Subnet {subnet_id} not found", code="InvalidSubnetID.NotFound",
                                operation="describe_subnet_zone")
        return subnets[0]["AvailabilityZone"]

    def latest_image(self, name_pattern=DEFAULT_IMAGE_NAME, owner=DEFAULT_IMAGE_OWNER):
        """Newest available image matching name_pattern. Sorted by CreationDate, last one wins."""
        response = self._call("latest_image", self.ec2.describe_images, Owners=[owner], Filters=[
            {"Name": "name", "Values": [name_pattern]},
            {"Name": "state", "Values": ["available"]},
        ])
        images = sorted(response.get("Images", []), key=lambda image: image.get("CreationDate", ""))
        if not images:
            raise NotFoundError(f"No available image matches {name_pattern} (owner {owner})",
                                code="InvalidAMIID.NotFound", operation="latest_image")
        return images[-1]["ImageId"]

    def list_key_pairs(self):
        response = self._call("list_key_pairs", self.ec2.describe_key_pairs)
        return [pair["KeyName"] for pair in response.get("KeyPairs", [])]

    # Volumes and instances

    def create_volume(self, snapshot_id, availability_zone, tags):
        # One token per logical create; retries reuse it
        token = str(uuid.uuid4())
        response = self._call(
            "create_volume", self.ec2.create_volume,
            SnapshotId=snapshot_id,
            AvailabilityZone=availability_zone,
            ClientToken=token,
            TagSpecifications=[{"ResourceType": "volume", "Tags": _tag_list(tags)}],
        )
        return ProvisionedVolume(
            volume_id=response["VolumeId"],
            availability_zone=response.get("AvailabilityZone", availability_zone),
            state=response.get("State", "creating"),
        )

    def wait_volume_available(self, volume_id):
        self._wait("wait_volume_available", "volume_available", VolumeIds=[volume_id])

    def run_instance(self, image_id, instance_type, key_name, security_group_id, subnet_id, tags):
        token = str(uuid.uuid4())
        response = self._call(
            "run_instance", self.ec2.run_instances,
            ImageId=image_id,
            InstanceType=instance_type,
            KeyName=key_name,
            SecurityGroupIds=[security_group_id],
            SubnetId=subnet_id,
            MinCount=1,
            MaxCount=1,
            ClientToken=token,
            TagSpecifications=[{"ResourceType": "instance", "Tags": _tag_list(tags)}],
        )
        raw = response["Instances"][0]
        return ProvisionedInstance(
            instance_id=raw["InstanceId"],
            state=raw.get("State", {}).get("Name", "pending"),
            public_ip=raw.get("PublicIpAddress"),
            private_ip=raw.get("PrivateIpAddress"),
            public_dns=raw.get("PublicDnsName") or None,
        )

    def wait_instance_running(self, instance_id):
        self._wait("wait_instance_running", "instance_running", InstanceIds=[instance_id])

    def attach_volume(self, volume_id, instance_id, device):
        response = self._call("attach_volume", self.ec2.attach_volume,
                              VolumeId=volume_id, InstanceId=instance_id, Device=device)
        return response.get("State", "attaching")

    def wait_volume_in_use(self, volume_id):
        self._wait("wait_volume_in_use", "volume_in_use", VolumeIds=[volume_id])

    # CloudFormation

    def validate_template(self, template_body):
        return self._call("validate_template", self.cloudformation.validate_template, TemplateBody=template_body)

    def describe_stack(self, stack_name):
        try:
            response = self._call("describe_stack", self.cloudformation.describe_stacks, StackName=stack_name)
        except GatewayError as exc:
            # describe_stacks answers a missing stack with a plain ValidationError code
            if exc.code == "ValidationError":
                raise NotFoundError(f"Stack {stack_name} does not exist", code=exc.code,
                                    operation="describe_stack") from exc
            raise
        stacks = response.get("Stacks", [])
        if not stacks:
            raise NotFoundError(f"Stack {stack_name} does not exist", operation="describe_stack")
        return _stack_descriptor(stacks[0])

    def deploy_stack(self, stack_name, template_body, parameters, capabilities=DEFAULT_CAPABILITIES):
        """
        Create the stack if it does not exist, update it otherwise.

        Returns:
            str: "CREATE", "UPDATE", or "NOOP" when the update carries no changes.
        """
        try:
            existing = self.describe_stack(stack_name)
        except NotFoundError:
            existing = None

        request = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Parameters": parameters,
            "Capabilities": list(capabilities),
        }
        if existing is None:
            self._call("deploy_stack", self.cloudformation.create_stack, **request)
            return "CREATE"

        if existing.status == "ROLLBACK_COMPLETE":
            raise ConflictError(
                f"Stack {stack_name} is in ROLLBACK_COMPLETE and must be deleted before it can be deployed again",
                code=existing.status, operation="deploy_stack",
            )
        if existing.status.endswith("_IN_PROGRESS"):
            raise ConflictError(f"Stack {stack_name} is busy ({existing.status})",
                                code=existing.status, operation="deploy_stack")
        try:
            self._call("deploy_stack", self.cloudformation.update_stack, **request)
        except GatewayError as exc:
            if exc.code == "ValidationError" and NO_UPDATES_MESSAGE in str(exc):
                return "NOOP"
            raise
        return "UPDATE"

    def delete_stack(self, stack_name):
        self._call("delete_stack", self.cloudformation.delete_stack, StackName=stack_name)

    # Lambda

    def invoke_function(self, function_name, payload=None):
        """
        Synchronously invoke a Lambda function.

        Returns:
            dict: status_code, function_error and the decoded payload (parsed
            JSON when the function returned JSON, raw text otherwise).
        """
        response = self._call(
            "invoke_function", self.lambda_client.invoke,
            FunctionName=function_name,
            InvocationType="RequestResponse",
            Payload=json.dumps(payload or {}).encode("utf-8"),
        )
        body = response["Payload"].read().decode("utf-8") if response.get("Payload") else ""
        try:
            decoded = json.loads(body) if body else None
        except ValueError:
            decoded = body
        return {
            "status_code": response.get("StatusCode"),
            "function_error": response.get("FunctionError"),
            "payload": decoded,
        }
