"""
Rebuilds a Jenkins server from one of its EBS backup snapshots.

The flow is strictly sequential: validate the snapshot, create a volume from
it in the target subnet's zone, launch a fresh instance, attach the volume and
hand the operator the remaining manual steps. Nothing is deleted on failure:
created volumes and instances are left in place and reported.
"""

import logging

from jenkins_ebs_backup import runbook
from jenkins_ebs_backup.errors import GatewayError, RecoveryFailed, SnapshotNotReadyError
from jenkins_ebs_backup.gateway import DEFAULT_IMAGE_NAME, DEFAULT_IMAGE_OWNER
from jenkins_ebs_backup.models import (
    RECOVERY_NAME,
    RECOVERY_TAG_VALUE,
    ProvisionedInstance,
    ProvisionedVolume,
    RecoveryResult,
    RecoveryState,
)

logger = logging.getLogger(__name__)

DEFAULT_DEVICE = "/dev/sdf"
DEFAULT_INSTANCE_TYPE = "t3.medium"
SYNTHETIC_VOLUME_ID = "vol-DRYRUN-PLACEHOLDER"
SYNTHETIC_INSTANCE_ID = "i-DRYRUN-PLACEHOLDER"


class RecoveryOrchestrator:
    """
    Drives one recovery attempt through its states. An instance is good for a
    single ``recover`` call; ``state``, ``history``, ``volume`` and ``instance``
    describe how far it got.

    Args:
        gateway: Anything implementing the Gateway protocol.
        device_name (str): Secondary device the recovered volume is attached at.
        image_name (str): Name pattern of the base image for the new instance.
        image_owner (str): Owner of the base image.
    """

    def __init__(self, gateway, device_name=DEFAULT_DEVICE, image_name=DEFAULT_IMAGE_NAME,
                 image_owner=DEFAULT_IMAGE_OWNER):
        self.gateway = gateway
        self.device_name = device_name
        self.image_name = image_name
        self.image_owner = image_owner
        self.state = RecoveryState.VALIDATING
        self.history = [RecoveryState.VALIDATING]
        self.snapshot = None
        self.volume = None
        self.instance = None
        self._request = None

    def _enter(self, state):
        self.state = state
        self.history.append(state)
        logger.info("Recovery state: %s", state.value)

    def _fail(self, cause):
        request = self._request
        volume_id = self.volume.volume_id if self.volume and not self.volume.synthetic else None
        instance_id = self.instance.instance_id if self.instance and not self.instance.synthetic else None
        remediation = runbook.recovery_remediation(
            self.state, cause, request.region, request.snapshot_id, volume_id, instance_id,
        )
        logger.error("Recovery failed at %s: %s: %s", self.state.value, type(cause).__name__, cause)
        return RecoveryFailed(self.state, cause, volume=self.volume, instance=self.instance,
                              remediation=remediation)

    def created_resources(self):
        """Real (non-synthetic) resources created so far, as (kind, id) pairs."""
        created = []
        if self.volume and not self.volume.synthetic:
            created.append(("volume", self.volume.volume_id))
        if self.instance and not self.instance.synthetic:
            created.append(("instance", self.instance.instance_id))
        return created

    def recover(self, request):
        """
        Run the whole recovery for a validated RecoveryRequest.

        Returns:
            RecoveryResult: Addresses, ids and the operator's follow-up steps.

        Raises:
            RecoveryFailed: With the stage that failed and the underlying cause.
        """
        if self._request is not None:
            raise RuntimeError("RecoveryOrchestrator instances are single use")
        self._request = request
        try:
            zone, image_id = self._validate(request)
            self._create_volume(request, zone)
            self._launch_instance(request, image_id)
            self._attach(request)
        except (GatewayError, SnapshotNotReadyError) as exc:
            raise self._fail(exc) from exc

        self._enter(RecoveryState.DONE)
        return self._result(request, zone, image_id)

    def _validate(self, request):
        logger.info("Validating snapshot %s", request.snapshot_id)
        snapshot = self.gateway.describe_snapshot(request.snapshot_id)
        if not snapshot.is_completed:
            # A snapshot that is still copying or broken cannot be restored
            raise SnapshotNotReadyError(snapshot.id, snapshot.state)
        self.snapshot = snapshot
        logger.info("Snapshot %s: %s GiB, encrypted=%s", snapshot.id, snapshot.size_gib, snapshot.encrypted)

        # The volume has to live in the same zone as the instance it is attached to
        zone = self.gateway.describe_subnet_zone(request.subnet_id)
        logger.info("Target availability zone: %s", zone)

        image_id = self.gateway.latest_image(self.image_name, self.image_owner)
        logger.info("Using AMI: %s", image_id)
        return zone, image_id

    def _tags(self, request):
        return {
            "Name": RECOVERY_NAME,
            "Purpose": RECOVERY_TAG_VALUE,
            "SourceSnapshot": request.snapshot_id,
        }

    def _create_volume(self, request, zone):
        self._enter(RecoveryState.VOLUME_CREATING)
        if request.dry_run:
            logger.info("[DRY RUN] Would create volume from snapshot %s in %s", request.snapshot_id, zone)
            self.volume = ProvisionedVolume(SYNTHETIC_VOLUME_ID, zone, "available", synthetic=True)
            self._enter(RecoveryState.VOLUME_AVAILABLE)
            return

        self.volume = self.gateway.create_volume(request.snapshot_id, zone, self._tags(request))
        logger.info("Volume created: %s", self.volume.volume_id)

        self._enter(RecoveryState.VOLUME_AVAILABLE)
        self.gateway.wait_volume_available(self.volume.volume_id)
        self.volume = ProvisionedVolume(self.volume.volume_id, self.volume.availability_zone, "available")
        logger.info("Volume is ready: %s", self.volume.volume_id)

    def _launch_instance(self, request, image_id):
        self._enter(RecoveryState.INSTANCE_LAUNCHING)
        if request.dry_run:
            logger.info("[DRY RUN] Would launch %s from %s in %s", request.instance_type, image_id, request.subnet_id)
            self.instance = ProvisionedInstance(SYNTHETIC_INSTANCE_ID, "running", synthetic=True)
            self._enter(RecoveryState.INSTANCE_RUNNING)
            return

        self.instance = self.gateway.run_instance(
            image_id, request.instance_type, request.key_name,
            request.security_group_id, request.subnet_id, self._tags(request),
        )
        logger.info("Instance launched: %s", self.instance.instance_id)

        self._enter(RecoveryState.INSTANCE_RUNNING)
        self.gateway.wait_instance_running(self.instance.instance_id)
        # Public addresses are only assigned once the instance is running
        described = self.gateway.describe_instance(self.instance.instance_id)
        self.instance = ProvisionedInstance(
            instance_id=described.id,
            state=described.state,
            public_ip=described.public_ip,
            private_ip=described.private_ip,
            public_dns=described.public_dns,
        )
        logger.info("Instance is running: %s", self.instance.instance_id)

    def _attach(self, request):
        self._enter(RecoveryState.ATTACHING)
        if request.dry_run:
            logger.info("[DRY RUN] Would attach %s to %s at %s",
                        self.volume.volume_id, self.instance.instance_id, self.device_name)
            self._enter(RecoveryState.ATTACHED)
            return

        self.gateway.attach_volume(self.volume.volume_id, self.instance.instance_id, self.device_name)
        self._enter(RecoveryState.ATTACHED)
        self.gateway.wait_volume_in_use(self.volume.volume_id)
        self.volume = ProvisionedVolume(self.volume.volume_id, self.volume.availability_zone, "in-use")
        logger.info("Volume %s attached to %s", self.volume.volume_id, self.instance.instance_id)

    def _result(self, request, zone, image_id):
        instance = self.instance
        private = not instance.public_ip
        host = instance.public_ip or instance.private_ip or "<instance-address>"
        return RecoveryResult(
            snapshot_id=request.snapshot_id,
            region=request.region,
            availability_zone=zone,
            image_id=image_id,
            volume_id=self.volume.volume_id,
            instance_id=instance.instance_id,
            device_name=self.device_name,
            public_ip=instance.public_ip,
            private_ip=instance.private_ip,
            public_dns=instance.public_dns,
            synthetic=request.dry_run,
            state=self.state,
            follow_up_steps=runbook.recovery_follow_up_steps(
                request.key_name, host, self.device_name, private=private and bool(instance.private_ip),
            ),
        )


def recover(gateway, request, **options):
    """Convenience wrapper: one orchestrator, one recovery."""
    return RecoveryOrchestrator(gateway, **options).recover(request)
