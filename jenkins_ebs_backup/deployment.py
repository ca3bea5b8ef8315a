"""
Deploys, verifies, smoke-tests and tears down the snapshot backup stack.

The stack itself (Lambda, EventBridge rule, IAM role, SNS topic, dashboard)
comes from a CloudFormation template; this module only drives its lifecycle.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum

from jenkins_ebs_backup import runbook
from jenkins_ebs_backup.errors import DeploymentFailed, GatewayError, NotFoundError, WaitTimeoutError
from jenkins_ebs_backup.models import (
    BACKUP_TAG_VALUE,
    BackupTestResult,
    DeploymentResult,
    DeployMode,
    DeployStage,
    StackVerification,
)

logger = logging.getLogger(__name__)

FUNCTION_OUTPUT = "LambdaFunctionName"
SCHEDULE_OUTPUT = "ScheduleRuleName"

FAILED_COMPLETE_STATUSES = {
    "ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_COMPLETE",
}

# Snapshot pricing used for the estimate: $0.05 per GB-month, and incremental
# snapshots average about a quarter of the source volume.
SNAPSHOT_PRICE_PER_GB_MONTH = 0.05
SNAPSHOT_EFFICIENCY = 0.25
DEFAULT_VOLUME_GIB = 20
RETENTION_COST_PER_DAY = 0.15


class StackOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IN_PROGRESS = "in-progress"


def classify_stack_status(status, mode=DeployMode.CREATE_OR_UPDATE):
    """
    Sort a raw CloudFormation status into succeeded, failed or still running.

    Rollbacks end in *_COMPLETE too, so they are checked before the generic
    success rule.
    """
    if status.endswith("_IN_PROGRESS"):
        return StackOutcome.IN_PROGRESS
    if status in FAILED_COMPLETE_STATUSES or status.endswith("_FAILED"):
        return StackOutcome.FAILED
    if mode is DeployMode.DELETE:
        return StackOutcome.SUCCEEDED if status == "DELETE_COMPLETE" else StackOutcome.FAILED
    if status == "DELETE_COMPLETE":
        return StackOutcome.FAILED
    if status.endswith("_COMPLETE"):
        return StackOutcome.SUCCEEDED
    return StackOutcome.FAILED


def estimate_monthly_cost(volume_sizes, retention_days):
    """
    Rough monthly snapshot storage cost in dollars.

    Args:
        volume_sizes (list[int]): Sizes in GiB of the volumes being backed up.
        retention_days (int): How long snapshots are kept.

    Returns:
        float: Estimated cost, rounded to cents.
    """
    total = sum(volume_sizes) or DEFAULT_VOLUME_GIB
    monthly = total * SNAPSHOT_EFFICIENCY * SNAPSHOT_PRICE_PER_GB_MONTH
    if retention_days > 7:
        monthly = monthly * (retention_days / 7) * 0.7
    return round(monthly, 2)


def retention_cost_warning(retention_days):
    """Extra monthly cost quoted to the operator when retention runs past 30 days."""
    return round(retention_days * RETENTION_COST_PER_DAY, 2)


class DeploymentOrchestrator:
    """
    Args:
        gateway: Anything implementing the Gateway protocol.
        poll_interval (float): Seconds between describe_stack polls.
        max_polls (int): Poll budget before giving up with a timeout.
        sleep (callable): Injected for tests.
        clock (callable): Returns the current UTC datetime; injected for tests.
    """

    def __init__(self, gateway, poll_interval=10, max_polls=120, sleep=time.sleep, clock=None):
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.sleep = sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self, config, mode, template_body=None, dry_run=False):
        if mode is DeployMode.DELETE:
            return self.teardown(config.stack_name, config.region, dry_run=dry_run)
        return self.deploy(config, template_body, dry_run=dry_run)

    def deploy(self, config, template_body, dry_run=False):
        """
        Create or update the stack described by a validated StackConfig and wait for it to settle.

        Returns:
            DeploymentResult: succeeded=False with the raw status when the stack rolled back.

        Raises:
            DeploymentFailed: When an AWS call fails or the poll budget runs out.
        """
        if dry_run:
            logger.info("DRY RUN: Would deploy stack '%s' with %s", config.stack_name, config.parameters())
            return DeploymentResult(config.stack_name, DeployMode.CREATE_OR_UPDATE, "DRY_RUN",
                                    succeeded=True, dry_run=True)

        if not template_body:
            raise DeploymentFailed(DeployStage.VALIDATING, ValueError("Template body is empty"))

        started = time.monotonic()
        logger.info("Deploying stack %s in %s", config.stack_name, config.region)
        try:
            action = self.gateway.deploy_stack(config.stack_name, template_body, config.parameters())
        except GatewayError as exc:
            raise self._failure(DeployStage.DEPLOYING, exc, config) from exc
        logger.info("Stack %s: %s requested", config.stack_name, action)

        try:
            stack = self._poll(config.stack_name, DeployMode.CREATE_OR_UPDATE)
        except GatewayError as exc:
            raise self._failure(DeployStage.POLLING, exc, config) from exc

        succeeded = classify_stack_status(stack.status) is StackOutcome.SUCCEEDED
        remediation = () if succeeded else runbook.deployment_remediation(config.stack_name, config.region)
        if not succeeded:
            logger.warning("Stack %s ended in %s (%s)", config.stack_name, stack.status, stack.status_reason)
        return DeploymentResult(
            stack_name=config.stack_name,
            mode=DeployMode.CREATE_OR_UPDATE,
            status=stack.status,
            succeeded=succeeded,
            action=action,
            status_reason=stack.status_reason,
            outputs=dict(stack.outputs),
            duration_seconds=time.monotonic() - started,
            remediation=remediation,
        )

    def teardown(self, stack_name, region, dry_run=False):
        """
        Delete the stack and wait for it to disappear. Backup snapshots are
        never touched; the result carries the command to review them by hand.
        """
        remediation = runbook.teardown_remediation(stack_name, region)
        if dry_run:
            logger.info("DRY RUN: Would delete stack '%s'", stack_name)
            return DeploymentResult(stack_name, DeployMode.DELETE, "DRY_RUN", succeeded=True,
                                    dry_run=True, remediation=remediation)

        started = time.monotonic()
        try:
            self.gateway.describe_stack(stack_name)
            self.gateway.delete_stack(stack_name)
        except GatewayError as exc:
            raise DeploymentFailed(DeployStage.DELETING, exc, remediation) from exc
        logger.info("Stack deletion initiated: %s", stack_name)

        try:
            stack = self._poll(stack_name, DeployMode.DELETE)
            status, reason = stack.status, stack.status_reason
        except NotFoundError:
            status, reason = "DELETE_COMPLETE", None
        except GatewayError as exc:
            raise DeploymentFailed(DeployStage.POLLING, exc, remediation) from exc

        return DeploymentResult(
            stack_name=stack_name,
            mode=DeployMode.DELETE,
            status=status,
            succeeded=classify_stack_status(status, DeployMode.DELETE) is StackOutcome.SUCCEEDED,
            action="DELETE",
            status_reason=reason,
            duration_seconds=time.monotonic() - started,
            remediation=remediation,
        )

    def _poll(self, stack_name, mode):
        status = None
        for attempt in range(1, self.max_polls + 1):
            stack = self.gateway.describe_stack(stack_name)
            status = stack.status
            outcome = classify_stack_status(status, mode)
            logger.debug("Stack %s poll %d/%d: %s", stack_name, attempt, self.max_polls, status)
            if outcome is not StackOutcome.IN_PROGRESS:
                return stack
            if attempt < self.max_polls:
                self.sleep(self.poll_interval)
        raise WaitTimeoutError(
            f"Stack {stack_name} still {status} after {self.max_polls} polls",
            code=status, operation="describe_stack",
        )

    def _failure(self, stage, cause, config):
        logger.error("Deployment failed at %s: %s: %s", stage.value, type(cause).__name__, cause)
        remediation = runbook.deployment_remediation(
            config.stack_name, config.region, cause, notifications=config.notifications_enabled,
        )
        return DeploymentFailed(stage, cause, remediation)

    def verify(self, stack_name):
        """Read stack outputs and check the backup function and schedule rule are there."""
        try:
            stack = self.gateway.describe_stack(stack_name)
        except GatewayError as exc:
            raise DeploymentFailed(DeployStage.VERIFYING, exc) from exc
        outputs = dict(stack.outputs)
        return StackVerification(
            outputs=outputs,
            function_name=outputs.get(FUNCTION_OUTPUT) or None,
            rule_name=outputs.get(SCHEDULE_OUTPUT) or None,
        )

    def test_backup(self, stack_name, instance_id, lookback_minutes=5):
        """
        Invoke the backup function once by hand and look for the snapshots it made.

        Returns:
            BackupTestResult
        """
        verification = self.verify(stack_name)
        if not verification.function_name:
            raise DeploymentFailed(
                DeployStage.TESTING,
                NotFoundError(f"Stack {stack_name} has no {FUNCTION_OUTPUT} output", operation="verify"),
            )

        started = time.monotonic()
        window_start = self.clock() - timedelta(minutes=lookback_minutes)
        try:
            response = self.gateway.invoke_function(verification.function_name, {})
        except GatewayError as exc:
            raise DeploymentFailed(DeployStage.TESTING, exc) from exc
        duration = time.monotonic() - started

        result = BackupTestResult(
            function_name=verification.function_name,
            status_code=response.get("status_code"),
            function_error=response.get("function_error"),
            payload=response.get("payload"),
            duration_seconds=duration,
        )
        if not result.succeeded:
            logger.warning("Backup function %s reported an error: %s", result.function_name, result.payload)
            return result

        try:
            recent = self.gateway.list_snapshots(BACKUP_TAG_VALUE, instance_id=instance_id, started_after=window_start)
        except GatewayError as exc:
            raise DeploymentFailed(DeployStage.TESTING, exc) from exc
        return BackupTestResult(
            function_name=result.function_name,
            status_code=result.status_code,
            function_error=result.function_error,
            payload=result.payload,
            duration_seconds=duration,
            recent_snapshots=tuple(recent),
        )
