"""
Operator guidance as data: the steps to finish a Jenkins recovery by hand and
the commands to run when something fails. Rendering is the CLI's job.
"""

from jenkins_ebs_backup.errors import AccessDeniedError
from jenkins_ebs_backup.models import BACKUP_TAG_VALUE, FollowUpStep, RecoveryState

MOUNT_POINT = "/mnt/jenkins-recovery"
JENKINS_HOME = "/var/lib/jenkins"
JENKINS_PORT = 8080

DEPLOY_PERMISSIONS = (
    "cloudformation:CreateStack / UpdateStack / DescribeStacks",
    "lambda:CreateFunction / UpdateFunctionCode",
    "iam:CreateRole / AttachRolePolicy / PassRole",
    "events:PutRule / PutTargets",
    "ec2:DescribeInstances / DescribeVolumes / CreateSnapshot",
    "logs:CreateLogGroup / CreateLogStream",
)
NOTIFICATION_PERMISSIONS = ("sns:CreateTopic / Subscribe / Publish",)

RECOVERY_PERMISSIONS = (
    "ec2:DescribeSnapshots / DescribeSubnets / DescribeImages / DescribeInstances",
    "ec2:CreateVolume / AttachVolume / DescribeVolumes",
    "ec2:RunInstances / CreateTags",
)


def _device_partition(device_name):
    # /dev/sdf shows up as /dev/xvdf on Xen instance types
    return device_name.replace("/dev/sd", "/dev/xvd") + "1"


def recovery_follow_up_steps(key_name, host, device_name="/dev/sdf", private=False):
    """
    Ordered steps to turn a freshly attached recovery volume into a working Jenkins.

    Args:
        key_name (str): EC2 key pair used for SSH.
        host (str): Public address of the instance, or private address when private=True.
        device_name (str): Device the recovered volume was attached at.
        private (bool): True when the instance only has a private address.

    Returns:
        tuple[FollowUpStep, ...]
    """
    url = f"http://{host}:{JENKINS_PORT}"
    if private:
        url += " (via VPN/bastion)"
    return (
        FollowUpStep("Connect to the instance", (
            f"ssh -i ~/.ssh/{key_name}.pem ec2-user@{host}",
        )),
        FollowUpStep("Mount the Jenkins data volume", (
            f"sudo mkdir -p {MOUNT_POINT}",
            f"sudo mount {_device_partition(device_name)} {MOUNT_POINT}",
        )),
        FollowUpStep("Install Jenkins", (
            "sudo yum update -y",
            "sudo yum install -y java-1.8.0-openjdk",
            "sudo wget -O /etc/yum.repos.d/jenkins.repo https://pkg.jenkins.io/redhat-stable/jenkins.repo",
            "sudo rpm --import https://pkg.jenkins.io/redhat-stable/jenkins.io.key",
            "sudo yum install -y jenkins",
        )),
        FollowUpStep("Restore the Jenkins data", (
            "sudo systemctl stop jenkins",
            f"sudo cp -r {MOUNT_POINT}/* {JENKINS_HOME}/",
            f"sudo chown -R jenkins:jenkins {JENKINS_HOME}",
            "sudo systemctl start jenkins",
            "sudo systemctl enable jenkins",
        )),
        FollowUpStep("Open Jenkins", (url,)),
        FollowUpStep("Point DNS / the load balancer at the new instance"),
        FollowUpStep("Test all Jenkins functionality thoroughly"),
    )


def describe_backups_command(region):
    return (f"aws ec2 describe-snapshots --owner-ids self "
            f"--filters 'Name=tag:Purpose,Values={BACKUP_TAG_VALUE}' --region {region}")


def recovery_remediation(stage, cause, region, snapshot_id, volume_id=None, instance_id=None):
    """
    Commands the operator should run after a failed recovery. Nothing is
    cleaned up automatically, so anything already created is listed here.
    """
    commands = []
    if stage is RecoveryState.VALIDATING:
        commands.append(describe_backups_command(region))
        commands.append(f"aws ec2 describe-snapshots --snapshot-ids {snapshot_id} --region {region}")
    if volume_id:
        commands.append(f"aws ec2 describe-volumes --volume-ids {volume_id} --region {region}")
        if stage is RecoveryState.VOLUME_AVAILABLE:
            commands.append(f"aws ec2 wait volume-available --volume-ids {volume_id} --region {region}")
    if instance_id:
        commands.append(f"aws ec2 describe-instances --instance-ids {instance_id} --region {region}")
    if volume_id and stage is not RecoveryState.ATTACHED:
        commands.append(f"aws ec2 delete-volume --volume-id {volume_id} --region {region}   # once no longer needed")
    if instance_id:
        commands.append(f"aws ec2 terminate-instances --instance-ids {instance_id} --region {region}   # once no longer needed")
    if isinstance(cause, AccessDeniedError):
        commands.extend(f"grant {permission}" for permission in RECOVERY_PERMISSIONS)
    return tuple(commands)


def deployment_remediation(stack_name, region, cause=None, notifications=False):
    commands = [
        f"aws cloudformation describe-stack-events --stack-name {stack_name} --region {region}",
        f"jenkins-backup-deploy --cleanup --stack-name {stack_name} --region {region}",
        "aws sts get-caller-identity",
    ]
    if isinstance(cause, AccessDeniedError):
        permissions = DEPLOY_PERMISSIONS + (NOTIFICATION_PERMISSIONS if notifications else ())
        commands.extend(f"grant {permission}" for permission in permissions)
    return tuple(commands)


def teardown_remediation(stack_name, region):
    return (
        f"aws cloudformation describe-stacks --stack-name {stack_name} --region {region}",
        describe_backups_command(region),
    )
