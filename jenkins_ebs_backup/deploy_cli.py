"""
jenkins-backup-deploy: deploy or remove the Jenkins EBS snapshot backup stack.

Usage:
    jenkins-backup-deploy                          # interactive deployment
    jenkins-backup-deploy --region eu-west-1       # deploy to a specific region
    jenkins-backup-deploy --dry-run                # preview, nothing is created
    jenkins-backup-deploy --config jenkins-backup.conf
    jenkins-backup-deploy --cleanup                # remove the stack (snapshots are kept!)
"""

import argparse
import sys
from datetime import datetime, timezone

from jenkins_ebs_backup import __version__, console, validators
from jenkins_ebs_backup.config import (
    DEFAULT_LOGS_DIR,
    DEFAULT_STACK_NAME,
    DEFAULT_TEMPLATE_FILE,
    default_region,
    env_instance_id,
    load_config_file,
    read_template,
    stack_config_from_file,
)
from jenkins_ebs_backup.deployment import (
    DeploymentOrchestrator,
    estimate_monthly_cost,
    retention_cost_warning,
)
from jenkins_ebs_backup.errors import DeploymentFailed, GatewayError, ValidationError
from jenkins_ebs_backup.gateway import AwsGateway
from jenkins_ebs_backup.models import BACKUP_TAG_VALUE, StackConfig
from jenkins_ebs_backup.runbook import describe_backups_command

MAX_ATTEMPTS = 3


def build_parser():
    parser = argparse.ArgumentParser(
        prog="jenkins-backup-deploy",
        description="Deploys automated Jenkins disaster recovery using AWS EBS snapshots and Lambda functions.",
    )
    parser.add_argument("-c", "--config", metavar="FILE", help="Use configuration file instead of interactive mode")
    parser.add_argument("-r", "--region", help="Override default AWS region")
    parser.add_argument("-s", "--stack-name", help="Override default CloudFormation stack name")
    parser.add_argument("--dry-run", action="store_true", help="Preview deployment without creating resources")
    parser.add_argument("--cleanup", action="store_true", help="Remove existing stack and associated resources")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging and debugging output")
    parser.add_argument("--template-file", default=DEFAULT_TEMPLATE_FILE,
                        help="CloudFormation template (default: %(default)s)")
    parser.add_argument("--logs-dir", default=DEFAULT_LOGS_DIR, help="Directory for the deployment log (default: %(default)s)")
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s version {__version__} - Jenkins EBS Snapshot Backup Automation")
    return parser


def build_gateway(region):
    return AwsGateway(region)


def build_orchestrator(gateway):
    return DeploymentOrchestrator(gateway)


def check_prerequisites(gateway, region, template_file):
    """
    Credentials, region and template checks. All failures are collected and
    reported together.

    Returns:
        str: The template body.
    """
    console.info("Validating prerequisites...")
    errors = 0

    try:
        identity = gateway.caller_identity()
        console.success(f"AWS credentials valid: Account: {identity['Account']} | User: {identity['Arn']}")
    except GatewayError as exc:
        console.error(f"AWS credentials not configured or invalid ({exc.kind})")
        console.detail("Configure with: aws configure")
        console.detail("Or set environment variables: AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY")
        errors += 1

    try:
        validators.validate_region(region)
    except ValidationError as exc:
        console.error(str(exc))
        errors += 1

    template_body = read_template(template_file)
    if template_body is None:
        console.error(f"CloudFormation template not found: {template_file}")
        errors += 1
    else:
        console.success(f"Template file found: {template_file}")
        try:
            gateway.validate_template(template_body)
            console.success("Template syntax validation passed")
        except GatewayError as exc:
            console.error(f"Template syntax validation failed: {exc}")
            errors += 1

    if errors:
        raise ValidationError("prerequisites", "required", errors, f"{errors} prerequisite check(s) failed")
    console.success("All prerequisites satisfied")
    return template_body


def discover_instances(gateway, region):
    console.info(f"Discovering Jenkins instances in region {region}...")
    try:
        instances = gateway.find_instances("jenkins")
    except GatewayError as exc:
        console.warning(f"Failed to query EC2 instances ({exc.kind}). Check your permissions.")
        return []
    if not instances:
        console.warning("No instances with 'jenkins' in name/tags found")
        console.info("Tip: Make sure your Jenkins instance is tagged with 'Name' containing 'jenkins'")
        return []
    console.success(f"Found {len(instances)} potential Jenkins instance(s):")
    for instance in instances:
        console.detail(f"• {instance.id} ({instance.name}) - {instance.state} - {instance.instance_type}")
    print()
    return instances


def prompt_instance_id(gateway, region):
    default = env_instance_id()
    for _ in range(MAX_ATTEMPTS):
        console.section("📋 Please enter your Jenkins EC2 Instance ID:")
        console.detail("Format: i-xxxxxxxxxxxxxxxxx (8-17 characters after 'i-')")
        answer = console.ask("Instance ID", default)
        try:
            instance_id = validators.validate_instance_id(answer)
        except ValidationError as exc:
            console.error(str(exc))
            continue

        console.info(f"Validating instance {instance_id}...")
        try:
            instance = gateway.describe_instance(instance_id)
        except GatewayError as exc:
            console.error(f"Instance {instance_id} not found or not accessible in region {region} ({exc.kind})")
            continue

        console.success("Instance validated successfully!")
        console.detail(f"Name: {instance.name or 'Unknown'}")
        console.detail(f"State: {instance.state}")
        console.detail(f"Type: {instance.instance_type}")
        if instance.state != "running":
            console.warning(f"Instance is in '{instance.state}' state")
            console.detail("Snapshots can be created from stopped instances")
            if not console.confirm("   Continue with this instance?"):
                continue
        return instance_id
    raise ValidationError("instance ID", "required", None,
                          f"Failed to validate instance ID after {MAX_ATTEMPTS} attempts")


def warn_long_retention(days):
    console.warning("Long retention periods increase storage costs")
    console.detail(f"Estimated additional cost: ~${retention_cost_warning(days):.2f}/month")


def prompt_retention_days():
    for _ in range(MAX_ATTEMPTS):
        console.section("📅 Snapshot Retention Policy:")
        console.detail("How many days should snapshots be kept? (1-365, recommended 7-14)")
        try:
            retention = validators.validate_retention_days(console.ask("Retention days", "7"))
        except ValidationError as exc:
            console.error(str(exc))
            continue
        if retention.cost_warning:
            warn_long_retention(retention.days)
            if not console.confirm(f"   Continue with {retention.days} days?"):
                continue
        console.success(f"Retention policy set to {retention.days} days")
        return retention.days
    raise ValidationError("retention days", "required", None,
                          f"Failed to set retention policy after {MAX_ATTEMPTS} attempts")


def prompt_backup_time():
    console.section("⏰ Daily Backup Schedule:")
    console.detail("When should daily backups run? (UTC, HH:MM 24-hour; off-peak 02:00-05:00 recommended)")
    console.detail(f"Current UTC time: {datetime.now(timezone.utc).strftime('%H:%M')}")
    backup_time = console.ask_valid("Backup time UTC", validators.validate_backup_time,
                                    default="02:00", attempts=MAX_ATTEMPTS)
    console.success(f"Backup scheduled for {backup_time} UTC daily")
    return backup_time


def prompt_notification_email():
    console.section("📧 Email Notifications (Optional):")
    console.detail("Leave empty to skip notifications")
    answer = console.ask("Email address (optional)")
    email = validators.normalize_email(answer)
    if email:
        console.success(f"Email notifications will be sent to: {email}")
        console.detail("📌 Don't forget to confirm the SNS subscription in your email!")
    elif answer:
        console.warning(f"Invalid email format: {answer}")
        console.detail("Continuing without notifications...")
    else:
        console.info("Email notifications disabled")
    return email


def collect_configuration(gateway, region, stack_name):
    console.info("Starting interactive configuration...")
    console.info("Step 1/4: Jenkins Instance Configuration")
    instance_id = prompt_instance_id(gateway, region)
    console.info("Step 2/4: Retention Policy Configuration")
    retention_days = prompt_retention_days()
    console.info("Step 3/4: Backup Schedule Configuration")
    backup_time = prompt_backup_time()
    console.info("Step 4/4: Notification Configuration")
    email = prompt_notification_email()
    config = StackConfig.build(stack_name, region, instance_id, retention_days, backup_time, email)
    console.success("Configuration collection completed!")
    return config


def monthly_cost_for(gateway, config):
    try:
        instance = gateway.describe_instance(config.jenkins_instance_id)
        sizes = gateway.volume_sizes(instance.volume_ids)
    except GatewayError as exc:
        console.warning(f"Could not retrieve volume information for the cost estimate ({exc.kind})")
        sizes = []
    return estimate_monthly_cost(sizes, config.retention_days)


def show_summary(config, monthly_cost, dry_run):
    console.banner("DEPLOYMENT SUMMARY")
    console.section("📋 Configuration Details:")
    console.detail(f"Stack Name: {config.stack_name}")
    console.detail(f"AWS Region: {config.region}")
    console.detail(f"Instance ID: {config.jenkins_instance_id}")
    console.detail(f"Retention: {config.retention_days} days")
    console.detail(f"Backup Time: {config.backup_time_utc} UTC")
    console.detail(f"Notifications: {config.notification_email or 'Disabled'}")
    console.section("💰 Cost Estimate:")
    console.detail(f"Monthly cost: ~${monthly_cost:.2f}")
    console.detail(f"Annual cost: ~${monthly_cost * 12:.2f}")
    console.detail("Storage type: EBS Snapshots (incremental)")
    console.section("🏗️ Resources to be created:")
    console.detail("• Lambda Function")
    console.detail("• EventBridge Rule (daily cron)")
    console.detail("• IAM Role (least-privilege)")
    if config.notifications_enabled:
        console.detail("• SNS Topic (email notifications)")
    console.detail("• CloudWatch Dashboard")
    if dry_run:
        print()
        console.warning("🔍 DRY RUN MODE: No resources will be created")


def show_deploy_failure(exc):
    cause = exc.cause
    console.error(str(exc))
    console.detail(f"Stage: {exc.stage.value}")
    console.detail(f"Error class: {type(cause).__name__}"
                   + (f" ({cause.code})" if getattr(cause, "code", None) else ""))
    if exc.remediation:
        console.section("🔧 Troubleshooting:")
        console.print_commands(exc.remediation)


def run_backup_test(orchestrator, config):
    console.section("🧪 Would you like to test the backup function now?")
    console.detail("This invokes the Lambda function once and creates a test snapshot")
    if not console.confirm("Run backup test?"):
        console.info("Skipping backup test")
        return True

    console.info("Testing backup function...")
    try:
        result = orchestrator.test_backup(config.stack_name, config.jenkins_instance_id)
    except DeploymentFailed as exc:
        show_deploy_failure(exc)
        console.info("Check the Lambda function logs in CloudWatch for details")
        return False

    console.info(f"Execution time: {result.duration_seconds:.0f} seconds")
    console.info(f"Function Response: {result.payload}")
    if not result.succeeded:
        console.warning("Function returned an error status")
        return False
    console.success("Backup function executed successfully!")
    if result.recent_snapshots:
        console.success("Recent snapshots found:")
        for snapshot in result.recent_snapshots:
            console.detail(f"{snapshot.id}  {snapshot.start_time}  {snapshot.state}")
    else:
        console.info("No recent snapshots found (may take a few minutes to appear)")
    return True


def show_next_steps(config, log_file):
    console.banner("NEXT STEPS")
    console.section("📋 Immediate Actions:")
    step = 1
    if config.notifications_enabled:
        console.detail(f"{step}. Check your email and confirm the SNS subscription")
        step += 1
    console.detail(f"{step}. Monitor the first backup execution (scheduled for {config.backup_time_utc} UTC)")
    console.detail(f"{step + 1}. Verify snapshots appear in EC2 Console > Snapshots")
    console.section("🔍 Monitoring & Verification:")
    console.detail("• CloudWatch Dashboard: Check Lambda metrics and logs")
    console.detail(f"• EC2 Snapshots: {describe_backups_command(config.region)}")
    console.detail("• Cost monitoring: AWS Billing Dashboard > EC2-EBS:SnapshotUsage")
    console.section("🆘 Disaster Recovery (when needed):")
    console.detail("jenkins-recover --interactive")
    console.detail(f"• Deployment logs: {log_file}")


def cleanup(gateway, stack_name, region, dry_run):
    console.warning("🗑️  Stack Cleanup Mode")
    console.detail("This will delete the CloudFormation stack and all associated resources:")
    console.detail("• Lambda function, EventBridge rule, IAM roles, SNS topic (if created), CloudWatch dashboard")
    console.error("WARNING: This will NOT delete existing EBS snapshots")
    console.detail("Snapshots must be deleted manually to avoid ongoing costs")
    if not dry_run and not console.confirm(f"Are you sure you want to delete stack '{stack_name}'?"):
        console.info("Cleanup cancelled")
        return 0

    console.info(f"Deleting CloudFormation stack: {stack_name}")
    try:
        result = build_orchestrator(gateway).teardown(stack_name, region, dry_run=dry_run)
    except DeploymentFailed as exc:
        show_deploy_failure(exc)
        return 1

    if result.succeeded:
        console.success(f"Stack {stack_name}: {result.status}")
    else:
        console.error(f"Stack deletion ended in {result.status}: {result.status_reason or 'no reason given'}")
    console.warning(f"Don't forget to clean up {BACKUP_TAG_VALUE} snapshots if no longer needed:")
    console.print_commands(result.remediation)
    return 0 if result.succeeded else 1


def main(argv=None):
    args = build_parser().parse_args(argv)
    log_file = console.setup_logging("deployment", args.logs_dir, args.verbose)

    try:
        config_file = load_config_file(args.config) if args.config else None
    except ValidationError as exc:
        console.error(str(exc))
        return 1

    region = args.region or (config_file.get("REGION") if config_file else None) or default_region()
    stack_name = args.stack_name or (config_file.get("STACK_NAME") if config_file else None) or DEFAULT_STACK_NAME

    try:
        region = validators.validate_region(region)
        stack_name = validators.validate_stack_name(stack_name)
    except ValidationError as exc:
        console.error(str(exc))
        return 1

    gateway = build_gateway(region)
    if args.cleanup:
        return cleanup(gateway, stack_name, region, args.dry_run)

    console.banner(f"Jenkins EBS Snapshot Backup Deployment v{__version__}")
    try:
        template_body = check_prerequisites(gateway, region, args.template_file)
        if config_file is None:
            discover_instances(gateway, region)
            config = collect_configuration(gateway, region, stack_name)
        else:
            console.info("Using configuration file mode")
            config = stack_config_from_file(config_file, region=region, stack_name=stack_name)
            if config_file.get("NOTIFICATION_EMAIL") and not config.notifications_enabled:
                console.warning(f"Invalid email format: {config_file.get('NOTIFICATION_EMAIL')}; notifications disabled")
            if validators.validate_retention_days(config.retention_days).cost_warning:
                warn_long_retention(config.retention_days)
    except ValidationError as exc:
        console.error(str(exc))
        console.detail(f"Deployment log: {log_file}")
        return 1

    show_summary(config, monthly_cost_for(gateway, config), args.dry_run)
    if not args.dry_run:
        console.section("🚀 Ready to deploy! This will create AWS resources and incur costs.")
        if not console.confirm("Proceed with deployment?"):
            console.info("Deployment cancelled by user")
            return 0

    orchestrator = build_orchestrator(gateway)
    console.info("Deploying CloudFormation stack...")
    try:
        result = orchestrator.deploy(config, template_body, dry_run=args.dry_run)
    except DeploymentFailed as exc:
        show_deploy_failure(exc)
        console.detail(f"Deployment log: {log_file}")
        return 1

    if result.dry_run:
        console.info(f"DRY RUN: Would deploy stack '{config.stack_name}' with the above configuration")
        return 0
    if not result.succeeded:
        console.error(f"Stack status: {result.status} (deployment was rolled back)")
        if result.status_reason:
            console.detail(result.status_reason)
        console.section("🔧 Troubleshooting:")
        console.print_commands(result.remediation)
        console.detail(f"Deployment log: {log_file}")
        return 1

    console.success(f"Stack status: {result.status} ({result.action}, {result.duration_seconds:.0f} seconds)")
    try:
        verification = orchestrator.verify(config.stack_name)
    except DeploymentFailed as exc:
        show_deploy_failure(exc)
        return 1
    for key, value in sorted(verification.outputs.items()):
        console.detail(f"{key}: {value}")
    if verification.function_name:
        console.success(f"Lambda function verified: {verification.function_name}")
    else:
        console.warning("Could not verify Lambda function")
    if verification.rule_name:
        console.success(f"EventBridge rule verified: {verification.rule_name}")
    else:
        console.warning("Could not verify EventBridge rule")

    run_backup_test(orchestrator, config)
    show_next_steps(config, log_file)
    console.success("Jenkins backup automation deployed successfully! 🚀")
    return 0


if __name__ == "__main__":
    sys.exit(main())
