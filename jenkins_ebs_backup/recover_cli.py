"""
jenkins-recover: rebuild a Jenkins server from an EBS backup snapshot.

Usage:
    jenkins-recover --list
    jenkins-recover --interactive
    jenkins-recover snap-1234567890abcdef0 --key-name my-key --security-group sg-12345678 --subnet-id subnet-12345678
    jenkins-recover --interactive --dry-run

Note: credentials are expected to be configured already (profile, env vars or
instance role). Created volumes and instances are NOT deleted on failure!
"""

import argparse
import sys

from jenkins_ebs_backup import __version__, console, runbook, validators
from jenkins_ebs_backup.config import DEFAULT_LOGS_DIR, default_region
from jenkins_ebs_backup.errors import GatewayError, RecoveryFailed, ValidationError
from jenkins_ebs_backup.gateway import AwsGateway
from jenkins_ebs_backup.models import BACKUP_TAG_VALUE, RecoveryRequest
from jenkins_ebs_backup.recovery import DEFAULT_INSTANCE_TYPE, RecoveryOrchestrator

SNAPSHOT_STORAGE_PRICE = 0.05


def build_parser():
    parser = argparse.ArgumentParser(
        prog="jenkins-recover",
        description="Automates Jenkins disaster recovery using EBS snapshots: pick a backup snapshot, "
                    "create a volume from it, launch a recovery instance and attach the volume.",
    )
    parser.add_argument("snapshot_id", nargs="?", metavar="SNAPSHOT_ID", help="Snapshot to recover from")
    parser.add_argument("-l", "--list", action="store_true", help="List available Jenkins backup snapshots")
    parser.add_argument("-i", "--interactive", action="store_true", help="Interactive recovery mode (recommended)")
    parser.add_argument("-r", "--region", default=default_region(), help="AWS region (default: %(default)s)")
    parser.add_argument("--instance-type", default=DEFAULT_INSTANCE_TYPE, help="EC2 instance type (default: %(default)s)")
    parser.add_argument("--key-name", help="EC2 key pair name (required for new instance)")
    parser.add_argument("--security-group", help="Security group ID (required for new instance)")
    parser.add_argument("--subnet-id", help="Subnet ID (required for new instance)")
    parser.add_argument("--dry-run", action="store_true", help="Preview actions without execution")
    parser.add_argument("--verbose", action="store_true", help="Stream debug logging to stderr")
    parser.add_argument("--logs-dir", default=DEFAULT_LOGS_DIR, help="Directory for the audit log (default: %(default)s)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_gateway(region):
    return AwsGateway(region)


def check_prerequisites(gateway, region):
    console.info("Checking prerequisites...")
    identity = gateway.caller_identity()
    gateway.check_region(region)
    console.success(f"Prerequisites check passed (account {identity.get('Account')})")


def show_snapshots(gateway, region):
    """Print the backup snapshots in the region, newest first, and return them."""
    console.info(f"Listing available Jenkins backup snapshots in region: {region}")
    snapshots = gateway.list_snapshots(BACKUP_TAG_VALUE)
    if not snapshots:
        console.warning("No Jenkins backup snapshots found")
        console.detail("Make sure:")
        console.detail("• Snapshots exist in the specified region")
        console.detail(f"• Snapshots are tagged with Purpose={BACKUP_TAG_VALUE}")
        console.detail("• You have permissions to describe snapshots")
        return []

    print()
    for number, snapshot in enumerate(snapshots, start=1):
        created = snapshot.start_time.strftime("%Y-%m-%d %H:%M UTC") if snapshot.start_time else "unknown"
        print(f"{number}. {snapshot.id}" + (f" ({snapshot.name})" if snapshot.name else ""))
        console.detail(f"Created: {created}")
        console.detail(f"State: {snapshot.state}")
        console.detail(f"Size: {snapshot.size_gib}GB")
        console.detail(f"Description: {snapshot.description}")
    print()
    console.info(f"Found {len(snapshots)} backup snapshot(s)")
    console.info(f"Storage costs: ~${SNAPSHOT_STORAGE_PRICE:.2f} per GB-month for snapshot storage")
    return snapshots


def select_snapshot(snapshots, attempts=3):
    def pick(answer):
        if not answer.isdigit() or not 1 <= int(answer) <= len(snapshots):
            raise ValidationError("selection", "range", answer,
                                  f"Invalid selection. Please enter a number between 1 and {len(snapshots)}")
        return snapshots[int(answer) - 1].id

    snapshot_id = console.ask_valid(f"Enter selection number (1-{len(snapshots)})", pick, attempts=attempts)
    console.success(f"Selected snapshot: {snapshot_id}")
    return snapshot_id


def prompt_key_name(gateway, attempts=3):
    try:
        key_pairs = gateway.list_key_pairs()
    except GatewayError as exc:
        console.warning(f"Could not retrieve key pairs ({exc.kind}). You'll need to specify it manually.")
        key_pairs = []
    if not key_pairs:
        return console.ask_valid("Enter EC2 key pair name", validators.validate_key_name, attempts=attempts)

    console.detail(f"Available key pairs: {' '.join(key_pairs)}")

    def known_key(answer):
        name = validators.validate_key_name(answer)
        if name not in key_pairs:
            raise ValidationError("key pair name", "pattern", name,
                                  f"Key pair '{name}' not found in this region")
        return name

    return console.ask_valid("Enter EC2 key pair name", known_key, attempts=attempts)


def collect_interactive(gateway, args):
    """Ask for everything the command line did not already provide."""
    console.info("Configuring recovery parameters...")
    key_name = args.key_name or prompt_key_name(gateway)
    security_group = args.security_group or console.ask_valid(
        "Enter security group ID (sg-xxxxxxxxx)", validators.validate_security_group_id)
    subnet_id = args.subnet_id or console.ask_valid(
        "Enter subnet ID (subnet-xxxxxxxxx)", validators.validate_subnet_id)
    instance_type = console.ask_valid("Enter instance type", validators.validate_instance_type,
                                      default=args.instance_type)
    console.success("Recovery configuration completed")
    return key_name, security_group, subnet_id, instance_type


def show_summary(request):
    print()
    console.info("Recovery Configuration Summary:")
    console.detail(f"Snapshot ID: {request.snapshot_id}")
    console.detail(f"Region: {request.region}")
    console.detail(f"Instance Type: {request.instance_type}")
    console.detail(f"Key Name: {request.key_name}")
    console.detail(f"Security Group: {request.security_group_id}")
    console.detail(f"Subnet ID: {request.subnet_id}")
    print()


def show_result(result):
    if result.synthetic:
        console.info("[DRY RUN] Recovery process simulation completed")
        console.detail("Resources that would be created:")
        console.detail(f"• EBS Volume from snapshot {result.snapshot_id} in {result.availability_zone}")
        console.detail(f"• EC2 Instance ({result.image_id})")
        console.detail(f"• Volume attachment at {result.device_name}")
        return

    print()
    console.success("Recovery instance ready!")
    print()
    print("Instance Details:")
    console.detail(f"Instance ID: {result.instance_id}")
    console.detail(f"Volume ID: {result.volume_id}")
    console.detail(f"Public IP: {result.public_ip or 'N/A'}")
    console.detail(f"Private IP: {result.private_ip or 'N/A'}")
    console.detail(f"Public DNS: {result.public_dns or 'N/A'}")
    print()
    print("Next Steps:")
    for number, step in enumerate(result.follow_up_steps, start=1):
        print(f"{number}. {step.title}")
        console.print_commands(step.commands)
        print()


def show_failure(exc):
    console.error(str(exc))
    cause = exc.cause
    console.detail(f"Stage: {exc.stage.value}")
    console.detail(f"Error class: {type(cause).__name__}"
                   + (f" ({cause.code})" if getattr(cause, "code", None) else ""))
    if exc.volume is not None and not exc.volume.synthetic:
        console.warning(f"Volume {exc.volume.volume_id} was created and has NOT been deleted")
    if exc.instance is not None and not exc.instance.synthetic:
        console.warning(f"Instance {exc.instance.instance_id} was launched and has NOT been terminated")
    if exc.remediation:
        console.section("Suggested next commands:")
        console.print_commands(exc.remediation)


def main(argv=None):
    args = build_parser().parse_args(argv)
    log_file = console.setup_logging("recovery", args.logs_dir, args.verbose)

    console.banner("Jenkins Disaster Recovery")
    try:
        region = validators.validate_region(args.region)
    except ValidationError as exc:
        console.error(str(exc))
        return 1

    gateway = build_gateway(region)
    try:
        check_prerequisites(gateway, region)
        if args.list:
            return 0 if show_snapshots(gateway, region) else 1

        if args.interactive:
            snapshots = show_snapshots(gateway, region)
            if not snapshots:
                return 1
            snapshot_id = args.snapshot_id or select_snapshot(snapshots)
            key_name, security_group, subnet_id, instance_type = collect_interactive(gateway, args)
        else:
            if not args.snapshot_id:
                console.error("Snapshot ID is required in non-interactive mode")
                console.detail("Use --interactive mode or provide snapshot ID as argument")
                return 1
            if not (args.key_name and args.security_group and args.subnet_id):
                console.error("Key name, security group, and subnet ID are required")
                console.detail("Use --interactive mode or provide all required parameters")
                return 1
            snapshot_id = args.snapshot_id
            key_name, security_group, subnet_id = args.key_name, args.security_group, args.subnet_id
            instance_type = args.instance_type

        request = RecoveryRequest.build(snapshot_id, region, instance_type, key_name,
                                        security_group, subnet_id, dry_run=args.dry_run)
    except ValidationError as exc:
        console.error(str(exc))
        return 1
    except GatewayError as exc:
        console.error(f"{exc.kind} ({exc.code}): {exc}")
        return 1

    show_summary(request)
    if request.dry_run:
        console.warning("DRY RUN MODE - No resources will be created")
    else:
        console.print_disclaimer()
        if not console.confirm("Proceed with recovery?"):
            console.info("Recovery cancelled")
            return 0

    console.info("Starting recovery process...")
    orchestrator = RecoveryOrchestrator(gateway)
    try:
        result = orchestrator.recover(request)
    except RecoveryFailed as exc:
        show_failure(exc)
        console.detail(f"Recovery log: {log_file}")
        return 1
    except KeyboardInterrupt:
        console.error(f"Recovery interrupted during {orchestrator.state.value}")
        created = dict(orchestrator.created_resources())
        for kind, resource_id in created.items():
            console.warning(f"{kind} {resource_id} was created and has NOT been cleaned up")
        if created:
            console.section("Cleanup commands:")
            console.print_commands(runbook.recovery_remediation(
                orchestrator.state, None, request.region, request.snapshot_id,
                created.get("volume"), created.get("instance"),
            ))
        return 1

    show_result(result)
    console.success("Recovery process completed!")
    console.detail(f"Recovery log: {log_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
