import pytest

from jenkins_ebs_backup import validators
from jenkins_ebs_backup.errors import ValidationError


@pytest.mark.parametrize("value", [
    "i-12345678",
    "i-1234567890abcdef0",
    "i-0123456789abcdef",
    "  i-0abc1234def56789  ",
])
def test_instance_id_accepts_well_formed_ids(value):
    assert validators.validate_instance_id(value) == value.strip()


@pytest.mark.parametrize("value, rule", [
    ("", "required"),
    (None, "required"),
    ("x-1234567890abcdef0", "pattern"),
    ("i1234567890abcdef0", "pattern"),
    ("i-1234567", "pattern"),
    ("i-1234567890abcdef01", "pattern"),
    ("i-1234567890ABCDEF0", "pattern"),
    ("i-1234567890abcdefg", "pattern"),
    ("snap-1234567890abcdef0", "pattern"),
])
def test_instance_id_rejects_malformed_ids(value, rule):
    with pytest.raises(ValidationError) as excinfo:
        validators.validate_instance_id(value)
    assert excinfo.value.field == "instance ID"
    assert excinfo.value.rule == rule


def test_other_resource_ids_use_their_own_prefix():
    assert validators.validate_snapshot_id("snap-0123456789abcdef0") == "snap-0123456789abcdef0"
    assert validators.validate_security_group_id("sg-12345678") == "sg-12345678"
    assert validators.validate_subnet_id("subnet-0123456789abcdef0") == "subnet-0123456789abcdef0"
    with pytest.raises(ValidationError):
        validators.validate_security_group_id("subnet-12345678")
    with pytest.raises(ValidationError):
        validators.validate_subnet_id("sg-12345678")


@pytest.mark.parametrize("value, days, warning", [
    ("1", 1, False),
    ("7", 7, False),
    ("30", 30, False),
    ("31", 31, True),
    ("365", 365, True),
    (14, 14, False),
    ("", 7, False),
    (None, 7, False),
])
def test_retention_days_accepted(value, days, warning):
    retention = validators.validate_retention_days(value)
    assert retention.days == days
    assert retention.cost_warning is warning


@pytest.mark.parametrize("value, rule", [
    ("0", "range"),
    ("366", "range"),
    ("-3", "pattern"),
    ("seven", "pattern"),
    ("7.5", "pattern"),
])
def test_retention_days_rejected(value, rule):
    with pytest.raises(ValidationError) as excinfo:
        validators.validate_retention_days(value)
    assert excinfo.value.rule == rule


@pytest.mark.parametrize("value, expected", [
    ("02:00", "02:00"),
    ("2:00", "02:00"),
    ("00:00", "00:00"),
    ("23:59", "23:59"),
    ("14:30", "14:30"),
    ("", "02:00"),
])
def test_backup_time_normalized(value, expected):
    assert validators.validate_backup_time(value) == expected


@pytest.mark.parametrize("value", ["24:00", "12:60", "1200", "12:5", "noon", "-1:00"])
def test_backup_time_rejected(value):
    with pytest.raises(ValidationError) as excinfo:
        validators.validate_backup_time(value)
    assert excinfo.value.field == "backup time"


def test_email_downgrades_instead_of_failing():
    assert validators.normalize_email("admin@company.com") == "admin@company.com"
    assert validators.normalize_email("  ops.team+jenkins@example.co.uk ") == "ops.team+jenkins@example.co.uk"
    assert validators.normalize_email("") is None
    assert validators.normalize_email(None) is None
    assert validators.normalize_email("not-an-email") is None
    assert validators.normalize_email("admin@company") is None


def test_region_stack_name_and_instance_type():
    assert validators.validate_region("eu-west-1") == "eu-west-1"
    with pytest.raises(ValidationError):
        validators.validate_region("EU_WEST_1")
    assert validators.validate_stack_name("jenkins-backup-prod") == "jenkins-backup-prod"
    with pytest.raises(ValidationError):
        validators.validate_stack_name("1-backup")
    assert validators.validate_instance_type("t3.medium") == "t3.medium"
    with pytest.raises(ValidationError):
        validators.validate_instance_type("medium")
    with pytest.raises(ValidationError) as excinfo:
        validators.validate_key_name("   ")
    assert excinfo.value.rule == "required"
