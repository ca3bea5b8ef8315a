"""
Shape checks for everything an operator types in.

Every function is pure: it returns the normalized value or raises
ValidationError naming the field and the rule that failed.
"""

import re
from collections import namedtuple

from jenkins_ebs_backup.errors import ValidationError

DEFAULT_RETENTION_DAYS = 7
DEFAULT_BACKUP_TIME = "02:00"
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365
COST_WARNING_DAYS = 30

BACKUP_TIME_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
REGION_RE = re.compile(r"^[a-z0-9-]+$")
STACK_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,127}$")
INSTANCE_TYPE_RE = re.compile(r"^[a-z][a-z0-9-]*\.[a-z0-9]+$")

Retention = namedtuple("Retention", ["days", "cost_warning"])


def _resource_id_pattern(prefix):
    return re.compile(rf"^{re.escape(prefix)}-[0-9a-f]{{8,17}}$")


_ID_PATTERNS = {
    prefix: _resource_id_pattern(prefix)
    for prefix in ("i", "snap", "sg", "subnet", "vol", "ami")
}


def _required(value, field):
    value = "" if value is None else str(value).strip()
    if not value:
        raise ValidationError(field, "required", value, f"{field} is required")
    return value


def validate_resource_id(value, prefix, field):
    """
    Check an AWS resource ID: literal prefix, a dash, then 8-17 lowercase hex characters.

    Args:
        value (str): The raw input; surrounding whitespace is ignored.
        prefix (str): Expected prefix without the dash, e.g. "snap".
        field (str): Name used in the error message.

    Returns:
        str: The trimmed ID.
    """
    value = _required(value, field)
    if not _ID_PATTERNS[prefix].match(value):
        raise ValidationError(
            field, "pattern", value,
            f"Invalid {field} format: '{value}' (expected {prefix}-xxxxxxxx, 8-17 lowercase hex characters)",
        )
    return value


def validate_instance_id(value):
    return validate_resource_id(value, "i", "instance ID")


def validate_snapshot_id(value):
    return validate_resource_id(value, "snap", "snapshot ID")


def validate_security_group_id(value):
    return validate_resource_id(value, "sg", "security group ID")


def validate_subnet_id(value):
    return validate_resource_id(value, "subnet", "subnet ID")


def validate_retention_days(value):
    """
    Retention must be a whole number of days between 1 and 365. Empty input
    means the default of 7 days. Anything over 30 days is accepted but flagged,
    because long retention is where snapshot storage costs pile up.

    Returns:
        Retention: (days, cost_warning)
    """
    raw = "" if value is None else str(value).strip()
    if not raw:
        return Retention(DEFAULT_RETENTION_DAYS, False)
    if not raw.isdigit():
        raise ValidationError("retention days", "pattern", raw, "Retention days must be a whole number")
    days = int(raw)
    if days < MIN_RETENTION_DAYS or days > MAX_RETENTION_DAYS:
        raise ValidationError(
            "retention days", "range", days,
            f"Retention days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}",
        )
    return Retention(days, days > COST_WARNING_DAYS)


def validate_backup_time(value):
    """Accept H:MM or HH:MM (24-hour, UTC) and return it zero-padded. Empty means 02:00."""
    raw = "" if value is None else str(value).strip()
    if not raw:
        return DEFAULT_BACKUP_TIME
    match = BACKUP_TIME_RE.match(raw)
    if not match:
        raise ValidationError(
            "backup time", "pattern", raw,
            f"Invalid time format: '{raw}' (expected HH:MM, 24-hour, e.g. 02:00, 14:30, 23:45)",
        )
    hour, minute = match.groups()
    return f"{int(hour):02d}:{minute}"


def is_valid_email(value):
    return bool(value) and EMAIL_RE.match(value.strip()) is not None


def normalize_email(value):
    """
    Notification email is optional. Empty or malformed input disables
    notifications (returns None) instead of failing the configuration.
    """
    if value is None:
        return None
    value = value.strip()
    if not value or not is_valid_email(value):
        return None
    return value


def validate_region(value):
    value = _required(value, "region")
    if not REGION_RE.match(value):
        raise ValidationError("region", "pattern", value, f"Invalid AWS region format: {value}")
    return value


def validate_stack_name(value):
    value = _required(value, "stack name")
    if not STACK_NAME_RE.match(value):
        raise ValidationError(
            "stack name", "pattern", value,
            f"Invalid stack name: '{value}' (letters, digits and dashes, starting with a letter)",
        )
    return value


def validate_instance_type(value):
    value = _required(value, "instance type")
    if not INSTANCE_TYPE_RE.match(value):
        raise ValidationError("instance type", "pattern", value, f"Invalid instance type: '{value}' (e.g. t3.medium)")
    return value


def validate_key_name(value):
    return _required(value, "key pair name")
