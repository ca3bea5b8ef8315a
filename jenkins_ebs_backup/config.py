"""
Defaults, environment lookups and the KEY=value configuration file used by
``jenkins-backup-deploy --config``.

Example file::

    # jenkins-backup.conf
    JENKINS_INSTANCE_ID=i-1234567890abcdef0
    RETENTION_DAYS=14
    BACKUP_TIME=03:00
    NOTIFICATION_EMAIL=admin@company.com
    STACK_NAME=jenkins-backup-prod
    REGION=us-east-1
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from jenkins_ebs_backup.errors import ValidationError
from jenkins_ebs_backup.models import StackConfig

logger = logging.getLogger(__name__)

DEFAULT_STACK_NAME = "jenkins-snapshot-backup"
DEFAULT_TEMPLATE_FILE = "cloudformation/jenkins-snapshot-backup.yaml"
DEFAULT_LOGS_DIR = "logs"
FALLBACK_REGION = "us-east-1"

KNOWN_KEYS = (
    "JENKINS_INSTANCE_ID",
    "RETENTION_DAYS",
    "BACKUP_TIME",
    "NOTIFICATION_EMAIL",
    "STACK_NAME",
    "REGION",
)


def default_region():
    return os.environ.get("AWS_DEFAULT_REGION") or FALLBACK_REGION


def env_instance_id():
    return os.environ.get("JENKINS_INSTANCE_ID") or None


@dataclass
class ConfigFile:
    path: Path
    values: Dict[str, str] = field(default_factory=dict)
    unknown_keys: List[str] = field(default_factory=list)

    def get(self, key, default=None):
        return self.values.get(key) or default


def parse_config_text(text, path=None):
    """
    Parse KEY=value lines. Blank lines and lines starting with # are skipped,
    whitespace and matching quotes around values are stripped, and unknown keys
    are logged and ignored.
    """
    parsed = ConfigFile(path=Path(path) if path else Path("<string>"))
    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.warning("Ignoring line %d without '=': %s", number, line)
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key not in KNOWN_KEYS:
            logger.warning("Unknown configuration option: %s", key)
            parsed.unknown_keys.append(key)
            continue
        logger.debug("Config: %s=%s", key, value)
        parsed.values[key] = value
    return parsed


def load_config_file(path):
    path = Path(path)
    if not path.is_file():
        raise ValidationError("config file", "required", str(path), f"Configuration file not found: {path}")
    logger.info("Loading configuration from: %s", path)
    return parse_config_text(path.read_text(encoding="utf-8"), path)


def stack_config_from_file(config_file, region=None, stack_name=None):
    """
    Build a validated StackConfig from a parsed file. Command-line region and
    stack name win over the file; missing retention and time fall back to 7
    days and 02:00.
    """
    instance_id = config_file.get("JENKINS_INSTANCE_ID") or env_instance_id()
    if not instance_id:
        raise ValidationError("JENKINS_INSTANCE_ID", "required", None,
                              "JENKINS_INSTANCE_ID must be specified in configuration file")
    return StackConfig.build(
        stack_name=stack_name or config_file.get("STACK_NAME", DEFAULT_STACK_NAME),
        region=region or config_file.get("REGION") or default_region(),
        jenkins_instance_id=instance_id,
        retention_days=config_file.get("RETENTION_DAYS"),
        backup_time_utc=config_file.get("BACKUP_TIME"),
        notification_email=config_file.get("NOTIFICATION_EMAIL"),
    )


def read_template(path) -> Optional[str]:
    path = Path(path)
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")
