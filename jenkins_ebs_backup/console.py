"""
Terminal output and the audit log.

Used the colorama library to keep the output readable: cyan for progress,
green for success, yellow for warnings, red for errors. Every message printed
here also goes to the timestamped log file under logs/ so a deployment or
recovery can be reconstructed afterwards.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from colorama import Fore, Style, init

from jenkins_ebs_backup.errors import ValidationError

logger = logging.getLogger("jenkins_ebs_backup.console")

PACKAGE_LOGGER = "jenkins_ebs_backup"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(kind, logs_dir="logs", verbose=False):
    """
    Attach the audit log file (and, with verbose, a stderr stream) to the package logger.

    Args:
        kind (str): "deployment" or "recovery"; used in the file name.
        logs_dir (str): Directory for the log files. Created if missing.
        verbose (bool): Also stream DEBUG records to stderr.

    Returns:
        Path: The log file being written.
    """
    init(autoreset=True)
    logs_path = Path(logs_dir)
    logs_path.mkdir(parents=True, exist_ok=True)
    log_file = logs_path / f"{kind}-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG)
    for handler in list(package_logger.handlers):
        if getattr(handler, "_audit", False):
            package_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    file_handler._audit = True
    package_logger.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(logging.DEBUG)
    else:
        stream_handler = ProgressHandler()
        stream_handler.setLevel(logging.INFO)
    stream_handler._audit = True
    package_logger.addHandler(stream_handler)
    return log_file


class ProgressHandler(logging.Handler):
    """Echo the orchestrators' log records to the terminal while they work."""

    COLORS = {
        logging.DEBUG: Fore.WHITE,
        logging.INFO: Fore.CYAN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
    }

    def filter(self, record):
        # console.* already printed these itself
        return record.name != logger.name and super().filter(record)

    def emit(self, record):
        try:
            color = self.COLORS.get(record.levelno, Fore.RED)
            print(color + f"   {record.getMessage()}" + Style.RESET_ALL)
        except Exception:
            self.handleError(record)


def info(message):
    print(Fore.CYAN + f"ℹ️  {message}" + Style.RESET_ALL)
    logger.info(message)


def success(message):
    print(Fore.GREEN + f"✅ {message}" + Style.RESET_ALL)
    logger.info("SUCCESS: %s", message)


def warning(message):
    print(Fore.YELLOW + f"⚠️  {message}" + Style.RESET_ALL)
    logger.warning(message)


def error(message):
    print(Fore.RED + f"❌ {message}" + Style.RESET_ALL, file=sys.stderr)
    logger.error(message)


def detail(message=""):
    print(f"   {message}" if message else "")


def banner(title, color=Fore.BLUE):
    width = 60
    print(color + "╔" + "═" * width + "╗")
    print(color + "║" + title.center(width) + "║")
    print(color + "╚" + "═" * width + "╝" + Style.RESET_ALL)


def section(title):
    print()
    print(Fore.CYAN + title + Style.RESET_ALL)


def print_disclaimer():
    """Creating cloud resources costs money, people need to know before we start!"""
    print(Fore.RED + "#" * 69)
    print(Fore.RED + "#" + "DISCLAIMER".center(67) + "#")
    print(Fore.RED + "#" * 69)
    print("This tool creates AWS resources that are billed to your account.")
    print("Nothing it creates is deleted automatically, including on failure.")
    print("Volumes, instances and snapshots must be cleaned up by hand.")
    print(Fore.RED + "#" * 69 + Style.RESET_ALL)


def ask(prompt, default=None):
    suffix = f" (default: {default})" if default else ""
    answer = input(f"{prompt}{suffix}: ").strip()
    return answer or (default or "")


def ask_valid(prompt, validator, default=None, attempts=3, hint=None):
    """
    Keep asking until validator accepts the answer, at most ``attempts`` times.

    Returns:
        The validator's normalized value.

    Raises:
        ValidationError: The last rejection once the attempts run out.
    """
    last_error = None
    for _ in range(attempts):
        if hint:
            detail(hint)
        answer = ask(prompt, default)
        try:
            return validator(answer)
        except ValidationError as exc:
            error(str(exc))
            last_error = exc
    raise last_error


def confirm(prompt):
    return input(f"{prompt} (y/N): ").strip().lower() in ("y", "yes")


def print_commands(commands):
    for command in commands:
        detail(command)
