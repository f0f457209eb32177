"""
Static checks on program commands and working directories.

The forbidden patterns block trivial shell-injection tricks. Commands are
never run through a shell, so this is a guard rail rather than a sandbox.
"""

import logging
import os
import re
import shutil
import sys

from .errors import InvalidCommand, InvalidWorkingDir

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 1000
MAX_WORKING_DIR_LENGTH = 500

FORBIDDEN_PATTERNS = [
    (r"rm\s+-rf\s+/", "recursive delete of /"),
    (r"^sudo\s+", "privilege escalation"),
    (r"chmod\s+.*777", "world-writable permissions"),
    (r"curl.*\|.*sh", "piping a download into a shell"),
    (r"wget.*\|.*sh", "piping a download into a shell"),
    (r"eval\s+", "eval"),
    (r"exec\s+", "exec"),
    (r"system\s*\(", "system call"),
    (r"\$\(", "command substitution"),
    (r";", "command chaining"),
    (r"\|\|", "logical or"),
    (r"&&", "logical and"),
    (r">\s*/dev/", "device file redirection"),
    (r"<\s*/dev/", "device file redirection"),
]

_COMPILED = [(re.compile(pattern), pattern, label) for pattern, label in FORBIDDEN_PATTERNS]

_WINDOWS_EXTENSIONS = ("", ".exe", ".bat", ".cmd")


def validate_command(command: str) -> str:
    """Validate a command string and return it trimmed.

    Raises InvalidCommand naming the rule that failed.
    """
    if command is None:
        raise InvalidCommand("command cannot be empty")

    command = command.strip()
    if not command:
        raise InvalidCommand("command cannot be empty")

    if len(command) > MAX_COMMAND_LENGTH:
        raise InvalidCommand(f"command too long (max {MAX_COMMAND_LENGTH} characters)")

    for regex, pattern, label in _COMPILED:
        if regex.search(command):
            raise InvalidCommand(f"command contains forbidden pattern: {pattern} ({label})")

    _validate_executable(command)
    return command


def _validate_executable(command: str):
    executable = command.split()[0]

    if os.path.isabs(executable):
        if not os.path.exists(executable):
            raise InvalidCommand(f"invalid executable: executable not found: {executable}")
        return

    # Relative paths are resolved against the working directory at launch
    if "/" in executable:
        return

    if sys.platform == "win32":
        for ext in _WINDOWS_EXTENSIONS:
            if shutil.which(executable + ext):
                return
    elif shutil.which(executable):
        return

    raise InvalidCommand(f"invalid executable: executable not found in PATH: {executable}")


def validate_working_dir(working_dir: str) -> str:
    """Validate a working directory, creating it if missing.

    Returns the normalized path, or "" when none was given.
    """
    if not working_dir:
        return ""

    working_dir = os.path.normpath(working_dir.strip())

    if len(working_dir) > MAX_WORKING_DIR_LENGTH:
        raise InvalidWorkingDir("working directory path too long")

    if not os.path.isabs(working_dir):
        raise InvalidWorkingDir("working directory must be absolute path")

    if not os.path.exists(working_dir):
        try:
            os.makedirs(working_dir, mode=0o755, exist_ok=True)
            logger.info(f"Created working directory {working_dir}")
        except OSError as e:
            raise InvalidWorkingDir(f"failed to create working directory: {e}") from e

    if not os.path.isdir(working_dir):
        raise InvalidWorkingDir("working directory path is not a directory")

    return working_dir


def sanitize_command(command: str) -> str:
    """Strip control characters and collapse runs of whitespace."""
    cleaned = "".join(ch for ch in (command or "") if ch >= " " or ch in "\t\n\r")
    return " ".join(cleaned.split())
