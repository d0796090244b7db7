"""Privilege escalation via pkexec for package removal."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess

from pulito.errors import PulitoError

log = logging.getLogger(__name__)

# Timeout for the privileged subprocess (seconds).
_PKEXEC_TIMEOUT = 300


class PrivilegeError(PulitoError):
    """Raised when privilege escalation fails."""


def is_root() -> bool:
    """Check if the current process is running as root."""
    return os.geteuid() == 0


def pkexec_available() -> bool:
    """Check if pkexec is available on the system."""
    return shutil.which("pkexec") is not None


def run_privileged(argv: list[str], timeout: float = _PKEXEC_TIMEOUT) -> str:
    """Run *argv* as root and return its stdout.

    Runs the command directly when already root, otherwise through
    ``pkexec``.  The command is passed as an argument vector, never
    through a shell.

    Raises:
        PrivilegeError: On authentication cancel/deny/timeout or a
            non-zero exit status.
    """
    if not argv:
        raise PrivilegeError("Empty privileged command")

    if is_root():
        cmd = list(argv)
    elif pkexec_available():
        cmd = ["pkexec", *argv]
    else:
        raise PrivilegeError("Root privileges required and pkexec is not available")

    log.info("Running privileged command: %s", " ".join(argv))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise PrivilegeError(f"Privileged command timed out after {timeout:.0f}s")
    except OSError as e:
        raise PrivilegeError(f"Could not run {argv[0]}: {e}")

    if cmd[0] == "pkexec":
        if proc.returncode == 126:
            raise PrivilegeError("Authentication dismissed by user")
        if proc.returncode == 127:
            raise PrivilegeError("Authentication denied")
    if proc.returncode != 0:
        stderr = proc.stderr.strip()
        raise PrivilegeError(f"Privileged command failed (exit {proc.returncode}): {stderr}")
    return proc.stdout
