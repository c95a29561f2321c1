"""Identifies the calling terminal session.

Priority: ONETAP_SESSION env var > controlling TTY path > parent PID.
Repeated calls from the same terminal return the same id, so later commands
find their claim without passing a simulator UDID around.
"""

from __future__ import annotations

import os
import sys

from onetap.config import SESSION_ENV_VAR
from onetap.models import TERMINAL_SESSION_PREFIX

ENV_PREFIX = "env-"
PID_PREFIX = "pid-"
DEV_PREFIX = TERMINAL_SESSION_PREFIX
TTY_PREFIX = "/dev/ttys"


def resolve(environ: dict[str, str] | None = None) -> str:
    """Return the identifier for the current session."""
    env = os.environ if environ is None else environ
    override = env.get(SESSION_ENV_VAR, "")
    if override:
        return f"{ENV_PREFIX}{override}"

    tty = tty_path()
    if tty:
        return tty

    return f"{PID_PREFIX}{os.getppid()}"


def tty_path() -> str | None:
    """Path of the terminal attached to stdin (e.g. /dev/ttys001), or None."""
    try:
        if not os.isatty(0):
            return None
        return os.ttyname(0)
    except OSError:
        return None


def process_id() -> int:
    return os.getpid()


def parent_process_id() -> int:
    """Usually the shell that launched this command."""
    return os.getppid()


def session_process_id() -> int:
    """The pid recorded on new claims and probed for liveness.

    Terminal sessions record the parent shell, which outlives each command.
    Other sessions record the current process.
    """
    if tty_path() is not None:
        return os.getppid()
    return os.getpid()


def is_interactive() -> bool:
    """True when both stdin and stdout are attached to a terminal."""
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


def short_display(session_id: str) -> str:
    """Abbreviate a session id for status output.

    Examples:
        short_display("/dev/ttys001") → "tty001"
        short_display("/dev/pts/3") → "pts/3"
        short_display("pid-12345") → "pid-12345"
    """
    if session_id.startswith(TTY_PREFIX):
        return session_id.replace(TTY_PREFIX, "tty", 1)
    if session_id.startswith(DEV_PREFIX):
        return session_id[len(DEV_PREFIX):]
    if session_id.startswith((PID_PREFIX, ENV_PREFIX)):
        return session_id
    return session_id[:12]
