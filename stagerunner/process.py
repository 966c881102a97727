"""Subprocess helpers: scrubbed environments, timeouts and process-group cleanup."""

from __future__ import annotations

import os
import re
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass

_POSIX = os.name == "posix"

_POLL_INTERVAL = 0.1
DEFAULT_KILL_GRACE = 5.0

_PLACEHOLDER_RE = re.compile(r"\$\{(\w+)\}")

DEFAULT_SENSITIVE_ENV_PREFIXES = (
    # Cloud
    "AWS_SECRET",
    "AWS_SESSION_TOKEN",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "AZURE_CLIENT_SECRET",
    "DIGITALOCEAN_TOKEN",
    # VCS/CI
    "GITHUB_TOKEN",
    "GH_TOKEN",
    "GITLAB_TOKEN",
    "BITBUCKET_TOKEN",
    "CODECOV_TOKEN",
    "SONAR_TOKEN",
    "SONAR_LOGIN",
    "NVD_API_KEY",
    # Registries
    "NPM_TOKEN",
    "DOCKER_PASSWORD",
    "DOCKER_TOKEN",
    "REGISTRY_PASSWORD",
    # DB/infra
    "DATABASE_URL",
    "REDIS_URL",
    "MONGO_URI",
    "POSTGRES_PASSWORD",
    "MYSQL_PASSWORD",
    "VAULT_TOKEN",
    "SSH_PRIVATE_KEY",
)

DEFAULT_SENSITIVE_ENV_SUFFIXES = (
    "_KEY",
    "_SECRET",
    "_TOKEN",
    "_PASSWORD",
    "_CREDENTIAL",
    "_CREDENTIALS",
    "_API_KEY",
    "_ACCESS_KEY",
    "_PRIVATE_KEY",
)

DEFAULT_ENV_ALLOWLIST: frozenset[str] = frozenset(
    {
        "SSH_AGENT_PID",
        "GPG_AGENT_INFO",
    }
)


def scrub_env(
    base: Mapping[str, str] | None = None,
    prefixes: tuple[str, ...] | list[str] = DEFAULT_SENSITIVE_ENV_PREFIXES,
    *,
    suffixes: tuple[str, ...] | list[str] = DEFAULT_SENSITIVE_ENV_SUFFIXES,
    allowlist: frozenset[str] | set[str] = DEFAULT_ENV_ALLOWLIST,
) -> dict[str, str]:
    """Return a copy of *base* (default ``os.environ``) with sensitive keys removed.

    Stages only see the runner's own secrets when a credential reference
    injects them explicitly.
    """
    env = dict(os.environ if base is None else base)
    upper_prefixes = tuple(p.upper() for p in prefixes)
    upper_suffixes = tuple(s.upper() for s in suffixes)
    to_remove = [
        k
        for k in env
        if k not in allowlist
        and (
            any(k.upper().startswith(p) for p in upper_prefixes)
            or any(k.upper().endswith(s) for s in upper_suffixes)
        )
    ]
    for k in to_remove:
        del env[k]
    return env


def expand_placeholders(value: str, env: Mapping[str, str]) -> str:
    """Replace ``${VAR}`` placeholders with values from *env*.

    Unresolved placeholders are left as-is.
    """
    return _PLACEHOLDER_RE.sub(lambda m: env.get(m.group(1), m.group(0)), value)


@dataclass(frozen=True)
class ProcessOutcome:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    launch_error: str | None = None


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if _POSIX:
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
    elif proc.poll() is None:
        proc.kill()


def terminate_process_group(proc: subprocess.Popen, grace: float = DEFAULT_KILL_GRACE) -> None:
    """SIGTERM the process group, wait up to *grace* seconds, then SIGKILL it.

    SIGKILL is sent even when the leader exits in time so that children
    which ignored SIGTERM are not orphaned.
    """
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        pass
    _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
    proc.wait()


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


def run_process(
    argv: list[str],
    *,
    env: Mapping[str, str],
    cwd: str | os.PathLike[str] | None = None,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    poll_interval: float = _POLL_INTERVAL,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> ProcessOutcome:
    """Run *argv* (no shell) in its own process group and capture its output.

    Blocks until the process exits, *timeout* elapses or *cancel_event* is
    set. On timeout or cancellation the whole process group is terminated.
    A command that cannot be started yields returncode 127 (not found) or
    126 (not executable) with ``launch_error`` set.
    """
    start = time.monotonic()
    deadline = start + timeout if timeout is not None else None

    def _elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(env),
            start_new_session=_POSIX,
        )
    except FileNotFoundError:
        msg = f"command not found: {argv[0]}"
        return ProcessOutcome(
            returncode=127, stderr=msg, duration_ms=_elapsed_ms(), launch_error=msg
        )
    except PermissionError:
        msg = f"permission denied: {argv[0]}"
        return ProcessOutcome(
            returncode=126, stderr=msg, duration_ms=_elapsed_ms(), launch_error=msg
        )

    timed_out = False
    cancelled = False
    while True:
        wait = poll_interval
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        try:
            stdout, stderr = proc.communicate(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
        elif deadline is not None and time.monotonic() >= deadline:
            timed_out = True
        else:
            continue
        terminate_process_group(proc, grace=kill_grace)
        stdout, stderr = proc.communicate()
        break

    return ProcessOutcome(
        returncode=proc.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        duration_ms=_elapsed_ms(),
        timed_out=timed_out,
        cancelled=cancelled,
    )


def format_output(
    stdout: str,
    stderr: str,
    returncode: int | None = None,
    max_chars: int = 0,
    truncation_prefix: str = "[truncated]\n",
) -> str:
    """Assemble stdout/stderr/returncode into a single output string.

    Optionally keeps only the last *max_chars* characters, where build
    tools print their failure summary.
    """
    parts: list[str] = []
    if returncode is not None and returncode != 0:
        parts.append(f"Exit code: {returncode}")
    if stdout:
        parts.append(f"STDOUT:\n{stdout}")
    if stderr:
        parts.append(f"STDERR:\n{stderr}")
    output = "\n".join(parts) if parts else "(no output)"
    if max_chars > 0 and len(output) > max_chars:
        output = truncation_prefix + output[-max_chars:]
    return output
