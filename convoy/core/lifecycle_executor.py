"""Lifecycle Executor — runs one hook script on one host under a timeout.

A non-zero exit is an ordinary FAILED phase and a timeout is TIMED_OUT;
neither raises.  Only infrastructure problems (host unreachable, script
missing, process cannot be spawned) raise ``ExecutionUnavailable``.

Transports decide *how* a hook reaches its host:

- ``LocalTransport`` runs the script from the local bundle directory.
- ``SshTransport`` runs it over ``ssh`` from the bundle directory on
  the host (the layout CodeDeploy agents use).
"""

from __future__ import annotations

import getpass
import logging
import os
import posixpath
import shlex
import signal
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from convoy.models.hosts import Host
from convoy.models.phases import LifecyclePhase, PhaseOutcome, PhaseResult

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_LIMIT = 64 * 1024

# Grace period for draining output once the hook process has exited.
# A background child that inherited the pipe does not extend it.
_DRAIN_SECONDS = 2.0


class ExecutionUnavailable(RuntimeError):
    """Raised when a hook cannot be executed at all (infrastructure error)."""


class PreparedHook(BaseModel):
    """A fully resolved command line for one hook invocation."""

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] | None = None  # None inherits the parent environment


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class HookTransport(Protocol):
    """Builds the command for a hook and interprets transport exit codes."""

    def prepare(
        self,
        host: Host,
        script_ref: str,
        *,
        identity: str | None,
        cwd: Path | None,
        env: dict[str, str],
    ) -> PreparedHook:
        ...

    def check_exit(self, host: Host, exit_code: int) -> None:
        """Raise ``ExecutionUnavailable`` if *exit_code* signals an infra error."""
        ...


@runtime_checkable
class HookExecutor(Protocol):
    """Anything with the ``LifecycleExecutor.run`` signature."""

    def run(
        self,
        host: Host,
        hook_name: LifecyclePhase,
        script_ref: str,
        timeout: float,
        *,
        identity: str | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        rollback: bool = False,
    ) -> PhaseResult:
        ...


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class LocalTransport:
    """Runs hook scripts on this machine, resolved against the bundle dir.

    Scripts with the executable bit run directly (honouring their shebang);
    others run through ``sh``.  An identity other than the current user is
    applied with ``sudo -n -u``.
    """

    def prepare(
        self,
        host: Host,
        script_ref: str,
        *,
        identity: str | None,
        cwd: Path | None,
        env: dict[str, str],
    ) -> PreparedHook:
        path = Path(script_ref)
        if not path.is_absolute() and cwd is not None:
            path = Path(cwd) / path
        if not path.is_file():
            raise ExecutionUnavailable(f"Hook script missing on {host.host_id}: {path}")

        argv = [str(path)] if os.access(path, os.X_OK) else ["sh", str(path)]
        if identity and identity != getpass.getuser():
            argv = ["sudo", "-n", "-u", identity, *argv]

        merged = dict(os.environ)
        merged.update(env)
        return PreparedHook(
            argv=argv,
            cwd=Path(cwd) if cwd is not None else None,
            env=merged,
        )

    def check_exit(self, host: Host, exit_code: int) -> None:
        return None


class SshTransport:
    """Runs hook scripts on a remote host over ``ssh``.

    Parameters
    ----------
    user:
        Login user for ``ssh``.
    connect_timeout:
        ``ConnectTimeout`` passed to ``ssh``, in seconds.
    remote_root:
        Bundle directory on the remote host; relative script refs are
        resolved against it.
    """

    # ssh reserves 255 for its own errors; 127 is "command not found".
    UNREACHABLE_EXIT = 255
    MISSING_SCRIPT_EXIT = 127

    def __init__(
        self,
        user: str = "ec2-user",
        *,
        connect_timeout: int = 10,
        remote_root: str = "/home/ec2-user/app",
    ) -> None:
        self.user = user
        self.connect_timeout = connect_timeout
        self.remote_root = remote_root

    def prepare(
        self,
        host: Host,
        script_ref: str,
        *,
        identity: str | None,
        cwd: Path | None,
        env: dict[str, str],
    ) -> PreparedHook:
        if not host.address:
            raise ExecutionUnavailable(f"Host {host.host_id} has no address")

        remote_path = script_ref
        if not posixpath.isabs(remote_path):
            remote_path = posixpath.join(self.remote_root, script_ref)

        parts = ["cd", shlex.quote(self.remote_root), "&&"]
        if identity:
            parts += ["sudo", "-n", "-u", shlex.quote(identity)]
        parts.append("env")
        parts += [f"{key}={shlex.quote(value)}" for key, value in sorted(env.items())]
        parts += ["bash", shlex.quote(remote_path)]

        argv = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            f"{self.user}@{host.address}",
            " ".join(parts),
        ]
        return PreparedHook(argv=argv)

    def check_exit(self, host: Host, exit_code: int) -> None:
        if exit_code == self.UNREACHABLE_EXIT:
            raise ExecutionUnavailable(f"Cannot reach host {host.host_id} ({host.address})")
        if exit_code == self.MISSING_SCRIPT_EXIT:
            raise ExecutionUnavailable(f"Hook script missing on {host.host_id}")


# ---------------------------------------------------------------------------
# Output capture
# ---------------------------------------------------------------------------


class _TailBuffer:
    """Keeps only the last ``limit`` bytes written to it."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._data = bytearray()
        self._lock = threading.Lock()
        self.truncated = False

    def write(self, chunk: bytes) -> None:
        with self._lock:
            self._data.extend(chunk)
            overflow = len(self._data) - self._limit
            if overflow > 0:
                del self._data[:overflow]
                self.truncated = True

    def text(self) -> str:
        with self._lock:
            return self._data.decode("utf-8", errors="replace")


def _pump(fd: int, buffer: _TailBuffer) -> None:
    """Copy a pipe into *buffer* until EOF; the pump owns and closes *fd*.

    EOF only arrives once every holder of the write end is gone, which
    may be a daemon the hook started long after the hook itself exited.
    """
    try:
        for chunk in iter(lambda: os.read(fd, 4096), b""):
            buffer.write(chunk)
    finally:
        os.close(fd)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class LifecycleExecutor:
    """Runs lifecycle hooks and captures their outcome.

    Parameters
    ----------
    transport:
        How hooks reach hosts.  Defaults to ``LocalTransport``.
    output_limit_bytes:
        Size of the combined stdout/stderr tail kept per hook.
    """

    def __init__(
        self,
        transport: HookTransport | None = None,
        *,
        output_limit_bytes: int = DEFAULT_OUTPUT_LIMIT,
    ) -> None:
        self.transport: HookTransport = transport or LocalTransport()
        self.output_limit_bytes = output_limit_bytes

    def run(
        self,
        host: Host,
        hook_name: LifecyclePhase,
        script_ref: str,
        timeout: float,
        *,
        identity: str | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        rollback: bool = False,
    ) -> PhaseResult:
        """Execute one hook and return its PhaseResult.

        Raises
        ------
        ExecutionUnavailable
            If the hook cannot be started or the transport reports an
            infrastructure failure.
        """
        hook_env = {"LIFECYCLE_EVENT": hook_name.value, "HOST_ID": host.host_id}
        hook_env.update(env or {})
        prepared = self.transport.prepare(
            host, script_ref, identity=identity, cwd=cwd, env=hook_env
        )

        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        read_fd, write_fd = os.pipe()
        try:
            proc = subprocess.Popen(
                prepared.argv,
                stdin=subprocess.DEVNULL,
                stdout=write_fd,
                stderr=subprocess.STDOUT,
                cwd=prepared.cwd,
                env=prepared.env,
                start_new_session=True,
            )
        except OSError as exc:
            os.close(read_fd)
            raise ExecutionUnavailable(
                f"Cannot start {hook_name.value} hook on {host.host_id}: {exc}"
            ) from exc
        finally:
            os.close(write_fd)

        buffer = _TailBuffer(self.output_limit_bytes)
        reader = threading.Thread(target=_pump, args=(read_fd, buffer), daemon=True)
        reader.start()

        timed_out = False
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill_group(proc)
            proc.wait()
        reader.join(timeout=_DRAIN_SECONDS)
        if reader.is_alive():
            logger.debug(
                "%s hook on %s left a process holding its output; not waiting for it",
                hook_name.value, host.host_id,
            )

        duration_ms = int((time.monotonic() - t0) * 1000)
        exit_code = proc.returncode

        if timed_out:
            outcome = PhaseOutcome.TIMED_OUT
            logger.warning(
                "%s hook %s on %s timed out after %ss",
                hook_name.value, script_ref, host.host_id, timeout,
            )
        else:
            self.transport.check_exit(host, exit_code)
            outcome = PhaseOutcome.SUCCEEDED if exit_code == 0 else PhaseOutcome.FAILED
            logger.info(
                "%s hook %s on %s exited %d in %dms",
                hook_name.value, script_ref, host.host_id, exit_code, duration_ms,
            )

        return PhaseResult(
            phase=hook_name,
            script_ref=script_ref,
            identity=identity,
            started_at=started_at,
            duration_ms=duration_ms,
            exit_code=exit_code,
            outcome=outcome,
            output=buffer.text(),
            rollback=rollback,
        )

    @staticmethod
    def _kill_group(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


def build_transport(
    kind: str,
    *,
    ssh_user: str = "ec2-user",
    connect_timeout: int = 10,
    remote_root: str = "/home/ec2-user/app",
) -> HookTransport:
    """Build a transport from its config name (``local`` or ``ssh``)."""
    if kind == "local":
        return LocalTransport()
    if kind == "ssh":
        return SshTransport(
            ssh_user, connect_timeout=connect_timeout, remote_root=remote_root
        )
    raise ValueError(f"Unknown transport {kind!r}; expected 'local' or 'ssh'")
