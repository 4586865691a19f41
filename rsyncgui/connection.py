"""Pre-flight checks for ``remoteSSH`` destinations.

Opens a short-lived SSH session with paramiko and verifies, in order, that
the host is reachable with a known host key, that authentication succeeds,
that rsync is installed remotely and that the destination is writable.
Nothing here is used during a run; rsync makes its own SSH connection.
"""

from __future__ import annotations

import logging
import shlex
import socket
from dataclasses import dataclass, field
from pathlib import Path

import paramiko

from rsyncgui.models import RemoteTarget
from rsyncgui.utils.path_helpers import expand_home

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22
_COMMAND_TIMEOUT = 30

CHECK_CONNECTION = "SSH connection"
CHECK_AUTH = "Authentication"
CHECK_RSYNC = "rsync on remote"
CHECK_DESTINATION = "Destination writable"

# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ConnectionCheck:
    """Outcome of one pre-flight check."""

    name: str
    passed: bool
    message: str


@dataclass
class ConnectionTestResult:
    """All checks run against one remote destination."""

    checks: list[ConnectionCheck] = field(default_factory=list)

    @property
    def overall_success(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def summary(self) -> str:
        passed = sum(1 for c in self.checks if c.passed)
        return f"{passed} / {len(self.checks)} checks passed"

    def add(self, name: str, passed: bool, message: str) -> None:
        self.checks.append(ConnectionCheck(name=name, passed=passed, message=message))
        log = logger.info if passed else logger.warning
        log("%s: %s (%s)", name, "passed" if passed else "failed", message)


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint so the caller can show it to the user.
    """

    def __init__(self, message: str, hostname: str = "", fingerprint: str = "") -> None:
        super().__init__(message)
        self.hostname = hostname
        self.fingerprint = fingerprint


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts "
            f"({key.get_name()}, MD5 {fingerprint})",
            hostname=hostname,
            fingerprint=fingerprint,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising."""
    try:
        client.close()
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def _exec(client: paramiko.SSHClient, command: str) -> tuple[str, int]:
    """Run *command* remotely; return (stdout, exit_code)."""
    _, stdout, _ = client.exec_command(command, timeout=_COMMAND_TIMEOUT)
    exit_code = stdout.channel.recv_exit_status()
    return stdout.read().decode("utf-8", errors="replace").strip(), exit_code


def _remote_path(remote: RemoteTarget, destination: str) -> str:
    """Strip a ``user@host:`` prefix from *destination*."""
    if destination.startswith(remote.prefix):
        return destination[len(remote.prefix):]
    return destination


def _connect_kwargs(remote: RemoteTarget, timeout: float) -> dict:
    kwargs: dict = {
        "hostname": remote.host,
        "port": remote.port or DEFAULT_SSH_PORT,
        "username": remote.user,
        "timeout": timeout,
        "allow_agent": True,
        "look_for_keys": remote.key_path is None,
    }
    if remote.key_path:
        kwargs["key_filename"] = expand_home(remote.key_path)
    return kwargs


def check_connection(
    remote: RemoteTarget,
    destination: str,
    timeout: float = 15.0,
) -> ConnectionTestResult:
    """Run the pre-flight checks for a remote destination.

    Stops at the first connection or authentication failure, since later
    checks need a session.
    """
    result = ConnectionTestResult()
    logger.info("Testing connection to %s@%s", remote.user, remote.host)

    client = paramiko.SSHClient()
    known_hosts_path = Path.home() / ".ssh" / "known_hosts"
    if known_hosts_path.exists():
        client.load_host_keys(str(known_hosts_path))
    client.set_missing_host_key_policy(_CapturingPolicy())

    try:
        try:
            client.connect(**_connect_kwargs(remote, timeout))
        except UnknownHostError as exc:
            result.add(CHECK_CONNECTION, False, str(exc))
            return result
        except paramiko.BadHostKeyException:
            result.add(
                CHECK_CONNECTION,
                False,
                f"Host key mismatch for {remote.host}, check ~/.ssh/known_hosts",
            )
            return result
        except paramiko.AuthenticationException as exc:
            result.add(CHECK_CONNECTION, True, f"Reached {remote.host}")
            result.add(CHECK_AUTH, False, f"Authentication failed: {exc}")
            return result
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            result.add(CHECK_CONNECTION, False, f"Could not reach {remote.host}: {exc}")
            return result

        result.add(CHECK_CONNECTION, True, f"Reached {remote.host}")
        result.add(CHECK_AUTH, True, f"Logged in as {remote.user}")

        try:
            path, code = _exec(client, "command -v rsync")
            result.add(
                CHECK_RSYNC,
                code == 0,
                path if code == 0 else "rsync is not installed on the remote host",
            )

            target = shlex.quote(_remote_path(remote, destination))
            _, code = _exec(
                client,
                f'd={target}; if [ -d "$d" ]; then test -w "$d"; '
                f'else test -w "$(dirname "$d")"; fi',
            )
            result.add(
                CHECK_DESTINATION,
                code == 0,
                "Destination is writable" if code == 0 else "Destination is not writable",
            )
        except (paramiko.SSHException, socket.timeout) as exc:
            result.add(CHECK_RSYNC, False, f"Remote command failed: {exc}")
    finally:
        _close_client_safely(client)

    return result
