"""Scoped destination access for sandbox-gated destinations.

A scoped destination (a cloud-synced folder outside the app's default reach)
is only writable while an access grant is held.  :class:`ResourceGuard`
acquires the grant before rsync starts and releases it when the run ends,
whatever the outcome.  The platform mechanism sits behind the
:class:`AccessProvider` protocol so tests can use a fake.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol

import keyring
import keyring.errors

from rsyncgui.errors import (
    AccessNotGrantedError,
    DestinationUnavailableError,
    JobConfigError,
)
from rsyncgui.models import DestinationKind, JobConfig
from rsyncgui.utils.path_helpers import expand_home, is_within, strip_trailing_separator

logger = logging.getLogger(__name__)

DEFAULT_KEYRING_SERVICE = "RsyncGUI"

# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Grant:
    """An acquired access grant and the root path it unlocks."""

    token: str
    path: str


class AccessProvider(Protocol):
    """Platform mechanism that turns an access token into a usable path."""

    def acquire(self, token: str) -> Grant:
        """Resolve *token* and start access.

        Raises:
            DestinationUnavailableError: If the token cannot be resolved.
        """
        ...

    def release(self, grant: Grant) -> None:
        """Stop access previously started by :meth:`acquire`."""
        ...


# ---------------------------------------------------------------------------
# Keyring-backed provider
# ---------------------------------------------------------------------------


class KeyringAccessProvider:
    """Stores grants as ``token -> root path`` entries in the OS keyring.

    The grant is recorded out-of-band when the user picks the folder
    (:meth:`remember`); a run only ever resolves it.
    """

    def __init__(self, service: str = DEFAULT_KEYRING_SERVICE) -> None:
        self._service = service

    def remember(self, token: str, path: str) -> None:
        """Record that *token* grants access to *path*."""
        keyring.set_password(self._service, token, path)
        logger.info("Stored access grant %s for %s", token, path)

    def forget(self, token: str) -> None:
        """Remove a stored grant; a missing entry is ignored."""
        try:
            keyring.delete_password(self._service, token)
        except keyring.errors.PasswordDeleteError:
            pass
        logger.debug("Access grant %s removed", token)

    def acquire(self, token: str) -> Grant:
        try:
            stored = keyring.get_password(self._service, token)
        except keyring.errors.KeyringError as exc:
            raise DestinationUnavailableError(
                f"Could not read access grant from keyring: {exc}"
            ) from exc

        if not stored:
            raise DestinationUnavailableError(
                "Stored folder access could not be resolved. "
                "Select the destination folder again."
            )

        path = expand_home(stored)
        if not Path(path).is_dir():
            raise DestinationUnavailableError(
                f"Destination folder is not available: {path}"
            )
        logger.debug("Resolved access grant %s -> %s", token, path)
        return Grant(token=token, path=path)

    def release(self, grant: Grant) -> None:
        logger.debug("Released access grant for %s", grant.path)


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

# Tokens currently held by a run, process-wide.
_held_tokens: set[str] = set()
_held_lock = threading.Lock()


class ResourceGuard:
    """Acquires and always releases the destination grant for one run."""

    def __init__(self, provider: AccessProvider) -> None:
        self._provider = provider

    @contextmanager
    def scoped(self, job: JobConfig) -> Iterator[Grant | None]:
        """Hold the destination grant for *job* for the ``with`` block.

        Yields ``None`` for destinations that need no grant.

        Raises:
            AccessNotGrantedError: A scoped destination has no token.
            DestinationUnavailableError: The token could not be resolved, or
                another run currently holds it.
        """
        if not job.destination_kind.requires_scoped_access:
            yield None
            return

        token = job.access_token
        if not token:
            raise AccessNotGrantedError()

        with _held_lock:
            if token in _held_tokens:
                raise DestinationUnavailableError(
                    f"Destination for job {job.name!r} is in use by another run"
                )
            _held_tokens.add(token)

        try:
            grant = self._provider.acquire(token)
            logger.info("Access granted to %s", grant.path)
            try:
                yield grant
            finally:
                try:
                    self._provider.release(grant)
                except Exception:
                    logger.exception("Failed to release access grant for %s", grant.path)
        finally:
            with _held_lock:
                _held_tokens.discard(token)


def prepare_destination(job: JobConfig, grant: Grant | None = None) -> None:
    """Create the local destination tree if it does not exist yet.

    Remote destinations are left to rsync.  For scoped destinations the grant
    root must be reachable and contain the destination; nothing is created
    blindly underneath an inaccessible root.

    Raises:
        JobConfigError: The destination exists but is not a directory.
        DestinationUnavailableError: The scoped root is missing, not writable,
            or does not contain the destination.
    """
    if job.destination_kind is DestinationKind.REMOTE_SSH:
        return

    destination = Path(strip_trailing_separator(expand_home(job.destination)))

    if destination.exists():
        if destination.is_dir():
            logger.debug("Destination directory exists: %s", destination)
            return
        raise JobConfigError(f"Destination exists but is not a directory: {destination}")

    if job.destination_kind is DestinationKind.SCOPED_CLOUD_FOLDER:
        if grant is None:
            raise AccessNotGrantedError()
        root = Path(grant.path)
        if not root.is_dir() or not os.access(root, os.W_OK):
            raise DestinationUnavailableError(f"Destination root is not accessible: {root}")
        if not is_within(destination, root):
            raise DestinationUnavailableError(
                f"Destination {destination} is outside the granted folder {root}"
            )

    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create destination %s: %s", destination, exc)
        raise DestinationUnavailableError(
            f"Could not create destination {destination}: {exc}"
        ) from exc
    logger.info("Created destination directory: %s", destination)
