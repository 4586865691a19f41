"""rsync execution engine.

Runs one job at a time per :class:`RsyncExecutor`:

- Spawns rsync with both output streams piped.
- Drains stdout and stderr on two daemon threads into lock-guarded buffers.
- Feeds stdout to a :class:`~rsyncgui.progress.ProgressParser` and publishes
  its snapshots through a :class:`ProgressChannel`.
- Waits for exit, joins both readers, then finalizes the captured buffers.
- Supports cancellation via SIGTERM, escalating to SIGKILL.
"""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum, auto
from typing import IO, Callable

from rsyncgui.access import AccessProvider, KeyringAccessProvider, ResourceGuard, prepare_destination
from rsyncgui.command import DEFAULT_RSYNC_PATH, build_command
from rsyncgui.errors import AlreadyRunningError, ExecutionFailedError
from rsyncgui.finalize import ExitCondition, finalize
from rsyncgui.hooks import DEFAULT_HOOK_TIMEOUT, run_hook
from rsyncgui.models import ExecutionResult, ExecutionStatus, JobConfig, ProgressSnapshot
from rsyncgui.progress import ProgressParser

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024           # Max bytes per pipe read
DEFAULT_KILL_TIMEOUT = 5.0       # SIGTERM -> SIGKILL grace period
DEFAULT_DETACH_TIMEOUT = 10.0    # Max wait for readers after exit

ProgressCallback = Callable[[ProgressSnapshot], None]

# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ExecutorState(Enum):
    """Lifecycle of the executor's current (or last) run."""

    IDLE = auto()
    SPAWNING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()


_ACTIVE_STATES = (ExecutorState.SPAWNING, ExecutorState.RUNNING)

_STATE_FOR_STATUS = {
    ExecutionStatus.SUCCESS: ExecutorState.COMPLETED,
    ExecutionStatus.PARTIAL_SUCCESS: ExecutorState.COMPLETED,
    ExecutionStatus.FAILED: ExecutorState.FAILED,
    ExecutionStatus.CANCELLED: ExecutorState.CANCELLED,
}

_VERIFIABLE_STATUSES = (ExecutionStatus.SUCCESS, ExecutionStatus.PARTIAL_SUCCESS)

VERIFICATION_HEADER = "=== VERIFICATION PASS ==="

# ---------------------------------------------------------------------------
# Progress fan-out
# ---------------------------------------------------------------------------


class ProgressChannel:
    """Publish/subscribe fan-out for progress snapshots.

    :meth:`publish` only enqueues; a daemon dispatcher thread delivers to the
    subscribers in publish order, so a slow subscriber never stalls the
    stream reader that produced the snapshot.
    """

    def __init__(self) -> None:
        self._subscribers: list[ProgressCallback] = []
        self._lock = threading.Lock()
        self._queue: queue.Queue[ProgressSnapshot | None] = queue.Queue()
        self._dispatcher: threading.Thread | None = None

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, snapshot: ProgressSnapshot) -> None:
        """Queue *snapshot* for delivery and return immediately."""
        with self._lock:
            if self._dispatcher is None or not self._dispatcher.is_alive():
                self._dispatcher = threading.Thread(
                    target=self._dispatch_loop,
                    name="progress-dispatch",
                    daemon=True,
                )
                self._dispatcher.start()
        self._queue.put(snapshot)

    def flush(self) -> None:
        """Block until every queued snapshot has been delivered."""
        self._queue.join()

    def close(self) -> None:
        """Stop the dispatcher after it has delivered what is queued."""
        with self._lock:
            dispatcher = self._dispatcher
            self._dispatcher = None
        if dispatcher is not None:
            self._queue.put(None)
            dispatcher.join()

    def _dispatch_loop(self) -> None:
        while True:
            snapshot = self._queue.get()
            try:
                if snapshot is None:
                    return
                with self._lock:
                    subscribers = list(self._subscribers)
                for callback in subscribers:
                    try:
                        callback(snapshot)
                    except Exception:
                        logger.exception("Exception in progress subscriber")
            finally:
                self._queue.task_done()


# ---------------------------------------------------------------------------
# Stream collection
# ---------------------------------------------------------------------------


class StreamCollector:
    """Drains a process's stdout and stderr concurrently.

    Thread-safety:
    - ``_lock`` guards both buffers and the detached flag; it is held only
      for the append itself.
    - Stdout chunks are passed to *on_stdout_chunk* outside the lock.
    """

    def __init__(
        self,
        stdout: IO[bytes],
        stderr: IO[bytes],
        on_stdout_chunk: Callable[[bytes], None] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._buffers: dict[str, bytearray] = {"stdout": bytearray(), "stderr": bytearray()}
        self._detached = False
        self._on_stdout_chunk = on_stdout_chunk
        self._threads = [
            threading.Thread(
                target=self._drain,
                args=(stdout, "stdout"),
                name="rsync-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._drain,
                args=(stderr, "stderr"),
                name="rsync-stderr",
                daemon=True,
            ),
        ]

    def start(self) -> None:
        """Start both reader threads."""
        for thread in self._threads:
            thread.start()

    def _drain(self, stream: IO[bytes], name: str) -> None:
        """Read *stream* until end-of-stream, appending to its buffer."""
        try:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                with self._lock:
                    if self._detached:
                        break
                    self._buffers[name].extend(chunk)
                if name == "stdout" and self._on_stdout_chunk:
                    try:
                        self._on_stdout_chunk(chunk)
                    except Exception:
                        logger.debug("Skipping unparseable output chunk", exc_info=True)
        except (OSError, ValueError) as exc:
            logger.warning("Reading rsync %s failed: %s", name, exc)
        finally:
            try:
                stream.close()
            except OSError:
                pass
            logger.debug("rsync %s reached end of stream", name)

    def detach(self, timeout: float | None = None) -> bool:
        """Wait for both readers to finish, then stop accepting data.

        Returns True if both readers reached end-of-stream within *timeout*.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

        with self._lock:
            self._detached = True

        finished = not any(t.is_alive() for t in self._threads)
        if not finished:
            logger.warning(
                "rsync output streams still open %.1fs after exit; detaching",
                timeout or 0.0,
            )
        return finished

    def buffers(self) -> tuple[bytes, bytes]:
        """Return copies of the ``(stdout, stderr)`` buffers."""
        with self._lock:
            return bytes(self._buffers["stdout"]), bytes(self._buffers["stderr"])


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


@dataclass
class _RunHandle:
    """Mutable state of the run in flight; owned by the executor."""

    parser: ProgressParser
    process: subprocess.Popen | None = None
    collector: StreamCollector | None = None
    cancel_requested: bool = False
    exited: bool = False
    kill_timer: threading.Timer | None = None


def _kill_if_alive(process: subprocess.Popen) -> None:
    """Escalate to SIGKILL when SIGTERM did not end *process*."""
    if process.poll() is None:
        logger.warning("rsync (pid %d) ignored SIGTERM; sending SIGKILL", process.pid)
        try:
            process.kill()
        except OSError as exc:
            logger.warning("SIGKILL failed for pid %d: %s", process.pid, exc)


class RsyncExecutor:
    """Runs sync jobs through rsync, one at a time.

    Thread-safety:
    - ``_lock`` protects the state machine and the run handle.
    - :meth:`execute` blocks its caller; :meth:`cancel`, :meth:`subscribe`
      and the read-only properties are safe from any thread.
    """

    def __init__(
        self,
        rsync_path: str = DEFAULT_RSYNC_PATH,
        access_provider: AccessProvider | None = None,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        detach_timeout: float | None = DEFAULT_DETACH_TIMEOUT,
        hook_timeout: float = DEFAULT_HOOK_TIMEOUT,
    ) -> None:
        """Initialise an idle executor.

        Args:
            rsync_path: rsync binary to run.
            access_provider: Resolves scoped-destination tokens; defaults to
                the keyring-backed provider.
            kill_timeout: Seconds between SIGTERM and SIGKILL on cancel.
            detach_timeout: Seconds to wait for the output readers after the
                process exits; ``None`` waits indefinitely.
            hook_timeout: Seconds a pre/post hook may run.
        """
        self.rsync_path = rsync_path
        self.kill_timeout = kill_timeout
        self.detach_timeout = detach_timeout
        self.hook_timeout = hook_timeout

        self._guard = ResourceGuard(access_provider or KeyringAccessProvider())
        self._channel = ProgressChannel()
        self._lock = threading.Lock()
        self._state = ExecutorState.IDLE
        self._handle: _RunHandle | None = None
        self._latest: ProgressSnapshot | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ExecutorState:
        """Current state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        """True while a run is spawning or running."""
        return self.state in _ACTIVE_STATES

    @property
    def latest_progress(self) -> ProgressSnapshot | None:
        """Most recent snapshot of the current or last run."""
        return self._latest

    def _set_state(self, new_state: ExecutorState) -> None:
        """Update the state (must hold lock)."""
        logger.debug("Executor state %s -> %s", self._state.name, new_state.name)
        self._state = new_state

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Receive every progress snapshot; returns an unsubscribe function."""
        return self._channel.subscribe(callback)

    def flush_progress(self) -> None:
        """Block until all published snapshots reached the subscribers."""
        self._channel.flush()

    def _publish(self, snapshot: ProgressSnapshot) -> None:
        self._latest = snapshot
        self._channel.publish(snapshot)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(self, job: JobConfig, dry_run: bool = False) -> ExecutionResult:
        """Run *job* and block until rsync has exited and the result is final.

        Args:
            job: The job snapshot to run.
            dry_run: Pass ``-n`` to rsync; no directories are created and no
                hooks run.

        Returns:
            The frozen result.  A cancelled run returns normally with status
            ``CANCELLED``.

        Raises:
            AlreadyRunningError: Another run is in flight on this executor.
            AccessNotGrantedError: Scoped destination without an access token.
            DestinationUnavailableError: Scoped destination cannot be reached.
            JobConfigError: The destination path is not a directory.
            ExecutionFailedError: rsync could not be started, or was killed by
                a signal this executor did not send (``.result`` then holds
                the finalized run).
        """
        with self._lock:
            if self._state in _ACTIVE_STATES:
                raise AlreadyRunningError()
            self._set_state(ExecutorState.SPAWNING)
            self._latest = None

        placeholder = ExecutionResult.started(job.id)
        logger.info(
            "Starting job %r%s",
            job.name,
            " (dry run)" if dry_run else "",
        )

        try:
            with self._guard.scoped(job) as grant:
                if not dry_run:
                    if job.pre_script:
                        self._run_pre_hook(job)
                    prepare_destination(job, grant)
                command = build_command(job, dry_run=dry_run, rsync_path=self.rsync_path)
                result, condition = self._run(job, command, placeholder)
                if (
                    job.verify_after_sync
                    and not dry_run
                    and result.status in _VERIFIABLE_STATUSES
                ):
                    result = self._verify(job, result)
        except BaseException:
            with self._lock:
                if self._state in _ACTIVE_STATES:
                    self._set_state(ExecutorState.FAILED)
            raise

        with self._lock:
            self._set_state(_STATE_FOR_STATUS[result.status])

        if job.post_script and not dry_run:
            self._run_post_hook(job, result)

        if condition.killed_by_foreign_signal:
            raise ExecutionFailedError(result.errors[-1], result=result)
        return result

    def cancel(self) -> None:
        """Ask the running rsync to stop.

        No-op unless a run is in ``RUNNING`` with rsync still alive; repeated
        calls are ignored.  The run still finalizes and :meth:`execute`
        returns a ``CANCELLED`` result.
        """
        with self._lock:
            handle = self._handle
            if self._state is not ExecutorState.RUNNING or handle is None:
                logger.debug("cancel() ignored: no run in progress")
                return
            if handle.cancel_requested:
                return
            process = handle.process
            if handle.exited or process.poll() is not None:
                logger.debug("cancel() ignored: rsync already exited")
                return
            handle.cancel_requested = True
            timer = threading.Timer(self.kill_timeout, _kill_if_alive, args=(process,))
            timer.daemon = True
            handle.kill_timer = timer

        logger.info("Cancelling rsync (pid %d)", process.pid)
        try:
            process.terminate()
        except OSError as exc:
            logger.warning("SIGTERM failed for pid %d: %s", process.pid, exc)
        # A timer cancelled by _run before start() returns without firing.
        timer.start()

    def shutdown(self) -> None:
        """Cancel any run and stop the progress dispatcher."""
        self.cancel()
        self._channel.close()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _run(
        self,
        job: JobConfig,
        command: tuple[str, list[str]],
        placeholder: ExecutionResult,
    ) -> tuple[ExecutionResult, ExitCondition]:
        """Spawn *command*, collect its output and finalize.

        Leaves the executor in ``RUNNING``; :meth:`execute` moves it to the
        terminal state once every pass of the job is done.
        """
        executable, args = command
        handle = _RunHandle(parser=ProgressParser(on_snapshot=self._publish))

        try:
            process = subprocess.Popen(
                [executable, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            logger.error("Could not launch %s: %s", executable, exc)
            raise ExecutionFailedError(exc) from exc

        collector = StreamCollector(
            process.stdout,  # type: ignore[arg-type]
            process.stderr,  # type: ignore[arg-type]
            on_stdout_chunk=handle.parser.feed,
        )
        handle.process = process
        handle.collector = collector
        collector.start()

        with self._lock:
            self._handle = handle
            self._set_state(ExecutorState.RUNNING)
        logger.info("rsync started (pid %d)", process.pid)

        try:
            returncode = process.wait()
        except BaseException:
            # Interrupted while waiting: do not leave rsync behind.
            process.kill()
            process.wait()
            collector.detach(self.detach_timeout)
            with self._lock:
                self._handle = None
            raise

        with self._lock:
            handle.exited = True

        if collector.detach(self.detach_timeout):
            handle.parser.flush()
        stdout, stderr = collector.buffers()

        with self._lock:
            cancelled = handle.cancel_requested
            kill_timer = handle.kill_timer
            self._handle = None
        if kill_timer is not None:
            kill_timer.cancel()

        condition = ExitCondition(returncode=returncode, cancelled=cancelled)
        result = finalize(placeholder, stdout, stderr, condition, datetime.now())

        logger.info(
            "Job %r finished: %s (exit %d, %d files, %d bytes)",
            job.name,
            result.status.value,
            returncode,
            result.files_transferred,
            result.bytes_transferred,
        )
        return result, condition

    def _verify(self, job: JobConfig, result: ExecutionResult) -> ExecutionResult:
        """Re-run *job* as a checksum dry run and fold its report into *result*.

        The sync's status and counters are kept.  Differences found by the
        second pass show up in the output; a pass that does not succeed adds
        its errors.
        """
        logger.info("Verifying job %r with a checksum dry run", job.name)
        check_job = replace(job, options=job.options.with_flag("checksum", True))
        command = build_command(check_job, dry_run=True, rsync_path=self.rsync_path)
        check, _ = self._run(job, command, ExecutionResult.started(job.id))

        errors = list(result.errors)
        if check.status is ExecutionStatus.CANCELLED:
            errors.append("Verification pass cancelled")
        elif check.status is not ExecutionStatus.SUCCESS:
            errors.extend(check.errors)
            errors.append(f"Verification pass finished with status {check.status.value}")
        return replace(
            result,
            output=f"{result.output}\n\n{VERIFICATION_HEADER}\n{check.output}",
            errors=tuple(errors),
        )

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _run_pre_hook(self, job: JobConfig) -> None:
        try:
            run_hook(job.pre_script or "", job.name, "starting", 0, timeout=self.hook_timeout)
        except OSError as exc:
            raise ExecutionFailedError(exc) from exc

    def _run_post_hook(self, job: JobConfig, result: ExecutionResult) -> None:
        try:
            run_hook(
                job.post_script or "",
                job.name,
                result.status.value,
                result.files_transferred,
                timeout=self.hook_timeout,
            )
        except OSError as exc:
            logger.error("Post-sync hook for job %r could not run: %s", job.name, exc)
