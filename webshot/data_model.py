"""
Webshot Data Model Module

This module provides the core data structures shared by every stage of the
webshot capture pipeline. It defines the task lifecycle, the typed outcomes of
the fetch and render stages, the per-endpoint capture result, the batch
configuration and the concurrency ledger used by the orchestrator.

The module handles:
- Task state definitions and the allowed transitions between them
- Typed fetch/render outcomes so failures never travel as exceptions
- Batch configuration and validation
- Shared counters with a blocking completion wait
- The exception hierarchy for fatal (batch level) errors

"""

import enum
import threading
import time
from typing import List, Optional, Callable

from webshot.scan_utils import get_artifact_id

# Supported image encodings for rendered screenshots
image_formats: List[str] = ['jpeg', 'png']


class WebshotError(Exception):
    """
    Base class for all fatal webshot errors.

    Task level problems (unreachable hosts, broken pages) are never raised;
    they are recorded on a CaptureResult. Anything derived from this class
    aborts the run it is raised in.
    """


class ConfigurationError(WebshotError):
    """
    Raised when a batch option is missing or out of range.

    Example:
        >>> CaptureConfig(threads=0)
        Traceback (most recent call last):
        ...
        ConfigurationError: Invalid value for 'threads': 0 (must be >= 1)
    """


class ReportError(WebshotError):
    """
    Raised when the report artifact cannot be opened, written or sealed.

    Attributes:
        path (str): Path of the report file that failed
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__("Report error for '%s': %s" % (path, message))


class ReportSealedError(ReportError):
    """Raised when a sealed report receives another entry or a second seal."""


class EndpointSourceError(WebshotError):
    """Raised when an endpoint input file cannot be read or parsed."""


class InvalidTransitionError(WebshotError):
    """Raised when a CaptureTask is moved to a state it cannot reach."""


class TaskState(enum.Enum):
    """
    Enumeration of the states a capture task moves through.

    Values:
        PENDING (1): Task created, waiting for a worker
        FETCHING (2): HTTP request in flight
        FETCHED (3): Response received
        FETCH_FAILED (4): Request failed (terminal)
        RENDERING (5): Markup handed to the rendering engine
        RENDERED (6): Image produced
        RENDER_FAILED (7): Rendering failed (terminal)
        FINALIZED (8): Result recorded (terminal)
    """
    PENDING = 1
    FETCHING = 2
    FETCHED = 3
    FETCH_FAILED = 4
    RENDERING = 5
    RENDERED = 6
    RENDER_FAILED = 7
    FINALIZED = 8

    def __str__(self) -> str:
        return self.name

    @property
    def terminal(self) -> bool:
        return self in (TaskState.FETCH_FAILED, TaskState.RENDER_FAILED, TaskState.FINALIZED)


# Allowed task state transitions. A fetched response whose status is not
# rendered goes straight to FINALIZED.
task_transitions = {
    TaskState.PENDING: {TaskState.FETCHING},
    TaskState.FETCHING: {TaskState.FETCHED, TaskState.FETCH_FAILED},
    TaskState.FETCHED: {TaskState.RENDERING, TaskState.FINALIZED},
    TaskState.RENDERING: {TaskState.RENDERED, TaskState.RENDER_FAILED},
    TaskState.RENDERED: {TaskState.FINALIZED},
    TaskState.FETCH_FAILED: set(),
    TaskState.RENDER_FAILED: set(),
    TaskState.FINALIZED: set(),
}


class FailureReason(enum.Enum):
    """
    Enumeration of the reasons a capture task can end without an image.

    Fetch stage: TIMEOUT, CONNECTION_ERROR, TLS_ERROR, MALFORMED_RESPONSE.
    Render stage: RENDER_TIMEOUT, ENGINE_ERROR, ARTIFACT_UNWRITABLE.
    Either stage: CANCELLED.
    NON_SUCCESS_STATUS marks a response that was fetched but not rendered
    because its HTTP status is outside the 2xx range.
    """
    TIMEOUT = 'timeout'
    CONNECTION_ERROR = 'connection error'
    TLS_ERROR = 'tls error'
    MALFORMED_RESPONSE = 'malformed response'
    RENDER_TIMEOUT = 'render timeout'
    ENGINE_ERROR = 'engine error'
    ARTIFACT_UNWRITABLE = 'artifact unwritable'
    CANCELLED = 'cancelled'
    NON_SUCCESS_STATUS = 'non-success status'

    def __str__(self) -> str:
        return self.value


class FetchSuccess:
    """Response of a completed HTTP request, whatever its status code."""

    def __init__(self, status_code: int, body: bytes) -> None:
        self.status_code = status_code
        self.body = body

    def __repr__(self) -> str:
        return "FetchSuccess(status_code=%d, body=<%d bytes>)" % (self.status_code, len(self.body))


class FetchFailure:
    """An HTTP request that did not produce a response."""

    def __init__(self, reason: FailureReason, detail: str = '') -> None:
        self.reason = reason
        self.detail = detail

    def __repr__(self) -> str:
        return "FetchFailure(reason=%s, detail=%r)" % (self.reason, self.detail)


class RenderSuccess:
    """Encoded image produced by the rendering engine."""

    def __init__(self, image: bytes) -> None:
        self.image = image

    def __repr__(self) -> str:
        return "RenderSuccess(image=<%d bytes>)" % len(self.image)


class RenderFailure:
    """A render that did not produce an image."""

    def __init__(self, reason: FailureReason, detail: str = '') -> None:
        self.reason = reason
        self.detail = detail

    def __repr__(self) -> str:
        return "RenderFailure(reason=%s, detail=%r)" % (self.reason, self.detail)


class CancellationToken:
    """
    Thread-safe cancellation flag threaded through fetch and render.

    Waiters that block on their own event can link it to the token so that a
    cancel wakes them immediately instead of at their timeout.

    Example:
        >>> token = CancellationToken()
        >>> done = threading.Event()
        >>> token.link(done)
        >>> token.cancel()
        >>> done.is_set()
        True
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def link(self, event: threading.Event) -> None:
        """Set ``event`` when the token is cancelled (immediately if it already is)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(event.set)
                return
        event.set()

    def unlink(self, event: threading.Event) -> None:
        """Stop setting ``event`` on cancel; called once its waiter has returned."""
        with self._lock:
            if event.set in self._callbacks:
                self._callbacks.remove(event.set)


class CaptureTask():
    """
    One unit of capture work for a single endpoint.

    The task is created by the orchestrator and only mutated by the worker
    thread executing it, so it carries no lock of its own.

    Attributes:
        endpoint (str): The URL being captured
        artifact_id (str): File-safe name derived from the endpoint; stable
            across runs so outputs overwrite the previous run's
        state (TaskState): Current lifecycle state
        failure_reason (Optional[FailureReason]): Why the task ended without an image
        error (Optional[str]): Human readable failure detail
        status_code (Optional[int]): HTTP status once fetched
    """

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        self.artifact_id = get_artifact_id(endpoint)
        self.state = TaskState.PENDING
        self.failure_reason: Optional[FailureReason] = None
        self.error: Optional[str] = None
        self.status_code: Optional[int] = None
        self.image_path: Optional[str] = None
        self.start_time = time.monotonic()

    def transition(self, new_state: TaskState) -> None:
        """
        Move the task to ``new_state``.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move
        """
        if new_state not in task_transitions[self.state]:
            raise InvalidTransitionError(
                "Task for %s cannot move from %s to %s" % (self.endpoint, self.state, new_state))
        self.state = new_state

    def fail(self, new_state: TaskState, reason: FailureReason, detail: str = '') -> None:
        self.transition(new_state)
        self.failure_reason = reason
        self.error = detail or str(reason)

    def to_result(self) -> 'CaptureResult':
        return CaptureResult(
            endpoint=self.endpoint,
            state=self.state,
            status_code=self.status_code,
            image_path=self.image_path,
            failure_reason=self.failure_reason,
            error=self.error,
            elapsed=time.monotonic() - self.start_time)

    def __repr__(self) -> str:
        return "CaptureTask(%s, %s)" % (self.endpoint, self.state)


class CaptureResult():
    """
    Outcome of one capture task, handed once to the report aggregator.

    Attributes:
        endpoint (str): The captured URL
        state (TaskState): Terminal state the task ended in
        status_code (Optional[int]): HTTP status, None when the fetch failed
        image_path (Optional[str]): Path of the screenshot, None on failure
        failure_reason (Optional[FailureReason]): Failure category, None on success
        error (Optional[str]): Failure detail, None on success
        elapsed (float): Seconds spent on the task
    """

    def __init__(self, endpoint: str, state: TaskState, status_code: Optional[int] = None,
                 image_path: Optional[str] = None, failure_reason: Optional[FailureReason] = None,
                 error: Optional[str] = None, elapsed: float = 0.0) -> None:
        self.endpoint = endpoint
        self.state = state
        self.status_code = status_code
        self.image_path = image_path
        self.failure_reason = failure_reason
        self.error = error
        self.elapsed = elapsed

    @property
    def succeeded(self) -> bool:
        return self.image_path is not None

    @property
    def status_marker(self) -> str:
        """HTTP status when there is one, otherwise the failure marker."""
        if self.status_code is not None:
            return str(self.status_code)
        if self.failure_reason is not None:
            return "FAILED (%s)" % self.failure_reason
        return "FAILED"

    def __repr__(self) -> str:
        return "CaptureResult(%s, %s, status=%s, image=%s)" % (
            self.endpoint, self.state, self.status_code, self.image_path)


class BatchSummary:
    """
    Counts reported at the end of a batch.

    ``failed`` covers every task without an image; ``non_success`` is the
    subset that was fetched but skipped because of its HTTP status.
    """

    def __init__(self, results: List[CaptureResult]) -> None:
        self.submitted = len(results)
        self.succeeded = sum(1 for result in results if result.succeeded)
        self.failed = self.submitted - self.succeeded
        self.non_success = sum(
            1 for result in results if result.failure_reason == FailureReason.NON_SUCCESS_STATUS)

    def __str__(self) -> str:
        return "%d submitted, %d succeeded, %d failed (%d non-success status)" % (
            self.submitted, self.succeeded, self.failed, self.non_success)


def _check_int(name: str, value, minimum: int, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(
            "Invalid value for '%s': %r (must be an integer)" % (name, value))
    if value < minimum:
        raise ConfigurationError(
            "Invalid value for '%s': %d (must be >= %d)" % (name, value, minimum))
    if maximum is not None and value > maximum:
        raise ConfigurationError(
            "Invalid value for '%s': %d (must be <= %d)" % (name, value, maximum))
    return value


class CaptureConfig():
    """
    Options for one capture batch, validated on construction.

    Attributes:
        threads (int): Concurrency ceiling, maximum tasks in flight (default 1)
        timeout (int): Per-request fetch timeout in seconds (default 30)
        render_timeout (int): Per-render timeout in seconds (default 60)
        width (int): Screenshot width in pixels (default 1920)
        height (int): Screenshot height in pixels (default 1080)
        image_format (str): 'jpeg' or 'png' (default 'jpeg')
        quality (int): JPEG quality 1-100 (default 80)
        report_path (str): Path of the HTML report (default 'webshot_report.html')

    Raises:
        ConfigurationError: If any option is out of range

    Example:
        >>> config = CaptureConfig(threads=4, timeout=5)
        >>> config.image_extension
        'jpeg'
    """

    def __init__(self, threads: int = 1, timeout: int = 30, render_timeout: int = 60,
                 width: int = 1920, height: int = 1080, image_format: str = 'jpeg',
                 quality: int = 80, report_path: str = 'webshot_report.html') -> None:
        self.threads = _check_int('threads', threads, 1)
        self.timeout = _check_int('timeout', timeout, 1)
        self.render_timeout = _check_int('render_timeout', render_timeout, 1)
        self.width = _check_int('width', width, 1)
        self.height = _check_int('height', height, 1)
        self.quality = _check_int('quality', quality, 1, 100)

        if image_format not in image_formats:
            raise ConfigurationError("Invalid value for 'image_format': %r (must be one of %s)" % (
                image_format, ", ".join(image_formats)))
        self.image_format = image_format

        if not report_path or not str(report_path).strip():
            raise ConfigurationError("Invalid value for 'report_path': %r" % (report_path,))
        self.report_path = str(report_path)

    @property
    def image_extension(self) -> str:
        return self.image_format

    def __repr__(self) -> str:
        return ("CaptureConfig(threads=%d, timeout=%d, render_timeout=%d, resolution=%dx%d, "
                "format=%s, report=%s)" % (self.threads, self.timeout, self.render_timeout,
                                           self.width, self.height, self.image_format, self.report_path))


class ConcurrencyLedger:
    """
    Active and completed task counters for one orchestrator run.

    The ledger is owned by a single run and shared by handle with its workers,
    so several batches can run side by side in one process. Updates happen
    under a condition variable; ``wait_for_completion`` blocks on it instead
    of polling.

    Attributes:
        ceiling (int): Maximum number of concurrently active workers
        total_submitted (int): Number of tasks in the batch
        active_workers (int): Tasks between FETCHING and their terminal state
        completed_tasks (int): Tasks that reached a terminal state
        peak_active (int): Highest active_workers value observed
    """

    def __init__(self, ceiling: int, total_submitted: int = 0) -> None:
        self.ceiling = ceiling
        self.total_submitted = total_submitted
        self.active_workers = 0
        self.completed_tasks = 0
        self.peak_active = 0
        self._condition = threading.Condition()

    def task_started(self) -> None:
        with self._condition:
            self.active_workers += 1
            if self.active_workers > self.peak_active:
                self.peak_active = self.active_workers

    def task_finished(self) -> None:
        """Count a task as completed and release its worker slot."""
        with self._condition:
            self.completed_tasks += 1
            self.active_workers -= 1
            self._condition.notify_all()

    @property
    def done(self) -> bool:
        with self._condition:
            return self.completed_tasks >= self.total_submitted

    def wait_for_completion(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every submitted task has completed.

        Returns:
            bool: True when the batch completed, False if ``timeout`` expired first
        """
        with self._condition:
            return self._condition.wait_for(
                lambda: self.completed_tasks >= self.total_submitted, timeout=timeout)
