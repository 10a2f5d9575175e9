"""
Screenshot Capture Module.

This module drives the capture pipeline: every endpoint becomes a CaptureTask
executed on a bounded thread pool, each task fetches its endpoint, renders the
response, persists the image next to the report and hands its result to the
report aggregator. The orchestrator blocks until every task has reached a
terminal state and then seals the report.

Task failures (unreachable hosts, TLS problems, broken pages, render timeouts)
are recorded in the report and never abort the batch. Report failures are
fatal, since the report is the only deliverable.

Entries are appended in completion order, which changes from run to run when
more than one thread is used.

Classes:
    WebshotTool: Tool entry point, runs a batch through luigi
    CaptureBatch: Input and result holder for one batch
    CaptureOrchestrator: Bounded-concurrency fetch/render/report driver
    CaptureScan: Luigi task producing the sealed report

Functions:
    write_image: Atomically write an image file
    run_batch: Build the pipeline for a batch and run it

Example:
    Basic usage::

        batch = CaptureBatch(['http://10.0.0.1:80'], CaptureConfig(threads=2))
        if WebshotTool.webshot_scan_func(batch):
            print(batch.summary)
"""

import logging
import os
import threading
import uuid
from typing import Callable, List, Optional

import luigi

from webshot import fetcher, scan_utils
from webshot.data_model import (BatchSummary, CancellationToken, CaptureConfig,
                                CaptureResult, CaptureTask, ConcurrencyLedger,
                                ConfigurationError, FailureReason, FetchFailure,
                                RenderFailure, ReportError, TaskState,
                                WebshotError)
from webshot.renderer import PlaywrightEngine, RenderEngine, RendererAdapter
from webshot.report import ReportAggregator


class WebshotTool():
    """
    Webshot screenshot collection tool.

    Attributes:
        name (str): The tool identifier ('webshot')
        description (str): Human-readable description of the tool
        scan_func (callable): Static method running a capture batch
    """

    def __init__(self) -> None:
        self.name = 'webshot'
        self.description = ('Fetches web endpoints ignoring certificate errors, screenshots them '
                            'with headless Chromium and writes an HTML report.')
        self.scan_func = WebshotTool.webshot_scan_func

        # Keep browser driver chatter out of the operator output
        logging.getLogger("asyncio").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)

    @staticmethod
    def webshot_scan_func(scan_input: 'CaptureBatch') -> bool:
        """
        Run a capture batch.

        Builds and runs the CaptureScan luigi task with the local scheduler.

        Args:
            scan_input (CaptureBatch): Endpoints and configuration for the batch

        Returns:
            bool: True once the report is sealed, False if the batch failed.
            On failure ``scan_input.error`` holds the fatal error.
        """
        luigi_run_result = luigi.build([CaptureScan(
            scan_input=scan_input)], local_scheduler=True, detailed_summary=True)
        if luigi_run_result and luigi_run_result.status != luigi.execution_summary.LuigiStatusCode.SUCCESS:
            return False
        return scan_input.error is None


class CaptureBatch():
    """
    Input and results of one capture batch.

    Attributes:
        id (str): Unique batch identifier
        endpoints (List[str]): Endpoints to capture
        config (CaptureConfig): Batch options
        engine (Optional[RenderEngine]): Rendering engine, Playwright when None
        results (Optional[List[CaptureResult]]): Results in completion order once run
        summary (Optional[BatchSummary]): Counts once run
        error (Optional[WebshotError]): Fatal error that stopped the batch
    """

    def __init__(self, endpoints: List[str], config: Optional[CaptureConfig] = None,
                 engine: Optional[RenderEngine] = None) -> None:
        self.id = uuid.uuid4().hex
        self.endpoints = list(endpoints)
        self.config = config or CaptureConfig()
        self.engine = engine
        self.results: Optional[List[CaptureResult]] = None
        self.summary: Optional[BatchSummary] = None
        self.error: Optional[WebshotError] = None

    def __str__(self) -> str:
        return "CaptureBatch(%s)" % self.id

    def __hash__(self) -> int:
        return hash(self.id)


def write_image(image_path: str, image: bytes) -> None:
    """
    Write ``image`` to ``image_path`` through a temporary file and a rename,
    so a reader never sees a partial image.
    """
    part_path = "%s.part-%d" % (image_path, threading.get_ident())
    try:
        with open(part_path, 'wb') as image_fd:
            image_fd.write(image)
        os.replace(part_path, image_path)
    finally:
        if os.path.exists(part_path):
            os.remove(part_path)


class CaptureOrchestrator:
    """
    Bounded-concurrency driver for a batch of capture tasks.

    At most ``ceiling`` tasks run at once; the rest wait in the pool queue.
    Within a task the stages run strictly in order: fetch, render, persist,
    report. Across tasks nothing is ordered.

    Attributes:
        renderer (RendererAdapter): Render stage
        report (ReportAggregator): Report the results are appended to
        ceiling (int): Maximum number of concurrently running tasks
        fetch_timeout (float): Per-request fetch timeout in seconds
        image_extension (str): File extension for screenshots
        fetch_func (Callable): Fetch stage, ``fetcher.fetch`` by default
        render_policy (Callable): Decides which HTTP statuses get rendered
        cancel_token (CancellationToken): Threaded through every fetch and render
        ledger (Optional[ConcurrencyLedger]): Counters of the current or last run

    Example:
        >>> orchestrator = CaptureOrchestrator(adapter, ReportAggregator('report.html'), ceiling=2)
        >>> results = orchestrator.run(['http://10.0.0.1:80', 'https://10.0.0.2:443'])
        >>> orchestrator.ledger.peak_active <= 2
        True
    """

    def __init__(self, renderer: RendererAdapter, report: ReportAggregator, ceiling: int = 1,
                 fetch_timeout: float = 30, image_extension: str = 'jpeg',
                 fetch_func: Callable = fetcher.fetch,
                 render_policy: Callable[[int], bool] = fetcher.is_renderable_status) -> None:
        if ceiling < 1:
            raise ConfigurationError("Invalid value for 'threads': %r (must be >= 1)" % (ceiling,))
        self.renderer = renderer
        self.report = report
        self.ceiling = ceiling
        self.fetch_timeout = fetch_timeout
        self.image_extension = image_extension
        self.fetch_func = fetch_func
        self.render_policy = render_policy
        self.cancel_token = CancellationToken()
        self.ledger: Optional[ConcurrencyLedger] = None
        self._results: List[CaptureResult] = []
        self._results_lock = threading.Lock()
        self._fatal_error: Optional[ReportError] = None

    def cancel(self) -> None:
        """Make every pending fetch and render finish as CANCELLED."""
        self.cancel_token.cancel()

    def image_path(self, task: CaptureTask) -> str:
        return os.path.join(self.report.directory, "%s.%s" % (task.artifact_id, self.image_extension))

    def _remove_stale_images(self, tasks: List[CaptureTask]) -> None:
        for task in tasks:
            image_path = self.image_path(task)
            if os.path.isfile(image_path):
                try:
                    os.remove(image_path)
                except OSError as e:
                    raise ReportError(self.report.path, "unable to remove stale image %s: %s" % (image_path, e))

    def run(self, endpoints: List[str]) -> List[CaptureResult]:
        """
        Capture every endpoint and seal the report.

        Blocks until every task has reached a terminal state. Duplicate
        endpoints are captured as independent tasks.

        Args:
            endpoints (List[str]): Endpoints to capture; bare host:port
                entries are given an http:// scheme

        Returns:
            List[CaptureResult]: One result per endpoint, in completion order

        Raises:
            ConfigurationError: If an endpoint is empty (nothing is submitted)
            ReportError: If the report cannot be opened, written or sealed
        """
        for endpoint in endpoints:
            if endpoint is None or not str(endpoint).strip():
                raise ConfigurationError("Invalid endpoint: %r (endpoints cannot be empty)" % (endpoint,))

        tasks = [CaptureTask(scan_utils.normalize_endpoint(endpoint)) for endpoint in endpoints]

        self.report.open()
        self._remove_stale_images(tasks)

        self.ledger = ConcurrencyLedger(self.ceiling, len(tasks))
        self._results = []
        self._fatal_error = None

        logging.getLogger(__name__).info(
            "Capturing %d endpoints with %d threads" % (len(tasks), self.ceiling))

        executor = scan_utils.ThreadExecutorWrapper(max_workers=self.ceiling, name='capture')
        try:
            for task in tasks:
                executor.submit(self._run_task, task, self.ledger)

            self.ledger.wait_for_completion()
        finally:
            executor.shutdown(wait=True)

        if self._fatal_error is not None:
            raise self._fatal_error

        results = list(self._results)
        summary = BatchSummary(results)
        self.report.seal(summary)
        logging.getLogger(__name__).info("Capture complete: %s" % summary)
        return results

    def _run_task(self, task: CaptureTask, ledger: ConcurrencyLedger) -> None:
        ledger.task_started()
        try:
            try:
                self._capture(task)
            except Exception as e:
                logging.getLogger(__name__).exception("Unexpected error capturing %s" % task.endpoint)
                self._abort_task(task, e)

            result = task.to_result()
            self._log_result(result)

            with self._results_lock:
                self._results.append(result)
                if self._fatal_error is None:
                    try:
                        self.report.append(result)
                    except ReportError as e:
                        logging.getLogger(__name__).error(str(e))
                        self._fatal_error = e
        finally:
            ledger.task_finished()

    def _capture(self, task: CaptureTask) -> None:
        task.transition(TaskState.FETCHING)
        fetch_outcome = self.fetch_func(task.endpoint, self.fetch_timeout, self.cancel_token)
        if isinstance(fetch_outcome, FetchFailure):
            task.fail(TaskState.FETCH_FAILED, fetch_outcome.reason, fetch_outcome.detail)
            return

        task.transition(TaskState.FETCHED)
        task.status_code = fetch_outcome.status_code
        if not self.render_policy(fetch_outcome.status_code):
            task.fail(TaskState.FINALIZED, FailureReason.NON_SUCCESS_STATUS,
                      "HTTP status %d not rendered" % fetch_outcome.status_code)
            return

        task.transition(TaskState.RENDERING)
        render_outcome = self.renderer.render(fetch_outcome.body, task.artifact_id, self.cancel_token)
        if isinstance(render_outcome, RenderFailure):
            task.fail(TaskState.RENDER_FAILED, render_outcome.reason, render_outcome.detail)
            return

        image_path = self.image_path(task)
        try:
            write_image(image_path, render_outcome.image)
        except OSError as e:
            task.fail(TaskState.RENDER_FAILED, FailureReason.ARTIFACT_UNWRITABLE,
                      "Unable to write %s: %s" % (image_path, e))
            return

        task.image_path = image_path
        task.transition(TaskState.RENDERED)
        task.transition(TaskState.FINALIZED)

    def _abort_task(self, task: CaptureTask, err: Exception) -> None:
        # Force a terminal state for an error the stages did not anticipate
        if task.state.terminal:
            return
        if task.status_code is None:
            task.state = TaskState.FETCH_FAILED
            task.failure_reason = FailureReason.CONNECTION_ERROR
        else:
            task.state = TaskState.RENDER_FAILED
            task.failure_reason = FailureReason.ENGINE_ERROR
        task.image_path = None
        task.error = "%s: %s" % (type(err).__name__, err)

    def _log_result(self, result: CaptureResult) -> None:
        if result.succeeded:
            logging.getLogger(__name__).info(
                "Captured %s (status %s) -> %s" % (result.endpoint, result.status_code, result.image_path))
        elif result.failure_reason == FailureReason.NON_SUCCESS_STATUS:
            logging.getLogger(__name__).info(
                "No screenshot for %s: HTTP status %s" % (result.endpoint, result.status_code))
        else:
            logging.getLogger(__name__).warning(
                "Timeout or error capturing %s: %s (%s)" % (result.endpoint, result.failure_reason, result.error))


@scan_utils.execution_time
def run_batch(batch: CaptureBatch) -> List[CaptureResult]:
    """
    Build the pipeline for ``batch`` from its configuration and run it.

    Returns:
        List[CaptureResult]: Results in completion order

    Raises:
        WebshotError: On configuration or report errors
    """
    config = batch.config

    engine = batch.engine
    if engine is None:
        engine = PlaywrightEngine(image_format=config.image_format, quality=config.quality)

    adapter = RendererAdapter(engine, width=config.width, height=config.height,
                              render_timeout=config.render_timeout)
    report = ReportAggregator(config.report_path)
    orchestrator = CaptureOrchestrator(adapter, report, ceiling=config.threads,
                                       fetch_timeout=config.timeout,
                                       image_extension=config.image_extension)
    results = orchestrator.run(batch.endpoints)
    batch.summary = BatchSummary(results)
    return results


class CaptureScan(luigi.Task):
    """
    Luigi task that captures a batch and produces the sealed report.

    The task is complete only once it has run in this process, so a report
    left by a previous run is always regenerated rather than treated as done.

    Attributes:
        scan_input (luigi.Parameter): The CaptureBatch to run
    """

    scan_input = luigi.Parameter()

    def output(self) -> luigi.LocalTarget:
        return luigi.LocalTarget(self.scan_input.config.report_path)

    def complete(self) -> bool:
        return self.scan_input.results is not None and self.output().exists()

    def run(self) -> None:
        batch = self.scan_input
        try:
            batch.results = run_batch(batch)
        except WebshotError as e:
            batch.error = e
            raise
