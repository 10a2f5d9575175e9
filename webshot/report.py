"""
Report aggregation for the capture pipeline.

The report is a single HTML file: a header written when the batch starts, one
entry appended per finished task in completion order, and a footer written
once when the batch is complete. Workers append concurrently; a lock
serializes the writes so entries never interleave.

Fragments are Jinja2 templates shipped in the package's ``templates``
directory and rendered with autoescaping, since hostnames and error strings
come from untrusted targets.

Classes:
    ReportAggregator: Owns the report file for one batch
"""

import datetime
import logging
import os
import threading
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from webshot.data_model import (BatchSummary, CaptureResult, ReportError,
                                ReportSealedError)

template_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')

template_env = Environment(
    loader=FileSystemLoader(template_dir),
    autoescape=select_autoescape(['html']))


class ReportAggregator:
    """
    Append-only HTML report for one capture batch.

    Attributes:
        path (str): Location of the report file
        title (str): Heading written into the report
        entry_count (int): Number of entries appended so far
        sealed (bool): True once the closing markup has been written

    Example:
        >>> report = ReportAggregator('/tmp/out/report.html')
        >>> report.open()
        >>> report.append(result)
        >>> report.seal(BatchSummary([result]))
    """

    def __init__(self, path: str, title: str = 'Webshot Report') -> None:
        self.path = path
        self.title = title
        self.entry_count = 0
        self.sealed = False
        self._opened = False
        self._lock = threading.Lock()

    @property
    def directory(self) -> str:
        return os.path.dirname(os.path.abspath(self.path))

    def _write(self, content: str, mode: str = 'a') -> None:
        try:
            with open(self.path, mode, encoding='utf-8') as report_fd:
                report_fd.write(content)
        except OSError as e:
            raise ReportError(self.path, str(e)) from e

    def open(self) -> None:
        """
        Write the report skeleton, replacing any file already at the path.

        Raises:
            ReportError: If the directory or the file cannot be created
        """
        with self._lock:
            try:
                os.makedirs(self.directory, exist_ok=True)
            except OSError as e:
                raise ReportError(self.path, str(e)) from e

            if os.path.isdir(self.path):
                raise ReportError(self.path, "path is a directory")

            header = template_env.get_template('report_header.html').render(
                title=self.title,
                started=datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S'))
            self._write(header + "\n", mode='w')
            self._opened = True
            self.entry_count = 0
            self.sealed = False

        logging.getLogger(__name__).debug("Opened report %s" % self.path)

    def _image_ref(self, result: CaptureResult) -> Optional[str]:
        if not result.image_path:
            return None
        image_path = os.path.abspath(result.image_path)
        try:
            ref = os.path.relpath(image_path, self.directory)
        except ValueError:
            # Different drive on Windows
            ref = image_path
        return ref.replace(os.path.sep, '/')

    def append(self, result: CaptureResult) -> None:
        """
        Append one entry for ``result``. Safe to call from several workers.

        Raises:
            ReportSealedError: If the report was already sealed
            ReportError: If the report was never opened or the write fails
        """
        entry = template_env.get_template('report_entry.html').render(
            result=result, image_ref=self._image_ref(result))

        with self._lock:
            if self.sealed:
                raise ReportSealedError(self.path, "cannot append %s to a sealed report" % result.endpoint)
            if not self._opened:
                raise ReportError(self.path, "report has not been opened")
            self._write(entry + "\n")
            self.entry_count += 1

    def seal(self, summary: Optional[BatchSummary] = None) -> None:
        """
        Write the closing markup. Called exactly once, after every task finished.

        Raises:
            ReportSealedError: If the report was already sealed
            ReportError: If the report was never opened or the write fails
        """
        footer = template_env.get_template('report_footer.html').render(
            summary=str(summary) if summary is not None else None)

        with self._lock:
            if self.sealed:
                raise ReportSealedError(self.path, "report is already sealed")
            if not self._opened:
                raise ReportError(self.path, "report has not been opened")
            self._write(footer + "\n")
            self.sealed = True

        logging.getLogger(__name__).info(
            "Sealed report %s with %d entries" % (self.path, self.entry_count))
