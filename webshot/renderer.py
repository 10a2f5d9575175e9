"""
Rendering stage of the capture pipeline.

The fetched markup is written to a transient file, loaded by a headless
browser and captured as a fixed-resolution image. Each render runs in its own
thread so a hung or crashing browser only costs the task that owns it, and the
transient file is removed on every exit path.

Classes:
    RenderEngine: Abstract browser binding used by the adapter
    PlaywrightEngine: Headless Chromium through Playwright
    RendererAdapter: Transient file handling, isolation and timeout enforcement
"""

import logging
import os
import shutil
import tempfile
import threading
import traceback
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from playwright.sync_api import sync_playwright

from webshot.data_model import (CancellationToken, FailureReason,
                                RenderFailure, RenderSuccess)

RenderOutcome = Union[RenderSuccess, RenderFailure]


class RenderEngine(ABC):
    """
    Abstraction for the underlying browser driver.

    Implementations MUST:
    - load ``page_url`` (a local file URL) and wait for its load event,
    - ignore certificate errors for any subresource the page pulls in,
    - suppress page script errors,
    - refuse navigation away from ``page_url``,
    - give up after ``timeout`` seconds.
    """

    @abstractmethod
    def capture(self, page_url: str, width: int, height: int, timeout: float) -> bytes:
        """Render ``page_url`` in a ``width`` x ``height`` viewport and return the encoded image."""


class PlaywrightEngine(RenderEngine):
    """
    Headless Chromium screenshot engine.

    A browser is launched for every capture. Playwright objects are bound to
    the thread that created them, and a fresh browser per page keeps one
    broken page from poisoning the next.

    Args:
        image_format (str): 'jpeg' or 'png'
        quality (int): JPEG quality, ignored for PNG
    """

    def __init__(self, image_format: str = 'jpeg', quality: int = 80) -> None:
        self.image_format = image_format
        self.quality = quality

    def capture(self, page_url: str, width: int, height: int, timeout: float) -> bytes:
        timeout_ms = int(timeout * 1000)
        with sync_playwright() as playwright:
            browser = playwright.chromium.launch(
                headless=True, args=["--no-sandbox", "--ignore-certificate-errors"])
            try:
                context = browser.new_context(
                    viewport={"width": width, "height": height},
                    ignore_https_errors=True)
                page = context.new_page()
                page.set_default_timeout(timeout_ms)
                page.on("pageerror", lambda err: logging.getLogger(__name__).debug(
                    "Script error suppressed on %s: %s" % (page_url, err)))

                def block_navigation(route):
                    request = route.request
                    if (request.is_navigation_request() and request.frame == page.main_frame
                            and request.url != page_url):
                        route.abort()
                    else:
                        route.continue_()

                page.route("**/*", block_navigation)
                page.goto(page_url, wait_until="load", timeout=timeout_ms)

                kwargs = {"type": self.image_format, "full_page": False}
                if self.image_format == 'jpeg':
                    kwargs["quality"] = self.quality
                return page.screenshot(**kwargs)
            finally:
                browser.close()


class RendererAdapter:
    """
    Runs one render per call in an isolated thread with its own timeout.

    Attributes:
        engine (RenderEngine): Browser binding doing the actual rendering
        width (int): Viewport width in pixels
        height (int): Viewport height in pixels
        render_timeout (float): Seconds to wait for the engine
        work_dir (Optional[str]): Parent for transient directories, system temp when None

    Example:
        >>> adapter = RendererAdapter(PlaywrightEngine(), render_timeout=30)
        >>> outcome = adapter.render(b"<html>hello</html>", "http_10_0_0_1_80")
        >>> isinstance(outcome, RenderSuccess)
        True
    """

    def __init__(self, engine: RenderEngine, width: int = 1920, height: int = 1080,
                 render_timeout: float = 60, work_dir: Optional[str] = None) -> None:
        self.engine = engine
        self.width = width
        self.height = height
        self.render_timeout = render_timeout
        self.work_dir = work_dir

    def render(self, markup: bytes, artifact_id: str,
               cancel_token: Optional[CancellationToken] = None) -> RenderOutcome:
        """
        Render ``markup`` and return the image or the reason it failed.

        Args:
            markup (bytes): Page content as fetched
            artifact_id (str): File-safe name for the transient markup file
            cancel_token (Optional[CancellationToken]): Cancelling wakes the
                wait immediately and yields FailureReason.CANCELLED

        Returns:
            RenderOutcome: RenderSuccess with the encoded image, or
            RenderFailure with RENDER_TIMEOUT, ENGINE_ERROR,
            ARTIFACT_UNWRITABLE or CANCELLED.
        """
        if cancel_token is not None and cancel_token.cancelled:
            return RenderFailure(FailureReason.CANCELLED, "Cancelled before render")

        # Fresh directory per render so duplicate endpoints never share a file
        try:
            temp_dir = tempfile.mkdtemp(prefix="webshot-", dir=self.work_dir)
        except OSError as e:
            return RenderFailure(FailureReason.ARTIFACT_UNWRITABLE, str(e))

        try:
            html_path = os.path.join(temp_dir, "%s.html" % artifact_id)
            try:
                with open(html_path, 'wb') as html_fd:
                    html_fd.write(markup)
            except OSError as e:
                logging.getLogger(__name__).error(
                    "Unable to write transient markup %s: %s" % (html_path, e))
                return RenderFailure(FailureReason.ARTIFACT_UNWRITABLE, str(e))

            return self._render_isolated(Path(html_path).resolve().as_uri(), artifact_id, cancel_token)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _render_isolated(self, page_url: str, artifact_id: str,
                         cancel_token: Optional[CancellationToken]) -> RenderOutcome:
        finished = threading.Event()
        outcome = {}

        def render_thread():
            try:
                outcome['image'] = self.engine.capture(
                    page_url, self.width, self.height, self.render_timeout)
            except Exception as e:
                outcome['error'] = e
                logging.getLogger(__name__).debug(traceback.format_exc())
            finally:
                finished.set()

        if cancel_token is not None:
            cancel_token.link(finished)

        th = threading.Thread(target=render_thread, name="render-%s" % artifact_id, daemon=True)
        th.start()

        try:
            completed = finished.wait(self.render_timeout)
        finally:
            if cancel_token is not None:
                cancel_token.unlink(finished)

        if not completed:
            logging.getLogger(__name__).warning(
                "Render of %s did not finish within %s seconds" % (artifact_id, self.render_timeout))
            return RenderFailure(FailureReason.RENDER_TIMEOUT,
                                 "Render exceeded %s seconds" % self.render_timeout)

        if 'image' not in outcome and 'error' not in outcome:
            # Woken by the cancellation token
            return RenderFailure(FailureReason.CANCELLED, "Cancelled during render")

        if 'error' in outcome:
            err = outcome['error']
            return RenderFailure(FailureReason.ENGINE_ERROR, "%s: %s" % (type(err).__name__, err))

        image = outcome['image']
        if not image:
            return RenderFailure(FailureReason.ENGINE_ERROR, "Engine returned an empty image")
        return RenderSuccess(image)
