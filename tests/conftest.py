import threading
import time
from urllib.parse import unquote, urlparse

import pytest
from unittest.mock import MagicMock

from webshot.data_model import FetchFailure, FetchSuccess, FailureReason
from webshot.renderer import RenderEngine

FAKE_JPEG = b'\xff\xd8\xff\xe0fake-jpeg\xff\xd9'


@pytest.fixture(autouse=True)
def change_test_dir(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)


class FakeEngine(RenderEngine):
    """
    Render engine that never starts a browser. Behaviour is chosen by the
    markup: pages containing ``CRASH`` raise, pages containing ``HANG`` block
    until released, anything else returns a fixed image after ``delay``.
    """

    def __init__(self, image=FAKE_JPEG, delay=0.0):
        self.image = image
        self.delay = delay
        self.release = threading.Event()
        self.page_urls = []
        self.markups = []
        self.active = 0
        self.peak_active = 0
        self._lock = threading.Lock()

    def capture(self, page_url, width, height, timeout):
        with self._lock:
            self.page_urls.append(page_url)
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        try:
            path = unquote(urlparse(page_url).path)
            with open(path, 'rb') as page_fd:
                markup = page_fd.read()
            with self._lock:
                self.markups.append(markup)

            if b'CRASH' in markup:
                raise RuntimeError("browser crashed")
            if b'HANG' in markup:
                self.release.wait(10)
                return self.image
            if self.delay:
                time.sleep(self.delay)
            return self.image
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def fake_engine():
    engine = FakeEngine()
    yield engine
    engine.release.set()


def fake_fetch_factory(responses, delay=0.0):
    """
    Build a fetch function from a map of endpoint to FetchSuccess or
    FetchFailure. Unknown endpoints fail with a connection error.
    """
    calls = []
    lock = threading.Lock()

    def fake_fetch(url, timeout, cancel_token=None):
        with lock:
            calls.append(url)
        if delay:
            time.sleep(delay)
        outcome = responses.get(url)
        if outcome is None:
            return FetchFailure(FailureReason.CONNECTION_ERROR, "Name or service not known")
        return outcome

    fake_fetch.calls = calls
    return fake_fetch


def ok_page(text='hello'):
    return FetchSuccess(200, ("<html><body>%s</body></html>" % text).encode())


def mock_response(status_code=200, chunks=(b'<html></html>',)):
    resp = MagicMock()
    resp.status_code = status_code
    resp.iter_content.return_value = iter(chunks)
    return resp
