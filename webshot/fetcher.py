"""
HTTP fetch stage of the capture pipeline.

This module performs the single GET request made against each endpoint. It
never validates certificates, so self-signed, expired and mismatched
certificates are fetched like any other site, and it converts every transport
problem into a typed FetchFailure instead of raising.

The timeout is a hard ceiling on the whole request. The request runs in its
own thread and the caller stops waiting at the deadline, so a server that
drips bytes, in the headers or the body, cannot hold a worker past it.

Functions:
    fetch: Fetch one endpoint and return a FetchSuccess or FetchFailure
    is_renderable_status: Default policy deciding which responses are rendered
"""

import logging
import socket
import threading
import time
from typing import Optional, Union

import requests
from requests import exceptions as req_exc
from urllib3.exceptions import ReadTimeoutError

from webshot import scan_utils
from webshot.data_model import (CancellationToken, FailureReason, FetchFailure,
                                FetchSuccess)

# Target sites routinely present broken certificates
requests.packages.urllib3.disable_warnings()

# Responses are truncated past this size
MAX_BODY_BYTES = 10 * 1024 * 1024
CHUNK_SIZE = 64 * 1024

default_headers = {
    'User-Agent': scan_utils.custom_user_agent,
    # Some hosting DoS filters flag requests that do not ask for HTML
    'Accept': 'text/html',
}

FetchOutcome = Union[FetchSuccess, FetchFailure]


def is_renderable_status(status_code: int) -> bool:
    """Only 2xx responses are rendered; others are recorded without an image."""
    return 200 <= status_code < 300


def _read_body(resp: requests.Response, deadline: float, url: str) -> bytes:
    body = bytearray()
    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
        if time.monotonic() > deadline:
            raise req_exc.ReadTimeout("Body of %s not received before the deadline" % url)
        body.extend(chunk)
        if len(body) >= MAX_BODY_BYTES:
            logging.getLogger(__name__).debug(
                "Truncating response from %s at %d bytes" % (url, MAX_BODY_BYTES))
            del body[MAX_BODY_BYTES:]
            break
    return bytes(body)


class _PendingRequest:
    """
    State shared between ``fetch`` and the thread doing the blocking I/O.

    Once the caller abandons the request (deadline or cancellation) any
    response, present or future, has its socket shut down so the blocked
    thread returns as well.
    """

    def __init__(self) -> None:
        self.finished = threading.Event()
        self.outcome: Optional[FetchOutcome] = None
        self.error: Optional[Exception] = None
        self.abandoned = False
        self._response: Optional[requests.Response] = None
        self._lock = threading.Lock()

    def attach(self, resp: requests.Response) -> bool:
        with self._lock:
            if not self.abandoned:
                self._response = resp
                return True
        _abort_response(resp)
        return False

    def abandon(self) -> None:
        with self._lock:
            self.abandoned = True
            resp = self._response
        if resp is not None:
            _abort_response(resp)


def _abort_response(resp: requests.Response) -> None:
    # Closing a socket does not wake a recv blocked in another thread, shutdown does
    connection = getattr(resp.raw, '_connection', None)
    sock = getattr(connection, 'sock', None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    resp.close()


def _perform(url: str, timeout: float, deadline: float, request: _PendingRequest) -> None:
    resp = None
    try:
        resp = requests.get(url, headers=default_headers, verify=False,
                            timeout=timeout, stream=True)
        if not request.attach(resp):
            return
        body = _read_body(resp, deadline, url)
        request.outcome = FetchSuccess(resp.status_code, body)

    # Order matters: ConnectTimeout is also a ConnectionError and SSLError
    # is a ConnectionError too.
    except req_exc.Timeout as e:
        request.outcome = FetchFailure(FailureReason.TIMEOUT, str(e))
    except req_exc.SSLError as e:
        request.outcome = FetchFailure(FailureReason.TLS_ERROR, str(e))
    except (req_exc.ChunkedEncodingError, req_exc.ContentDecodingError) as e:
        request.outcome = FetchFailure(FailureReason.MALFORMED_RESPONSE, str(e))
    except req_exc.ConnectionError as e:
        # iter_content reports a stalled body read as a ConnectionError
        if e.args and isinstance(e.args[0], ReadTimeoutError):
            request.outcome = FetchFailure(FailureReason.TIMEOUT, str(e))
        else:
            request.outcome = FetchFailure(FailureReason.CONNECTION_ERROR, str(e))
    except (req_exc.InvalidURL, req_exc.InvalidSchema, req_exc.MissingSchema,
            req_exc.InvalidHeader, req_exc.TooManyRedirects) as e:
        request.outcome = FetchFailure(FailureReason.MALFORMED_RESPONSE, str(e))
    except req_exc.RequestException as e:
        request.outcome = FetchFailure(FailureReason.CONNECTION_ERROR, str(e))
    except Exception as e:
        # A socket shut down under an abandoned read surfaces as anything
        if not request.abandoned:
            request.error = e
    finally:
        if resp is not None:
            resp.close()
        request.finished.set()


def fetch(url: str, timeout: float,
          cancel_token: Optional[CancellationToken] = None) -> FetchOutcome:
    """
    Fetch one endpoint.

    The request runs in its own daemon thread; the caller waits at most
    ``timeout`` seconds for it, whatever the server does. A request still
    running at the deadline is abandoned and its socket shut down.

    Args:
        url (str): The endpoint URL (scheme, host and port)
        timeout (float): Hard ceiling in seconds for the whole request
        cancel_token (Optional[CancellationToken]): Cancelling wakes the wait
            immediately and yields FailureReason.CANCELLED

    Returns:
        FetchOutcome: FetchSuccess with the status code and body for any
        response (including 4xx/5xx), or FetchFailure with one of TIMEOUT,
        CONNECTION_ERROR, TLS_ERROR, MALFORMED_RESPONSE or CANCELLED.

    Example:
        >>> outcome = fetch('https://self-signed.example:8443', timeout=5)
        >>> if isinstance(outcome, FetchSuccess):
        ...     print(outcome.status_code)
    """
    if cancel_token is not None and cancel_token.cancelled:
        return FetchFailure(FailureReason.CANCELLED, "Cancelled before request")

    logging.getLogger(__name__).debug("Fetching %s" % url)
    deadline = time.monotonic() + timeout
    request = _PendingRequest()

    if cancel_token is not None:
        cancel_token.link(request.finished)
    try:
        th = threading.Thread(target=_perform, args=(url, timeout, deadline, request),
                              name="fetch-%s" % url, daemon=True)
        th.start()
        completed = request.finished.wait(timeout)
    finally:
        if cancel_token is not None:
            cancel_token.unlink(request.finished)

    if not completed:
        request.abandon()
        logging.getLogger(__name__).debug(
            "No complete response from %s within %s seconds" % (url, timeout))
        return FetchFailure(FailureReason.TIMEOUT,
                            "No complete response within %s seconds" % timeout)

    if cancel_token is not None and cancel_token.cancelled:
        request.abandon()
        return FetchFailure(FailureReason.CANCELLED, "Cancelled during request")

    if request.error is not None:
        raise request.error

    outcome = request.outcome
    if isinstance(outcome, FetchSuccess):
        logging.getLogger(__name__).debug(
            "Fetched %s: status %d, %d bytes" % (url, outcome.status_code, len(outcome.body)))
    return outcome
