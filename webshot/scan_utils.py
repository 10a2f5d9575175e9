"""
Webshot Scan Utilities Module

This module provides helper functionality shared by the capture pipeline:
a tracked thread pool for running capture tasks, a timing decorator, and the
URL helpers that normalize endpoints and derive stable file names from them.

Classes:
    ThreadExecutorWrapper: Thread pool with task tracking and error logging

Functions:
    execution_time: Decorator that logs how long a function ran
    construct_url: Build a URL from host, port and scheme flag
    normalize_endpoint: Add a default scheme to a bare host:port
    get_artifact_id: Derive a file-safe, deterministic name from an endpoint
"""

from functools import wraps
import re
import threading
import time
import traceback
import logging
import validators

from concurrent.futures import ThreadPoolExecutor, Future
from typing import Dict, Optional, Callable

# Characters that are not safe in file names on any platform
UNSAFE_FILENAME_CHARS = re.compile(r'[^A-Za-z0-9_\-]')

# Standard user agent string for HTTP requests to capture targets
custom_user_agent = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:64.0) Gecko/20100101 Firefox/64.0"


class ThreadExecutorWrapper:
    """
    Thread pool executor with task tracking and error logging.

    This class wraps the standard ThreadPoolExecutor so every submitted task
    gets a sequential task ID and a completion callback that logs failures.
    The pool size is the hard bound on the number of tasks running at once;
    tasks submitted beyond it wait in the executor queue.

    Attributes:
        executor (ThreadPoolExecutor): The underlying thread pool executor
        futures_map (Dict[Future, int]): Mapping of pending futures to task IDs
        lock (threading.Lock): Protects the map and the counter
        task_counter (int): Incremental counter for task ID assignment

    Example:
        >>> wrapper = ThreadExecutorWrapper(max_workers=4, name='capture')
        >>> future = wrapper.submit(some_function, arg1, arg2)
        >>> result = future.result()
        >>> wrapper.shutdown(wait=True)
    """

    def __init__(self, max_workers: int = 10, name: str = 'webshot') -> None:
        """
        Initialize the thread executor wrapper with the specified worker count.

        Args:
            max_workers (int): Maximum number of worker threads in the pool.
            name (str): Prefix for the worker thread names.
        """
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=name)
        self.futures_map: Dict[Future, int] = {}
        self.lock = threading.Lock()
        self.task_counter = 0

    def _internal_callback(self, future: Future) -> None:
        """
        Internal callback for handling future completion.

        Removes the future from the tracking map and logs the outcome. Task
        functions are expected to handle their own errors, so an exception
        reaching this point is logged as an error with its traceback.

        Args:
            future (Future): The completed future object to process.
        """
        with self.lock:
            task_id = self.futures_map.pop(future, None)
            pending = len(self.futures_map)

        if task_id is None:
            logging.getLogger(__name__).warning("Future not found in the map.")
            return

        exc = future.exception()
        if exc is not None:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            logging.getLogger(__name__).error(
                f"Task {task_id} raised an exception: {exc}")
            logging.getLogger(__name__).debug(f"Traceback:\n{tb}")
        else:
            logging.getLogger(__name__).debug(
                f"Task {task_id} completed, {pending} pending")

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """
        Submit a callable for execution in the thread pool.

        Args:
            fn (Callable): The callable to execute in the thread pool.
            *args: Positional arguments to pass to the callable.
            **kwargs: Keyword arguments to pass to the callable.

        Returns:
            Future: A Future object representing the execution of the callable.
        """
        with self.lock:
            task_id = self.task_counter
            self.task_counter += 1
            future = self.executor.submit(fn, *args, **kwargs)
            self.futures_map[future] = task_id

        future.add_done_callback(self._internal_callback)
        return future

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the thread pool executor.

        Args:
            wait (bool): If True, wait for all pending futures to finish
                before returning. Defaults to True.
        """
        self.executor.shutdown(wait=wait)
        logging.getLogger(__name__).debug("Executor has been shut down.")


def execution_time(f: Callable) -> Callable:
    """
    Decorator for measuring and logging function execution time.

    Args:
        f (Callable): The function to wrap with timing measurement.

    Returns:
        Callable: The wrapped function with timing functionality.

    Note:
        Execution time is logged at DEBUG level with the function name
        and duration in seconds.
    """
    @wraps(f)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            return f(*args, **kwargs)
        finally:
            logging.getLogger(__name__).debug(
                f"Execution time of '{f.__name__}': {time.monotonic() - start_time:.2f} seconds")
    return wrapper


def construct_url(target_str: str, port: int, secure: bool,
                  query_str: Optional[str] = None) -> Optional[str]:
    """
    Construct a complete URL from individual components.

    Unlike a browser-style URL the port is always kept, so the endpoint names
    the exact service that was discovered.

    Args:
        target_str (str): The target hostname or IP address.
        port (int): The port number for the connection.
        secure (bool): Whether to use HTTPS (True) or HTTP (False).
        query_str (Optional[str]): Optional path/query string to append.

    Returns:
        Optional[str]: The constructed URL string, or None if it is not valid.

    Example:
        >>> construct_url('example.com', 8080, False)
        'http://example.com:8080'
        >>> construct_url('10.0.0.2', 443, True)
        'https://10.0.0.2:443'
    """
    if not target_str or port is None or secure is None:
        return None

    port_str = str(port).strip()
    host = target_str.strip()
    if ':' in host and not host.startswith('['):
        # IPv6 literal
        host = '[%s]' % host

    url = "https" if secure else "http"
    url += "://" + host + ":" + port_str
    if query_str:
        url += query_str

    if not validators.url(url, simple_host=True):
        logging.getLogger(__name__).debug(
            f"Invalid URL constructed: {url}. Skipping.")
        return None
    return url


def normalize_endpoint(endpoint: str) -> str:
    """
    Strip an endpoint and give it an ``http://`` scheme if it has none.

    Example:
        >>> normalize_endpoint(' 10.0.0.1:8080 ')
        'http://10.0.0.1:8080'
        >>> normalize_endpoint('https://example.com')
        'https://example.com'
    """
    endpoint = endpoint.strip()
    if not endpoint.lower().startswith(('http://', 'https://')):
        endpoint = "http://" + endpoint
    return endpoint


def get_artifact_id(endpoint: str) -> str:
    """
    Derive a file-safe name from an endpoint.

    The name is deterministic so that a re-run against the same endpoint
    overwrites the previous run's artifacts.

    Example:
        >>> get_artifact_id('http://10.0.0.1:80')
        'http_10_0_0_1_80'
        >>> get_artifact_id('https://[::1]:8443/admin')
        'https____1__8443_admin'
    """
    name = endpoint.strip().replace("://", "_", 1)
    name = UNSAFE_FILENAME_CHARS.sub("_", name).rstrip("_")
    return name or "endpoint"

