"""
Tenacity retry policies for credential fetches and queued generation jobs
"""
from typing import Tuple, Type
import logging as py_logging

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    retry_if_exception_type,
    before_sleep_log,
)

py_logger = py_logging.getLogger(__name__)

Exceptions = Tuple[Type[BaseException], ...]


def transient_retry(max_attempts: int = 3, exceptions: Exceptions = (Exception,), max_wait: float = 10):
    """Exponential backoff for short network calls such as token requests"""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(py_logger, py_logging.WARNING),
        reraise=True,
    )


def get_job_retry(max_tries: int, backoff_seconds: float, exceptions: Exceptions = (Exception,)):
    """Fixed backoff between whole job attempts; one try means no retry"""
    return retry(
        stop=stop_after_attempt(max(1, max_tries)),
        wait=wait_fixed(backoff_seconds),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(py_logger, py_logging.WARNING),
        reraise=True,
    )
