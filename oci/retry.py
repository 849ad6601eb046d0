# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
retry- and cancellation-semantics for network operations against OCI registries and
blob-storage backends.

idempotent reads are retried transparently by urllib3 (see `LoggingRetry`), whereas uploads
(blobs, manifests) are retried explicitly through `retry_call`, honouring the caller's
`RetryPolicy` and `CancelToken`.
'''

import collections.abc
import dataclasses
import enum
import logging
import re
import threading
import time
import typing

import requests
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUS_CODES = (429, 500, 502, 503, 504)


class TransientError(RuntimeError):
    '''
    raised (or used to wrap errors from other client libraries) to signal a failure that may
    succeed if repeated (e.g. rate-limiting, timeouts, server-errors)
    '''
    pass


class Cancelled(RuntimeError):
    pass


class ErrorClass(enum.Enum):
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'


def classify(error: BaseException) -> ErrorClass:
    if isinstance(error, Cancelled):
        return ErrorClass.PERMANENT

    if isinstance(error, TransientError):
        return ErrorClass.TRANSIENT

    if isinstance(error, requests.exceptions.HTTPError):
        if (response := error.response) is None:
            return ErrorClass.TRANSIENT
        if response.status_code in TRANSIENT_HTTP_STATUS_CODES or response.status_code >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.PERMANENT

    if isinstance(error, (
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        requests.exceptions.ChunkedEncodingError,
        TimeoutError,
        ConnectionError,
    )):
        return ErrorClass.TRANSIENT

    return ErrorClass.PERMANENT


class LoggingRetry(Retry):
    '''
    urllib3-retry-cfg for idempotent requests (mounted into requests-sessions used by
    `oci.client.Client`); logs every retry
    '''
    def __init__(
        self,
        **kwargs,
    ):
        defaults = dict(
            total=3,
            connect=3,
            read=3,
            status=3,
            redirect=False,
            status_forcelist=TRANSIENT_HTTP_STATUS_CODES,
            allowed_methods=('GET', 'HEAD'),
            raise_on_status=False,
            respect_retry_after_header=True,
            backoff_factor=1.0,
        )

        super().__init__(**(defaults | kwargs))

    def increment(self,
        method=None,
        url=None,
        response=None,
        error=None,
        _pool=None,
        _stacktrace=None
    ):
        # super().increment will either raise an exception indicating that no retry is to
        # be performed or return a new, modified instance of this class
        retry = super().increment(method, url, response, error, _pool, _stacktrace)
        num_retries = len(self.history) if self.history else 0
        logger.warning(
            f'{method=} {url=} returned {response=} {error=} {num_retries=} - trying again'
        )
        return retry


def parse_duration(duration: str | int | float) -> float:
    '''
    parses durations in the format also understood by golang's `time.ParseDuration` (restricted
    to units ms, s, m, h), e.g. `5s`, `1m30s`, `500ms`; returns the duration in seconds.
    Plain numbers are interpreted as seconds.
    '''
    if isinstance(duration, (int, float)):
        seconds = float(duration)
    else:
        duration = duration.strip()
        if not duration:
            raise ValueError('empty duration')
        try:
            seconds = float(duration)
        except ValueError:
            if not re.fullmatch(r'(\d+(\.\d+)?(ms|s|m|h))+', duration):
                raise ValueError(f'invalid duration: {duration=}')

            factors = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}
            seconds = sum(
                float(value) * factors[unit]
                for value, _, unit in re.findall(r'(\d+(\.\d+)?)(ms|s|m|h)', duration)
            )

    if seconds < 0:
        raise ValueError(f'duration must not be negative: {duration=}')

    return seconds


class CancelToken:
    '''
    cancellation-context shared by all components of a run. Cancelling will skip all
    not-yet-started network operations, interrupt pending retry-delays, and invoke registered
    callbacks (which are expected to abort in-flight operations, e.g. by closing http-sessions).
    '''
    def __init__(self):
        self._event = threading.Event()
        self._callbacks = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = tuple(self._callbacks)

        logger.warning('run was cancelled - aborting pending network operations')
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f'error in cancel-callback {callback=}: {e}')

    def on_cancel(self, callback: collections.abc.Callable[[], None]):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Cancelled('operation was cancelled')

    def wait(self, seconds: float) -> bool:
        '''
        sleeps for the given amount of seconds, returning early (with `True`) if cancelled
        '''
        return self._event.wait(timeout=seconds)


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delay: float = 5.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f'{self.attempts=} must be at least 1')
        if self.delay < 0:
            raise ValueError(f'{self.delay=} must not be negative')


NO_RETRY = RetryPolicy(attempts=1, delay=0)

T = typing.TypeVar('T')


def retry_call(
    function: collections.abc.Callable[[], T],
    policy: RetryPolicy=RetryPolicy(),
    cancel: CancelToken | None=None,
    description: str='operation',
) -> T:
    '''
    calls `function` up to `policy.attempts` times, waiting `policy.delay` seconds in between.
    Only transient errors (see `classify`) are retried; permanent errors are raised immediately
    without consuming retry-budget. If all attempts fail, the last error is raised.
    '''
    last_error = None

    for attempt in range(1, policy.attempts + 1):
        if cancel:
            cancel.raise_if_cancelled()

        try:
            return function()
        except Exception as e:
            if classify(e) is ErrorClass.PERMANENT:
                raise
            last_error = e

        logger.warning(
            f'{description} failed ({attempt=}/{policy.attempts}): {last_error}'
        )

        if attempt == policy.attempts:
            break

        if cancel:
            if cancel.wait(policy.delay):
                raise Cancelled(f'{description} was cancelled') from last_error
        elif policy.delay:
            time.sleep(policy.delay)

    logger.error(f'{description} failed after {policy.attempts} attempt(s)')
    raise last_error
