# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections
import contextlib
import json
import logging
import os
import threading
import time

logger = logging.getLogger(__name__)

COUNTERS = (
    'cache_hits',
    'cache_misses',
    'builder_invocations',
    'pulled_bytes',
    'pushed_bytes',
)


class Metrics:
    '''
    thread-safe collector of a conversion-run's counters and stage-timings
    '''
    def __init__(self):
        self._lock = threading.Lock()
        self._counters = collections.Counter({name: 0 for name in COUNTERS})
        self._stage_seconds = collections.defaultdict(float)
        self._started = time.monotonic()

    def incr(self, name: str, amount: int=1):
        if not name in COUNTERS:
            raise ValueError(f'unknown counter {name=}')
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    @contextlib.contextmanager
    def stage(self, name: str):
        started = time.monotonic()
        try:
            yield
        finally:
            with self._lock:
                self._stage_seconds[name] += time.monotonic() - started

    def as_dict(
        self,
        source: str,
        target: str,
        platforms: list[str],
    ) -> dict:
        with self._lock:
            return {
                'source': source,
                'target': target,
                'platforms': list(platforms),
                **{name: self._counters[name] for name in COUNTERS},
                'elapsed_seconds': round(time.monotonic() - self._started, 3),
                'stage_seconds': {
                    name: round(seconds, 3)
                    for name, seconds in sorted(self._stage_seconds.items())
                },
            }


def write(metrics: dict, path: str | os.PathLike):
    if (parent := os.path.dirname(os.path.abspath(path))):
        os.makedirs(parent, exist_ok=True)

    with open(path, 'w') as f:
        json.dump(metrics, f, indent=2)

    logger.info(f'wrote metrics to {path}')
