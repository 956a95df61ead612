#!/usr/bin/env python
# -*- coding: utf-8 -*-
# ----------------------------------------------------------------------------
# Created By  : Matthew Davidson
# Created Date: 2026-10-19
# version ='1.0'
# ---------------------------------------------------------------------------
"""Estimate the offset between a server clock and the local monotonic clock"""
# ---------------------------------------------------------------------------
from __future__ import annotations
import asyncio
import logging
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import httpx
from prometheus_client import Counter, Gauge

from server_time_sync.configuration import FetchConfig, SyncConfig, initialize_config
from server_time_sync.fetcher import SUPPORTED_METHODS, HttpTimeFetcher


logger = logging.getLogger(__name__)

# The endpoint only returns one timestamp, so the server receive/send instants
# are placed this far either side of it.
SIMULATED_SERVER_PROCESSING_MS = 100
MIN_ATTEMPTS = 1
MIN_INTERVAL_MS = 50
SECONDS_TIMESTAMP_DIGITS = 10


def shorten_data(data: Any, max_length: int = 75) -> str:
    """Shorten data to a maximum length."""
    if not isinstance(data, str):
        data = str(data)
    data = data.strip()
    return data[:max_length] + "..." if len(data) > max_length else data


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def monotonic_ms() -> float:
    return time.monotonic() * 1000


def wall_ms() -> int:
    return time.time_ns() // 1_000_000


class ClockError(Exception):
    """
    Exception raised for errors in the ServerClock.
    """

    def __init__(self, message: str):
        self.message = message
        logger.error(self.message)
        super().__init__(self.message)


class ProbeError(Exception):
    """Raised when the time endpoint answers with an unusable payload."""


@dataclass(frozen=True)
class ProbeResult:
    offset: float
    delay: float
    server_timestamp: Union[int, float]


def normalize_timestamp(timestamp: Union[int, float]) -> Union[int, float]:
    """
    Normalize a server timestamp to milliseconds.

    A value whose rounded magnitude has exactly 10 digits is taken as seconds
    and scaled by 1000. Anything else is taken as milliseconds and rounded.
    """
    rounded = round_half_up(timestamp)
    if len(str(abs(rounded))) == SECONDS_TIMESTAMP_DIGITS:
        return timestamp * 1000
    return rounded


def parse_timestamp(payload: Any) -> Union[int, float]:
    """
    Extract the raw ``timestamp`` field from a decoded response body.

    Numeric strings are accepted. Booleans, non-numeric values and
    non-finite numbers are not.

    :raises ProbeError: If the payload carries no usable timestamp.
    """
    if not isinstance(payload, Mapping) or "timestamp" not in payload:
        raise ProbeError(
            f"Invalid response format: missing timestamp field in {shorten_data(payload)}"
        )

    raw = payload["timestamp"]
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise ProbeError(f"Timestamp is not a valid number: {shorten_data(raw)}")

    try:
        value = float(raw)
    except (ValueError, OverflowError):
        raise ProbeError(
            f"Timestamp is not a valid number: {shorten_data(raw)}"
        ) from None

    if not math.isfinite(value):
        raise ProbeError(f"Timestamp is not finite: {raw}")
    return value


def compute_probe(
    t1: float, t4: float, server_timestamp: Union[int, float]
) -> ProbeResult:
    """
    Apply the NTP offset/delay equations to one round trip.

    :param t1: Local monotonic send time (ms).
    :param t4: Local monotonic receive time (ms).
    :param server_timestamp: Normalized server timestamp (epoch ms).
    """
    t2 = server_timestamp - SIMULATED_SERVER_PROCESSING_MS
    t3 = server_timestamp + SIMULATED_SERVER_PROCESSING_MS
    offset = ((t2 - t1) + (t3 - t4)) / 2
    delay = (t4 - t1) - (t3 - t2)
    return ProbeResult(offset=offset, delay=delay, server_timestamp=server_timestamp)


def select_best_probe(results: Iterable[ProbeResult]) -> Optional[ProbeResult]:
    # min() keeps the first of equal candidates
    return min(results, key=lambda result: result.delay, default=None)


async def precise_delay(ms: float) -> None:
    """Wait at least ``ms`` milliseconds of monotonic time without blocking the loop."""
    start = monotonic_ms()
    while True:
        remaining = ms - (monotonic_ms() - start)
        if remaining <= 0:
            return
        await asyncio.sleep(remaining / 1000)


class AutoUpdateHandle:
    """Cancellation handle for a recurring synchronization task."""

    def __init__(self, task: asyncio.Task, interval_ms: float):
        self._task = task
        self.interval_ms = interval_ms
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._task.done()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._task.cancel()


class ServerClock:
    """
    Application-level clock synced to a server time endpoint.

    Each synchronization cycle runs several probes against the endpoint and
    keeps the offset of the one with the lowest network delay. The offset is
    measured against the local monotonic clock, so the synchronized time is
    immune to wall clock adjustments once a cycle has succeeded.
    """

    clock_offset_ms = Gauge(
        "server_time_offset_ms",
        "Offset between the server clock and the local monotonic clock",
        labelnames=("clock_name",),
    )

    probe_delay_ms = Gauge(
        "server_time_probe_delay_ms",
        "Estimated network delay of the probe selected by the last successful cycle",
        labelnames=("clock_name",),
    )

    probes_count = Counter(
        "server_time_probes_total",
        "Total number of time endpoint probes",
        labelnames=("clock_name", "result"),
    )

    sync_cycles_count = Counter(
        "server_time_sync_cycles_total",
        "Total number of synchronization cycles",
        labelnames=("clock_name", "result"),
    )

    @classmethod
    def from_config_file(
        cls,
        config_file: Union[str, Path],
        secrets_file: Optional[Union[str, Path]] = None,
        **kwargs,
    ) -> ServerClock:
        """
        Instantiate a ServerClock from a configuration file.

        :param config_file: Path to the configuration file.
        :param secrets_file: Path to the secrets file (optional).
        :param kwargs: Additional keyword arguments. See ServerClock.__init__ for details. These will override the config file.
        :return: An initialized ServerClock instance.
        """
        configs = initialize_config(config=config_file, secrets=secrets_file)
        config = configs.get(cls.__name__, configs.get("ServerClock", None))
        if config is None:
            raise ClockError(
                f"Configuration for class {cls.__name__} not found in config file. Please check that the configuration exists"
            )
        combined_args = {**config, **kwargs}
        return cls(**combined_args)

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        fetcher=None,
        fetch_config: Optional[FetchConfig] = None,
        name: str = "server_clock",
        monotonic: Callable[[], float] = monotonic_ms,
        wall_clock: Callable[[], float] = wall_ms,
    ):
        """
        Initialize a ServerClock instance.

        :param config: Synchronization settings.
        :param fetcher: Object with an async ``fetch(endpoint, method)`` returning the decoded body.
            Defaults to an HttpTimeFetcher built from ``fetch_config``.
        :param fetch_config: Settings for the default fetcher.
        :param name: Name used in logs and metric labels.
        :param monotonic: Monotonic clock source in milliseconds.
        :param wall_clock: Wall clock source in epoch milliseconds.
        """
        self.name = name
        self.config = config or SyncConfig()
        if fetcher is None:
            fetch_config = fetch_config or FetchConfig(
                timeout_ms=self.config.timeout_ms
            )
            fetcher = HttpTimeFetcher.from_config(fetch_config)
        self.fetcher = fetcher

        self._monotonic = monotonic
        self._wall_clock = wall_clock
        self._offset = 0.0
        self._is_synced = False
        self._auto_update: Optional[AutoUpdateHandle] = None
        self._last_endpoint = self.config.endpoint
        self._last_method = self.config.method

        self.logger = logging.LoggerAdapter(logger, extra={"clock_name": self.name})

    @property
    def is_synced(self) -> bool:
        return self._is_synced

    @property
    def offset(self) -> float:
        return self._offset

    @property
    def attempts(self) -> int:
        return max(MIN_ATTEMPTS, round_half_up(self.config.attempts))

    @property
    def interval_ms(self) -> int:
        return max(MIN_INTERVAL_MS, round_half_up(self.config.interval_ms))

    @property
    def auto_update_handle(self) -> Optional[AutoUpdateHandle]:
        if self._auto_update is None or not self._auto_update.active:
            return None
        return self._auto_update

    def now_ms(self) -> float:
        """
        Return the current server time in epoch milliseconds.

        Falls back to the local wall clock until a cycle has succeeded.
        """
        if not self._is_synced:
            return self._wall_clock()
        return self._monotonic() + self._offset

    async def sync(
        self, endpoint: Optional[str] = None, method: Optional[str] = None
    ) -> Union[int, float]:
        """
        Run one synchronization cycle.

        :param endpoint: Time endpoint URL. Defaults to the configured endpoint.
        :param method: "GET" or "POST". Defaults to the configured method.
        :return: The server timestamp of the best probe, or the local wall
            clock time (epoch ms) if every probe failed.
        """
        endpoint = endpoint or self.config.endpoint
        if not endpoint:
            raise ClockError("No time endpoint given or configured for synchronization")
        method = (method or self.config.method).upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported request method: {method}")
        self._last_endpoint = endpoint
        self._last_method = method

        self._is_synced = False
        self._offset = 0.0

        results = []
        for attempt in range(self.attempts):
            if attempt > 0:
                await precise_delay(self.interval_ms)
            result = await self._probe(endpoint, method)
            if result is not None:
                results.append(result)

        best = select_best_probe(results)
        if best is None:
            self.sync_cycles_count.labels(self.name, "failure").inc()
            self.logger.warning(
                f"All {self.attempts} probes to {endpoint} failed. Falling back to local time"
            )
            return self._wall_clock()

        self._offset = best.offset
        self._is_synced = True

        self.sync_cycles_count.labels(self.name, "success").inc()
        self.clock_offset_ms.labels(self.name).set(best.offset)
        self.probe_delay_ms.labels(self.name).set(best.delay)
        self.logger.info(
            f"Synchronized with {endpoint}: offset {best.offset:.1f} ms, "
            f"delay {best.delay:.1f} ms ({len(results)}/{self.attempts} probes)"
        )
        return best.server_timestamp

    async def _probe(self, endpoint: str, method: str) -> Optional[ProbeResult]:
        t1 = self._monotonic()
        try:
            payload = await asyncio.wait_for(
                self.fetcher.fetch(endpoint, method),
                timeout=self.config.timeout_ms / 1000,
            )
            server_timestamp = normalize_timestamp(parse_timestamp(payload))
        except asyncio.TimeoutError:
            self._probe_failed(endpoint, f"no response within {self.config.timeout_ms} ms")
            return None
        except (httpx.HTTPError, ValueError, OSError, ProbeError) as e:
            self._probe_failed(endpoint, e)
            return None
        t4 = self._monotonic()

        result = compute_probe(t1, t4, server_timestamp)
        self.probes_count.labels(self.name, "success").inc()
        self.logger.debug(
            f"Probe to {endpoint}: offset {result.offset:.1f} ms, delay {result.delay:.1f} ms"
        )
        return result

    def _probe_failed(self, endpoint: str, reason) -> None:
        self.probes_count.labels(self.name, "failure").inc()
        self.logger.debug(f"Probe to {endpoint} failed: {reason}")

    def auto_update(
        self,
        interval_ms: Optional[float] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
    ) -> Optional[AutoUpdateHandle]:
        """
        Re-run the synchronization cycle every ``interval_ms`` milliseconds.

        Any previously scheduled auto-update is cancelled first. A non-positive
        interval only cancels. Endpoint and method default to those of the last
        ``sync()`` call. Requires a running event loop.

        :return: A handle to cancel the recurring task, or None when disabled.
        """
        self.cancel_auto_update()

        if interval_ms is None:
            interval_ms = self.config.auto_update_interval_ms
        if interval_ms <= 0:
            self.logger.info("Auto-update disabled")
            return None

        endpoint = endpoint or self._last_endpoint
        if not endpoint:
            raise ClockError("No time endpoint given or configured for auto-update")
        method = method or self._last_method

        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._auto_update_loop(endpoint, method, interval_ms),
            name=f"{self.name}-auto_update",
        )
        task.add_done_callback(self._on_auto_update_done)
        self._auto_update = AutoUpdateHandle(task, interval_ms)
        self.logger.info(f"Auto-update every {interval_ms} ms against {endpoint}")
        return self._auto_update

    def cancel_auto_update(self) -> None:
        if self._auto_update is not None:
            self._auto_update.cancel()
            self._auto_update = None

    async def _auto_update_loop(
        self, endpoint: str, method: str, interval_ms: float
    ) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            await self.sync(endpoint, method)

    def _on_auto_update_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Auto-update stopped: {exc}", exc_info=exc)

    async def close(self) -> None:
        self.cancel_auto_update()
        aclose = getattr(self.fetcher, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> ServerClock:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
