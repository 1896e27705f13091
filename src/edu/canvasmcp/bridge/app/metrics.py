"""
Metrics Abstraction Layer

Request timings, authentication outcomes, tool calls and sweep counts are reported
through a small client interface so that handlers and tasks do not depend on a specific
backend.

Key Components:
- MetricsClient: Interface for counters, gauges and timers
- TelegrafCompatibilityClient: Delegates to an aio-statsd TelegrafStatsdClient
- NoOpMetricsClient: Discards everything; used in tests and when metrics are disabled
- create_metrics_client: Factory selecting a backend by name

Tags are passed as a ``tag_dict`` and rendered in Telegraf's StatsD tag format.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)


class MetricsClient(ABC):
    """
    Backend-neutral metrics interface.

    Counters only go up, gauges record the latest value and timers record durations in
    seconds.
    """

    @abstractmethod
    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    async def connect(self) -> None:
        """Open any network resources. Called once at startup."""

    @abstractmethod
    async def close(self) -> None:
        pass


class TelegrafCompatibilityClient(MetricsClient):
    """Wraps a TelegrafStatsdClient, stringifying tag values the way Telegraf expects."""

    def __init__(self, telegraf_client: TelegrafStatsdClient):
        self.client = telegraf_client

    @staticmethod
    def _tags(tag_dict: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {str(k): str(v) for k, v in (tag_dict or {}).items()}

    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.increment(name, value, tag_dict=self._tags(tag_dict))

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.gauge(name, value, tag_dict=self._tags(tag_dict))

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.client.timer(name, value, tag_dict=self._tags(tag_dict))

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Error closing Telegraf client: {e}")


class NoOpMetricsClient(MetricsClient):
    def increment(
        self,
        name: str,
        value: Union[int, float] = 1,
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    def timer(
        self,
        name: str,
        value: Union[int, float],
        tag_dict: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    async def close(self) -> None:
        pass


def create_metrics_client(
    backend: str,
    host: str = "localhost",
    port: int = 8125,
    telegraf_client: Optional[TelegrafStatsdClient] = None,
    debug: bool = False,
) -> MetricsClient:
    """
    Create the metrics client for a backend name.

    Args:
        backend: ``telegraf`` or ``none``
        host: StatsD/Telegraf host
        port: StatsD/Telegraf port
        telegraf_client: Pre-configured client, used instead of creating one
        debug: Passed through to aio-statsd

    Raises:
        ValueError: Unknown backend
    """
    backend = backend.lower()

    if backend == "telegraf":
        if telegraf_client is None:
            telegraf_client = TelegrafStatsdClient(host=host, port=port, debug=debug)
        return TelegrafCompatibilityClient(telegraf_client)

    if backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: 'telegraf', 'none'"
    )
