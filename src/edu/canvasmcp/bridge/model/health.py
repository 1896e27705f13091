import asyncio


class HealthGauge:
    """
    Failure pressure gauge backing the readiness check.

    Unexpected errors (internal errors in handlers, failed sweeps) add pressure; the
    periodic health tick releases it again. A burst of failures above the threshold makes
    the readiness check fail until the gauge has drained. Caller errors such as bad
    credentials and upstream Canvas failures are expected and never recorded here.
    """

    def __init__(self, threshold: int = 100, decay: int = 1) -> None:
        self._pressure = 0
        self._threshold = threshold
        self._decay = decay
        self._lock = asyncio.Lock()

    async def record_failure(self, weight: int = 1) -> int:
        async with self._lock:
            self._pressure += int(weight)
            return self._pressure

    async def tick(self) -> None:
        async with self._lock:
            self._pressure = max(0, self._pressure - self._decay)

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._pressure <= self._threshold
