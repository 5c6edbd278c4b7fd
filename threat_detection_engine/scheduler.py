from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Union

from .engine import ThreatDetectionEngine

logger = logging.getLogger(__name__)

Job = Callable[[], Union[Any, Awaitable[Any]]]


class EngineScheduler:
    """Runs the engine's periodic passes as independent asyncio tasks.

    A failing pass is logged and retried on the next tick.
    """

    def __init__(self, engine: ThreatDetectionEngine):
        self.engine = engine
        self._tasks: Dict[str, asyncio.Task] = {}

    def jobs(self) -> List[Tuple[str, timedelta, Job]]:
        config = self.engine.config
        return [
            ("baseline_refresh", config.baseline_refresh_interval, self.engine.refresh_baselines),
            ("risk_recalculation", config.risk_recalculation_interval, self.engine.recalculate_risk_scores),
            ("cleanup", config.cleanup_interval, self.engine.cleanup),
            ("ml_flush", config.ml_flush_interval, self.engine.flush_features),
            ("impossible_travel", config.impossible_travel_interval, self.engine.check_impossible_travel),
            ("anomaly_scan", config.anomaly_scan_interval, self.engine.scan_anomalies),
        ]

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        for name, interval, job in self.jobs():
            self._tasks[name] = asyncio.create_task(self._loop(name, interval, job), name=f"threat-engine-{name}")
        logger.info("Threat engine scheduler started with %d jobs", len(self._tasks))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Threat engine scheduler stopped")

    async def run_once(self, name: str) -> Any:
        for job_name, _, job in self.jobs():
            if job_name == name:
                return await self._run(name, job)
        raise KeyError(name)

    async def _loop(self, name: str, interval: timedelta, job: Job) -> None:
        seconds = interval.total_seconds()
        while True:
            await asyncio.sleep(seconds)
            await self._run(name, job)

    async def _run(self, name: str, job: Job) -> Any:
        try:
            result = job()
            if inspect.isawaitable(result):
                result = await result
            return result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic job %s failed", name)
            return None
