"""Health evaluation for fleet instances.

The load balancing layer is the source of truth for instance health. The
evaluators here translate that into ``HealthState`` values for the engine.
"""

import asyncio
import time
from typing import Callable, Dict, Iterable, Optional, Protocol

import aiohttp

from ..core.enums import HealthState
from ..core.log import Logger, get_logger
from ..core.types import TimeoutConfig

logger = get_logger(__name__)


class HealthEvaluator(Protocol):
    """Protocol for health evaluators to enable dependency injection."""

    def check(self, instance_id: str) -> HealthState:
        """Health of a single instance."""

    def check_many(self, instance_ids: Iterable[str]) -> Dict[str, HealthState]:
        """Health of several instances."""


class BaseHealthEvaluator:
    """Evaluator with a sequential ``check_many``."""

    def check(self, instance_id: str) -> HealthState:
        raise NotImplementedError

    def check_many(self, instance_ids: Iterable[str]) -> Dict[str, HealthState]:
        return {instance_id: self.check(instance_id) for instance_id in instance_ids}


class StaticHealthEvaluator(BaseHealthEvaluator):
    """Reports a fixed state per instance, ``default`` for everything else."""

    def __init__(
        self,
        states: Optional[Dict[str, HealthState]] = None,
        default: HealthState = HealthState.HEALTHY,
    ) -> None:
        self._states = dict(states or {})
        self._default = default

    def set(self, instance_id: str, state: HealthState) -> None:
        self._states[instance_id] = state

    def check(self, instance_id: str) -> HealthState:
        return self._states.get(instance_id, self._default)


class HttpHealthEvaluator(BaseHealthEvaluator):
    """Probes each instance's health endpoint, as a target group health check does.

    HTTP 200 is Healthy, any other status is Unhealthy, and connection errors
    or timeouts are Unknown. Instances without a resolvable address are
    Unknown.
    """

    def __init__(
        self,
        address_resolver: Callable[[str], Optional[str]],
        path: str = "/health",
        port: int = 3000,
        timeout_config: Optional[TimeoutConfig] = None,
        logger_: Optional[Logger] = None,
    ) -> None:
        self._resolve = address_resolver
        self._path = path if path.startswith("/") else f"/{path}"
        self._port = port
        self._timeouts = timeout_config or TimeoutConfig()
        self._logger = logger_ or logger

    def endpoint_for(self, instance_id: str) -> Optional[str]:
        address = self._resolve(instance_id)
        if not address:
            return None
        return f"http://{address}:{self._port}{self._path}"

    def check(self, instance_id: str) -> HealthState:
        return self.check_many([instance_id])[instance_id]

    def check_many(self, instance_ids: Iterable[str]) -> Dict[str, HealthState]:
        ids = list(instance_ids)
        if not ids:
            return {}
        return asyncio.run(self._check_all(ids))

    async def _check_all(self, instance_ids) -> Dict[str, HealthState]:
        timeout = aiohttp.ClientTimeout(total=self._timeouts.health_check_request)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            results = await asyncio.gather(
                *(self._probe(session, instance_id) for instance_id in instance_ids)
            )
        return dict(zip(instance_ids, results))

    async def _probe(self, session: aiohttp.ClientSession, instance_id: str) -> HealthState:
        endpoint = self.endpoint_for(instance_id)
        if endpoint is None:
            self._logger.debug("No address for instance %s", instance_id)
            return HealthState.UNKNOWN
        start_time = time.time()
        try:
            async with session.get(endpoint) as response:
                if response.status == 200:
                    return HealthState.HEALTHY
                self._logger.debug(
                    "Instance %s unhealthy: HTTP %s after %.2fs",
                    instance_id,
                    response.status,
                    time.time() - start_time,
                )
                return HealthState.UNHEALTHY
        except asyncio.TimeoutError:
            self._logger.debug("Health probe timed out for %s", instance_id)
            return HealthState.UNKNOWN
        except (aiohttp.ClientError, OSError) as e:
            self._logger.debug("Health probe failed for %s: %s", instance_id, e)
            return HealthState.UNKNOWN
