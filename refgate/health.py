"""
Background health monitor.

Polls the report store and evaluates the integrity criteria. When the
system turns unhealthy it hands a RollbackRequest to the control loop; it
never touches phase or attempt state itself.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
import logging
import threading

from refgate.criteria import evaluate_all
from refgate.models.phase import EvalResult, all_satisfied, unmet_details
from refgate.reports import ReportStore

logger = logging.getLogger(__name__)


@dataclass
class RollbackRequest:
    """Asks the control loop to revert the latest applied attempt."""
    reason: str
    results: List[EvalResult] = field(default_factory=list)
    requested_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self):
        return {
            "reason": self.reason,
            "results": [r.to_dict() for r in self.results],
            "requested_at": self.requested_at,
        }


class HealthMonitor:
    """Daemon thread evaluating integrity criteria at an interval.

    Requests are edge-triggered: one request when health is lost, none
    while it stays lost, and a new one only after it recovered.
    """

    def __init__(
        self,
        store: ReportStore,
        criteria: List[str],
        on_unhealthy: Callable[[RollbackRequest], None],
        interval: float = 30.0,
    ):
        self.store = store
        self.criteria = list(criteria)
        self.on_unhealthy = on_unhealthy
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._healthy = True

    @property
    def healthy(self) -> bool:
        return self._healthy

    def check_once(self) -> Optional[RollbackRequest]:
        """Evaluate once; return the request raised, if any."""
        results = evaluate_all(self.criteria, self.store.snapshot())
        healthy = all_satisfied(results)
        request = None
        if not healthy and self._healthy:
            request = RollbackRequest("health check failed: " + "; ".join(unmet_details(results)),
                                      results)
            logger.warning("Health lost: %s", request.reason)
            self.on_unhealthy(request)
        elif healthy and not self._healthy:
            logger.info("Health restored")
        self._healthy = healthy
        return request

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.check_once()
            except (OSError, ValueError) as e:
                logger.warning("Health check could not read reports: %s", e)
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="refgate-health", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
