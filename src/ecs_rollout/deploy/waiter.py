"""
Convergence waiter.

Bounded polling of ECS until a service is stable, a deleted service is
inactive, or a batch of one-shot tasks has stopped. The poll budget comes
from a PollSchedule derived from ``(timeout, base interval)``; every round
re-describes the remote object and the check for that round decides whether
to stop, keep polling, or abort.
"""
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from ecs_rollout.aws.gateway import MISSING_REASON
from ecs_rollout.deploy.progress import ProgressReporter
from ecs_rollout.exceptions import ConvergenceAborted, ConvergenceTimeout, DeploymentError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_INTERVAL_S = 15
DEFAULT_TASK_INTERVAL_S = 6
DEFAULT_FAILURE_MARKERS = ("unable",)

TERMINAL_SERVICE_STATUSES = ("DRAINING", "INACTIVE")


@dataclass(frozen=True)
class PollSchedule:
    """Sleep intervals between polls.

    A bounded schedule polls once, then sleeps an interval before each
    further poll: ``ceil(timeout / base)`` intervals, all equal to ``base``
    except the last, which is ``timeout % base`` when that is non-zero.
    The intervals sum to ``timeout`` exactly. A timeout of 0 is unbounded.
    """
    timeout_s: int
    base_interval_s: int

    @classmethod
    def from_timeout(cls, timeout_s: int, base_interval_s: int) -> "PollSchedule":
        if timeout_s < 0:
            raise ValueError(f"timeout must be zero or positive, got {timeout_s}")
        if base_interval_s <= 0:
            raise ValueError(f"poll interval must be positive, got {base_interval_s}")
        return cls(timeout_s=timeout_s, base_interval_s=base_interval_s)

    @property
    def unbounded(self) -> bool:
        return self.timeout_s == 0

    def intervals(self) -> List[int]:
        if self.unbounded:
            raise ValueError("an unbounded schedule has no finite interval list")
        count = math.ceil(self.timeout_s / self.base_interval_s)
        intervals = [self.base_interval_s] * count
        remainder = self.timeout_s % self.base_interval_s
        if remainder:
            intervals[-1] = remainder
        return intervals

    @property
    def max_polls(self) -> Optional[int]:
        if self.unbounded:
            return None
        return len(self.intervals()) + 1

    @property
    def total_wait(self) -> Optional[int]:
        if self.unbounded:
            return None
        return sum(self.intervals())

    def delays(self) -> Iterator[int]:
        if self.unbounded:
            while True:
                yield self.base_interval_s
        yield from self.intervals()


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with botocore's aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def primary_deployment(service: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for deployment in service.get('deployments', []):
        if deployment.get('status') == 'PRIMARY':
            return deployment
    return None


def deployment_origin(service: Optional[Dict[str, Any]], attribute: str) -> datetime:
    """Timestamp of the PRIMARY deployment (``createdAt`` or ``updatedAt``); now when absent."""
    deployment = primary_deployment(service or {})
    if deployment and deployment.get(attribute):
        return as_utc(deployment[attribute])
    return datetime.now(timezone.utc)


def match_services(response: Dict[str, Any], service: str) -> List[Dict[str, Any]]:
    """Services in a describe response whose name or ARN equals ``service``."""
    return [
        svc for svc in response.get('services', [])
        if service in (svc.get('serviceName'), svc.get('serviceArn'))
    ]


def is_missing(response: Dict[str, Any]) -> bool:
    return any(f.get('reason') == MISSING_REASON for f in response.get('failures', []))


class ConvergenceWaiter:
    """Polls a gateway until the requested state is observed."""

    def __init__(self, gateway, reporter: Optional[ProgressReporter] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 failure_markers: Sequence[str] = DEFAULT_FAILURE_MARKERS):
        self.gateway = gateway
        self.reporter = reporter or ProgressReporter()
        self.sleep = sleep
        self.failure_markers = tuple(failure_markers)

    def wait_for_stable(self, cluster: str, service: str, origin: Optional[datetime] = None,
                        timeout_s: int = 600,
                        interval_s: int = DEFAULT_SERVICE_INTERVAL_S) -> Dict[str, Any]:
        """Wait until the service is stable.

        Aborts early when the service is missing, draining or inactive, or
        when an event newer than ``origin`` contains a failure marker.

        Returns:
            The describe-services response that satisfied the check

        Raises:
            ConvergenceAborted: on a failure signal
            ConvergenceTimeout: when the schedule is exhausted
            GatewayError: when a describe call fails
        """
        origin = as_utc(origin) if origin else datetime.now(timezone.utc)

        def check(response):
            if is_missing(response):
                raise ConvergenceAborted(f"service {service} is missing", last_response=response)
            matched = match_services(response, service)
            for svc in matched:
                if svc.get('status') in TERMINAL_SERVICE_STATUSES:
                    raise ConvergenceAborted(
                        f"service {service} is {svc['status']}", last_response=response
                    )
            for svc in matched:
                event = self._failure_event(svc, origin)
                if event:
                    raise ConvergenceAborted(
                        f"deployment aborted: {event.get('message')}", last_response=response
                    )
            if not matched:
                return False
            return all(
                len(svc.get('deployments', [])) == 1
                and svc.get('runningCount') == svc.get('desiredCount')
                for svc in matched
            )

        return self._poll(
            f"Waiting for service {service} to become stable",
            lambda: self.gateway.describe_services(cluster, [service]),
            check,
            PollSchedule.from_timeout(timeout_s, interval_s),
        )

    def wait_for_inactive(self, cluster: str, service: str, timeout_s: int = 600,
                          interval_s: int = DEFAULT_SERVICE_INTERVAL_S) -> Dict[str, Any]:
        """Wait until a deleted service reports INACTIVE."""
        def check(response):
            if is_missing(response):
                raise ConvergenceAborted(f"service {service} is missing", last_response=response)
            matched = match_services(response, service)
            return bool(matched) and all(svc.get('status') == 'INACTIVE' for svc in matched)

        return self._poll(
            f"Waiting for service {service} to become inactive",
            lambda: self.gateway.describe_services(cluster, [service]),
            check,
            PollSchedule.from_timeout(timeout_s, interval_s),
        )

    def wait_for_tasks_stopped(self, cluster: Optional[str], tasks: List[str], timeout_s: int = 600,
                               interval_s: int = DEFAULT_TASK_INTERVAL_S) -> Dict[str, Any]:
        """Wait until every task has lastStatus STOPPED."""
        def check(response):
            described = response.get('tasks', [])
            return bool(described) and all(t.get('lastStatus') == 'STOPPED' for t in described)

        return self._poll(
            f"Waiting for {len(tasks)} task(s) to stop",
            lambda: self.gateway.describe_tasks(cluster, tasks),
            check,
            PollSchedule.from_timeout(timeout_s, interval_s),
        )

    def _failure_event(self, service: Dict[str, Any], origin: datetime) -> Optional[Dict[str, Any]]:
        for event in service.get('events', []):
            created_at = event.get('createdAt')
            if created_at is None or as_utc(created_at) <= origin:
                continue
            message = event.get('message', '')
            if any(marker in message for marker in self.failure_markers):
                return event
        return None

    def _poll(self, description: str, describe: Callable[[], Dict[str, Any]],
              check: Callable[[Dict[str, Any]], bool], schedule: PollSchedule) -> Dict[str, Any]:
        delays = schedule.delays()
        attempt = 0
        while True:
            attempt += 1
            self._notify('on_poll_start', attempt, description)
            try:
                response = describe()
                done = check(response)
            except DeploymentError:
                self._notify('on_poll_end', attempt, None, True)
                raise

            delay = None if done else next(delays, None)
            self._notify('on_poll_end', attempt, response, done or delay is None)
            if done:
                logger.debug(f"{description}: done after {attempt} poll(s)")
                return response
            if delay is None:
                raise ConvergenceTimeout(
                    f"{description}: timed out after {attempt} poll(s) ({schedule.total_wait}s)",
                    last_response=response,
                )
            self.sleep(delay)

    def _notify(self, hook: str, *args) -> None:
        try:
            getattr(self.reporter, hook)(*args)
        except Exception as e:
            logger.debug(f"Progress reporter {hook} failed: {e}")
