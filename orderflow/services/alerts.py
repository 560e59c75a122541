"""
Alert rule evaluation over the metric store.

Every rule owns at most one open event that moves through an explicit
state table:

    RESOLVED --breach--> PENDING --breach held for for_duration--> FIRING
    PENDING  --clear---> RESOLVED   (no partial credit)
    FIRING   --clear---> RESOLVED

Notifications go out on PENDING->FIRING and FIRING->RESOLVED only, so a
rule that stays in breach is reported once.
"""
import asyncio
import logging
import operator
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from orderflow.models.schemas import AlertNotification
from orderflow.services.metrics import (
    CACHE_REQUESTS_TOTAL,
    ORDER_CREATE_SECONDS,
    ORDERS_TOTAL,
    STOCK_COMPENSATION_FAILURES_TOTAL,
    MetricStore,
)
from orderflow.services.notifications import Notifier

logger = logging.getLogger(__name__)


class AlertState(str, Enum):
    RESOLVED = "resolved"
    PENDING = "pending"
    FIRING = "firing"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


TRANSITIONS: Dict[AlertState, FrozenSet[AlertState]] = {
    AlertState.RESOLVED: frozenset({AlertState.PENDING}),
    AlertState.PENDING: frozenset({AlertState.FIRING, AlertState.RESOLVED}),
    AlertState.FIRING: frozenset({AlertState.RESOLVED}),
}
NOTIFY_ON: FrozenSet[Tuple[AlertState, AlertState]] = frozenset(
    {(AlertState.PENDING, AlertState.FIRING), (AlertState.FIRING, AlertState.RESOLVED)}
)

COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
}


class InvalidAlertTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class MetricSelector:
    metric: str
    labels: Mapping[str, str] = field(default_factory=dict)
    aggregation: str = "avg"


@dataclass(frozen=True)
class AlertCondition:
    """
    ``selector <comparator> threshold`` over a rolling window. With a
    denominator the compared value is the ratio of the two aggregates.
    """
    selector: MetricSelector
    comparator: str
    threshold: float
    window_seconds: float = 300.0
    denominator: Optional[MetricSelector] = None

    def __post_init__(self):
        if self.comparator not in COMPARATORS:
            raise ValueError(f"Unknown comparator {self.comparator!r}")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    def measure(self, store: MetricStore) -> Optional[float]:
        value = store.query(
            self.selector.metric, self.selector.labels, self.window_seconds
        ).value_of(self.selector.aggregation)
        if self.denominator is None or value is None:
            return value
        base = store.query(
            self.denominator.metric, self.denominator.labels, self.window_seconds
        ).value_of(self.denominator.aggregation)
        if not base:
            return None
        return value / base

    def holds(self, value: Optional[float]) -> bool:
        return value is not None and COMPARATORS[self.comparator](value, self.threshold)


@dataclass(frozen=True)
class AlertRule:
    rule_id: str
    condition: AlertCondition
    for_duration: float = 0.0
    severity: Severity = Severity.WARNING
    enabled: bool = True
    message: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)

    def describe(self, value: Optional[float]) -> str:
        c = self.condition
        shown = "n/a" if value is None else f"{value:.4g}"
        text = self.message or f"{c.selector.metric} {c.selector.aggregation}"
        return f"{text} (value {shown} {c.comparator} {c.threshold:g})"


@dataclass
class AlertEvent:
    event_id: str
    rule_id: str
    state: AlertState
    first_breach: float
    last_evaluation: float
    last_value: Optional[float] = None
    fired_at: Optional[float] = None
    resolved_at: Optional[float] = None


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class AlertEngine:
    def __init__(
        self,
        metrics: MetricStore,
        notifier: Notifier,
        rules: Iterable[AlertRule] = (),
        clock: Callable[[], float] = time.time,
        history_size: int = 500,
    ):
        self.metrics = metrics
        self.notifier = notifier
        self._clock = clock
        self._rules: Dict[str, AlertRule] = {}
        self._active: Dict[str, AlertEvent] = {}
        self._history: Deque[AlertEvent] = deque(maxlen=history_size)
        for rule in rules:
            self.add_rule(rule)

    # -- rule registry ------------------------------------------------------

    def add_rule(self, rule: AlertRule) -> None:
        if rule.for_duration < 0:
            raise ValueError("for_duration cannot be negative")
        self._rules[rule.rule_id] = rule
        logger.debug(f"Registered alert rule {rule.rule_id}")

    async def remove_rule(self, rule_id: str) -> List[AlertNotification]:
        """Drop a rule; an open event is resolved and a firing one notifies."""
        rule = self._rules.pop(rule_id, None)
        event = self._active.get(rule_id)
        if rule is None or event is None:
            return []
        notifications = self._move(rule, event, AlertState.RESOLVED, self._clock(), event.last_value)
        if notifications:
            await self._dispatch(notifications)
        return notifications

    def set_enabled(self, rule_id: str, enabled: bool) -> None:
        """A disabled rule with an open event is resolved on the next tick."""
        self._rules[rule_id] = replace(self._rules[rule_id], enabled=enabled)

    def rules(self) -> List[AlertRule]:
        return list(self._rules.values())

    def active_alerts(self) -> List[AlertEvent]:
        return list(self._active.values())

    def state_of(self, rule_id: str) -> AlertState:
        event = self._active.get(rule_id)
        return event.state if event is not None else AlertState.RESOLVED

    def history(self) -> List[AlertEvent]:
        return list(self._history)

    # -- evaluation ----------------------------------------------------------

    async def evaluate(self) -> List[AlertNotification]:
        """
        One tick. Rules are evaluated independently; a rule whose metrics
        cannot be read keeps its current state until the next tick.
        """
        now = self._clock()
        notifications: List[AlertNotification] = []
        for rule in list(self._rules.values()):
            try:
                notifications.extend(self._evaluate_rule(rule, now))
            except Exception:
                logger.exception(f"Alert rule {rule.rule_id} could not be evaluated; skipped this tick")
        if notifications:
            await self._dispatch(notifications)
        return notifications

    def _evaluate_rule(self, rule: AlertRule, now: float) -> List[AlertNotification]:
        event = self._active.get(rule.rule_id)
        if not rule.enabled:
            if event is None:
                return []
            return self._move(rule, event, AlertState.RESOLVED, now, None)

        value = rule.condition.measure(self.metrics)
        breached = rule.condition.holds(value)

        if event is None:
            if not breached:
                return []
            event = AlertEvent(
                event_id=uuid.uuid4().hex,
                rule_id=rule.rule_id,
                state=AlertState.RESOLVED,
                first_breach=now,
                last_evaluation=now,
            )
            self._active[rule.rule_id] = event
            out = self._move(rule, event, AlertState.PENDING, now, value)
            if rule.for_duration <= 0:
                out += self._move(rule, event, AlertState.FIRING, now, value)
            return out

        event.last_evaluation = now
        event.last_value = value
        if not breached:
            return self._move(rule, event, AlertState.RESOLVED, now, value)
        if event.state is AlertState.PENDING and now - event.first_breach >= rule.for_duration:
            return self._move(rule, event, AlertState.FIRING, now, value)
        return []

    def _move(
        self,
        rule: AlertRule,
        event: AlertEvent,
        target: AlertState,
        now: float,
        value: Optional[float],
    ) -> List[AlertNotification]:
        source = event.state
        if target not in TRANSITIONS[source]:
            raise InvalidAlertTransition(f"{rule.rule_id}: {source.value} -> {target.value}")
        event.state = target
        event.last_evaluation = now
        event.last_value = value
        if target is AlertState.FIRING:
            event.fired_at = now
            logger.warning(f"Alert {rule.rule_id} firing: {rule.describe(value)}")
        elif target is AlertState.RESOLVED:
            event.resolved_at = now
            self._active.pop(rule.rule_id, None)
            self._history.append(event)
            logger.info(f"Alert {rule.rule_id} resolved after {source.value}")
        else:
            logger.info(f"Alert {rule.rule_id} pending: {rule.describe(value)}")

        if (source, target) not in NOTIFY_ON:
            return []
        return [
            AlertNotification(
                event_id=event.event_id,
                rule_id=rule.rule_id,
                severity=rule.severity.value,
                message=rule.describe(value),
                state=target.value,
                value=value,
                labels=dict(rule.labels),
                timestamp=_to_datetime(now),
            )
        ]

    async def _dispatch(self, notifications: List[AlertNotification]) -> None:
        results = await asyncio.gather(
            *(self.notifier.send(n) for n in notifications), return_exceptions=True
        )
        for notification, result in zip(notifications, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Notification {notification.rule_id} {notification.state} not delivered: {result}"
                )


def default_rules() -> List[AlertRule]:
    """Baseline rules for the order and cache paths."""
    return [
        AlertRule(
            rule_id="order-error-rate",
            condition=AlertCondition(
                selector=MetricSelector(ORDERS_TOTAL, {"outcome": "error"}, "sum"),
                denominator=MetricSelector(ORDERS_TOTAL, {}, "sum"),
                comparator=">",
                threshold=0.05,
                window_seconds=300,
            ),
            for_duration=300,
            severity=Severity.WARNING,
            message="Order creation error ratio above 5%",
            labels={"component": "orders"},
        ),
        AlertRule(
            rule_id="order-latency-p95",
            condition=AlertCondition(
                selector=MetricSelector(ORDER_CREATE_SECONDS, {}, "p95"),
                comparator=">",
                threshold=1.0,
                window_seconds=300,
            ),
            for_duration=300,
            severity=Severity.WARNING,
            message="p95 order creation latency above 1s",
            labels={"component": "orders"},
        ),
        AlertRule(
            rule_id="cache-hit-rate",
            condition=AlertCondition(
                selector=MetricSelector(CACHE_REQUESTS_TOTAL, {"result": "hit"}, "count"),
                denominator=MetricSelector(CACHE_REQUESTS_TOTAL, {}, "count"),
                comparator="<",
                threshold=0.7,
                window_seconds=600,
            ),
            for_duration=600,
            severity=Severity.WARNING,
            message="Cache hit ratio below 70%",
            labels={"component": "cache"},
        ),
        AlertRule(
            rule_id="stock-compensation-failures",
            condition=AlertCondition(
                selector=MetricSelector(STOCK_COMPENSATION_FAILURES_TOTAL, {}, "count"),
                comparator=">",
                threshold=0,
                window_seconds=3600,
            ),
            for_duration=0,
            severity=Severity.CRITICAL,
            message="Stock could not be returned; manual reconciliation required",
            labels={"component": "inventory"},
        ),
    ]
