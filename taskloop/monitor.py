"""
RESOURCE_MONITOR
================

Admission control and resource tracking for taskloop.

Prevents resource exhaustion from:
- Too many concurrent LLM calls
- Too many queued messages / too high a message rate
- LLM calls that never complete (per-call timeout timers)

One ``ResourceMonitor`` instance is created by the host process and shared by
every AgenticLoop and TaskScheduler; all state is guarded by one lock.

Usage:
    from taskloop.monitor import ResourceMonitor, ResourceLimits

    monitor = ResourceMonitor(ResourceLimits(max_concurrent_llm_calls=2))

    call_id = monitor.track_llm_call_start()   # raises ResourceLimitExceeded
    try:
        response = provider.call(...)
    finally:
        monitor.track_llm_call_complete(call_id, response_time_ms=850)

    monitor.destroy()
"""

import logging
import os
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict, fields
from typing import Callable, Dict, List, Optional

import psutil

from .errors import ResourceLimitExceeded

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
ALERT_DEDUP_SECONDS = 60.0
ALERT_RETENTION_SECONDS = 60 * 60
METRICS_INTERVAL_SECONDS = 10.0
CLEANUP_INTERVAL_SECONDS = 60.0

# 6 snapshots per minute for an hour; trimmed back to 300 when exceeded
MAX_SNAPSHOTS = 360
TRIMMED_SNAPSHOTS = 300

MAX_RESPONSE_SAMPLES = 100
TRIMMED_RESPONSE_SAMPLES = 50

ERROR_RATE_THRESHOLD = 10

# retry hint when no response times have been recorded yet
DEFAULT_RETRY_AFTER_SECONDS = 1.0


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ResourceLimits:
    """Configurable ceilings enforced by the monitor."""
    max_concurrent_llm_calls: int = 10
    max_queued_messages: int = 1000
    max_conversations_per_store: int = 100
    max_memory_usage_mb: int = 512
    max_cpu_usage_percent: int = 80
    message_rate_limit: int = 600  # messages per minute
    llm_call_timeout_ms: int = 30000

    ENV_VARS = {
        "max_concurrent_llm_calls": "RESOURCE_MAX_CONCURRENT_LLM_CALLS",
        "max_queued_messages": "RESOURCE_MAX_QUEUED_MESSAGES",
        "message_rate_limit": "RESOURCE_MESSAGE_RATE_LIMIT",
        "llm_call_timeout_ms": "RESOURCE_LLM_CALL_TIMEOUT_MS",
        "max_memory_usage_mb": "RESOURCE_MAX_MEMORY_MB",
        "max_cpu_usage_percent": "RESOURCE_MAX_CPU_PERCENT",
    }

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "ResourceLimits":
        names = {f.name for f in fields(cls)}
        return cls(**{k: int(v) for k, v in data.items() if k in names})

    def apply_env(self, environ=None) -> "ResourceLimits":
        """Return a copy with RESOURCE_* environment overrides applied."""
        environ = os.environ if environ is None else environ
        values = self.to_dict()
        for name, var in self.ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[name] = int(raw)
            except ValueError:
                logger.warning(f"Ignoring non-integer {var}={raw!r}")
        return ResourceLimits(**values)

    @classmethod
    def from_env(cls, environ=None) -> "ResourceLimits":
        return cls().apply_env(environ)


@dataclass
class ResourceMetrics:
    """Point-in-time snapshot of resource usage."""
    timestamp: float
    active_llm_calls: int = 0
    queued_messages: int = 0
    active_conversations: int = 0
    memory_usage_mb: float = 0.0
    cpu_usage_percent: float = 0.0
    message_rate: int = 0  # per minute
    error_rate: int = 0  # per minute
    avg_response_time_ms: float = 0.0
    cache_hit_rate: float = 0.0  # percentage

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ResourceAlert:
    type: str  # "warning" | "critical"
    metric: str
    current_value: float
    threshold: float
    message: str
    timestamp: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ResourceTrends:
    message_rate_trend: str = "stable"
    error_rate_trend: str = "stable"
    response_time_trend: str = "stable"

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ResourceReport:
    limits: ResourceLimits
    current: ResourceMetrics
    alerts: List[ResourceAlert] = field(default_factory=list)
    trends: ResourceTrends = field(default_factory=ResourceTrends)

    def to_dict(self) -> Dict:
        return {
            "limits": self.limits.to_dict(),
            "current": self.current.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "trends": self.trends.to_dict(),
        }


def _trend(values: List[float]) -> str:
    """Compare the average of the second half against the first half."""
    half = len(values) // 2
    first, second = values[:half], values[half:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)

    if first_avg == 0:
        return "increasing" if second_avg > 0 else "stable"

    change = (second_avg - first_avg) / first_avg
    if change > 0.1:
        return "increasing"
    if change < -0.1:
        return "decreasing"
    return "stable"


# ============================================================================
# RESOURCE MONITOR
# ============================================================================

class ResourceMonitor:
    """
    Process-wide admission control for LLM calls and message throughput.

    Features:
    - Concurrent LLM call ceiling with per-call timeout timers
    - Sliding 60 s message and error windows
    - Bounded response-time samples and cache hit tracking
    - Threshold alerts deduplicated per metric within 60 s
    - Background metric snapshots and trend calculation
    """

    def __init__(
        self,
        limits: Optional[ResourceLimits] = None,
        on_alert: Optional[Callable[[ResourceAlert], None]] = None,
        start_background: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the monitor.

        Args:
            limits: Resource ceilings (defaults to ResourceLimits())
            on_alert: Called with every non-duplicate alert
            start_background: Start the metrics and cleanup threads
            clock: Time source in seconds (injectable for tests)
        """
        self.limits = limits or ResourceLimits()
        self.on_alert = on_alert
        self._clock = clock

        self._lock = threading.RLock()
        self._active_calls: Dict[str, Optional[threading.Timer]] = {}
        self._queued_messages = 0
        self._active_conversations = 0
        self._message_count = 0
        self._error_count = 0
        self._message_timestamps: deque = deque()
        self._error_timestamps: deque = deque()
        self._response_times: List[float] = []
        self._cache_hits = 0
        self._cache_misses = 0
        self._alerts: List[ResourceAlert] = []
        self._snapshots: List[ResourceMetrics] = []

        self._process = psutil.Process()
        self._last_cpu_sample = (time.monotonic(), time.process_time())

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._destroyed = False

        if start_background:
            self._start_background()

    # ------------------------------------------------------------------
    # LLM call admission
    # ------------------------------------------------------------------

    @property
    def active_llm_calls(self) -> int:
        with self._lock:
            return len(self._active_calls)

    def can_make_llm_call(self) -> bool:
        """Check whether another LLM call fits under the concurrency ceiling."""
        with self._lock:
            active = len(self._active_calls)
            if active >= self.limits.max_concurrent_llm_calls:
                self._emit_alert(
                    "critical",
                    "active_llm_calls",
                    active,
                    self.limits.max_concurrent_llm_calls,
                    "Maximum concurrent LLM calls reached",
                )
                return False
            return True

    def track_llm_call_start(self) -> str:
        """
        Reserve a slot for an LLM call.

        Returns:
            Call id to pass to track_llm_call_complete()

        Raises:
            ResourceLimitExceeded: If the concurrency ceiling is reached
        """
        with self._lock:
            if not self.can_make_llm_call():
                retry_after = self._average_response_time() / 1000.0 or DEFAULT_RETRY_AFTER_SECONDS
                raise ResourceLimitExceeded("LLM call rejected: Resource limit exceeded", retry_after=retry_after)

            call_id = str(uuid.uuid4())
            timer = None
            if not self._destroyed and self.limits.llm_call_timeout_ms > 0:
                timer = threading.Timer(
                    self.limits.llm_call_timeout_ms / 1000.0,
                    self._on_call_timeout,
                    args=(call_id,),
                )
                timer.daemon = True
            self._active_calls[call_id] = timer
            if timer is not None:
                timer.start()
            return call_id

    def track_llm_call_complete(
        self,
        call_id: str,
        is_timeout: bool = False,
        response_time_ms: Optional[float] = None,
    ) -> None:
        """
        Release the slot held by ``call_id``.

        Completing a call that already timed out (or was never started) is a
        no-op for the active count.
        """
        with self._lock:
            if call_id not in self._active_calls:
                logger.debug(f"LLM call {call_id} already released")
                return

            timer = self._active_calls.pop(call_id)
            if timer is not None and not is_timeout:
                timer.cancel()

            if is_timeout:
                self.track_error("LLM call timeout")
            elif response_time_ms:
                self._response_times.append(response_time_ms)
                if len(self._response_times) > MAX_RESPONSE_SAMPLES:
                    self._response_times = self._response_times[-TRIMMED_RESPONSE_SAMPLES:]

    def _on_call_timeout(self, call_id: str) -> None:
        logger.warning(f"LLM call timeout for {call_id}")
        self.track_llm_call_complete(call_id, is_timeout=True)

    # ------------------------------------------------------------------
    # Messages, errors, cache
    # ------------------------------------------------------------------

    def can_queue_message(self) -> bool:
        """Check the queued-message ceiling and the per-minute message rate."""
        with self._lock:
            if self._queued_messages >= self.limits.max_queued_messages:
                self._emit_alert(
                    "critical",
                    "queued_messages",
                    self._queued_messages,
                    self.limits.max_queued_messages,
                    "Maximum queued messages limit reached",
                )
                return False

            rate = self._message_rate()
            if rate > self.limits.message_rate_limit:
                self._emit_alert(
                    "warning",
                    "message_rate",
                    rate,
                    self.limits.message_rate_limit,
                    "Message rate limit exceeded",
                )
                return False

            return True

    def track_message(self) -> None:
        with self._lock:
            now = self._clock()
            self._message_count += 1
            self._message_timestamps.append(now)
            self._prune_window(self._message_timestamps, now)

    def set_queued_messages(self, count: int) -> None:
        """Report the host's current queue depth."""
        with self._lock:
            self._queued_messages = max(0, int(count))

    def set_active_conversations(self, count: int) -> None:
        with self._lock:
            self._active_conversations = max(0, int(count))

    def track_error(self, error_type: str) -> None:
        with self._lock:
            now = self._clock()
            self._error_count += 1
            self._error_timestamps.append(now)
            self._prune_window(self._error_timestamps, now)
        logger.warning(f"Resource monitor recorded error: {error_type}")

    def track_cache_hit(self, is_hit: bool) -> None:
        with self._lock:
            if is_hit:
                self._cache_hits += 1
            else:
                self._cache_misses += 1

    # ------------------------------------------------------------------
    # Metrics & reporting
    # ------------------------------------------------------------------

    def get_current_metrics(self) -> ResourceMetrics:
        with self._lock:
            return ResourceMetrics(
                timestamp=self._clock(),
                active_llm_calls=len(self._active_calls),
                queued_messages=self._queued_messages,
                active_conversations=self._active_conversations,
                memory_usage_mb=self._memory_usage_mb(),
                cpu_usage_percent=self._cpu_usage_percent(),
                message_rate=self._message_rate(),
                error_rate=self._error_rate(),
                avg_response_time_ms=self._average_response_time(),
                cache_hit_rate=self._cache_hit_rate(),
            )

    def get_resource_report(self) -> ResourceReport:
        with self._lock:
            return ResourceReport(
                limits=ResourceLimits(**self.limits.to_dict()),
                current=self.get_current_metrics(),
                alerts=self.get_recent_alerts(),
                trends=self._calculate_trends(),
            )

    def get_recent_alerts(self) -> List[ResourceAlert]:
        """Alerts raised within the last hour."""
        with self._lock:
            cutoff = self._clock() - ALERT_RETENTION_SECONDS
            return [a for a in self._alerts if a.timestamp > cutoff]

    def get_snapshots(self) -> List[ResourceMetrics]:
        with self._lock:
            return list(self._snapshots)

    def is_system_under_stress(self) -> bool:
        metrics = self.get_current_metrics()
        limits = self.limits
        return (
            metrics.active_llm_calls > limits.max_concurrent_llm_calls * 0.8
            or metrics.queued_messages > limits.max_queued_messages * 0.8
            or metrics.memory_usage_mb > limits.max_memory_usage_mb * 0.9
            or metrics.cpu_usage_percent > limits.max_cpu_usage_percent * 0.9
            or metrics.error_rate > ERROR_RATE_THRESHOLD
        )

    def update_limits(self, **changes) -> ResourceLimits:
        """
        Merge partial limit changes into the current limits.

        Raises:
            ValueError: If a key is not a known limit
        """
        known = {f.name for f in fields(ResourceLimits)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown resource limits: {', '.join(sorted(unknown))}")

        with self._lock:
            values = self.limits.to_dict()
            values.update({k: int(v) for k, v in changes.items() if v is not None})
            self.limits = ResourceLimits(**values)
        logger.info(f"Resource limits updated: {changes}")
        return self.limits

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def collect_metrics(self) -> ResourceMetrics:
        """Take one snapshot and check it against the alert thresholds."""
        with self._lock:
            metrics = self.get_current_metrics()
            self._snapshots.append(metrics)
            if len(self._snapshots) > MAX_SNAPSHOTS:
                self._snapshots = self._snapshots[-TRIMMED_SNAPSHOTS:]
            self.check_alerts(metrics)
            return metrics

    def check_alerts(self, metrics: ResourceMetrics) -> None:
        limits = self.limits
        checks = [
            ("active_llm_calls", metrics.active_llm_calls, limits.max_concurrent_llm_calls * 0.8, "warning"),
            ("queued_messages", metrics.queued_messages, limits.max_queued_messages * 0.8, "warning"),
            ("memory_usage_mb", metrics.memory_usage_mb, limits.max_memory_usage_mb * 0.9, "critical"),
            ("cpu_usage_percent", metrics.cpu_usage_percent, limits.max_cpu_usage_percent * 0.9, "critical"),
            ("error_rate", metrics.error_rate, ERROR_RATE_THRESHOLD, "warning"),
        ]
        for metric, value, threshold, alert_type in checks:
            if value > threshold:
                level = "critically" if alert_type == "critical" else "dangerously"
                self._emit_alert(alert_type, metric, value, threshold, f"{metric} is {level} high")

    def cleanup_old_data(self) -> None:
        """Drop alerts older than an hour and window timestamps older than 60 s."""
        with self._lock:
            now = self._clock()
            cutoff = now - ALERT_RETENTION_SECONDS
            self._alerts = [a for a in self._alerts if a.timestamp > cutoff]
            self._prune_window(self._message_timestamps, now)
            self._prune_window(self._error_timestamps, now)

    def destroy(self) -> None:
        """Stop background threads and cancel all pending call timers."""
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            self._stop_event.set()
            for timer in self._active_calls.values():
                if timer is not None:
                    timer.cancel()
            threads, self._threads = self._threads, []

        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=1.0)
        logger.debug("Resource monitoring stopped")

    def _start_background(self) -> None:
        for name, interval, target in (
            ("taskloop-monitor-metrics", METRICS_INTERVAL_SECONDS, self.collect_metrics),
            ("taskloop-monitor-cleanup", CLEANUP_INTERVAL_SECONDS, self.cleanup_old_data),
        ):
            thread = threading.Thread(
                target=self._run_periodic,
                args=(interval, target),
                daemon=True,
                name=name,
            )
            self._threads.append(thread)
            thread.start()
        logger.debug("Resource monitoring started")

    def _run_periodic(self, interval: float, target: Callable[[], object]) -> None:
        while not self._stop_event.wait(interval):
            try:
                target()
            except Exception as e:
                logger.error(f"Resource monitor background task failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _emit_alert(self, alert_type: str, metric: str, value: float, threshold: float, message: str) -> None:
        now = self._clock()
        for existing in self._alerts:
            if existing.metric == metric and now - existing.timestamp < ALERT_DEDUP_SECONDS:
                return

        alert = ResourceAlert(
            type=alert_type,
            metric=metric,
            current_value=value,
            threshold=threshold,
            message=message,
            timestamp=now,
        )
        self._alerts.append(alert)
        log = logger.error if alert_type == "critical" else logger.warning
        log(f"{message}: {value} (threshold: {threshold})")

        if self.on_alert:
            try:
                self.on_alert(alert)
            except Exception as e:
                logger.error(f"on_alert callback failed: {e}", exc_info=True)

    def _prune_window(self, window: deque, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while window and window[0] <= cutoff:
            window.popleft()

    def _message_rate(self) -> int:
        self._prune_window(self._message_timestamps, self._clock())
        return len(self._message_timestamps)

    def _error_rate(self) -> int:
        self._prune_window(self._error_timestamps, self._clock())
        return len(self._error_timestamps)

    def _average_response_time(self) -> float:
        if not self._response_times:
            return 0.0
        return round(sum(self._response_times) / len(self._response_times))

    def _cache_hit_rate(self) -> float:
        total = self._cache_hits + self._cache_misses
        if total == 0:
            return 0.0
        return round(self._cache_hits / total * 100)

    def _memory_usage_mb(self) -> float:
        """Current resident set size of this process."""
        return round(self._process.memory_info().rss / 1024 / 1024, 1)

    def _cpu_usage_percent(self) -> float:
        wall_now, cpu_now = time.monotonic(), time.process_time()
        wall_prev, cpu_prev = self._last_cpu_sample
        self._last_cpu_sample = (wall_now, cpu_now)
        elapsed = wall_now - wall_prev
        if elapsed <= 0:
            return 0.0
        return round((cpu_now - cpu_prev) / elapsed * 100, 1)

    def _calculate_trends(self) -> ResourceTrends:
        recent = self._snapshots[-6:]
        if len(recent) < 3:
            return ResourceTrends()
        return ResourceTrends(
            message_rate_trend=_trend([m.message_rate for m in recent]),
            error_rate_trend=_trend([m.error_rate for m in recent]),
            response_time_trend=_trend([m.avg_response_time_ms for m in recent]),
        )
