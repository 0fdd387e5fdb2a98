"""In-process call metrics and node load accounting."""

from __future__ import annotations

import enum
import os
import threading
import time
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

VERSION = "0.0.1"

# Durations are in seconds.
DUR_BUCKETS_OP: Tuple[float, ...] = (0.1, 0.5, 1, 2.5, 5, 10, 20, 30, 60, 3 * 60)
DUR_BUCKETS_LONG: Tuple[float, ...] = (
    1, 10, 60, 10 * 60, 30 * 60, 3600, 6 * 3600, 12 * 3600, 24 * 3600,
)
SIZE_BUCKETS: Tuple[float, ...] = (100, 250, 500, 750, 1000, 1250, 1500)

Labels = Optional[Mapping[str, str]]


class CallDir(enum.Enum):
    INBOUND = "in"
    OUTBOUND = "out"

    def __str__(self) -> str:
        return self.value


class _Metric:
    def __init__(
        self,
        name: str,
        help: str = "",
        label_names: Iterable[str] = (),
        const_labels: Labels = None,
    ):
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self.const_labels = dict(const_labels or {})
        self._lock = threading.Lock()

    def _key(self, labels: Labels) -> Tuple[str, ...]:
        given = dict(labels or {})
        if set(given) != set(self.label_names):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(given)}"
            )
        return tuple(str(given[n]) for n in self.label_names)


class Counter(_Metric):
    """A monotonically increasing count per label set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._values: Dict[Tuple[str, ...], float] = {}

    def inc(self, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + 1

    def value(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)


class Gauge(_Metric):
    """A value that goes up and down; optionally computed by a function."""

    def __init__(self, *args, function: Optional[Callable[[], float]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._function = function
        self._values: Dict[Tuple[str, ...], float] = {}

    def _add(self, delta: float, labels: Labels) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + delta

    def inc(self, labels: Labels = None) -> None:
        self._add(1, labels)

    def dec(self, labels: Labels = None) -> None:
        self._add(-1, labels)

    def set(self, value: float, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, labels: Labels = None) -> float:
        key = self._key(labels)
        if self._function is not None:
            return float(self._function())
        with self._lock:
            return self._values.get(key, 0.0)


class Histogram(_Metric):
    """Observations counted into cumulative upper-bound buckets."""

    def __init__(self, *args, buckets: Sequence[float] = DUR_BUCKETS_OP, **kwargs):
        super().__init__(*args, **kwargs)
        self.buckets = tuple(sorted(buckets))
        self._counts: Dict[Tuple[str, ...], List[int]] = {}
        self._totals: Dict[Tuple[str, ...], int] = {}
        self._sums: Dict[Tuple[str, ...], float] = {}

    def observe(self, value: float, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * len(self.buckets))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._totals[key] = self._totals.get(key, 0) + 1
            self._sums[key] = self._sums.get(key, 0.0) + value

    def bucket_counts(self, labels: Labels = None) -> List[int]:
        """Cumulative counts, one per bucket bound."""
        key = self._key(labels)
        with self._lock:
            return list(self._counts.get(key, [0] * len(self.buckets)))

    def count(self, labels: Labels = None) -> int:
        key = self._key(labels)
        with self._lock:
            return self._totals.get(key, 0)

    def sum(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._sums.get(key, 0.0)


class Monitor:
    """Node-wide SIP metrics and admission control based on CPU load."""

    def __init__(
        self,
        node_id: str = "",
        max_utilization: float = 0.9,
        num_cpu: Optional[float] = None,
        cpu_idle: Optional[float] = None,
    ):
        self.node_id = node_id
        self.max_utilization = max_utilization
        self.num_cpu = float(num_cpu if num_cpu is not None else (os.cpu_count() or 1))
        self._cpu_idle = float(cpu_idle if cpu_idle is not None else self.num_cpu)
        self._all: Dict[str, _Metric] = {}
        self._registered: Dict[str, _Metric] = {}
        self._started = threading.Event()
        self._shutdown = threading.Event()

    @property
    def metrics(self) -> Mapping[str, _Metric]:
        """Currently registered metrics by short name."""
        return MappingProxyType(self._registered)

    def _metric(self, name: str):
        try:
            return self._all[name]
        except KeyError:
            raise RuntimeError("monitor not started") from None

    def _add(self, short: str, metric: _Metric) -> None:
        self._all[short] = metric
        self._registered[short] = metric

    def start(self) -> None:
        const = {"node_id": self.node_id}

        def name(n: str, subsystem: str = "sip") -> str:
            return f"livekit_{subsystem}_{n}"

        self._add("invite_requests_raw", Counter(
            name("invite_requests_raw"), "Number of unvalidated SIP INVITE requests received",
            (), const))
        self._add("invite_requests", Counter(
            name("invite_requests"), "Number of valid SIP INVITE requests received",
            ("dir",), const))
        self._add("invite_accepted", Counter(
            name("invite_accepted"),
            "Number of accepted SIP INVITE requests (that matched a trunk and passed auth)",
            ("dir", "to"), const))
        self._add("invite_error", Counter(
            name("invite_error"), "Number of rejected SIP INVITE requests",
            ("dir", "to", "reason"), const))
        self._add("calls_active", Gauge(
            name("calls_active"), "Number of currently active SIP calls",
            ("dir", "to"), const))
        self._add("calls_terminated", Counter(
            name("calls_terminated"), "Number of calls terminated by SIP bridge",
            ("dir", "to", "reason"), const))
        self._add("packets_rtp", Counter(
            name("packets_rtp"), "Number of RTP packets sent or received by SIP bridge",
            ("dir", "to", "op", "payload"), const))
        self._add("dur_session_sec", Histogram(
            name("dur_session_sec"), "SIP session duration (from INVITE to closed)",
            ("dir",), const, buckets=DUR_BUCKETS_LONG))
        self._add("dur_call_sec", Histogram(
            name("dur_call_sec"), "SIP call duration (from successful pin to closed)",
            ("dir",), const, buckets=DUR_BUCKETS_LONG))
        self._add("dur_join_sec", Histogram(
            name("dur_join_sec"), "SIP room join duration (from INVITE to mixed room audio)",
            ("dir",), const, buckets=DUR_BUCKETS_OP))
        self._add("sdp_size_bytes", Histogram(
            name("sdp_size_bytes"), "SDP size in bytes",
            ("type",), const, buckets=SIZE_BUCKETS))
        self._add("available", Gauge(
            name("available"), "Whether node can accept new requests", (), const,
            function=lambda: 1.0 if self.can_accept() else 0.0))
        self._add("cpu_load", Gauge(
            name("cpu_load", "node"), "", (), {**const, "node_type": "SIP"}))
        self._started.set()

    def shutdown(self) -> None:
        self._shutdown.set()

    def stop(self) -> None:
        self._registered.clear()

    def can_accept(self) -> bool:
        if not self._started.is_set() or self._shutdown.is_set():
            return False
        return self._cpu_idle >= self.num_cpu * (1 - self.max_utilization)

    def idle_cpu(self) -> float:
        return self._cpu_idle

    def update_cpu_idle(self, idle: float) -> None:
        """Record a new idle-CPU measurement (in CPUs) and update the load gauge."""
        self._cpu_idle = float(idle)
        if self._started.is_set():
            self._metric("cpu_load").set(1 - idle / self.num_cpu)

    def invite_req_raw(self, direction: CallDir) -> None:
        self._metric("invite_requests_raw").inc()

    def new_call(self, direction: CallDir, from_host: str, to_host: str) -> "CallMonitor":
        return CallMonitor(self, direction, from_host, to_host)


class CallMonitor:
    """Metrics for a single call."""

    def __init__(self, monitor: Monitor, direction: CallDir, from_host: str, to_host: str):
        self.monitor = monitor
        self.direction = direction
        self.from_host = from_host
        self.to_host = to_host
        self._lock = threading.Lock()
        self._started = False
        self._terminated = False

    def _labels_short(self, **extra: str) -> Dict[str, str]:
        return {"dir": str(self.direction), **extra}

    def _labels(self, **extra: str) -> Dict[str, str]:
        return {"dir": str(self.direction), "to": self.to_host, **extra}

    def invite_req(self) -> None:
        self.monitor._metric("invite_requests").inc(self._labels_short())

    def invite_accept(self) -> None:
        self.monitor._metric("invite_accepted").inc(self._labels())

    def invite_error_short(self, reason: str) -> None:
        self.monitor._metric("invite_error").inc(self._labels_short(reason=reason, to="unknown"))

    def invite_error(self, reason: str) -> None:
        self.monitor._metric("invite_error").inc(self._labels(reason=reason))

    def call_start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        self.monitor._metric("calls_active").inc(self._labels())

    def call_end(self) -> None:
        with self._lock:
            if not self._started:
                return
            self._started = False
        self.monitor._metric("calls_active").dec(self._labels())

    def call_terminate(self, reason: str) -> None:
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
        self.monitor._metric("calls_terminated").inc(self._labels(reason=reason))

    def rtp_packet_send(self, payload_type: str) -> None:
        self.monitor._metric("packets_rtp").inc(self._labels(op="send", payload=payload_type))

    def rtp_packet_recv(self, payload_type: str) -> None:
        self.monitor._metric("packets_rtp").inc(self._labels(op="recv", payload=payload_type))

    def _timer(self, name: str) -> Callable[[], float]:
        hist = self.monitor._metric(name)
        labels = self._labels_short()
        start = time.monotonic()

        def observe() -> float:
            elapsed = time.monotonic() - start
            hist.observe(elapsed, labels)
            return elapsed

        return observe

    def session_dur(self) -> Callable[[], float]:
        return self._timer("dur_session_sec")

    def call_dur(self) -> Callable[[], float]:
        return self._timer("dur_call_sec")

    def join_dur(self) -> Callable[[], float]:
        return self._timer("dur_join_sec")

    def sdp_size(self, size: int, is_offer: bool) -> None:
        typ = "offer" if is_offer else "answer"
        self.monitor._metric("sdp_size_bytes").observe(float(size), {"type": typ})