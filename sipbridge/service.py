"""SIP service: call bookkeeping, inbound auth outcomes and call transfers."""

from __future__ import annotations

import enum
import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Tuple,
    Union,
)

from sipbridge.stats import VERSION, Monitor
from sipbridge.types import HeaderOptions, MediaEncryption

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_TRANSFER_TIMEOUT = 80.0
MIN_RINGING_INTERVAL = 1.0
MAX_RINGING_INTERVAL = 60.0

_HOSTNAME_FORBIDDEN = set("$%{}[]:/| ")


@dataclass(frozen=True)
class ServiceConfig:
    """Addresses used for signaling and media."""

    signaling_ip: Optional[IPAddress] = None
    signaling_ip_local: Optional[IPAddress] = None
    media_ip: Optional[IPAddress] = None


class AuthResult(enum.IntEnum):
    """Outcome of the credential lookup for an inbound INVITE."""

    NOT_FOUND = 0
    DROP = 1
    PASSWORD = 2
    ACCEPT = 3


@dataclass
class AuthInfo:
    """Credentials and trunk found for an inbound call."""

    result: AuthResult = AuthResult.NOT_FOUND
    project_id: str = ""
    trunk_id: str = ""
    username: str = ""
    password: str = ""


class DispatchResult(enum.IntEnum):
    """Outcome of dispatch rule evaluation for an inbound call."""

    ACCEPT = 0
    REQUEST_PIN = 1
    NO_RULE_REJECT = 2  # reject the call with an error
    NO_RULE_DROP = 3  # silently drop the call


@dataclass
class CallInfo:
    """What is known about an inbound call when it is dispatched."""

    trunk_id: str = ""
    call: Any = None
    pin: str = ""
    no_pin: bool = False


@dataclass
class CallDispatch:
    """Where and how an inbound call is connected."""

    result: DispatchResult = DispatchResult.ACCEPT
    room: Any = None
    project_id: str = ""
    trunk_id: str = ""
    dispatch_rule_id: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    headers_to_attributes: Dict[str, str] = field(default_factory=dict)
    include_headers: HeaderOptions = HeaderOptions.NO_HEADERS
    attributes_to_headers: Dict[str, str] = field(default_factory=dict)
    enabled_features: List[Any] = field(default_factory=list)
    ringing_timeout: float = 0.0
    max_call_duration: float = 0.0
    media_encryption: MediaEncryption = MediaEncryption.DISABLE


class CallNotFoundError(LookupError):
    """No active call has the requested call ID."""


class TransferCanceledError(TimeoutError):
    """The caller stopped waiting for a transfer to finish."""


def expand_hostname(hostname: str, signaling_ip: Optional[IPAddress]) -> str:
    """Substitute ${IP} with a DNS-safe form of the signaling IP and validate the result."""
    ip_text = str(signaling_ip) if signaling_ip is not None else ""
    for old, new in ((".", "-"), ("[", ""), ("]", ""), (":", "-")):
        ip_text = ip_text.replace(old, new)
    result = hostname.replace("${IP}", ip_text)
    if any(ch in _HOSTNAME_FORBIDDEN for ch in result):
        raise ValueError(f"invalid hostname: {result!r}")
    return result


def normalize_ringing_interval(seconds: float) -> float:
    """Clamp a ringing interval outside 1..60 seconds back to one second."""
    if seconds < MIN_RINGING_INTERVAL or seconds > MAX_RINGING_INTERVAL:
        return MIN_RINGING_INTERVAL
    return seconds


def auth_response_status(
    info: Optional[AuthInfo], error: Optional[BaseException]
) -> Optional[int]:
    """SIP status for an INVITE after the credential lookup.

    None means no response is sent at all; 100 means the INVITE proceeds.
    """
    if error is not None:
        return 503
    if info is None:
        return 503
    return {
        AuthResult.DROP: None,
        AuthResult.NOT_FOUND: 404,
        AuthResult.PASSWORD: 407,
        AuthResult.ACCEPT: 100,
    }[info.result]


class Call(Protocol):
    """An active call as held by the registries."""

    def close(self) -> Any: ...

    def transfer_call(
        self,
        transfer_to: str,
        headers: Optional[Mapping[str, str]],
        dialtone: bool,
        timeout: float,
    ) -> Any: ...


class CallRegistry:
    """Thread-safe index of active calls by remote and local tag."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_remote: Dict[str, Any] = {}
        self._by_local: Dict[str, Any] = {}
        self._local_of: Dict[str, str] = {}

    def add(self, remote_tag: str, local_tag: str, call: Any) -> None:
        with self._lock:
            self._by_remote[remote_tag] = call
            self._by_local[local_tag] = call
            self._local_of[remote_tag] = local_tag

    def remove(self, remote_tag: str) -> Optional[Any]:
        """Forget a call; return it, or None if it was not registered."""
        with self._lock:
            call = self._by_remote.pop(remote_tag, None)
            local = self._local_of.pop(remote_tag, None)
            if local is not None and self._by_local.get(local) is call:
                del self._by_local[local]
            return call

    def by_remote(self, remote_tag: str) -> Optional[Any]:
        with self._lock:
            return self._by_remote.get(remote_tag)

    def by_local(self, local_tag: str) -> Optional[Any]:
        with self._lock:
            return self._by_local.get(local_tag)

    def close_all(self) -> int:
        """Forget every call and close it; return how many were closed."""
        with self._lock:
            calls = list(self._by_remote.values())
            self._by_remote.clear()
            self._by_local.clear()
            self._local_of.clear()
        for call in calls:
            try:
                call.close()
            except Exception:
                log.exception("failed to close call")
        return len(calls)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_remote)


@dataclass
class _PendingTransfer:
    done: threading.Event = field(default_factory=threading.Event)
    error: Optional[BaseException] = None


class TransferCoordinator:
    """Runs each (call, destination) transfer once, sharing its result with repeated requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, str], _PendingTransfer] = {}

    def transfer(
        self,
        call_id: str,
        transfer_to: str,
        process: Callable[[float], Any],
        ringing_timeout: Optional[float] = None,
        wait_timeout: Optional[float] = None,
    ) -> None:
        """Start or join a transfer and wait for it; re-raise its error.

        ``process`` receives the time budget in seconds. Raises
        TransferCanceledError if ``wait_timeout`` elapses first.
        """
        key = (call_id, transfer_to)
        with self._lock:
            pending = self._pending.get(key)
            if pending is None:
                pending = _PendingTransfer()
                self._pending[key] = pending
                timeout = (
                    ringing_timeout
                    if ringing_timeout is not None and ringing_timeout > 0
                    else DEFAULT_TRANSFER_TIMEOUT
                )
                threading.Thread(
                    target=self._run,
                    args=(key, pending, process, timeout),
                    daemon=True,
                ).start()
            else:
                log.debug(
                    "repeated request for call transfer callID=%s transferTo=%s",
                    call_id,
                    transfer_to,
                )
        if not pending.done.wait(wait_timeout):
            raise TransferCanceledError(
                f"transfer of {call_id!r} to {transfer_to!r} canceled"
            )
        if pending.error is not None:
            raise pending.error

    def _run(
        self,
        key: Tuple[str, str],
        pending: _PendingTransfer,
        process: Callable[[float], Any],
        timeout: float,
    ) -> None:
        try:
            process(timeout)
        except BaseException as exc:  # handed back to every waiter
            pending.error = exc
        finally:
            with self._lock:
                if self._pending.get(key) is pending:
                    del self._pending[key]
            pending.done.set()

    def pending(self) -> Set[Tuple[str, str]]:
        """Keys of transfers that are still running."""
        with self._lock:
            return set(self._pending)


class Service:
    """Ties outbound and inbound call registries, metrics and transfers together."""

    def __init__(
        self,
        service_config: ServiceConfig,
        monitor: Monitor,
        hostname: str = "",
        ringing_interval: float = 1.0,
        outbound: Optional[CallRegistry] = None,
        inbound: Optional[CallRegistry] = None,
    ):
        self.service_config = service_config
        self.monitor = monitor
        self.outbound = outbound if outbound is not None else CallRegistry()
        self.inbound = inbound if inbound is not None else CallRegistry()
        self._transfers = TransferCoordinator()
        self.hostname = expand_hostname(hostname, service_config.signaling_ip)
        if self.hostname:
            log.info("using hostname %s", self.hostname)
        self.ringing_interval = normalize_ringing_interval(ringing_interval)
        if self.ringing_interval != ringing_interval:
            log.info("ringing interval %s seconds", self.ringing_interval)
        log.debug("sip service version %s", VERSION)

    def active_calls(self) -> int:
        return len(self.outbound) + len(self.inbound)

    def create_participant_affinity(self) -> float:
        return 0.5

    def transfer_participant(
        self,
        call_id: str,
        transfer_to: str,
        headers: Optional[Mapping[str, str]] = None,
        play_dialtone: bool = False,
        ringing_timeout: Optional[float] = None,
        wait_timeout: Optional[float] = None,
    ) -> None:
        """Transfer an active call to another destination and wait for the result."""
        log.info("transfering SIP call callID=%s transferTo=%s", call_id, transfer_to)

        def process(timeout: float) -> None:
            self._process_transfer(call_id, transfer_to, headers, play_dialtone, timeout)

        self._transfers.transfer(
            call_id, transfer_to, process, ringing_timeout, wait_timeout
        )

    def _process_transfer(
        self,
        call_id: str,
        transfer_to: str,
        headers: Optional[Mapping[str, str]],
        dialtone: bool,
        timeout: float,
    ) -> None:
        # Look for the call in outbound calls first, then in inbound ones.
        for registry in (self.outbound, self.inbound):
            call = registry.by_local(call_id)
            if call is not None:
                call.transfer_call(transfer_to, headers, dialtone, timeout)
                return
        raise CallNotFoundError("unknown call")

    def stop(self) -> None:
        self.outbound.close_all()
        self.inbound.close_all()
        self.monitor.stop()