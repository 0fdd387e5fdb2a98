import ipaddress
import threading
import time

import pytest

from sipbridge.service import (
    AuthInfo,
    AuthResult,
    CallDispatch,
    CallNotFoundError,
    CallRegistry,
    DispatchResult,
    Service,
    ServiceConfig,
    TransferCanceledError,
    TransferCoordinator,
    auth_response_status,
    expand_hostname,
    normalize_ringing_interval,
)
from sipbridge.stats import Monitor


class FakeCall:
    def __init__(self, fail=None):
        self.closed = 0
        self.transfers = []
        self.fail = fail

    def close(self):
        self.closed += 1

    def transfer_call(self, transfer_to, headers, dialtone, timeout):
        self.transfers.append((transfer_to, headers, dialtone, timeout))
        if self.fail is not None:
            raise self.fail


def make_service(**kwargs):
    monitor = Monitor(node_id="node", num_cpu=4, cpu_idle=4)
    monitor.start()
    conf = ServiceConfig(signaling_ip=ipaddress.ip_address("10.0.0.1"))
    return Service(conf, monitor, **kwargs), monitor


# Cases carried over from the source's service tests.

def test_auth_failure_responds_503():
    assert auth_response_status(AuthInfo(), RuntimeError("Auth Failure")) == 503


def test_auth_drop_sends_no_response():
    assert auth_response_status(AuthInfo(result=AuthResult.DROP), None) is None


@pytest.mark.parametrize(
    "result,status",
    [
        (AuthResult.NOT_FOUND, 404),
        (AuthResult.PASSWORD, 407),
        (AuthResult.ACCEPT, 100),
    ],
)
def test_auth_other_results(result, status):
    assert auth_response_status(AuthInfo(result=result), None) == status


def test_expand_hostname_ipv4():
    ip = ipaddress.ip_address("10.0.0.1")
    assert expand_hostname("sip-${IP}.example.com", ip) == "sip-10-0-0-1.example.com"


def test_expand_hostname_ipv6():
    ip = ipaddress.ip_address("2001:db8::1")
    assert expand_hostname("${IP}.example.com", ip) == "2001-db8--1.example.com"


def test_expand_hostname_plain_and_empty():
    ip = ipaddress.ip_address("10.0.0.1")
    assert expand_hostname("sip.example.com", ip) == "sip.example.com"
    assert expand_hostname("", ip) == ""


@pytest.mark.parametrize("bad", ["bad host", "a/b", "${OTHER}", "x|y", "a%b"])
def test_expand_hostname_invalid(bad):
    with pytest.raises(ValueError, match="invalid hostname"):
        expand_hostname(bad, ipaddress.ip_address("10.0.0.1"))


@pytest.mark.parametrize(
    "given,expected", [(0, 1.0), (0.5, 1.0), (61, 1.0), (1, 1), (30, 30), (60, 60)]
)
def test_normalize_ringing_interval(given, expected):
    assert normalize_ringing_interval(given) == expected


def test_dispatch_defaults():
    d = CallDispatch()
    assert d.result == DispatchResult.ACCEPT
    assert d.headers == {} and d.enabled_features == []


def test_registry_add_lookup_remove():
    reg = CallRegistry()
    call = FakeCall()
    reg.add("remote-1", "local-1", call)
    assert len(reg) == 1
    assert reg.by_remote("remote-1") is call
    assert reg.by_local("local-1") is call
    assert reg.remove("remote-1") is call
    assert len(reg) == 0
    assert reg.by_local("local-1") is None
    assert reg.remove("remote-1") is None


def test_registry_close_all():
    reg = CallRegistry()
    calls = [FakeCall(), FakeCall()]
    reg.add("r1", "l1", calls[0])
    reg.add("r2", "l2", calls[1])
    assert reg.close_all() == 2
    assert [c.closed for c in calls] == [1, 1]
    assert len(reg) == 0
    assert reg.by_local("l1") is None


def test_coordinator_default_and_given_timeout():
    coord = TransferCoordinator()
    seen = []
    coord.transfer("c1", "tel:1", seen.append, ringing_timeout=0)
    coord.transfer("c1", "tel:1", seen.append, ringing_timeout=5)
    assert seen == [80.0, 5]
    assert coord.pending() == set()


def test_coordinator_propagates_error():
    coord = TransferCoordinator()

    def fail(_timeout):
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        coord.transfer("c1", "tel:1", fail)


def test_coordinator_deduplicates_and_cancels():
    coord = TransferCoordinator()
    release = threading.Event()
    calls = []

    def process(timeout):
        calls.append(timeout)
        release.wait(5)

    results = []
    first = threading.Thread(
        target=lambda: results.append(coord.transfer("c1", "tel:1", process))
    )
    first.start()
    deadline = time.monotonic() + 5
    while ("c1", "tel:1") not in coord.pending() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert coord.pending() == {("c1", "tel:1")}

    with pytest.raises(TransferCanceledError):
        coord.transfer("c1", "tel:1", process, wait_timeout=0.05)
    assert len(calls) == 1

    release.set()
    first.join(5)
    assert results == [None]
    assert coord.pending() == set()

    coord.transfer("c1", "tel:1", process)
    assert len(calls) == 2


def test_service_transfer_prefers_outbound():
    service, _ = make_service()
    out_call, in_call = FakeCall(), FakeCall()
    service.outbound.add("r-out", "call-1", out_call)
    service.inbound.add("r-in", "call-1", in_call)
    service.transfer_participant("call-1", "tel:42", {"X-A": "1"}, True, ringing_timeout=3)
    assert out_call.transfers == [("tel:42", {"X-A": "1"}, True, 3)]
    assert in_call.transfers == []


def test_service_transfer_inbound():
    service, _ = make_service()
    in_call = FakeCall()
    service.inbound.add("r-in", "call-2", in_call)
    service.transfer_participant("call-2", "tel:42")
    assert in_call.transfers == [("tel:42", None, False, 80.0)]


def test_service_transfer_error_and_unknown():
    service, _ = make_service()
    service.inbound.add("r", "call-3", FakeCall(fail=RuntimeError("forbidden")))
    with pytest.raises(RuntimeError, match="forbidden"):
        service.transfer_participant("call-3", "tel:1")
    with pytest.raises(CallNotFoundError, match="unknown call"):
        service.transfer_participant("missing", "tel:1")


def test_service_counts_and_stop():
    service, monitor = make_service()
    calls = [FakeCall(), FakeCall(), FakeCall()]
    service.outbound.add("a", "la", calls[0])
    service.inbound.add("b", "lb", calls[1])
    service.inbound.add("c", "lc", calls[2])
    assert service.active_calls() == 3
    assert service.create_participant_affinity() == 0.5
    assert len(monitor.metrics) > 0
    service.stop()
    assert service.active_calls() == 0
    assert [c.closed for c in calls] == [1, 1, 1]
    assert len(monitor.metrics) == 0


def test_service_config_hostname_and_interval():
    service, _ = make_service(hostname="${IP}.example.com", ringing_interval=120)
    assert service.hostname == "10-0-0-1.example.com"
    assert service.ringing_interval == 1.0


def test_service_rejects_invalid_hostname():
    monitor = Monitor(num_cpu=1, cpu_idle=1)
    conf = ServiceConfig(signaling_ip=ipaddress.ip_address("10.0.0.1"))
    with pytest.raises(ValueError, match="invalid hostname"):
        Service(conf, monitor, hostname="bad host")