# sipbridge

Building blocks for a service that bridges SIP telephone calls into
conferencing rooms. The package is pure Python and has no runtime
dependencies.

## Modules

### `sipbridge.types`

- `Transport` (`udp`, `tcp`, `tls`) and the API-side `SIPTransport`, with
  `transport_from` and `sip_transport_from` to convert between them.
- `URI`, a frozen value type with `normalize`, `get_host`, `get_port`
  (5060 by default, 5061 for TLS), `get_port_or_none`, `get_host_port`,
  `get_dest`, `get_uri`, `get_contact_uri` and `to_sip_uri`.
  `create_uri_from_user_and_address` builds a normalized `URI` from a
  `"host[:port]"` string.
- `Header` and `Headers`, a list with case-insensitive `get_header`.
- `headers_to_attrs` maps SIP headers (all, only `X-` headers, or none,
  per `HeaderOptions`) and explicit header mappings to participant
  attributes, adding call tag and full call ID when a `Signaling` object is
  given. `attrs_to_headers` maps attributes back to headers.
- `sdp_encryption` converts a `MediaEncryption` policy into an `Encryption`
  mode and raises `ValueError` for unknown values.

### `sipbridge.stats`

- `Counter`, `Gauge` and `Histogram`: small thread-safe in-process metrics
  keyed by label sets.
- `Monitor` registers the node's SIP metrics on `start()`, exposes them via
  the `metrics` mapping, and decides admission with `can_accept()` from the
  idle CPU reported through `update_cpu_idle()` and the configured
  `max_utilization`. `shutdown()` stops admission; `stop()` unregisters the
  metrics.
- `CallMonitor` (from `Monitor.new_call`) counts invites, accepted and
  rejected invites, active and terminated calls, RTP packets and SDP sizes,
  and returns timers (`session_dur`, `call_dur`, `join_dur`) that record a
  duration when called.

### `sipbridge.service`

- `expand_hostname` replaces `${IP}` with a DNS-safe form of the signaling
  IP and rejects invalid host names; `normalize_ringing_interval` resets
  intervals outside 1–60 seconds to one second.
- `auth_response_status` gives the SIP status for an INVITE after the
  credential lookup (`503` on error, `404`, `407`, `100`, or `None` to drop
  the request silently).
- `CallRegistry` indexes active calls by remote and local tag.
- `TransferCoordinator` runs each (call, destination) transfer once in a
  background thread and hands its result to every request for the same pair.
- `Service` combines an outbound and an inbound `CallRegistry`, a `Monitor`
  and transfers: `active_calls()`, `transfer_participant()` (raises
  `CallNotFoundError` for an unknown call and `TransferCanceledError` when
  the wait times out) and `stop()`.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import ipaddress

from sipbridge.stats import CallDir, Monitor
from sipbridge.service import Service, ServiceConfig
from sipbridge.types import Transport, create_uri_from_user_and_address

uri = create_uri_from_user_and_address("alice", "sip.example.com:5080", Transport.TCP)
print(uri.get_host_port())   # sip.example.com:5080

mon = Monitor(node_id="node-1", max_utilization=0.9)
mon.start()
call = mon.new_call(CallDir.INBOUND, "from.example.com", "to.example.com")
call.invite_req()
print(mon.metrics["invite_requests"].value({"dir": "in"}))   # 1.0

svc = Service(
    ServiceConfig(signaling_ip=ipaddress.ip_address("10.0.0.1")),
    mon,
    hostname="sip-${IP}.example.com",
)
print(svc.hostname)        # sip-10-0-0-1.example.com
print(svc.active_calls())  # 0
```

## What this package does not do

It contains no SIP stack: it does not listen on UDP, TCP or TLS ports, parse
or send SIP messages, negotiate SDP, carry RTP media or join conferencing
rooms. Calls held in a `CallRegistry` are any objects with `close()` and
`transfer_call()` methods supplied by the caller. Metrics stay in memory and
are not exported over any endpoint. There is no command-line program.