"""SIP transports, URIs, header lookup and header/attribute mapping."""

from __future__ import annotations

import enum
import ipaddress
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_PORT = 5060
DEFAULT_TLS_PORT = 5061

ATTR_SIP_PREFIX = "sip."
ATTR_SIP_HEADER_PREFIX = "sip.h."
ATTR_SIP_CALL_TAG = ATTR_SIP_PREFIX + "callTag"
ATTR_SIP_CALL_ID_FULL = ATTR_SIP_PREFIX + "callIDFull"

_PORT_RE = re.compile(r"[+-]?[0-9]+", re.ASCII)


class Transport(str, enum.Enum):
    """Signaling transport as it appears in SIP URIs."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"

    def __str__(self) -> str:
        return self.value


class SIPTransport(enum.IntEnum):
    """Transport selection as carried in API messages."""

    AUTO = 0
    UDP = 1
    TCP = 2
    TLS = 3


class HeaderOptions(enum.IntEnum):
    """Which SIP headers are mapped to participant attributes."""

    NO_HEADERS = 0
    X_HEADERS = 1
    ALL_HEADERS = 2


class MediaEncryption(enum.IntEnum):
    """Media encryption policy as carried in API messages."""

    DISABLE = 0
    ALLOW = 1
    REQUIRE = 2


class Encryption(enum.Enum):
    """Media encryption mode used for SDP negotiation."""

    NONE = "none"
    ALLOW = "allow"
    REQUIRE = "require"


@dataclass(frozen=True)
class Header:
    """A single SIP header."""

    name: str
    value: str


class Headers(list):
    """A list of SIP headers with case-insensitive lookup."""

    def get_header(self, name: str) -> Optional[Header]:
        """Return the first header with the given name, ignoring case."""
        wanted = name.lower()
        return next((h for h in self if h.name.lower() == wanted), None)


@dataclass
class SipUri:
    """A SIP URI as placed into signaling messages."""

    user: str = ""
    host: str = ""
    port: int = 0
    uri_params: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        out = "sip:"
        if self.user:
            out += self.user + "@"
        out += self.host
        if self.port:
            out += f":{self.port}"
        for key, value in self.uri_params.items():
            out += f";{key}={value}"
        return out


@dataclass(frozen=True)
class SIPUriInfo:
    """A SIP URI description as reported through the API."""

    user: str
    host: str
    port: int
    transport: SIPTransport
    ip: str = ""


def transport_from(value: SIPTransport) -> Optional[Transport]:
    """Map an API transport value to a URI transport; None for AUTO."""
    return {
        SIPTransport.UDP: Transport.UDP,
        SIPTransport.TCP: Transport.TCP,
        SIPTransport.TLS: Transport.TLS,
    }.get(value)


def sip_transport_from(transport: Optional[Transport]) -> SIPTransport:
    """Map a URI transport to an API transport value."""
    return {
        Transport.UDP: SIPTransport.UDP,
        Transport.TCP: SIPTransport.TCP,
        Transport.TLS: SIPTransport.TLS,
    }.get(transport, SIPTransport.AUTO)


def _split_host_port(hostport: str) -> Tuple[str, str]:
    """Split "host:port" or "[host]:port"; raise ValueError if malformed."""
    last = hostport.rfind(":")
    if last < 0:
        raise ValueError(f"missing port in address {hostport!r}")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {hostport!r}")
        if end + 1 == len(hostport):
            raise ValueError(f"missing port in address {hostport!r}")
        if end + 1 != last:
            raise ValueError(f"unexpected characters in address {hostport!r}")
        host = hostport[1:end]
        if "[" in hostport[1:]:
            raise ValueError(f"unexpected '[' in address {hostport!r}")
    else:
        host = hostport[:last]
        if ":" in host:
            raise ValueError(f"too many colons in address {hostport!r}")
        if "[" in hostport:
            raise ValueError(f"unexpected '[' in address {hostport!r}")
    port = hostport[last + 1:]
    if "]" in port or ("]" in host and not hostport.startswith("[")):
        raise ValueError(f"unexpected ']' in address {hostport!r}")
    return host, port


@dataclass(frozen=True)
class URI:
    """A SIP endpoint: user, host name, optional IP address, port and transport."""

    user: str = ""
    host: str = ""
    addr: Optional[IPAddress] = None
    port: int = 0
    transport: Optional[Transport] = None

    def normalize(self) -> "URI":
        """Move a port embedded in the host name into the port field."""
        try:
            host, sport = _split_host_port(self.host)
        except ValueError:
            return self
        if not _PORT_RE.fullmatch(sport):
            return self
        return replace(self, host=host, port=int(sport) & 0xFFFF)

    def get_host(self) -> str:
        if self.host:
            return self.host
        return str(self.addr) if self.addr is not None else ""

    def get_port(self) -> int:
        if self.port:
            return self.port
        return DEFAULT_TLS_PORT if self.transport == Transport.TLS else DEFAULT_PORT

    def get_port_or_none(self) -> int:
        port = self.get_port()
        return 0 if port == DEFAULT_PORT else port

    def get_host_port(self) -> str:
        return f"{self.get_host()}:{self.get_port()}"

    def get_dest(self) -> str:
        host = str(self.addr) if self.addr is not None else self.host
        return f"{host}:{self.get_port()}"

    def get_uri(self) -> SipUri:
        su = SipUri(user=self.user, host=self.get_host(), port=self.port)
        if self.transport is not None:
            su.uri_params["transport"] = self.transport.value
        return su

    def get_contact_uri(self) -> SipUri:
        su = self.get_uri()
        # Use the IP instead of a hostname for TCP and UDP.
        if self.transport in (Transport.UDP, Transport.TCP) and self.addr is not None:
            su.host = str(self.addr)
        return su

    def to_sip_uri(self) -> SIPUriInfo:
        return SIPUriInfo(
            user=self.user,
            host=self.get_host(),
            port=self.get_port(),
            transport=sip_transport_from(self.transport),
            ip=str(self.addr) if self.addr is not None else "",
        )


def create_uri_from_user_and_address(
    user: str, address: str, transport: Optional[Transport]
) -> URI:
    """Build a normalized URI from a user and a "host[:port]" address."""
    return URI(user=user, host=address, transport=transport).normalize()


def get_tag_from(params: Mapping[str, str]) -> Optional[str]:
    """Return the "tag" parameter of a From/To header, or None if absent."""
    return params.get("tag")


class Signaling(Protocol):
    """The signaling side of a call, as seen by header mapping."""

    def from_uri(self) -> URI: ...

    def to_uri(self) -> URI: ...

    def tag(self) -> str: ...

    def call_id(self) -> str: ...

    def remote_headers(self) -> Headers: ...


def headers_to_attrs(
    attrs: Optional[Mapping[str, str]],
    hdr_to_attr: Optional[Mapping[str, str]] = None,
    opts: HeaderOptions = HeaderOptions.NO_HEADERS,
    signaling: Optional[Signaling] = None,
    headers: Optional[Iterable[Header]] = None,
    global_hdr_to_attr: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Map SIP headers (and call metadata) to participant attributes."""
    result = dict(attrs or {})
    if signaling is not None:
        headers = signaling.remote_headers()
    hdrs = Headers(headers or [])
    if opts != HeaderOptions.NO_HEADERS:
        for h in hdrs:
            if h is None:
                continue
            name = h.name.lower()
            if not name:
                continue
            if opts == HeaderOptions.X_HEADERS and not name.startswith("x-"):
                continue
            result[ATTR_SIP_HEADER_PREFIX + name] = h.value
    for mapping in (global_hdr_to_attr or {}, hdr_to_attr or {}):
        for hdr, name in mapping.items():
            found = hdrs.get_header(hdr)
            if found is not None:
                result[name] = found.value
    if signaling is not None:
        tag = signaling.tag()
        if tag:
            result[ATTR_SIP_CALL_TAG] = str(tag)
        cid = signaling.call_id()
        if cid:
            result[ATTR_SIP_CALL_ID_FULL] = cid
    return result


def attrs_to_headers(
    attrs: Mapping[str, str],
    attr_to_hdr: Optional[Mapping[str, str]],
    headers: Optional[Mapping[str, str]] = None,
) -> Optional[Dict[str, str]]:
    """Map participant attributes to SIP headers; returns headers unchanged if no mapping."""
    if not attr_to_hdr:
        return None if headers is None else dict(headers)
    result = dict(headers or {})
    for attr, hdr in attr_to_hdr.items():
        if attr in attrs:
            result[hdr] = attrs[attr]
    return result


def sdp_encryption(value: MediaEncryption) -> Encryption:
    """Convert an API encryption policy to an SDP encryption mode."""
    try:
        return {
            MediaEncryption.DISABLE: Encryption.NONE,
            MediaEncryption.ALLOW: Encryption.ALLOW,
            MediaEncryption.REQUIRE: Encryption.REQUIRE,
        }[value]
    except (KeyError, TypeError):
        raise ValueError("invalid SIP media encryption type") from None