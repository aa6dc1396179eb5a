"""
Reader for classic libpcap capture files and a layered Ethernet frame decoder.

Records are read with scapy's RawPcapReader; each header is dissected with the matching
scapy layer from the bytes the enclosing header says it owns, so a short or inconsistent
frame ends decoding at that layer instead of being silently re-guessed.

Supported: libpcap 2.x in both byte orders with micro- or nanosecond timestamps,
link type Ethernet, 802.1Q/802.1ad tags, IPv4, IPv6 (hop-by-hop, routing, fragment and
destination options headers), UDP, TCP, ICMP and ICMPv6. pcapng and other link types
are rejected.
"""
import io
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple
from scapy.data import DLT_EN10MB, MTU
from scapy.error import Scapy_Exception
from scapy.layers.inet import IP, TCP, UDP
from scapy.layers.inet6 import (
    IPv6,
    IPv6ExtHdrDestOpt,
    IPv6ExtHdrFragment,
    IPv6ExtHdrHopByHop,
    IPv6ExtHdrRouting,
)
from scapy.layers.l2 import Dot1Q, Dot3, Ether
from scapy.utils import RawPcapReader
from ixyci.core.errors import MalformedCapture
from ixyci.models.capture import PacketSummary

GLOBAL_HEADER_LEN = 24
RECORD_HEADER_LEN = 16
ETHER_HEADER_LEN = 14
VLAN_TAG_LEN = 4
IPV4_HEADER_LEN = 20
IPV6_HEADER_LEN = 40
UDP_HEADER_LEN = 8
TCP_HEADER_LEN = 20

_PCAPNG_MAGIC = b"\x0a\x0d\x0d\x0a"

ETHERTYPE_IPV4 = 0x0800
ETHERTYPE_IPV6 = 0x86DD
VLAN_ETHERTYPES = (0x8100, 0x88A8, 0x9100)

IPPROTO_ICMP = 1
IPPROTO_TCP = 6
IPPROTO_UDP = 17
IPPROTO_ICMPV6 = 58
IPPROTO_FRAGMENT = 44
# Extension headers that share the next-header/length layout
IPV6_EXTENSION_HEADERS = {
    0: IPv6ExtHdrHopByHop,
    43: IPv6ExtHdrRouting,
    60: IPv6ExtHdrDestOpt,
}


@dataclass(frozen=True)
class CaptureHeader:
    byteorder: str
    ns_per_tick: int
    version: Tuple[int, int]
    snaplen: int
    link_type: int


@dataclass(frozen=True)
class Record:
    index: int
    timestamp_ns: int
    original_length: int
    data: bytes
    truncated: bool = False  # the file ended inside this record


@dataclass(frozen=True)
class DecodedPacket:
    summary: PacketSummary
    payload: bytes


class DecodeError(Exception):
    pass


def _open(capture: bytes) -> RawPcapReader:
    if len(capture) < GLOBAL_HEADER_LEN:
        raise MalformedCapture(f"capture is {len(capture)} bytes, shorter than the pcap global header")
    if capture[:4] == _PCAPNG_MAGIC:
        raise MalformedCapture("pcapng captures are not supported")
    try:
        return RawPcapReader(io.BytesIO(capture))
    except Scapy_Exception as e:
        raise MalformedCapture(f"bad pcap magic {capture[:4].hex()}: {e}") from e


def parse_header(capture: bytes) -> CaptureHeader:
    reader = _open(capture)
    try:
        # RawPcapReader does not keep the format version
        major, minor = struct.unpack_from(reader.endian + "HH", capture, 4)
        if major != 2:
            raise MalformedCapture(f"unsupported pcap version {major}.{minor}")
        if reader.linktype != DLT_EN10MB:
            raise MalformedCapture(f"unsupported link type {reader.linktype}, only Ethernet is supported")
        return CaptureHeader(byteorder=reader.endian, ns_per_tick=1 if reader.nano else 1000,
                             version=(major, minor), snaplen=reader.snaplen, link_type=reader.linktype)
    finally:
        reader.close()


def iter_records(capture: bytes, header: CaptureHeader) -> Iterator[Record]:
    """
    Yield the records following the global header. A record cut short by the end of
    the file is yielded once with truncated=True and ends the iteration.
    """
    offset = GLOBAL_HEADER_LEN
    index = 0
    with _open(capture) as reader:
        for data, meta in reader:
            timestamp_ns = meta.sec * 1_000_000_000 + meta.usec * header.ns_per_tick
            if meta.caplen > MTU or len(data) < meta.caplen:
                yield Record(index=index, timestamp_ns=timestamp_ns, original_length=meta.wirelen,
                             data=data, truncated=True)
                return
            offset += RECORD_HEADER_LEN + meta.caplen
            yield Record(index=index, timestamp_ns=timestamp_ns, original_length=meta.wirelen, data=data)
            index += 1
    if offset < len(capture):
        # Fewer bytes left than a record header; the reader stops without a word
        yield Record(index=index, timestamp_ns=0, original_length=0, data=capture[offset:], truncated=True)


def _need(data: bytes, length: int, what: str):
    if len(data) < length:
        raise DecodeError(f"{what} truncated: need {length} bytes, have {len(data)}")


def decode_record(record: Record) -> DecodedPacket:
    """
    Decode link, network and transport headers of one record. Decoding stops at the first
    layer that cannot be parsed; the fields decoded up to that point are kept and the
    failure is recorded in `decode_error`.
    """
    fields = {
        "index": record.index,
        "timestamp_ns": record.timestamp_ns,
        "captured_length": len(record.data),
        "original_length": record.original_length,
    }
    payload = b""
    try:
        payload = _decode_ethernet(record.data, fields)
    except DecodeError as e:
        fields["decode_error"] = str(e)
    if record.truncated:
        fields["decode_error"] = "record truncated by end of capture"
    fields["payload_length"] = len(payload)
    return DecodedPacket(summary=PacketSummary(**fields), payload=payload)


def _decode_ethernet(data: bytes, fields: dict) -> bytes:
    _need(data, ETHER_HEADER_LEN, "ethernet header")
    frame = Ether(data[:ETHER_HEADER_LEN])
    fields["eth_dst"] = frame.dst
    fields["eth_src"] = frame.src
    if isinstance(frame, Dot3):
        # 802.3 length field instead of an ethertype
        return data[ETHER_HEADER_LEN:]
    ethertype = frame.type
    offset = ETHER_HEADER_LEN
    vlans = []
    while ethertype in VLAN_ETHERTYPES:
        _need(data, offset + VLAN_TAG_LEN, "vlan tag")
        tag = Dot1Q(data[offset:offset + VLAN_TAG_LEN])
        vlans.append(tag.vlan)
        ethertype = tag.type
        offset += VLAN_TAG_LEN
    fields["vlan_ids"] = tuple(vlans)
    fields["ethertype"] = ethertype
    body = data[offset:]
    if ethertype == ETHERTYPE_IPV4:
        return _decode_ipv4(body, fields)
    if ethertype == ETHERTYPE_IPV6:
        return _decode_ipv6(body, fields)
    return body


def _decode_ipv4(data: bytes, fields: dict) -> bytes:
    _need(data, IPV4_HEADER_LEN, "ipv4 header")
    ip = IP(data[:IPV4_HEADER_LEN])
    if ip.version != 4:
        raise DecodeError(f"ipv4 header has version {ip.version}")
    ihl = ip.ihl * 4
    if ihl < IPV4_HEADER_LEN:
        raise DecodeError(f"ipv4 header length {ihl} is too small")
    _need(data, ihl, "ipv4 options")
    fields["network"] = "ipv4"
    fields["ip_src"] = ip.src
    fields["ip_dst"] = ip.dst
    fields["ip_protocol"] = ip.proto
    fields["ttl"] = ip.ttl
    if ip.len < ihl:
        raise DecodeError(f"ipv4 total length {ip.len} is smaller than its header")
    _need(data, ip.len, "ipv4 packet")
    # Trailing bytes past the total length are Ethernet padding
    body = data[ihl:ip.len]
    if ip.frag:
        # Non-first fragment, no transport header to decode
        return body
    return _decode_transport(ip.proto, body, fields)


def _decode_ipv6(data: bytes, fields: dict) -> bytes:
    _need(data, IPV6_HEADER_LEN, "ipv6 header")
    ip6 = IPv6(data[:IPV6_HEADER_LEN])
    if ip6.version != 6:
        raise DecodeError(f"ipv6 header has version {ip6.version}")
    fields["network"] = "ipv6"
    fields["ip_src"] = ip6.src
    fields["ip_dst"] = ip6.dst
    fields["ttl"] = ip6.hlim
    _need(data, IPV6_HEADER_LEN + ip6.plen, "ipv6 packet")
    body = data[IPV6_HEADER_LEN:IPV6_HEADER_LEN + ip6.plen]
    next_header = ip6.nh
    while next_header in IPV6_EXTENSION_HEADERS or next_header == IPPROTO_FRAGMENT:
        _need(body, 8, "ipv6 extension header")
        if next_header == IPPROTO_FRAGMENT:
            fragment = IPv6ExtHdrFragment(body[:8])
            if fragment.offset:
                fields["ip_protocol"] = fragment.nh
                return body[8:]
            next_header, length = fragment.nh, 8
        else:
            extension = IPV6_EXTENSION_HEADERS[next_header](body[:2])
            next_header, length = extension.nh, (extension.len + 1) * 8
        _need(body, length, "ipv6 extension header")
        body = body[length:]
    fields["ip_protocol"] = next_header
    return _decode_transport(next_header, body, fields)


def _decode_transport(protocol: int, data: bytes, fields: dict) -> bytes:
    if protocol == IPPROTO_UDP:
        _need(data, UDP_HEADER_LEN, "udp header")
        udp = UDP(data[:UDP_HEADER_LEN])
        fields["transport"] = "udp"
        fields["src_port"], fields["dst_port"] = udp.sport, udp.dport
        fields["transport_length"] = udp.len
        if udp.len < UDP_HEADER_LEN:
            raise DecodeError(f"udp length {udp.len} is smaller than its header")
        _need(data, udp.len, "udp datagram")
        return data[UDP_HEADER_LEN:udp.len]
    if protocol == IPPROTO_TCP:
        _need(data, TCP_HEADER_LEN, "tcp header")
        tcp = TCP(data[:TCP_HEADER_LEN])
        offset = tcp.dataofs * 4
        fields["transport"] = "tcp"
        fields["src_port"], fields["dst_port"] = tcp.sport, tcp.dport
        if offset < TCP_HEADER_LEN:
            raise DecodeError(f"tcp data offset {offset} is too small")
        _need(data, offset, "tcp options")
        fields["transport_length"] = len(data)
        return data[offset:]
    if protocol in (IPPROTO_ICMP, IPPROTO_ICMPV6):
        # Type, code and checksum; the rest depends on the message type
        _need(data, 4, "icmp header")
        fields["transport"] = "icmp" if protocol == IPPROTO_ICMP else "icmpv6"
        fields["transport_length"] = len(data)
        return data[4:]
    return data


def read_capture(capture: bytes) -> Tuple[CaptureHeader, Iterator[DecodedPacket]]:
    header = parse_header(capture)
    return header, (decode_record(r) for r in iter_records(capture, header))


def sequence_number(payload: bytes, offset: int, byteorder: str) -> Optional[int]:
    """Read a u32 at `offset` (negative offsets count from the end)."""
    start = offset if offset >= 0 else len(payload) + offset
    if start < 0 or start + 4 > len(payload):
        return None
    return int.from_bytes(payload[start:start + 4], byteorder)
