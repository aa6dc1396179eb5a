from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class PacketSummary:
    """Header fields of one capture record, as far as they could be decoded."""

    index: int
    timestamp_ns: int
    captured_length: int
    original_length: int
    eth_src: Optional[str] = None
    eth_dst: Optional[str] = None
    ethertype: Optional[int] = None
    vlan_ids: Tuple[int, ...] = ()
    network: Optional[str] = None  # ipv4, ipv6, or None
    ip_src: Optional[str] = None
    ip_dst: Optional[str] = None
    ip_protocol: Optional[int] = None
    ttl: Optional[int] = None
    transport: Optional[str] = None  # udp, tcp, icmp, icmpv6
    src_port: Optional[int] = None
    dst_port: Optional[int] = None
    transport_length: Optional[int] = None
    payload_length: int = 0
    decode_error: Optional[str] = None

    @property
    def fully_decoded(self) -> bool:
        return self.decode_error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "timestamp_ns": self.timestamp_ns,
            "captured_length": self.captured_length,
            "eth_src": self.eth_src,
            "eth_dst": self.eth_dst,
            "network": self.network,
            "ip_src": self.ip_src,
            "ip_dst": self.ip_dst,
            "transport": self.transport,
            "src_port": self.src_port,
            "dst_port": self.dst_port,
            "payload_length": self.payload_length,
            "decode_error": self.decode_error,
        }


@dataclass(frozen=True)
class Anomaly:
    kind: str  # decode, truncated, malformed, field_mismatch, duplicate, reordered, out_of_range, missing, count_mismatch
    reason: str
    index: Optional[int] = None  # record index, or sequence number for `missing`

    def __str__(self) -> str:
        if self.index is None:
            return f"{self.kind}: {self.reason}"
        return f"{self.kind} @ {self.index}: {self.reason}"


@dataclass(frozen=True)
class Verdict:
    passed: bool
    expected_count: int
    observed_count: int
    ignored_count: int = 0
    anomalies: Tuple[Anomaly, ...] = ()

    @property
    def missing(self) -> Tuple[int, ...]:
        return tuple(a.index for a in self.anomalies if a.kind == "missing")

    def summary(self) -> str:
        state = "passed" if self.passed else "failed"
        return (
            f"pcap test {state}: {self.observed_count}/{self.expected_count} expected packets observed, "
            f"{len(self.anomalies)} anomalies"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "expected_count": self.expected_count,
            "observed_count": self.observed_count,
            "ignored_count": self.ignored_count,
            "anomalies": [{"kind": a.kind, "index": a.index, "reason": a.reason} for a in self.anomalies],
        }


@dataclass(frozen=True)
class CaptureExpectation:
    """
    What the forwarding exercise should have produced on the wire.

    The defaults describe the ixy packet generator: UDP datagrams with a UDP length of 26
    whose payload starts with b"ixy" and ends with a little-endian u32 sequence number
    counting up from 0.
    `match_fields` is an optional subset of PacketSummary fields that every matching packet
    must carry unmodified (e.g. (("dst_port", 42),)).
    """

    packet_count: int
    loss_tolerance: int = 0
    transport: str = "udp"
    udp_length: Optional[int] = 26
    payload_prefix: bytes = b"ixy"
    sequence_offset: Optional[int] = -4
    sequence_byteorder: str = "little"
    sequence_start: Optional[int] = 0  # None: count from the lowest observed number
    max_sequence_factor: int = 2
    allow_duplicates: bool = False
    require_order: bool = False
    match_fields: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class CaptureResult:
    version: Tuple[int, int]
    snaplen: int
    link_type: int
    packets: Tuple[PacketSummary, ...] = field(default_factory=tuple)
    verdict: Verdict = field(default_factory=lambda: Verdict(False, 0, 0))

    @property
    def packet_count(self) -> int:
        return len(self.packets)
