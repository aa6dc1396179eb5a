"""Builders for small libpcap files used across the tests."""
import ipaddress
import struct
from typing import Iterable

MAGIC_MICRO = 0xA1B2C3D4
MAGIC_NANO = 0xA1B23C4D


def pcap_header(byteorder="<", magic=MAGIC_MICRO, version=(2, 4), snaplen=65535, link_type=1) -> bytes:
    return struct.pack(byteorder + "IHHiIII", magic, version[0], version[1], 0, 0, snaplen, link_type)


def pcap_record(frame: bytes, ts_sec=0, ts_frac=0, byteorder="<", incl_len=None) -> bytes:
    length = len(frame) if incl_len is None else incl_len
    return struct.pack(byteorder + "IIII", ts_sec, ts_frac, length, len(frame)) + frame


def ethernet(payload: bytes, ethertype=0x0800, vlans=(), src=b"\x02\x00\x00\x00\x00\x01",
             dst=b"\x02\x00\x00\x00\x00\x02") -> bytes:
    header = dst + src
    for vid in vlans:
        header += struct.pack("!HH", 0x8100, vid)
    return header + struct.pack("!H", ethertype) + payload


def ipv4(payload: bytes, protocol=17, src="10.0.0.1", dst="10.0.0.2", ttl=64) -> bytes:
    header = struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, 20 + len(payload), 0, 0, ttl, protocol, 0,
        ipaddress.IPv4Address(src).packed, ipaddress.IPv4Address(dst).packed,
    )
    return header + payload


def ipv6(payload: bytes, next_header=17, src="fd00::1", dst="fd00::2") -> bytes:
    header = struct.pack(
        "!IHBB16s16s", 6 << 28, len(payload), next_header, 64,
        ipaddress.IPv6Address(src).packed, ipaddress.IPv6Address(dst).packed,
    )
    return header + payload


def udp(payload: bytes, src_port=42, dst_port=42, length=None) -> bytes:
    return struct.pack("!HHHH", src_port, dst_port, 8 + len(payload) if length is None else length, 0) + payload


def tcp(payload: bytes, src_port=1000, dst_port=80) -> bytes:
    return struct.pack("!HHIIBBHHH", src_port, dst_port, 0, 0, 5 << 4, 0x18, 1024, 0, 0) + payload


def ixy_payload(seq: int) -> bytes:
    """18 bytes, so the UDP length is 26 like the ixy packet generator's."""
    return b"ixy" + bytes(11) + struct.pack("<I", seq)


def ixy_frame(seq: int) -> bytes:
    return ethernet(ipv4(udp(ixy_payload(seq))))


def build_capture(frames: Iterable[bytes], byteorder="<", magic=MAGIC_MICRO) -> bytes:
    body = b"".join(
        pcap_record(frame, ts_sec=i, byteorder=byteorder) for i, frame in enumerate(frames)
    )
    return pcap_header(byteorder, magic) + body


def ixy_capture(seqs: Iterable[int]) -> bytes:
    return build_capture(ixy_frame(s) for s in seqs)
