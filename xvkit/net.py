"""Ethernet, ARP, IPv4 and ICMP echo handling for a single host, plus a fixed HTTP reply."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Callable, Optional

ARP_TABLE_MAX = 64
ARP_HARDWARE_TYPE = 0x0001  # Ethernet
ARP_PROTOCOL_TYPE = 0x0800  # IPv4
ARP_OPS_REQUEST = 0x0001
ARP_OPS_REPLY = 0x0002

ETH_TYPE_IPV4 = 0x0800
ETH_TYPE_ARP = 0x0806

IPV4_TYPE_ICMP = 0x1
IPV4_TYPE_TCP = 0x6

ICMP_TYPE_ECHO_REQUEST = 0x8
ICMP_TYPE_ECHO_REPLY = 0x0

BROADCAST_MAC = b"\xff" * 6
DEFAULT_MAC = b"\x02\x00\x00\x00\x00\x01"
DEFAULT_IP = bytes([10, 0, 1, 10])
SCAN_PREFIX = bytes([10, 0, 1])

ICMP_ECHO_SIZE = 64  # header, timestamp and 48 data bytes
_ICMP_CHECKSUM_WORDS = 32

_ETH = struct.Struct("!6s6sH")
_ARP = struct.Struct("!HHBBH6s4s6s4s")
_IPV4 = struct.Struct("!BBHHHBBH4s4s")
_ICMP_HEAD = struct.Struct("!BBH")

ETH_HEADER_SIZE = _ETH.size
IPV4_HEADER_SIZE = _IPV4.size


def n2h_ushort(value: int) -> int:
    """Swap the two bytes of a 16-bit value."""
    return ((value & 0xFF) << 8) + ((value >> 8) & 0xFF)


def h2n_ushort(value: int) -> int:
    """Swap the two bytes of a 16-bit value."""
    return ((value & 0xFF) << 8) + ((value >> 8) & 0xFF)


def n2h_uint(value: int) -> int:
    """Reverse the four bytes of a 32-bit value."""
    value &= 0xFFFFFFFF
    return (
        ((value & 0xFF) << 24)
        + ((value & 0xFF00) << 8)
        + ((value & 0xFF0000) >> 8)
        + ((value & 0xFF000000) >> 24)
    )


def h2n_uint(value: int) -> int:
    """Apply the host-to-network word mapping, which only looks at the low 16 bits."""
    value &= 0xFFFFFFFF
    return (
        ((value & 0xF) << 24)
        + ((value & 0xF0) << 8)
        + ((value & 0xF00) >> 8)
        + ((value & 0xF000) >> 24)
    ) & 0xFFFFFFFF


def _ones_complement(data: bytes) -> int:
    total = 0
    for high, low in zip(data[0::2], data[1::2]):
        total += (high << 8) + low
        if total > 0xFFFF:
            total = (total & 0xFFFF) + 1
    return ~total & 0xFFFF


def ipv4_checksum(header: bytes) -> int:
    """Internet checksum over an IPv4 header, its length taken from the IHL field."""
    header = bytes(header)
    if not header:
        raise ValueError("IPv4 header is empty")
    length = (header[0] & 0xF) * 4
    if len(header) < length:
        raise ValueError(f"IPv4 header needs {length} bytes, got {len(header)}")
    return _ones_complement(header[:length])


def icmp_checksum(data: bytes) -> int:
    """Internet checksum over the 64 bytes of an ICMP echo message."""
    data = bytes(data)
    if len(data) < ICMP_ECHO_SIZE:
        raise ValueError(f"ICMP echo message needs {ICMP_ECHO_SIZE} bytes, got {len(data)}")
    return _ones_complement(data[:_ICMP_CHECKSUM_WORDS * 2])


def _eth_header(dst_mac: bytes, src_mac: bytes, eth_type: int) -> bytes:
    return _ETH.pack(dst_mac, src_mac, eth_type)


def _format_ip(ip: bytes) -> str:
    return "IP address: " + ".".join(str(b) for b in ip)


def _format_mac(mac: bytes) -> str:
    return "MAC address: " + ":".join(f"{b:x}" for b in mac)


@dataclass(frozen=True)
class ArpPacket:
    """An Ethernet/IPv4 ARP message."""

    op: int
    src_mac: bytes
    src_ip: bytes
    dst_mac: bytes
    dst_ip: bytes
    hrd_type: int = ARP_HARDWARE_TYPE
    pro_type: int = ARP_PROTOCOL_TYPE
    hrd_len: int = 6
    pro_len: int = 4

    SIZE = _ARP.size

    @classmethod
    def parse(cls, data: bytes) -> "ArpPacket":
        if len(data) < _ARP.size:
            raise ValueError(f"ARP packet needs {_ARP.size} bytes, got {len(data)}")
        hrd_type, pro_type, hrd_len, pro_len, op, src_mac, src_ip, dst_mac, dst_ip = (
            _ARP.unpack_from(data, 0)
        )
        return cls(
            op=op, src_mac=src_mac, src_ip=src_ip, dst_mac=dst_mac, dst_ip=dst_ip,
            hrd_type=hrd_type, pro_type=pro_type, hrd_len=hrd_len, pro_len=pro_len,
        )

    def pack(self) -> bytes:
        return _ARP.pack(
            self.hrd_type, self.pro_type, self.hrd_len, self.pro_len, self.op,
            self.src_mac, self.src_ip, self.dst_mac, self.dst_ip,
        )


@dataclass
class _ArpSlot:
    ip: bytes = bytes(4)
    mac: bytes = bytes(6)
    use: bool = False


class ArpTable:
    """A fixed number of IP-to-MAC mappings."""

    def __init__(self, size: int = ARP_TABLE_MAX) -> None:
        self._slots = [_ArpSlot() for _ in range(size)]

    def search(self, ip: bytes) -> Optional[int]:
        """Return the index of the slot holding ip, or None."""
        ip = bytes(ip)
        return next((i for i, slot in enumerate(self._slots) if slot.ip == ip), None)

    def update(self, packet: ArpPacket) -> int:
        """Record the sender of an ARP packet and return the slot used."""
        index = self.search(packet.src_ip)
        if index is not None:
            self._slots[index].mac = bytes(packet.src_mac)
            return index
        free = next((i for i, slot in enumerate(self._slots) if not slot.use), None)
        if free is None:
            # A full table has its first entry's MAC overwritten.
            self._slots[0].mac = bytes(packet.src_mac)
            return 0
        slot = self._slots[free]
        slot.mac = bytes(packet.src_mac)
        slot.ip = bytes(packet.src_ip)
        slot.use = True
        return free

    def entries(self) -> list[tuple[int, bytes, bytes]]:
        """Return (index, ip, mac) for every slot in use."""
        return [(i, s.ip, s.mac) for i, s in enumerate(self._slots) if s.use]

    def __str__(self) -> str:
        return "".join(
            f"Entry Num: {i} {_format_ip(ip)} {_format_mac(mac)}\n"
            for i, ip, mac in self.entries()
        )


class ArpResult(enum.IntEnum):
    UPDATED_TABLE = 1
    CREATED_REPLY = 2


Sender = Callable[[bytes], bool]


class NetStack:
    """Answers ARP and ICMP echo requests for one address.

    The sender takes a frame and returns False while the transmit ring is full.
    TCP segments are passed to tcp_handler when one is given.
    """

    def __init__(
        self,
        mac: bytes = DEFAULT_MAC,
        ip: bytes = DEFAULT_IP,
        sender: Optional[Sender] = None,
        tcp_handler: Optional[Callable[[bytes], object]] = None,
    ) -> None:
        if len(mac) != 6 or len(ip) != 4:
            raise ValueError("a MAC address has 6 bytes and an IPv4 address 4")
        self.mac = bytes(mac)
        self.ip = bytes(ip)
        self.arp_table = ArpTable()
        self.sent: list[bytes] = []
        self._sender = sender
        self._tcp_handler = tcp_handler
        self._last_ip_id: Optional[int] = None
        self.send_id = 0

    def _send(self, frame: bytes) -> bool:
        if self._sender is None:
            self.sent.append(frame)
            return True
        return bool(self._sender(frame))

    def handle_frame(self, frame: bytes):
        """Dispatch an Ethernet frame by its type field."""
        if len(frame) < _ETH.size:
            raise ValueError("Ethernet frame is truncated")
        _, _, eth_type = _ETH.unpack_from(frame, 0)
        if eth_type == ETH_TYPE_ARP:
            return self.handle_arp(frame[_ETH.size:])
        if eth_type == ETH_TYPE_IPV4:
            return self.handle_ipv4(frame)
        return None

    def handle_arp(self, payload: bytes) -> Optional[ArpResult]:
        """Answer a request for this address or learn from a reply to it."""
        packet = ArpPacket.parse(payload)
        if (
            packet.hrd_type != ARP_HARDWARE_TYPE
            or packet.pro_type != ARP_PROTOCOL_TYPE
            or packet.hrd_len != 6
            or packet.pro_len != 4
        ):
            return None
        if self.ip not in (packet.dst_ip, packet.src_ip):
            return None
        if packet.op == ARP_OPS_REQUEST and packet.dst_ip == self.ip:
            self._send(self.arp_reply_frame(packet))
            return ArpResult.CREATED_REPLY
        if packet.op == ARP_OPS_REPLY and packet.dst_ip == self.ip:
            self.arp_table.update(packet)
            return ArpResult.UPDATED_TABLE
        return None

    def handle_ipv4(self, frame: bytes):
        """Handle an IPv4 frame not seen before and not sent from this address."""
        if len(frame) < _ETH.size + _IPV4.size:
            raise ValueError("IPv4 packet is truncated")
        fields = _IPV4.unpack_from(frame, _ETH.size)
        ip_id, protocol, src_ip = fields[3], fields[6], fields[8]
        if ip_id == self._last_ip_id or src_ip == self.ip:
            return None
        self._last_ip_id = ip_id
        if protocol == IPV4_TYPE_ICMP:
            offset = _ETH.size + (frame[_ETH.size] & 0xF) * 4
            if len(frame) < offset + _ICMP_HEAD.size:
                raise ValueError("ICMP message is truncated")
            icmp_type, code, _ = _ICMP_HEAD.unpack_from(frame, offset)
            if code == 0 and icmp_type == ICMP_TYPE_ECHO_REQUEST:
                reply = self.icmp_reply_frame(frame)
                self._send(reply)
                return reply
            return None
        if protocol == IPV4_TYPE_TCP and self._tcp_handler is not None:
            return self._tcp_handler(frame)
        return None

    def arp_broadcast_frame(self, host: int) -> bytes:
        """Build a broadcast ARP request for the address SCAN_PREFIX.host."""
        if not 0 <= host <= 0xFF:
            raise ValueError(f"host number {host} is outside 0..255")
        request = ArpPacket(
            op=ARP_OPS_REQUEST,
            src_mac=self.mac,
            src_ip=self.ip,
            dst_mac=bytes(6),
            dst_ip=SCAN_PREFIX + bytes([host]),
        )
        return _eth_header(BROADCAST_MAC, self.mac, ETH_TYPE_ARP) + request.pack()

    def arp_reply_frame(self, request: ArpPacket) -> bytes:
        """Build the ARP reply to a request."""
        reply = ArpPacket(
            op=ARP_OPS_REPLY,
            src_mac=self.mac,
            src_ip=self.ip,
            dst_mac=request.src_mac,
            dst_ip=request.src_ip,
        )
        return _eth_header(request.src_mac, self.mac, ETH_TYPE_ARP) + reply.pack()

    def icmp_reply_frame(self, frame: bytes) -> bytes:
        """Build the echo reply to an ICMP echo request frame."""
        if len(frame) < _ETH.size + _IPV4.size:
            raise ValueError("IPv4 packet is truncated")
        src_mac = frame[6:12]
        recv_ip = _IPV4.unpack_from(frame, _ETH.size)
        offset = _ETH.size + (frame[_ETH.size] & 0xF) * 4
        request = frame[offset:offset + ICMP_ECHO_SIZE]
        if len(request) < ICMP_ECHO_SIZE:
            raise ValueError(f"ICMP echo request needs {ICMP_ECHO_SIZE} bytes")

        header = bytearray(_IPV4.pack(
            (4 << 4) | (_IPV4.size // 4),
            0,
            _IPV4.size + ICMP_ECHO_SIZE,
            self.send_id,
            0x4000,
            255,
            IPV4_TYPE_ICMP,
            0,
            self.ip,
            recv_ip[8],
        ))
        self.send_id = (self.send_id + 1) & 0xFFFF
        header[10:12] = ipv4_checksum(header).to_bytes(2, "big")

        echo = bytearray(_ICMP_HEAD.pack(ICMP_TYPE_ECHO_REPLY, 0, 0) + request[4:])
        echo[2:4] = icmp_checksum(echo).to_bytes(2, "big")

        return _eth_header(src_mac, self.mac, ETH_TYPE_IPV4) + bytes(header) + bytes(echo)

    def scan(self) -> None:
        """Broadcast an ARP request to every host of SCAN_PREFIX, retrying busy sends."""
        for host in range(256):
            frame = self.arp_broadcast_frame(host)
            while not self._send(frame):
                pass


def http_response() -> bytes:
    """Return the fixed HTTP reply served to every request."""
    return b"".join([
        b"HTTP/1.0 200 OK \r\n",
        b"Content-Type: text/html \r\n",
        b"\r\nHello World!\r\n",
    ])