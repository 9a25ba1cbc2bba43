import struct

import pytest

from xvkit.net import (
    ARP_OPS_REPLY,
    ARP_OPS_REQUEST,
    ARP_TABLE_MAX,
    BROADCAST_MAC,
    ETH_TYPE_ARP,
    ETH_TYPE_IPV4,
    ICMP_TYPE_ECHO_REPLY,
    SCAN_PREFIX,
    ArpPacket,
    ArpResult,
    ArpTable,
    NetStack,
    h2n_ushort,
    http_response,
    icmp_checksum,
    ipv4_checksum,
    n2h_uint,
    n2h_ushort,
)

MY_MAC = b"\x02\x00\x00\x00\x00\x01"
MY_IP = bytes([10, 0, 1, 10])
PEER_MAC = b"\x02\x00\x00\x00\x00\xaa"
PEER_IP = bytes([10, 0, 1, 20])
OTHER_IP = bytes([10, 0, 1, 30])


def eth(dst, src, eth_type):
    return struct.pack("!6s6sH", dst, src, eth_type)


def arp_frame(op, src_mac, src_ip, dst_mac, dst_ip):
    packet = ArpPacket(op=op, src_mac=src_mac, src_ip=src_ip, dst_mac=dst_mac, dst_ip=dst_ip)
    return eth(MY_MAC, src_mac, ETH_TYPE_ARP) + packet.pack()


def echo_request_frame(ip_id=7, src_ip=PEER_IP, ident=0x1234, seq=3):
    payload = bytes(range(8)) + bytes(range(100, 148))
    icmp = bytearray(struct.pack("!BBHHH", 8, 0, 0, ident, seq) + payload)
    icmp[2:4] = icmp_checksum(icmp).to_bytes(2, "big")
    ip = bytearray(struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, 20 + len(icmp), ip_id, 0, 64, 1, 0, src_ip, MY_IP
    ))
    ip[10:12] = ipv4_checksum(ip).to_bytes(2, "big")
    return eth(MY_MAC, PEER_MAC, ETH_TYPE_IPV4) + bytes(ip) + bytes(icmp)


def test_ushort_swap():
    assert n2h_ushort(0x1234) == 0x3412
    assert h2n_ushort(n2h_ushort(0xBEEF)) == 0xBEEF


def test_uint_swap():
    assert n2h_uint(0x11223344) == 0x44332211
    assert n2h_uint(n2h_uint(0xDEADBEEF)) == 0xDEADBEEF


def test_ipv4_checksum_worked_example():
    header = bytes.fromhex("450000730000400040110000c0a80001c0a800c7")
    assert ipv4_checksum(header) == 0xB861


def test_ipv4_checksum_verifies_to_zero():
    header = bytearray(bytes.fromhex("450000730000400040110000c0a80001c0a800c7"))
    header[10:12] = ipv4_checksum(header).to_bytes(2, "big")
    assert ipv4_checksum(header) == 0


def test_ipv4_checksum_truncated():
    with pytest.raises(ValueError):
        ipv4_checksum(b"\x45\x00")


def test_icmp_checksum_verifies_to_zero():
    data = bytearray(range(64))
    data[2:4] = b"\0\0"
    data[2:4] = icmp_checksum(data).to_bytes(2, "big")
    assert icmp_checksum(data) == 0


def test_icmp_checksum_truncated():
    with pytest.raises(ValueError):
        icmp_checksum(bytes(10))


def test_arp_packet_round_trip():
    packet = ArpPacket(op=ARP_OPS_REQUEST, src_mac=PEER_MAC, src_ip=PEER_IP,
                       dst_mac=bytes(6), dst_ip=MY_IP)
    raw = packet.pack()
    assert len(raw) == ArpPacket.SIZE
    assert ArpPacket.parse(raw) == packet


def test_arp_packet_parse_truncated():
    with pytest.raises(ValueError):
        ArpPacket.parse(bytes(10))


def test_arp_table_insert_and_update():
    table = ArpTable()
    assert table.search(PEER_IP) is None
    first = ArpPacket(op=ARP_OPS_REPLY, src_mac=PEER_MAC, src_ip=PEER_IP,
                      dst_mac=MY_MAC, dst_ip=MY_IP)
    index = table.update(first)
    assert table.search(PEER_IP) == index
    new_mac = b"\x02\x00\x00\x00\x00\xbb"
    second = ArpPacket(op=ARP_OPS_REPLY, src_mac=new_mac, src_ip=PEER_IP,
                       dst_mac=MY_MAC, dst_ip=MY_IP)
    assert table.update(second) == index
    assert table.entries() == [(index, PEER_IP, new_mac)]


def test_arp_table_full_overwrites_first_mac():
    table = ArpTable(size=1)
    table.update(ArpPacket(ARP_OPS_REPLY, PEER_MAC, PEER_IP, MY_MAC, MY_IP))
    other_mac = b"\x02\x00\x00\x00\x00\xcc"
    assert table.update(ArpPacket(ARP_OPS_REPLY, other_mac, OTHER_IP, MY_MAC, MY_IP)) == 0
    assert table.entries() == [(0, PEER_IP, other_mac)]


def test_arp_request_gets_reply():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    frame = arp_frame(ARP_OPS_REQUEST, PEER_MAC, PEER_IP, bytes(6), MY_IP)
    assert stack.handle_frame(frame) == ArpResult.CREATED_REPLY
    assert len(stack.sent) == 1
    reply = stack.sent[0]
    assert reply[:6] == PEER_MAC
    assert reply[6:12] == MY_MAC
    packet = ArpPacket.parse(reply[14:])
    assert packet.op == ARP_OPS_REPLY
    assert packet.src_ip == MY_IP
    assert packet.dst_ip == PEER_IP
    assert packet.dst_mac == PEER_MAC


def test_arp_reply_updates_table():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    frame = arp_frame(ARP_OPS_REPLY, PEER_MAC, PEER_IP, MY_MAC, MY_IP)
    assert stack.handle_frame(frame) == ArpResult.UPDATED_TABLE
    assert stack.arp_table.entries() == [(0, PEER_IP, PEER_MAC)]
    assert stack.sent == []


def test_arp_for_someone_else_is_ignored():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    frame = arp_frame(ARP_OPS_REQUEST, PEER_MAC, PEER_IP, bytes(6), OTHER_IP)
    assert stack.handle_frame(frame) is None
    assert stack.sent == []


def test_broadcast_frame():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    frame = stack.arp_broadcast_frame(7)
    assert frame[:6] == BROADCAST_MAC
    assert struct.unpack_from("!H", frame, 12)[0] == ETH_TYPE_ARP
    packet = ArpPacket.parse(frame[14:])
    assert packet.op == ARP_OPS_REQUEST
    assert packet.dst_ip == SCAN_PREFIX + bytes([7])
    assert packet.src_mac == MY_MAC


def test_broadcast_frame_rejects_bad_host():
    with pytest.raises(ValueError):
        NetStack().arp_broadcast_frame(256)


def test_scan_retries_busy_sends():
    attempts = []

    def sender(frame):
        attempts.append(frame)
        return len(attempts) % 2 == 0

    NetStack(mac=MY_MAC, ip=MY_IP, sender=sender).scan()
    delivered = attempts[1::2]
    assert len(delivered) == 256
    hosts = [ArpPacket.parse(f[14:]).dst_ip[3] for f in delivered]
    assert hosts == list(range(256))


def test_icmp_echo_reply():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    request = echo_request_frame()
    reply = stack.handle_frame(request)
    assert stack.sent == [reply]
    assert reply[:6] == PEER_MAC
    ip = reply[14:34]
    assert ipv4_checksum(ip) == 0
    fields = struct.unpack("!BBHHHBBH4s4s", ip)
    assert fields[2] == len(reply) - 14
    assert fields[8] == MY_IP
    assert fields[9] == PEER_IP
    icmp = reply[34:]
    assert icmp[0] == ICMP_TYPE_ECHO_REPLY
    assert icmp_checksum(icmp) == 0
    assert icmp[4:] == request[38:]


def test_icmp_duplicate_id_and_own_source_ignored():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    frame = echo_request_frame(ip_id=9)
    first = stack.handle_frame(frame)
    assert stack.handle_frame(frame) is None
    assert stack.sent == [first]
    assert stack.handle_frame(echo_request_frame(ip_id=10, src_ip=MY_IP)) is None
    assert len(stack.sent) == 1


def test_send_id_advances():
    stack = NetStack(mac=MY_MAC, ip=MY_IP)
    a = stack.handle_frame(echo_request_frame(ip_id=1))
    b = stack.handle_frame(echo_request_frame(ip_id=2))
    id_a = struct.unpack_from("!H", a, 18)[0]
    id_b = struct.unpack_from("!H", b, 18)[0]
    assert id_b == id_a + 1


def test_tcp_goes_to_handler():
    seen = []
    stack = NetStack(mac=MY_MAC, ip=MY_IP, tcp_handler=lambda f: seen.append(f) or "handled")
    ip = struct.pack("!BBHHHBBH4s4s", 0x45, 0, 20, 5, 0, 64, 6, 0, PEER_IP, MY_IP)
    frame = eth(MY_MAC, PEER_MAC, ETH_TYPE_IPV4) + ip
    assert stack.handle_frame(frame) == "handled"
    assert seen == [frame]


def test_truncated_frame():
    with pytest.raises(ValueError):
        NetStack().handle_frame(b"\x00\x01")


def test_http_response():
    response = http_response()
    assert response.startswith(b"HTTP/1.0 200 OK \r\n")
    assert b"Content-Type: text/html \r\n" in response
    assert response.endswith(b"\r\nHello World!\r\n")