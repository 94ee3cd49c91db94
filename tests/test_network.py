from collections import deque

import pytest

from muxpeer.network import (
    ConnectionStatus,
    InterfaceNotSetError,
    MultiplexNetwork,
    PeerExistsError,
    PeerUnavailableError,
)
from muxpeer.packet import (
    CommandPacket,
    CommandSubtype,
    DataPacket,
    TransferMode,
    parse_packet,
)


class FakeInterface:
    def __init__(self, unique_id, status=ConnectionStatus.CONNECTED):
        self.unique_id = unique_id
        self.status = status
        self.inbox = deque()
        self.outbox = []
        self.listeners = []
        self.target = 0
        self.channel = 0
        self.mode = TransferMode.RELIABLE
        self.closed = False
        self.polled = 0

    def get_unique_id(self):
        return self.unique_id

    def get_connection_status(self):
        return self.status

    def poll(self):
        self.polled += 1

    def get_available_packet_count(self):
        return len(self.inbox)

    def get_packet_peer(self):
        return self.inbox[0][0]

    def get_packet(self):
        return self.inbox.popleft()[1]

    def put_packet(self, data):
        self.outbox.append((self.target, self.channel, self.mode, bytes(data)))

    def set_target_peer(self, peer_id):
        self.target = peer_id

    def set_transfer_channel(self, channel):
        self.channel = channel

    def set_transfer_mode(self, mode):
        self.mode = mode

    def close(self):
        self.closed = True

    def is_server_relay_supported(self):
        return True

    def add_peer_connected_listener(self, callback):
        self.listeners.append(callback)

    def fire_connected(self, peer_id):
        for callback in self.listeners:
            callback(peer_id)

    def receive(self, sender, packet):
        self.inbox.append((sender, packet.serialize()))

    def sent_packets(self):
        return [(target, parse_packet(raw)) for target, _, _, raw in self.outbox]


class FakePeer:
    def __init__(self, unique_id, network=None):
        self.unique_id = unique_id
        self.network = network
        self.delivered = []
        self.connected = []
        self.completed = False
        self.closed = False

    def get_unique_id(self):
        return self.unique_id

    def deliver(self, packet):
        self.delivered.append(packet)

    def emit_peer_connected(self, peer_id):
        self.connected.append(peer_id)

    def complete_connection(self):
        self.completed = True

    def close(self):
        self.closed = True
        if self.network is not None:
            self.network.remove_peer(self)


def make_network(interface_id, status=ConnectionStatus.CONNECTED, max_subpeers=0):
    interface = FakeInterface(interface_id, status)
    network = MultiplexNetwork(max_subpeers)
    network.set_interface(interface)
    return network, interface


def make_server(max_subpeers=0):
    network, interface = make_network(1, max_subpeers=max_subpeers)
    server_peer = FakePeer(1, network)
    network.register_peer(server_peer)
    return network, interface, server_peer


def test_set_interface_registers_listener():
    network, interface = make_network(5)
    assert network.get_interface() is interface
    assert interface.listeners == [network.on_interface_connected]


def test_register_without_interface_raises():
    network = MultiplexNetwork(0)
    with pytest.raises(InterfaceNotSetError):
        network.register_peer(FakePeer(3))


def test_register_duplicate_raises():
    network, _ = make_network(5, ConnectionStatus.CONNECTING)
    network.register_peer(FakePeer(3))
    with pytest.raises(PeerExistsError):
        network.register_peer(FakePeer(3))


def test_client_announces_peers_when_server_connects():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    network.register_peer(FakePeer(77))
    assert interface.outbox == []

    interface.fire_connected(1)

    assert network.is_peer_connected(1)
    assert interface.sent_packets() == [
        (1, CommandPacket(CommandSubtype.ADD_PEER, 77))
    ]
    target, channel, mode, _ = interface.outbox[0]
    assert channel == 1
    assert mode == TransferMode.RELIABLE


def test_connection_to_non_server_announces_nothing():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    network.register_peer(FakePeer(77))
    interface.fire_connected(9)
    assert not network.is_peer_connected(9)
    assert interface.outbox == []


def test_late_subpeer_is_announced():
    network, interface = make_network(5, ConnectionStatus.CONNECTED)
    network.register_peer(FakePeer(88))
    assert interface.sent_packets() == [
        (1, CommandPacket(CommandSubtype.ADD_PEER, 88))
    ]


def test_server_does_not_announce_its_own_peers():
    _, interface, _ = make_server()
    assert interface.outbox == []


def test_command_wire_bytes():
    network, interface = make_network(5, ConnectionStatus.CONNECTED)
    network.register_peer(FakePeer(2))
    assert interface.outbox[0][3] == bytes([0x01, 0x02, 0x00, 0, 0, 0, 2])


def test_send_to_local_peer_delivers():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(3)
    network.register_peer(peer)
    packet = DataPacket(4, 3, b"hi")
    network.send(packet, 3, 0, TransferMode.RELIABLE)
    assert peer.delivered == [packet]
    assert interface.outbox == []


def test_send_to_remote_peer_uses_interface():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    interface.fire_connected(1)
    packet = DataPacket(3, 1, b"payload", TransferMode.UNRELIABLE)
    network.send(packet, 1, 2, TransferMode.UNRELIABLE)
    assert interface.outbox == [(1, 2, TransferMode.UNRELIABLE, packet.serialize())]


def test_send_to_unknown_peer_raises():
    network, _ = make_network(5)
    with pytest.raises(PeerUnavailableError):
        network.send(DataPacket(3, 99, b"x"), 99, 0, TransferMode.RELIABLE)


def test_server_accepts_add_peer():
    network, interface, server_peer = make_server()
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    network.poll()
    assert network.is_peer_connected(42)
    assert server_peer.connected == [42]
    assert interface.sent_packets() == [
        (7, CommandPacket(CommandSubtype.ADD_PEER_ACK, 42))
    ]


def test_server_rejects_duplicate_id():
    network, interface, server_peer = make_server()
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    interface.receive(8, CommandPacket(CommandSubtype.ADD_PEER, 42))
    network.poll()
    assert server_peer.connected == [42]
    assert interface.sent_packets()[-1] == (
        8,
        CommandPacket(CommandSubtype.ERR_SUBPEER_ID_EXISTS, 42),
    )


def test_server_rejects_id_of_local_peer():
    network, interface, server_peer = make_server()
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 1))
    network.poll()
    assert server_peer.connected == []
    assert interface.sent_packets() == [
        (7, CommandPacket(CommandSubtype.ERR_SUBPEER_ID_EXISTS, 1))
    ]


def test_server_enforces_subpeer_limit():
    network, interface, server_peer = make_server(max_subpeers=1)
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 43))
    interface.receive(8, CommandPacket(CommandSubtype.ADD_PEER, 44))
    network.poll()
    assert server_peer.connected == [42, 44]
    assert not network.is_peer_connected(43)
    assert interface.sent_packets() == [
        (7, CommandPacket(CommandSubtype.ADD_PEER_ACK, 42)),
        (7, CommandPacket(CommandSubtype.ERR_SUBPEERS_EXCEEDED, 43)),
        (8, CommandPacket(CommandSubtype.ADD_PEER_ACK, 44)),
    ]


def test_server_ignores_unexpected_commands():
    network, interface, server_peer = make_server()
    interface.receive(7, CommandPacket(CommandSubtype.REMOVE_PEER, 42))
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER_ACK, 42))
    network.poll()
    assert interface.outbox == []
    assert not network.is_peer_connected(42)
    assert interface.inbox == deque()


def test_client_ack_completes_connection():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(77, network)
    network.register_peer(peer)
    interface.receive(1, CommandPacket(CommandSubtype.ADD_PEER_ACK, 77))
    network.poll()
    assert peer.completed is True


def test_client_learns_remote_peer():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    interface.receive(1, CommandPacket(CommandSubtype.ADD_PEER, 42))
    network.poll()
    assert network.is_peer_connected(42)


@pytest.mark.parametrize(
    "command",
    [CommandSubtype.ERR_SUBPEERS_EXCEEDED, CommandSubtype.ERR_SUBPEER_ID_EXISTS],
)
def test_client_closes_rejected_peer(command):
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(77, network)
    network.register_peer(peer)
    interface.receive(1, CommandPacket(command, 77))
    network.poll()
    assert peer.closed is True
    assert network.local_peer(77) is None


def test_data_packet_routed_to_local_peer():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(77)
    network.register_peer(peer)
    interface.fire_connected(1)
    interface.outbox.clear()
    packet = DataPacket(1, 77, b"state")
    interface.receive(1, packet)
    network.poll()
    assert peer.delivered == [packet]


def test_data_packet_from_unknown_source_dropped():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(77)
    network.register_peer(peer)
    interface.receive(1, DataPacket(1, 77, b"x"))
    network.poll()
    assert peer.delivered == []


def test_spoofed_source_dropped():
    network, interface, server_peer = make_server()
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    network.poll()
    interface.receive(8, DataPacket(42, 1, b"x"))
    network.poll()
    assert server_peer.delivered == []


def test_data_to_unknown_destination_dropped():
    network, interface, server_peer = make_server()
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    interface.receive(7, DataPacket(42, 99, b"x"))
    network.poll()
    assert server_peer.delivered == []
    assert interface.inbox == deque()


def test_data_to_zero_reaches_all_local_peers():
    network, interface, server_peer = make_server()
    other = FakePeer(2)
    network.register_peer(other)
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    packet = DataPacket(42, 0, b"all")
    interface.receive(7, packet)
    network.poll()
    assert server_peer.delivered == [packet]
    assert other.delivered == [packet]


def test_invalid_bytes_skipped():
    network, interface, server_peer = make_server()
    interface.inbox.append((7, b"\x09\x00\x00"))
    interface.receive(7, CommandPacket(CommandSubtype.ADD_PEER, 42))
    network.poll()
    assert server_peer.connected == [42]
    assert interface.polled == 1


def test_disconnect_unknown_peer_raises():
    network, _ = make_network(5)
    with pytest.raises(PeerUnavailableError):
        network.disconnect_peer(3, False)


def test_disconnect_local_peer_closes_it():
    network, _ = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(3, network)
    network.register_peer(peer)
    network.disconnect_peer(3, True)
    assert peer.closed is True
    assert not network.is_peer_connected(3)


def test_local_peer_lookup():
    network, _ = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(3)
    network.register_peer(peer)
    assert network.local_peer(3) is peer
    assert network.local_peer(4) is None


def test_remove_peer():
    network, _ = make_network(5, ConnectionStatus.CONNECTING)
    peer = FakePeer(3)
    network.register_peer(peer)
    network.remove_peer(peer)
    assert not network.is_peer_connected(3)


def test_close_shuts_everything_down():
    network, interface = make_network(5, ConnectionStatus.CONNECTING)
    first = FakePeer(3, network)
    second = FakePeer(4, network)
    network.register_peer(first)
    network.register_peer(second)
    interface.fire_connected(1)
    network.close()
    assert interface.closed is True
    assert first.closed and second.closed
    assert not network.is_peer_connected(1)
    assert not network.is_peer_connected(3)


def test_set_interface_resets_peers():
    network, _ = make_network(5, ConnectionStatus.CONNECTING)
    network.register_peer(FakePeer(3))
    replacement = FakeInterface(6)
    network.set_interface(replacement)
    assert not network.is_peer_connected(3)
    assert network.get_interface() is replacement