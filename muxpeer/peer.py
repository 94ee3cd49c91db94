"""Virtual multiplayer peers that share one transport through a network.

Each :class:`MultiplexPeer` behaves like a standalone multiplayer peer with
its own unique id, while all of its traffic is carried by a
:class:`~muxpeer.network.MultiplexNetwork` over a single underlying
interface.  Several peers may live on the same network, which is how local
split-screen players share one connection.
"""

from __future__ import annotations

import logging
import secrets
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, List, Optional

from .network import (
    SERVER_ID,
    ConnectionStatus,
    InterfaceNotSetError,
    MultiplexNetwork,
    PeerUnavailableError,
)
from .packet import (
    MAX_MULTIPLEX_PACKET_SIZE,
    CommandPacket,
    CommandSubtype,
    DataPacket,
    MultiplexError,
    TransferMode,
)

logger = logging.getLogger(__name__)

_MAX_UNIQUE_ID = 0x7FFFFFFF


def generate_unique_id() -> int:
    """Return a random positive peer id that is never the server's id."""
    return SERVER_ID + 1 + secrets.randbelow(_MAX_UNIQUE_ID - SERVER_ID)


class PeerMode(Enum):
    """Role a multiplex peer currently plays."""

    NONE = "none"
    SERVER = "server"
    CLIENT = "client"


class MultiplexPeer:
    """One virtual multiplayer peer carried by a :class:`MultiplexNetwork`."""

    def __init__(self) -> None:
        self.mode = PeerMode.NONE
        self._network: Optional[MultiplexNetwork] = None
        self._incoming: Deque[DataPacket] = deque()
        self._current_packet: Optional[DataPacket] = None
        self._unique_id = 0
        self._target_peer = 0
        self._channel = 0
        self.max_players = 0
        self._status = ConnectionStatus.DISCONNECTED
        self._transfer_mode = TransferMode.RELIABLE
        self._listeners: List[Callable[[int], Any]] = []

    # -- lifecycle -----------------------------------------------------------

    def create_server(self, network: MultiplexNetwork, max_players: int = 0) -> None:
        """Become the server peer (id 1) of ``network``."""
        self.mode = PeerMode.SERVER
        self._status = ConnectionStatus.CONNECTED
        self._network = network
        self._unique_id = SERVER_ID
        self.max_players = max_players
        network.register_peer(self)

    def create_client(self, network: MultiplexNetwork) -> None:
        """Become a client peer of ``network`` with a fresh random id."""
        self.mode = PeerMode.CLIENT
        self._status = ConnectionStatus.CONNECTING
        self._network = network
        self._unique_id = generate_unique_id()
        network.register_peer(self)

    def complete_connection(self) -> None:
        """Mark the peer connected and announce it to the server peer."""
        self._status = ConnectionStatus.CONNECTED
        if self._unique_id == SERVER_ID:
            return
        self.emit_peer_connected(SERVER_ID)
        if self._network is not None:
            server = self._network.local_peer(SERVER_ID)
            if server is not None:
                server.emit_peer_connected(self._unique_id)

    def close(self) -> None:
        """Leave the network, dropping any packets not yet read."""
        if self.mode is PeerMode.NONE:
            return
        network = self._network
        self._incoming.clear()
        self._current_packet = None
        try:
            if (
                network is not None
                and self._unique_id != SERVER_ID
                and network.local_peer(SERVER_ID) is None
                and network.is_peer_connected(SERVER_ID)
            ):
                notice = CommandPacket(
                    CommandSubtype.REMOVE_PEER, self._unique_id, TransferMode.RELIABLE
                )
                network.send(notice, SERVER_ID, 0, TransferMode.RELIABLE)
        finally:
            self.mode = PeerMode.NONE
            self._status = ConnectionStatus.DISCONNECTED
            if network is not None:
                network.remove_peer(self)

    def disconnect_peer(self, peer_id: int, force: bool = False) -> None:
        """Ask the network to close the local peer ``peer_id``."""
        self._require_network().disconnect_peer(peer_id, force)

    # -- signals -------------------------------------------------------------

    def add_peer_connected_listener(self, callback: Callable[[int], Any]) -> None:
        """Call ``callback(peer_id)`` whenever a peer connects to this one."""
        self._listeners.append(callback)

    def emit_peer_connected(self, peer_id: int) -> None:
        """Notify every listener that ``peer_id`` has connected."""
        for callback in list(self._listeners):
            callback(peer_id)

    # -- traffic -------------------------------------------------------------

    def deliver(self, packet: DataPacket) -> None:
        """Queue an incoming packet for this peer."""
        self._incoming.append(packet)

    def get_packet(self) -> bytes:
        """Remove and return the payload of the oldest incoming packet."""
        if not self._incoming:
            raise PeerUnavailableError("No incoming packets available.")
        self._current_packet = self._incoming.popleft()
        return self._current_packet.data

    def put_packet(self, data: bytes) -> None:
        """Send ``data`` to the current target peer."""
        if self.mode is PeerMode.NONE or self._network is None:
            raise MultiplexError("Peer is not in a MultiplexNetwork")
        if self._target_peer != 0 and not self._network.is_peer_connected(
            self._target_peer
        ):
            raise PeerUnavailableError("No known route to peer")
        packet = DataPacket(
            source=self._unique_id,
            dest=self._target_peer,
            data=bytes(data),
            transfer_mode=self._transfer_mode,
        )
        self._network.send(packet, self._target_peer, self._channel, self._transfer_mode)

    def poll(self) -> None:
        """Process pending traffic on the network."""
        self._require_network().poll()

    def get_available_packet_count(self) -> int:
        """Number of packets waiting to be read."""
        return len(self._incoming)

    def get_max_packet_size(self) -> int:
        """Largest packet that can be sent, or 0 without a usable network."""
        if self._network is None or self._network.get_interface() is None:
            return 0
        return MAX_MULTIPLEX_PACKET_SIZE

    def get_packet_channel(self) -> int:
        """Channel of the next packet."""
        return self._channel

    def get_packet_mode(self) -> TransferMode:
        """Transfer mode of the next incoming packet."""
        self._require_active()
        if not self._incoming:
            raise PeerUnavailableError("No pending packets, cannot get transfer mode.")
        return self._incoming[0].transfer_mode

    def get_packet_peer(self) -> int:
        """Id of the peer that sent the next incoming packet."""
        self._require_active()
        if not self._incoming:
            raise PeerUnavailableError("No packets to receive.")
        return self._incoming[0].source

    # -- settings ------------------------------------------------------------

    def set_transfer_channel(self, channel: int) -> None:
        self._channel = channel

    def get_transfer_channel(self) -> int:
        return self._channel

    def set_transfer_mode(self, mode: TransferMode) -> None:
        self._transfer_mode = TransferMode(mode)

    def get_transfer_mode(self) -> TransferMode:
        return self._transfer_mode

    def set_target_peer(self, peer_id: int) -> None:
        """Send subsequent packets to ``peer_id`` (0 for everyone)."""
        self._target_peer = peer_id

    def is_server(self) -> bool:
        return self.mode is PeerMode.SERVER

    def get_unique_id(self) -> int:
        return self._unique_id

    def get_connection_status(self) -> ConnectionStatus:
        return self._status

    def is_server_relay_supported(self) -> bool:
        """Whether the underlying interface relays through the server."""
        if self._network is None:
            raise MultiplexError("MultiplexPeer has no associated network.")
        interface = self._network.get_interface()
        if interface is None:
            raise InterfaceNotSetError("MultiplexNetwork has no interface")
        return interface.is_server_relay_supported()

    # -- internals -----------------------------------------------------------

    def _require_network(self) -> MultiplexNetwork:
        if self._network is None:
            raise MultiplexError("MultiplexPeer has no associated network.")
        return self._network

    def _require_active(self) -> None:
        if self.mode is PeerMode.NONE:
            raise MultiplexError("The multiplayer instance isn't currently active.")