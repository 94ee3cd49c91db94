"""Routing of multiplex peers over a single underlying transport.

A :class:`MultiplexNetwork` owns one real transport (the *interface*) and any
number of local multiplex peers.  It relays data packets between local peers
directly, sends packets for remote peers through the interface, and exchanges
command packets with the remote network to keep both sides' peer tables in
step.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, Callable, Dict, Optional, Protocol

from .packet import (
    CommandPacket,
    CommandSubtype,
    DataPacket,
    MultiplexError,
    Packet,
    PacketParseError,
    TransferMode,
    parse_packet,
)

logger = logging.getLogger(__name__)

SERVER_ID = 1
"""Unique id of the server, both for interfaces and for multiplex peers."""

COMMAND_CHANNEL = 1
"""Transport channel on which command packets are sent."""


class ConnectionStatus(IntEnum):
    """Connection state of a transport or multiplex peer."""

    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2


class MultiplayerInterface(Protocol):
    """The underlying transport a multiplex network sends its packets over."""

    def get_unique_id(self) -> int: ...

    def get_connection_status(self) -> ConnectionStatus: ...

    def poll(self) -> None: ...

    def get_available_packet_count(self) -> int: ...

    def get_packet_peer(self) -> int: ...

    def get_packet(self) -> bytes: ...

    def put_packet(self, data: bytes) -> None: ...

    def set_target_peer(self, peer_id: int) -> None: ...

    def set_transfer_channel(self, channel: int) -> None: ...

    def set_transfer_mode(self, mode: TransferMode) -> None: ...

    def close(self) -> None: ...

    def is_server_relay_supported(self) -> bool: ...

    def add_peer_connected_listener(self, callback: Callable[[int], Any]) -> None: ...


class PeerUnavailableError(MultiplexError):
    """Raised when no route to a multiplex peer is known."""


class PeerExistsError(MultiplexError):
    """Raised when a multiplex peer id is already in use."""


class SubpeerLimitError(MultiplexError):
    """Raised when an interface already carries the maximum number of subpeers."""


class CommandRejectedError(MultiplexError):
    """Raised when a network receives a command it does not accept."""


class InterfaceNotSetError(MultiplexError):
    """Raised when the network has no underlying interface."""


class MultiplexNetwork:
    """Connects local multiplex peers with remote ones over one interface."""

    def __init__(self, max_subpeers: int = 0) -> None:
        # 0 means no limit on subpeers per remote interface
        self.max_subpeers = max_subpeers
        self._interface: Optional[MultiplayerInterface] = None
        self._internal_peers: Dict[int, Any] = {}
        # remote multiplex peer id -> id of the interface peer it lives behind
        self._external_peers: Dict[int, int] = {}

    # -- setup -----------------------------------------------------------

    def set_interface(self, interface: MultiplayerInterface) -> None:
        """Use ``interface`` as the transport, forgetting all known peers."""
        self._interface = interface
        self._internal_peers = {}
        self._external_peers = {}
        interface.add_peer_connected_listener(self.on_interface_connected)

    def get_interface(self) -> Optional[MultiplayerInterface]:
        """Return the underlying transport, or None if none is set."""
        return self._interface

    def on_interface_connected(self, interface_peer_id: int) -> None:
        """Handle the transport connecting to the interface ``interface_peer_id``."""
        interface = self._require_interface()
        logger.debug(
            "interface %d connected to interface %d",
            interface.get_unique_id(),
            interface_peer_id,
        )
        if interface_peer_id != SERVER_ID:
            # clients announce their own subpeers; nothing to do here
            return
        self._external_peers[SERVER_ID] = SERVER_ID
        for peer in list(self._internal_peers.values()):
            self._send_command(CommandSubtype.ADD_PEER, peer.get_unique_id(), SERVER_ID)

    # -- peers -------------------------------------------------------------

    def register_peer(self, peer: Any) -> None:
        """Add a local multiplex peer, announcing it to the server if connected."""
        peer_id = peer.get_unique_id()
        if peer_id in self._internal_peers:
            raise PeerExistsError("Local peer with pid already exists")
        interface = self._require_interface()
        logger.debug("registering internal mux peer %d", peer_id)
        self._internal_peers[peer_id] = peer
        if (
            interface.get_unique_id() != SERVER_ID
            and interface.get_connection_status() == ConnectionStatus.CONNECTED
        ):
            logger.debug("requesting add of late subpeer %d", peer_id)
            self._send_command(CommandSubtype.ADD_PEER, peer_id, SERVER_ID)

    def remove_peer(self, peer: Any) -> None:
        """Forget a local multiplex peer."""
        self._internal_peers.pop(peer.get_unique_id(), None)

    def local_peer(self, peer_id: int) -> Optional[Any]:
        """Return the local peer with ``peer_id``, or None."""
        return self._internal_peers.get(peer_id)

    def is_peer_connected(self, peer_id: int) -> bool:
        """Whether ``peer_id`` is a known local or remote multiplex peer."""
        return peer_id in self._internal_peers or peer_id in self._external_peers

    def disconnect_peer(self, peer_id: int, force: bool = False) -> None:
        """Close the local peer ``peer_id``."""
        peer = self._internal_peers.get(peer_id)
        if peer is None:
            raise PeerUnavailableError("Cannot close peer that is not connected locally")
        peer.close()

    # -- traffic -----------------------------------------------------------

    def send(
        self,
        packet: Packet,
        peer_id: int,
        channel: int = 0,
        transfer_mode: TransferMode = TransferMode.RELIABLE,
    ) -> None:
        """Route ``packet`` to the multiplex peer ``peer_id``."""
        local = self._internal_peers.get(peer_id)
        if local is not None:
            local.deliver(packet)
            return
        if peer_id in self._external_peers:
            interface = self._require_interface()
            interface.set_transfer_mode(transfer_mode)
            interface.set_target_peer(self._external_peers[peer_id])
            interface.set_transfer_channel(channel)
            interface.put_packet(packet.serialize())
            return
        raise PeerUnavailableError("No known peer for peer_id")

    def poll(self) -> None:
        """Take every packet off the interface and handle or deliver it.

        Invalid or unexpected packets are logged and dropped.
        """
        interface = self._require_interface()
        interface.poll()
        while interface.get_available_packet_count():
            sender = interface.get_packet_peer()
            try:
                raw = interface.get_packet()
            except (OSError, MultiplexError) as exc:
                logger.error("Error when getting packet: %s", exc)
                continue
            try:
                packet = parse_packet(raw)
            except PacketParseError as exc:
                logger.error("Deserializing packet failed: %s", exc)
                continue
            try:
                if isinstance(packet, CommandPacket):
                    if interface.get_unique_id() == SERVER_ID:
                        self._handle_command_server(sender, packet)
                    else:
                        self._handle_command_client(sender, packet)
                else:
                    self._route_data(sender, packet)
            except MultiplexError as exc:
                logger.error("%s", exc)
        logger.debug("all packets processed")

    def close(self) -> None:
        """Close the interface and every local peer, and forget all peers."""
        if self._interface is not None:
            self._interface.close()
        for peer in list(self._internal_peers.values()):
            peer.close()
        self._external_peers.clear()
        self._internal_peers.clear()

    # -- internals -----------------------------------------------------------

    def _require_interface(self) -> MultiplayerInterface:
        if self._interface is None:
            raise InterfaceNotSetError("Interface not set")
        return self._interface

    def _route_data(self, sender: int, packet: DataPacket) -> None:
        if packet.dest != 0 and packet.dest not in self._internal_peers:
            raise PeerUnavailableError(
                "Multiplex destination peer id is not available locally"
            )
        owner = self._external_peers.get(packet.source)
        if owner is None:
            raise PeerUnavailableError(
                "Multiplex source peer id is not associated with any remote interface"
            )
        if owner != sender:
            raise PeerUnavailableError(
                "Multiplex source peer id is not associated with the provided "
                "interface peer id. Possible attempt at cheating."
            )
        if packet.dest == 0:
            for peer in list(self._internal_peers.values()):
                peer.deliver(packet)
        else:
            self._internal_peers[packet.dest].deliver(packet)

    def _handle_command_server(self, sender: int, packet: CommandPacket) -> None:
        subject = packet.subject
        logger.debug(
            "server received command %s from interface %d about peer %d",
            packet.command.name,
            sender,
            subject,
        )
        if packet.command is not CommandSubtype.ADD_PEER:
            raise CommandRejectedError(
                f"Server does not respond to command {packet.command.name}"
            )

        if self.is_peer_connected(subject):
            self._send_command(CommandSubtype.ERR_SUBPEER_ID_EXISTS, subject, sender)
            raise PeerExistsError(
                "Server rejected add peer request: peer with requested id already exists"
            )
        if self.max_subpeers:
            count = sum(1 for owner in self._external_peers.values() if owner == sender)
            if count >= self.max_subpeers:
                self._send_command(CommandSubtype.ERR_SUBPEERS_EXCEEDED, subject, sender)
                raise SubpeerLimitError(
                    "Server rejected add peer request: maximum subpeers exceeded"
                )

        self._external_peers[subject] = sender
        server_peer = self._internal_peers.get(SERVER_ID)
        if server_peer is not None:
            server_peer.emit_peer_connected(subject)
        self._send_command(CommandSubtype.ADD_PEER_ACK, subject, sender)

    def _handle_command_client(self, sender: int, packet: CommandPacket) -> None:
        subject = packet.subject
        logger.debug(
            "client received command %s from interface %d about peer %d",
            packet.command.name,
            sender,
            subject,
        )
        command = packet.command
        if command is CommandSubtype.ADD_PEER:
            self._external_peers[subject] = sender
        elif command is CommandSubtype.ADD_PEER_ACK:
            peer = self._internal_peers.get(subject)
            if peer is None:
                raise PeerUnavailableError("Subject peer of ACK is not local.")
            peer.complete_connection()
        elif command is CommandSubtype.ERR_SUBPEERS_EXCEEDED:
            self._close_local(subject)
            raise SubpeerLimitError(
                "Client received add peer error: maximum subpeers exceeded."
            )
        elif command is CommandSubtype.ERR_SUBPEER_ID_EXISTS:
            self._close_local(subject)
            raise PeerExistsError("Client received add peer error: subpeer ID collision.")
        else:
            raise CommandRejectedError(
                f"Client mode networks don't respond to command {command.name}"
            )

    def _close_local(self, peer_id: int) -> None:
        peer = self._internal_peers.get(peer_id)
        if peer is not None:
            peer.close()

    def _send_command(self, command: CommandSubtype, subject: int, target: int) -> None:
        logger.debug("sending command %s about %d to %d", command.name, subject, target)
        interface = self._require_interface()
        packet = CommandPacket(command, subject, TransferMode.RELIABLE)
        interface.set_target_peer(target)
        interface.set_transfer_channel(COMMAND_CHANNEL)
        interface.set_transfer_mode(TransferMode.RELIABLE)
        interface.put_packet(packet.serialize())