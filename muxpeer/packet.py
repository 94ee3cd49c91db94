"""Wire format for multiplexed data and command packets.

A data packet is laid out as::

    0       uint8   subtype (0x00)
    1       uint8   transfer mode
    2-5     uint32  payload length
    6-9     int32   source multiplex peer id
    10-13   int32   destination multiplex peer id
    14-     bytes   payload

A command packet is laid out as::

    0       uint8   subtype (0x01)
    1       uint8   transfer mode
    2       uint8   command subtype
    3-6     int32   subject multiplex peer id

All multi-byte integers are big endian (network order).
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Union

MAX_MULTIPLEX_PACKET_SIZE = 522288
"""Largest serialized packet accepted, a transport packet minus some overhead."""

DATA_HEADER_SIZE = 14
COMMAND_PACKET_SIZE = 7

_DATA_HEADER = struct.Struct(">BBIii")
_COMMAND = struct.Struct(">BBBi")


class MultiplexError(Exception):
    """Base class for errors raised by the multiplexing layer."""


class PacketParseError(MultiplexError, ValueError):
    """Raised when raw bytes do not hold a valid multiplex packet."""


class TransferMode(IntEnum):
    """How a packet is delivered by the underlying transport."""

    UNRELIABLE = 0
    UNRELIABLE_ORDERED = 1
    RELIABLE = 2


class PacketSubtype(IntEnum):
    """The kind of a multiplex packet."""

    DATA = 0x00
    COMMAND = 0x01


class CommandSubtype(IntEnum):
    """Control messages exchanged between multiplex networks."""

    # client->server to request a new peer; server->client to announce one
    ADD_PEER = 0x00
    # server->client: the requested peer was created
    ADD_PEER_ACK = 0x01
    # server->client: request rejected, too many subpeers on this interface
    ERR_SUBPEERS_EXCEEDED = 0x02
    # server->client: request rejected, the peer id is already taken
    ERR_SUBPEER_ID_EXISTS = 0x03
    # either direction: a peer has left
    REMOVE_PEER = 0x04


@dataclass(frozen=True)
class DataPacket:
    """Payload sent from one multiplex peer to another."""

    source: int
    dest: int
    data: bytes = b""
    transfer_mode: TransferMode = TransferMode.RELIABLE
    subtype: PacketSubtype = field(default=PacketSubtype.DATA, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", bytes(self.data))
        object.__setattr__(self, "transfer_mode", TransferMode(self.transfer_mode))

    def serialize(self) -> bytes:
        """Encode the packet in network order."""
        header = _DATA_HEADER.pack(
            PacketSubtype.DATA,
            self.transfer_mode,
            len(self.data),
            self.source,
            self.dest,
        )
        return header + self.data


@dataclass(frozen=True)
class CommandPacket:
    """Control message from one multiplex network to another."""

    command: CommandSubtype
    subject: int
    transfer_mode: TransferMode = TransferMode.RELIABLE
    subtype: PacketSubtype = field(default=PacketSubtype.COMMAND, init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", CommandSubtype(self.command))
        object.__setattr__(self, "transfer_mode", TransferMode(self.transfer_mode))

    def serialize(self) -> bytes:
        """Encode the packet in network order."""
        return _COMMAND.pack(
            PacketSubtype.COMMAND, self.transfer_mode, self.command, self.subject
        )


Packet = Union[DataPacket, CommandPacket]


def _transfer_mode(value: int) -> TransferMode:
    try:
        return TransferMode(value)
    except ValueError:
        raise PacketParseError(f"Invalid transfer mode {value}") from None


def parse_packet(raw: bytes) -> Packet:
    """Decode a packet from raw bytes, raising PacketParseError if invalid."""
    raw = bytes(raw)
    if len(raw) < 2:
        raise PacketParseError("Packet too short to hold a header.")

    try:
        subtype = PacketSubtype(raw[0])
    except ValueError:
        raise PacketParseError(
            "Invalid multiplex packet subtype, must be 0x00 (DATA) or 0x01 (CMD)"
        ) from None

    if subtype is PacketSubtype.DATA:
        if len(raw) < DATA_HEADER_SIZE:
            raise PacketParseError("Packet too short to hold a data header.")
        _, mode, length, source, dest = _DATA_HEADER.unpack_from(raw)
        if length > len(raw) - DATA_HEADER_SIZE:
            raise PacketParseError("Packet reported length longer than packet received.")
        if length > MAX_MULTIPLEX_PACKET_SIZE - DATA_HEADER_SIZE:
            raise PacketParseError("Multiplex Packet too big to deserialize!")
        payload = raw[DATA_HEADER_SIZE : DATA_HEADER_SIZE + length]
        return DataPacket(source, dest, payload, _transfer_mode(mode))

    if len(raw) < COMMAND_PACKET_SIZE:
        raise PacketParseError("Packet too short to hold a command.")
    _, mode, command, subject = _COMMAND.unpack_from(raw)
    try:
        command_subtype = CommandSubtype(command)
    except ValueError:
        raise PacketParseError(
            "Invalid multiplex command subtype, must be 0x00 to 0x04. "
            "Is the packet corrupted?"
        ) from None
    return CommandPacket(command_subtype, subject, _transfer_mode(mode))