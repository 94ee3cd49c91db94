# muxpeer

`muxpeer` lets several virtual multiplayer peers share one real network
connection. A typical use is split-screen play: a host or a joining machine
runs several local players, each with its own peer id, while only one
connection goes over the wire.

## Modules

### `muxpeer.packet`

The wire format. All multi-byte integers are big-endian.

- `DataPacket(source, dest, data=b"", transfer_mode=TransferMode.RELIABLE)`
  carries a payload between virtual peers. It serializes to a 14-byte header
  followed by the payload.
- `CommandPacket(command, subject, transfer_mode=TransferMode.RELIABLE)`
  carries a control message between networks. It serializes to 7 bytes.
- `parse_packet(raw)` turns bytes back into a `DataPacket` or a
  `CommandPacket`. It raises `PacketParseError` for input that is too short,
  that has an unknown subtype, command or transfer mode, that claims a payload
  longer than the bytes received, or whose payload is larger than
  `MAX_MULTIPLEX_PACKET_SIZE` minus the header.
- The enums are `TransferMode` (`UNRELIABLE`, `UNRELIABLE_ORDERED`,
  `RELIABLE`), `PacketSubtype` (`DATA`, `COMMAND`) and `CommandSubtype`
  (`ADD_PEER`, `ADD_PEER_ACK`, `ERR_SUBPEERS_EXCEEDED`,
  `ERR_SUBPEER_ID_EXISTS`, `REMOVE_PEER`).

### `muxpeer.network`

`MultiplexNetwork(max_subpeers=0)` sits on top of one real connection. The
connection is any object that follows the `MultiplayerInterface` protocol. It
provides `get_unique_id`, `get_connection_status`, `poll`,
`get_available_packet_count`, `get_packet_peer`, `get_packet`, `put_packet`,
`set_target_peer`, `set_transfer_channel`, `set_transfer_mode`, `close`,
`is_server_relay_supported` and `add_peer_connected_listener`.

- `set_interface(interface)` installs the connection. It forgets all known
  peers and subscribes `on_interface_connected` to the connection's
  peer-connected events.
- When the connection reaches the server (interface id 1), every local peer
  is announced to it with an `ADD_PEER` command. A peer registered later on a
  connected client is announced right away.
- `send(packet, peer_id, channel=0, transfer_mode=TransferMode.RELIABLE)`
  hands the packet straight to a local peer. For a known remote peer, it
  serializes the packet and writes it to the connection. For an unknown id it
  raises `PeerUnavailableError`.
- `poll()` reads every pending packet from the connection. Command packets
  drive the add-peer handshake. On the server, an `ADD_PEER` is refused with
  `ERR_SUBPEER_ID_EXISTS` if the id is already in use, and with
  `ERR_SUBPEERS_EXCEEDED` if the sending connection already carries
  `max_subpeers` peers (`0` means no limit). Otherwise the server records the
  peer, notifies local peer 1 and replies with `ADD_PEER_ACK`. Data packets
  are delivered to their destination peer, or to every local peer when the
  destination is `0`. A data packet is dropped if its source is not a remote
  peer registered behind the connection it came from. Malformed or refused
  packets are logged and dropped; `poll()` does not raise for them.
- `is_peer_connected`, `disconnect_peer`, `register_peer`, `remove_peer`,
  `local_peer`, `get_interface` and `close` manage the peer tables.
- `ConnectionStatus` has the values `DISCONNECTED`, `CONNECTING` and
  `CONNECTED`.

### `muxpeer.peer`

`MultiplexPeer` is one virtual peer.

- `create_server(network, max_players=0)` makes it peer 1.
- `create_client(network)` gives it a random id from `generate_unique_id()`.
  The id is never 1. The peer stays `CONNECTING` until the server acknowledges
  it with `complete_connection()`.
- `put_packet(data)` sends to the peer chosen with `set_target_peer`.
- `get_packet()` returns the payload of the oldest incoming packet.
  `get_packet_peer()` and `get_packet_mode()` describe that packet before it
  is read.
- The other operations are `get_available_packet_count`,
  `get_max_packet_size`, `get_packet_channel`, `set_transfer_channel` /
  `get_transfer_channel`, `set_transfer_mode` / `get_transfer_mode`,
  `is_server`, `get_unique_id`, `get_connection_status`,
  `is_server_relay_supported`, `poll`, `close` and `disconnect_peer`.
- `add_peer_connected_listener(callback)` registers a callback that receives
  the id of every peer announced to this one.

## Example

```python
from muxpeer.network import MultiplexNetwork
from muxpeer.peer import MultiplexPeer

network = MultiplexNetwork(max_subpeers=4)
network.set_interface(connection)  # an object implementing MultiplayerInterface

host = MultiplexPeer()
host.create_server(network, max_players=4)

local_player = MultiplexPeer()
local_player.create_client(network)

local_player.set_target_peer(1)
local_player.put_packet(b"hello")   # delivered straight to the local host

network.poll()                      # handle traffic from the connection
while host.get_available_packet_count():
    sender = host.get_packet_peer()
    payload = host.get_packet()
```

## Errors

Every exception derives from `muxpeer.packet.MultiplexError`:

- `PacketParseError`: malformed bytes.
- `PeerUnavailableError`: no route to a peer, or no packet waiting.
- `PeerExistsError`: the id is already taken.
- `SubpeerLimitError`: too many subpeers on one connection.
- `CommandRejectedError`: a command this side does not handle.
- `InterfaceNotSetError`: the network has no connection.

## What it does not do

- It contains no transport of its own. You supply the connection as an
  object implementing `MultiplayerInterface`.
- Removing peers is not negotiated. A closing client sends a `REMOVE_PEER`
  command, but the server refuses it, and the refusal is logged and dropped.
  A target peer of `0` passed to `put_packet` is not routed and raises
  `PeerUnavailableError`.
- There is no command-line tool.

## Tests

```
pip install -e ".[test]"
pytest
```