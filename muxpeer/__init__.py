"""Multiplex several virtual multiplayer peers over one network connection.

Submodules: ``packet`` (wire format), ``network`` (routing over one
interface) and ``peer`` (virtual multiplayer peers).
"""

__version__ = "0.1.0"
__all__ = ["packet", "network", "peer"]