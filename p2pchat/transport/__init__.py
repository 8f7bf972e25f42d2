"""Transport fabric implementations.

A [`Transport`][p2pchat.transport.protocols.Transport] dials routes to
remote participants and delivers inbound streams to registered protocol
handlers. Because [`Transport`][p2pchat.transport.protocols.Transport] is a
[`Protocol`][typing.Protocol], custom fabrics do not need to inherit from it.

* [`MemoryTransport`][p2pchat.transport.memory.MemoryTransport] connects
  participants living in the same process and is used for tests and
  simulations.
* [`WebRTCTransport`][p2pchat.transport.webrtc.WebRTCTransport] connects
  participants with WebRTC data channels negotiated through a relay server.
"""
from __future__ import annotations
