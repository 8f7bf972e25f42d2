"""Relay server and client implementations.

Participants register with a relay server under their identity and exchange
WebRTC session descriptions through it to open data channels with each
other. Run a relay server with the `p2pchat-relay` command.
"""
from __future__ import annotations

from p2pchat.relay.client import RelayClient
from p2pchat.relay.server import RelayServer
