"""p2pchat is a peer-to-peer text messaging demo for up to 255 participants.

Participants are addressed by a small integer. Each integer maps to a
deterministically derived cryptographic identity, and the
[`ChannelSessionManager`][p2pchat.session.ChannelSessionManager] keeps at most
one message channel open to every remote participant.
"""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('p2pchat')
