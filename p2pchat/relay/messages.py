"""Wire messages exchanged between participants and the relay server.

Messages are dataclasses serialized as flat JSON objects. Every object
carries a `message_type` key naming its dataclass so the receiver can
rebuild the right type:

```json
{"name": "id:1", "peer": "12D3KooW...", "message_type": "relay_registration"}
```
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Literal


class RelayMessageType(enum.Enum):
    """Value of the `message_type` key of each message class."""

    relay_response = 'RelayResponse'
    relay_registration = 'RelayRegistrationRequest'
    peer_connection = 'PeerConnectionRequest'


@dataclasses.dataclass
class RelayMessage:
    """Base class of relay messages."""

    pass


@dataclasses.dataclass
class RelayRegistrationRequest(RelayMessage):
    """Sent by a participant to register its identity with the relay.

    Attributes:
        name: Display name of the participant, e.g., `id:1`.
        peer: Identity string the participant registers as.
    """

    name: str
    peer: str
    message_type: str = RelayMessageType.relay_registration.name


@dataclasses.dataclass
class RelayResponse(RelayMessage):
    """Reply of the relay to a registration or to a failed request.

    Attributes:
        success: The request succeeded.
        message: Optional human readable detail.
        error: `message` describes an error.
        relay_peer: Identity string announced by the relay on successful
            registration.
    """

    success: bool = True
    message: str | None = None
    error: bool = False
    relay_peer: str | None = None
    message_type: str = RelayMessageType.relay_response.name


@dataclasses.dataclass
class PeerConnectionRequest(RelayMessage):
    """One half of a WebRTC offer/answer exchange forwarded by the relay.

    If the relay cannot deliver the request, it sends the request back to
    the source with `error` set.

    Attributes:
        source_peer: Identity string of the sender. The relay overwrites
            this with the sender's registered identity.
        source_name: Display name of the sender.
        target_peer: Identity string of the receiver.
        connection_id: Id pairing the offer and answer of one connection.
        protocol: Protocol name the data channel is opened for.
        description_type: `#!python 'offer'` or `#!python 'answer'`.
        description: JSON encoded session description.
        error: Optional reason the request could not be delivered or
            accepted.
    """

    source_peer: str
    source_name: str
    target_peer: str
    connection_id: str
    protocol: str
    description_type: Literal['answer', 'offer']
    description: str
    error: str | None = None
    message_type: str = RelayMessageType.peer_connection.name


_MESSAGE_CLASSES: dict[str, type[RelayMessage]] = {
    RelayMessageType.relay_response.name: RelayResponse,
    RelayMessageType.relay_registration.name: RelayRegistrationRequest,
    RelayMessageType.peer_connection.name: PeerConnectionRequest,
}


class RelayMessageError(Exception):
    """Base exception type for relay message serialization."""

    pass


class RelayMessageDecodeError(RelayMessageError):
    """A string could not be decoded into a relay message."""

    pass


class RelayMessageEncodeError(RelayMessageError):
    """A relay message could not be encoded."""

    pass


def decode_relay_message(message: str) -> RelayMessage:
    """Decode a JSON string into the relay message it encodes.

    Raises:
        RelayMessageDecodeError: If `message` is not a JSON object, names
            no or an unknown `message_type`, or does not match the fields
            of its type.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise RelayMessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise RelayMessageDecodeError('Message is not a JSON object.')

    if 'message_type' not in data:
        raise RelayMessageDecodeError(
            'Message does not contain a message_type key.',
        )
    message_type = data.pop('message_type')

    cls = (
        _MESSAGE_CLASSES.get(message_type)
        if isinstance(message_type, str)
        else None
    )
    if cls is None:
        raise RelayMessageDecodeError(
            f'The message is of an unknown message type: {message_type}.',
        )

    try:
        return cls(**data)
    except TypeError as e:
        raise RelayMessageDecodeError(
            f'Failed to convert message to {cls.__name__}: {e}',
        ) from e


def encode_relay_message(message: RelayMessage) -> str:
    """Encode a relay message as a JSON string.

    Raises:
        RelayMessageEncodeError: If `message` is not a relay message or has
            fields which are not JSON serializable.
    """
    if not isinstance(message, RelayMessage):
        raise RelayMessageEncodeError(
            f'Message is not an instance of {RelayMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    try:
        return json.dumps(dataclasses.asdict(message))
    except TypeError as e:
        raise RelayMessageEncodeError('Error encoding message.') from e
