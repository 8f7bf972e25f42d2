"""Deterministic participant identities.

Every participant is addressed by a small numeric id in
`[MIN_ID, MAX_ID]`. Each id maps to an Ed25519 key pair derived from a fixed
seed, so any participant can compute the identity of any other participant
without a directory service. Identities are rendered in the libp2p peer id
format (a base58btc encoded identity multihash of the protobuf encoded public
key), e.g., id 1 is `12D3KooWPjceQrSwdWXPyLLeABRXmuqt69Rg3sBYbU1Nft9HyQ6X`.
"""
from __future__ import annotations

import logging
import secrets
from typing import Iterator
from typing import Sequence

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
)
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.hazmat.primitives.serialization import PublicFormat

from p2pchat.exceptions import UnknownPeerError

logger = logging.getLogger(__name__)

MIN_ID = 1
MAX_ID = 255
SLOTS = MAX_ID + 1
UNKNOWN_ID = -1
"""Sentinel id for identities not present in the registry."""
RELAY_ID = 200
"""Slot whose identity is announced by the well-known relay server."""

SEED_LENGTH = 32

# Protobuf encoding of the libp2p PublicKey message header:
# field 1 (KeyType) = 1 (Ed25519), field 2 (Data) with a 32 byte length.
_ED25519_PUBLIC_KEY_PREFIX = b'\x08\x01\x12\x20'
# Identity multihash code (0x00) and digest length (36 bytes).
_IDENTITY_MULTIHASH_PREFIX = b'\x00\x24'
_PEER_ID_PREFIX = _IDENTITY_MULTIHASH_PREFIX + _ED25519_PUBLIC_KEY_PREFIX
_RAW_KEY_LENGTH = 32


def is_addressable(peer_id: int) -> bool:
    """Check if a numeric id refers to an addressable participant slot."""
    return MIN_ID <= peer_id <= MAX_ID


class Identity:
    """Cryptographic identity of a participant.

    Two identities are equal if their public keys are equal. The private key
    is only present for identities derived locally.

    Args:
        public_key: Ed25519 public key of the participant.
        private_key: Optional matching private key.
    """

    def __init__(
        self,
        public_key: Ed25519PublicKey,
        private_key: Ed25519PrivateKey | None = None,
    ) -> None:
        self._public_key = public_key
        self._private_key = private_key
        self._public_bytes = public_key.public_bytes(
            Encoding.Raw,
            PublicFormat.Raw,
        )
        self._str = base58.b58encode(self.to_bytes()).decode('ascii')

    @classmethod
    def from_seed(cls, seed: bytes) -> Identity:
        """Derive an identity from a 32 byte Ed25519 seed.

        Raises:
            ValueError: If the seed is not `SEED_LENGTH` bytes.
        """
        if len(seed) != SEED_LENGTH:
            raise ValueError(
                f'Seed must be {SEED_LENGTH} bytes. Got {len(seed)} bytes.',
            )
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(private_key.public_key(), private_key)

    @classmethod
    def from_bytes(cls, data: bytes) -> Identity:
        """Parse an identity from its binary multihash form.

        Raises:
            ValueError: If the data is not an Ed25519 identity multihash.
        """
        if (
            len(data) != len(_PEER_ID_PREFIX) + _RAW_KEY_LENGTH
            or not data.startswith(_PEER_ID_PREFIX)
        ):
            raise ValueError(
                'Data is not an identity multihash of an Ed25519 public key.',
            )
        key = Ed25519PublicKey.from_public_bytes(data[len(_PEER_ID_PREFIX) :])
        return cls(key)

    @classmethod
    def from_string(cls, value: str) -> Identity:
        """Parse an identity from its canonical string form.

        Raises:
            ValueError: If the string is not a valid identity.
        """
        try:
            data = base58.b58decode(value)
        except ValueError as e:
            raise ValueError(f'Invalid identity string: {value!r}.') from e
        return cls.from_bytes(data)

    @property
    def public_key(self) -> Ed25519PublicKey:
        """Public key of the participant."""
        return self._public_key

    @property
    def private_key(self) -> Ed25519PrivateKey | None:
        """Private key if the identity was derived locally."""
        return self._private_key

    def to_bytes(self) -> bytes:
        """Binary multihash form of the identity."""
        return _PEER_ID_PREFIX + self._public_bytes

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Identity):
            return self._public_bytes == other._public_bytes
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._public_bytes)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self._str!r})'

    def __str__(self) -> str:
        return self._str


def derive_identity(peer_id: int) -> Identity:
    """Derive the identity of a participant slot.

    Ids in `[MIN_ID, MAX_ID]` use a seed of zeros whose first byte is the
    id, so the result is identical across processes and runs. Any other id
    uses a random seed and produces a new identity every call.

    Args:
        peer_id: Numeric id of the participant.

    Returns:
        Identity of the participant.
    """
    if is_addressable(peer_id):
        seed = bytearray(SEED_LENGTH)
        seed[0] = peer_id
    else:
        seed = bytearray(secrets.token_bytes(SEED_LENGTH))
    return Identity.from_seed(bytes(seed))


def build_reverse_index(slots: Sequence[Identity | None]) -> dict[str, int]:
    """Build the mapping from identity strings back to numeric ids.

    Empty slots are skipped. If two slots hold the same identity, the later
    id wins.
    """
    index: dict[str, int] = {}
    for peer_id, identity in enumerate(slots):
        if identity is not None:
            index[str(identity)] = peer_id
    return index


class IdentityRegistry:
    """Two-way mapping between numeric participant ids and identities.

    Tip:
        Use [`create()`][p2pchat.identity.IdentityRegistry.create] to
        derive the full slot table.

    Args:
        slots: Slot table of length `SLOTS` where the index is the numeric
            id. Slot 0 and unused slots are `None`.

    Raises:
        ValueError: If the slot table is not of length `SLOTS`.
    """

    def __init__(self, slots: Sequence[Identity | None]) -> None:
        if len(slots) != SLOTS:
            raise ValueError(
                f'Slot table must have {SLOTS} entries. Got {len(slots)}.',
            )
        self._slots = tuple(slots)
        self._index = build_reverse_index(self._slots)

    @classmethod
    def create(cls) -> IdentityRegistry:
        """Derive the identity of every addressable slot."""
        slots: list[Identity | None] = [None]
        slots.extend(derive_identity(i) for i in range(MIN_ID, MAX_ID + 1))
        logger.debug(f'Derived identities for {len(slots) - 1} slots')
        return cls(slots)

    def identity(self, peer_id: int) -> Identity:
        """Get the identity of a participant.

        Raises:
            UnknownPeerError: If `peer_id` is not an addressable participant.
        """
        identity = self._slots[peer_id] if is_addressable(peer_id) else None
        if identity is None:
            raise UnknownPeerError(
                peer_id,
                f'id {peer_id} is not in [{MIN_ID}, {MAX_ID}]',
            )
        return identity

    def local_identity(self, peer_id: int) -> Identity:
        """Get the identity this process should use as participant `peer_id`.

        Non-addressable ids (e.g., 0) get a fresh random identity which other
        participants cannot address but which can still dial out.
        """
        if is_addressable(peer_id):
            return self.identity(peer_id)
        return derive_identity(peer_id)

    def lookup(self, identity: Identity | str) -> int:
        """Get the numeric id of an identity.

        Returns:
            Numeric id or `UNKNOWN_ID` if the identity is not in the registry.
        """
        return self._index.get(str(identity), UNKNOWN_ID)

    def __iter__(self) -> Iterator[tuple[int, Identity]]:
        for peer_id, identity in enumerate(self._slots):
            if identity is not None:
                yield peer_id, identity

    def __len__(self) -> int:
        return len(self._index)
