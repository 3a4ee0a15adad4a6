"""Key material for the management channel.

WireGuard keys are X25519 pairs. The private half lives in a SecretKey, which
refuses to be formatted, pickled or copied, so it cannot leak into logs,
error messages or serialized records by accident. Callers outside the key
manager only ever see KeyHandle, which carries no secret.
"""

import base64
import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

KEY_SIZE = 32
REDACTED = 'SecretKey(<redacted>)'


class RotationState(str, Enum):
    ACTIVE = 'active'
    OVERLAPPING = 'overlapping'
    RETIRING = 'retiring'


class SecretKey:
    """Private half of a key pair.

    The raw bytes are kept in a bytearray so wipe() can zero them before the
    reference is dropped.
    """

    __slots__ = ('_buf',)

    def __init__(self, raw: bytes):
        if len(raw) != KEY_SIZE:
            raise ValueError(f"private keys are {KEY_SIZE} bytes")
        self._buf: Optional[bytearray] = bytearray(raw)

    @property
    def wiped(self) -> bool:
        return self._buf is None

    def reveal(self) -> bytes:
        """Return the raw private key. Only adapters at the wire should call this."""
        if self._buf is None:
            raise ValueError("secret key has been wiped")
        return bytes(self._buf)

    def reveal_b64(self) -> str:
        """Private key in WireGuard's base64 text form."""
        return base64.b64encode(self.reveal()).decode('ascii')

    def public_key(self) -> str:
        """Derive the base64 public key."""
        private = X25519PrivateKey.from_private_bytes(self.reveal())
        raw = private.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return base64.b64encode(raw).decode('ascii')

    def wipe(self) -> None:
        if self._buf is not None:
            for i in range(len(self._buf)):
                self._buf[i] = 0
            self._buf = None

    def __repr__(self) -> str:
        return REDACTED

    __str__ = __repr__

    def __format__(self, format_spec: str) -> str:
        return REDACTED

    def __reduce__(self):
        raise TypeError("SecretKey cannot be pickled")

    def __copy__(self):
        raise TypeError("SecretKey cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SecretKey cannot be copied")


def generate_keypair() -> tuple[SecretKey, str]:
    """Generate an X25519 key pair.

    Returns:
        (secret, public_key) where public_key is WireGuard base64 text
    """
    private = X25519PrivateKey.generate()
    raw = private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    secret = SecretKey(raw)
    return secret, secret.public_key()


def key_id_for(public_key: str) -> str:
    """Short stable identifier derived from the public key."""
    return hashlib.sha256(public_key.encode('ascii')).hexdigest()[:16]


def make_sealer(state_key: str) -> Fernet:
    """Build the Fernet used to seal private keys at rest.

    Fernet wants 32 url-safe base64 bytes; derive them from the configured
    state key string.
    """
    digest = hashlib.sha256(state_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


@dataclass(frozen=True)
class KeyHandle:
    """Opaque reference to one key. Safe to log and return to callers."""
    owner: str
    key_id: str
    public_key: str
    rotation_state: RotationState
    valid_from: float
    valid_until: Optional[float]


@dataclass
class KeyMaterial:
    """One key pair owned by a provider connection (or a vpn network).

    Attributes:
        owner: Owning entity id
        provider: Provider connection the key is pushed to
        key_id: Stable id derived from the public key
        public_key: WireGuard base64 public key
        private: Private half; None once purged or when not restorable
        valid_from: When the key became active
        valid_until: End of acceptance (rotation due + grace period)
        rotation_state: Active, Overlapping or Retiring
        slot: Which half of the allowed-ips range the key is routed (0 or 1);
            consecutive generations alternate so an overlapping pair never
            claims the same prefix
    """
    owner: str
    provider: str
    key_id: str
    public_key: str
    private: Optional[SecretKey] = field(default=None, repr=False, compare=False)
    valid_from: float = field(default_factory=time.time)
    valid_until: Optional[float] = None
    rotation_state: RotationState = RotationState.ACTIVE
    slot: int = 0

    @classmethod
    def generate(cls, owner: str, provider: str, now: Optional[float] = None,
                 slot: int = 0) -> 'KeyMaterial':
        secret, public = generate_keypair()
        return cls(
            owner=owner,
            provider=provider,
            key_id=key_id_for(public),
            public_key=public,
            private=secret,
            valid_from=now if now is not None else time.time(),
            slot=slot,
        )

    @property
    def has_secret(self) -> bool:
        return self.private is not None and not self.private.wiped

    def handle(self) -> KeyHandle:
        return KeyHandle(
            owner=self.owner,
            key_id=self.key_id,
            public_key=self.public_key,
            rotation_state=self.rotation_state,
            valid_from=self.valid_from,
            valid_until=self.valid_until,
        )

    def purge(self) -> None:
        """Wipe and drop the private half."""
        if self.private is not None:
            self.private.wipe()
            self.private = None

    def to_record(self, sealer: Optional[Fernet] = None) -> dict:
        """Serialize for the state store.

        The private half is only written sealed; without a sealer it is omitted.
        """
        d = {
            'owner': self.owner,
            'provider': self.provider,
            'key_id': self.key_id,
            'public_key': self.public_key,
            'valid_from': self.valid_from,
            'valid_until': self.valid_until,
            'rotation_state': self.rotation_state.value,
            'slot': self.slot,
        }
        if sealer is not None and self.has_secret:
            d['sealed'] = sealer.encrypt(self.private.reveal()).decode('ascii')
        return d

    @classmethod
    def from_record(cls, data: dict, sealer: Optional[Fernet] = None) -> 'KeyMaterial':
        private = None
        sealed = data.get('sealed')
        if sealed and sealer is not None:
            try:
                private = SecretKey(sealer.decrypt(sealed.encode('ascii')))
            except InvalidToken:
                private = None
        return cls(
            owner=data['owner'],
            provider=data['provider'],
            key_id=data['key_id'],
            public_key=data['public_key'],
            private=private,
            valid_from=data.get('valid_from', time.time()),
            valid_until=data.get('valid_until'),
            rotation_state=RotationState(data.get('rotation_state', 'active')),
            slot=int(data.get('slot', 0)),
        )
