import base58
from nacl.signing import SigningKey

from nonce_dispatch.constants import PUBKEY_LEN
from nonce_dispatch.errors import InvalidAddressError


def decode_address(address: str) -> bytes:
    """Decode a base58 address into its 32 raw bytes.

    Raises InvalidAddressError for anything that is not a base58 string of
    exactly 32 bytes.
    """
    if not isinstance(address, str) or not address:
        raise InvalidAddressError(f"address must be a non-empty string, got {address!r}")
    try:
        raw = base58.b58decode(address)
    except ValueError as e:
        raise InvalidAddressError(f"{address!r} is not base58: {e}") from e
    if len(raw) != PUBKEY_LEN:
        raise InvalidAddressError(f"{address!r} decodes to {len(raw)} bytes, expected {PUBKEY_LEN}")
    return raw


def encode_address(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def is_valid_address(address: str) -> bool:
    try:
        decode_address(address)
    except InvalidAddressError:
        return False
    return True


class Keypair:
    """Ed25519 signing key for the fee payer."""

    def __init__(self, signing_key: SigningKey) -> None:
        self._sk = signing_key
        self.pubkey: bytes = bytes(signing_key.verify_key)
        self.address: str = encode_address(self.pubkey)

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        if len(seed) != 32:
            raise ValueError(f"seed must be 32 bytes, got {len(seed)}")
        return cls(SigningKey(seed))

    @classmethod
    def from_secret(cls, secret: str) -> "Keypair":
        """Load from a base58 secret: a 64-byte keypair (seed || pubkey) or a 32-byte seed."""
        raw = base58.b58decode(secret.strip())
        if len(raw) == 32:
            return cls.from_seed(raw)
        if len(raw) != 64:
            raise ValueError(f"secret must decode to 32 or 64 bytes, got {len(raw)}")
        kp = cls.from_seed(raw[:32])
        if kp.pubkey != raw[32:]:
            raise ValueError("secret key public half does not match its seed")
        return kp

    def sign(self, message: bytes) -> bytes:
        return self._sk.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair({self.address})"
