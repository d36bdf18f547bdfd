"""
Ed25519 signing for rhodi-kernel.

Signatures are made over the raw 32-byte version hash, never over a hex
string. Keys travel as lowercase hex: 64 chars for a public key, 64 chars
for a private seed, 128 chars for a signature.

SECURITY: Private seeds belong in a secrets manager or a 0600 key file
owned by the signer. This module never persists key material.
"""

import hmac
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import SigningError


PUBLIC_KEY_BYTES = 32
SIGNATURE_BYTES = 64


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 signing key and its public half."""
    private_key: ed25519.Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def from_seed_hex(cls, seed_hex: str) -> "KeyPair":
        """
        Load a key pair from a hex-encoded 32-byte private seed.

        Raises:
            SigningError: Seed is not 64 hex characters
        """
        try:
            seed = bytes.fromhex(seed_hex)
        except (TypeError, ValueError) as exc:
            raise SigningError("Private key seed is not valid hex") from exc
        if len(seed) != 32:
            raise SigningError(f"Private key seed must be 32 bytes, got {len(seed)}")
        return cls(ed25519.Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def public_key(self) -> ed25519.Ed25519PublicKey:
        return self.private_key.public_key()

    @property
    def public_key_hex(self) -> str:
        return public_key_to_hex(self.public_key)

    def seed_hex(self) -> str:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ).hex()

    def sign(self, message: bytes) -> bytes:
        """
        Sign ``message`` and return the 64-byte signature.

        Raises:
            SigningError: The wrapped key is not a usable Ed25519 key
        """
        if not isinstance(self.private_key, ed25519.Ed25519PrivateKey):
            raise SigningError(
                f"Expected an Ed25519 private key, got {type(self.private_key).__name__}"
            )
        return self.private_key.sign(message)


def public_key_to_hex(public_key: ed25519.Ed25519PublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


def load_public_key(key_value: "str | bytes | ed25519.Ed25519PublicKey") -> ed25519.Ed25519PublicKey:
    """
    Load an Ed25519 public key from raw bytes, lowercase hex, or PEM text.

    Raises:
        ValueError: The value is not an Ed25519 public key
    """
    if isinstance(key_value, ed25519.Ed25519PublicKey):
        return key_value

    if isinstance(key_value, (bytes, bytearray)):
        raw = bytes(key_value)
    else:
        key_text = (key_value or "").strip()
        if not key_text:
            raise ValueError("empty public key")
        if "BEGIN" in key_text:
            try:
                key_obj = serialization.load_pem_public_key(key_text.encode("utf-8"))
            except ValueError as exc:
                raise ValueError(f"invalid PEM public key ({exc})") from exc
            if not isinstance(key_obj, ed25519.Ed25519PublicKey):
                raise ValueError("expected Ed25519 public key")
            return key_obj
        try:
            raw = bytes.fromhex(key_text)
        except ValueError as exc:
            raise ValueError("public key must be hex or PEM") from exc

    if len(raw) != PUBLIC_KEY_BYTES:
        raise ValueError(f"Ed25519 public key must be {PUBLIC_KEY_BYTES} bytes, got {len(raw)}")
    return ed25519.Ed25519PublicKey.from_public_bytes(raw)


def verify_signature(
    public_key: "str | bytes | ed25519.Ed25519PublicKey",
    signature_hex: str,
    message: bytes,
) -> bool:
    """
    Check an Ed25519 signature. Malformed keys or signatures verify as False;
    use ``load_public_key`` first when the caller needs the reason.
    """
    try:
        key = load_public_key(public_key)
        signature = bytes.fromhex(signature_hex)
    except (TypeError, ValueError):
        return False
    if len(signature) != SIGNATURE_BYTES:
        return False
    try:
        key.verify(signature, message)
    except InvalidSignature:
        return False
    return True


def safe_equal(left: str, right: str) -> bool:
    """
    Constant-time string comparison to prevent timing side-channel attacks.
    """
    left = left if isinstance(left, str) else str(left or "")
    right = right if isinstance(right, str) else str(right or "")
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
