"""
Hashing and ledger authority signatures.
"""
import nacl.signing
import nacl.exceptions
from Crypto.Hash import keccak


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


def generate_authority_keypair() -> tuple[nacl.signing.SigningKey, nacl.signing.VerifyKey]:
    """Generates an Ed25519 key pair for the ledger authority."""
    signing_key = nacl.signing.SigningKey.generate()
    return signing_key, signing_key.verify_key


def load_signing_key(seed: bytes) -> nacl.signing.SigningKey:
    """Rebuilds a signing key from its 32-byte seed."""
    return nacl.signing.SigningKey(seed)


def sign(signing_key: nacl.signing.SigningKey, data: bytes) -> bytes:
    """Detached Ed25519 signature over data."""
    return signing_key.sign(data).signature


def verify_signature(verify_key: nacl.signing.VerifyKey, signature: bytes, data: bytes) -> bool:
    """Verify a detached signature."""
    try:
        verify_key.verify(data, signature)
        return True
    except (nacl.exceptions.BadSignatureError, ValueError):
        # Catch both cryptographic failures and format/length errors
        return False
