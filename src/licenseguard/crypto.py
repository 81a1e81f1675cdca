"""Cryptographic primitives for license keys.

A license key is a signed JWT that has been encrypted with the cluster
UUID as passphrase.  Decryption uses the OpenSSL-compatible AES-256-CBC
format shared by the "AES Everywhere" libraries::

    base64( b"Salted__" || salt[8] || AES-256-CBC(PKCS7(plaintext)) )

with key and IV derived from ``passphrase || salt`` by OpenSSL's
``EVP_BytesToKey`` (MD5, one round).

Signature verification accepts only RSA PKCS#1 v1.5 signatures
(RS256/RS384/RS512) checked against :data:`TRUST_ANCHOR`.  The algorithm
list is fixed here and the token header is never allowed to choose one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Any

import jwt
from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from licenseguard.errors import DecryptionError, MalformedClaimsError, SignatureError

# ---------------------------------------------------------------------------
# Trust anchor
# ---------------------------------------------------------------------------

# Public half of the license signing key.  Rotating it requires a rebuild.
TRUST_ANCHOR = """-----BEGIN PUBLIC KEY-----
MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEAvZP+0ffgcnK/yWdjudoS
uUaTMXIjhrKkF5bSiVUlP44IMHbEfrGg+/TXYq2F0f6xCpkROzgDpjxfsgCGgli7
7/pjhOr+CsOKlgBmJfWcl2dbYqbGIt6K6U191KJJaAgUKAKTaOknnQr0aMmFEKSO
iigJ1wqscCXxS6leoGJNK/XydBvuNJTFMXmR1z0YbO7emKCzcsrot3mFjfkXR3i+
sHQT6QZJZS3Z4571GiVaKKPRuPrIXK+WtAxiv3qxly8wftHyezJZB9s0AvYwFDoI
Yp+UaWs2rmQsHRk6Xt6LOUnXkxTi3eAarOrWtzKJ1sOM5pti04LHz8hGIDgG0rAm
swIDAQAB
-----END PUBLIC KEY-----
"""

ACCEPTED_ALGORITHMS: tuple[str, ...] = ("RS256", "RS384", "RS512")

# ---------------------------------------------------------------------------
# Symmetric layer
# ---------------------------------------------------------------------------

_SALT_HEADER = b"Salted__"
_SALT_LEN = 8
_KEY_LEN = 32
_IV_LEN = 16


def _derive_key_and_iv(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    """OpenSSL ``EVP_BytesToKey`` with MD5 and a single iteration."""
    derived = b""
    block = b""
    while len(derived) < _KEY_LEN + _IV_LEN:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:_KEY_LEN], derived[_KEY_LEN:_KEY_LEN + _IV_LEN]


def _is_token_shaped(text: str) -> bool:
    parts = text.split(".")
    return len(parts) == 3 and all(parts)


def encrypt(plaintext: str, cluster_uuid: str, *, salt: bytes | None = None) -> str:
    """Encrypt *plaintext* with *cluster_uuid* as passphrase.

    Produces the same format :func:`decrypt` reads.  *salt* is random
    unless given (must be 8 bytes).
    """
    salt = os.urandom(_SALT_LEN) if salt is None else salt
    if len(salt) != _SALT_LEN:
        raise ValueError(f"salt must be {_SALT_LEN} bytes")
    key, iv = _derive_key_and_iv(cluster_uuid.encode("utf-8"), salt)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return base64.b64encode(_SALT_HEADER + salt + ciphertext).decode("ascii")


def decrypt(ciphertext: str, cluster_uuid: str) -> str:
    """Decrypt a license key and check that the result looks like a JWT.

    Raises:
        DecryptionError: The ciphertext is malformed, the passphrase is
            wrong, or the plaintext is not three dot-separated segments.
    """
    try:
        raw = base64.b64decode(ciphertext.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("invalid license key, not base64", cause=exc) from exc

    header_len = len(_SALT_HEADER) + _SALT_LEN
    if not raw.startswith(_SALT_HEADER) or len(raw) <= header_len:
        raise DecryptionError("invalid license key, missing salt header")
    body = raw[header_len:]
    if len(body) % _IV_LEN:
        raise DecryptionError("invalid license key, truncated ciphertext")

    key, iv = _derive_key_and_iv(cluster_uuid.encode("utf-8"), raw[len(_SALT_HEADER):header_len])
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        # Wrong passphrase almost always lands here.
        raise DecryptionError("invalid license key", cause=exc) from exc

    if not _is_token_shaped(plaintext):
        raise DecryptionError("invalid license key")
    return plaintext


# ---------------------------------------------------------------------------
# Signature layer
# ---------------------------------------------------------------------------


def load_public_key(pem: str | bytes) -> RSAPublicKey:
    """Parse a PEM encoded RSA public key."""
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as exc:
        raise SignatureError(f"error parsing RSA public key: {exc}", cause=exc) from exc
    if not isinstance(key, RSAPublicKey):
        raise SignatureError("trust anchor is not an RSA public key")
    return key


def verify_signature(token: str, public_key: RSAPublicKey | str | None = None) -> dict[str, Any]:
    """Verify *token* against the trust anchor and return its claims.

    Only signature and algorithm are checked here.  Expiry, not-before
    and subject are left to :mod:`licenseguard.claims` and the validator
    so they can be evaluated against an injected clock.

    Raises:
        SignatureError: Unsupported algorithm, bad encoding, or the
            signature does not match.
        MalformedClaimsError: The signature is fine but a registered claim
            has the wrong type.
    """
    if public_key is None:
        public_key = TRUST_ANCHOR
    if not isinstance(public_key, RSAPublicKey):
        public_key = load_public_key(public_key)

    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError as exc:
        raise SignatureError(f"malformed token header: {exc}", cause=exc) from exc

    alg = header.get("alg")
    if alg not in ACCEPTED_ALGORITHMS:
        raise SignatureError(f"unexpected signing method: {alg}")

    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=list(ACCEPTED_ALGORITHMS),
            options={
                "verify_exp": False,
                "verify_nbf": False,
                "verify_iat": False,
                "verify_aud": False,
                "verify_iss": False,
            },
        )
    except (jwt.InvalidAlgorithmError, jwt.DecodeError) as exc:
        # InvalidSignatureError is a DecodeError.
        raise SignatureError(f"token signature verification failed: {exc}", cause=exc) from exc
    except jwt.InvalidTokenError as exc:
        raise MalformedClaimsError(f"invalid token claims: {exc}", cause=exc) from exc
