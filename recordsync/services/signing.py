"""OAuth 1.0a request signing and at-rest token encryption.

Nothing in this module performs I/O. Signatures follow the HMAC-SHA1 scheme
Discogs expects; tokens are sealed with AES-GCM so that only ciphertext is
ever written to storage.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import time
from typing import Mapping
from urllib.parse import quote

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import TokenDecryptionError

SIGNATURE_METHOD = "HMAC-SHA1"
OAUTH_VERSION = "1.0"
IV_LENGTH = 12
KEY_LENGTH = 32


def generate_nonce() -> str:
    """Return 16 random bytes as a lowercase hex string."""

    return secrets.token_hex(16)


def percent_encode(value: str) -> str:
    """Percent-encode ``value`` per RFC 3986.

    Only the unreserved set ``A-Z a-z 0-9 - . _ ~`` is left untouched, so
    ``!'()*`` are encoded as well.
    """

    return quote(str(value), safe="-._~")


def normalize_parameters(params: Mapping[str, str]) -> str:
    """Sort, encode and join parameters into ``key=value&...`` form."""

    return "&".join(
        f"{percent_encode(key)}={percent_encode(params[key])}"
        for key in sorted(params)
    )


def signature_base_string(
    method: str, base_url: str, params: Mapping[str, str]
) -> str:
    return "&".join(
        [
            method.upper(),
            percent_encode(base_url),
            percent_encode(normalize_parameters(params)),
        ]
    )


def sign(
    method: str,
    base_url: str,
    params: Mapping[str, str],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """Return the base64 HMAC-SHA1 signature for a request.

    ``token_secret`` is empty while requesting the initial request token.
    """

    base_string = signature_base_string(method, base_url, params)
    signing_key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(
        signing_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def build_oauth_params(consumer_key: str, **extra: str) -> dict[str, str]:
    """Return the protocol parameters shared by every signed request."""

    params = {
        "oauth_consumer_key": consumer_key,
        "oauth_nonce": generate_nonce(),
        "oauth_signature_method": SIGNATURE_METHOD,
        "oauth_timestamp": str(int(time.time())),
        "oauth_version": OAUTH_VERSION,
    }
    params.update(extra)
    return params


def build_authorization_header(params: Mapping[str, str]) -> str:
    """Render ``oauth_*`` parameters as an ``Authorization: OAuth`` value."""

    header_params = ", ".join(
        f'{percent_encode(key)}="{percent_encode(params[key])}"'
        for key in sorted(params)
        if key.startswith("oauth_")
    )
    return f"OAuth {header_params}"


def _derive_key(key: str) -> bytes:
    # 256-bit key: pad short passphrases with "0", truncate long ones.
    return key.ljust(KEY_LENGTH, "0").encode("utf-8")[:KEY_LENGTH]


def encrypt_token(token: str, key: str) -> str:
    """Encrypt ``token`` and return ``base64(iv || ciphertext)``."""

    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(_derive_key(key)).encrypt(iv, token.encode("utf-8"), None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_token(encrypted_token: str, key: str) -> str:
    """Reverse :func:`encrypt_token`.

    Raises :class:`TokenDecryptionError` when the payload is malformed, the
    key is wrong or the authentication tag does not verify.
    """

    try:
        combined = base64.b64decode(encrypted_token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TokenDecryptionError("Encrypted token is not valid base64") from exc

    # GCM appends a 16 byte tag, so anything shorter cannot be a real token.
    if len(combined) < IV_LENGTH + 16:
        raise TokenDecryptionError("Encrypted token is truncated")

    iv, ciphertext = combined[:IV_LENGTH], combined[IV_LENGTH:]
    try:
        plaintext = AESGCM(_derive_key(key)).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise TokenDecryptionError(
            "Encrypted token failed authentication; it was tampered with or "
            "the key is wrong"
        ) from exc
    return plaintext.decode("utf-8")
