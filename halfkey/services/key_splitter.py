from __future__ import annotations

import base64
import binascii
import secrets

from halfkey.models.errors import DecodeError


def _xor(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right))


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(message="Invalid base64 key share", code="invalid_share") from exc


def split(secret: str | bytes) -> tuple[str, str]:
    """Split ``secret`` into ``(server_share, client_share)``, both base64.

    The server share is a fresh random pad of the same length as the secret and
    the client share is the secret XOR the pad. A pad must never be reused for a
    second secret.
    """
    data = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
    pad = secrets.token_bytes(len(data))
    return base64.b64encode(pad).decode("ascii"), base64.b64encode(_xor(data, pad)).decode("ascii")


def reconstruct_bytes(server_share: str, client_share: str) -> bytes:
    return _xor(_b64decode(server_share), _b64decode(client_share))


def reconstruct(server_share: str, client_share: str) -> str:
    """Recombine two base64 shares into the original UTF-8 secret.

    Shares of unequal length are combined over the shorter one. Raises
    ``DecodeError`` when either share is not base64 or the result is not UTF-8.
    """
    raw = reconstruct_bytes(server_share, client_share)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(message="Reconstructed key is not valid UTF-8", code="invalid_share") from exc
