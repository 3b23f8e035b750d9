"""Base64 helpers for carrying binary blobs inside JSON documents."""

from __future__ import annotations

import base64
import binascii


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(text: str) -> bytes:
    """Strict base64 decode.

    Raises ValueError on non-ASCII input or characters outside the alphabet.
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
        raise ValueError(f"Invalid base64 data: {exc}") from exc
