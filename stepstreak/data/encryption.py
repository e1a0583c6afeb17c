"""age encryption of persisted aggregates using pyrage."""

from __future__ import annotations

import json
import logging
from typing import Any

import pyrage
import pyrage.x25519

logger = logging.getLogger(__name__)


def encrypt_payload(payload: Any, recipient_public_key: str) -> bytes:
    """Serialize an aggregate payload to JSON and encrypt it to an age recipient."""
    recipient = pyrage.x25519.Recipient.from_str(recipient_public_key)
    plaintext = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str).encode("utf-8")
    result: bytes = pyrage.encrypt(plaintext, [recipient])
    return result


def decrypt_payload(ciphertext: bytes, identity_private_key: str) -> Any:
    """Decrypt an age ciphertext and deserialize its JSON body.

    Returns whatever JSON value was stored; callers validate the shape.
    """
    identity = pyrage.x25519.Identity.from_str(identity_private_key)
    plaintext: bytes = pyrage.decrypt(ciphertext, [identity])
    return json.loads(plaintext.decode("utf-8"))
