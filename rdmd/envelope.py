from __future__ import annotations

import os
import time

from .codec import encode
from .constants import (
    B_MSG_CONTENT,
    B_MSG_ID,
    B_MSG_RECIPIENT,
    B_MSG_SENDER,
    B_MSG_TS,
    K_BODY,
    K_ID,
    K_SRC,
    K_T,
    K_TS,
    K_V,
    MSG_ID_MAX_BYTES,
    RDM_VERSION,
    SRC_HASH_BYTES,
    T_HISTORY_ITEM,
    USER_ID_CHARS,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    msg_type: int,
    *,
    src: bytes | None = None,
    body=None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: RDM_VERSION,
        K_T: int(msg_type),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
    }
    if src is not None:
        env[K_SRC] = src
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_ID, K_TS):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != RDM_VERSION:
        raise ValueError(f"unsupported version {v}")

    t = env[K_T]
    if not isinstance(t, int):
        raise TypeError("message type must be an integer")

    mid = env[K_ID]
    if not isinstance(mid, (bytes, bytearray)):
        raise TypeError("message id must be bytes")
    if len(mid) > MSG_ID_MAX_BYTES:
        raise ValueError("message id too long")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")

    if K_SRC in env:
        src = env[K_SRC]
        if not isinstance(src, (bytes, bytearray)):
            raise TypeError("source hash must be bytes")


def record_envelope_size(body: dict) -> int:
    """Encoded size of the largest envelope the hub sends carrying a message record.

    historyItem has the widest type number; the source hash is counted even
    when the hub has no identity loaded.
    """
    env = make_envelope(T_HISTORY_ITEM, src=bytes(SRC_HASH_BYTES), body=body)
    return len(encode(env))


def max_record_envelope_size(content_bytes: int, *, identity_chars: int = USER_ID_CHARS) -> int:
    ident = "0" * identity_chars
    return record_envelope_size(
        {
            B_MSG_ID: "0" * USER_ID_CHARS,
            B_MSG_SENDER: ident,
            B_MSG_CONTENT: "x" * content_bytes,
            B_MSG_TS: now_ms(),
            B_MSG_RECIPIENT: ident,
        }
    )
