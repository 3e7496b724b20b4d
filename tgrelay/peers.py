from __future__ import annotations

import re
from typing import Union


Peer = Union[int, str]

_PHONE_SEPARATORS = re.compile(r"[\s\-().]")


def to_peer(raw: object) -> Peer:
    """Normalize a caller-supplied recipient into something Telethon resolves.

    ``+<digits>`` is a phone number (separators stripped), bare digits are a
    numeric user id and anything else is treated as a username.
    """

    value = str(raw if raw is not None else "").strip()
    if not value:
        raise ValueError("recipient_required")

    compact = _PHONE_SEPARATORS.sub("", value)
    if compact.startswith("+"):
        digits = compact[1:]
        if not digits.isdigit():
            raise ValueError("recipient_invalid")
        return f"+{digits}"
    if compact.isdigit():
        peer_id = int(compact)
        if peer_id <= 0:
            raise ValueError("recipient_invalid")
        return peer_id

    username = value.lstrip("@").strip()
    if not username or any(ch.isspace() for ch in username):
        raise ValueError("recipient_invalid")
    return username


__all__ = ["Peer", "to_peer"]
