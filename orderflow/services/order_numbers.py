from __future__ import annotations

import re
import secrets

# no 0/O, 1/I
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_PREFIX = "DC"
DEFAULT_LENGTH = 8


def generate_order_number(prefix: str = DEFAULT_PREFIX, length: int = DEFAULT_LENGTH) -> str:
    """
    Return e.g. "DC-7KQ2M9XH".

    32**8 is about 1.1e12 combinations. Storage is not consulted here: the
    unique constraint on orders.order_number catches the rare collision.
    """
    if length < 6:
        raise ValueError("order number suffix must be at least 6 characters")
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def is_valid_order_number(value: str, prefix: str = DEFAULT_PREFIX) -> bool:
    pattern = rf"^{re.escape(prefix)}-[{ALPHABET}]{{6,12}}$"
    return bool(re.match(pattern, value or ""))
