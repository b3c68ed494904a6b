"""Idempotency keys for provider calls that create side effects."""
from __future__ import annotations

import secrets
import time

IDEMPOTENCY_HEADER = "Idempotency-Key"


def generate_idempotency_key(prefix: str = "req") -> str:
    """prefix_<epoch-ms>_<random>, e.g. call_1719800000000_9f2c4a1b."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
