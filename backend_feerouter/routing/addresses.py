"""
Synthetic identifiers for the routing ledger.

Ids and addresses are drawn from an injected random.Random so a seeded engine
produces a reproducible ledger. None of these are real chain addresses.
"""

from __future__ import annotations

import random

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
BECH32_ALPHABET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

SHELL_ADDRESS_PREFIX = "1"  # legacy-style, 34 chars total
SHELL_ADDRESS_BODY_LEN = 33
DESTINATION_PREFIX = "bc1"  # bech32-style, 42 chars total
DESTINATION_BODY_LEN = 39


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value <= 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def _token(rng: random.Random, now: float) -> str:
    return _base36(int(now * 1000)) + _base36(rng.getrandbits(64))


def transaction_id(rng: random.Random, now: float) -> str:
    return "tx_" + _token(rng, now)


def wallet_id(rng: random.Random, now: float) -> str:
    return "shell_" + _token(rng, now)


def shell_address(rng: random.Random) -> str:
    body = "".join(rng.choice(BASE58_ALPHABET) for _ in range(SHELL_ADDRESS_BODY_LEN))
    return SHELL_ADDRESS_PREFIX + body


def destination_address(rng: random.Random) -> str:
    body = "".join(rng.choice(BECH32_ALPHABET) for _ in range(DESTINATION_BODY_LEN))
    return DESTINATION_PREFIX + body
