"""
Room code generation
房间码生成 - 6 位，排除易混淆字符（0/O、1/I）
"""

import random
from typing import Optional

ROOM_CODE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6

_system_random = random.SystemRandom()


def generate_room_code(rng: Optional[random.Random] = None) -> str:
    """Draw a code uniformly from the restricted alphabet. Uniqueness is the caller's concern."""
    rng = rng or _system_random
    return "".join(rng.choice(ROOM_CODE_CHARS) for _ in range(ROOM_CODE_LENGTH))


def normalize_room_code(code: str) -> str:
    return (code or "").strip().upper()


def is_valid_room_code(code: str) -> bool:
    return len(code) == ROOM_CODE_LENGTH and all(c in ROOM_CODE_CHARS for c in code)
