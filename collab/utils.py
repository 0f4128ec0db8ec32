"""
Utility functions for ID, name and timestamp generation
"""
import random
import string
import time
import uuid
from datetime import datetime, timezone


def generate_sid(length: int = 12) -> str:
    """Generate a random connection (socket) ID"""
    alphabet = string.ascii_lowercase + string.digits
    return "sid_" + "".join(random.choice(alphabet) for _ in range(length))


def generate_room_id() -> str:
    """Generate the public (UUID form) room ID"""
    return str(uuid.uuid4())


def generate_storage_id() -> str:
    """Generate a storage-native ID (24 hex chars)"""
    return "".join(random.choice("abcdef0123456789") for _ in range(24))


def generate_room_code(length: int = 6) -> str:
    """Generate a short uppercase join code"""
    return "".join(random.choice(string.ascii_uppercase + string.digits) for _ in range(length))


def generate_message_id(user_id: str) -> str:
    """Chat message ID: identity + millisecond timestamp + random suffix"""
    suffix = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"{user_id}-{now_ms()}-{suffix}"


def generate_username() -> str:
    """Generate a random fun username"""
    adjectives = [
        "Async", "Lazy", "Eager", "Mutable", "Static", "Pure", "Recursive",
        "Binary", "Dynamic", "Nested", "Atomic", "Sparse"
    ]
    nouns = [
        "Lambda", "Pointer", "Closure", "Tuple", "Heap", "Stack", "Thread",
        "Coroutine", "Iterator", "Monad", "Parser", "Socket"
    ]
    return random.choice(adjectives) + random.choice(nouns) + str(random.randint(1, 99))


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Server timestamp attached to relayed events"""
    return utc_now().isoformat()
