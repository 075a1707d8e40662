"""
Identifier generation
"""

import hashlib
import secrets
import string
import time
from datetime import datetime

_ALPHABET = string.ascii_lowercase + string.digits


def random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def generate_correlation_id(now: datetime) -> str:
    return f"corr_{epoch_ms(now)}_{random_suffix()}"


def generate_workflow_id(now: datetime) -> str:
    return f"wf_{epoch_ms(now)}_{random_suffix()}"


def generate_transaction_id(now: datetime) -> str:
    return f"txn_{epoch_ms(now)}_{random_suffix()}"


def hashed_id(prefix: str, *parts: object) -> str:
    """prefix + sha256 of the parts, a ns timestamp and a random nonce"""
    seed = ":".join(str(part) for part in parts)
    seed = f"{seed}:{time.time_ns()}:{secrets.token_hex(4)}"
    return f"{prefix}_{hashlib.sha256(seed.encode('utf-8')).hexdigest()[:20]}"
