from __future__ import annotations

import re
import secrets
from typing import Callable, Optional, Protocol

from tablecode.logging import get_logger
from tablecode.service.errors import ExhaustedRetriesError
from tablecode.storage.models import Tenant

logger = get_logger(__name__)

# 32 symbols: A-Z and 2-9 without the look-alikes 0/1/O/I
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
DEFAULT_MAX_ATTEMPTS = 10

_CODE_PATTERN = re.compile(rf"^[{CODE_ALPHABET}]{{{CODE_LENGTH}}}$")


class CodeLookup(Protocol):
    def find_by_code(self, code: str) -> Optional[Tenant]: ...


def is_valid_code(value: object) -> bool:
    """Exactly six alphabet symbols; no case folding."""
    return isinstance(value, str) and bool(_CODE_PATTERN.match(value))


def normalize_code(value: str) -> str:
    return (value or "").strip().upper()


def encode_bits(data: bytes, length: int = CODE_LENGTH) -> str:
    """Map ``data`` to ``length`` symbols, consuming five bits per symbol."""
    needed_bits = length * 5
    if len(data) * 8 < needed_bits:
        raise ValueError(f"need at least {needed_bits} bits, got {len(data) * 8}")
    acc = int.from_bytes(data, "big")
    shift = len(data) * 8 - 5
    out = []
    for _ in range(length):
        out.append(CODE_ALPHABET[(acc >> shift) & 0x1F])
        shift -= 5
    return "".join(out)


class SlugGenerator:
    """Issues short tenant codes that are not yet taken in the store.

    The store's unique constraint on ``code`` remains authoritative; this
    pre-check only makes collisions rare at insert time.
    """

    def __init__(
        self,
        store: CodeLookup,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self._random_bytes = random_bytes

    def candidate(self) -> str:
        return encode_bits(self._random_bytes((CODE_LENGTH * 5 + 7) // 8))

    def generate(self) -> str:
        for attempt in range(1, self.max_attempts + 1):
            code = self.candidate()
            if self.store.find_by_code(code) is None:
                return code
            logger.warning("slug_collision", attempt=attempt, code=code)
        logger.error("slug_attempts_exhausted", attempts=self.max_attempts)
        raise ExhaustedRetriesError(
            "could not allocate a unique tenant code",
            detail={"attempts": self.max_attempts},
        )
