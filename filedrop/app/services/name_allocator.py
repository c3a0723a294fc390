import math
import random
import string
from typing import Optional

from filedrop.errors import InvalidName, NameTooLong

PREFIX_ALPHABET = string.ascii_letters + string.digits
SEPARATOR = "."

# Characters replaced in user supplied names: path separators and shell/URL specials
UNSAFE_CHARS = frozenset('/\\&?"\'*~|:<>')


def sanitize_file_name(name: str) -> str:
    """Replace path separators, special and control characters with underscores."""
    return "".join(
        "_" if ch in UNSAFE_CHARS or ord(ch) < 32 or ord(ch) == 127 else ch
        for ch in name
    )


class NameAllocator:
    def __init__(self, prefix_length: int, max_name_length: int, rng: Optional[random.Random] = None):
        if prefix_length < 0:
            raise ValueError("Prefix length must not be negative")
        self.prefix_length = prefix_length
        self.max_name_length = max_name_length
        # Not a security boundary, a seeded PRNG is enough to avoid collisions
        self._rng = rng or random.Random()

    @property
    def entropy_bits(self) -> float:
        """Bits of randomness carried by one prefix."""
        return self.prefix_length * math.log2(len(PREFIX_ALPHABET))

    def random_prefix(self) -> str:
        return "".join(self._rng.choices(PREFIX_ALPHABET, k=self.prefix_length))

    def allocate(self, original_name: str) -> str:
        """Build the public name for an upload called ``original_name``.

        Raises:
            InvalidName: the name is empty or a relative path component.
            NameTooLong: the prefixed name exceeds ``max_name_length`` bytes.
        """
        name = sanitize_file_name(original_name or "")
        if name in ("", ".", ".."):
            raise InvalidName(f"Invalid file name: {original_name!r}")

        if self.prefix_length == 0:
            public_name = name
        else:
            public_name = f"{self.random_prefix()}{SEPARATOR}{name}"

        if len(public_name.encode("utf-8")) > self.max_name_length:
            raise NameTooLong(public_name, self.max_name_length)
        return public_name
