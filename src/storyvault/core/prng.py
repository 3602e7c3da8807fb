"""
Seedable, peekable pseudo-random number generator.

The stream is a pure function of ``(seed, pull)``: ``pull`` counts how many
values have been drawn, so any point of the stream can be revisited by
rebuilding the generator with a recorded pull. Moments store the pull they
were created at, which makes undo/redo replay deterministic.

Not cryptographically secure.

Generator Formula:
=================
    s      = seed_int if the seed is a string else seed
    p      = floor((pull + peek + s * 4327) mod LIMITER) + 1
    extra  = PRIMES[p mod 9]
    value  = (p * s * extra * FACTOR) mod (LIMITER - 1) / LIMITER
"""

from __future__ import annotations

import logging
import math
import random as _random
from collections.abc import MutableSequence, Sequence
from typing import Any

logger = logging.getLogger(__name__)

PRIMES: tuple[int, ...] = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29)

MAX_SAFE_INTEGER = 2**53 - 1

# Largest value keeping p * seed * prime * factor below MAX_SAFE_INTEGER (17623651, a prime)
LIMITER = math.floor(math.sqrt(MAX_SAFE_INTEGER / PRIMES[-1]))

# Prime in (LIMITER / 2, LIMITER); overflows the limiter irregularly for consecutive pulls
FACTOR = 12345653

SEED_SPREAD = 4327
MAX_PEEK_DEPTH = 9000
RECOMMENDED_SEED_RANGE = (0.25, 1.0)


def str2int(string: str) -> float:
    """
    Map a string onto a seed in [0.25, 1].

    Characters outside printable ASCII are ignored. Strings without any
    counted character map to 0.25.
    """
    total = 0
    count = 0
    for char in string:
        code = ord(char)
        if code < 32 or code > 127:
            continue
        total += code - 32
        count += 1
    return total / count / 127 + 0.25 if count else 0.25


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class PRNG:
    """
    Deterministic number stream addressed by ``(seed, pull)``.

    Example:
        rng = PRNG(0.5)
        upcoming = rng.peek(3)      # does not advance
        assert rng.random() == upcoming[0]
        assert rng.pull == 1
    """

    def __init__(self, seed: float | str | None = None, pull: int = 0):
        self._seed: float | str
        self.seed_int: float | None = None
        self.pull = int(pull or 0)

        if seed is None:
            self.seed = (_random.random() * 3 + 1) / 4
        else:
            self.seed = seed

    @property
    def seed(self) -> float | str:
        return self._seed

    @seed.setter
    def seed(self, value: float | str) -> None:
        if isinstance(value, str):
            # keep the original string, generate from its numeric form
            self._seed = value
            self.seed_int = str2int(value)
        elif _is_number(value):
            low, high = RECOMMENDED_SEED_RANGE
            if value < low or value > high:
                logger.warning(f"Recommended seed value is between {low} and {high}, got {value}")
            self._seed = value
            self.seed_int = None
        else:
            raise TypeError(f"PRNG seed must be a number or a string, got {type(value).__name__}")

    @property
    def state(self) -> dict[str, Any]:
        """Serializable ``{seed, pull}`` pair."""
        return {"seed": self._seed, "pull": self.pull}

    def random(self, peek: int = 0) -> float:
        """
        Return a float in (0, 1).

        Args:
            peek: When non-zero, predict the value ``peek`` steps ahead
                without advancing the stream.
        """
        if not peek:
            self.pull += 1
        seed = self.seed_int if self.seed_int is not None else self._seed
        pull = math.floor((self.pull + peek + seed * SEED_SPREAD) % LIMITER) + 1
        extra = PRIMES[pull % (len(PRIMES) - 1)]
        return pull * seed * extra * FACTOR % (LIMITER - 1) / LIMITER

    def peek(self, depth: int = 1) -> list[float]:
        """Return the next ``depth`` values without advancing the stream."""
        if not _is_int(depth):
            raise TypeError(f"Can't look ahead {depth!r} times")
        if depth > MAX_PEEK_DEPTH:
            raise ValueError(f"Peek depth {depth} exceeds the limit of {MAX_PEEK_DEPTH}")
        return [self.random(i) for i in range(1, depth + 1)]

    def str2int(self, string: str) -> float:
        return str2int(string)

    def random_float(self, min_value: float, max_value: float | None = None, peek: int = 0) -> float:
        """Return a float in [min, max); a single bound means [0, bound)."""
        if max_value is None:
            min_value, max_value = 0, min_value
        if not _is_number(min_value) or not _is_number(max_value):
            raise TypeError(
                f"random_float bounds must be numbers, got {min_value!r} and {max_value!r}"
            )
        if min_value > max_value:
            min_value, max_value = max_value, min_value
        return self.random(peek) * (max_value - min_value) + min_value

    def random_int(self, min_value: int, max_value: int | None = None, peek: int = 0) -> int:
        """Return an integer in [min, max], inclusive; a single bound means [0, bound]."""
        if max_value is None:
            min_value, max_value = 0, min_value
        if not _is_int(min_value) or not _is_int(max_value):
            raise TypeError(
                f"random_int bounds must be integers, got {min_value!r} and {max_value!r}"
            )
        if min_value > max_value:
            min_value, max_value = max_value, min_value
        return math.floor(self.random(peek) * (max_value - min_value + 1)) + min_value

    def shuffle(self, items: Sequence[Any], mutate: bool = False) -> list[Any]:
        """Fisher-Yates shuffle; returns a new list unless ``mutate`` is set."""
        if mutate:
            if not isinstance(items, MutableSequence):
                raise TypeError(f"Can't shuffle a {type(items).__name__} in place")
            result = items
        else:
            if not isinstance(items, Sequence) or isinstance(items, str):
                raise TypeError(f"shuffle expects a sequence, got {type(items).__name__}")
            result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = self.random_int(0, i)
            result[i], result[j] = result[j], result[i]
        return result

    def either(self, *values: Any) -> Any:
        """Pick one of the given values; list and tuple arguments are expanded."""
        if not values:
            raise TypeError("either requires at least one value")
        pool: list[Any] = []
        for value in values:
            if isinstance(value, (list, tuple)):
                pool.extend(value)
            else:
                pool.append(value)
        if not pool:
            raise ValueError("either received only empty sequences")
        return pool[self.random_int(0, len(pool) - 1)]

    def distribution(self, count: int = 10, granularity: int = 10, advance: bool = False) -> list[int]:
        """
        Bucket the next ``count`` values into ``granularity`` bins.

        Useful for eyeballing the spread of a seed. With ``advance`` the
        stream moves past the sampled values.
        """
        if not _is_int(count) or not _is_int(granularity) or granularity < 1:
            raise TypeError("distribution expects a positive integer count and granularity")
        buckets = [0] * granularity
        for i in range(1, count + 1):
            buckets[math.floor(self.random(i) * granularity)] += 1
        if advance:
            self.pull += count
        return buckets

    def __repr__(self) -> str:
        return f"PRNG(seed={self._seed!r}, pull={self.pull})"
