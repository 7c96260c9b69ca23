"""Random sources for card draws.

Reading runs use the selector's unseeded ``random.Random``; seeded card
selections and tests pass one built by ``seeded_random``.
"""

import hashlib
import random
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def seeded_random(seed: str, salt: str = "") -> random.Random:
    """Random source for a reproducible draw.

    ``/cards/select`` salts a caller's seed with the subject id, so the same
    seed replays the same cards and orientations for that subject only.
    """
    digest = hashlib.sha256(f"{seed}:{salt}".encode("utf-8")).digest()
    return random.Random(int.from_bytes(digest[:8], "big"))


def shuffled(items: Sequence[T], rng: random.Random) -> List[T]:
    out = list(items)
    rng.shuffle(out)
    return out


def jitter_factor(rng: random.Random, jitter: float) -> float:
    """Uniform factor in [1 - jitter, 1] applied to a score before ranking."""
    if jitter <= 0:
        return 1.0
    return rng.uniform(1.0 - jitter, 1.0)


def flip(rng: random.Random, probability: float = 0.5) -> bool:
    return rng.random() < probability
