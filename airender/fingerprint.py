"""
Content fingerprints for generation requests.

Two hashes come out of one request: the prompt hash (before a seed is
assigned, shared by every variation of the same prompt) and the request hash
(after seeding), which is the only deduplication key for the memo store.
"""

from __future__ import annotations

import hashlib
import json
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from airender.intents import GenerationRequest


@dataclass(frozen=True)
class Fingerprint:
    prompt_hash: str
    request_hash: str
    seed: int
    is_random_seed: bool
    request: GenerationRequest


def serialize(request: GenerationRequest) -> str:
    # Declaration order, no key sorting: equal requests give equal bytes
    return json.dumps(request.payload(), ensure_ascii=False, separators=(",", ":"))


def digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def assign_seed(
    seed: Optional[int],
    variations: Optional[int],
    rng: Optional[random.Random] = None,
) -> Tuple[int, bool]:
    """Return (seed, is_random_seed).

    An explicit seed is used verbatim. Otherwise ``variations=N`` draws from
    [0, N] inclusive (N + 1 buckets) and no variations means seed 1.
    """
    if seed is not None:
        return seed, False
    if variations:
        return (rng or random).randint(0, variations), True
    return 1, True


def fingerprint(
    request: GenerationRequest,
    seed: Optional[int] = None,
    variations: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> Fingerprint:
    unseeded = request.model_copy(update={"seed": None})
    prompt_hash = digest(serialize(unseeded))
    chosen, is_random = assign_seed(seed, variations, rng)
    seeded = request.model_copy(update={"seed": chosen})
    return Fingerprint(
        prompt_hash=prompt_hash,
        request_hash=digest(serialize(seeded)),
        seed=chosen,
        is_random_seed=is_random,
        request=seeded,
    )


def describe(fp: Fingerprint) -> Dict[str, Any]:
    return {
        "hash": fp.request_hash,
        "promptHash": fp.prompt_hash,
        "seed": fp.seed,
        "isRandomSeed": fp.is_random_seed,
    }
