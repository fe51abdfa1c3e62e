"""Human-readable environment slugs (``adjective-animal``).

Slugs double as DNS labels, so every generated value matches
``SLUG_PATTERN``.
"""

from __future__ import annotations

import re
import secrets
import time
from typing import Awaitable, Callable, Sequence

SLUG_PATTERN = re.compile(r'^[a-z0-9]+(-[a-z0-9]+)*$')

MAX_SLUG_ATTEMPTS = 10

ADJECTIVES: tuple[str, ...] = (
    'agile', 'amber', 'ancient', 'azure', 'bold', 'brave', 'breezy', 'bright',
    'calm', 'clever', 'cosmic', 'crimson', 'crisp', 'daring', 'dusty', 'eager',
    'electric', 'emerald', 'fancy', 'fearless', 'fierce', 'frosty', 'gentle',
    'gilded', 'golden', 'grand', 'happy', 'hidden', 'humble', 'icy', 'jolly',
    'keen', 'kind', 'lively', 'lucky', 'lunar', 'mellow', 'mighty', 'misty',
    'nimble', 'noble', 'polar', 'proud', 'quick', 'quiet', 'rapid', 'rustic',
    'scarlet', 'serene', 'shiny', 'silent', 'silver', 'sleek', 'solar', 'spry',
    'steady', 'stormy', 'sunny', 'swift', 'tidy', 'vivid', 'wild', 'witty',
    'zesty',
)

ANIMALS: tuple[str, ...] = (
    'badger', 'bear', 'beaver', 'bison', 'bobcat', 'condor', 'cougar', 'coyote',
    'crane', 'dingo', 'dolphin', 'eagle', 'falcon', 'ferret', 'finch', 'fox',
    'gazelle', 'gecko', 'heron', 'hawk', 'ibex', 'jackal', 'jaguar', 'koala',
    'lemur', 'leopard', 'lion', 'lynx', 'marten', 'moose', 'newt', 'ocelot',
    'orca', 'otter', 'owl', 'panda', 'panther', 'parrot', 'pelican', 'puma',
    'quokka', 'raven', 'robin', 'salmon', 'seal', 'shark', 'sparrow', 'stork',
    'swan', 'tapir', 'tiger', 'toucan', 'turtle', 'viper', 'walrus', 'weasel',
    'whale', 'wolf', 'wombat', 'yak', 'zebra',
)

SlugExists = Callable[[str], Awaitable[bool]]


def random_slug(
    adjectives: Sequence[str] = ADJECTIVES,
    animals: Sequence[str] = ANIMALS,
    *,
    choice: Callable[[Sequence[str]], str] = secrets.choice,
) -> str:
    return f'{choice(adjectives)}-{choice(animals)}'


def base36(value: int) -> str:
    if value < 0:
        raise ValueError('base36 requires a non-negative integer')
    digits = '0123456789abcdefghijklmnopqrstuvwxyz'
    out = ''
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if value == 0:
            return out


async def generate_unique_slug(
    exists: SlugExists,
    *,
    attempts: int = MAX_SLUG_ATTEMPTS,
    candidate: Callable[[], str] = random_slug,
    clock_ms: Callable[[], int] | None = None,
) -> str:
    """Return a slug not yet taken according to ``exists``.

    Tries ``attempts`` random candidates; after that appends a base-36
    millisecond timestamp to one more candidate without re-checking.
    """
    for _ in range(attempts):
        slug = candidate()
        if not await exists(slug):
            return slug
    now_ms = clock_ms() if clock_ms is not None else time.time_ns() // 1_000_000
    return f'{candidate()}-{base36(now_ms)}'


def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_PATTERN.match(slug))
