"""Trait derivation from a random word and the weather feed."""

from __future__ import annotations

TRAIT_NAMES = ("strength", "agility", "intelligence", "charisma", "adaptability")
TRAIT_BITS = 8
MAX_TRAITS = 256 // TRAIT_BITS
NEUTRAL_WEATHER = 50


def weather_factor(value: int | None) -> int:
    """Missing or non-positive readings count as neutral weather."""
    if value is None or value <= 0:
        return NEUTRAL_WEATHER
    return value


def derive_traits(word: int, weather: int, trait_count: int = len(TRAIT_NAMES)) -> list[int]:
    """Slice ``word`` into ``trait_count`` bytes, each mapped into [1, 100].

    The last trait (adaptability by default) also mixes in the weather.
    """
    if not 1 <= trait_count <= MAX_TRAITS:
        raise ValueError(f"trait_count must be in [1, {MAX_TRAITS}]")
    mask = (1 << TRAIT_BITS) - 1
    raw = [(word >> (TRAIT_BITS * i)) & mask for i in range(trait_count)]
    traits = [r % 100 + 1 for r in raw]
    traits[-1] = (raw[-1] + weather) % 100 + 1
    return traits
