"""Ephemeral per-connection identities."""
import random
from typing import NamedTuple

ALIAS_ADJECTIVES = (
    "Lively",
    "Mysterious",
    "Brave",
    "Happy",
    "Calm",
    "Clever",
    "Cute",
    "Shiny",
    "Playful",
    "Nimble",
)

ALIAS_NOUNS = (
    "Fox",
    "Whale",
    "Owl",
    "Wildcat",
    "Dolphin",
    "Dragonfly",
    "Zebra",
    "Elk",
    "Bird",
    "PaperPlane",
)


class Identity(NamedTuple):
    alias: str
    color: str


def generate_alias(rng: random.Random) -> str:
    adjective = rng.choice(ALIAS_ADJECTIVES)
    noun = rng.choice(ALIAS_NOUNS)
    suffix = rng.randint(100, 999)
    return f"{adjective}{noun}-{suffix}"


def generate_color(rng: random.Random) -> str:
    return "#%06X" % rng.randrange(0x1000000)


def assign_identity(rng: random.Random) -> Identity:
    """
    Draw an alias and a color from the given random source.

    Aliases are not unique across sessions; the numeric suffix only makes
    collisions unlikely.
    """
    return Identity(generate_alias(rng), generate_color(rng))
