"""Label vector for the WD v3 tagger output.

The order is the contract between the model's output vector and tag names.
Append only; reordering requires a new model version.
"""

from __future__ import annotations

TAG_LABELS: tuple[str, ...] = (
    # Rating tiers
    "rating:general",
    "rating:sensitive",
    "rating:questionable",
    "rating:explicit",
    # Explicit anatomy and acts
    "nsfw",
    "explicit",
    "porn",
    "nude",
    "naked",
    "nipples",
    "areola",
    "breasts",
    "genitals",
    "penis",
    "vulva",
    "vagina",
    "pussy",
    "crotch",
    "anus",
    "spread_legs",
    "fellatio",
    "cunnilingus",
    "sex",
    "cum",
    "erection",
    "genital_focused",
    "crotch_shot",
    # Furry / scalie context
    "furry",
    "anthro",
    "feral",
    "kemono",
    "dragon",
    "scalie",
    "reptile",
    "lizard",
    "kobold",
    "werewolf",
    "taur",
    "mammal",
    "muzzle",
    "snout",
    # Pose / intent
    "presenting",
    "crotch_grab",
    "exhibitionism",
)

# Labels that stop the multi-crop loop once confident enough.
EARLY_EXIT_LABELS: tuple[str, ...] = ("explicit", "nsfw")
