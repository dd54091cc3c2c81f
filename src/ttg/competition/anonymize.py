"""Deterministic pseudonyms for public rankings.

A user always gets the same name for a given salt, whoever is looking, and
the name cannot be reversed to the user id without the salt.
"""

from __future__ import annotations

import hashlib
import uuid

ADJECTIVES = (
    "Swift", "Calm", "Bold", "Steady", "Clever", "Patient", "Sharp", "Silent",
    "Brave", "Nimble", "Wise", "Keen", "Quiet", "Lucky", "Focused", "Golden",
)

ANIMALS = (
    "Falcon", "Bull", "Bear", "Wolf", "Otter", "Hawk", "Fox", "Lynx",
    "Owl", "Tiger", "Heron", "Badger", "Eagle", "Panther", "Raven", "Stag",
)


def anonymous_name(user_id: uuid.UUID, salt: str = "") -> str:
    """Return an ``Adjective Animal NNNN`` pseudonym for a user."""
    digest = hashlib.sha256(f"{salt}:{user_id}".encode()).digest()
    adjective = ADJECTIVES[digest[0] % len(ADJECTIVES)]
    animal = ANIMALS[digest[1] % len(ANIMALS)]
    number = int.from_bytes(digest[2:4], "big") % 10_000
    return f"{adjective} {animal} {number:04d}"
