# src/models/profile.py

"""Member profile model used to target notifications."""

from dataclasses import dataclass

ROLES: tuple[str, ...] = ("admin", "moderator", "member")


@dataclass(frozen=True)
class Profile:
    """A registered member and their role."""

    id: str
    name: str
    role: str = "member"
