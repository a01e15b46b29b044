"""Display information for the other participant of a call."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Profile:
    name: str
    institution: str | None = None


ProfileLookup = Callable[[str], Awaitable[Profile | None]]


async def lookup_profile(lookup: ProfileLookup | None, user_id: str) -> Profile | None:
    """Resolve a profile, treating a failed lookup like a missing one."""
    if lookup is None:
        return None
    try:
        return await lookup(user_id)
    except Exception:
        logger.warning("Profile lookup failed for %s", user_id, exc_info=True)
        return None
