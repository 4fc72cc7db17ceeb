"""
backend/backoffice/services/bet_lock_service.py

Purpose:
    Effective bet-lock resolution over the user hierarchy
    (system owner -> super admin -> admin -> master -> agent -> user).
    A lock on any ancestor up to the nearest super admin applies to everyone
    below it.

Dependencies:
    - backoffice.database
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import backoffice.database as _db

logger = logging.getLogger("backoffice.bet_lock")

# The hierarchy is six levels deep; anything longer is corrupt data.
MAX_PARENT_DEPTH = 12


class UserRole(str, Enum):
    SYSTEM_OWNER = "system_owner"
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MASTER = "master"
    AGENT = "agent"
    USER = "user"


_WALK_STOPS = {UserRole.SUPER_ADMIN.value, UserRole.SYSTEM_OWNER.value}
_PROJECTION = {"role": 1, "parent_id": 1, "is_bet_lock": 1}


async def effective_bet_lock(user_id: Any) -> bool:
    """True if the user or any ancestor below the super admin has ``is_bet_lock`` set.

    Cycles, dangling parents and chains deeper than MAX_PARENT_DEPTH resolve
    to unlocked and are logged.
    """
    visited: set[str] = set()
    current_id = user_id

    for _ in range(MAX_PARENT_DEPTH):
        if current_id is None:
            return False
        key = str(current_id)
        if key in visited:
            logger.warning("Parent cycle detected while resolving bet lock for %s at %s", user_id, key)
            return False
        visited.add(key)

        user = await _db.db.users.find_one({"_id": current_id}, _PROJECTION)
        if user is None:
            logger.warning("Dangling parent %s while resolving bet lock for %s", key, user_id)
            return False
        if user.get("is_bet_lock"):
            return True
        if user.get("role") in _WALK_STOPS:
            return False
        current_id = user.get("parent_id")

    logger.warning("Parent chain for %s exceeds %d levels; treating as unlocked", user_id, MAX_PARENT_DEPTH)
    return False


async def viewer_bet_lock(viewer: dict | None, event: dict) -> bool:
    """Bet lock as seen by ``viewer`` on ``event``. Only end users are ever locked."""
    if not viewer or viewer.get("role") != UserRole.USER.value:
        return False
    if event.get("bet_lock"):
        return True
    return await effective_bet_lock(viewer["_id"])
