"""
Pre-insert checks for tournament registrations and verification requests.

Uniqueness is checked by reading before writing. The read and the insert run
under per-key locks so two requests for the same key in this process cannot
both pass the check; on MongoDB the unique indexes cover other processes.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Optional

from database import (
    PENDING_VERIFICATION_INDEX,
    TOURNAMENT_TEAM_INDEX,
    TOURNAMENT_USER_INDEX,
    Record,
    Store,
)
from errors import Conflict, DuplicateKey, ValidationError
from registry import TOURNAMENT_REGISTRATIONS, VERIFICATION_REQUESTS
from schemas import RegistrationCreate, TournamentRegistration, VerificationCreate, VerificationRequest

logger = logging.getLogger(__name__)

MISSING_FIELDS = "Missing required fields"
TEAM_NAME_TAKEN = "Team name already taken for this tournament"
ALREADY_REGISTERED = "You have already registered for this tournament"
PENDING_VERIFICATION = "You already have a pending verification request"

CONFLICT_MESSAGES = {
    TOURNAMENT_TEAM_INDEX: TEAM_NAME_TAKEN,
    TOURNAMENT_USER_INDEX: ALREADY_REGISTERED,
    PENDING_VERIFICATION_INDEX: PENDING_VERIFICATION,
}


class KeyedLocks:
    """asyncio locks created on demand per key and dropped once unused."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self):
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, *keys: Hashable):
        # Fixed acquisition order so overlapping key sets cannot deadlock
        ordered = sorted(set(keys), key=repr)
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
        acquired = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    self._locks.pop(key, None)


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# ----------------------
# Tournament registrations
# ----------------------
def validate_registration(payload: RegistrationCreate) -> Record:
    members = [m for m in (payload.teamMembers or []) if not _blank(m)]
    required = (payload.tournamentId, payload.teamName, payload.captainDiscord)
    if any(_blank(v) for v in required) or not members:
        raise ValidationError(MISSING_FIELDS)
    fields = payload.model_dump(exclude={"teamMembers"})
    return TournamentRegistration(**fields, teamMembers=members).model_dump()


def registration_keys(record: Record):
    keys = [("team", record["tournamentId"], record["teamName"])]
    if record.get("userId"):
        keys.append(("user", record["tournamentId"], record["userId"]))
    return keys


async def check_registration_eligible(store: Store, tournament_id: str, team_name: str,
                                      user_id: Optional[str]) -> None:
    taken = await store.find(TOURNAMENT_REGISTRATIONS, {"tournamentId": tournament_id, "teamName": team_name})
    if taken:
        raise Conflict(TEAM_NAME_TAKEN)
    if user_id:
        mine = await store.find(TOURNAMENT_REGISTRATIONS, {"tournamentId": tournament_id, "userId": user_id})
        if mine:
            raise Conflict(ALREADY_REGISTERED)


async def register_team(store: Store, locks: KeyedLocks, payload: RegistrationCreate) -> Record:
    """Validate, check and insert a registration. Returns the stored record with its id."""
    record = validate_registration(payload)
    async with locks.hold(*registration_keys(record)):
        try:
            await check_registration_eligible(store, record["tournamentId"], record["teamName"], record["userId"])
            record["id"] = await store.insert_one(TOURNAMENT_REGISTRATIONS, record)
        except DuplicateKey as e:
            raise Conflict(CONFLICT_MESSAGES.get(e.index, e.message)) from e
        except Conflict as e:
            logger.info(f"Registration rejected for {record['teamName']!r} in {record['tournamentId']}: {e.message}")
            raise
    logger.info(f"Registered team {record['teamName']!r} for tournament {record['tournamentId']}")
    return record


# ----------------------
# Verification requests
# ----------------------
def validate_verification(payload: VerificationCreate) -> Record:
    if _blank(payload.discord_username) or _blank(payload.discord_id):
        raise ValidationError(MISSING_FIELDS)
    return VerificationRequest(**payload.model_dump()).model_dump()


async def check_verification_eligible(store: Store, discord_id: str) -> None:
    pending = await store.find(VERIFICATION_REQUESTS, {"discord_id": discord_id, "status": "pending"})
    if pending:
        raise Conflict(PENDING_VERIFICATION)


async def submit_verification(store: Store, locks: KeyedLocks, payload: VerificationCreate) -> Record:
    record = validate_verification(payload)
    async with locks.hold(("verification", record["discord_id"])):
        try:
            await check_verification_eligible(store, record["discord_id"])
            record["id"] = await store.insert_one(VERIFICATION_REQUESTS, record)
        except DuplicateKey as e:
            raise Conflict(CONFLICT_MESSAGES.get(e.index, e.message)) from e
    logger.info(f"Verification requested by {record['discord_username']} ({record['discord_id']})")
    return record
