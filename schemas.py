"""
Database Schemas for the VMNC Esports API

Players, teams, tournaments, giveaways and matches are stored as free-form
documents. The registration and verification collections have a fixed shape,
described by the models below, along with the request bodies the API accepts.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import ValidationError

ReviewStatus = Literal["pending", "approved", "rejected"]


# ----------------------
# Timestamps
# ----------------------
def isoformat_utc(dt: datetime) -> str:
    """Render as `YYYY-MM-DDTHH:MM:SS.sssZ`; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return isoformat_utc(datetime.now(timezone.utc))


def normalize_iso_date(value: Any) -> str:
    """Coerce a match date to the canonical ISO-8601 UTC form.

    Accepts datetimes, ISO strings (with or without offset, `Z` included) and
    epoch milliseconds, which is what the admin dashboard sends.
    """
    if isinstance(value, datetime):
        return isoformat_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return isoformat_utc(datetime.fromtimestamp(value / 1000, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            pass
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return isoformat_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
    raise ValidationError(f"Invalid date: {value!r}")


# ----------------------
# Stored records
# ----------------------
class TournamentRegistration(BaseModel):
    tournamentId: str
    tournamentTitle: Optional[str] = None
    userId: Optional[str] = None
    userEmail: Optional[str] = None
    discordUsername: Optional[str] = None
    teamName: str
    teamMembers: List[str]
    captainDiscord: str
    contactEmail: Optional[str] = None
    region: Optional[str] = None
    experience: Optional[str] = None
    status: ReviewStatus = "pending"
    registeredAt: str = Field(default_factory=utc_now_iso)
    updatedAt: str = Field(default_factory=utc_now_iso)


class VerificationRequest(BaseModel):
    discord_username: str
    discord_id: str
    email: Optional[str] = None
    status: ReviewStatus = "pending"
    requested_at: str = Field(default_factory=utc_now_iso)
    reviewed: bool = False
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None


# ----------------------
# Request bodies
# ----------------------
def _id_to_str(v):
    # Discord snowflakes and user ids sometimes arrive as JSON numbers
    if isinstance(v, int) and not isinstance(v, bool):
        return str(v)
    return v


class RegistrationCreate(BaseModel):
    """Everything optional here; presence is checked by the validator so the
    client gets one `Missing required fields` message instead of a 422 dump."""
    model_config = ConfigDict(extra="ignore")

    tournamentId: Optional[str] = None
    tournamentTitle: Optional[str] = None
    userId: Optional[str] = None
    userEmail: Optional[str] = None
    discordUsername: Optional[str] = None
    teamName: Optional[str] = None
    teamMembers: Optional[List[str]] = None
    captainDiscord: Optional[str] = None
    contactEmail: Optional[str] = None
    region: Optional[str] = None
    experience: Optional[str] = None

    @field_validator("tournamentId", "userId", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _id_to_str(v)


class StatusUpdate(BaseModel):
    status: ReviewStatus


class VerificationCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    discord_username: Optional[str] = None
    discord_id: Optional[str] = None
    email: Optional[str] = None

    @field_validator("discord_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _id_to_str(v)


class VerificationReview(BaseModel):
    status: Literal["approved", "rejected"]
    reviewed_by: Optional[str] = None


class LoginRequest(BaseModel):
    password: str = ""


class CollectionReplace(BaseModel):
    type: str
    data: List[Dict[str, Any]] = Field(default_factory=list)

