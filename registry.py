"""
The fixed set of collections this API serves.

Anything that writes through an admin route must name one of these.
"""
from errors import InvalidCollection

PLAYERS = "players"
TEAMS = "teams"
TOURNAMENTS = "tournaments"
GIVEAWAYS = "giveaways"
LIVE_MATCHES = "liveMatches"
UPCOMING_MATCHES = "upcomingMatches"
TOURNAMENT_REGISTRATIONS = "tournamentRegistrations"
VERIFICATION_REQUESTS = "verificationRequests"

COLLECTIONS = (
    PLAYERS,
    TEAMS,
    TOURNAMENTS,
    GIVEAWAYS,
    LIVE_MATCHES,
    UPCOMING_MATCHES,
    TOURNAMENT_REGISTRATIONS,
    VERIFICATION_REQUESTS,
)


def is_valid_collection(name: str) -> bool:
    return name in COLLECTIONS


def require_collection(name: str) -> str:
    if not is_valid_collection(name):
        raise InvalidCollection(name)
    return name
