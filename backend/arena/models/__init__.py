from arena.models.dispute import Dispute
from arena.models.match import Match
from arena.models.notification_log import NotificationLog
from arena.models.participant import Participant
from arena.models.tournament import Tournament

__all__ = [
    "Tournament",
    "Participant",
    "Match",
    "Dispute",
    "NotificationLog",
]
