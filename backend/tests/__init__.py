# Tests package
# Import all models so they're registered with SQLModel metadata before create_all
from arena.models.dispute import Dispute  # noqa: F401
from arena.models.match import Match  # noqa: F401
from arena.models.notification_log import NotificationLog  # noqa: F401
from arena.models.participant import Participant  # noqa: F401
from arena.models.tournament import Tournament  # noqa: F401
