"""Participant notifications.

Fire-and-forget: every state transition may emit notices, but a notice that
cannot be stored or texted is logged and dropped. Delivery never blocks or
fails the transition that produced it.

Each notice is written to the notification_log inbox (clients poll it) and,
when the participant has a phone number on file, texted through Twilio.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from arena.config import Settings, get_settings
from arena.models.notification_log import NotificationLog
from arena.models.participant import Participant

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600
US_COUNTRY_CODE = "1"

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")


def format_e164(phone: str, default_country: str = US_COUNTRY_CODE) -> str:
    """Normalize a participant's phone number to E.164.

    National numbers ("5551234567", "(555) 123-4567", "1-555-123-4567") get
    ``default_country`` in front; numbers typed with a leading "+" are kept as
    international. Raises ValueError for anything else.
    """
    raw = (phone or "").strip()
    if not raw:
        raise ValueError("Phone number is empty")

    digits = "".join(ch for ch in raw if ch.isdigit())
    national = len(digits) - len(default_country)

    if len(digits) == 10:
        return f"+{default_country}{digits}"
    if national == 10 and digits.startswith(default_country):
        return f"+{digits}"
    if raw.startswith("+") and len(digits) >= 10:
        return f"+{digits}"
    raise ValueError(f"Cannot parse phone number '{phone}': expected a 10-digit US number or +E.164")


def validate_e164(phone: str) -> bool:
    return bool(_E164.match(phone))


def _sms_result(status: str, sid: Optional[str] = None, error: Optional[str] = None) -> dict:
    return {"sid": sid, "status": status, "error": error}


class TwilioService:
    """Sends SMS through the Twilio REST API.

    Without a full set of credentials the service runs dry: messages are
    logged and reported back as ``dry_run`` instead of being sent.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.from_number = settings.twilio_from_number
        self.client: Optional[Client] = None

        if settings.twilio_account_sid and settings.twilio_auth_token and self.from_number:
            # Sends happen on the request thread after commit; a slow API must not hold it
            http_client = TwilioHttpClient(timeout=settings.twilio_timeout_seconds)
            self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token, http_client=http_client)
            logger.info("Twilio client ready, sending from %s", self.from_number)
        else:
            logger.warning(
                "Twilio credentials not configured; match notices are logged instead of texted. "
                "Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER."
            )

    @property
    def dry_run(self) -> bool:
        return self.client is None

    @property
    def is_configured(self) -> bool:
        return not self.dry_run

    def send_sms(self, to: str, body: str) -> dict:
        """Text one participant. Returns a dict with sid, status and error."""
        if not validate_e164(to):
            return _sms_result("failed", error=f"Invalid phone number format: {to}")

        if len(body) > SMS_MAX_LENGTH:
            body = body[: SMS_MAX_LENGTH - 3] + "..."

        if self.dry_run:
            logger.info("[DRY RUN] SMS to %s: %s", to, body[:80])
            return _sms_result("dry_run", sid=f"DRY_RUN_{datetime.utcnow().isoformat()}")

        try:
            message = self.client.messages.create(body=body, from_=self.from_number, to=to)
        except Exception as e:
            logger.error("Failed to send SMS to %s: %s", to, e)
            return _sms_result("failed", error=str(e))
        logger.info("SMS sent to %s: SID=%s, status=%s", to, message.sid, message.status)
        return _sms_result(message.status, sid=message.sid)


_twilio_service: Optional[TwilioService] = None


def get_twilio_service() -> TwilioService:
    """Shared TwilioService, built on first use."""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService()
    return _twilio_service


@dataclass(frozen=True)
class Notice:
    user_id: int
    title: str
    body: str
    message_type: str
    match_id: Optional[int] = None


def notify(bind: Engine, notice: Notice) -> bool:
    """
    Store one notice in the inbox and text it if the participant has a phone.

    Returns False if anything went wrong; never raises.
    """
    try:
        with Session(bind) as session:
            session.add(NotificationLog(
                user_id=notice.user_id,
                match_id=notice.match_id,
                message_type=notice.message_type,
                title=notice.title,
                body=notice.body,
            ))
            participant = session.get(Participant, notice.user_id)
            phone = participant.phone if participant else None
            if phone and phone.strip():
                _text(session, notice, phone)
            session.commit()
        return True
    except Exception:
        logger.exception("Failed to notify user %s (%s)", notice.user_id, notice.message_type)
        return False


def _text(session: Session, notice: Notice, phone: str) -> None:
    try:
        to = format_e164(phone.strip())
    except ValueError:
        logger.warning("Skipping invalid phone number for user %s: '%s'", notice.user_id, phone)
        return
    result = get_twilio_service().send_sms(to, f"{notice.title}: {notice.body}")
    session.add(NotificationLog(
        user_id=notice.user_id,
        match_id=notice.match_id,
        message_type=notice.message_type,
        title=notice.title,
        body=notice.body,
        channel="sms",
        status=result.get("status", "failed"),
        error_message=result.get("error"),
    ))


def dispatch_notices(session: Session, notices: Iterable[Notice]) -> int:
    """Deliver notices collected during a committed transition. Returns how many were stored."""
    bind = session.get_bind()
    return sum(1 for notice in notices if notify(bind, notice))
