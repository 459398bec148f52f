import email
import email.policy
import email.utils
from datetime import datetime, timezone
from email.message import EmailMessage as StdEmailMessage
from typing import Optional

from models.data_models import Message
from utils.logger import get_logger

logger = get_logger(__name__)


def parse_message(uid: int, raw_bytes: bytes, internal_date: Optional[datetime] = None) -> Message:
    """Turn one fetched RFC822 message into a Message.

    Gateways that bridge SMS to email put the phone number or short code in
    From and the text in a plain-text body, so that is what we extract:
    - id: the IMAP UID (monotonic within a mailbox)
    - sender: the display name, else the local part of the From address
    - body: the text/plain part, falling back to HTML or the Subject
    - received_at: INTERNALDATE, else the Date header, else now
    """
    msg: StdEmailMessage = email.message_from_bytes(
        raw_bytes, policy=email.policy.default
    )

    sender = _parse_sender(msg.get("From", ""))
    body = _extract_body(msg) or str(msg.get("Subject", "")).strip()
    received_at = _as_utc(internal_date) if internal_date else _parse_date(msg.get("Date", ""))

    logger.debug(f"Parsed message uid={uid} from='{sender}' length={len(body)}")

    return Message(id=uid, sender=sender, body=body, received_at=received_at)


def _parse_sender(from_header: str) -> str:
    name, address = email.utils.parseaddr(str(from_header))
    if name.strip():
        return name.strip()
    if address:
        # "+15551234567@sms.gateway" -> "+15551234567"
        return address.split("@", 1)[0] if "@" in address else address
    return ""


def _extract_body(msg: StdEmailMessage) -> str:
    body_text = ""
    body_html = ""
    if msg.is_multipart():
        for part in msg.walk():
            content_type = part.get_content_type()
            disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in disposition:
                continue
            payload = part.get_payload(decode=True)
            if payload is None:
                continue
            if content_type == "text/plain" and not body_text:
                body_text = payload.decode("utf-8", errors="replace")
            elif content_type == "text/html" and not body_html:
                body_html = payload.decode("utf-8", errors="replace")
    else:
        payload = msg.get_payload(decode=True) or b""
        if msg.get_content_type() == "text/html":
            body_html = payload.decode("utf-8", errors="replace")
        else:
            body_text = payload.decode("utf-8", errors="replace")
    return (body_text or body_html).strip()


def _parse_date(date_str: str) -> datetime:
    """Parse the Date header. Falls back to now if unparseable."""
    if not date_str:
        return datetime.now(timezone.utc)
    try:
        return _as_utc(email.utils.parsedate_to_datetime(str(date_str)))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # naive values (imapclient INTERNALDATE default) are local time
    return value.astimezone(timezone.utc)
