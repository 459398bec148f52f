import ssl
import threading
from datetime import datetime
from typing import Optional

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from inbox.base_source import InboxSource
from inbox.message_parser import parse_message
from models.data_models import Message, PermissionState
from models.errors import PermissionDenied, TransientPollError
from utils.logger import get_logger

logger = get_logger(__name__)


class IMAPInboxSource(InboxSource):
    """Reads an SMS-to-email mailbox over IMAP.

    The connection is kept open between polls (the poller runs several
    times a second during the fast phase) and re-established on the next
    call after any error. The folder is selected read-only so polling
    never flips the \\Seen flag.
    """

    def __init__(self, host: str, port: int, username: str, password: str, mailbox: str = "INBOX"):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.mailbox = mailbox
        self._client: IMAPClient | None = None
        self._lock = threading.Lock()

    def get_count(self) -> int:
        with self._lock:
            client = self._ensure_client()
            try:
                info = client.select_folder(self.mailbox, readonly=True)
            except (IMAPClientError, OSError) as e:
                self._drop_client()
                raise TransientPollError(f"Could not select {self.mailbox}: {e}") from e
            return int(info.get(b"EXISTS", 0))

    def get_messages(self, max_count: int, min_date: Optional[datetime] = None) -> list[Message]:
        if max_count <= 0:
            return []
        with self._lock:
            client = self._ensure_client()
            try:
                client.select_folder(self.mailbox, readonly=True)
                criteria = ["SINCE", min_date.date()] if min_date else ["ALL"]
                uids = sorted(client.search(criteria))[-max_count:]
                if not uids:
                    return []
                fetched = client.fetch(uids, ["RFC822", "INTERNALDATE"])
            except (IMAPClientError, OSError) as e:
                self._drop_client()
                raise TransientPollError(f"Could not read {self.mailbox}: {e}") from e

        messages = []
        for uid, data in fetched.items():
            raw = data.get(b"RFC822")
            if not raw:
                continue
            try:
                message = parse_message(uid, raw, data.get(b"INTERNALDATE"))
            except Exception as e:
                logger.error(f"Failed to parse message UID {uid}: {e}")
                continue
            # SINCE only has day granularity
            if min_date and message.received_at < min_date:
                continue
            messages.append(message)
        messages.sort(key=lambda m: m.id, reverse=True)
        return messages

    def check_permission(self) -> PermissionState:
        with self._lock:
            try:
                self._ensure_client()
            except PermissionDenied:
                return PermissionState.DENIED
        return PermissionState.GRANTED

    def request_permission(self) -> PermissionState:
        # A mailbox has no interactive grant; the best we can do is a fresh login
        with self._lock:
            self._drop_client()
        return self.check_permission()

    def close(self) -> None:
        with self._lock:
            self._drop_client()
        logger.info(f"IMAP source closed for {self.username}")

    def _ensure_client(self) -> IMAPClient:
        if self._client is not None:
            return self._client
        try:
            self._client = self._connect()
        except LoginError as e:
            raise PermissionDenied(f"IMAP login refused for {self.username}: {e}") from e
        except (IMAPClientError, OSError) as e:
            raise TransientPollError(f"Could not connect to {self.host}: {e}") from e
        return self._client

    @retry(
        retry=retry_if_not_exception_type(LoginError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    def _connect(self) -> IMAPClient:
        context = ssl.create_default_context()
        client = IMAPClient(self.host, port=self.port, ssl=True, ssl_context=context, timeout=15)
        client.login(self.username, self.password)
        logger.info(f"Connected to {self.host} as {self.username}")
        return client

    def _drop_client(self) -> None:
        if self._client is None:
            return
        try:
            self._client.logout()
        except (IMAPClientError, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")
        self._client = None
