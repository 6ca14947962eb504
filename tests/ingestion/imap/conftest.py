"""Shared test fixtures and a scripted IMAP server for watcher tests."""

from __future__ import annotations

import email
import threading
import time
from email.message import EmailMessage, Message
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest
from keyring.errors import PasswordDeleteError

from inboxwatch.ingestion.imap import connection_manager
from inboxwatch.ingestion.imap.credentials import ImapCredentials


# ============================================================================
# Message builders
# ============================================================================


def build_message(
    subject: str = "Test Email",
    body: str = "This is a test email body.",
    *,
    html: Optional[str] = None,
    attachments: Sequence[Tuple[str, bytes, str]] = (),
    headers: Optional[Dict[str, str]] = None,
    sender: str = "sender@example.com",
    to: str = "recipient@example.com",
) -> bytes:
    """Build an RFC822 message; attachments are ``(filename, content, mime type)``."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = "Mon, 1 Jan 2024 12:00:00 +0000"
    msg["Message-ID"] = f"<{abs(hash((subject, body))) % 10**8}@example.com>"
    for name, value in (headers or {}).items():
        msg[name] = value
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    for filename, content, mime_type in attachments:
        maintype, subtype = mime_type.split("/", 1)
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


def bodystructure_for(raw: bytes) -> Tuple[Any, ...]:
    """Build the BODYSTRUCTURE tuple a server would report for ``raw``."""
    return _structure(email.message_from_bytes(raw))


def _structure(part: Message) -> Tuple[Any, ...]:
    if part.is_multipart():
        children = tuple(_structure(child) for child in part.get_payload())
        return children + (part.get_content_subtype().encode(),)

    params: List[bytes] = []
    for key, value in (part.get_params() or [])[1:]:
        params.extend([key.encode(), str(value).encode()])
    payload = part.get_payload()
    encoding = (part.get("Content-Transfer-Encoding") or "7bit").encode()

    disposition = None
    if part.get_content_disposition():
        filename = part.get_filename()
        disposition = (
            part.get_content_disposition().encode(),
            (b"filename", filename.encode()) if filename else None,
        )

    base = (
        part.get_content_maintype().encode(),
        part.get_content_subtype().encode(),
        tuple(params) or None,
        None,
        None,
        encoding,
        len(payload),
    )
    if part.get_content_maintype() == "text":
        return base + (payload.count("\n"), None, disposition)
    return base + (None, disposition)


def _section(raw: bytes, section: str) -> Optional[bytes]:
    if section == "":
        return raw
    separator = b"\r\n\r\n" if b"\r\n\r\n" in raw else b"\n\n"
    head, _, body = raw.partition(separator)
    if section == "HEADER":
        return head + separator
    if section == "TEXT":
        return body

    part: Message = email.message_from_bytes(raw)
    for index in section.split("."):
        if part.is_multipart():
            children = part.get_payload()
            position = int(index) - 1
            if position >= len(children):
                return None
            part = children[position]
        elif index != "1":
            return None
    payload = part.get_payload()
    return payload.encode("utf-8", errors="surrogateescape")


# ============================================================================
# Scripted IMAP server
# ============================================================================


class FakeMailbox:
    """Server-side state shared by every client connected to it.

    ``idle_script`` entries are consumed by ``idle_check``: a list is returned
    as the untagged responses, an exception instance is raised.
    """

    def __init__(
        self,
        *,
        uidvalidity: int = 1,
        capabilities: Iterable[bytes] = (b"IMAP4REV1", b"IDLE"),
        folders: Iterable[str] = ("INBOX", "Sent", "Drafts"),
    ):
        self.uidvalidity = uidvalidity
        self.capabilities = set(capabilities)
        self.folders = list(folders)
        self.messages: Dict[int, bytes] = {}
        self.structures: Dict[int, Any] = {}
        self.flags: Dict[int, Set[bytes]] = {}
        self.omitted_sections: Dict[int, Set[str]] = {}

        self.login_error: Optional[Exception] = None
        self.connect_errors: List[Exception] = []
        self.search_errors: List[Exception] = []
        self.idle_script: List[Any] = []
        self.noop_script: List[Any] = []

        self.clients: List["FakeImapClient"] = []
        self.search_calls: List[List[Any]] = []
        self.fetch_calls: List[Tuple[List[int], List[Any]]] = []
        self.flag_calls: List[Tuple[List[int], List[bytes]]] = []
        self._lock = threading.Lock()

    # -- test helpers ---------------------------------------------------

    def add_message(
        self, uid: int, raw: bytes, *, structure: Any = "auto", seen: bool = False
    ) -> None:
        with self._lock:
            self.messages[uid] = raw
            self.structures[uid] = bodystructure_for(raw) if structure == "auto" else structure
            self.flags[uid] = {b"\\Seen"} if seen else set()

    def deliver(self, uid: int, raw: bytes, **kwargs: Any) -> None:
        """Add a message and notify IDLE listeners."""
        self.add_message(uid, raw, **kwargs)
        self.idle_script.append([(len(self.messages), b"EXISTS")])

    def seen(self, uid: int) -> bool:
        return b"\\Seen" in self.flags.get(uid, set())

    @property
    def connection_count(self) -> int:
        return len(self.clients)

    def client_factory(self, *args: Any, **kwargs: Any) -> "FakeImapClient":
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        client = FakeImapClient(self, *args, **kwargs)
        self.clients.append(client)
        return client

    # -- protocol -------------------------------------------------------

    def search(self, criteria: List[Any]) -> List[int]:
        with self._lock:
            uids = set(self.messages)
            tokens = list(criteria)
            i = 0
            while i < len(tokens):
                token = tokens[i]
                if token == "UNSEEN":
                    uids = {uid for uid in uids if not self.seen(uid)}
                elif token == "SEEN":
                    uids = {uid for uid in uids if self.seen(uid)}
                elif token == "UID":
                    i += 1
                    uids &= self._uid_range(tokens[i])
                i += 1
            return sorted(uids)

    def _uid_range(self, uid_set: str) -> Set[int]:
        low, _, high = uid_set.partition(":")
        start = int(low)
        if high == "*":
            matching = {uid for uid in self.messages if uid >= start}
            # n:* always includes the highest UID
            if not matching and self.messages:
                matching = {max(self.messages)}
            return matching
        return {uid for uid in self.messages if start <= uid <= int(high or low)}


class FakeImapClient:
    """Stands in for ``imapclient.IMAPClient``."""

    def __init__(
        self,
        mailbox: FakeMailbox,
        host: str,
        port: int = 993,
        *,
        ssl: bool = True,
        ssl_context: Any = None,
        timeout: Any = None,
        use_uid: bool = True,
    ):
        self.mailbox = mailbox
        self.host = host
        self.port = port
        self.ssl = ssl
        self.ssl_context = ssl_context
        self.timeout = timeout
        self.use_uid = use_uid
        self.logged_in = False
        self.logged_out = False
        self.selected: Optional[str] = None
        self.idling = False

    def login(self, username: str, password: str) -> bytes:
        if self.mailbox.login_error is not None:
            raise self.mailbox.login_error
        self.logged_in = True
        self.username = username
        return b"LOGIN completed"

    def logout(self) -> bytes:
        self.logged_out = True
        return b"BYE"

    def shutdown(self) -> None:
        self.logged_out = True

    def has_capability(self, capability: str) -> bool:
        return capability.upper().encode() in self.mailbox.capabilities

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self.selected = folder
        return {
            b"UIDVALIDITY": self.mailbox.uidvalidity,
            b"EXISTS": len(self.mailbox.messages),
            b"RECENT": 0,
        }

    def list_folders(self) -> List[Tuple[Tuple[bytes, ...], bytes, str]]:
        return [((b"\\HasNoChildren",), b"/", name) for name in self.mailbox.folders]

    def search(self, criteria: List[Any]) -> List[int]:
        self.mailbox.search_calls.append(list(criteria))
        if self.mailbox.search_errors:
            raise self.mailbox.search_errors.pop(0)
        return self.mailbox.search(criteria)

    def fetch(self, uids: List[int], items: List[Any]) -> Dict[int, Dict[bytes, Any]]:
        self.mailbox.fetch_calls.append((list(uids), list(items)))
        response: Dict[int, Dict[bytes, Any]] = {}
        for uid in uids:
            raw = self.mailbox.messages.get(uid)
            if raw is None:
                continue
            data: Dict[bytes, Any] = {b"SEQ": uid}
            for item in items:
                name = item.decode() if isinstance(item, bytes) else item
                if name == "BODYSTRUCTURE":
                    structure = self.mailbox.structures.get(uid)
                    if structure is not None:
                        data[b"BODYSTRUCTURE"] = structure
                elif name.startswith("BODY.PEEK["):
                    section = name[len("BODY.PEEK["):-1]
                    if section in self.mailbox.omitted_sections.get(uid, set()):
                        continue
                    payload = _section(raw, section)
                    if payload is not None:
                        data[f"BODY[{section}]".encode()] = payload
            response[uid] = data
        return response

    def add_flags(self, uids: List[int], flags: List[bytes], silent: bool = False) -> Dict:
        self.mailbox.flag_calls.append((list(uids), list(flags)))
        for uid in uids:
            self.mailbox.flags.setdefault(uid, set()).update(flags)
        return {}

    def idle(self) -> None:
        self.idling = True

    def idle_check(self, timeout: Optional[float] = None) -> List[Any]:
        if self.mailbox.idle_script:
            entry = self.mailbox.idle_script.pop(0)
            if isinstance(entry, BaseException):
                raise entry
            return entry
        time.sleep(min(timeout or 0.01, 0.01))
        return []

    def idle_done(self) -> Tuple[bytes, List[Any]]:
        self.idling = False
        return b"IDLE terminated", []

    def noop(self) -> Tuple[bytes, List[Any]]:
        if self.mailbox.noop_script:
            entry = self.mailbox.noop_script.pop(0)
            if isinstance(entry, BaseException):
                raise entry
            return b"NOOP completed", entry
        return b"NOOP completed", []


class InMemoryKeyring:
    """Minimal stand-in for the ``keyring`` module API."""

    def __init__(self) -> None:
        self.entries: Dict[Tuple[str, str], str] = {}

    def set_password(self, service: str, name: str, value: str) -> None:
        self.entries[(service, name)] = value

    def get_password(self, service: str, name: str) -> Optional[str]:
        return self.entries.get((service, name))

    def delete_password(self, service: str, name: str) -> None:
        if (service, name) not in self.entries:
            raise PasswordDeleteError("not found")
        del self.entries[(service, name)]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def fake_imap(monkeypatch: pytest.MonkeyPatch, mailbox: FakeMailbox) -> FakeMailbox:
    """Route ``IMAPClient`` construction to the scripted mailbox."""
    monkeypatch.setattr(connection_manager, "IMAPClient", mailbox.client_factory)
    monkeypatch.setattr(connection_manager, "IDLE_CHECK_SLICE", 0.01)
    return mailbox


@pytest.fixture
def credentials() -> ImapCredentials:
    return ImapCredentials(
        host="imap.example.com",
        port=993,
        username="user@example.com",
        secret="app-password",
    )


@pytest.fixture
def message_factory() -> Callable[..., bytes]:
    return build_message


@pytest.fixture
def structure_factory() -> Callable[[bytes], Tuple[Any, ...]]:
    return bodystructure_for
