"""Shared fixtures: a live bridge server on an ephemeral port and an SMTP client helper."""

import smtplib
import sys
import threading
from pathlib import Path
from typing import Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from mail_parser import MailMessage  # noqa: E402
from smtp_bridge import SMTPBridgeServer, ServerClosedError  # noqa: E402


class Recorder:
    """Dispatch callback that stores every message it receives."""

    def __init__(self) -> None:
        self.messages: list[MailMessage] = []
        self.error: Optional[Exception] = None
        self._lock = threading.Lock()

    def __call__(self, mail: MailMessage) -> None:
        if self.error is not None:
            raise self.error
        with self._lock:
            self.messages.append(mail)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def events_path(tmp_path: Path) -> Path:
    return tmp_path / "events.jsonl"


@pytest.fixture
def bridge(recorder, events_path):
    server = SMTPBridgeServer(("127.0.0.1", 0), recorder, log_path=events_path, poll_interval=0.05)
    errors: list[Exception] = []

    def _serve() -> None:
        try:
            server.start()
        except Exception as e:
            errors.append(e)

    th = threading.Thread(target=_serve, daemon=True)
    th.start()
    assert server.ready.wait(5)

    yield server

    try:
        server.shutdown()
    except ServerClosedError:
        pass
    th.join(5)
    assert not th.is_alive()
    assert errors == []


def connect(server: SMTPBridgeServer) -> smtplib.SMTP:
    host, port = server.server_address[:2]
    return smtplib.SMTP(host, port, local_hostname="localhost", timeout=5)


def send_mail(
    server: SMTPBridgeServer,
    message: str,
    mail_from: str = "from@example.com",
    rcpt_to: str = "to@example.com",
) -> tuple[int, bytes]:
    # smtplib's mail()/rcpt()/data() send lower-case verbs, the bridge matches
    # upper-case prefixes only.
    client = connect(server)
    try:
        assert client.docmd("EHLO localhost")[0] == 250
        assert client.docmd(f"MAIL FROM:<{mail_from}>") == (250, b"OK")
        assert client.docmd(f"RCPT TO:<{rcpt_to}>") == (250, b"OK")
        reply = data(client, message)
        if reply[0] == 250:
            assert client.docmd("QUIT") == (221, b"Bye")
        return reply
    finally:
        client.close()


def data(client: smtplib.SMTP, message: str) -> tuple[int, bytes]:
    code, _ = client.docmd("DATA")
    assert code == 354
    payload = smtplib.quotedata(message)
    if not payload.endswith("\r\n"):
        payload += "\r\n"
    client.send(payload + ".\r\n")
    return client.getreply()
