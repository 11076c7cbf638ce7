import io
import json
import urllib.error
from collections import namedtuple

import pytest

from acs_client import (
    TOKEN_SCOPE,
    DeliveryError,
    EmailClient,
    azure_token_provider,
    build_email_payload,
    static_token,
)
from mail_parser import MailMessage

MAIL = MailMessage(
    from_addr="noreply@example.com",
    to_addr="user@example.com",
    subject="Weekly report",
    plain_text="plain",
    html_text="<p>html</p>",
)


class FakeResponse:
    def __init__(self, status: int, body: bytes = b"") -> None:
        self.status = status
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


def _http_error(code: int, body: bytes) -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://acs.example.com", code, "error", {}, io.BytesIO(body))


@pytest.fixture
def captured(monkeypatch):
    calls: list = []
    outcome: dict = {"result": FakeResponse(202)}

    def _urlopen(req, timeout=None):
        calls.append((req, timeout))
        result = outcome["result"]
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr("urllib.request.urlopen", _urlopen)
    return calls, outcome


def test_build_email_payload():
    payload = build_email_payload(MAIL)

    assert payload["senderAddress"] == "noreply@example.com"
    assert payload["recipients"] == {
        "to": [{"address": "user@example.com", "displayName": "user@example.com"}],
        "cc": [],
        "bcc": [],
    }
    assert payload["content"] == {"subject": "Weekly report", "plainText": "plain", "html": "<p>html</p>"}
    assert payload["replyTo"] == []


def test_build_email_payload_with_fixed_sender():
    assert build_email_payload(MAIL, sender="bridge@example.com")["senderAddress"] == "bridge@example.com"


def test_dispatch_posts_json(captured):
    calls, _ = captured
    client = EmailClient("https://acs.example.com/", static_token("secret"), timeout_s=7)

    client.dispatch(MAIL)

    req, timeout = calls[0]
    assert timeout == 7
    assert req.get_method() == "POST"
    assert req.full_url == "https://acs.example.com/emails:send?api-version=2023-03-31"
    assert req.get_header("Authorization") == "Bearer secret"
    assert req.get_header("Content-type") == "application/json"
    assert json.loads(req.data)["content"]["subject"] == "Weekly report"


@pytest.mark.parametrize("status", [400, 401])
def test_error_message_is_surfaced(captured, status):
    _, outcome = captured
    outcome["result"] = _http_error(status, json.dumps({"error": {"code": "Bad", "message": "sender not verified"}}).encode())
    client = EmailClient("https://acs.example.com", static_token("t"))

    with pytest.raises(DeliveryError, match=f"status code: {status}, error message: sender not verified"):
        client.dispatch(MAIL)


def test_undecodable_error_body(captured):
    _, outcome = captured
    outcome["result"] = _http_error(400, b"<html>nope</html>")
    client = EmailClient("https://acs.example.com", static_token("t"))

    with pytest.raises(DeliveryError, match="failed to decode error response"):
        client.dispatch(MAIL)


@pytest.mark.parametrize("result", [FakeResponse(200), _http_error(500, b"")])
def test_unexpected_status(captured, result):
    _, outcome = captured
    outcome["result"] = result
    client = EmailClient("https://acs.example.com", static_token("t"))

    with pytest.raises(DeliveryError, match=r"^status code: (200|500)$"):
        client.dispatch(MAIL)


def test_transport_failure(captured):
    _, outcome = captured
    outcome["result"] = urllib.error.URLError("connection refused")
    client = EmailClient("https://acs.example.com", static_token("t"))

    with pytest.raises(DeliveryError, match="failed to send email"):
        client.dispatch(MAIL)


def test_token_failure(captured):
    calls, _ = captured

    def _no_token() -> str:
        raise RuntimeError("expired")

    client = EmailClient("https://acs.example.com", _no_token)

    with pytest.raises(DeliveryError, match="failed to get token: expired"):
        client.dispatch(MAIL)
    assert calls == []


AccessToken = namedtuple("AccessToken", ["token", "expires_on"])


class FakeCredential:
    def __init__(self, *tokens: str, error: Exception = None) -> None:
        self.scopes: list[str] = []
        self._tokens = list(tokens)
        self._error = error

    def get_token(self, *scopes: str) -> AccessToken:
        self.scopes.extend(scopes)
        if self._error is not None:
            raise self._error
        return AccessToken(self._tokens.pop(0), 0)


def test_azure_token_is_fetched_on_every_send(captured):
    calls, _ = captured
    credential = FakeCredential("startup", "first", "renewed")
    client = EmailClient("https://acs.example.com", azure_token_provider(credential))

    client.dispatch(MAIL)
    client.dispatch(MAIL)

    assert [req.get_header("Authorization") for req, _ in calls] == ["Bearer first", "Bearer renewed"]
    assert credential.scopes == [TOKEN_SCOPE] * 3
    assert TOKEN_SCOPE == "https://communication.azure.com/.default"


def test_azure_credential_is_checked_up_front():
    credential = FakeCredential(error=RuntimeError("no credential available"))

    with pytest.raises(DeliveryError, match="failed to get token from Azure: no credential available"):
        azure_token_provider(credential)
    assert credential.scopes == [TOKEN_SCOPE]
