import json
import urllib.error
import urllib.request
from typing import Any, Callable, Optional

from azure.identity import DefaultAzureCredential

from mail_parser import MailMessage

API_VERSION = "2023-03-31"
TOKEN_SCOPE = "https://communication.azure.com/.default"

TokenProvider = Callable[[], str]


class DeliveryError(Exception):
    pass


def static_token(token: str) -> TokenProvider:
    return lambda: token


def azure_token_provider(credential: Optional[Any] = None) -> TokenProvider:
    """Token provider backed by an azure-identity credential.

    Every call asks the credential for a token, which it caches and renews
    before expiry. The provider is tried once here so a misconfigured
    credential fails at startup rather than on the first delivery.
    """
    if credential is None:
        credential = DefaultAzureCredential()

    def _token() -> str:
        return credential.get_token(TOKEN_SCOPE).token

    try:
        _token()
    except Exception as e:
        raise DeliveryError(f"failed to get token from Azure: {e}") from e
    return _token


def build_email_payload(mail: MailMessage, sender: Optional[str] = None) -> dict[str, Any]:
    return {
        "senderAddress": sender or mail.from_addr,
        "recipients": {
            "to": [{"address": mail.to_addr, "displayName": mail.to_addr}],
            "cc": [],
            "bcc": [],
        },
        "content": {
            "subject": mail.subject,
            "plainText": mail.plain_text,
            "html": mail.html_text,
        },
        "replyTo": [],
        "disableUserEngagementTracking": False,
        "importance": "normal",
    }


class EmailClient:
    """Client for the email send REST endpoint.

    A send is accepted only on HTTP 202. For 400/401 the service returns
    {"error": {"code": ..., "message": ...}} and the message is surfaced in
    the raised DeliveryError.
    """

    def __init__(
        self,
        endpoint: str,
        token_provider: TokenProvider,
        timeout_s: int = 10,
        sender: Optional[str] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.token_provider = token_provider
        self.timeout_s = timeout_s
        self.sender = sender

    @property
    def send_url(self) -> str:
        return f"{self.endpoint}/emails:send?api-version={API_VERSION}"

    def send_email(self, payload: dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")

        try:
            token = self.token_provider()
        except Exception as e:
            raise DeliveryError(f"failed to get token: {e}") from e

        req = urllib.request.Request(
            self.send_url,
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {token}",
            },
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(resp.status)
                data = resp.read()
        except urllib.error.HTTPError as e:
            status = int(e.code)
            data = e.read()
        except (urllib.error.URLError, OSError) as e:
            raise DeliveryError(f"failed to send email: {e}") from e

        if status in (400, 401):
            try:
                message = json.loads(data)["error"]["message"]
            except (ValueError, KeyError, TypeError) as e:
                raise DeliveryError(f"failed to decode error response: {e}") from e
            raise DeliveryError(f"status code: {status}, error message: {message}")

        if status != 202:
            raise DeliveryError(f"status code: {status}")

    def dispatch(self, mail: MailMessage) -> None:
        self.send_email(build_email_payload(mail, sender=self.sender))
