import email
import io
from dataclasses import dataclass, field
from email import policy
from email.errors import InvalidBase64CharactersDefect, InvalidBase64LengthDefect
from email.message import EmailMessage
from typing import Iterator, Optional


class MailParseError(ValueError):
    pass


@dataclass(frozen=True)
class MailMessage:
    from_addr: str = ""
    to_addr: str = ""
    subject: str = ""
    plain_text: str = ""
    html_text: str = ""


_BAD_BASE64 = (InvalidBase64CharactersDefect, InvalidBase64LengthDefect)


@dataclass(frozen=True)
class MailPart:
    message: EmailMessage = field(repr=False, compare=False)
    content: str

    def header(self, key: str) -> str:
        return str(self.message.get(key, ""))

    def text(self) -> str:
        """Content with its transfer encoding undone and decoded to str.

        Bytes that do not fit the declared charset are replaced, and an
        unknown charset falls back to utf-8. Malformed base64 raises
        MailParseError.
        """
        encoding = self.header("Content-Transfer-Encoding").strip().lower()
        if encoding not in ("quoted-printable", "base64"):
            return self.content

        raw = self.message.get_payload(decode=True)
        if any(isinstance(d, _BAD_BASE64) for d in self.message.defects):
            raise MailParseError(f"error reading part: {encoding}: invalid base64 data")
        charset = self.message.get_content_charset() or "utf-8"
        try:
            return raw.decode(charset, errors="replace")
        except LookupError:
            return raw.decode("utf-8", errors="replace")


# RFC 2045 tspecials
_TSPECIALS = set('()<>@,;:\\"/[]?=')


def _is_token_char(ch: str) -> bool:
    return 0x20 < ord(ch) < 0x7F and ch not in _TSPECIALS


def _consume_token(s: str) -> tuple[str, str]:
    i = 0
    while i < len(s) and _is_token_char(s[i]):
        i += 1
    return s[:i], s[i:]


def _consume_value(s: str) -> tuple[Optional[str], str]:
    if not s.startswith('"'):
        value, rest = _consume_token(s)
        return (value or None), rest

    out: list[str] = []
    i = 1
    while i < len(s):
        ch = s[i]
        if ch == '"':
            return "".join(out), s[i + 1:]
        if ch == "\\" and i + 1 < len(s):
            i += 1
            ch = s[i]
        elif ch in "\r\n":
            break
        out.append(ch)
        i += 1
    return None, s


def parse_media_type(value: str) -> tuple[str, dict[str, str]]:
    """Split a Content-Type value into a lower-cased media type and its parameters.

    Raises MailParseError for a missing or malformed type/subtype and for
    malformed or duplicate parameters.
    """
    base, _, rest = value.partition(";")
    media_type = base.strip().lower()

    kind, tail = _consume_token(media_type)
    if not kind:
        raise MailParseError("no media type")
    if tail:
        if not tail.startswith("/"):
            raise MailParseError("expected slash after first token")
        subtype, tail = _consume_token(tail[1:])
        if not subtype:
            raise MailParseError("expected token after slash")
        if tail:
            raise MailParseError("unexpected content after media subtype")

    params: dict[str, str] = {}
    rest = rest.strip()
    while rest:
        key, tail = _consume_token(rest)
        key = key.lower()
        tail = tail.lstrip()
        if not key or not tail.startswith("="):
            if rest.strip(" \t;") == "":
                break
            raise MailParseError(f"invalid media parameter: {rest!r}")
        val, tail = _consume_value(tail[1:].lstrip())
        if val is None:
            raise MailParseError(f"invalid value for parameter {key!r}")
        if key in params:
            raise MailParseError(f"duplicate parameter name: {key}")
        params[key] = val

        tail = tail.lstrip()
        if tail and not tail.startswith(";"):
            raise MailParseError(f"invalid media parameter: {tail!r}")
        rest = tail[1:].strip()

    return media_type, params


def get_header(headers: dict[str, str], key: str) -> str:
    # First key (in insertion order) that matches case-insensitively wins.
    wanted = key.casefold()
    for k, v in headers.items():
        if k.casefold() == wanted:
            return v
    return ""


def parse_header_lines(lines: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition(":")
        if not sep:
            raise MailParseError(f"invalid header format: {line}")
        headers[key.strip()] = value.strip()
    return headers


def parse_headers_and_body(data: str) -> tuple[dict[str, str], str]:
    head, sep, body = data.partition("\r\n\r\n")
    if not sep:
        raise MailParseError("invalid mail format: missing headers or body")
    return parse_header_lines(head.split("\r\n")), body


def _strip_line_break(line: str) -> str:
    if line.endswith("\r\n"):
        return line[:-2]
    if line.endswith("\n"):
        return line[:-1]
    return line


class MultipartReader:
    """One-shot cursor over the parts of a multipart body.

    next_part() returns parts in order and None once the closing delimiter was
    read. The reader cannot be rewound; iterating it a second time yields
    nothing. Each part's header block and content are handed to the email
    package, so folding and transfer decoding follow its rules.
    """

    def __init__(self, body: str, boundary: str):
        self._src = io.StringIO(body)
        self._delimiter = "--" + boundary
        self._close_delimiter = self._delimiter + "--"
        self._started = False
        self._done = False

    def __iter__(self) -> Iterator[MailPart]:
        return self

    def __next__(self) -> MailPart:
        part = self.next_part()
        if part is None:
            raise StopIteration
        return part

    def _delimiter_kind(self, line: str) -> Optional[str]:
        text = line.rstrip(" \t\r\n")
        if text == self._delimiter:
            return "part"
        if text == self._close_delimiter:
            return "close"
        return None

    def _readline(self, what: str) -> str:
        line = self._src.readline()
        if not line:
            self._done = True
            raise MailParseError(f"error reading multipart message: unexpected end of body in {what}")
        return line

    def _read_part_headers(self) -> str:
        lines: list[str] = []
        while True:
            line = self._readline("part headers")
            text = _strip_line_break(line)
            if text == "":
                break
            folded = text[:1] in (" ", "\t") and lines
            if not folded and ":" not in text:
                raise MailParseError(f"invalid header format: {text}")
            lines.append(line)
        return "".join(lines)

    def next_part(self) -> Optional[MailPart]:
        if self._done:
            return None

        if not self._started:
            # Skip the preamble.
            while True:
                kind = self._delimiter_kind(self._readline("preamble"))
                if kind == "close":
                    self._done = True
                    return None
                if kind == "part":
                    break
            self._started = True

        head = self._read_part_headers()

        chunks: list[str] = []
        while True:
            line = self._readline("part body")
            kind = self._delimiter_kind(line)
            if kind == "close":
                self._done = True
                break
            if kind == "part":
                break
            chunks.append(line)

        content = _strip_line_break("".join(chunks))
        message = email.message_from_string(head + "\r\n" + content, policy=policy.default)
        return MailPart(message=message, content=content)


def process_multipart_message(body: str, boundary: str) -> tuple[str, str]:
    """Return (plain_text, html_text) found in a multipart body.

    Later text/plain or text/html parts overwrite earlier ones. Only those
    parts are decoded; anything else is skipped untouched.
    """
    plain_text = ""
    html_text = ""
    for part in MultipartReader(body, boundary):
        content_type = part.header("Content-Type")
        if content_type.startswith("text/plain"):
            plain_text = part.text().strip()
        elif content_type.startswith("text/html"):
            html_text = part.text().strip()
    return plain_text, html_text


def parse_mail_data(data: str) -> MailMessage:
    headers, body = parse_headers_and_body(data)

    content_type = get_header(headers, "Content-Type")
    try:
        media_type, params = parse_media_type(content_type)
    except MailParseError as e:
        if content_type:
            raise MailParseError(f"error parsing Content-Type: {e}") from e
        media_type, params = "", {}

    plain_text = body
    html_text = ""
    if media_type.startswith("multipart/"):
        boundary = params.get("boundary", "")
        if not boundary:
            raise MailParseError("multipart message without boundary parameter")
        plain_text, html_text = process_multipart_message(body, boundary)

    return MailMessage(
        from_addr=get_header(headers, "From"),
        to_addr=get_header(headers, "To"),
        subject=get_header(headers, "Subject"),
        plain_text=plain_text,
        html_text=html_text,
    )
