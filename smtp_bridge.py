#!/usr/bin/env python3

import argparse
import json
import os
import selectors
import signal
import socket
import socketserver
import sys
import threading
import time
import traceback
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from acs_client import DeliveryError, EmailClient, azure_token_provider, static_token
from mail_parser import MailMessage, MailParseError, parse_mail_data

CONNECTION_TIMEOUT_S = 30

REPLY_GREETING = b"220 Welcome to the SMTP server\r\n"
REPLY_OK = b"250 OK\r\n"
REPLY_START_DATA = b"354 Start mail input; end with <CRLF>.<CRLF>\r\n"
REPLY_BYE = b"221 Bye\r\n"

# Advertised only; the limit is not enforced.
EHLO_EXTENSIONS = [b"250-SIZE 10240000"]

DispatchCallback = Callable[[MailMessage], None]

if hasattr(selectors, "PollSelector"):
    _ServerSelector = selectors.PollSelector
else:
    _ServerSelector = selectors.SelectSelector


class ServerError(Exception):
    pass


class ServerClosedError(ServerError):
    pass


_log_lock = threading.Lock()


def log_event(log_path: Optional[Path], event: dict[str, Any]) -> None:
    line = json.dumps(event, separators=(",", ":"))
    with _log_lock:
        if log_path is None:
            print(line, flush=True)
            return
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


def _single_line(text: str) -> str:
    return " ".join(text.splitlines())


class Command(Enum):
    EHLO = "EHLO"
    MAIL_FROM = "MAIL FROM"
    RCPT_TO = "RCPT TO"
    DATA = "DATA"
    QUIT = "QUIT"
    NOOP = "NOOP"
    END_OF_DATA = "."
    OTHER = ""


_PREFIX_COMMANDS = (
    Command.EHLO,
    Command.MAIL_FROM,
    Command.RCPT_TO,
    Command.DATA,
    Command.QUIT,
    Command.NOOP,
)


def classify_command(line: str) -> Command:
    for cmd in _PREFIX_COMMANDS:
        if line.startswith(cmd.value):
            return cmd
    if line == Command.END_OF_DATA.value:
        return Command.END_OF_DATA
    return Command.OTHER


def parse_address(line: str) -> str:
    _, sep, rest = line.partition(":")
    if not sep:
        raise ValueError("invalid address syntax")
    address = rest.strip()
    if address.startswith("<"):
        address = address[1:]
    if address.endswith(">"):
        address = address[:-1]
    return address


class _LineIO:
    """Line reader/writer bound to one absolute connection deadline."""

    def __init__(self, sock: socket.socket, deadline: float):
        self.sock = sock
        self.deadline = deadline
        self.buf = b""
        self.closed_reason: Optional[str] = None

    def _remaining(self) -> float:
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("connection deadline exceeded")
        return remaining

    def send(self, data: bytes) -> None:
        self.sock.settimeout(self._remaining())
        self.sock.sendall(data)

    def recv_line(self) -> Optional[bytes]:
        # Returns the line including its terminator, or None on EOF/timeout.
        while b"\n" not in self.buf:
            try:
                self.sock.settimeout(self._remaining())
                chunk = self.sock.recv(4096)
            except socket.timeout:
                self.closed_reason = "timeout"
                return None
            if not chunk:
                self.closed_reason = "eof"
                return None
            self.buf += chunk
        line, self.buf = self.buf.split(b"\n", 1)
        return line + b"\n"


def collect_mail_data(io: _LineIO) -> Optional[str]:
    chunks: list[str] = []
    while True:
        line = io.recv_line()
        if line is None:
            return None
        text = line.decode("utf-8", errors="replace")
        if text.strip() == ".":
            break
        chunks.append(text)
    return "".join(chunks).strip()


class SMTPBridgeHandler(socketserver.BaseRequestHandler):
    server: "SMTPBridgeServer"  # type: ignore[assignment]

    def setup(self) -> None:
        self.client_ip = self.client_address[0]
        self.mail_from = ""
        self.rcpt_to = ""
        # Set once per connection and never extended.
        self.io = _LineIO(self.request, time.monotonic() + CONNECTION_TIMEOUT_S)

    def _event(self, event: str, **fields: Any) -> None:
        self.server.log_event(
            {
                "ts": int(time.time()),
                "proto": "smtp",
                "client_ip": self.client_ip,
                "event": event,
                **fields,
            }
        )

    def _reject(self, reason: str, reply: str) -> None:
        self._event("rejected", reason=reason, reply=reply)
        self.io.send(reply.encode("utf-8") + b"\r\n")

    def handle(self) -> None:
        self._event("connect")
        try:
            self.io.send(REPLY_GREETING)
            self._command_loop()
        except OSError as e:
            self._event("io_error", error=str(e))

    def _command_loop(self) -> None:
        while True:
            raw = self.io.recv_line()
            if raw is None:
                self._event("disconnect", reason=self.io.closed_reason)
                return
            line = raw.decode("utf-8", errors="replace").strip()
            cmd = classify_command(line)

            if cmd is Command.EHLO:
                self._event("ehlo", helo=line[4:].strip())
                self.io.send(b"250-Hello\r\n" + b"".join(ext + b"\r\n" for ext in EHLO_EXTENSIONS) + REPLY_OK)
                continue

            if cmd is Command.MAIL_FROM:
                try:
                    self.mail_from = parse_address(line)
                except ValueError as e:
                    self._reject("bad_address", f"550 Error: {e}")
                    return
                self._event("mail_from", address=self.mail_from)
                self.io.send(REPLY_OK)
                continue

            if cmd is Command.RCPT_TO:
                try:
                    self.rcpt_to = parse_address(line)
                except ValueError as e:
                    self._reject("bad_address", f"550 Error: {e}")
                    return
                self._event("rcpt_to", address=self.rcpt_to)
                self.io.send(REPLY_OK)
                continue

            if cmd is Command.DATA:
                if not self._handle_data():
                    return
                # Back to command mode; the envelope is kept for a following DATA.
                continue

            if cmd is Command.QUIT:
                self.io.send(REPLY_BYE)
                self._event("quit")
                return

            if cmd is Command.NOOP:
                self.io.send(REPLY_OK)
                continue

            if cmd is Command.END_OF_DATA:
                # Stray end-of-data marker outside DATA.
                self.io.send(REPLY_OK)
                continue

            # Anything else is accepted.
            self.io.send(REPLY_OK)

    def _handle_data(self) -> bool:
        self.io.send(REPLY_START_DATA)

        data = collect_mail_data(self.io)
        if data is None:
            self._event("disconnect", reason=self.io.closed_reason, stage="data")
            return False
        self._event("data_end", bytes=len(data.encode("utf-8")))
        if not data:
            self._reject("empty_data", "550 Error reading mail data")
            return False

        try:
            msg = parse_mail_data(data)
        except MailParseError as e:
            self._reject("parse_failed", f"550 Error processing mail: {_single_line(str(e))}")
            return False

        if msg.from_addr != self.mail_from:
            msg = replace(msg, from_addr=self.mail_from)
        if msg.to_addr != self.rcpt_to:
            msg = replace(msg, to_addr=self.rcpt_to)

        try:
            self.server.dispatch(msg)
        except Exception as e:
            self._event("delivery_failed", mail_from=msg.from_addr, rcpt_to=msg.to_addr, error=str(e))
            self.io.send(f"550 Error processing mail: {_single_line(str(e))}\r\n".encode("utf-8"))
            return False

        self._event("delivered", mail_from=msg.from_addr, rcpt_to=msg.to_addr)
        self.io.send(REPLY_OK)
        return True


class _SessionGroup:
    """Counts running sessions; wait() blocks until none are left."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count <= 0)


class SMTPBridgeServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    block_on_close = False

    def __init__(
        self,
        server_address: tuple[str, int],
        dispatch: DispatchCallback,
        log_path: Optional[Path] = None,
        poll_interval: float = 0.5,
    ) -> None:
        super().__init__(server_address, SMTPBridgeHandler, bind_and_activate=False)
        self.dispatch = dispatch
        self.log_path = log_path
        self.poll_interval = poll_interval
        self.ready = threading.Event()
        self._done = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._sessions = _SessionGroup()

    def log_event(self, event: dict[str, Any]) -> None:
        log_event(self.log_path, event)

    def _server_event(self, event: str, **fields: Any) -> None:
        host, port = self.server_address[:2]
        self.log_event({"ts": int(time.time()), "proto": "smtp", "event": event, "host": host, "port": port, **fields})

    def start(self) -> None:
        try:
            self.server_bind()
            self.server_activate()
        except OSError as e:
            self.close()
            raise ServerError(f"error starting SMTP server: {e}") from e

        self.ready.set()
        self._server_event("server_start")

        with _ServerSelector() as selector:
            selector.register(self, selectors.EVENT_READ)
            while not self._done.is_set():
                if self.socket.fileno() >= 0 and not selector.select(self.poll_interval):
                    continue
                if self._done.is_set():
                    break
                try:
                    request, client_address = self.get_request()
                except OSError as e:
                    if self._done.is_set():
                        break
                    raise ServerError(f"connection error: {e}") from e
                self.process_request(request, client_address)

        self._server_event("server_stop")

    def process_request(self, request: Any, client_address: Any) -> None:
        self._sessions.add()
        try:
            super().process_request(request, client_address)
        except Exception:
            self._sessions.done()
            self.shutdown_request(request)
            raise

    def process_request_thread(self, request: Any, client_address: Any) -> None:
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._sessions.done()

    def handle_error(self, request: Any, client_address: Any) -> None:
        self.log_event(
            {
                "ts": int(time.time()),
                "proto": "smtp",
                "client_ip": client_address[0],
                "event": "error",
                "error": traceback.format_exc(),
            }
        )

    def close(self) -> None:
        self.server_close()

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._done.is_set():
                raise ServerClosedError("server already closed")
            self._done.set()
        self._sessions.wait()
        self.close()


def make_log_dispatch(log_path: Optional[Path]) -> DispatchCallback:
    def _dispatch(mail: MailMessage) -> None:
        log_event(
            log_path,
            {
                "ts": int(time.time()),
                "proto": "smtp",
                "event": "dry_run_delivery",
                "mail_from": mail.from_addr,
                "rcpt_to": mail.to_addr,
                "subject": mail.subject,
                "plain_bytes": len(mail.plain_text.encode("utf-8")),
                "html_bytes": len(mail.html_text.encode("utf-8")),
            },
        )

    return _dispatch


def _env(*names: str) -> str:
    # First non-empty variable wins.
    for name in names:
        value = os.environ.get(name, "")
        if value:
            return value
    return ""


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Receive mail over SMTP and forward it to the email send API.")
    ap.add_argument("--listen-host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=2525)
    ap.add_argument("--log", default="", help="Event log path (JSON lines); stdout if empty")
    ap.add_argument(
        "--endpoint",
        default=_env("COMMUNICATION_SERVICES_ENDPOINT", "COMMUNICATION_SERVICES_CONNECTION_STRING"),
    )
    ap.add_argument(
        "--token",
        default=_env("COMMUNICATION_SERVICES_ACCESS_TOKEN"),
        help="Fixed bearer token (default: DefaultAzureCredential)",
    )
    ap.add_argument("--sender", default=_env("COMMUNICATION_SERVICES_SENDER"), help="Fixed senderAddress (default: MAIL FROM)")
    ap.add_argument("--http-timeout", type=int, default=10, help="Send API timeout in seconds")
    ap.add_argument("--dry-run", action="store_true", help="Log received mail instead of delivering it")
    return ap


def main() -> int:
    ap = build_arg_parser()
    args = ap.parse_args()

    log_path = Path(args.log) if args.log else None

    if args.dry_run:
        dispatch = make_log_dispatch(log_path)
    else:
        if not args.endpoint:
            ap.error("--endpoint or COMMUNICATION_SERVICES_ENDPOINT (or COMMUNICATION_SERVICES_CONNECTION_STRING) is required")
        if args.token:
            token_provider = static_token(args.token)
        else:
            try:
                token_provider = azure_token_provider()
            except DeliveryError as e:
                ap.error(str(e))
        client = EmailClient(
            args.endpoint,
            token_provider,
            timeout_s=args.http_timeout,
            sender=args.sender or None,
        )
        dispatch = client.dispatch

    server = SMTPBridgeServer((args.listen_host, args.port), dispatch, log_path=log_path)
    errors: list[ServerError] = []

    def _serve() -> None:
        try:
            server.start()
        except ServerError as e:
            errors.append(e)

    signal.signal(signal.SIGTERM, signal.default_int_handler)

    th = threading.Thread(target=_serve, daemon=True)
    th.start()

    try:
        while th.is_alive():
            th.join(1)
    except KeyboardInterrupt:
        server.shutdown()
        th.join()

    if errors:
        print(f"error: {errors[0]}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
