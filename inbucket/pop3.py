"""POP3 server that serves mailboxes from a message store."""

from __future__ import annotations

import itertools
import logging
import os
import re
import select
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Iterator, Protocol, Sequence

_log = logging.getLogger(__name__)

COMMANDS = frozenset(
    {"QUIT", "STAT", "LIST", "RETR", "DELE", "NOOP", "RSET",
     "TOP", "UIDL", "USER", "PASS", "APOP", "CAPA", "STLS"}
)

_INT_RE = re.compile(r"[+-]?[0-9]+")
_MAX_SCAN_LINE = 64 * 1024
_POLL_INTERVAL = 0.25


class _StoredMessage(Protocol):
    id: str
    size: int

    def source(self) -> BinaryIO: ...


class _Store(Protocol):
    def get_messages(self, mailbox: str) -> Sequence[_StoredMessage]: ...

    def remove_message(self, mailbox: str, message_id: str) -> None: ...


class State(Enum):
    """Modes of the POP3 session state machine."""

    AUTHORIZATION = "AUTHORIZATION"
    TRANSACTION = "TRANSACTION"
    QUIT = "QUIT"

    def __str__(self) -> str:
        return self.value


@dataclass
class Pop3Config:
    """POP3 server settings; ``timeout`` is the idle timeout in seconds."""

    addr: str = "0.0.0.0:1100"
    domain: str = "inbucket.local"
    timeout: float | None = 600.0
    debug: bool = False
    force_tls: bool = False
    tls_enabled: bool = False
    tls_cert: str = "cert.crt"
    tls_priv_key: str = "cert.key"


def parse_command(line: str) -> tuple[str, list[str]]:
    """Split a command line into its upper-cased verb and its arguments."""
    line = line.rstrip("\r\n")
    if not line:
        return "", []
    words = line.split(" ")
    return words[0].upper(), words[1:]


def _parse_int32(text: str) -> int | None:
    if not _INT_RE.fullmatch(text):
        return None
    value = int(text)
    return value if -(2**31) <= value < 2**31 else None


def _scan_lines(reader: BinaryIO) -> Iterator[str]:
    for raw in reader:
        if len(raw) > _MAX_SCAN_LINE:
            raise ValueError("message line too long")
        line = raw[:-1] if raw.endswith(b"\n") else raw
        if line.endswith(b"\r"):
            line = line[:-1]
        yield line.decode("utf-8", "surrogateescape")


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid address {addr!r}: missing or bad port")
    return host or "0.0.0.0", int(port)


class Session:
    """An active POP3 conversation with one client."""

    def __init__(self, server: Server, session_id: int, conn: socket.socket) -> None:
        self.server = server
        self.id = session_id
        self.conn = conn
        self.reader = conn.makefile("rb")
        try:
            peer = conn.getpeername()
        except OSError:
            peer = ""
        self.remote_host = peer[0] if isinstance(peer, tuple) else ""
        self.state = State.AUTHORIZATION
        self.send_error: OSError | None = None
        self.user = ""
        self.messages: list[_StoredMessage] = []
        self.retain: list[bool] = []
        self.msg_count = 0
        self.tls_active = False
        self.debug = server.config.debug
        self._log = logging.LoggerAdapter(_log, {"session": session_id, "remote": self.remote_host})

    def __str__(self) -> str:
        return f"Session{{id: {self.id}, state: {self.state}}}"

    def run(self) -> None:
        """Greet the client and process commands until it quits or fails."""
        config = self.server.config
        self._send(
            f"+OK Inbucket POP3 server ready <{os.getpid()}.{int(time.time())}@{config.domain}>"
        )
        while self.state is not State.QUIT and self.send_error is None:
            try:
                line = self._read_line()
            except EOFError:
                if self.state is State.AUTHORIZATION:
                    self._log.info("Client closed connection (state %s)", self.state)
                else:
                    self._log.warning("Got EOF while in state %s", self.state)
                break
            except TimeoutError as exc:
                self._log.warning("Connection error: %s", exc)
                self._send("-ERR Idle timeout, bye bye")
                break
            except OSError as exc:
                self._log.warning("Connection error: %s", exc)
                self._send("-ERR Connection error, sorry")
                break

            self._log.debug("read %s", line)
            cmd, args = parse_command(line)
            if cmd == "CAPA":
                self._send_capabilities()
            elif cmd == "":
                self._send("-ERR Speak up")
            elif cmd not in COMMANDS:
                self._send(f"-ERR Syntax error, {cmd} command unrecognized")
                self._log.warning("Unrecognized command: %s", cmd)
            elif self.state is State.AUTHORIZATION:
                self._authorization(cmd, args)
            else:
                self._transaction(cmd, args)

        if self.send_error is not None:
            self._log.warning("Network send error: %s", self.send_error)
        self._log.info("Closing connection")

    def close(self) -> None:
        self.reader.close()
        self.conn.close()

    def _send_capabilities(self) -> None:
        self._send("+OK Capability list follows")
        for capability in ("TOP", "USER", "UIDL", "IMPLEMENTATION Inbucket"):
            self._send(capability)
        server = self.server
        if server.tls_context is not None and not self.tls_active and not server.config.force_tls:
            self._send("STLS")
        self._send(".")

    def _authorization(self, cmd: str, args: list[str]) -> None:
        match cmd:
            case "QUIT":
                self._send("+OK Goodnight and good luck")
                self._enter_state(State.QUIT)
            case "STLS":
                self._start_tls(cmd)
            case "USER":
                if args:
                    self.user = args[0]
                    self._send(f"+OK Hello {self.user}, welcome to Inbucket")
                else:
                    self._send("-ERR Missing username argument")
            case "PASS":
                if not self.user:
                    self._out_of_sequence(cmd)
                else:
                    self._open_mailbox()
            case "APOP":
                if len(args) != 2:
                    self._log.warning("Expected two arguments for APOP")
                    self._send("-ERR APOP requires two arguments")
                    return
                self.user = args[0]
                self._open_mailbox()
            case _:
                self._out_of_sequence(cmd)

    def _open_mailbox(self) -> None:
        self._load_mailbox()
        self._send(f"+OK Found {self.msg_count} messages for {self.user}")
        self._enter_state(State.TRANSACTION)

    def _start_tls(self, cmd: str) -> None:
        config = self.server.config
        context = self.server.tls_context
        if not config.tls_enabled or config.force_tls or context is None:
            self._send("-ERR TLS unavailable on the server")
            return
        if self.tls_active:
            self._send("-ERR A TLS session already agreed upon.")
            return
        self._send("+OK Begin TLS Negotiation")
        self.reader.close()
        try:
            self.conn.settimeout(config.timeout)
            tls_conn = context.wrap_socket(self.conn, server_side=True)
        except OSError as exc:
            self._log.error("-ERR TLS handshake failed %s", exc)
            self._out_of_sequence(cmd)
            self._enter_state(State.QUIT)
            return
        self.conn = tls_conn
        self.reader = tls_conn.makefile("rb")
        self.tls_active = True
        self._log.debug("TLS set %s", tls_conn.version())

    def _message_number(self, cmd: str, arg: str, label: str | None = None) -> int | None:
        label = label or cmd
        number = _parse_int32(arg)
        if number is None:
            self._send(f"-ERR {cmd} command requires an integer argument")
            return None
        if number < 1:
            self._send(f"-ERR {label} argument must be greater than 0")
            return None
        if number > len(self.messages):
            self._send(f"-ERR {label} argument must not exceed the number of messages")
            return None
        return number

    def _listing(self, cmd: str, args: list[str], describe: Callable[[_StoredMessage], object]) -> None:
        if len(args) > 1:
            self._send(f"-ERR {cmd} command must have zero or one argument")
            return
        if args:
            number = self._message_number(cmd, args[0])
            if number is None:
                return
            if not self.retain[number - 1]:
                self._log.warning("Client tried to %s a message it had deleted", cmd)
                self._send(f"-ERR You deleted message {number}")
                return
            self._send(f"+OK {number} {describe(self.messages[number - 1])}")
            return
        self._send(f"+OK Listing {self.msg_count} messages")
        for number, (msg, keep) in enumerate(zip(self.messages, self.retain), start=1):
            if keep:
                self._send(f"{number} {describe(msg)}")
        self._send(".")

    def _transaction(self, cmd: str, args: list[str]) -> None:
        match cmd:
            case "STAT":
                if args:
                    self._send("-ERR STAT command must have no arguments")
                    return
                kept = [msg for msg, keep in zip(self.messages, self.retain) if keep]
                self._send(f"+OK {len(kept)} {sum(msg.size for msg in kept)}")
            case "LIST":
                self._listing(cmd, args, lambda msg: msg.size)
            case "UIDL":
                self._listing(cmd, args, lambda msg: msg.id)
            case "DELE":
                if len(args) != 1:
                    self._send("-ERR DELE command requires a single argument")
                    return
                number = self._message_number(cmd, args[0])
                if number is None:
                    return
                if self.retain[number - 1]:
                    self.retain[number - 1] = False
                    self.msg_count -= 1
                    self._send(f"+OK Deleted message {number}")
                else:
                    self._send(f"-ERR Message {number} has already been deleted")
            case "RETR":
                if len(args) != 1:
                    self._send("-ERR RETR command requires a single argument")
                    return
                number = self._message_number(cmd, args[0])
                if number is None:
                    return
                msg = self.messages[number - 1]
                self._send(f"+OK {msg.size} bytes follows")
                self._send_message(msg, None)
            case "TOP":
                if len(args) != 2:
                    self._send("-ERR TOP command requires two arguments")
                    return
                number = self._message_number(cmd, args[0], "TOP first")
                if number is None:
                    return
                lines = _parse_int32(args[1])
                if lines is None:
                    self._send("-ERR TOP command requires an integer argument")
                    return
                if lines < 0:
                    self._send("-ERR TOP second argument must be non-negative")
                    return
                self._send("+OK Top of message follows")
                self._send_message(self.messages[number - 1], lines)
            case "QUIT":
                self._send("+OK We will process your deletes")
                self._process_deletes()
                self._enter_state(State.QUIT)
            case "NOOP":
                self._send("+OK I have successfully done nothing")
            case "RSET":
                self._retain_all()
                self._send("+OK Session reset")
            case _:
                self._out_of_sequence(cmd)

    def _send_message(self, msg: _StoredMessage, body_lines: int | None) -> None:
        """Send a message dot-stuffed; with ``body_lines``, headers plus that many body lines."""
        try:
            reader = msg.source()
        except Exception as exc:  # the store may fail in any way
            self._log.error("Failed to read message: %s", exc)
            self._send("-ERR Failed to RETR that message, internal error")
            return
        try:
            with reader:
                in_body = False
                for line in _scan_lines(reader):
                    if line.startswith("."):
                        line = "." + line
                    if body_lines is not None:
                        if in_body:
                            if body_lines < 1:
                                break
                            body_lines -= 1
                        elif line == "":
                            in_body = True
                    self._send(line)
        except (OSError, ValueError) as exc:
            self._log.error("Failed to read message: %s", exc)
            self._send(".")
            self._send("-ERR Failed to RETR that message, internal error")
            return
        self._send(".")

    def _load_mailbox(self) -> None:
        try:
            self.messages = list(self.server.store.get_messages(self.user))
        except Exception as exc:  # the store may fail in any way
            self._log.error("Failed to load messages for %s: %s", self.user, exc)
            self.messages = []
        self._retain_all()

    def _retain_all(self) -> None:
        self.retain = [True] * len(self.messages)
        self.msg_count = len(self.messages)

    def _process_deletes(self) -> None:
        for msg, keep in zip(self.messages, self.retain):
            if keep:
                continue
            try:
                self.server.store.remove_message(self.user, msg.id)
            except Exception as exc:  # the store may fail in any way
                self._log.warning("Error deleting message %s: %s", msg.id, exc)

    def _enter_state(self, state: State) -> None:
        self.state = state
        self._log.debug("Entering state %s", state)

    def _out_of_sequence(self, cmd: str) -> None:
        self._send(f"-ERR Command {cmd} is out of sequence")
        self._log.warning("Wasn't expecting %s here", cmd)

    def _send(self, msg: str) -> None:
        try:
            self.conn.settimeout(self.server.config.timeout)
            self.conn.sendall((msg + "\r\n").encode("utf-8", "surrogateescape"))
        except OSError as exc:
            self.send_error = exc
            self._log.warning("Failed to send: %r", msg)
            return
        if self.debug:
            print(f"{self.id:04d} > {msg}")

    def _read_line(self) -> str:
        self.conn.settimeout(self.server.config.timeout)
        raw = self.reader.readline()
        if not raw.endswith(b"\n"):
            raise EOFError
        line = raw.decode("utf-8", "surrogateescape")
        if self.debug:
            print(f"{self.id:04d}   {line.rstrip(chr(13) + chr(10))}")
        return line


class Server:
    """A POP3 server; sessions run in their own threads."""

    def __init__(self, config: Pop3Config, store: _Store) -> None:
        self.config = config
        self.store = store
        self.tls_context: ssl.SSLContext | None = None
        if config.tls_enabled:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            try:
                context.load_cert_chain(config.tls_cert, config.tls_priv_key)
            except OSError as exc:
                _log.error("Failed loading X509 KeyPair: %s", exc)
                raise ValueError(f"failed to configure TLS; {exc}") from exc
            self.tls_context = context
        self.address: tuple[str, int] | None = None
        self.error: Exception | None = None
        self._listener: socket.socket | None = None
        self._serve_thread: threading.Thread | None = None
        self._stopping = threading.Event()
        self._active = 0
        self._sessions = threading.Condition()

    def start(self, ready: Callable[[], None] | None = None) -> None:
        """Bind the listener, begin accepting connections and call ``ready``."""
        host, port = _split_addr(self.config.addr)
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((host, port))
            listener.listen()
        except OSError as exc:
            listener.close()
            _log.error("Failed to start tcp4 listener: %s", exc)
            self.error = exc
            raise
        self._listener = listener
        self.address = listener.getsockname()
        _log.info("POP3 listening on tcp4 %s:%s", *self.address)
        self._stopping.clear()
        self._serve_thread = threading.Thread(target=self._serve, name="pop3-serve", daemon=True)
        self._serve_thread.start()
        if ready is not None:
            ready()

    def stop(self) -> None:
        """Stop accepting connections; running sessions continue until they end."""
        self._stopping.set()
        if self._serve_thread is not None:
            self._serve_thread.join()
            self._serve_thread = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def _serve(self) -> None:
        listener = self._listener
        assert listener is not None
        for session_id in itertools.count(1):
            try:
                while not self._stopping.is_set():
                    readable, _, _ = select.select([listener], [], [], _POLL_INTERVAL)
                    if readable:
                        break
                if self._stopping.is_set():
                    return
                conn, _ = listener.accept()
            except OSError as exc:
                if self._stopping.is_set():
                    return
                _log.error("POP3 accept failed: %s", exc)
                self.error = exc
                return
            self.start_session(session_id, conn)

    def start_session(self, session_id: int, conn: socket.socket) -> threading.Thread:
        """Run a session for ``conn`` in a new thread, which is returned."""
        with self._sessions:
            self._active += 1
        thread = threading.Thread(
            target=self._run_session, args=(session_id, conn),
            name=f"pop3-session-{session_id}", daemon=True,
        )
        thread.start()
        return thread

    def _run_session(self, session_id: int, conn: socket.socket) -> None:
        session: Session | None = None
        try:
            tls_active = False
            if self.config.force_tls:
                if self.tls_context is None:
                    _log.error("ForceTLS requested but TLS is not configured")
                    return
                try:
                    conn.settimeout(self.config.timeout)
                    conn = self.tls_context.wrap_socket(conn, server_side=True)
                except OSError as exc:
                    _log.warning("TLS handshake failed: %s", exc)
                    return
                tls_active = True
            _log.info("Starting POP3 session %d", session_id)
            session = Session(self, session_id, conn)
            session.tls_active = tls_active
            session.run()
        finally:
            if session is not None:
                session.close()
            conn.close()
            with self._sessions:
                self._active -= 1
                self._sessions.notify_all()

    def drain(self) -> None:
        """Block until every active session has finished."""
        with self._sessions:
            self._sessions.wait_for(lambda: self._active == 0)