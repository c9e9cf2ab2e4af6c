"""
Output tunnel between a top-level plan-agent process and nested subagents.

The top-level process listens on a Unix domain socket and exports its path in
PLAN_AGENT_OUTPUT_SOCKET. A nested plan-agent finds the variable, connects,
and sends every log line as a JSON object terminated by a newline. Prompts
travel the other way: the child sends a prompt_request and blocks until the
parent answers with a prompt_response carrying the same request_id.

Client -> server:
    {"type": "log" | "error" | "warn" | "debug", "args": [...]}
    {"type": "stdout" | "stderr", "data": "..."}
    {"type": "structured", "message": {...}}

Server -> client:
    {"type": "prompt_response", "request_id": "...", "value": ...}
    {"type": "prompt_response", "request_id": "...", "error": "..."}

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
import shutil
import socket
import tempfile
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from . import output

TUNNEL_SOCKET_ENV = "PLAN_AGENT_OUTPUT_SOCKET"
TUNNEL_SOCKET_NAME = "output.sock"
DEFAULT_PROMPT_TIMEOUT_SECONDS = 600
ACCEPT_POLL_SECONDS = 0.2

LOG_MESSAGE_TYPES = ("log", "error", "warn", "debug")

PromptResponder = Callable[..., None]
PromptHandler = Callable[[dict, PromptResponder], None]


class TunnelError(Exception):
    """A prompt could not be answered through the tunnel."""


def _encode(message: dict) -> bytes:
    return (json.dumps(message, default=str) + "\n").encode("utf-8")


def is_tunnel_active() -> bool:
    """True when this process was started under a tunnel server."""
    return bool(os.environ.get(TUNNEL_SOCKET_ENV))


# ─── Server ──────────────────────────────────────────────────────────


def default_prompt_handler(message: dict, respond: PromptResponder) -> None:
    """Answer a child's prompt_request on this process's terminal."""
    config = message.get("prompt_config") or {}
    prompt_type = message.get("prompt_type", "confirm")
    text = str(config.get("message", ""))
    if prompt_type == "confirm":
        respond(value=output.prompt_confirm(text, bool(config.get("default", False))))
    elif prompt_type == "input":
        respond(value=output.prompt_input(text, str(config.get("default", ""))))
    else:
        respond(error=f"Unsupported prompt type: {prompt_type}")


class TunnelServer:
    """Accepts subagent connections and re-emits their output locally."""

    def __init__(self, socket_path: str, on_prompt_request: Optional[PromptHandler] = None):
        self.socket_path = socket_path
        self._on_prompt_request = on_prompt_request
        self._closed = threading.Event()
        self._connections: list[socket.socket] = []
        self._lock = threading.Lock()

        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.bind(socket_path)
        self._sock.listen()
        self._sock.settimeout(ACCEPT_POLL_SECONDS)

        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()
        output.verbose_log(f"Tunnel server listening on {socket_path}", "TUNNEL")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            with self._lock:
                self._connections.append(conn)
            threading.Thread(target=self._handle_connection, args=(conn,), daemon=True).start()

    def _handle_connection(self, conn: socket.socket) -> None:
        send_lock = threading.Lock()

        def send(payload: dict) -> None:
            with send_lock:
                conn.sendall(_encode(payload))

        try:
            with conn.makefile("r", encoding="utf-8") as reader:
                for line in reader:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        message = json.loads(line)
                    except ValueError:
                        output.verbose_log(f"Ignoring malformed tunnel line: {line[:80]}", "TUNNEL")
                        continue
                    if isinstance(message, dict):
                        self._dispatch(message, send)
        except OSError:
            pass
        finally:
            with self._lock:
                if conn in self._connections:
                    self._connections.remove(conn)
            conn.close()

    def _dispatch(self, message: dict, send: Callable[[dict], None]) -> None:
        kind = message.get("type")
        if kind in LOG_MESSAGE_TYPES:
            text = " ".join(str(a) for a in message.get("args") or [])
            if kind == "log":
                output.log(text)
            elif kind == "warn":
                output.warn(text)
            elif kind == "error":
                output.error(text)
            else:
                output.debug(text)
        elif kind == "stdout":
            output.write_stdout(str(message.get("data", "")))
        elif kind == "stderr":
            output.write_stderr(str(message.get("data", "")))
        elif kind == "structured":
            payload = message.get("message")
            if not isinstance(payload, dict):
                return
            if payload.get("type") == "prompt_request":
                self._handle_prompt_request(payload, send)
            else:
                output.send_structured(payload)
        else:
            output.verbose_log(f"Unknown tunnel message type: {kind}", "TUNNEL")

    def _handle_prompt_request(self, request: dict, send: Callable[[dict], None]) -> None:
        request_id = request.get("request_id")

        def respond(value: Any = None, error: Optional[str] = None) -> None:
            response: dict = {"type": "prompt_response", "request_id": request_id}
            if error is not None:
                response["error"] = error
            else:
                response["value"] = value
            try:
                send(response)
            except OSError as e:
                output.verbose_log(f"Could not deliver prompt response {request_id}: {e}", "TUNNEL")

        if self._on_prompt_request is None:
            respond(error="No prompt handler is available")
            return
        try:
            self._on_prompt_request(request, respond)
        except Exception as e:
            respond(error=str(e))

    def close(self) -> None:
        """Stop accepting, drop open connections, remove the socket file."""
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._sock.close()
        except OSError:
            pass
        with self._lock:
            connections = list(self._connections)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        self._thread.join(timeout=2)
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)


def create_tunnel_server(
    socket_path: str, on_prompt_request: Optional[PromptHandler] = None
) -> TunnelServer:
    return TunnelServer(socket_path, on_prompt_request=on_prompt_request)


@dataclass
class TunnelSession:
    """A tunnel server living in its own private temporary directory."""
    server: TunnelServer
    directory: str
    previous_env: Optional[str]

    @property
    def socket_path(self) -> str:
        return self.server.socket_path

    def close(self) -> None:
        """Close the server, restore the environment, remove the directory.

        Each part runs even if an earlier one fails; the first error is
        re-raised at the end.
        """
        first_error: Optional[BaseException] = None
        try:
            self.server.close()
        except OSError as e:
            first_error = e
        if self.previous_env is None:
            os.environ.pop(TUNNEL_SOCKET_ENV, None)
        else:
            os.environ[TUNNEL_SOCKET_ENV] = self.previous_env
        try:
            shutil.rmtree(self.directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            first_error = first_error or e
        if first_error is not None:
            raise first_error


def start_tunnel_session(on_prompt_request: Optional[PromptHandler] = default_prompt_handler) -> TunnelSession:
    """Create a tunnel server and export its path to child processes."""
    directory = tempfile.mkdtemp(prefix="plan-agent-tunnel-")
    os.chmod(directory, 0o700)
    try:
        server = create_tunnel_server(os.path.join(directory, TUNNEL_SOCKET_NAME), on_prompt_request)
    except OSError:
        shutil.rmtree(directory, ignore_errors=True)
        raise
    previous = os.environ.get(TUNNEL_SOCKET_ENV)
    os.environ[TUNNEL_SOCKET_ENV] = server.socket_path
    return TunnelSession(server=server, directory=directory, previous_env=previous)


# ─── Client ──────────────────────────────────────────────────────────


class _PendingPrompt:
    def __init__(self) -> None:
        self.event = threading.Event()
        self.value: Any = None
        self.error: Optional[str] = None


class TunnelClient:
    """Sends output to a tunnel server; answers come back on a reader thread."""

    def __init__(self, socket_path: str, connect_timeout: float = 5.0):
        self.socket_path = socket_path
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.settimeout(connect_timeout)
        self._sock.connect(socket_path)
        self._sock.settimeout(None)
        self._send_lock = threading.Lock()
        self._pending: dict[str, _PendingPrompt] = {}
        self._pending_lock = threading.Lock()
        self._connected = True
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._reader.start()

    @property
    def connected(self) -> bool:
        return self._connected

    def _send(self, message: dict) -> bool:
        if not self._connected:
            return False
        try:
            with self._send_lock:
                self._sock.sendall(_encode(message))
            return True
        except OSError:
            self._mark_disconnected()
            return False

    def send_log(self, kind: str, args: list) -> bool:
        return self._send({"type": kind, "args": list(args)})

    def send_output(self, stream: str, data: str) -> bool:
        return self._send({"type": stream, "data": data})

    def send_structured(self, message: dict) -> bool:
        return self._send({"type": "structured", "message": message})

    def send_prompt_request(self, request: dict, timeout: Optional[float] = DEFAULT_PROMPT_TIMEOUT_SECONDS) -> Any:
        """Ask the parent process a question and wait for the answer.

        Raises TunnelError on an error response, a timeout, or a lost
        connection.
        """
        request_id = request.get("request_id") or uuid.uuid4().hex
        pending = _PendingPrompt()
        with self._pending_lock:
            self._pending[request_id] = pending
        message = dict(request, type="prompt_request", request_id=request_id)
        if not self.send_structured(message):
            with self._pending_lock:
                self._pending.pop(request_id, None)
            raise TunnelError("Tunnel is not connected")

        answered = pending.event.wait(timeout)
        with self._pending_lock:
            self._pending.pop(request_id, None)
        if not answered:
            raise TunnelError(f"Timed out after {timeout}s waiting for prompt response")
        if pending.error is not None:
            raise TunnelError(pending.error)
        return pending.value

    def _read_loop(self) -> None:
        try:
            with self._sock.makefile("r", encoding="utf-8") as reader:
                for line in reader:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        message = json.loads(line)
                    except ValueError:
                        continue
                    if isinstance(message, dict):
                        self._handle_message(message)
        except OSError:
            pass
        finally:
            self._mark_disconnected()

    def _handle_message(self, message: dict) -> None:
        kind = message.get("type")
        if kind == "prompt_response":
            with self._pending_lock:
                pending = self._pending.get(str(message.get("request_id")))
            if pending is None:
                return
            if "error" in message:
                pending.error = str(message["error"])
            else:
                pending.value = message.get("value")
            pending.event.set()

    def _mark_disconnected(self) -> None:
        self._connected = False
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for waiter in pending:
            waiter.error = "Tunnel connection closed"
            waiter.event.set()

    def close(self) -> None:
        self._mark_disconnected()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


def connect_tunnel(socket_path: str) -> TunnelClient:
    return TunnelClient(socket_path)


def connect_tunnel_from_env() -> Optional[TunnelClient]:
    """Connect to the parent's tunnel if one is advertised and route output to it.

    A dead or missing socket is not fatal: output stays local.
    """
    socket_path = os.environ.get(TUNNEL_SOCKET_ENV)
    if not socket_path:
        return None
    try:
        client = connect_tunnel(socket_path)
    except OSError as e:
        output.warn(f"Could not connect to output tunnel at {socket_path}: {e}")
        return None
    output.set_tunnel_client(client)
    return client
