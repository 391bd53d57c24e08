#!/usr/bin/env python3
"""
Daemon control protocol.

One request per TCP connection, one reply per request. Both directions are
a single JSON object without newlines:

    {"type": "deploy", "shipID": "web-1", "command": "python3 app.py",
     "logDir": "/var/lib/keelan/logs/web-1", "imageId": 3}
    {"type": "start", "shipName": "web-1", "command": "...", "logDir": "...", "imageId": 3}
    {"type": "stop", "shipName": "web-1", "force": false}

    {"status": "success", "pid": 4242}
    {"status": "error", "message": "Ship not found"}

The client writes its request and half-closes the connection; the daemon
replies once and closes.
"""

import json
import socket
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from keelan.errors import DaemonUnreachable, ProtocolError
from keelan.utils import DAEMON_HOST, DAEMON_PORT

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

# Upper bound on a single message
MAX_MESSAGE_SIZE = 1024 * 1024


@dataclass(frozen=True)
class DeployRequest:
    ship_id: str
    command: str
    log_dir: str
    image_id: int

    type = "deploy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "shipID": self.ship_id,
            "command": self.command,
            "logDir": self.log_dir,
            "imageId": self.image_id,
        }


@dataclass(frozen=True)
class StartRequest:
    ship_name: str
    command: str
    log_dir: str
    image_id: int

    type = "start"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "shipName": self.ship_name,
            "command": self.command,
            "logDir": self.log_dir,
            "imageId": self.image_id,
        }


@dataclass(frozen=True)
class StopRequest:
    ship_name: str
    force: bool = False

    type = "stop"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "shipName": self.ship_name, "force": self.force}


Request = Union[DeployRequest, StartRequest, StopRequest]


def encode_request(request: Request) -> bytes:
    return json.dumps(request.to_dict(), separators=(",", ":")).encode("utf-8")


def _field(message: Dict[str, Any], key: str, kind: type) -> Any:
    if key not in message:
        raise ProtocolError(f"Missing field: {key}")
    value = message[key]
    # bool is an int subclass
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ProtocolError(f"Field {key} must be of type {kind.__name__}")
    return value


def parse_request(payload: Union[bytes, str]) -> Request:
    """
    Decode a control message.

    Raises:
        ProtocolError: If the payload is not JSON, the type is unknown, or a
            field is missing or has the wrong type
    """
    try:
        message = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")

    kind = message.get("type")
    if kind == DeployRequest.type:
        return DeployRequest(
            ship_id=_field(message, "shipID", str),
            command=_field(message, "command", str),
            log_dir=_field(message, "logDir", str),
            image_id=_field(message, "imageId", int),
        )
    if kind == StartRequest.type:
        return StartRequest(
            ship_name=_field(message, "shipName", str),
            command=_field(message, "command", str),
            log_dir=_field(message, "logDir", str),
            image_id=_field(message, "imageId", int),
        )
    if kind == StopRequest.type:
        force = message.get("force", False)
        if not isinstance(force, bool):
            raise ProtocolError("Field force must be of type bool")
        return StopRequest(ship_name=_field(message, "shipName", str), force=force)

    raise ProtocolError(f"Unknown message type: {kind!r}")


@dataclass(frozen=True)
class Response:
    status: str
    message: Optional[str] = None
    pid: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @classmethod
    def success(cls, message: Optional[str] = None, pid: Optional[int] = None):
        return cls(STATUS_SUCCESS, message, pid)

    @classmethod
    def error(cls, message: str):
        return cls(STATUS_ERROR, message)

    def to_bytes(self) -> bytes:
        data: Dict[str, Any] = {"status": self.status}
        if self.message is not None:
            data["message"] = self.message
        if self.pid is not None:
            data["pid"] = self.pid
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> "Response":
        try:
            data = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid reply: {e}") from e
        if not isinstance(data, dict) or data.get("status") not in (
            STATUS_SUCCESS,
            STATUS_ERROR,
        ):
            raise ProtocolError(f"Invalid reply: {payload!r}")
        return cls(data["status"], data.get("message"), data.get("pid"))


class DaemonClient:
    """
    Client for the daemon control socket.

    Example:
        client = DaemonClient()
        reply = client.send(StopRequest("web-1", force=True))
    """

    def __init__(
        self, host: str = DAEMON_HOST, port: int = DAEMON_PORT, timeout: float = 30.0
    ):
        self.host = host
        self.port = port
        self.timeout = timeout

    def send(self, request: Request) -> Response:
        """
        Send one request and wait for its reply.

        Raises:
            DaemonUnreachable: If the daemon cannot be reached or closes the
                connection without replying
        """
        try:
            with socket.create_connection(
                (self.host, self.port), timeout=self.timeout
            ) as sock:
                sock.sendall(encode_request(request))
                sock.shutdown(socket.SHUT_WR)
                chunks = []
                while True:
                    chunk = sock.recv(65536)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except OSError as e:
            raise DaemonUnreachable(e.strerror or str(e)) from e

        payload = b"".join(chunks)
        if not payload:
            raise DaemonUnreachable("connection closed without a reply")
        return Response.from_bytes(payload)

    def is_running(self) -> bool:
        """Check whether something is accepting connections on the socket."""
        try:
            with socket.create_connection((self.host, self.port), timeout=1.0):
                return True
        except OSError:
            return False
