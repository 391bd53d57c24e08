"""Tests for the daemon control protocol."""

import json
import socket
import threading

import pytest

from keelan.errors import DaemonUnreachable, ProtocolError
from keelan.protocol import (DaemonClient, DeployRequest, Response,
                             StartRequest, StopRequest, encode_request,
                             parse_request)


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestParseRequest:
    def test_deploy(self):
        request = parse_request(
            json.dumps(
                {
                    "type": "deploy",
                    "shipID": "web-1",
                    "command": "python3 app.py",
                    "logDir": "/tmp/logs/web-1",
                    "imageId": 3,
                }
            )
        )

        assert request == DeployRequest("web-1", "python3 app.py", "/tmp/logs/web-1", 3)

    def test_start(self):
        payload = encode_request(StartRequest("web-1", "sleep 1", "/tmp/l", 4))

        assert parse_request(payload) == StartRequest("web-1", "sleep 1", "/tmp/l", 4)

    def test_stop_force_defaults_false(self):
        request = parse_request(b'{"type":"stop","shipName":"web-1"}')

        assert request == StopRequest("web-1", force=False)

    def test_wire_field_names(self):
        assert json.loads(encode_request(StopRequest("web-1", True))) == {
            "type": "stop",
            "shipName": "web-1",
            "force": True,
        }
        assert set(json.loads(encode_request(DeployRequest("a", "b", "c", 1)))) == {
            "type",
            "shipID",
            "command",
            "logDir",
            "imageId",
        }

    @pytest.mark.parametrize(
        "payload",
        [
            b"not json",
            b"[1, 2]",
            b'{"type": "launch"}',
            b'{"shipName": "web-1"}',
            b'{"type": "stop"}',
            b'{"type": "stop", "shipName": "web-1", "force": "yes"}',
            b'{"type": "deploy", "shipID": "a", "command": "b", "logDir": "c"}',
            b'{"type": "deploy", "shipID": "a", "command": "b", "logDir": "c", "imageId": "1"}',
            b'{"type": "start", "shipName": "a", "command": "b", "logDir": "c", "imageId": true}',
            b"\xff\xfe",
        ],
    )
    def test_invalid(self, payload):
        with pytest.raises(ProtocolError):
            parse_request(payload)


class TestResponse:
    def test_success_with_pid(self):
        assert json.loads(Response.success(pid=42).to_bytes()) == {
            "status": "success",
            "pid": 42,
        }

    def test_error(self):
        response = Response.from_bytes(Response.error("Ship not found").to_bytes())

        assert not response.ok
        assert response.message == "Ship not found"
        assert response.pid is None

    @pytest.mark.parametrize("payload", [b"", b"{}", b'{"status": "maybe"}', b"[]"])
    def test_invalid_reply(self, payload):
        with pytest.raises(ProtocolError):
            Response.from_bytes(payload)


class TestDaemonClient:
    def serve_once(self, reply):
        """Accept one connection, record the request and send ``reply``."""
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        received = []

        def handle():
            conn, _ = server.accept()
            with conn:
                chunks = []
                while True:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    chunks.append(chunk)
                received.append(b"".join(chunks))
                conn.sendall(reply)
            server.close()

        thread = threading.Thread(target=handle, daemon=True)
        thread.start()
        return server.getsockname()[1], received, thread

    def test_round_trip(self):
        port, received, thread = self.serve_once(b'{"status":"success","pid":7}')
        client = DaemonClient(port=port, timeout=5)

        response = client.send(StopRequest("web-1"))
        thread.join(5)

        assert response == Response.success(pid=7)
        assert parse_request(received[0]) == StopRequest("web-1")

    def test_empty_reply(self):
        port, _, thread = self.serve_once(b"")
        client = DaemonClient(port=port, timeout=5)

        with pytest.raises(DaemonUnreachable):
            client.send(StopRequest("web-1"))
        thread.join(5)

    def test_nothing_listening(self):
        client = DaemonClient(port=free_port(), timeout=1)

        with pytest.raises(DaemonUnreachable) as exc_info:
            client.send(StopRequest("web-1"))
        assert "keelan daemon start" in str(exc_info.value)
        assert client.is_running() is False
