"""
HTTP control surface for the re-encoder.

    GET  /status            -> running state, bitrate, consumers, telemetry
    POST /control/bitrate   -> {"target_kbps": int, "max_kbps": int}
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from reencoder.errors import BitrateError

logger = logging.getLogger(__name__)


def make_control_handler(manager):
    """Create a ControlHandler class bound to a lifecycle manager."""

    class ControlHandler(BaseHTTPRequestHandler):
        """HTTP request handler for control endpoints."""

        def do_GET(self):
            if self.path == "/status":
                self._handle_status()
            else:
                self._send_error_response(404, "Not Found")

        def do_POST(self):
            if self.path == "/control/bitrate":
                self._handle_control_bitrate()
            else:
                self._send_error_response(404, "Not Found")

        def _handle_status(self):
            try:
                self._send_json(200, manager.snapshot())
            except Exception as e:
                logger.error(f"Error handling /status: {e}")
                self._send_error_response(500, "Internal server error")

        def _handle_control_bitrate(self):
            try:
                content_length = int(self.headers.get("Content-Length", 0) or 0)
            except ValueError:
                self._send_error_response(400, "Invalid Content-Length header")
                return
            if content_length < 0:
                self._send_error_response(400, "Invalid Content-Length header")
                return
            if content_length == 0:
                self._send_error_response(400, "Request body is required")
                return

            body = self.rfile.read(content_length)
            try:
                data = json.loads(body.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                self._send_error_response(400, f"Invalid JSON: {e}")
                return
            if not isinstance(data, dict):
                self._send_error_response(400, "Request body must be a JSON object")
                return

            for key in ("target_kbps", "max_kbps"):
                if key not in data:
                    self._send_error_response(400, f"Missing '{key}' field")
                    return
                if isinstance(data[key], bool) or not isinstance(data[key], int):
                    self._send_error_response(400, f"'{key}' must be an integer")
                    return

            target, peak = data["target_kbps"], data["max_kbps"]
            try:
                applied = manager.set_bitrate(target, peak)
            except BitrateError as e:
                self._send_error_response(400, str(e))
                return
            except Exception as e:
                logger.error(f"Unexpected error setting bitrate: {e}")
                self._send_error_response(500, "Internal server error")
                return

            if not applied:
                self._send_error_response(409, "Pipeline is not active")
                return

            self._send_json(200, {"status": "ok", "target_kbps": target, "max_kbps": peak})

        def _send_json(self, status_code: int, payload: Dict[str, Any]):
            body = json.dumps(payload).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _send_error_response(self, status_code: int, error_message: str):
            self._send_json(status_code, {"status": "error", "error": error_message})

        def log_message(self, format, *args):
            """Override to use our logger."""
            logger.debug(f"{self.address_string()} - {format % args}")

    return ControlHandler


class ControlServer:
    """
    Control/status HTTP server on a background thread.

    Args:
        host: Host to bind to
        port: Port to bind to (0 picks a free port, see bound_port)
        manager: Object providing snapshot() and set_bitrate(target, max)
    """

    def __init__(self, host: str, port: int, manager) -> None:
        self.host = host
        self.port = port
        self.manager = manager
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self._shutdown = False

    @property
    def bound_port(self) -> int:
        if self.server is None:
            return self.port
        return self.server.server_address[1]

    def start(self) -> None:
        """Start HTTP server in a background thread."""
        if self.server is not None:
            raise RuntimeError("Server already started")

        self.server = ThreadingHTTPServer((self.host, self.port), make_control_handler(self.manager))
        self.server.daemon_threads = True
        self._shutdown = False
        self.server_thread = threading.Thread(target=self._run_server, daemon=True, name="ControlServer")
        self.server_thread.start()
        logger.info(f"Control server started on {self.host}:{self.bound_port}")

    def _run_server(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            if not self._shutdown:
                logger.error(f"Control server error: {e}")

    def stop(self) -> None:
        if self.server is None:
            return
        self._shutdown = True
        self.server.shutdown()
        self.server.server_close()
        if self.server_thread:
            self.server_thread.join(timeout=2.0)
        self.server = None
        self.server_thread = None
        logger.info("Control server stopped")
