"""
Blocking TCP channel to a HandlerSocket endpoint.

A channel carries one exchange at a time: the caller sends one or more
request lines and then reads exactly one response line per request.
There is no queueing, pipelining across callers, or retry. A socket
failure closes the channel; it is not reopened.
"""

from __future__ import annotations

import socket

from hscache.exceptions import ChannelConnectionError
from hscache.logging import get_logger

logger = get_logger(__name__)

_RECV_SIZE = 65536


class Channel:
    """One connection to (host, port)."""

    def __init__(self, host: str, port: int, timeout: float | None = None) -> None:
        """Initialize an unconnected channel.

        Args:
            host: Server host name or address.
            port: HandlerSocket listener port.
            timeout: Socket timeout in seconds. None blocks indefinitely.
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._buf = bytearray()

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def _context(self) -> dict[str, object]:
        return {"host": self.host, "port": self.port}

    def connect(self) -> None:
        """Open the TCP connection.

        Raises:
            ChannelConnectionError: If the endpoint cannot be reached.
        """
        if self._sock is not None:
            return
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            logger.warning("Channel connect failed", host=self.host, port=self.port, error=str(e))
            raise ChannelConnectionError(
                f"Cannot connect to HandlerSocket endpoint: {e}", self._context()
            ) from e
        sock.settimeout(self.timeout)
        self._sock = sock
        self._buf.clear()
        logger.debug("Channel connected", host=self.host, port=self.port)

    def send(self, data: bytes) -> None:
        """Write request bytes in a single sendall."""
        sock = self._require()
        try:
            sock.sendall(data)
        except OSError as e:
            self.close()
            raise ChannelConnectionError(f"Send failed: {e}", self._context()) from e

    def read_line(self) -> bytes:
        """Block until one LF terminated line is available and return it."""
        sock = self._require()
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                line = bytes(self._buf[: idx + 1])
                del self._buf[: idx + 1]
                return line
            try:
                chunk = sock.recv(_RECV_SIZE)
            except OSError as e:
                self.close()
                raise ChannelConnectionError(f"Receive failed: {e}", self._context()) from e
            if not chunk:
                self.close()
                raise ChannelConnectionError("Connection closed by server", self._context())
            self._buf.extend(chunk)

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        sock, self._sock = self._sock, None
        self._buf.clear()
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug("Error closing channel", host=self.host, port=self.port, error=str(e))

    def _require(self) -> socket.socket:
        if self._sock is None:
            raise ChannelConnectionError("Channel is not connected", self._context())
        return self._sock

    def __repr__(self) -> str:
        state = "connected" if self.connected else "closed"
        return f"<Channel {self.host}:{self.port} {state}>"
