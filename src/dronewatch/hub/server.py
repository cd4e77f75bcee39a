"""WebSocket server that attaches observer connections to the fan-out hub."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any

from websockets.asyncio.server import serve
from websockets.protocol import State

if TYPE_CHECKING:
    from websockets.asyncio.server import Server, ServerConnection

    from dronewatch.hub.hub import FanoutHub

logger = logging.getLogger(__name__)

_POLICY_VIOLATION = 1008


class WebSocketChannel:
    """Adapts a websockets server connection to the hub's channel interface."""

    def __init__(self, channel_id: str, websocket: ServerConnection) -> None:
        self._id = channel_id
        self._ws = websocket

    @property
    def id(self) -> str:
        return self._id

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    @property
    def remote_address(self) -> Any:
        return getattr(self._ws, "remote_address", ("unknown", 0))

    async def send(self, message: str) -> None:
        await self._ws.send(message)

    async def close(self) -> None:
        await self._ws.close()


class HubServer:
    """Async WebSocket server feeding observer connections into a :class:`FanoutHub`."""

    def __init__(
        self,
        hub: FanoutHub,
        *,
        host: str = "0.0.0.0",
        port: int = 3001,
        path: str = "/ws",
    ) -> None:
        self._hub = hub
        self._host = host
        self._port = port
        self._path = path
        self._server: Server | None = None
        self._ids = itertools.count(1)
        self._connection_count = 0
        self._frame_count = 0

    @property
    def url(self) -> str:
        host = "127.0.0.1" if self._host in ("0.0.0.0", "") else self._host
        return f"ws://{host}:{self._port}{self._path}"

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Start listening on ``{host}:{port}``."""
        self._server = await serve(self._handler, host=self._host, port=self._port)
        logger.info("Hub WebSocket server listening on %s:%d%s", self._host, self._port, self._path)

    async def stop(self) -> None:
        """Gracefully shut down the server."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Hub WebSocket server stopped")

    async def _handler(self, websocket: ServerConnection) -> None:
        """Handle one observer connection for its whole lifetime.

        Request frames are passed to the hub one at a time; a frame the
        hub cannot process is logged and skipped, never fatal.
        """
        request_path = websocket.request.path if websocket.request is not None else "/"
        if request_path.split("?", 1)[0] != self._path:
            logger.info("Rejecting connection on unexpected path %s", request_path)
            await websocket.close(code=_POLICY_VIOLATION, reason="unknown path")
            return

        channel = WebSocketChannel(f"client_{next(self._ids)}", websocket)
        self._connection_count += 1
        logger.debug("Observer connected from %s", channel.remote_address)

        try:
            await self._hub.register(channel)
            async for message in websocket:
                self._frame_count += 1
                try:
                    await self._hub.on_request(channel, message)
                except Exception:
                    logger.warning("Failed to handle frame from %s", channel.id, exc_info=True)
        except Exception:
            logger.debug("Connection closed: %s", channel.id, exc_info=True)
        finally:
            self._connection_count -= 1
            self._hub.unregister(channel)

    @property
    def connection_count(self) -> int:
        """Number of currently active WebSocket connections."""
        return self._connection_count

    @property
    def frame_count(self) -> int:
        """Total number of request frames received since server start."""
        return self._frame_count
