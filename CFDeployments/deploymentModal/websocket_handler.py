"""
WebSocket Handler for Deployment Tracking

Manages WebSocket connections per stack and streams the messages of a
running stack operation to them.
"""

import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from ..io_host import ConsoleIoHost, IoHost, IoMessage, IoRequest
from .deployment_formatter import format_io_message

logger = logging.getLogger(__name__)


class DeploymentWebSocketManager:
    """
    Manages WebSocket connections for real-time deployment tracking.
    Handles multiple concurrent connections to the same stack.
    """

    def __init__(self):
        # Format: {stack_name: {websocket1, websocket2, ...}}
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, stack_name: str):
        await websocket.accept()

        if stack_name not in self.active_connections:
            self.active_connections[stack_name] = set()
        self.active_connections[stack_name].add(websocket)

        logger.info("WebSocket connected for stack: %s (Total: %d)", stack_name, len(self.active_connections[stack_name]))

    def disconnect(self, websocket: WebSocket, stack_name: str):
        if stack_name not in self.active_connections:
            return

        self.active_connections[stack_name].discard(websocket)

        # Clean up if no more connections
        if not self.active_connections[stack_name]:
            del self.active_connections[stack_name]
            logger.info("All connections closed for stack: %s", stack_name)

    def has_subscribers(self, stack_name: str) -> bool:
        return bool(self.active_connections.get(stack_name))

    async def broadcast_to_stack(self, stack_name: str, message: Dict):
        """
        Broadcast a message to all clients connected to a specific stack.

        Args:
            stack_name: CloudFormation stack name
            message: Dictionary to send (will be JSON serialized)
        """
        if stack_name not in self.active_connections:
            return

        # Copy the set to avoid modification during iteration
        connections = self.active_connections[stack_name].copy()

        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning("Error sending to client: %s", e)
                disconnected.append(websocket)

        for websocket in disconnected:
            self.disconnect(websocket, stack_name)


class WebSocketIoHost:
    """
    IoHost that mirrors every message of one stack's operation to the
    WebSocket subscribers of that stack.

    Requests are answered by the delegate host; WebSocket clients only
    observe.
    """

    def __init__(self, manager: DeploymentWebSocketManager, stack_name: str, delegate: Optional[IoHost] = None):
        self.manager = manager
        self.stack_name = stack_name
        self.delegate = delegate or ConsoleIoHost(interactive=False)

    async def notify(self, msg: IoMessage) -> None:
        await self.delegate.notify(msg)
        if self.manager.has_subscribers(self.stack_name):
            await self.manager.broadcast_to_stack(self.stack_name, _json_safe(format_io_message(msg)))

    async def request_response(self, msg: IoRequest) -> Any:
        return await self.delegate.request_response(msg)


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return value


# Global instance
deployment_ws_manager = DeploymentWebSocketManager()
