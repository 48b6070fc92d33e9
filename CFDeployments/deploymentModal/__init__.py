"""
Deployment Modal Module

Stack event polling, activity monitoring and real-time tracking via WebSocket.
"""

from .event_tracker import ResourceEvent, StackEventPoller
from .activity_monitor import StackActivityMonitor, StackProgress
from .websocket_handler import DeploymentWebSocketManager, WebSocketIoHost
from .deployment_formatter import format_resource_event, format_stack_complete

__all__ = [
    'ResourceEvent',
    'StackEventPoller',
    'StackActivityMonitor',
    'StackProgress',
    'DeploymentWebSocketManager',
    'WebSocketIoHost',
    'format_resource_event',
    'format_stack_complete',
]
