"""
Deployment Event Formatter

Formats stack activity and IoHost messages into JSON structures for
WebSocket transmission.
"""

from typing import Dict, Optional
from datetime import datetime


def _iso(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def format_resource_event(resource_event, deployment: str, progress: Dict) -> Dict:
    """
    Format a stack event for transmission.

    Args:
        resource_event: ResourceEvent from the poller
        deployment: Unique ID of the stack operation being monitored
        progress: Progress counters ({'completed', 'total', 'formatted'})

    Returns:
        Formatted event dictionary ready for JSON serialization
    """
    event = resource_event.event
    return {
        'type': 'resource_update',
        'deployment': deployment,
        'timestamp': _iso(event.get('Timestamp')),
        'resource': {
            'logicalId': event.get('LogicalResourceId', ''),
            'type': event.get('ResourceType', ''),
            'status': event.get('ResourceStatus', ''),
            'statusReason': event.get('ResourceStatusReason', ''),
            'physicalId': event.get('PhysicalResourceId', ''),
            'parentStackLogicalIds': list(resource_event.parent_stack_logical_ids),
        },
        'isStackEvent': resource_event.is_stack_event,
        'progress': progress,
    }


def format_stack_complete(stack_name: str, stack_status: str, outputs: Dict[str, str]) -> Dict:
    """
    Format a stack completion event.

    Args:
        stack_name: Name of the CloudFormation stack
        stack_status: Final status (CREATE_COMPLETE, UPDATE_ROLLBACK_COMPLETE, etc.)
        outputs: Stack outputs by key
    """
    return {
        'type': 'stack_complete',
        'timestamp': datetime.now().isoformat(),
        'stack': {
            'name': stack_name,
            'status': stack_status,
            'outputs': outputs,
        },
    }


def format_io_message(msg) -> Dict:
    """
    Format an IoHost message.

    Structured activity data is sent as-is; everything else becomes a
    'message' event with its level and code.
    """
    if isinstance(msg.data, dict) and msg.data.get('type'):
        return msg.data

    return {
        'type': 'message',
        'timestamp': _iso(msg.time),
        'level': msg.level,
        'code': msg.code,
        'action': msg.action,
        'message': msg.message,
    }
