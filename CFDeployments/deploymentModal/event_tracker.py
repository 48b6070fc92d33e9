"""
CloudFormation Event Poller

Polls CloudFormation stack events, follows nested stacks and keeps track
of resource status and failures.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set

from botocore.exceptions import ClientError

from ..errors import is_stack_not_found
from ..sdk import aws_call

# Statuses that mark the start of an operation on a (nested) stack
STACK_BEGIN_OPERATION_STATES = (
    'CREATE_IN_PROGRESS',
    'UPDATE_IN_PROGRESS',
    'DELETE_IN_PROGRESS',
    'UPDATE_ROLLBACK_IN_PROGRESS',
    'ROLLBACK_IN_PROGRESS',
)


def is_stack_terminal_state(status: Optional[str]) -> bool:
    return not (status or 'NOTHING').endswith('_IN_PROGRESS')


@dataclass
class ResourceEvent:
    """
    A stack event plus where it came from.

    Attributes:
        event: Raw event from DescribeStackEvents
        parent_stack_logical_ids: Logical IDs of the nested stack chain, root first
        is_stack_event: Whether the event is about the polled stack itself
    """
    event: Dict
    parent_stack_logical_ids: List[str] = field(default_factory=list)
    is_stack_event: bool = False

    @property
    def logical_id(self) -> str:
        return self.event.get('LogicalResourceId', '')

    @property
    def status(self) -> str:
        return self.event.get('ResourceStatus', '')


class StackEventPoller:
    """
    Reads new events of a stack on every poll().

    Args:
        cfn: CloudFormation client
        stack_name: Stack name or ID to poll
        stack_statuses: Stop reading history at a stack-level event with one of these statuses
        start_time: Ignore events older than this
        parent_stack_logical_ids: Chain of nested stack logical IDs leading to this stack
    """

    def __init__(
        self,
        cfn,
        stack_name: str,
        stack_statuses: Optional[Sequence[str]] = None,
        start_time: Optional[datetime] = None,
        parent_stack_logical_ids: Sequence[str] = (),
    ):
        self.cfn = cfn
        self.stack_name = stack_name
        self.stack_statuses = list(stack_statuses) if stack_statuses else None
        self.start_time = start_time
        self.parent_stack_logical_ids = list(parent_stack_logical_ids)

        self.events: List[ResourceEvent] = []
        self.complete = False

        # Track which events we've already seen (by event ID)
        self.seen_event_ids: Set[str] = set()

        # Pollers for nested stacks currently in progress, by logical ID
        self.nested_stack_pollers: Dict[str, 'StackEventPoller'] = {}

        # Latest status per resource
        self.resource_statuses: Dict[str, Dict] = {}

    async def poll(self) -> List[ResourceEvent]:
        """
        Fetch events that haven't been seen before, including nested stack events.

        Returns:
            New events, ordered chronologically (oldest first)
        """
        new_events = await self._do_poll()

        for logical_id, poller in list(self.nested_stack_pollers.items()):
            new_events.extend(await poller.poll())
            if poller.complete:
                del self.nested_stack_pollers[logical_id]

        new_events.sort(key=lambda e: _timestamp(e.event))
        self.events.extend(new_events)

        for event in new_events:
            self._update_resource_status(event)

        return new_events

    @property
    def resource_errors(self) -> List[ResourceEvent]:
        """Failed resource events seen so far (stack-level failures excluded)"""
        return [
            e for e in self.events
            if e.status.endswith('_FAILED') and not e.is_stack_event
        ]

    async def _do_poll(self) -> List[ResourceEvent]:
        events: List[ResourceEvent] = []
        try:
            next_token = None
            while True:
                params = {'StackName': self.stack_name}
                if next_token:
                    params['NextToken'] = next_token
                page = await aws_call(self.cfn.describe_stack_events, **params)

                # AWS returns newest first; stop at the first event we don't want
                for event in page.get('StackEvents') or []:
                    if self.start_time is not None and _timestamp(event) < _timestamp({'Timestamp': self.start_time}):
                        return _chronological(events)

                    if event['EventId'] in self.seen_event_ids:
                        return _chronological(events)
                    self.seen_event_ids.add(event['EventId'])

                    # Events about the stack itself carry the stack ID as their physical ID
                    is_stack_event = event.get('PhysicalResourceId') == event.get('StackId')

                    if is_stack_event and self.stack_statuses and event.get('ResourceStatus') in self.stack_statuses:
                        return _chronological(events)

                    events.append(ResourceEvent(
                        event=event,
                        parent_stack_logical_ids=list(self.parent_stack_logical_ids),
                        is_stack_event=is_stack_event,
                    ))

                    if not is_stack_event and event.get('ResourceType') == 'AWS::CloudFormation::Stack' \
                            and event.get('ResourceStatus') in STACK_BEGIN_OPERATION_STATES:
                        self._track_nested_stack(event)

                    if is_stack_event and is_stack_terminal_state(event.get('ResourceStatus')):
                        self.complete = True

                next_token = page.get('NextToken')
                if not next_token:
                    break
        except ClientError as e:
            # Stack might not exist yet or was deleted
            if not is_stack_not_found(e):
                raise

        return _chronological(events)

    def _track_nested_stack(self, event: Dict):
        logical_id = event.get('LogicalResourceId')
        physical_id = event.get('PhysicalResourceId')

        # The first CREATE_IN_PROGRESS of a nested stack has no physical ID yet
        if not logical_id or not physical_id:
            return

        if logical_id not in self.nested_stack_pollers:
            self.nested_stack_pollers[logical_id] = StackEventPoller(
                self.cfn,
                physical_id,
                start_time=event.get('Timestamp'),
                parent_stack_logical_ids=self.parent_stack_logical_ids + [logical_id],
            )

    def _update_resource_status(self, resource_event: ResourceEvent):
        event = resource_event.event
        logical_id = event.get('LogicalResourceId')
        if not logical_id or resource_event.is_stack_event and not resource_event.parent_stack_logical_ids:
            return

        path = '/'.join(resource_event.parent_stack_logical_ids + [logical_id])
        self.resource_statuses[path] = {
            'logicalId': logical_id,
            'type': event.get('ResourceType'),
            'status': event.get('ResourceStatus'),
            'statusReason': event.get('ResourceStatusReason', ''),
            'physicalId': event.get('PhysicalResourceId', ''),
            'timestamp': event.get('Timestamp'),
        }

    def get_stack_summary(self) -> Dict:
        """
        Summary of the resources tracked so far.

        Returns:
            Dictionary with resource counts by status and a progress percentage
        """
        total_resources = len(self.resource_statuses)
        completed = in_progress = failed = 0

        for resource in self.resource_statuses.values():
            status = resource['status'] or ''
            if status.endswith('_COMPLETE'):
                completed += 1
            elif status.endswith('_IN_PROGRESS'):
                in_progress += 1
            elif status.endswith('_FAILED'):
                failed += 1

        progress = 0
        if total_resources > 0:
            progress = int(((completed + failed) / total_resources) * 100)

        stack_events = [e for e in self.events if e.is_stack_event and not e.parent_stack_logical_ids]
        return {
            'name': self.stack_name,
            'status': stack_events[-1].status if stack_events else 'UNKNOWN',
            'totalResources': total_resources,
            'completedResources': completed,
            'inProgressResources': in_progress,
            'failedResources': failed,
            'progress': progress,
        }


def _timestamp(event: Dict) -> float:
    ts = event.get('Timestamp')
    if isinstance(ts, datetime):
        return ts.timestamp()
    return float(ts or 0)


def _chronological(events: List[ResourceEvent]) -> List[ResourceEvent]:
    events.reverse()
    return events
