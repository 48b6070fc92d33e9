"""
Stack Activity Monitor

Runs a StackEventPoller in the background while a stack operation is in
progress, reports every new event to the IoHost and collects failure
reasons.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..io_host import IO
from .deployment_formatter import format_resource_event
from .event_tracker import ResourceEvent, StackEventPoller

logger = logging.getLogger(__name__)


def stack_event_has_error_message(status: str) -> bool:
    return status.endswith('_FAILED') or status in ('ROLLBACK_IN_PROGRESS', 'UPDATE_ROLLBACK_IN_PROGRESS')


class StackProgress:
    """Completed vs. total resource counter"""

    def __init__(self, total: Optional[int] = None):
        self.total = total
        self.completed = 0
        self._prev_complete_state: Dict[str, str] = {}

    def update(self, logical_id: str, status: str):
        if status.endswith('_COMPLETE_CLEANUP_IN_PROGRESS'):
            self.completed += 1
        elif status.endswith('_COMPLETE'):
            prev_state = self._prev_complete_state.get(logical_id)
            if prev_state is None:
                self.completed += 1
            elif prev_state != status:
                # A completed resource is being rolled back
                self.completed -= 1
            self._prev_complete_state[logical_id] = status

    @property
    def formatted(self) -> str:
        width = len(str(self.total)) if self.total else 1
        total = self.total if self.total is not None else '?'
        return f"{str(self.completed).rjust(width)}/{total}"

    def as_dict(self) -> Dict[str, Any]:
        return {'completed': self.completed, 'total': self.total, 'formatted': self.formatted}


class StackActivityMonitor:
    """
    Background monitor for one stack operation.

    Args:
        cfn: CloudFormation client
        stack_name: Name of the stack being changed
        io_helper: IoHelper receiving activity messages
        stack: The StackArtifact being deployed, used for resource paths
        resources_total: Expected number of resources touched, if known
        change_set_creation_time: Only events after this moment are reported
        poll_interval: Seconds between polls
        sleep: Delay function, replaceable in tests
    """

    def __init__(
        self,
        cfn,
        stack_name: str,
        io_helper,
        stack=None,
        resources_total: Optional[int] = None,
        change_set_creation_time: Optional[datetime] = None,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.stack_name = stack_name
        self.stack = stack
        self.io_helper = io_helper
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.deployment = str(uuid.uuid4())

        if resources_total is None and stack is not None:
            resources_total = len(stack.resources)
        self.progress = StackProgress(resources_total)

        self.poller = StackEventPoller(
            cfn,
            stack_name,
            start_time=change_set_creation_time or datetime.now(timezone.utc),
        )
        self.errors: List[str] = []
        self.active = False
        self._task: Optional[asyncio.Task] = None
        self._read_lock = asyncio.Lock()

    async def start(self) -> 'StackActivityMonitor':
        self.active = True
        await self.io_helper.notify('debug', f"{self.stack_name}: monitoring stack activity", IO.STACK_MONITOR_START, {
            'deployment': self.deployment,
            'stackName': self.stack_name,
            'resourcesTotal': self.progress.total,
        })
        self._task = asyncio.create_task(self._tick_loop())
        return self

    async def stop(self):
        """Stop polling, then read the remaining events so no failure reason is lost"""
        self.active = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        try:
            await self._read_new_events()
        except Exception as e:
            # The operation's own outcome is what gets reported, not a failed last poll
            logger.debug("Error occurred while reading final stack events: %s", e)

        await self.io_helper.notify('debug', f"{self.stack_name}: stopped monitoring stack activity", IO.STACK_MONITOR_STOP, {
            'deployment': self.deployment,
            'stackName': self.stack_name,
        })

    async def __aenter__(self) -> 'StackActivityMonitor':
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _tick_loop(self):
        while self.active:
            await self.sleep(self.poll_interval)
            if not self.active:
                break
            try:
                await self._read_new_events()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A failed poll must not end the monitor; the next tick retries
                logger.debug("Error occurred while monitoring stack: %s", e)

    async def _read_new_events(self):
        async with self._read_lock:
            for resource_event in await self.poller.poll():
                self._on_new_event(resource_event)
                await self.io_helper.notify(
                    'info',
                    self._format_activity(resource_event),
                    IO.STACK_ACTIVITY,
                    format_resource_event(resource_event, self.deployment, self.progress.as_dict()),
                )

    def _on_new_event(self, resource_event: ResourceEvent):
        event = resource_event.event
        status = event.get('ResourceStatus', '')

        if not resource_event.parent_stack_logical_ids:
            self.progress.update(event.get('LogicalResourceId', ''), status)

        if stack_event_has_error_message(status):
            reason = event.get('ResourceStatusReason') or ''
            # Cancellations and the stack's own summary message are noise
            if 'cancelled' not in reason and event.get('StackName') != event.get('LogicalResourceId'):
                self.errors.append(f"{self._resource_path(resource_event)}: {reason}")

    def _resource_path(self, resource_event: ResourceEvent) -> str:
        logical_id = resource_event.logical_id
        if resource_event.parent_stack_logical_ids:
            return '/'.join(resource_event.parent_stack_logical_ids + [logical_id])
        if self.stack is not None:
            return self.stack.resource_path(logical_id)
        return logical_id

    def _format_activity(self, resource_event: ResourceEvent) -> str:
        event = resource_event.event
        reason = event.get('ResourceStatusReason')
        line = (
            f"{self.stack_name} | {self.progress.formatted} | "
            f"{event.get('ResourceStatus', '')} | {event.get('ResourceType', '')} | "
            f"{self._resource_path(resource_event)}"
        )
        if reason and stack_event_has_error_message(event.get('ResourceStatus', '')):
            line += f" {reason}"
        return line
