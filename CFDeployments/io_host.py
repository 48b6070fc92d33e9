"""
IO Host

The deployment engine never prints or prompts directly. Everything the
user should see goes through an IoHost as a message, and every question
goes through it as a request. Hosts decide how to present them.
"""
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

LEVELS = ('trace', 'debug', 'info', 'warn', 'error', 'result')


@dataclass
class IoMessage:
    """A single notification for the host."""
    level: str
    message: str
    code: str = ''
    action: str = ''
    data: Optional[Any] = None
    time: datetime = field(default_factory=datetime.now)


@dataclass
class IoRequest(IoMessage):
    """A notification that expects an answer."""
    default_response: Any = None


class IoHost(Protocol):
    async def notify(self, msg: IoMessage) -> None:
        ...

    async def request_response(self, msg: IoRequest) -> Any:
        ...


class IO:
    """Message codes used by the deployment engine"""
    STACK_MONITOR_START = 'CDK_TOOLKIT_I5501'
    STACK_ACTIVITY = 'CDK_TOOLKIT_I5502'
    STACK_MONITOR_STOP = 'CDK_TOOLKIT_I5503'
    ASSET_PROGRESS = 'CDK_ASSETS_I0000'
    DEPLOY_CONFIRM_ROLLBACK = 'CDK_TOOLKIT_I5050'
    DEPLOY_CONFIRM_REDEPLOY = 'CDK_TOOLKIT_I5060'
    IMPORT_CONFIRM_IDENTIFIER = 'CDK_TOOLKIT_I3100'
    IMPORT_ENTER_PROPERTY = 'CDK_TOOLKIT_I3110'
    IMPORT_FAILED = 'CDK_TOOLKIT_E3900'
    DEFAULT = 'CDK_TOOLKIT_I0000'


class ConsoleIoHost:
    """
    Prints messages to the terminal and reads answers from stdin.

    When stdin is not a TTY every request is answered with its default.
    """

    _MARKERS = {
        'warn': '⚠ ',
        'error': '✗ ',
        'result': '✓ ',
    }

    def __init__(self, min_level: str = 'info', interactive: Optional[bool] = None):
        self.min_level = min_level
        self.interactive = sys.stdin.isatty() if interactive is None else interactive

    def _visible(self, level: str) -> bool:
        return LEVELS.index(level) >= LEVELS.index(self.min_level)

    async def notify(self, msg: IoMessage) -> None:
        if not self._visible(msg.level):
            return
        stream = sys.stderr if msg.level in ('warn', 'error') else sys.stdout
        print(f"{self._MARKERS.get(msg.level, '')}{msg.message}", file=stream)

    async def request_response(self, msg: IoRequest) -> Any:
        if not self.interactive:
            await self.notify(msg)
            return msg.default_response

        if isinstance(msg.default_response, bool):
            answer = await asyncio.to_thread(input, f"{msg.message} (y/n) ")
            if not answer.strip():
                return msg.default_response
            return answer.strip().lower().startswith('y')

        suffix = f" [{msg.default_response}]" if msg.default_response else ''
        answer = await asyncio.to_thread(input, f"{msg.message}{suffix}: ")
        return answer or msg.default_response


class IoHelper:
    """
    Binds an IoHost to an action name and adds level shortcuts.

    Args:
        host: The IoHost receiving messages
        action: Name of the operation ('deploy', 'rollback', 'destroy', 'import')
    """

    def __init__(self, host: IoHost, action: str = 'deploy'):
        self.host = host
        self.action = action

    async def notify(self, level: str, message: str, code: str = IO.DEFAULT, data: Any = None):
        logger.debug("[%s] %s", level, message)
        await self.host.notify(IoMessage(level=level, message=message, code=code, action=self.action, data=data))

    async def request_response(self, message: str, default: Any, code: str = IO.DEFAULT, data: Any = None) -> Any:
        req = IoRequest(
            level='info',
            message=message,
            code=code,
            action=self.action,
            data=data,
            default_response=default,
        )
        response = await self.host.request_response(req)
        return default if response is None else response

    async def debug(self, message: str, data: Any = None):
        await self.notify('debug', message, data=data)

    async def info(self, message: str, data: Any = None):
        await self.notify('info', message, data=data)

    async def warn(self, message: str, data: Any = None):
        await self.notify('warn', message, data=data)

    async def error(self, message: str, data: Any = None):
        await self.notify('error', message, data=data)

    async def result(self, message: str, data: Any = None):
        await self.notify('result', message, data=data)
