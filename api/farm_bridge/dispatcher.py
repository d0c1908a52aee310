"""
Operator pump commands and the per-device auto-off timer.

An ON command with a positive duration schedules a forced PUMP_OFF after
min(duration, max_auto_off_seconds). A later ON replaces the pending timer;
OFF and AUTO cancel it. At most one timer per device is pending at any time.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, DefaultDict, Dict, Optional

from .errors import CommandNotAcknowledged, InvalidAction, TransportUnavailable

logger = logging.getLogger(__name__)

MAX_AUTO_OFF_SECONDS = 3600.0


class Action(str, Enum):
    ON = "ON"
    OFF = "OFF"
    AUTO = "AUTO"


COMMANDS = {
    Action.ON: "PUMP_ON",
    Action.OFF: "PUMP_OFF",
    Action.AUTO: "AUTO",
}

Publisher = Callable[[str, str], Awaitable[None]]


@dataclass
class PumpTimer:
    device_id: str
    delay: float
    task: asyncio.Task


def parse_action(action) -> Action:
    if isinstance(action, Action):
        return action
    try:
        return Action(action)
    except ValueError:
        raise InvalidAction(action) from None


class CommandDispatcher:
    def __init__(self, publish: Publisher, max_auto_off_seconds: float = MAX_AUTO_OFF_SECONDS) -> None:
        self._publish = publish
        # configuration may shorten the cap, never lengthen it
        self.max_auto_off_seconds = min(max_auto_off_seconds, MAX_AUTO_OFF_SECONDS)
        self._timers: Dict[str, PumpTimer] = {}
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def pending(self, device_id: str) -> Optional[PumpTimer]:
        return self._timers.get(device_id)

    async def issue_command(self, device_id: str, action, duration: Optional[float] = None) -> str:
        """
        Publish the command for `action` and update the auto-off timer.

        Raises InvalidAction before anything is published, and lets
        TransportUnavailable propagate with the timer state untouched.
        The one exception is an ON whose publish was queued but not
        acknowledged: the client may still deliver it, so its auto-off is
        scheduled before the error propagates.
        Returns the command string that was published.
        """
        act = parse_action(action)
        command = COMMANDS[act]

        async with self._locks[device_id]:
            try:
                await self._publish(device_id, command)
            except CommandNotAcknowledged:
                if act is Action.ON and _positive(duration):
                    self._schedule(device_id, min(float(duration), self.max_auto_off_seconds))
                raise
            logger.info("[pump] %s -> %s", device_id, command)

            if act is Action.ON:
                if _positive(duration):
                    self._schedule(device_id, min(float(duration), self.max_auto_off_seconds))
            else:
                self.cancel(device_id)
        return command

    def _schedule(self, device_id: str, delay: float) -> None:
        self.cancel(device_id)
        task = asyncio.get_running_loop().create_task(self._auto_off(device_id, delay))
        self._timers[device_id] = PumpTimer(device_id, delay, task)
        logger.info("[pump] auto-off for %s in %.0fs", device_id, delay)

    async def _auto_off(self, device_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        timer = self._timers.get(device_id)
        if timer is not None and timer.task is asyncio.current_task():
            del self._timers[device_id]
        try:
            await self._publish(device_id, COMMANDS[Action.OFF])
        except TransportUnavailable as exc:
            logger.error("[pump] auto-off for %s could not be sent: %s", device_id, exc)
        else:
            logger.info("[pump] auto-off fired for %s", device_id)

    def cancel(self, device_id: str) -> bool:
        timer = self._timers.pop(device_id, None)
        if timer is None:
            return False
        timer.task.cancel()
        logger.info("[pump] cancelled pending auto-off for %s", device_id)
        return True

    def cancel_all(self) -> int:
        count = 0
        for device_id in list(self._timers):
            if self.cancel(device_id):
                count += 1
        return count


def _positive(duration) -> bool:
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        return False
    return duration > 0
