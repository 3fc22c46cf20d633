"""Progress reporting for running stack operations."""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from ..constants import STACK_NOT_FOUND_CODE
from .aws import aws_call, error_code, error_message
from .logging_config import get_deploy_logger
from .settings import deploy_settings


class ProgressMonitor(Protocol):
    """Anything that can be started before, and stopped after, a stack operation."""

    def start(self) -> Any: ...

    async def stop(self) -> None: ...


# (cfn client, stack name, resource count hint, change set creation time) -> monitor
MonitorFactory = Callable[[Any, str, int | None, datetime | None], ProgressMonitor]


class StackActivityMonitor:
    """Polls DescribeStackEvents in the background and logs each new event."""

    def __init__(
        self,
        cfn: Any,
        stack_name: str,
        resources_total: int | None = None,
        change_set_creation_time: datetime | None = None,
        poll_interval: float | None = None,
    ):
        self.cfn = cfn
        self.stack_name = stack_name
        self.resources_total = resources_total
        self.start_time = change_set_creation_time
        self.poll_interval = (
            deploy_settings.activity_poll_interval if poll_interval is None else poll_interval
        )
        self.logger = get_deploy_logger().bind(component="stack_activity", stack_name=stack_name)
        self.resources_done = 0
        self.failures: list[dict[str, Any]] = []
        self._seen: set[str] = set()
        self._task: asyncio.Task | None = None

    def start(self) -> "StackActivityMonitor":
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self

    async def stop(self) -> None:
        """Stop polling and log whatever happened since the last poll."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except (ClientError, BotoCoreError) as e:
            self.logger.warning("Stack activity polling failed", error=str(e))
            return
        try:
            await self._poll_once()
        except (ClientError, BotoCoreError) as e:
            self.logger.warning("Could not read final stack events", error=str(e))

    async def _run(self) -> None:
        while True:
            await self._poll_once()
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self) -> None:
        try:
            events = await self._read_new_events()
        except ClientError as e:
            if error_code(e) == STACK_NOT_FOUND_CODE and "does not exist" in error_message(e):
                # Deleted stacks stop reporting events
                return
            raise
        for event in events:
            self._log_event(event)

    async def _read_new_events(self) -> list[dict[str, Any]]:
        """Return unseen events, oldest first."""
        new_events: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"StackName": self.stack_name}
        while True:
            response = await aws_call(self.cfn.describe_stack_events, **kwargs)
            reached_known = False
            for event in response.get("StackEvents") or []:
                event_id = event.get("EventId")
                timestamp = event.get("Timestamp")
                if event_id in self._seen:
                    reached_known = True
                    break
                if self.start_time and timestamp and timestamp < self.start_time:
                    reached_known = True
                    break
                self._seen.add(event_id)
                new_events.append(event)
            next_token = response.get("NextToken")
            if reached_known or not next_token:
                break
            kwargs["NextToken"] = next_token
        new_events.reverse()
        return new_events

    def _log_event(self, event: dict[str, Any]) -> None:
        status = event.get("ResourceStatus") or ""
        logical_id = event.get("LogicalResourceId")
        is_stack_event = logical_id == self.stack_name

        if status.endswith("_COMPLETE") and not is_stack_event:
            self.resources_done += 1

        progress = (
            f"{self.resources_done}/{self.resources_total}"
            if self.resources_total
            else str(self.resources_done)
        )
        fields = {
            "progress": progress,
            "logical_id": logical_id,
            "resource_type": event.get("ResourceType"),
            "status": status,
        }
        if status.endswith("FAILED"):
            self.failures.append(event)
            self.logger.error(
                "Resource operation failed", reason=event.get("ResourceStatusReason"), **fields
            )
        else:
            self.logger.info("Stack event", **fields)


def default_monitor_factory(
    cfn: Any,
    stack_name: str,
    resources_total: int | None,
    change_set_creation_time: datetime | None,
) -> ProgressMonitor:
    return StackActivityMonitor(cfn, stack_name, resources_total, change_set_creation_time)
