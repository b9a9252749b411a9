"""Remote command execution over AWS Systems Manager."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from .constants import FAILED_COMMAND_STATUSES, SSM_DOCUMENT_NAME, CommandStatus
from .errors import CommandFailedError
from .lifecycle import LifecycleController
from .wait import CancelToken, TerminalStateError, wait_for_ready

if TYPE_CHECKING:
    from .clients import CloudrigContext

log = logger.bind(component="ssm")


@dataclass(frozen=True, slots=True)
class Invocation:
    """One poll's view of a command invocation."""

    command_id: str
    status: str
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == CommandStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status in FAILED_COMMAND_STATUSES

    @classmethod
    def from_response(cls, command_id: str, invocations: list[dict[str, Any]]) -> Invocation | None:
        """Interpret ``list_command_invocations`` output; None while unlisted."""
        if not invocations:
            return None
        first = invocations[0]
        plugins = first.get("CommandPlugins") or [{}]
        return cls(
            command_id=command_id,
            status=first.get("Status", CommandStatus.PENDING),
            output=plugins[0].get("Output", ""),
        )


class CommandExecutor:
    """Runs command batches on the active instance and returns their output."""

    def __init__(self, context: CloudrigContext, lifecycle: LifecycleController | None = None) -> None:
        self.context = context
        self.lifecycle = lifecycle or LifecycleController(context)

    async def run(self, commands: Sequence[str], *, cancel: CancelToken | None = None) -> str:
        """Send ``commands`` as one invocation and wait for it to finish.

        Returns:
            Output captured by the first command plugin.

        Raises:
            PreconditionError: If no instance is running.
            CommandFailedError: If the invocation ends in a failure status.
            PollTimeoutError: If ``config.command_timeout`` elapses first.
        """
        instance = await self.lifecycle.require_active()
        instance_id = instance["InstanceId"]

        params: dict[str, Any] = {
            "DocumentName": SSM_DOCUMENT_NAME,
            "InstanceIds": [instance_id],
            "Parameters": {"commands": list(commands)},
        }
        if self.context.settings.ssm_role_arn:
            params["ServiceRoleArn"] = self.context.settings.ssm_role_arn

        quoted = " ".join(f"'{c}'" for c in commands)
        log.info(f"Sending {quoted} to {instance_id}")

        async with self.context.ssm() as ssm:
            resp = await ssm.send_command(**params)
            command_id = resp["Command"]["CommandId"]

            async def poll() -> Invocation | None:
                log.debug(f"Checking command '{command_id}'...")
                listing = await ssm.list_command_invocations(
                    CommandId=command_id,
                    InstanceId=instance_id,
                    Details=True,
                )
                return Invocation.from_response(command_id, listing.get("CommandInvocations", []))

            try:
                invocation = await wait_for_ready(
                    poll_fn=poll,
                    ready_check=lambda i: i.succeeded,
                    terminal_check=lambda i: i.failed,
                    timeout=self.context.config.command_timeout,
                    interval=self.context.config.command_poll_interval,
                    cancel=cancel,
                    description=f"command {command_id}",
                )
            except TerminalStateError as e:
                last: Invocation = e.result  # type: ignore[assignment]
                log.error(f"Command '{command_id}' finished with status {last.status}")
                raise CommandFailedError(command_id, last.status, last.output) from e

        return invocation.output
