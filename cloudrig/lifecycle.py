"""Spot instance lifecycle: request, fulfillment, boot, health, teardown.

The controller never caches an instance handle. Every decision is made on
a fresh query of instances carrying the ownership tag; ``stop()`` recovers
the originating spot fleet request from the instance's association tag.

Flow:
    start(): ABSENT → REQUEST_SUBMITTED → INSTANCE_TAGGING
             → AWAITING_RUNNING → AWAITING_HEALTHY → RUNNING
    stop():  RUNNING → CANCELLING_REQUEST → AWAITING_TERMINATED → ABSENT

A start() aborted by its token or timeout before INSTANCE_TAGGING completes
cancels its own spot fleet request and returns to ABSENT.

``start()`` and ``stop()`` are not serialized against each other; callers
must not run them concurrently.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from .constants import InstanceStateName
from .errors import CloudrigError, PollCancelledError, PollTimeoutError, PreconditionError
from .retry import on_error_codes, retry
from .state import Instance, InstanceState
from .tags import fleet_request_id, instances_from_reservations, ownership_filter, ownership_tags, state_filter
from .wait import CancelToken, wait_for_ready

if TYPE_CHECKING:
    from .clients import CloudrigContext

type Callback[**P] = Callable[P, Awaitable[Any] | Any]

log = logger.bind(component="lifecycle")


class LifecycleState(StrEnum):
    ABSENT = "absent"
    REQUEST_SUBMITTED = "request-submitted"
    INSTANCE_TAGGING = "instance-tagging"
    AWAITING_RUNNING = "awaiting-running"
    AWAITING_HEALTHY = "awaiting-healthy"
    RUNNING = "running"
    CANCELLING_REQUEST = "cancelling-request"
    AWAITING_TERMINATED = "awaiting-terminated"


# Before tagging, a fulfilled instance is invisible to stop()
UNTAGGED_STATES = frozenset({LifecycleState.REQUEST_SUBMITTED, LifecycleState.INSTANCE_TAGGING})


async def _invoke(callback: Callback[...] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass(eq=False)
class StartHandle:
    """Handle on an in-flight ``start()``.

    Await it (or ``wait()``) for the ready instance ID; ``cancel()`` aborts
    the polling. An abort or timeout before the instance carries the
    ownership tag also cancels the spot fleet request, terminating anything
    it launched. Later aborts leave the instance for ``stop()``.
    """

    params: dict[str, Any]
    request_id: str
    token: CancelToken
    task: asyncio.Task[str] = field(repr=False)
    controller: LifecycleController = field(repr=False)

    @property
    def state(self) -> LifecycleState:
        return self.controller.state

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self, reason: str = "start cancelled") -> None:
        self.token.cancel(reason)

    async def wait(self) -> str:
        return await self.task

    def __await__(self) -> Generator[Any, None, str]:
        return self.wait().__await__()


class LifecycleController:
    """Starts and stops the single cloudrig spot instance."""

    def __init__(self, context: CloudrigContext) -> None:
        self.context = context
        self.state = LifecycleState.ABSENT

    def _transition(self, state: LifecycleState) -> None:
        log.debug(f"{self.state} -> {state}")
        self.state = state

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def _describe(self, state_name: InstanceStateName) -> tuple[Instance, ...]:
        async with self.context.ec2() as ec2:
            resp = await ec2.describe_instances(
                Filters=ownership_filter(state_filter(state_name)),
            )
        return tuple(instances_from_reservations(resp))

    async def active(self) -> tuple[Instance, ...]:
        return await self._describe(InstanceStateName.RUNNING)

    async def pending(self) -> tuple[Instance, ...]:
        return await self._describe(InstanceStateName.PENDING)

    async def shutting_down(self) -> tuple[Instance, ...]:
        return await self._describe(InstanceStateName.SHUTTING_DOWN)

    async def get_state(self) -> InstanceState:
        """Fresh, concurrent snapshot of owned instances by state."""
        active, pending, shutting_down = await asyncio.gather(
            self.active(), self.pending(), self.shutting_down(),
        )
        return InstanceState(active=active, pending=pending, shutting_down=shutting_down)

    async def require_active(self) -> Instance:
        """The running instance, or PreconditionError."""
        instance = (await self.get_state()).active_instance
        if instance is None:
            raise PreconditionError("There's no instance running...")
        return instance

    async def public_dns(self) -> str:
        return (await self.require_active()).get("PublicDnsName", "")

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def _request_params(self) -> dict[str, Any]:
        settings = self.context.settings
        needed = ("fleet_role_arn", "ssm_instance_profile_arn", "image_id", "security_group_id", "key_name")
        missing = [name for name in needed if getattr(settings, name) is None]
        if missing:
            raise PreconditionError(
                f"Cannot start without {', '.join(missing)}; run setup first"
            )

        return {
            "SpotFleetRequestConfig": {
                "IamFleetRole": settings.fleet_role_arn,
                "LaunchSpecifications": [
                    {
                        "IamInstanceProfile": {"Arn": settings.ssm_instance_profile_arn},
                        "ImageId": settings.image_id,
                        "InstanceType": self.context.config.instance_type,
                        "KeyName": settings.key_name,
                        "SecurityGroups": [{"GroupId": settings.security_group_id}],
                    }
                ],
                "Type": "request",
                "SpotPrice": self.context.config.max_price,
                "TargetCapacity": 1,
            }
        }

    async def start(
        self,
        on_ready: Callback[[str]] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> StartHandle:
        """Submit the spot fleet request and return without waiting for it.

        Fulfillment, tagging, boot and health checks continue in a
        background task; ``on_ready`` is called with the instance ID once
        the instance passes its status checks.
        """
        params = self._request_params()

        async with self.context.ec2() as ec2:
            try:
                resp = await ec2.request_spot_fleet(**params)
            except (ClientError, BotoCoreError) as e:
                log.error(f"Spot fleet request failed: {e}")
                raise

        request_id = resp["SpotFleetRequestId"]
        self._transition(LifecycleState.REQUEST_SUBMITTED)
        log.info(f"Request made: {request_id}")

        token = cancel or CancelToken()
        task = asyncio.create_task(
            self._await_ready(request_id, token, on_ready),
            name=f"cloudrig-start-{request_id}",
        )
        return StartHandle(
            params=params,
            request_id=request_id,
            token=token,
            task=task,
            controller=self,
        )

    async def _await_ready(
        self,
        request_id: str,
        token: CancelToken,
        on_ready: Callback[[str]] | None,
    ) -> str:
        config = self.context.config
        polling = {
            "timeout": config.start_timeout,
            "interval": config.poll_interval,
            "backoff": config.poll_backoff,
            "max_interval": config.max_poll_interval,
            "cancel": token,
        }

        try:
            log.info("Now we wait for fulfillment...")
            fleet = await wait_for_ready(
                poll_fn=lambda: self._fleet_instances(request_id),
                ready_check=bool,
                description=f"spot fleet request {request_id}",
                **polling,
            )
            instance_id = fleet[0]["InstanceId"]
            log.info(f"Got an instance: {instance_id}")

            self._transition(LifecycleState.INSTANCE_TAGGING)
            await token.guard(self._tag_instance(instance_id))
            log.info(f"Tagged '{instance_id}'")

            self._transition(LifecycleState.AWAITING_RUNNING)
            log.info("Now we wait for our instance to be ready...")
            await wait_for_ready(
                poll_fn=self.active,
                ready_check=lambda active: any(i["InstanceId"] == instance_id for i in active),
                description=f"instance {instance_id} to run",
                **polling,
            )

            self._transition(LifecycleState.AWAITING_HEALTHY)
            log.info("Now we wait for our instance to be OK...")
            await token.guard(self._wait_healthy(instance_id))

            self._transition(LifecycleState.RUNNING)
            log.info("Ready")
        except (PollCancelledError, PollTimeoutError) as e:
            log.error(f"Start of {request_id} aborted in state {self.state}: {e}")
            if self.state in UNTAGGED_STATES:
                await self._abandon(request_id)
            raise
        except (ClientError, BotoCoreError, CloudrigError) as e:
            log.error(f"Start of {request_id} stopped in state {self.state}: {e}")
            raise

        await _invoke(on_ready, instance_id)
        return instance_id

    async def _abandon(self, request_id: str) -> None:
        """Cancel a request whose instance, if any, is not yet ours to stop."""
        log.warning(f"Cancelling spot fleet request {request_id}")
        async with self.context.ec2() as ec2:
            await self._cancel_request(ec2, request_id)
        self._transition(LifecycleState.ABSENT)

    @staticmethod
    async def _cancel_request(ec2, request_id: str) -> None:
        resp = await ec2.cancel_spot_fleet_requests(
            SpotFleetRequestIds=[request_id],
            TerminateInstances=True,
        )
        if failures := resp.get("UnsuccessfulFleetRequests", []):
            error = failures[0].get("Error", {})
            raise CloudrigError(
                f"Could not cancel {request_id}: "
                f"{error.get('Code', 'Unknown')}: {error.get('Message', '')}"
            )

    async def _fleet_instances(self, request_id: str) -> list[dict[str, Any]]:
        async with self.context.ec2() as ec2:
            resp = await ec2.describe_spot_fleet_instances(SpotFleetRequestId=request_id)
        return resp.get("ActiveInstances", [])

    @retry(on=on_error_codes("InvalidInstanceID.NotFound"), attempts=5, delay=2.0)
    async def _tag_instance(self, instance_id: str) -> None:
        async with self.context.ec2() as ec2:
            await ec2.create_tags(Resources=[instance_id], Tags=ownership_tags())

    async def _wait_healthy(self, instance_id: str) -> None:
        async with self.context.ec2() as ec2:
            waiter = ec2.get_waiter("instance_status_ok")
            await waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig=self.context.config.instance_waiter(),
            )

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    async def stop(self, on_stopped: Callback[[]] | None = None) -> str:
        """Cancel the running instance's spot fleet request and wait it out.

        Returns:
            ID of the terminated instance.

        Raises:
            PreconditionError: No active instance, or it lacks the
                association tag. No mutating call is issued in either case.
        """
        instance = await self.require_active()
        instance_id = instance["InstanceId"]

        request_id = fleet_request_id(instance)
        if request_id is None:
            raise PreconditionError(
                f"Instance {instance_id} has no spot fleet request tag; cannot stop it"
            )

        self._transition(LifecycleState.CANCELLING_REQUEST)
        log.info(f"Stopping: {request_id}")

        async with self.context.ec2() as ec2:
            try:
                await self._cancel_request(ec2, request_id)

                self._transition(LifecycleState.AWAITING_TERMINATED)
                log.info("Waiting for instance to be terminated...")
                waiter = ec2.get_waiter("instance_terminated")
                await waiter.wait(
                    InstanceIds=[instance_id],
                    WaiterConfig=self.context.config.instance_waiter(),
                )
            except (ClientError, BotoCoreError, CloudrigError) as e:
                log.error(f"Stop of {request_id} failed in state {self.state}: {e}")
                raise

        self._transition(LifecycleState.ABSENT)
        log.info("Terminated")
        await _invoke(on_stopped)
        return instance_id
