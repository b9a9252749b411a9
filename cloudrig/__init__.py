"""cloudrig: a single on-demand spot instance, provisioned and driven on AWS.

Example:
    import asyncio
    from cloudrig import Cloudrig, CloudrigConfig

    async def main():
        rig = Cloudrig.create(CloudrigConfig(profile="default", region="ap-southeast-2"))
        questions, _ = await rig.setup()
        for q in questions:
            await q.remediation()
        await (await rig.start())
        print(await rig.run(["Get-Date"]))
        await rig.stop()

    asyncio.run(main())
"""

from cloudrig.ami import ImageManager
from cloudrig.clients import CloudrigContext, CloudrigModule, create_context
from cloudrig.config import CloudrigConfig, load_config, required_config, resolve_config, validate_config
from cloudrig.errors import (
    CloudrigError,
    CommandFailedError,
    LookupFailedError,
    PollCancelledError,
    PollTimeoutError,
    PreconditionError,
    RemediationError,
)
from cloudrig.infra import Reconciler
from cloudrig.lifecycle import LifecycleController, LifecycleState, StartHandle
from cloudrig.logging import LogConfig, setup_logging, teardown_logging
from cloudrig.provider import Cloudrig
from cloudrig.ssm import CommandExecutor
from cloudrig.state import InstanceState, Question, Settings
from cloudrig.wait import CancelToken

__version__ = "0.1.0"

__all__ = [
    "CancelToken",
    "Cloudrig",
    "CloudrigConfig",
    "CloudrigContext",
    "CloudrigError",
    "CloudrigModule",
    "CommandExecutor",
    "CommandFailedError",
    "ImageManager",
    "InstanceState",
    "LifecycleController",
    "LifecycleState",
    "LogConfig",
    "LookupFailedError",
    "PollCancelledError",
    "PollTimeoutError",
    "PreconditionError",
    "Question",
    "Reconciler",
    "RemediationError",
    "Settings",
    "StartHandle",
    "create_context",
    "load_config",
    "required_config",
    "resolve_config",
    "setup_logging",
    "teardown_logging",
    "validate_config",
]
