"""Session facade over the reconciler, lifecycle, image and command components.

Example:
    >>> from cloudrig import Cloudrig, CloudrigConfig
    >>> rig = Cloudrig.create(CloudrigConfig(profile="default", region="ap-southeast-2"))
    >>> questions, settings = await rig.setup()
    >>> for q in questions:
    ...     if ask(q.prompt):
    ...         await q.remediation()
    >>> handle = await rig.start()
    >>> await handle
    >>> print(await rig.run(["hostname"]))
    >>> await rig.stop()
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from loguru import logger

from .ami import ImageManager
from .clients import CloudrigContext, create_context
from .config import CloudrigConfig, required_config, validate_config
from .infra import Reconciler
from .lifecycle import Callback, LifecycleController, StartHandle
from .ssm import CommandExecutor
from .state import InstanceState, Question, Settings
from .wait import CancelToken

log = logger.bind(component="provider")


class Cloudrig:
    """One cloudrig session against one AWS account and region."""

    id: Final = "AWS"

    def __init__(self, context: CloudrigContext) -> None:
        self.context = context
        self.reconciler = Reconciler(context)
        self.lifecycle = LifecycleController(context)
        self.images = ImageManager(context)
        self.commands = CommandExecutor(context, self.lifecycle)

    @classmethod
    def create(cls, config: CloudrigConfig) -> Cloudrig:
        return cls(create_context(config))

    @property
    def settings(self) -> Settings:
        return self.context.settings

    @staticmethod
    def required_config() -> tuple[str, ...]:
        return required_config()

    def validate_config(self) -> list[str]:
        return validate_config(self.context.config)

    async def setup(self) -> tuple[list[Question], Settings]:
        return await self.reconciler.setup()

    async def state(self) -> InstanceState:
        return await self.lifecycle.get_state()

    async def public_dns(self) -> str:
        return await self.lifecycle.public_dns()

    async def start(
        self,
        on_ready: Callback[[str]] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> StartHandle:
        return await self.lifecycle.start(on_ready, cancel=cancel)

    async def stop(self, on_stopped: Callback[[]] | None = None) -> str:
        return await self.lifecycle.stop(on_stopped)

    async def run(self, commands: Sequence[str], *, cancel: CancelToken | None = None) -> str:
        return await self.commands.run(commands, cancel=cancel)

    async def update(self) -> str:
        """Snapshot the running instance into a new current image."""
        instance = await self.lifecycle.require_active()
        return await self.images.update_image(instance["InstanceId"], self.settings.image_id)

    async def update_and_stop(self, on_stopped: Callback[[]] | None = None) -> str:
        """Snapshot the running instance, then terminate it.

        Returns:
            The new image ID.
        """
        image_id = await self.update()
        log.info(f"Image '{image_id}' saved, stopping instance")
        await self.stop(on_stopped)
        return image_id
