"""Machine image lifecycle: base image copy and live-instance snapshots.

Exactly one self-owned image is meant to carry the ownership tag at a time.
``update_image`` moves the tag from the old image to the new one in two
separate calls; a crash between them leaves zero or two tagged images, which
discovery resolves by taking the newest.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import TYPE_CHECKING

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from .constants import IMAGE_NAME, SOURCE_IMAGE_ID, SOURCE_IMAGE_REGION
from .errors import RemediationError
from .tags import ownership_tags

if TYPE_CHECKING:
    from .clients import CloudrigContext

log = logger.bind(component="ami")


class ImageManager:
    def __init__(self, context: CloudrigContext) -> None:
        self.context = context

    async def _wait_available(self, ec2, image_id: str) -> None:
        log.info(f"Waiting for image '{image_id}' to become available...")
        waiter = ec2.get_waiter("image_available")
        await waiter.wait(ImageIds=[image_id], WaiterConfig=self.context.config.image_waiter())

    async def create_image(self) -> str:
        """Copy the stock cloudrig image into this account and tag it.

        Returns:
            The new image ID.
        """
        log.info("Creating image...")
        try:
            async with self.context.ec2() as ec2:
                resp = await ec2.copy_image(
                    Name=IMAGE_NAME,
                    SourceImageId=SOURCE_IMAGE_ID,
                    SourceRegion=SOURCE_IMAGE_REGION,
                )
                image_id = resp["ImageId"]

                await self._wait_available(ec2, image_id)

                log.info(f"Adding tags to '{image_id}'...")
                await ec2.create_tags(Resources=[image_id], Tags=ownership_tags())
        except (ClientError, BotoCoreError) as e:
            log.error(f"Image creation failed: {e}")
            raise RemediationError("Creating image", e) from e

        self.context.settings = replace(self.context.settings, image_id=image_id)
        return image_id

    async def update_image(self, instance_id: str, old_image_id: str | None) -> str:
        """Capture ``instance_id`` into a new image and hand it the ownership tag.

        The instance is not rebooted. The tag is removed from ``old_image_id``
        before it is added to the new image.

        Returns:
            The new image ID.
        """
        log.info(f"Creating image from '{instance_id}'...")
        try:
            async with self.context.ec2() as ec2:
                resp = await ec2.create_image(
                    InstanceId=instance_id,
                    Name=f"{IMAGE_NAME}-{int(time.time() * 1000)}",
                    NoReboot=True,
                )
                image_id = resp["ImageId"]

                await self._wait_available(ec2, image_id)

                if old_image_id:
                    log.info(f"Removing tag from '{old_image_id}'")
                    await ec2.delete_tags(Resources=[old_image_id], Tags=ownership_tags())

                log.info(f"Adding tag to '{image_id}'")
                await ec2.create_tags(Resources=[image_id], Tags=ownership_tags())
        except (ClientError, BotoCoreError) as e:
            log.error(f"Image update failed: {e}")
            raise RemediationError("Updating image", e) from e

        self.context.settings = replace(self.context.settings, image_id=image_id)
        return image_id
