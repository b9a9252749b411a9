"""Discovery and remediation of cloudrig's supporting AWS resources.

``Reconciler.setup()`` looks up the five resources a rig needs, records the
identifiers of the present ones in a fresh ``Settings`` and returns a
``Question`` for each absent one. Remediations are handed back un-run; the
caller decides whether to await them.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections.abc import Awaitable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from .ami import ImageManager
from .constants import (
    FLEET_ASSUME_ROLE_POLICY,
    FLEET_ROLE_NAME,
    FLEET_ROLE_POLICY_ARN,
    KEY_PAIR_NAME,
    SECURITY_GROUP_PREFIX,
    SSM_ASSUME_ROLE_POLICY,
    SSM_ROLE_NAME,
    SSM_ROLE_POLICY_ARNS,
)
from .errors import CloudrigError, LookupFailedError, RemediationError, aws_error_code
from .net import host_cidr
from .state import Question, Settings, SSMRole
from .tags import newest_image, owned, ownership_filter, ownership_tags

if TYPE_CHECKING:
    from .clients import CloudrigContext

AWS_ERRORS = (ClientError, BotoCoreError)
# The address lookup adds network and parse failures
REMEDIATION_ERRORS = (*AWS_ERRORS, aiohttp.ClientError, TimeoutError, ValueError)

log = logger.bind(component="reconciler")


class Reconciler:
    """Finds, or offers to create, the resources a rig depends on."""

    def __init__(self, context: CloudrigContext) -> None:
        self.context = context
        self.images = ImageManager(context)

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    async def setup(self) -> tuple[list[Question], Settings]:
        """Run all lookups concurrently and classify each resource.

        Returns:
            Questions for the absent resources and the settings of the
            present ones. The context's settings are replaced only when
            every required lookup succeeded.

        Raises:
            LookupFailedError: If any lookup other than the key pair fails.
        """
        fleet_role, ssm_role, image, security_group, key_pair = await asyncio.gather(
            self.find_fleet_role(),
            self.find_ssm_role(),
            self.find_image(),
            self.find_security_group(),
            self.find_key_pair(),
        )

        questions: list[Question] = []
        resolved: dict[str, str] = {}

        if fleet_role is None:
            questions.append(Question(
                resource="fleet_role",
                prompt=f"Shall I make a role called '{FLEET_ROLE_NAME}' for Spot Fleet requests?",
                remediation=self.create_fleet_role,
            ))
        else:
            resolved["fleet_role_arn"] = fleet_role["Arn"]

        role, profile = ssm_role.role, ssm_role.instance_profile
        if ssm_role.bound and role is not None and profile is not None:
            resolved["ssm_role_arn"] = role["Arn"]
            resolved["ssm_instance_profile_arn"] = profile["Arn"]
        else:
            questions.append(Question(
                resource="ssm_role",
                prompt=(
                    f"Shall I make a role and instance profile called '{SSM_ROLE_NAME}' "
                    "for SSM communication?"
                ),
                remediation=self.create_ssm_role,
            ))

        if image is None:
            questions.append(Question(
                resource="image",
                prompt="Shall I make an AMI based off the stock 'cloudrig' AMI?",
                remediation=self.images.create_image,
            ))
        else:
            resolved["image_id"] = image["ImageId"]

        if security_group is None:
            questions.append(Question(
                resource="security_group",
                prompt="Can I make a CloudRig security group for you?",
                remediation=self.create_security_group,
            ))
        else:
            resolved["security_group_id"] = security_group["GroupId"]

        if key_pair is None:
            questions.append(Question(
                resource="key_pair",
                prompt=f"Shall I make a Key Pair called '{KEY_PAIR_NAME}'?",
                remediation=self.create_key_pair,
            ))
        else:
            resolved["key_name"] = key_pair["KeyName"]

        settings = Settings(**resolved)
        self.context.settings = settings

        log.info(
            f"Setup complete: {len(questions)} missing resource(s)"
            + (f" ({', '.join(q.resource for q in questions)})" if questions else "")
        )
        return questions, settings

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def _lookup[T](self, resource: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except AWS_ERRORS as e:
            log.error(f"Lookup of {resource} failed: {e}")
            raise LookupFailedError(resource, e) from e

    async def _list_roles(self) -> list[dict[str, Any]]:
        async with self.context.iam() as iam:
            roles: list[dict[str, Any]] = []
            async for page in iam.get_paginator("list_roles").paginate():
                roles.extend(page.get("Roles", []))
            return roles

    async def _list_instance_profiles(self) -> list[dict[str, Any]]:
        async with self.context.iam() as iam:
            profiles: list[dict[str, Any]] = []
            async for page in iam.get_paginator("list_instance_profiles").paginate():
                profiles.extend(page.get("InstanceProfiles", []))
            return profiles

    async def find_fleet_role(self) -> dict[str, Any] | None:
        """Spot fleet execution role, by exact name."""
        roles = await self._lookup("fleet role", self._list_roles())
        return next((r for r in roles if r["RoleName"] == FLEET_ROLE_NAME), None)

    async def find_ssm_role(self) -> SSMRole:
        """Command role and its instance profile, by exact name.

        Both halves are looked up; a role without its bound profile is
        reported as such and treated as absent by ``setup``.
        """
        roles, profiles = await asyncio.gather(
            self._lookup("ssm role", self._list_roles()),
            self._lookup("ssm instance profile", self._list_instance_profiles()),
        )
        return SSMRole(
            role=next((r for r in roles if r["RoleName"] == SSM_ROLE_NAME), None),
            instance_profile=next(
                (p for p in profiles if p["InstanceProfileName"] == SSM_ROLE_NAME), None
            ),
        )

    async def find_image(self) -> dict[str, Any] | None:
        """Newest self-owned image carrying the ownership tag."""

        async def describe() -> list[dict[str, Any]]:
            async with self.context.ec2() as ec2:
                resp = await ec2.describe_images(Owners=["self"], Filters=ownership_filter())
                return resp.get("Images", [])

        images = owned(await self._lookup("image", describe()))
        if len(images) > 1:
            log.warning(f"{len(images)} images carry the ownership tag, using the newest")
        return newest_image(images)

    async def find_security_group(self) -> dict[str, Any] | None:
        """First security group carrying the ownership tag."""

        async def describe() -> list[dict[str, Any]]:
            async with self.context.ec2() as ec2:
                resp = await ec2.describe_security_groups(Filters=ownership_filter())
                return resp.get("SecurityGroups", [])

        groups = owned(await self._lookup("security group", describe()))
        return groups[0] if groups else None

    async def find_key_pair(self) -> dict[str, Any] | None:
        """Key pair by exact name; any failure means absent."""
        try:
            async with self.context.ec2() as ec2:
                resp = await ec2.describe_key_pairs(KeyNames=[KEY_PAIR_NAME])
        except AWS_ERRORS as e:
            log.debug(f"Key pair '{KEY_PAIR_NAME}' not found: {e}")
            return None

        pairs = resp.get("KeyPairs", [])
        if len(pairs) > 1:
            log.warning(f"{len(pairs)} key pairs named '{KEY_PAIR_NAME}', using the first")
        return pairs[0] if pairs else None

    # -------------------------------------------------------------------------
    # Remediation
    # -------------------------------------------------------------------------

    async def _step[T](self, description: str, call: Awaitable[T]) -> T:
        """Run one remediation step; log and raise on failure."""
        log.info(f"{description}...")
        try:
            return await call
        except REMEDIATION_ERRORS as e:
            log.error(f"{description} failed: {e}")
            raise RemediationError(description, e) from e

    async def _ensure(self, description: str, call: Awaitable[Any], *, exists: str) -> bool:
        """Like ``_step``, but the AWS error code ``exists`` means already done.

        Returns:
            False when the effect was already in place.
        """
        log.info(f"{description}...")
        try:
            await call
        except AWS_ERRORS as e:
            if aws_error_code(e) == exists:
                log.info(f"{description}: already done")
                return False
            log.error(f"{description} failed: {e}")
            raise RemediationError(description, e) from e
        return True

    async def create_fleet_role(self) -> None:
        """Create the spot fleet role and attach its managed policy."""
        async with self.context.iam() as iam:
            await self._ensure(
                f"Creating fleet role '{FLEET_ROLE_NAME}'",
                iam.create_role(
                    RoleName=FLEET_ROLE_NAME,
                    Path="/",
                    AssumeRolePolicyDocument=json.dumps(FLEET_ASSUME_ROLE_POLICY),
                ),
                exists="EntityAlreadyExists",
            )
            await self._step(
                f"Attaching the policy '{FLEET_ROLE_POLICY_ARN}'",
                iam.attach_role_policy(RoleName=FLEET_ROLE_NAME, PolicyArn=FLEET_ROLE_POLICY_ARN),
            )

    async def create_ssm_role(self) -> None:
        """Create the command role, its policies, its profile, and bind them.

        Strictly ordered; a failure stops the sequence where it happened.
        """
        async with self.context.iam() as iam:
            await self._ensure(
                f"Creating SSM role '{SSM_ROLE_NAME}'",
                iam.create_role(
                    RoleName=SSM_ROLE_NAME,
                    Path="/",
                    AssumeRolePolicyDocument=json.dumps(SSM_ASSUME_ROLE_POLICY),
                ),
                exists="EntityAlreadyExists",
            )
            for policy_arn in SSM_ROLE_POLICY_ARNS:
                await self._step(
                    f"Attaching the policy '{policy_arn}'",
                    iam.attach_role_policy(RoleName=SSM_ROLE_NAME, PolicyArn=policy_arn),
                )
            await self._ensure(
                f"Creating instance profile '{SSM_ROLE_NAME}'",
                iam.create_instance_profile(InstanceProfileName=SSM_ROLE_NAME),
                exists="EntityAlreadyExists",
            )

            description = f"Adding role '{SSM_ROLE_NAME}' to instance profile '{SSM_ROLE_NAME}'"
            # A profile holds one role, so LimitExceeded means some role is bound
            if await self._ensure(
                description,
                iam.add_role_to_instance_profile(
                    InstanceProfileName=SSM_ROLE_NAME,
                    RoleName=SSM_ROLE_NAME,
                ),
                exists="LimitExceeded",
            ):
                return

            resp = await self._step(
                f"Reading instance profile '{SSM_ROLE_NAME}'",
                iam.get_instance_profile(InstanceProfileName=SSM_ROLE_NAME),
            )
            bound = [r["RoleName"] for r in resp["InstanceProfile"].get("Roles", [])]
            if SSM_ROLE_NAME not in bound:
                log.error(f"Instance profile '{SSM_ROLE_NAME}' already holds {', '.join(bound)}")
                raise RemediationError(
                    description,
                    CloudrigError(f"profile already holds role(s) {', '.join(bound)}"),
                )

    async def create_security_group(self) -> str:
        """Create an ingress group open to the caller's address only.

        Returns:
            Security group ID.
        """
        async def caller_cidr() -> str:
            return host_cidr(await self.context.public_ip())

        cidr = await self._step("Resolving public address", caller_cidr())
        stamp = int(time.time() * 1000)

        async with self.context.ec2() as ec2:
            resp = await self._step(
                "Creating security group",
                ec2.create_security_group(
                    GroupName=f"{SECURITY_GROUP_PREFIX}{stamp}",
                    Description=f"{SECURITY_GROUP_PREFIX}{stamp}",
                ),
            )
            group_id = resp["GroupId"]

            await self._step(
                f"Authorizing all traffic from {cidr}",
                ec2.authorize_security_group_ingress(
                    GroupId=group_id,
                    IpPermissions=[
                        {
                            "IpProtocol": "-1",
                            "FromPort": -1,
                            "ToPort": -1,
                            "IpRanges": [{"CidrIp": cidr}],
                        }
                    ],
                ),
            )
            await self._step(
                f"Tagging '{group_id}'",
                ec2.create_tags(Resources=[group_id], Tags=ownership_tags()),
            )

        return group_id

    async def create_key_pair(self) -> Path:
        """Create the key pair and store its private key locally.

        Returns:
            Path of the written PEM file.
        """
        async with self.context.ec2() as ec2:
            resp = await self._step(
                f"Creating key pair '{KEY_PAIR_NAME}'",
                ec2.create_key_pair(KeyName=KEY_PAIR_NAME),
            )

        path = Path(self.context.config.key_path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(resp["KeyMaterial"])
        log.info(f"PEM stored at {path}")
        return path
