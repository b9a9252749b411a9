from __future__ import annotations

import pytest

from cloudrig.clients import CloudrigContext
from cloudrig.config import CloudrigConfig
from cloudrig.state import Settings

from tests.fakes import FakeAWS

CALLER_IP = "203.0.113.7"


@pytest.fixture
def aws() -> FakeAWS:
    return FakeAWS()


@pytest.fixture
def config(tmp_path) -> CloudrigConfig:
    return CloudrigConfig(
        profile="test",
        region="ap-southeast-2",
        key_path=str(tmp_path / "cloudrig.pem"),
        poll_interval=0,
        command_poll_interval=0,
        image_wait_delay=0,
        instance_wait_delay=0,
    )


@pytest.fixture
def context(aws: FakeAWS, config: CloudrigConfig) -> CloudrigContext:
    async def public_ip() -> str:
        return CALLER_IP

    return CloudrigContext(
        config=config,
        ec2=aws.client("ec2"),
        iam=aws.client("iam"),
        ssm=aws.client("ssm"),
        public_ip=public_ip,
    )


@pytest.fixture
def ready_context(aws: FakeAWS, context: CloudrigContext) -> CloudrigContext:
    """Context whose settings already resolve every supporting resource."""
    aws.seed_all()
    image_id = aws.owned_images()[0]
    group_id = next(iter(aws.security_groups))
    context.settings = Settings(
        fleet_role_arn=aws.roles["cloudrig-spotfleet-4"]["Arn"],
        ssm_role_arn=aws.roles["cloudrig-ssm-4"]["Arn"],
        ssm_instance_profile_arn=aws.profiles["cloudrig-ssm-4"]["Arn"],
        image_id=image_id,
        security_group_id=group_id,
        key_name="cloudrig",
    )
    return context
