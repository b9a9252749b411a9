"""Centralized constants and enums for cloudrig.

All magic strings, resource names and AWS identifiers live here so the
reconciler, lifecycle controller and image manager agree on them.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class CloudrigTag(StrEnum):
    """Tag keys cloudrig reads or writes."""

    MANAGED = "cloudrig"
    # Written by the spot fleet service on every instance it launches
    FLEET_REQUEST_ID = "aws:ec2spot:fleet-request-id"


MANAGED_VALUE: Final = "true"


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceStateName(StrEnum):
    """EC2 instance state names used as describe filters."""

    RUNNING = "running"
    PENDING = "pending"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"


# =============================================================================
# SSM Command Statuses
# =============================================================================


class CommandStatus(StrEnum):
    """SSM command invocation statuses."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    DELAYED = "Delayed"
    SUCCESS = "Success"
    CANCELLING = "Cancelling"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"
    UNDELIVERABLE = "Undeliverable"
    TERMINATED = "Terminated"


FAILED_COMMAND_STATUSES: Final = frozenset({
    CommandStatus.CANCELLED,
    CommandStatus.TIMED_OUT,
    CommandStatus.FAILED,
    CommandStatus.UNDELIVERABLE,
    CommandStatus.TERMINATED,
})


# =============================================================================
# IAM
# =============================================================================

FLEET_ROLE_NAME: Final = "cloudrig-spotfleet-4"
SSM_ROLE_NAME: Final = "cloudrig-ssm-4"

FLEET_ROLE_POLICY_ARN: Final = "arn:aws:iam::aws:policy/service-role/AmazonEC2SpotFleetRole"
SSM_ROLE_POLICY_ARNS: Final = (
    "arn:aws:iam::aws:policy/service-role/AmazonEC2RoleforSSM",
    "arn:aws:iam::aws:policy/AmazonSNSFullAccess",
)

FLEET_ASSUME_ROLE_POLICY: Final = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "spotfleet.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

SSM_ASSUME_ROLE_POLICY: Final = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": ["ec2.amazonaws.com", "ssm.amazonaws.com"]},
            "Action": "sts:AssumeRole",
        }
    ],
}


# =============================================================================
# EC2
# =============================================================================

KEY_PAIR_NAME: Final = "cloudrig"
DEFAULT_KEY_PATH: Final = "cloudrig.pem"

IMAGE_NAME: Final = "cloudrig"
SOURCE_IMAGE_ID: Final = "ami-f0d0d293"
SOURCE_IMAGE_REGION: Final = "ap-southeast-2"

SECURITY_GROUP_PREFIX: Final = "CloudRig"

DEFAULT_INSTANCE_TYPE: Final = "g2.2xlarge"
DEFAULT_MAX_PRICE: Final = "0.4"

SSM_DOCUMENT_NAME: Final = "AWS-RunPowerShellScript"

PUBLIC_IP_URL: Final = "https://api.ipify.org"


# =============================================================================
# Polling (seconds)
# =============================================================================

FULFILLMENT_POLL_INTERVAL: Final = 5.0
COMMAND_POLL_INTERVAL: Final = 1.0

IMAGE_WAIT_DELAY: Final = 15
IMAGE_WAIT_MAX_ATTEMPTS: Final = 240
INSTANCE_WAIT_DELAY: Final = 15
INSTANCE_WAIT_MAX_ATTEMPTS: Final = 80
