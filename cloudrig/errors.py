"""Exception hierarchy for cloudrig."""

from __future__ import annotations

from botocore.exceptions import ClientError


class CloudrigError(Exception):
    """Base class for every error raised by cloudrig."""


class LookupFailedError(CloudrigError):
    """A read-only discovery query against AWS failed."""

    def __init__(self, resource: str, cause: BaseException) -> None:
        super().__init__(f"Failed to look up {resource}: {cause}")
        self.resource = resource
        self.cause = cause


class RemediationError(CloudrigError):
    """A create/attach/tag step of a remediation failed part way."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause


class PreconditionError(CloudrigError):
    """An operation was called in a state that cannot satisfy it."""


class CommandFailedError(CloudrigError):
    """A remote command finished with a non-success status."""

    def __init__(self, command_id: str, status: str, output: str = "") -> None:
        super().__init__(f"Command {command_id} finished with status {status}")
        self.command_id = command_id
        self.status = status
        self.output = output


class PollTimeoutError(CloudrigError, TimeoutError):
    """A polling loop ran past its deadline."""


class PollCancelledError(CloudrigError):
    """A polling loop observed its cancellation token."""


def aws_error_code(e: BaseException) -> str:
    """``Error.Code`` of a botocore ``ClientError``; empty for anything else."""
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "")
    return ""
