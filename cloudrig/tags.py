"""Ownership-tag interpretation.

cloudrig keeps no database: the AWS inventory filtered by the ``cloudrig=true``
tag is the state. Everything that decides "is this ours?" goes through the
functions in this module so discovery and lifecycle code agree.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .constants import MANAGED_VALUE, CloudrigTag

type Tag = Mapping[str, str]
type Filter = dict[str, Any]
type Resource = Mapping[str, Any]


def ownership_tags() -> list[dict[str, str]]:
    """Tags payload for ``create_tags``/``delete_tags``."""
    return [{"Key": CloudrigTag.MANAGED, "Value": MANAGED_VALUE}]


def ownership_filter(*extra: Filter) -> list[Filter]:
    """EC2 ``Filters`` selecting cloudrig-owned resources, plus ``extra``."""
    return [{"Name": f"tag:{CloudrigTag.MANAGED}", "Values": [MANAGED_VALUE]}, *extra]


def state_filter(*states: str) -> Filter:
    return {"Name": "instance-state-name", "Values": list(states)}


def tag_value(tags: Iterable[Tag] | None, key: str) -> str | None:
    """Value of ``key`` in an AWS tag list, or None."""
    for tag in tags or ():
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def is_owned(tags: Iterable[Tag] | None) -> bool:
    """True iff the tag list carries the ownership tag.

    A resource without it is invisible to cloudrig, however well it
    otherwise matches.
    """
    return tag_value(tags, CloudrigTag.MANAGED) == MANAGED_VALUE


def owned(resources: Iterable[Resource]) -> list[Resource]:
    return [r for r in resources if is_owned(r.get("Tags"))]


def fleet_request_id(instance: Resource) -> str | None:
    """Spot fleet request that launched ``instance``, from its association tag."""
    return tag_value(instance.get("Tags"), CloudrigTag.FLEET_REQUEST_ID)


def instances_from_reservations(response: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Flatten ``describe_instances`` output across all reservations."""
    return [
        instance
        for reservation in response.get("Reservations", [])
        for instance in reservation.get("Instances", [])
    ]


def newest_image(images: Sequence[Resource]) -> Resource | None:
    """Pick one image when several carry the ownership tag.

    Most recent ``CreationDate`` wins; ``ImageId`` breaks exact ties so the
    choice never depends on the order AWS returned them in.
    """
    if not images:
        return None
    return max(images, key=lambda i: (i.get("CreationDate", ""), i.get("ImageId", "")))
