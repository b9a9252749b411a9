"""Caller public address resolution for the ingress rule."""

from __future__ import annotations

import ipaddress

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .constants import PUBLIC_IP_URL

log = logger.bind(component="net")


class PublicIPResolver:
    """Asks an echo service for the caller's public IPv4 address."""

    def __init__(self, url: str = PUBLIC_IP_URL, timeout: float = 5.0) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        reraise=True,
    )
    async def __call__(self) -> str:
        async with aiohttp.ClientSession(timeout=self._timeout) as session, session.get(self.url) as resp:
            resp.raise_for_status()
            text = (await resp.text()).strip()

        address = ipaddress.IPv4Address(text)
        log.debug(f"Public address resolved to {address}")
        return str(address)


def host_cidr(address: str) -> str:
    """Single-host CIDR for ``address``."""
    return f"{ipaddress.IPv4Address(address)}/32"
