"""AWS client factories and the per-session context.

Provides typed client factories that are injected into every component
through a ``CloudrigContext`` built once per session.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aioboto3
from injector import Injector, Module, provider, singleton

from .config import CloudrigConfig
from .net import PublicIPResolver
from .state import Settings

if TYPE_CHECKING:
    from types_aiobotocore_ec2 import EC2Client
    from types_aiobotocore_iam import IAMClient
    from types_aiobotocore_ssm import SSMClient


# =============================================================================
# Service clients
# =============================================================================

type Client[T] = Callable[[], AbstractAsyncContextManager[T]]
"""Opens one short-lived aioboto3 client per `async with`."""


class ClientFactory:
    """One AWS service, bound to the session and region.

    Subclassed per service so the injector can tell the bindings apart.
    """

    def __init__(self, open_client: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._open = open_client

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._open()


class EC2ClientFactory(ClientFactory):
    pass


class IAMClientFactory(ClientFactory):
    pass


class SSMClientFactory(ClientFactory):
    pass


def _service_factory(session: aioboto3.Session, service: str, region: str) -> Callable[[], AbstractAsyncContextManager[Any]]:
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        async with session.client(service, region_name=region) as client:
            yield client

    return factory


# =============================================================================
# Injector wiring
# =============================================================================


class CloudrigModule(Module):
    """DI module that provides the aioboto3 session and client factories.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([CloudrigModule(config)])
        >>> ec2 = injector.get(EC2ClientFactory)
        >>> async with ec2() as client:
        ...     await client.describe_instances()
    """

    def __init__(self, config: CloudrigConfig) -> None:
        self._config = config

    @singleton
    @provider
    def provide_config(self) -> CloudrigConfig:
        return self._config

    @singleton
    @provider
    def provide_session(self, config: CloudrigConfig) -> aioboto3.Session:
        """Provide singleton aioboto3 session bound to the credentials profile."""
        return aioboto3.Session(profile_name=config.profile, region_name=config.region)

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: CloudrigConfig) -> EC2ClientFactory:
        return EC2ClientFactory(_service_factory(session, "ec2", config.region))

    @singleton
    @provider
    def provide_iam(self, session: aioboto3.Session, config: CloudrigConfig) -> IAMClientFactory:
        return IAMClientFactory(_service_factory(session, "iam", config.region))

    @singleton
    @provider
    def provide_ssm(self, session: aioboto3.Session, config: CloudrigConfig) -> SSMClientFactory:
        return SSMClientFactory(_service_factory(session, "ssm", config.region))

    @singleton
    @provider
    def provide_public_ip(self) -> PublicIPResolver:
        return PublicIPResolver()


# =============================================================================
# Session context
# =============================================================================


@dataclass
class CloudrigContext:
    """Everything one session needs, owned by the caller.

    ``settings`` is replaced wholesale by each reconciliation pass and by
    image updates; nothing else mutates it.
    """

    config: CloudrigConfig
    ec2: Client[EC2Client]
    iam: Client[IAMClient]
    ssm: Client[SSMClient]
    public_ip: Callable[[], Awaitable[str]]
    settings: Settings = field(default_factory=Settings)


def create_context(config: CloudrigConfig, *modules: Module) -> CloudrigContext:
    """Build a session context; extra ``modules`` can override bindings."""
    injector = Injector([CloudrigModule(config), *modules])
    return CloudrigContext(
        config=config,
        ec2=injector.get(EC2ClientFactory),
        iam=injector.get(IAMClientFactory),
        ssm=injector.get(SSMClientFactory),
        public_ip=injector.get(PublicIPResolver),
    )


__all__ = [
    "Client",
    "CloudrigContext",
    "CloudrigModule",
    "EC2ClientFactory",
    "IAMClientFactory",
    "SSMClientFactory",
    "create_context",
]
