"""Client wiring for one reconcile scope.

An ``Injector`` is built per scope, so every pass owns its own HTTP sessions
and token cache; nothing is shared between passes.

Usage:
    >>> from injector import Injector
    >>> injector = Injector([CloudModule(config, credentials)])
    >>> vpc = injector.get(VPCClient)
"""

from __future__ import annotations

from collections.abc import Callable

from injector import Binder, Module, provider, singleton

from capibm.config import CloudConfig, Credentials, auth_for
from capibm.infra.http import Auth, HttpClient

from .power import PowerVSClient
from .resource_controller import ResourceControllerClient, ServiceInstance
from .vpc import VPCClient


class PowerVSClientFactory:
    """Builds a ``PowerVSClient`` once the service instance has been located."""

    def __init__(self, factory: Callable[[ServiceInstance], PowerVSClient]) -> None:
        self._factory = factory

    def __call__(self, instance: ServiceInstance) -> PowerVSClient:
        return self._factory(instance)


class CloudModule(Module):
    def __init__(self, config: CloudConfig, credentials: Credentials) -> None:
        self._config = config
        self._credentials = credentials

    def configure(self, binder: Binder) -> None:
        binder.bind(CloudConfig, to=self._config)

    @singleton
    @provider
    def provide_auth(self, config: CloudConfig) -> Auth:
        return auth_for(self._credentials, timeout=config.request_timeout)

    @singleton
    @provider
    def provide_vpc(self, config: CloudConfig, auth: Auth) -> VPCClient:
        http = HttpClient(
            config.vpc_url(),
            auth,
            timeout=config.request_timeout,
            default_params={"version": config.api_version, "generation": "2"},
        )
        return VPCClient(http, page_limit=config.page_limit)

    @singleton
    @provider
    def provide_resource_controller(
        self, config: CloudConfig, auth: Auth,
    ) -> ResourceControllerClient:
        http = HttpClient(
            config.resource_controller_endpoint, auth, timeout=config.request_timeout,
        )
        return ResourceControllerClient(http)

    @singleton
    @provider
    def provide_power_factory(self, config: CloudConfig, auth: Auth) -> PowerVSClientFactory:
        def factory(instance: ServiceInstance) -> PowerVSClient:
            http = HttpClient(
                config.power_url(instance.region),
                auth,
                timeout=config.request_timeout,
                default_headers={"CRN": instance.crn, "Content-Type": "application/json"},
            )
            return PowerVSClient(http, instance.guid)

        return PowerVSClientFactory(factory)
