"""
Application layer for plugin registration and sync.

Wires the Dataverse client, services, reflection provider and sync manager
for one environment, and implements the register, update and sync flows
used by the xrmctl CLI.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from config import Config, EnvironmentConfig, get_config
from dataverse import DataverseClient
from errors import ConfigurationError, SyncFault
from models import (
    PluginAssembly,
    PluginImage,
    PluginStep,
    PluginType,
    normalize_guid,
)
from plugin_service import AssemblyRegistrationInput, PluginService, encode_assembly
from reflection.base import ReflectionProvider
from reflection.registry import get_registry, register_builtin_providers
from registration import PluginRegistrationManager, PluginSyncResult
from registration_client import RegistrationClient
from solution_components import SolutionComponentService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for command-line use."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@dataclass
class OperationReport:
    """Outcome of registering or updating an assembly."""

    action: str
    assembly_id: str
    assembly_name: str
    environment: str
    result: Optional[PluginSyncResult] = None
    allow_create: Optional[bool] = None
    sync_error: Optional[SyncFault] = None
    solution_error: Optional[Exception] = None

    @property
    def message(self) -> str:
        base = (
            f"Plugin assembly {self.assembly_name} has been {self.action} "
            f"in {self.environment}."
        )
        if self.result is None:
            return base
        return f"{base} {self.result.summary(self.allow_create)}"


class Application:
    """Plugin registration application bound to one environment."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.environment: Optional[EnvironmentConfig] = None
        self.client: Optional[DataverseClient] = None
        self.plugin_service: Optional[PluginService] = None
        self.reflection_provider: Optional[ReflectionProvider] = None
        self.manager: Optional[PluginRegistrationManager] = None

    async def __aenter__(self) -> "Application":
        if self.plugin_service is None:
            await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def initialize(
        self,
        environment: Optional[str] = None,
        client: Optional[DataverseClient] = None,
    ) -> None:
        """Initialize all components."""
        self.environment = self.config.get_environment(environment)
        logger.info(f"Initializing for environment {self.environment.name}")

        dv_config = self.config.dataverse
        self.client = client or DataverseClient(
            base_url=self.environment.url,
            access_token=dv_config.access_token,
            api_version=dv_config.api_version,
            timeout=dv_config.timeout,
        )
        solution_components = SolutionComponentService(
            self.client, self.config.sync.default_solution_name
        )
        self.plugin_service = PluginService(
            RegistrationClient(self.client), solution_components
        )

        # Register built-in reflection providers
        registry = get_registry()
        if not registry.list_providers():
            register_builtin_providers()
        provider_name = self.config.reflection.provider
        self.reflection_provider = await registry.get_provider(
            provider_name, self.config.reflection.get_provider_config(provider_name)
        )
        self.manager = PluginRegistrationManager(self.reflection_provider)

        logger.info("All components initialized")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self.client:
            await self.client.close()

    def _require_initialized(self) -> None:
        if self.plugin_service is None or self.manager is None:
            raise RuntimeError("Application is not initialized")

    # Queries

    async def list_assemblies(self) -> List[PluginAssembly]:
        self._require_initialized()
        return await self.plugin_service.list_assemblies()

    async def list_plugin_types(self, assembly_id: str) -> List[PluginType]:
        self._require_initialized()
        return await self.plugin_service.list_plugin_types(assembly_id)

    async def list_steps(self, plugin_type_id: str) -> List[PluginStep]:
        self._require_initialized()
        return await self.plugin_service.list_steps(plugin_type_id)

    async def list_images(self, step_id: str) -> List[PluginImage]:
        self._require_initialized()
        return await self.plugin_service.list_images(step_id)

    # Operations

    async def register_assembly(
        self,
        assembly_path: str,
        name: Optional[str] = None,
        solution_name: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OperationReport:
        """
        Register a new assembly and create its plugin types, steps and images.

        A sync failure after the assembly was registered is reported in the
        returned OperationReport rather than raised.

        Raises:
            ConfigurationError: If the environment blocks creating components.
            XrmFault: If the assembly itself cannot be registered.
        """
        self._require_initialized()
        env = self.environment
        if not env.create_missing_components:
            raise ConfigurationError(
                f"Environment {env.name} is configured to block creating new "
                f"solution components. Enable createMissingComponents to register "
                f"plugin assemblies."
            )

        name = name or os.path.splitext(os.path.basename(assembly_path))[0]
        solution_name = self.config.solution_for(solution_name)
        registration = await self.plugin_service.register_assembly(
            AssemblyRegistrationInput(
                name=name,
                content_base64=encode_assembly(assembly_path),
                solution_name=solution_name,
            )
        )

        report = OperationReport(
            action="registered",
            assembly_id=registration.id,
            assembly_name=name,
            environment=env.name,
            allow_create=True,
            solution_error=registration.solution_error,
        )
        try:
            report.result = await self.manager.sync_plugin_types(
                self.plugin_service,
                registration.id,
                assembly_path,
                solution_name=solution_name,
                allow_create=True,
                cancel_event=cancel_event,
            )
        except SyncFault as e:
            logger.error(f"Assembly registered, but plugins failed to sync: {e}")
            report.sync_error = e

        logger.info(report.message)
        return report

    async def update_assembly(
        self,
        assembly_id: str,
        assembly_path: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OperationReport:
        """
        Replace an assembly's content and sync its plugin types.

        New components are created only when the environment allows it.
        """
        self._require_initialized()
        env = self.environment
        assemblies = await self.plugin_service.list_assemblies()
        assembly_name = next(
            (a.name for a in assemblies if a.id == normalize_guid(assembly_id)),
            "assembly",
        )

        await self.plugin_service.update_assembly(
            assembly_id, encode_assembly(assembly_path)
        )

        report = OperationReport(
            action="updated",
            assembly_id=assembly_id,
            assembly_name=assembly_name,
            environment=env.name,
            allow_create=env.create_missing_components,
        )
        try:
            report.result = await self.manager.sync_plugin_types(
                self.plugin_service,
                assembly_id,
                assembly_path,
                solution_name=None,
                allow_create=env.create_missing_components,
                cancel_event=cancel_event,
            )
        except SyncFault as e:
            logger.error(f"Assembly updated, but plugins failed to sync: {e}")
            report.sync_error = e

        logger.info(report.message)
        return report

    async def sync(
        self,
        assembly_id: str,
        assembly_path: str,
        solution_name: Optional[str] = None,
        allow_create: Optional[bool] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PluginSyncResult:
        """
        Sync plugin types without touching the assembly content.

        Raises:
            SyncFault: On the first fault.
        """
        self._require_initialized()
        if allow_create is None:
            allow_create = self.environment.create_missing_components
        return await self.manager.sync_plugin_types(
            self.plugin_service,
            assembly_id,
            assembly_path,
            solution_name=self.config.solution_for(solution_name),
            allow_create=allow_create,
            cancel_event=cancel_event,
        )
