"""
Plugin Registration Manager - reconciles reflected plugin types with an
environment.

Given the plugin types reflected from a local assembly and the types
registered under that assembly in Dataverse, computes the difference and
applies it through the PluginService:

    create     types reflected locally but not registered (policy permitting)
    reconcile  types on both sides; declared steps and images are matched
               and created, updated or removed one level down
    remove     registered types no longer reflected, children first

Steps and images that local metadata does not mention are never touched.
Only an explicit ABSENT declaration removes them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from errors import SyncFault, XrmFault
from models import (
    DeclaredState,
    ImageDeclaration,
    PluginImage,
    PluginStep,
    PluginType,
    ReflectedType,
    SolutionComponentType,
    StepDeclaration,
    StepStatus,
    normalize_attribute_set,
    normalize_guid,
)
from plugin_service import PluginService
from reflection.base import ReflectionProvider


@dataclass
class PluginSyncResult:
    """Human-readable descriptors of what a sync changed."""

    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped_creation: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.removed)

    def counts(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "removed": len(self.removed),
            "skipped_creation": len(self.skipped_creation),
        }

    def summary(self, allow_create: Optional[bool] = None) -> str:
        """One-line summary, e.g. "Plugins: 2 created, 3 skipped (creation disabled)."."""
        parts = []
        if self.created:
            parts.append(f"{len(self.created)} created")
        if self.updated:
            parts.append(f"{len(self.updated)} updated")
        if self.removed:
            parts.append(f"{len(self.removed)} removed")
        if self.skipped_creation:
            parts.append(f"{len(self.skipped_creation)} skipped (creation disabled)")

        suffix = " Sync was cancelled before completion." if self.cancelled else ""
        if not parts:
            return f"Plugins: no changes detected.{suffix}"
        if not self.has_changes and allow_create is False:
            return (
                f"Plugins: creation skipped by environment settings "
                f"({len(self.skipped_creation)} skipped).{suffix}"
            )
        return f"Plugins: {', '.join(parts)}.{suffix}"


@dataclass
class TypePartition:
    """Reflected and registered types split by full type name."""

    to_create: List[ReflectedType] = field(default_factory=list)
    to_remove: List[PluginType] = field(default_factory=list)
    to_keep: List[Tuple[ReflectedType, PluginType]] = field(default_factory=list)


def partition_plugin_types(
    local: List[ReflectedType], remote: List[PluginType]
) -> TypePartition:
    """
    Split local and remote types by case-sensitive full type name.

    Duplicate names on either side are collapsed to their first
    occurrence, so a reflected name is never created twice.
    """
    local_by_name: Dict[str, ReflectedType] = {}
    for reflected in local:
        local_by_name.setdefault(reflected.full_type_name, reflected)

    remote_by_name: Dict[str, PluginType] = {}
    for plugin_type in remote:
        remote_by_name.setdefault(plugin_type.full_name, plugin_type)

    partition = TypePartition()
    for name, reflected in local_by_name.items():
        existing = remote_by_name.get(name)
        if existing is None:
            partition.to_create.append(reflected)
        else:
            partition.to_keep.append((reflected, existing))

    for name, plugin_type in remote_by_name.items():
        if name not in local_by_name:
            partition.to_remove.append(plugin_type)

    return partition


def step_descriptor(step_name: str, type_name: str) -> str:
    return f"step '{step_name}' on {type_name}"


def image_descriptor(image_name: str, step_name: str) -> str:
    return f"image '{image_name}' on step '{step_name}'"


def diff_step(declaration: StepDeclaration, step: PluginStep) -> Dict[str, Any]:
    """Fields the declaration sets that differ from the registered step."""
    changes: Dict[str, Any] = {}
    if declaration.name and declaration.name != step.name:
        changes["name"] = declaration.name
    if declaration.mode is not None and declaration.mode.value != step.mode:
        changes["mode"] = declaration.mode.value
    if declaration.rank is not None and declaration.rank != step.rank:
        changes["rank"] = declaration.rank
    if declaration.filtering_attributes is not None and normalize_attribute_set(
        declaration.filtering_attributes
    ) != normalize_attribute_set(step.filtering_attributes):
        changes["filtering_attributes"] = list(declaration.filtering_attributes)
    if declaration.enabled is not None:
        enabled = step.status != StepStatus.DISABLED.value
        if declaration.enabled != enabled:
            changes["enabled"] = declaration.enabled
    return changes


def diff_image(declaration: ImageDeclaration, image: PluginImage) -> Dict[str, Any]:
    """Fields the declaration sets that differ from the registered image."""
    changes: Dict[str, Any] = {}
    if declaration.image_type.value != image.image_type:
        changes["image_type"] = declaration.image_type.value
    if declaration.alias != (image.entity_alias or ""):
        changes["entity_alias"] = declaration.alias
    if normalize_attribute_set(declaration.attributes) != normalize_attribute_set(
        image.attributes
    ):
        changes["attributes"] = list(declaration.attributes)
    if declaration.message_property_name and (
        declaration.message_property_name.lower()
        != (image.message_property_name or "").lower()
    ):
        changes["message_property_name"] = declaration.message_property_name
    return changes


@dataclass
class SyncContext:
    """State for a single sync run."""

    service: PluginService
    assembly_id: str
    solution_name: Optional[str]
    allow_create: bool
    result: PluginSyncResult


class PluginRegistrationManager:
    """
    Reconciles a local assembly's plugin types with an environment.

    The manager keeps no state between runs. Each sync works on a snapshot
    of local and remote types taken at its start and issues remote calls
    one at a time. It logs at DEBUG only; presentation belongs to callers.
    """

    def __init__(
        self,
        reflection_provider: ReflectionProvider,
        logger: Optional[logging.Logger] = None,
    ):
        self.reflection_provider = reflection_provider
        self.logger = logger or logging.getLogger(__name__)

    async def sync_plugin_types(
        self,
        plugin_service: PluginService,
        assembly_id: str,
        assembly_path: str,
        solution_name: Optional[str] = None,
        allow_create: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PluginSyncResult:
        """
        Sync the plugin types registered under an assembly with the types
        reflected from its local file.

        Args:
            plugin_service: Service bound to the target environment
            assembly_id: Id of the registered assembly
            assembly_path: Path of the local assembly file
            solution_name: Solution that new components are added to;
                blank or the default solution skips this
            allow_create: When False nothing is created; would-be creations
                are reported in skipped_creation
            cancel_event: Checked between partitions only. When set, the
                remaining partitions are skipped and the result is marked
                cancelled.

        Returns:
            PluginSyncResult describing what changed.

        Raises:
            SyncFault: On the first fault. Writes already issued are not
                undone; running the sync again is safe.
        """
        assembly_id = normalize_guid(assembly_id)
        result = PluginSyncResult()
        ctx = SyncContext(
            service=plugin_service,
            assembly_id=assembly_id,
            solution_name=solution_name.strip() if solution_name else None,
            allow_create=allow_create,
            result=result,
        )

        phase = "reflect"
        try:
            local = await self.reflection_provider.extract_plugin_types(assembly_path)
            phase = "read"
            remote = await plugin_service.list_plugin_types(assembly_id)
            partition = partition_plugin_types(local, remote)
            self.logger.debug(
                f"Assembly {assembly_id}: {len(partition.to_create)} to create, "
                f"{len(partition.to_keep)} to reconcile, "
                f"{len(partition.to_remove)} to remove"
            )

            phases = [
                ("create", self._create_types, partition.to_create),
                ("reconcile", self._reconcile_types, partition.to_keep),
                ("remove", self._remove_types, partition.to_remove),
            ]
            for phase, handler, items in phases:
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.debug(f"Sync cancelled before {phase}")
                    result.cancelled = True
                    break
                await handler(ctx, items)
        except XrmFault as e:
            raise SyncFault(
                f"Plugin sync failed during {phase}: {e}",
                cause=e,
                partition=phase,
                partial_result=result,
            ) from e

        return result

    # Create partition

    async def _create_types(
        self, ctx: SyncContext, to_create: List[ReflectedType]
    ) -> None:
        for reflected in to_create:
            type_name = reflected.full_type_name
            if not ctx.allow_create:
                ctx.result.skipped_creation.append(type_name)
                continue

            created = await ctx.service.create_plugin_type(ctx.assembly_id, reflected)
            ctx.result.created.append(type_name)
            self.logger.debug(f"Created plugin type {type_name} ({created.id})")
            await self._attach(ctx, created.id, SolutionComponentType.PLUGIN_TYPE)

            for declaration in reflected.steps:
                if declaration.state is DeclaredState.PRESENT:
                    await self._create_step(ctx, created.id, type_name, declaration)

    async def _create_step(
        self,
        ctx: SyncContext,
        plugin_type_id: str,
        type_name: str,
        declaration: StepDeclaration,
    ) -> None:
        step_name = declaration.display_name(type_name)
        created = await ctx.service.create_step(plugin_type_id, type_name, declaration)
        ctx.result.created.append(step_descriptor(step_name, type_name))
        self.logger.debug(f"Created step {step_name} ({created.id})")
        await self._attach(ctx, created.id, SolutionComponentType.PLUGIN_STEP)

        for image in declaration.images:
            if image.state is DeclaredState.PRESENT:
                await self._create_image(
                    ctx, created.id, step_name, declaration.message, image
                )

    async def _create_image(
        self,
        ctx: SyncContext,
        step_id: str,
        step_name: str,
        message_name: Optional[str],
        declaration: ImageDeclaration,
    ) -> None:
        created = await ctx.service.create_image(step_id, message_name, declaration)
        ctx.result.created.append(image_descriptor(declaration.name, step_name))
        self.logger.debug(f"Created image {declaration.name} ({created.id})")
        await self._attach(ctx, created.id, SolutionComponentType.PLUGIN_IMAGE)

    async def _attach(
        self,
        ctx: SyncContext,
        component_id: str,
        component_type: SolutionComponentType,
    ) -> None:
        if ctx.solution_name:
            await ctx.service.add_to_solution(
                component_id, component_type, ctx.solution_name
            )

    # Reconcile partition

    async def _reconcile_types(
        self,
        ctx: SyncContext,
        to_keep: List[Tuple[ReflectedType, PluginType]],
    ) -> None:
        for reflected, plugin_type in to_keep:
            if not reflected.steps:
                continue
            remote_steps = await ctx.service.list_steps(plugin_type.id)
            await self._reconcile_steps(
                ctx, plugin_type, reflected.full_type_name, reflected.steps, remote_steps
            )

    async def _reconcile_steps(
        self,
        ctx: SyncContext,
        plugin_type: PluginType,
        type_name: str,
        declarations: List[StepDeclaration],
        remote_steps: List[PluginStep],
    ) -> None:
        steps_by_key: Dict[Tuple, PluginStep] = {}
        for step in remote_steps:
            steps_by_key.setdefault(step.natural_key, step)

        seen = set()
        for declaration in declarations:
            key = declaration.natural_key
            if key in seen:
                continue
            seen.add(key)

            existing = steps_by_key.get(key)
            if declaration.state is DeclaredState.ABSENT:
                if existing is not None:
                    await self._delete_step(ctx, existing)
                    ctx.result.removed.append(step_descriptor(existing.name, type_name))
                continue

            if existing is None:
                if not ctx.allow_create:
                    ctx.result.skipped_creation.append(
                        step_descriptor(declaration.display_name(type_name), type_name)
                    )
                    continue
                await self._create_step(ctx, plugin_type.id, type_name, declaration)
                continue

            changes = diff_step(declaration, existing)
            if changes:
                await ctx.service.update_step(existing.id, changes)
                step_name = changes.get("name", existing.name)
                ctx.result.updated.append(step_descriptor(step_name, type_name))
                self.logger.debug(f"Updated step {step_name}: {sorted(changes)}")

            if declaration.images:
                await self._reconcile_images(ctx, existing, declaration)

    async def _reconcile_images(
        self, ctx: SyncContext, step: PluginStep, declaration: StepDeclaration
    ) -> None:
        remote_images = await ctx.service.list_images(step.id)
        images_by_name: Dict[str, PluginImage] = {}
        for image in remote_images:
            images_by_name.setdefault(image.name, image)

        seen = set()
        for image_declaration in declaration.images:
            if image_declaration.name in seen:
                continue
            seen.add(image_declaration.name)

            existing = images_by_name.get(image_declaration.name)
            descriptor = image_descriptor(image_declaration.name, step.name)
            if image_declaration.state is DeclaredState.ABSENT:
                if existing is not None:
                    await ctx.service.delete_image(existing.id)
                    ctx.result.removed.append(descriptor)
                continue

            if existing is None:
                if not ctx.allow_create:
                    ctx.result.skipped_creation.append(descriptor)
                    continue
                await self._create_image(
                    ctx,
                    step.id,
                    step.name,
                    step.message_name or declaration.message,
                    image_declaration,
                )
                continue

            changes = diff_image(image_declaration, existing)
            if changes:
                await ctx.service.update_image(existing.id, changes)
                ctx.result.updated.append(descriptor)

    # Remove partition

    async def _remove_types(
        self, ctx: SyncContext, to_remove: List[PluginType]
    ) -> None:
        for plugin_type in to_remove:
            for step in await ctx.service.list_steps(plugin_type.id):
                await self._delete_step(ctx, step)
            await ctx.service.delete_plugin_type(plugin_type.id)
            ctx.result.removed.append(plugin_type.full_name)
            self.logger.debug(f"Removed plugin type {plugin_type.full_name}")

    async def _delete_step(self, ctx: SyncContext, step: PluginStep) -> None:
        """Delete a step's images, then the step."""
        for image in await ctx.service.list_images(step.id):
            await ctx.service.delete_image(image.id)
        await ctx.service.delete_step(step.id)
