"""
Plugin Service - facade over plugin registration records.

Wraps the RegistrationClient with normalized identifiers, dataclass
records and solution membership. Every create returns a CreatedRecord
whose id either came back in the response or was recovered by looking the
new record up by name, since some create responses omit the id.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from errors import NotFoundFault, XrmFault
from models import (
    AssemblyRegistration,
    CreatedRecord,
    IdSource,
    ImageDeclaration,
    IsolationMode,
    PluginAssembly,
    PluginImage,
    PluginStep,
    PluginType,
    ReflectedType,
    SolutionComponentType,
    SourceType,
    StepDeclaration,
    StepMode,
    StepStatus,
    default_message_property,
    join_attributes,
    normalize_entity,
    normalize_guid,
)
from registration_client import RegistrationClient
from solution_components import SolutionComponentService

logger = logging.getLogger(__name__)


@dataclass
class AssemblyRegistrationInput:
    """Content and metadata for registering a new assembly."""

    name: str
    content_base64: str
    solution_name: Optional[str] = None
    isolation_mode: IsolationMode = IsolationMode.SANDBOX
    source_type: SourceType = SourceType.DATABASE


def encode_assembly(path: str) -> str:
    """Read an assembly file and return its content as base64."""
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


def _record_id(record: Optional[Dict[str, Any]], id_field: str) -> Optional[str]:
    if not record:
        return None
    value = record.get(id_field) or record.get("id")
    return normalize_guid(value) if value else None


# Row mapping


def _to_assembly(row: Dict[str, Any]) -> PluginAssembly:
    return PluginAssembly(
        id=normalize_guid(row["pluginassemblyid"]),
        name=row.get("name") or "",
        version=row.get("version"),
        isolation_mode=row.get("isolationmode"),
        source_type=row.get("sourcetype"),
        public_key_token=row.get("publickeytoken"),
        culture=row.get("culture"),
    )


def _to_type(row: Dict[str, Any]) -> PluginType:
    return PluginType(
        id=normalize_guid(row["plugintypeid"]),
        name=row.get("name") or "",
        type_name=row.get("typename"),
        friendly_name=row.get("friendlyname"),
    )


def _to_step(row: Dict[str, Any]) -> PluginStep:
    message = row.get("sdkmessageid") or {}
    message_filter = row.get("sdkmessagefilterid") or {}
    return PluginStep(
        id=normalize_guid(row["sdkmessageprocessingstepid"]),
        name=row.get("name") or "",
        stage=row.get("stage"),
        mode=row.get("mode"),
        rank=row.get("rank"),
        status=row.get("statecode"),
        status_reason=row.get("statuscode"),
        message_name=message.get("name"),
        primary_entity=message_filter.get("primaryobjecttypecode"),
        filtering_attributes=row.get("filteringattributes"),
    )


def _to_image(row: Dict[str, Any]) -> PluginImage:
    return PluginImage(
        id=normalize_guid(row["sdkmessageprocessingstepimageid"]),
        name=row.get("name") or "",
        image_type=row.get("imagetype"),
        entity_alias=row.get("entityalias"),
        attributes=row.get("attributes"),
        message_property_name=row.get("messagepropertyname"),
    )


class PluginService:
    """Read and write plugin assemblies, types, steps and images."""

    def __init__(
        self,
        registration_client: RegistrationClient,
        solution_components: SolutionComponentService,
    ):
        self.client = registration_client
        self.solution_components = solution_components

    # Assemblies

    async def register_assembly(
        self, data: AssemblyRegistrationInput
    ) -> AssemblyRegistration:
        """
        Register a new plugin assembly.

        If the create response omits the id it is recovered by name. A
        failure to add the assembly to the solution does not fail the
        registration; it is returned in solution_error for the caller.

        Raises:
            RemoteFault: If the create call fails.
            NotFoundFault: If no id can be determined for the new assembly.
        """
        response = await self.client.create_assembly(
            {
                "name": data.name,
                "content": data.content_base64,
                "sourcetype": data.source_type.value,
                "isolationmode": data.isolation_mode.value,
            }
        )

        created = await self._resolve_created(
            response,
            "pluginassemblyid",
            lambda: self.client.find_assembly_by_name(data.name),
            f"plugin assembly {data.name}",
        )
        registration = AssemblyRegistration(id=created.id, id_source=created.source)
        logger.info(f"Registered plugin assembly {data.name} ({created.id})")

        if data.solution_name:
            try:
                await self.solution_components.ensure_in_solution(
                    created.id,
                    SolutionComponentType.PLUGIN_ASSEMBLY,
                    data.solution_name,
                )
            except XrmFault as e:
                logger.warning(
                    f"Assembly {data.name} registered but not added to solution "
                    f"{data.solution_name}: {e}"
                )
                registration.solution_error = e

        return registration

    async def update_assembly(self, assembly_id: str, content_base64: str) -> None:
        """Replace an assembly's content. Solution membership is unchanged."""
        await self.client.update_assembly_content(
            normalize_guid(assembly_id), content_base64
        )

    async def list_assemblies(self) -> List[PluginAssembly]:
        rows = await self.client.list_assemblies()
        return [_to_assembly(r) for r in rows if r.get("pluginassemblyid") and r.get("name")]

    async def find_assembly_by_name(self, name: str) -> Optional[PluginAssembly]:
        row = await self.client.find_assembly_by_name(name)
        if not row or not row.get("pluginassemblyid") or not row.get("name"):
            return None
        return _to_assembly(row)

    # Reads

    async def list_plugin_types(self, assembly_id: str) -> List[PluginType]:
        rows = await self.client.list_types_for_assembly(normalize_guid(assembly_id))
        return [_to_type(r) for r in rows if r.get("plugintypeid") and r.get("name")]

    async def list_steps(self, plugin_type_id: str) -> List[PluginStep]:
        rows = await self.client.list_steps_for_type(normalize_guid(plugin_type_id))
        return [
            _to_step(r)
            for r in rows
            if r.get("sdkmessageprocessingstepid") and r.get("name")
        ]

    async def list_images(self, step_id: str) -> List[PluginImage]:
        rows = await self.client.list_images_for_step(normalize_guid(step_id))
        return [
            _to_image(r)
            for r in rows
            if r.get("sdkmessageprocessingstepimageid") and r.get("name")
        ]

    # Plugin types

    async def create_plugin_type(
        self, assembly_id: str, reflected: ReflectedType
    ) -> CreatedRecord:
        assembly_id = normalize_guid(assembly_id)
        type_name = reflected.full_type_name
        response = await self.client.create_type(
            {
                "typename": type_name,
                "name": type_name,
                "friendlyname": reflected.friendly_name or type_name,
                "pluginassemblyid@odata.bind": f"/pluginassemblies({assembly_id})",
            }
        )
        return await self._resolve_created(
            response,
            "plugintypeid",
            lambda: self.client.find_type_by_name(assembly_id, type_name),
            f"plugin type {type_name}",
        )

    async def delete_plugin_type(self, plugin_type_id: str) -> None:
        await self.client.delete_type(normalize_guid(plugin_type_id))

    # Steps

    async def create_step(
        self, plugin_type_id: str, type_name: str, declaration: StepDeclaration
    ) -> CreatedRecord:
        """
        Register a step for a plugin type.

        Raises:
            NotFoundFault: If the SDK message, or its filter for the primary
                entity, does not exist.
        """
        plugin_type_id = normalize_guid(plugin_type_id)
        name = declaration.display_name(type_name)

        message = await self.client.find_sdk_message(declaration.message)
        message_id = _record_id(message, "sdkmessageid")
        if not message_id:
            raise NotFoundFault(
                f"SDK message {declaration.message} not found.",
                entity="sdkmessage",
                key=declaration.message,
            )

        payload: Dict[str, Any] = {
            "name": name,
            "stage": declaration.stage.value,
            "mode": (declaration.mode or StepMode.SYNCHRONOUS).value,
            "rank": declaration.rank if declaration.rank is not None else 1,
            "supporteddeployment": 0,
            "eventhandler_plugintype@odata.bind": f"/plugintypes({plugin_type_id})",
            "sdkmessageid@odata.bind": f"/sdkmessages({message_id})",
        }
        if declaration.description:
            payload["description"] = declaration.description
        if declaration.filtering_attributes:
            payload["filteringattributes"] = join_attributes(
                declaration.filtering_attributes
            )

        entity = normalize_entity(declaration.primary_entity)
        if entity:
            message_filter = await self.client.find_sdk_message_filter(message_id, entity)
            filter_id = _record_id(message_filter, "sdkmessagefilterid")
            if not filter_id:
                raise NotFoundFault(
                    f"Message {declaration.message} is not available for entity {entity}.",
                    entity="sdkmessagefilter",
                    key=f"{declaration.message}/{entity}",
                )
            payload["sdkmessagefilterid@odata.bind"] = f"/sdkmessagefilters({filter_id})"

        response = await self.client.create_step(payload)
        created = await self._resolve_created(
            response,
            "sdkmessageprocessingstepid",
            lambda: self.client.find_step_by_name(plugin_type_id, name),
            f"step {name}",
        )

        if declaration.enabled is False:
            await self.update_step(created.id, {"enabled": False})
        return created

    async def update_step(self, step_id: str, changes: Dict[str, Any]) -> None:
        """
        Update step fields.

        Args:
            step_id: Step id
            changes: Any of name, mode, rank, filtering_attributes, enabled
        """
        payload: Dict[str, Any] = {}
        if "name" in changes:
            payload["name"] = changes["name"]
        if "mode" in changes:
            payload["mode"] = StepMode(changes["mode"]).value
        if "rank" in changes:
            payload["rank"] = changes["rank"]
        if "filtering_attributes" in changes:
            payload["filteringattributes"] = join_attributes(
                changes["filtering_attributes"] or []
            )
        if "enabled" in changes:
            status = StepStatus.ENABLED if changes["enabled"] else StepStatus.DISABLED
            payload["statecode"] = status.value
            payload["statuscode"] = status.status_reason

        if payload:
            await self.client.update_step(normalize_guid(step_id), payload)

    async def delete_step(self, step_id: str) -> None:
        await self.client.delete_step(normalize_guid(step_id))

    # Images

    async def create_image(
        self,
        step_id: str,
        message_name: Optional[str],
        declaration: ImageDeclaration,
    ) -> CreatedRecord:
        step_id = normalize_guid(step_id)
        response = await self.client.create_image(
            {
                "name": declaration.name,
                "entityalias": declaration.alias,
                "imagetype": declaration.image_type.value,
                "attributes": join_attributes(declaration.attributes),
                "messagepropertyname": declaration.message_property_name
                or default_message_property(message_name),
                "sdkmessageprocessingstepid@odata.bind": (
                    f"/sdkmessageprocessingsteps({step_id})"
                ),
            }
        )
        return await self._resolve_created(
            response,
            "sdkmessageprocessingstepimageid",
            lambda: self.client.find_image_by_name(step_id, declaration.name),
            f"image {declaration.name}",
        )

    async def update_image(self, image_id: str, changes: Dict[str, Any]) -> None:
        """
        Update image fields.

        Args:
            image_id: Image id
            changes: Any of image_type, entity_alias, attributes,
                message_property_name
        """
        payload: Dict[str, Any] = {}
        if "image_type" in changes:
            payload["imagetype"] = changes["image_type"]
        if "entity_alias" in changes:
            payload["entityalias"] = changes["entity_alias"]
        if "attributes" in changes:
            payload["attributes"] = join_attributes(changes["attributes"] or [])
        if "message_property_name" in changes:
            payload["messagepropertyname"] = changes["message_property_name"]

        if payload:
            await self.client.update_image(normalize_guid(image_id), payload)

    async def delete_image(self, image_id: str) -> None:
        await self.client.delete_image(normalize_guid(image_id))

    # Solutions

    async def add_to_solution(
        self,
        component_id: str,
        component_type: SolutionComponentType,
        solution_name: Optional[str],
    ) -> bool:
        return await self.solution_components.ensure_in_solution(
            component_id, component_type, solution_name
        )

    async def _resolve_created(
        self,
        response: Optional[Dict[str, Any]],
        id_field: str,
        lookup: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
        description: str,
    ) -> CreatedRecord:
        """Take the id from the create response, or look the record up."""
        record_id = _record_id(response, id_field)
        if record_id:
            return CreatedRecord(id=record_id, source=IdSource.RESPONSE)

        logger.debug(f"Create response for {description} had no id; looking it up")
        record_id = _record_id(await lookup(), id_field)
        if record_id:
            return CreatedRecord(id=record_id, source=IdSource.LOOKUP)

        raise NotFoundFault(
            f"{description[0].upper()}{description[1:]} created but no identifier "
            f"returned by Dataverse.",
            key=description,
        )
