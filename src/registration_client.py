"""
Remote Registration Client - CRUD for plugin registration records.

One method per entity and verb against the Dataverse Web API entity sets
for assemblies, plugin types, SDK message processing steps and step
images. Reads return raw record dicts filtered and projected server-side.
Identifiers are passed through as given: callers normalize them before
calling and after receiving.
"""

import logging
from typing import Any, Dict, List, Optional

from dataverse import DataverseClient, build_filter, entity_path, odata_string

logger = logging.getLogger(__name__)

ASSEMBLIES = "pluginassemblies"
PLUGIN_TYPES = "plugintypes"
STEPS = "sdkmessageprocessingsteps"
IMAGES = "sdkmessageprocessingstepimages"
MESSAGES = "sdkmessages"
MESSAGE_FILTERS = "sdkmessagefilters"

ASSEMBLY_COLUMNS = [
    "pluginassemblyid",
    "name",
    "version",
    "isolationmode",
    "publickeytoken",
    "culture",
    "sourcetype",
]
TYPE_COLUMNS = ["plugintypeid", "name", "typename", "friendlyname"]
STEP_COLUMNS = [
    "sdkmessageprocessingstepid",
    "name",
    "stage",
    "mode",
    "rank",
    "statecode",
    "statuscode",
    "filteringattributes",
]
STEP_EXPAND = "sdkmessageid($select=name),sdkmessagefilterid($select=primaryobjecttypecode)"
IMAGE_COLUMNS = [
    "sdkmessageprocessingstepimageid",
    "name",
    "imagetype",
    "entityalias",
    "attributes",
    "messagepropertyname",
]


class RegistrationClient:
    """Typed CRUD operations on the plugin registration entity sets."""

    def __init__(self, client: DataverseClient):
        self.client = client

    # Assemblies

    async def create_assembly(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a plugin assembly. The returned record may lack its id."""
        return await self.client.post(ASSEMBLIES, payload, return_representation=True)

    async def update_assembly_content(self, assembly_id: str, content: str) -> None:
        """Replace the base64 content of an assembly."""
        await self.client.patch(entity_path(ASSEMBLIES, assembly_id), {"content": content})

    async def list_assemblies(self) -> List[Dict[str, Any]]:
        return await self.client.get_value(
            ASSEMBLIES, select=ASSEMBLY_COLUMNS, orderby="name"
        )

    async def find_assembly_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        rows = await self.client.get_value(
            ASSEMBLIES,
            select=ASSEMBLY_COLUMNS,
            filter_expr=f"name eq {odata_string(name)}",
            top=1,
        )
        return rows[0] if rows else None

    # Plugin types

    async def list_types_for_assembly(self, assembly_id: str) -> List[Dict[str, Any]]:
        return await self.client.get_value(
            PLUGIN_TYPES,
            select=TYPE_COLUMNS,
            filter_expr=f"_pluginassemblyid_value eq {assembly_id}",
        )

    async def find_type_by_name(
        self, assembly_id: str, type_name: str
    ) -> Optional[Dict[str, Any]]:
        rows = await self.client.get_value(
            PLUGIN_TYPES,
            select=TYPE_COLUMNS,
            filter_expr=build_filter(
                f"_pluginassemblyid_value eq {assembly_id}",
                f"typename eq {odata_string(type_name)}",
            ),
            top=1,
        )
        return rows[0] if rows else None

    async def create_type(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.post(PLUGIN_TYPES, payload, return_representation=True)

    async def delete_type(self, type_id: str) -> None:
        await self.client.delete(entity_path(PLUGIN_TYPES, type_id))

    # Steps

    async def list_steps_for_type(self, type_id: str) -> List[Dict[str, Any]]:
        return await self.client.get_value(
            STEPS,
            select=STEP_COLUMNS,
            filter_expr=f"_eventhandler_value eq {type_id}",
            expand=STEP_EXPAND,
        )

    async def find_step_by_name(
        self, type_id: str, name: str
    ) -> Optional[Dict[str, Any]]:
        rows = await self.client.get_value(
            STEPS,
            select=STEP_COLUMNS,
            filter_expr=build_filter(
                f"_eventhandler_value eq {type_id}",
                f"name eq {odata_string(name)}",
            ),
            expand=STEP_EXPAND,
            top=1,
        )
        return rows[0] if rows else None

    async def create_step(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.post(STEPS, payload, return_representation=True)

    async def update_step(self, step_id: str, payload: Dict[str, Any]) -> None:
        await self.client.patch(entity_path(STEPS, step_id), payload)

    async def delete_step(self, step_id: str) -> None:
        await self.client.delete(entity_path(STEPS, step_id))

    # Images

    async def list_images_for_step(self, step_id: str) -> List[Dict[str, Any]]:
        return await self.client.get_value(
            IMAGES,
            select=IMAGE_COLUMNS,
            filter_expr=f"_sdkmessageprocessingstepid_value eq {step_id}",
        )

    async def find_image_by_name(
        self, step_id: str, name: str
    ) -> Optional[Dict[str, Any]]:
        rows = await self.client.get_value(
            IMAGES,
            select=IMAGE_COLUMNS,
            filter_expr=build_filter(
                f"_sdkmessageprocessingstepid_value eq {step_id}",
                f"name eq {odata_string(name)}",
            ),
            top=1,
        )
        return rows[0] if rows else None

    async def create_image(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.post(IMAGES, payload, return_representation=True)

    async def update_image(self, image_id: str, payload: Dict[str, Any]) -> None:
        await self.client.patch(entity_path(IMAGES, image_id), payload)

    async def delete_image(self, image_id: str) -> None:
        await self.client.delete(entity_path(IMAGES, image_id))

    # SDK messages

    async def find_sdk_message(self, name: str) -> Optional[Dict[str, Any]]:
        """Look up an SDK message (e.g. Create, Update) by name."""
        rows = await self.client.get_value(
            MESSAGES,
            select=["sdkmessageid", "name"],
            filter_expr=f"name eq {odata_string(name)}",
            top=1,
        )
        return rows[0] if rows else None

    async def find_sdk_message_filter(
        self, message_id: str, primary_entity: str
    ) -> Optional[Dict[str, Any]]:
        """Look up the message filter binding a message to an entity."""
        rows = await self.client.get_value(
            MESSAGE_FILTERS,
            select=["sdkmessagefilterid", "primaryobjecttypecode"],
            filter_expr=build_filter(
                f"_sdkmessageid_value eq {message_id}",
                f"primaryobjecttypecode eq {odata_string(primary_entity)}",
            ),
            top=1,
        )
        return rows[0] if rows else None
