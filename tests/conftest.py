"""Pytest configuration and fixtures."""

import itertools
from typing import Any, Dict, List, Optional, Tuple

import pytest
from unittest.mock import AsyncMock

from models import (
    AssemblyRegistration,
    CreatedRecord,
    ImageDeclaration,
    PluginAssembly,
    PluginImage,
    PluginStep,
    PluginType,
    ReflectedType,
    SolutionComponentType,
    StepDeclaration,
    StepMode,
    StepStatus,
    default_message_property,
    join_attributes,
    normalize_entity,
)
from reflection.base import ReflectionProvider
from reflection.registry import reset_registry

ASSEMBLY_ID = "11111111-1111-1111-1111-111111111111"


class FakePluginService:
    """
    In-memory PluginService holding one environment's registration graph.

    Every call is recorded in ``calls`` as (method, record id or name) so
    tests can assert on ordering. ``fail_on`` maps a method name to an
    exception raised on its next call.
    """

    def __init__(self):
        self.assemblies: Dict[str, PluginAssembly] = {}
        self.types: Dict[str, Tuple[str, PluginType]] = {}
        self.steps: Dict[str, Tuple[str, PluginStep]] = {}
        self.images: Dict[str, Tuple[str, PluginImage]] = {}
        self.solution_components: List[Tuple[str, Any, str]] = []
        self.calls: List[Tuple[str, str]] = []
        self.fail_on: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _new_id(self) -> str:
        return f"00000000-0000-0000-0000-{next(self._ids):012d}"

    def _record(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        if method in self.fail_on:
            raise self.fail_on.pop(method)

    def writes(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if not c[0].startswith("list_")]

    # Seeding

    def add_type(self, assembly_id: str, type_name: str) -> PluginType:
        plugin_type = PluginType(id=self._new_id(), name=type_name, type_name=type_name)
        self.types[plugin_type.id] = (assembly_id, plugin_type)
        return plugin_type

    def add_step(self, type_id: str, **fields) -> PluginStep:
        fields.setdefault("name", f"step {len(self.steps) + 1}")
        fields.setdefault("mode", StepMode.SYNCHRONOUS.value)
        fields.setdefault("rank", 1)
        fields.setdefault("status", StepStatus.ENABLED.value)
        step = PluginStep(id=self._new_id(), **fields)
        self.steps[step.id] = (type_id, step)
        return step

    def add_image(self, step_id: str, **fields) -> PluginImage:
        image = PluginImage(id=self._new_id(), **fields)
        self.images[image.id] = (step_id, image)
        return image

    # PluginService interface

    async def register_assembly(self, data) -> AssemblyRegistration:
        self._record("register_assembly", data.name)
        assembly = PluginAssembly(id=self._new_id(), name=data.name)
        self.assemblies[assembly.id] = assembly
        if data.solution_name:
            await self.add_to_solution(
                assembly.id, SolutionComponentType.PLUGIN_ASSEMBLY, data.solution_name
            )
        return AssemblyRegistration(id=assembly.id)

    async def update_assembly(self, assembly_id: str, content_base64: str) -> None:
        self._record("update_assembly", assembly_id)

    async def list_assemblies(self) -> List[PluginAssembly]:
        self._record("list_assemblies", "")
        return list(self.assemblies.values())

    async def list_plugin_types(self, assembly_id: str) -> List[PluginType]:
        self._record("list_plugin_types", assembly_id)
        return [t for owner, t in self.types.values() if owner == assembly_id]

    async def create_plugin_type(
        self, assembly_id: str, reflected: ReflectedType
    ) -> CreatedRecord:
        self._record("create_plugin_type", reflected.full_type_name)
        plugin_type = self.add_type(assembly_id, reflected.full_type_name)
        return CreatedRecord(id=plugin_type.id)

    async def delete_plugin_type(self, plugin_type_id: str) -> None:
        self._record("delete_plugin_type", plugin_type_id)
        del self.types[plugin_type_id]

    async def list_steps(self, plugin_type_id: str) -> List[PluginStep]:
        self._record("list_steps", plugin_type_id)
        return [s for owner, s in self.steps.values() if owner == plugin_type_id]

    async def create_step(
        self, plugin_type_id: str, type_name: str, declaration: StepDeclaration
    ) -> CreatedRecord:
        name = declaration.display_name(type_name)
        self._record("create_step", name)
        step = self.add_step(
            plugin_type_id,
            name=name,
            stage=declaration.stage.value,
            mode=(declaration.mode or StepMode.SYNCHRONOUS).value,
            rank=declaration.rank or 1,
            status=(
                StepStatus.DISABLED.value
                if declaration.enabled is False
                else StepStatus.ENABLED.value
            ),
            message_name=declaration.message,
            primary_entity=normalize_entity(declaration.primary_entity),
            filtering_attributes=(
                join_attributes(declaration.filtering_attributes)
                if declaration.filtering_attributes
                else None
            ),
        )
        return CreatedRecord(id=step.id)

    async def update_step(self, step_id: str, changes: Dict[str, Any]) -> None:
        self._record("update_step", step_id)
        step = self.steps[step_id][1]
        if "name" in changes:
            step.name = changes["name"]
        if "mode" in changes:
            step.mode = changes["mode"]
        if "rank" in changes:
            step.rank = changes["rank"]
        if "filtering_attributes" in changes:
            step.filtering_attributes = join_attributes(changes["filtering_attributes"])
        if "enabled" in changes:
            step.status = (
                StepStatus.ENABLED.value if changes["enabled"] else StepStatus.DISABLED.value
            )

    async def delete_step(self, step_id: str) -> None:
        self._record("delete_step", step_id)
        del self.steps[step_id]

    async def list_images(self, step_id: str) -> List[PluginImage]:
        self._record("list_images", step_id)
        return [i for owner, i in self.images.values() if owner == step_id]

    async def create_image(
        self, step_id: str, message_name: Optional[str], declaration: ImageDeclaration
    ) -> CreatedRecord:
        self._record("create_image", declaration.name)
        image = self.add_image(
            step_id,
            name=declaration.name,
            image_type=declaration.image_type.value,
            entity_alias=declaration.alias,
            attributes=join_attributes(declaration.attributes) or None,
            message_property_name=(
                declaration.message_property_name
                or default_message_property(message_name)
            ),
        )
        return CreatedRecord(id=image.id)

    async def update_image(self, image_id: str, changes: Dict[str, Any]) -> None:
        self._record("update_image", image_id)
        image = self.images[image_id][1]
        if "image_type" in changes:
            image.image_type = changes["image_type"]
        if "entity_alias" in changes:
            image.entity_alias = changes["entity_alias"]
        if "attributes" in changes:
            image.attributes = join_attributes(changes["attributes"]) or None
        if "message_property_name" in changes:
            image.message_property_name = changes["message_property_name"]

    async def delete_image(self, image_id: str) -> None:
        self._record("delete_image", image_id)
        del self.images[image_id]

    async def add_to_solution(self, component_id, component_type, solution_name) -> bool:
        self._record("add_to_solution", component_id)
        self.solution_components.append((component_id, component_type, solution_name))
        return True


class StaticReflectionProvider(ReflectionProvider):
    """Reflection provider returning a fixed list of types."""

    def __init__(self, types: Optional[List[ReflectedType]] = None):
        self.types = types or []

    @property
    def name(self) -> str:
        return "static"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def extract_plugin_types(self, assembly_path: str) -> List[ReflectedType]:
        return list(self.types)


@pytest.fixture(autouse=True)
def clean_registry():
    """Give each test a fresh reflection provider registry."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def fake_service():
    """In-memory plugin service."""
    return FakePluginService()


@pytest.fixture
def static_provider():
    """Reflection provider tests can load with types."""
    return StaticReflectionProvider()


@pytest.fixture
def mock_client():
    """Mock DataverseClient."""
    client = AsyncMock()
    client.get_value.return_value = []
    client.post.return_value = {}
    return client


@pytest.fixture
def assembly_file(tmp_path):
    """A file that passes the assembly header check."""
    path = tmp_path / "Contoso.Plugins.dll"
    path.write_bytes(b"MZ" + b"\x00" * 62)
    return path


@pytest.fixture
def sample_manifest():
    """Manifest document declaring two plugin types."""
    return {
        "types": [
            {
                "name": "Contoso.Plugins.PreCreate",
                "steps": [
                    {
                        "message": "Create",
                        "entity": "account",
                        "stage": "preoperation",
                        "images": [
                            {"name": "Pre", "type": "preimage", "attributes": "name,accountnumber"}
                        ],
                    }
                ],
            },
            {
                "name": "Contoso.Plugins.PostUpdate",
                "friendly_name": "Post Update",
                "steps": [
                    {
                        "message": "Update",
                        "entity": "contact",
                        "stage": 40,
                        "mode": "async",
                        "filtering_attributes": ["firstname", "lastname"],
                    }
                ],
            },
        ]
    }
