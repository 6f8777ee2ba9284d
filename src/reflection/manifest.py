"""
Manifest Reflection Provider - reads plugin metadata from a sidecar file.

The manifest lives next to the assembly (MyPlugins.dll ->
MyPlugins.plugins.yaml, .yml or .json) or at a configured path, and lists
the plugin types the assembly implements with optional steps and images.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import ReflectionFault
from models import (
    DeclaredState,
    ImageDeclaration,
    ImageType,
    ReflectedType,
    StepDeclaration,
    StepMode,
    StepStage,
)
from reflection.base import ReflectionProvider, check_assembly_file

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".plugins.yaml", ".plugins.yml", ".plugins.json")

STAGE_ALIASES = {
    "prevalidation": StepStage.PRE_VALIDATION,
    "preoperation": StepStage.PRE_OPERATION,
    "mainoperation": StepStage.MAIN_OPERATION,
    "postoperation": StepStage.POST_OPERATION,
}
MODE_ALIASES = {
    "sync": StepMode.SYNCHRONOUS,
    "synchronous": StepMode.SYNCHRONOUS,
    "async": StepMode.ASYNCHRONOUS,
    "asynchronous": StepMode.ASYNCHRONOUS,
}
IMAGE_TYPE_ALIASES = {
    "pre": ImageType.PRE_IMAGE,
    "preimage": ImageType.PRE_IMAGE,
    "post": ImageType.POST_IMAGE,
    "postimage": ImageType.POST_IMAGE,
    "both": ImageType.BOTH,
}


def _alias_key(value: str) -> str:
    return value.strip().lower().replace("-", "").replace("_", "").replace(" ", "")


def _split_attributes(value: Union[str, List[str], None]) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


class ImageManifest(BaseModel):
    """Image entry in a manifest."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    type: ImageType = ImageType.PRE_IMAGE
    alias: Optional[str] = None
    attributes: List[str] = Field(default_factory=list)
    message_property: Optional[str] = None
    state: DeclaredState = DeclaredState.PRESENT

    @field_validator("type", mode="before")
    @classmethod
    def parse_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = _alias_key(v)
            if key not in IMAGE_TYPE_ALIASES:
                raise ValueError(f"unknown image type '{v}'")
            return IMAGE_TYPE_ALIASES[key]
        return v

    @field_validator("attributes", mode="before")
    @classmethod
    def parse_attributes(cls, v: Any) -> Any:
        return _split_attributes(v) or []

    def to_declaration(self) -> ImageDeclaration:
        return ImageDeclaration(
            name=self.name,
            image_type=self.type,
            entity_alias=self.alias,
            attributes=list(self.attributes),
            message_property_name=self.message_property,
            state=self.state,
        )


class StepManifest(BaseModel):
    """Step entry in a manifest."""

    model_config = ConfigDict(extra="forbid")

    message: str = Field(..., min_length=1)
    stage: StepStage = StepStage.POST_OPERATION
    entity: Optional[str] = None
    mode: Optional[StepMode] = None
    rank: Optional[int] = Field(default=None, ge=1)
    filtering_attributes: Optional[List[str]] = None
    enabled: Optional[bool] = None
    name: Optional[str] = None
    description: Optional[str] = None
    images: List[ImageManifest] = Field(default_factory=list)
    state: DeclaredState = DeclaredState.PRESENT

    @field_validator("stage", mode="before")
    @classmethod
    def parse_stage(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = _alias_key(v)
            if key not in STAGE_ALIASES:
                raise ValueError(f"unknown stage '{v}'")
            return STAGE_ALIASES[key]
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def parse_mode(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = _alias_key(v)
            if key not in MODE_ALIASES:
                raise ValueError(f"unknown mode '{v}'")
            return MODE_ALIASES[key]
        return v

    @field_validator("filtering_attributes", mode="before")
    @classmethod
    def parse_filtering_attributes(cls, v: Any) -> Any:
        return _split_attributes(v)

    def to_declaration(self) -> StepDeclaration:
        return StepDeclaration(
            message=self.message,
            stage=self.stage,
            primary_entity=self.entity,
            mode=self.mode,
            rank=self.rank,
            filtering_attributes=self.filtering_attributes,
            enabled=self.enabled,
            name=self.name,
            description=self.description,
            images=[image.to_declaration() for image in self.images],
            state=self.state,
        )


class TypeManifest(BaseModel):
    """Plugin type entry in a manifest."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    friendly_name: Optional[str] = None
    steps: List[StepManifest] = Field(default_factory=list)

    def to_reflected(self) -> ReflectedType:
        return ReflectedType(
            full_type_name=self.name,
            friendly_name=self.friendly_name,
            steps=[step.to_declaration() for step in self.steps],
        )


class PluginManifest(BaseModel):
    """Root of a manifest document."""

    types: List[TypeManifest] = Field(default_factory=list)


def parse_manifest(data: Any, source: str) -> List[ReflectedType]:
    """
    Validate a manifest document and convert it to reflected types.

    Accepts either {"types": [...]} or a bare list of type entries.

    Raises:
        ReflectionFault: If the document is invalid or lists no types.
    """
    if isinstance(data, list):
        data = {"types": data}
    if not isinstance(data, dict):
        raise ReflectionFault(f"{source}: manifest must be a mapping", assembly_path=source)

    try:
        manifest = PluginManifest.model_validate(data)
    except ValidationError as e:
        raise ReflectionFault(f"{source}: invalid manifest: {e}", assembly_path=source) from e

    if not manifest.types:
        raise ReflectionFault(
            f"{source}: no plugin types declared", assembly_path=source
        )
    return [entry.to_reflected() for entry in manifest.types]


def load_manifest_file(path: str) -> Any:
    """Load a JSON or YAML manifest file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.endswith(".json"):
                return json.load(f)
            return yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ReflectionFault(f"Cannot read manifest {path}: {e}", assembly_path=path) from e


def find_manifest(assembly_path: str) -> Optional[str]:
    """Find the sidecar manifest for an assembly, if any."""
    stem = os.path.splitext(assembly_path)[0]
    for suffix in MANIFEST_SUFFIXES:
        candidate = stem + suffix
        if os.path.isfile(candidate):
            return candidate
    return None


class ManifestReflectionProvider(ReflectionProvider):
    """Reflection provider backed by a sidecar manifest file."""

    def __init__(self):
        self.manifest_path: Optional[str] = None
        self.verify_assembly: bool = True

    @property
    def name(self) -> str:
        return "manifest"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load manifest provider configuration from environment variables."""
        config: Dict[str, Any] = {
            "verify_assembly": os.getenv("XRM_VERIFY_ASSEMBLY", "true").lower() == "true",
        }
        if os.getenv("XRM_PLUGIN_MANIFEST"):
            config["manifest_path"] = os.getenv("XRM_PLUGIN_MANIFEST")
        return config

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.manifest_path = config.get("manifest_path", self.manifest_path)
        self.verify_assembly = config.get("verify_assembly", self.verify_assembly)

    async def extract_plugin_types(self, assembly_path: str) -> List[ReflectedType]:
        if self.verify_assembly:
            check_assembly_file(assembly_path)

        manifest_path = self.manifest_path or find_manifest(assembly_path)
        if not manifest_path:
            raise ReflectionFault(
                f"No plugin manifest found for {assembly_path} "
                f"(expected one of: {', '.join(MANIFEST_SUFFIXES)})",
                assembly_path=assembly_path,
            )

        logger.debug(f"Reading plugin manifest {manifest_path}")
        return parse_manifest(load_manifest_file(manifest_path), manifest_path)
