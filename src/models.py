"""
Plugin registration data model.

Dataclasses for the Dataverse plugin registration graph (assemblies, types,
steps, images) as read from an environment, plus the plain values produced
by reflecting a local assembly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Tuple, Union


class IsolationMode(Enum):
    """Assembly isolation mode."""

    NONE = 1
    SANDBOX = 2
    EXTERNAL = 3


class SourceType(Enum):
    """Where the assembly content is stored."""

    DATABASE = 0
    DISK = 1
    NORMAL = 2
    AZURE_WEB_APP = 3
    FILE_STORE = 4


class StepStage(Enum):
    """Pipeline stage a step runs in."""

    PRE_VALIDATION = 10
    PRE_OPERATION = 20
    MAIN_OPERATION = 30
    POST_OPERATION = 40


class StepMode(Enum):
    """Step execution mode."""

    SYNCHRONOUS = 0
    ASYNCHRONOUS = 1


class StepStatus(Enum):
    """Step state code. Status reason is 1 for enabled, 2 for disabled."""

    ENABLED = 0
    DISABLED = 1

    @property
    def status_reason(self) -> int:
        return 1 if self is StepStatus.ENABLED else 2


class ImageType(Enum):
    """Entity image snapshot type."""

    PRE_IMAGE = 0
    POST_IMAGE = 1
    BOTH = 2


class SolutionComponentType(Enum):
    """Component type codes used when adding components to a solution."""

    WEB_RESOURCE = 61
    PLUGIN_TYPE = 90
    PLUGIN_ASSEMBLY = 91
    PLUGIN_STEP = 92
    PLUGIN_IMAGE = 93


class DeclaredState(Enum):
    """
    Whether reflection metadata declares a step or image.

    A step or image the local metadata does not mention at all is unknown
    and is never touched; only an explicit ABSENT declaration removes it.
    """

    PRESENT = "present"
    ABSENT = "absent"


class IdSource(Enum):
    """How the id of a newly created record was obtained."""

    RESPONSE = "response"
    LOOKUP = "lookup"


# Identifier and attribute helpers


def normalize_guid(value: str) -> str:
    """Strip enclosing braces and whitespace from a GUID and lower-case it."""
    return value.strip().replace("{", "").replace("}", "").lower()


def normalize_attribute_set(
    value: Union[str, Iterable[str], None],
) -> FrozenSet[str]:
    """Turn a comma-joined string or iterable of attribute names into a set."""
    if value is None:
        return frozenset()
    items = value.split(",") if isinstance(value, str) else value
    return frozenset(item.strip().lower() for item in items if item and item.strip())


def join_attributes(values: Iterable[str]) -> str:
    """Canonical comma-joined form of an attribute set."""
    return ",".join(sorted(normalize_attribute_set(values)))


def normalize_entity(value: Optional[str]) -> Optional[str]:
    """Normalize a primary entity name. None, "" and "none" mean all entities."""
    if value is None:
        return None
    value = value.strip().lower()
    if not value or value == "none":
        return None
    return value


def default_message_property(message_name: Optional[str]) -> str:
    """Message property an image reads from for the given message."""
    name = (message_name or "").lower()
    if name == "create":
        return "Id"
    if name in ("setstate", "setstatedynamicentity"):
        return "EntityMoniker"
    return "Target"


# Remote registration records


@dataclass
class PluginAssembly:
    """A registered plugin assembly."""

    id: str
    name: str
    version: Optional[str] = None
    isolation_mode: Optional[int] = None
    source_type: Optional[int] = None
    public_key_token: Optional[str] = None
    culture: Optional[str] = None


@dataclass
class PluginType:
    """A registered plugin type (one class within an assembly)."""

    id: str
    name: str
    type_name: Optional[str] = None
    friendly_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        """Key used to match against reflected types (case-sensitive)."""
        return self.type_name or self.name


@dataclass
class PluginStep:
    """A registered SDK message processing step."""

    id: str
    name: str
    stage: Optional[int] = None
    mode: Optional[int] = None
    rank: Optional[int] = None
    status: Optional[int] = None
    status_reason: Optional[int] = None
    message_name: Optional[str] = None
    primary_entity: Optional[str] = None
    filtering_attributes: Optional[str] = None

    @property
    def natural_key(self) -> Tuple[str, Optional[int], Optional[str]]:
        return step_key(self.message_name, self.stage, self.primary_entity)


@dataclass
class PluginImage:
    """A registered step image."""

    id: str
    name: str
    image_type: Optional[int] = None
    entity_alias: Optional[str] = None
    attributes: Optional[str] = None
    message_property_name: Optional[str] = None


def step_key(
    message_name: Optional[str], stage: Optional[int], primary_entity: Optional[str]
) -> Tuple[str, Optional[int], Optional[str]]:
    """Natural identity of a step: message + stage + primary entity."""
    return ((message_name or "").lower(), stage, normalize_entity(primary_entity))


# Reflected local metadata


@dataclass
class ImageDeclaration:
    """An image declared for a step in local metadata."""

    name: str
    image_type: ImageType = ImageType.PRE_IMAGE
    entity_alias: Optional[str] = None
    attributes: List[str] = field(default_factory=list)
    message_property_name: Optional[str] = None
    state: DeclaredState = DeclaredState.PRESENT

    @property
    def alias(self) -> str:
        return self.entity_alias or self.name


@dataclass
class StepDeclaration:
    """A step declared for a plugin type in local metadata."""

    message: str
    stage: StepStage = StepStage.POST_OPERATION
    primary_entity: Optional[str] = None
    mode: Optional[StepMode] = None
    rank: Optional[int] = None
    filtering_attributes: Optional[List[str]] = None
    enabled: Optional[bool] = None
    name: Optional[str] = None
    description: Optional[str] = None
    images: List[ImageDeclaration] = field(default_factory=list)
    state: DeclaredState = DeclaredState.PRESENT

    @property
    def natural_key(self) -> Tuple[str, Optional[int], Optional[str]]:
        return step_key(self.message, self.stage.value, self.primary_entity)

    def display_name(self, type_name: str) -> str:
        """Step name, defaulting to the Plugin Registration Tool convention."""
        if self.name:
            return self.name
        entity = normalize_entity(self.primary_entity) or "any entity"
        return f"{type_name}: {self.message} of {entity}"


@dataclass
class ReflectedType:
    """A plugin type found in a local assembly."""

    full_type_name: str
    friendly_name: Optional[str] = None
    steps: List[StepDeclaration] = field(default_factory=list)


# Create results


@dataclass
class CreatedRecord:
    """Id of a newly created record and where it came from."""

    id: str
    source: IdSource = IdSource.RESPONSE


@dataclass
class AssemblyRegistration:
    """Outcome of registering a new assembly."""

    id: str
    id_source: IdSource = IdSource.RESPONSE
    solution_error: Optional[Exception] = None
