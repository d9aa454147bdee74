"""Data structures shared by the lookup table generators.

Lookup table rows are plain dataclasses serialized with ``to_dict``; payloads
returned by the terminology server are validated with pydantic models.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

FixedValue = Union[str, int, float, bool]
StrOrList = Union[str, List[str]]


# =============================================================================
# Path Table
# =============================================================================


@dataclass
class PathConstraint:
    """Type and constraints of one normalized element path."""

    type: str
    value_set: Optional[StrOrList] = None
    fixed_value: Optional[Union[FixedValue, List[FixedValue]]] = None
    profile_url: Optional[StrOrList] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.value_set is not None:
            data["valueSet"] = self.value_set
        if self.fixed_value is not None:
            data["fixedValue"] = self.fixed_value
        if self.profile_url is not None:
            data["profileUrl"] = self.profile_url
        return data


@dataclass
class ResourceMeta:
    """Header of a profile entry in the path table."""

    profile: str  # "<canonical url>|<version>"
    fhir_resource_type: str
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.status is not None:
            data["status"] = self.status
        data["profile"] = self.profile
        data["fhir-resource-type"] = self.fhir_resource_type
        return data


@dataclass
class ResourceEntry:
    """Flattened path table entry of one profile."""

    resource: ResourceMeta
    paths: Dict[str, PathConstraint] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource.to_dict(),
            "paths": {path: constraint.to_dict() for path, constraint in self.paths.items()},
        }


ResourceTable = Dict[str, ResourceEntry]


def resource_table_to_dict(table: ResourceTable) -> Dict[str, Any]:
    return {name: entry.to_dict() for name, entry in table.items()}


# =============================================================================
# Terminology Table
# =============================================================================


@dataclass
class Concept:
    """A single code of a resolved terminology."""

    code: str
    display: Optional[str] = None
    system: Optional[str] = None
    version: Optional[str] = None
    german_display: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code}
        if self.display is not None:
            data["display"] = self.display
        if self.system is not None:
            data["system"] = self.system
        if self.version is not None:
            data["version"] = self.version
        if self.german_display is not None:
            data["germanDisplay"] = self.german_display
        return data


ValueSetTable = Dict[str, List[Concept]]


def value_set_table_to_dict(table: ValueSetTable) -> Dict[str, Any]:
    return {url: [concept.to_dict() for concept in concepts] for url, concepts in table.items()}


@dataclass
class TranslationStats:
    """Per-run accumulator for German translation coverage."""

    german: int = 0
    total: int = 0

    def record(self, translated: bool) -> None:
        self.total += 1
        if translated:
            self.german += 1

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return self.german / self.total * 100


# =============================================================================
# Terminology Server Payloads
# =============================================================================


class TermDescription(BaseModel):
    """A term with its language, as embedded in referenced components."""

    term: str = ""
    lang: Optional[str] = None


class ReferencedComponent(BaseModel):
    """The concept (or description) a reference set member points to."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    concept_id: str = Field(default="", alias="conceptId")
    term: Optional[str] = None
    lang: Optional[str] = None
    acceptability_map: Dict[str, str] = Field(default_factory=dict, alias="acceptabilityMap")
    fsn: Optional[TermDescription] = None
    pt: Optional[TermDescription] = None


class MemberItem(BaseModel):
    """One reference set member returned by the members search."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    active: bool = False
    released: bool = False
    referenced_component: ReferencedComponent = Field(
        default_factory=ReferencedComponent, alias="referencedComponent"
    )


class MembersPage(BaseModel):
    """A single page of the members search."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    search_after: Optional[str] = Field(default=None, alias="searchAfter")


class PreferredTerm(BaseModel):
    """A German preferred term, keyed by concept id in the preferred-term index."""

    model_config = ConfigDict(populate_by_name=True)

    concept_id: str = Field(alias="conceptId")
    term: str
    language_code: str = Field(default="de", alias="languageCode")
    acceptability_map: Dict[str, str] = Field(default_factory=dict, alias="acceptabilityMap")
