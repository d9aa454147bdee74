"""Resource lookup table generation.

Flattens each profile's snapshot into a table of normalized element paths,
each mapped to a ``PathConstraint`` (type tag, bound ValueSet, fixed value
and referenced profile).

Components:
- Snapshot loading: local package files, with remote snapshots fetched
  (retried, cached) for profiles shipped without one
- Element cleaning: drops ids, metadata, narrative and forbidden elements
- Constraint extraction: type tags, bindings, fixed/pattern values
- Merging of elements that resolve to the same path
- Fixed remediations for known gaps in the published profiles
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import httpx

from .cache import FileCache
from .config import (
    PACKAGES_DIR,
    PROFILE_FILE_PREFIX,
    PROFILE_PACKAGE,
    SNAPSHOT_RETRIES,
    SNAPSHOT_RETRY_DELAY_S,
    SNAPSHOT_URL_TEMPLATE,
    TYPE_SUFFIX,
)
from .fetcher import TerminologyClient
from .helpers import capitalize, normalize_element_path, read_json_file
from .models import FixedValue, PathConstraint, ResourceEntry, ResourceMeta, ResourceTable

logger = logging.getLogger(__name__)


class SnapshotFetchError(RuntimeError):
    """Raised when a profile snapshot can't be fetched after all retries."""


# =============================================================================
# Fixed / Pattern Value Kinds
# =============================================================================

# Datatypes that may appear as fixed[x] / pattern[x] on an ElementDefinition
VALUE_KINDS = (
    "Base64Binary", "Boolean", "Canonical", "Code", "Date", "DateTime",
    "Decimal", "Id", "Instant", "Integer", "Markdown", "Oid", "PositiveInt",
    "String", "Time", "UnsignedInt", "Uri", "Url", "Uuid",
    "Address", "Age", "Annotation", "Attachment", "CodeableConcept", "Coding",
    "ContactPoint", "Count", "Distance", "Duration", "HumanName", "Identifier",
    "Money", "Period", "Quantity", "Range", "Ratio", "Reference",
    "SampledData", "Signature", "Timing", "ContactDetail", "Contributor",
    "DataRequirement", "Expression", "ParameterDefinition", "RelatedArtifact",
    "TriggerDefinition", "UsageContext", "Dosage", "Meta",
)

FIXED_FIELDS = {f"fixed{kind}": kind for kind in VALUE_KINDS}
PATTERN_FIELDS = {f"pattern{kind}": kind for kind in VALUE_KINDS}

# A patternCoding with all of system, code, version and display
FULL_CODING_FIELD_COUNT = 4


def find_value_field(element: Dict[str, Any], fields: Dict[str, str]) -> Optional[Any]:
    """Return the value of the first known fixed/pattern field present on element."""
    for name in fields:
        if name in element:
            return element[name]
    return None


# =============================================================================
# Snapshot Loading
# =============================================================================


def iter_structure_definitions(
    directory: Path, prefix: str = PROFILE_FILE_PREFIX
) -> Iterator[Dict[str, Any]]:
    """Yield the StructureDefinitions found in a package directory.

    Args:
        directory: Package folder to scan
        prefix: Only files whose name starts with this prefix are read

    Yields:
        Parsed StructureDefinition documents, in file name order
    """
    for path in sorted(Path(directory).iterdir()):
        if not (path.name.endswith(".json") and path.name.startswith(prefix)):
            continue
        resource = read_json_file(path)
        if resource is not None and resource.get("resourceType") == "StructureDefinition":
            yield resource


def _has_snapshot(resource: Any) -> bool:
    return (
        isinstance(resource, dict)
        and resource.get("resourceType") == "StructureDefinition"
        and isinstance(resource.get("snapshot"), dict)
    )


async def fetch_structure_definition_snapshot(
    name: str,
    client: TerminologyClient,
    cache: FileCache,
    retries: int = SNAPSHOT_RETRIES,
    retry_delay_s: float = SNAPSHOT_RETRY_DELAY_S,
    url_template: str = SNAPSHOT_URL_TEMPLATE,
) -> Dict[str, Any]:
    """Fetch a StructureDefinition with its snapshot.

    Cached snapshots are returned directly. Otherwise the download is tried
    ``retries + 1`` times, sleeping ``retry_delay_s`` between attempts.

    Args:
        name: Profile name (StructureDefinition.name)
        client: Shared terminology client
        cache: Cache for downloaded snapshots
        retries: Additional attempts after the first failure

    Returns:
        The StructureDefinition including ``snapshot``

    Raises:
        SnapshotFetchError: If every attempt failed
    """
    cache_key = f"structureDefinition_{name}"
    cached = cache.get(cache_key)
    if _has_snapshot(cached):
        logger.debug(f"Returning cached structure definition for {name}", extra={"profile": name})
        return cached

    url = url_template.format(name=name)
    last_error: Optional[Exception] = None
    for attempt in range(retries + 1):
        try:
            structure_definition = await client.get_json(url)
            if not _has_snapshot(structure_definition):
                raise ValueError(f"ResourceType or snapshot is undefined for {name}")
            cache.put(cache_key, structure_definition)
            return structure_definition
        except (httpx.HTTPError, ValueError) as e:
            last_error = e
            remaining = retries - attempt
            if remaining == 0:
                break
            logger.error(
                f"Error fetching snapshot for {name}. Retrying... ({remaining} retries left): {e}",
                extra={"profile": name, "attempt": attempt + 1},
            )
            await asyncio.sleep(retry_delay_s)

    logger.error(f"Error fetching snapshot for {name}: {last_error}", extra={"profile": name})
    raise SnapshotFetchError(f"Could not fetch snapshot for {name}: {last_error}") from last_error


async def iter_structure_definitions_with_snapshot(
    directory: Path,
    client: TerminologyClient,
    cache: FileCache,
    prefix: str = PROFILE_FILE_PREFIX,
) -> AsyncIterator[Dict[str, Any]]:
    """Yield every profile of the package, fetching missing snapshots."""
    for structure_definition in iter_structure_definitions(directory, prefix):
        if structure_definition.get("snapshot") is None:
            yield await fetch_structure_definition_snapshot(
                structure_definition["name"], client, cache
            )
        else:
            yield structure_definition


# =============================================================================
# Element Cleaning
# =============================================================================


def _is_irrelevant_element(element: Dict[str, Any]) -> bool:
    element_id = element.get("id")
    types = element.get("type")
    if not types or element_id is None:
        return True
    return (
        element_id.endswith(".id")
        or ".id." in element_id
        or ".meta" in element_id
        or (".text" in element_id and not element_id.endswith(".text"))
        or types[0].get("code") == "Narrative"
    )


def clean_structure_definition_elements(
    structure_definition: Dict[str, Any],
) -> Dict[str, Dict[str, Any]]:
    """Keep only the snapshot elements that belong in the lookup table.

    Elements with ``max == "0"`` are dropped together with every later
    element whose id starts with theirs (policyRule children excepted).

    Returns:
        Surviving elements keyed by element id, in snapshot order
    """
    snapshot = structure_definition.get("snapshot")
    if snapshot is None:
        raise ValueError(f"Snapshot for {structure_definition.get('name')} is undefined")

    cleaned: Dict[str, Dict[str, Any]] = {}
    forbidden: List[str] = []
    for element in snapshot.get("element", []):
        if _is_irrelevant_element(element):
            continue
        element_id = str(element["id"])
        if element.get("max") == "0":
            forbidden.append(element_id)
        elif not any(
            element_id.startswith(prefix) and "policyRule" not in element_id
            for prefix in forbidden
        ):
            cleaned[element_id] = element
    return cleaned


# =============================================================================
# Constraint Extraction
# =============================================================================


def flatten_pattern(value: Any, path: str, fixed_values: Dict[str, FixedValue]) -> None:
    """Flatten a structured fixed/pattern value into dotted sub-paths.

    ``{"coding": [{"system": "s", "code": "c"}]}`` at ``X.code`` yields
    ``X.code.coding.system = "s"`` and ``X.code.coding.code = "c"``.
    """
    stack = [(path, value)]
    while stack:
        current_path, current = stack.pop()
        if isinstance(current, dict):
            # reversed so that entries are written in document order
            for key, child in reversed(list(current.items())):
                stack.append((f"{current_path}.{key}", child))
        elif isinstance(current, list):
            for item in reversed(current):
                stack.append((current_path, item))
        else:
            fixed_values[current_path] = current


def get_fixed_value(
    element: Dict[str, Any], path: str, fixed_values: Dict[str, FixedValue]
) -> Optional[FixedValue]:
    """Resolve the element's own fixed value.

    Scalar fixed[x]/pattern[x] values are returned directly; structured ones
    are flattened into ``fixed_values`` for descendants to pick up.
    """
    fixed = find_value_field(element, FIXED_FIELDS)
    if fixed is not None and not isinstance(fixed, (dict, list)):
        return fixed
    if fixed is not None:
        flatten_pattern(fixed, path, fixed_values)

    pattern = find_value_field(element, PATTERN_FIELDS)
    if pattern is None:
        return None
    if isinstance(pattern, (dict, list)):
        flatten_pattern(pattern, path, fixed_values)
        return None
    return pattern


def resolve_type_tag(element_type: Optional[str]) -> str:
    """Turn an element type code into this table's type tag ("StringPIO")."""
    if element_type and element_type.startswith("http"):
        base = element_type.split("/")[-1].split(".")[-1]
    else:
        base = element_type or ""
    return f"{capitalize(base)}{TYPE_SUFFIX}"


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else [value]


def merge_path_constraints(existing: PathConstraint, new: PathConstraint) -> PathConstraint:
    """Merge two constraints that resolved to the same path.

    The new constraint's non-empty fields win. For valueSet, fixedValue and
    profileUrl, values present on both sides are unioned (new side first,
    duplicates dropped) and demoted to a scalar when one value remains.
    """
    merged = PathConstraint(
        type=new.type or existing.type,
        value_set=new.value_set if new.value_set is not None else existing.value_set,
        fixed_value=new.fixed_value if new.fixed_value is not None else existing.fixed_value,
        profile_url=new.profile_url if new.profile_url is not None else existing.profile_url,
    )

    for attribute in ("fixed_value", "value_set", "profile_url"):
        old_value = getattr(existing, attribute)
        new_value = getattr(new, attribute)
        if old_value is None or new_value is None:
            continue
        union: List[Any] = []
        for item in _as_list(new_value) + _as_list(old_value):
            if item not in union:
                union.append(item)
        setattr(merged, attribute, union[0] if len(union) == 1 else union)

    return merged


def _is_table_path(path: str, element_type: Optional[str], profile_url: Optional[str]) -> bool:
    last_segment = path.split(".")[-1]
    return not (
        path.endswith("[x]")
        or "value[x]" in path
        or (last_segment == "extension" and profile_url is None)
        or element_type == "BackboneElement"
    )


def rename_resource_paths(
    paths: Dict[str, PathConstraint], profile_name: str
) -> Dict[str, PathConstraint]:
    """Replace the leading resource type of each path with the profile name."""
    return {re.sub(r"^\w+", lambda _: profile_name, path, count=1): value for path, value in paths.items()}


def _find_resource_status(structure_definition: Dict[str, Any]) -> Optional[str]:
    status_id = f"{structure_definition.get('type')}.text.status"
    differential = structure_definition.get("differential") or {}
    for element in differential.get("element", []):
        if element.get("id") == status_id:
            return element.get("patternCode")
    return None


def build_resource_entry(structure_definition: Dict[str, Any]) -> ResourceEntry:
    """Transform one StructureDefinition (with snapshot) into its table entry."""
    elements = clean_structure_definition_elements(structure_definition)
    paths: Dict[str, PathConstraint] = {}
    fixed_values: Dict[str, FixedValue] = {}
    fixed_coding_paths: List[str] = []

    for element in elements.values():
        path = normalize_element_path(str(element["id"]))
        first_type = element["type"][0]
        element_type = first_type.get("code")
        profiles = first_type.get("profile") or []
        profile_url = profiles[0] if profiles else None
        binding = element.get("binding") or {}

        fixed_value = get_fixed_value(element, path, fixed_values)
        pattern_coding = element.get("patternCoding")
        if isinstance(pattern_coding, dict) and len(pattern_coding) == FULL_CODING_FIELD_COUNT:
            fixed_coding_paths.append(path)

        value_set = None
        if binding.get("strength") != "example" and "patternCode" not in element:
            value_set = binding.get("valueSet")

        constraint = PathConstraint(
            type=resolve_type_tag(element_type),
            value_set=value_set,
            fixed_value=fixed_value if fixed_value is not None else fixed_values.get(path),
            profile_url=profile_url,
        )

        if not _is_table_path(path, element_type, profile_url):
            continue
        if path in paths:
            paths[path] = merge_path_constraints(paths[path], constraint)
        else:
            paths[path] = constraint

    # A fully fixed coding makes the binding of its CodeableConcept moot
    for path in fixed_coding_paths:
        concept_path = re.sub(r"\.coding$", "", path)
        if concept_path in paths:
            paths[concept_path].value_set = None

    return ResourceEntry(
        resource=ResourceMeta(
            profile=f"{structure_definition.get('url')}|{structure_definition.get('version')}",
            fhir_resource_type=structure_definition.get("type", ""),
            status=_find_resource_status(structure_definition),
        ),
        paths=rename_resource_paths(paths, structure_definition["name"]),
    )


# =============================================================================
# Remediations
# =============================================================================

_CONTACT_PERSON = "KBV_PR_MIO_ULB_RelatedPerson_Contact_Person"
_NURSING_MEASURES = "KBV_PR_MIO_ULB_Procedure_Nursing_Measures"
_PRACTITIONER = "KBV_PR_MIO_ULB_Practitioner"

_GENDER_OTHER = f"{_CONTACT_PERSON}.gender.extension:other-amtlich"
_ZEITPLAN = f"{_NURSING_MEASURES}.extension:zeitplan"
_CODE_SNOMED = f"{_ZEITPLAN}.extension:codeSnomed"
_STRUKTURIERT = f"{_ZEITPLAN}.extension:angabeStrukturiert"
_BIRTH_NAME = f"{_PRACTITIONER}.name:geburtsname.family"

# Paths missing from the published snapshots, keyed by profile
MISSING_PATHS: Dict[str, Dict[str, PathConstraint]] = {
    _CONTACT_PERSON: {
        f"{_GENDER_OTHER}.url": PathConstraint(
            type="StringPIO", fixed_value="http://fhir.de/StructureDefinition/gender-amtlich-de"
        ),
        f"{_GENDER_OTHER}.valueCoding": PathConstraint(
            type="CodingPIO", value_set="http://fhir.de/ValueSet/gender-other-de"
        ),
        f"{_GENDER_OTHER}.valueCoding.system": PathConstraint(type="UriPIO"),
        f"{_GENDER_OTHER}.valueCoding.version": PathConstraint(type="StringPIO"),
        f"{_GENDER_OTHER}.valueCoding.code": PathConstraint(type="CodePIO"),
        f"{_GENDER_OTHER}.valueCoding.display": PathConstraint(type="StringPIO"),
    },
    _NURSING_MEASURES: {
        f"{_ZEITPLAN}.url": PathConstraint(type="StringPIO"),
        f"{_CODE_SNOMED}.url": PathConstraint(type="StringPIO"),
        f"{_CODE_SNOMED}.valueCodeableConcept.coding.system": PathConstraint(type="UriPIO"),
        f"{_CODE_SNOMED}.valueCodeableConcept.coding.version": PathConstraint(type="StringPIO"),
        f"{_CODE_SNOMED}.valueCodeableConcept.coding.code": PathConstraint(type="CodePIO"),
        f"{_CODE_SNOMED}.valueCodeableConcept.coding.display": PathConstraint(type="StringPIO"),
        _STRUKTURIERT: PathConstraint(type="UriPIO"),
        f"{_STRUKTURIERT}.url": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:zeitpunkt": PathConstraint(type="UriPIO"),
        f"{_STRUKTURIERT}.extension:zeitpunkt.url": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:zeitpunkt.valueTiming.code.coding": PathConstraint(
            type="CodingPIO", value_set="https://fhir.kbv.de/ValueSet/KBV_VS_Base_Event_Timing"
        ),
        f"{_STRUKTURIERT}.extension:zeitpunkt.valueTiming.code.coding.system": PathConstraint(type="UriPIO"),
        f"{_STRUKTURIERT}.extension:zeitpunkt.valueTiming.code.coding.version": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:zeitpunkt.valueTiming.code.coding.code": PathConstraint(type="CodePIO"),
        f"{_STRUKTURIERT}.extension:zeitpunkt.valueTiming.code.coding.display": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:frequenz": PathConstraint(type="UriPIO"),
        f"{_STRUKTURIERT}.extension:frequenz.url": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:frequenz.valueTiming.repeat.periodUnit": PathConstraint(
            type="CodePIO", value_set="http://hl7.org/fhir/ValueSet/units-of-time"
        ),
        f"{_STRUKTURIERT}.extension:frequenz.valueTiming.repeat.period": PathConstraint(type="DecimalPIO"),
        f"{_STRUKTURIERT}.extension:frequenz.valueTiming.repeat.frequency": PathConstraint(
            type="UnsignedIntegerPIO"
        ),
        f"{_STRUKTURIERT}.extension:dauer": PathConstraint(type="UriPIO"),
        f"{_STRUKTURIERT}.extension:dauer.url": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:dauer.valueQuantity.unit": PathConstraint(type="StringPIO"),
        f"{_STRUKTURIERT}.extension:dauer.valueQuantity.value": PathConstraint(type="DecimalPIO"),
        f"{_STRUKTURIERT}.extension:dauer.valueQuantity.system": PathConstraint(type="UriPIO"),
        f"{_STRUKTURIERT}.extension:dauer.valueQuantity.code": PathConstraint(type="CodePIO"),
    },
    _PRACTITIONER: {
        f"{_BIRTH_NAME}.extension:namenszusatz.valueString": PathConstraint(type="StringPIO"),
        f"{_BIRTH_NAME}.extension:nachname.valueString": PathConstraint(type="StringPIO"),
        f"{_BIRTH_NAME}.extension:vorsatzwort.valueString": PathConstraint(type="StringPIO"),
    },
}

# Profiles whose status header is missing from the differential
MISSING_STATUS = {
    "KBV_PR_MIO_ULB_Device": "extensions",
    "KBV_PR_MIO_ULB_Observation_Wish": "extensions",
}

# Entries that are not FHIR resources
NON_RESOURCE_PROFILES = ["KBV_PR_MIO_ULB_Identifier_PKV_KVID_10"]


def apply_remediations(table: ResourceTable) -> None:
    """Patch known gaps of the published profiles into the table in place."""
    for entry in table.values():
        for path, constraint in entry.paths.items():
            if constraint.type == "ExtensionPIO":
                constraint.type = "UriPIO"
            if path.endswith(".reference"):
                constraint.type = "UuidPIO"

    for profile_name, missing in MISSING_PATHS.items():
        entry = table.get(profile_name)
        if entry is None:
            logger.warning(f"Cannot add missing paths, profile {profile_name} not found")
            continue
        for path, constraint in missing.items():
            entry.paths[path] = PathConstraint(**vars(constraint))

    for profile_name, status in MISSING_STATUS.items():
        if profile_name in table:
            table[profile_name].resource.status = status
        else:
            logger.warning(f"Cannot set status, profile {profile_name} not found")

    for profile_name in NON_RESOURCE_PROFILES:
        table.pop(profile_name, None)


# =============================================================================
# Main Entry Point
# =============================================================================


async def generate_resource_table(
    client: TerminologyClient,
    cache: FileCache,
    package_dir: Optional[Path] = None,
    prefix: str = PROFILE_FILE_PREFIX,
) -> ResourceTable:
    """Build the resource lookup table for every profile of the package.

    Raises:
        SnapshotFetchError: If a missing snapshot can't be downloaded
    """
    directory = package_dir or PACKAGES_DIR / PROFILE_PACKAGE
    table: ResourceTable = {}

    async for structure_definition in iter_structure_definitions_with_snapshot(
        directory, client, cache, prefix
    ):
        name = str(structure_definition["name"])
        table[name] = build_resource_entry(structure_definition)
        logger.debug(
            f"Resolved {len(table[name].paths)} paths for {name}", extra={"profile": name}
        )

    apply_remediations(table)
    logger.info(f"Resource lookup table contains {len(table)} profiles")
    return table
