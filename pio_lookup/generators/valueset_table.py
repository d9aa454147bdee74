"""ValueSet lookup table generation.

Resolves every ValueSet referenced by the resource lookup table into a flat,
code-unique list of concepts, using the ValueSet and CodeSystem definitions
shipped in the local terminology packages.

Components:
- TerminologyIndex: url -> definition file for ValueSets and CodeSystems
- ValueSet resolution: enumerated concepts, nested include-by-reference,
  pre-expanded concept windows
- CodeSystem resolution: concept trees, "is-a" filtering, deprecated
  concepts, German designations
- Flattening of includes and expansion into one list per ValueSet
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import CODE_SYSTEM_ALIASES, PACKAGES_DIR, TERMINOLOGY_PACKAGES
from .helpers import read_json_file, strip_version
from .models import Concept, PreferredTerm, ResourceTable, TranslationStats, ValueSetTable

logger = logging.getLogger(__name__)

PreferredTermIndex = Dict[str, PreferredTerm]


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class TerminologyIndex:
    """Where each ValueSet and CodeSystem definition lives on disk."""

    value_sets: Dict[str, Path] = field(default_factory=dict)
    code_systems: Dict[str, Path] = field(default_factory=dict)
    packages: Dict[str, str] = field(default_factory=dict)  # url -> declaring package


@dataclass
class IncludeResolution:
    """One compose.include after resolution.

    ``concepts`` is None when the include names a whole system (or a filtered
    part of it) rather than enumerating codes.
    """

    system: Optional[str]
    version: Optional[str] = None
    concepts: Optional[List[Concept]] = None
    filters: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ValueSetResolution:
    includes: List[IncludeResolution] = field(default_factory=list)
    expansion: List[Concept] = field(default_factory=list)


@dataclass(frozen=True)
class ConceptNode:
    """Immutable node of a CodeSystem concept hierarchy."""

    code: str
    display: Optional[str]
    german_display: Optional[str]
    deprecated: bool
    children: Tuple["ConceptNode", ...] = ()


# =============================================================================
# Index & Reference Collection
# =============================================================================


def build_terminology_index(folders: Iterable[Path]) -> TerminologyIndex:
    """Index every ValueSet and CodeSystem JSON file by its canonical url.

    Args:
        folders: Package folders to scan (non-recursive)

    Returns:
        The populated index; later folders win for duplicate urls
    """
    index = TerminologyIndex()
    for folder in folders:
        folder = Path(folder)
        if not folder.is_dir():
            logger.warning(f"Terminology package folder {folder} does not exist")
            continue
        for path in sorted(folder.glob("*.json")):
            resource = read_json_file(path)
            if resource is None or not resource.get("url"):
                continue
            url = resource["url"]
            if resource.get("resourceType") == "ValueSet":
                index.value_sets[url] = path
            elif resource.get("resourceType") == "CodeSystem":
                index.code_systems[url] = path
            else:
                continue
            index.packages[url] = folder.name

    logger.info(
        f"Indexed {len(index.value_sets)} ValueSets and {len(index.code_systems)} CodeSystems"
    )
    return index


def default_terminology_folders(packages_dir: Optional[Path] = None) -> List[Path]:
    root = packages_dir or PACKAGES_DIR
    return [root / package for package in TERMINOLOGY_PACKAGES]


def collect_value_set_urls(table: ResourceTable) -> List[str]:
    """Collect the distinct ValueSet urls (version stripped) bound in the table."""
    urls: Dict[str, None] = {}
    for entry in table.values():
        for constraint in entry.paths.values():
            value_set = constraint.value_set
            if not value_set:
                continue
            for url in value_set if isinstance(value_set, list) else [value_set]:
                urls[strip_version(str(url))] = None
    return list(urls)


# =============================================================================
# Helpers
# =============================================================================


def find_german_designation(item: Dict[str, Any]) -> Optional[str]:
    for designation in item.get("designation") or []:
        language = designation.get("language") or ""
        if language == "de" or language.startswith("de-"):
            return designation.get("value")
    return None


def is_snomed(system: Optional[str]) -> bool:
    return bool(system) and "://snomed.info/sct" in system


def _is_deprecated(item: Dict[str, Any]) -> bool:
    for prop in item.get("property") or []:
        if prop.get("valueCode") == "deprecated":
            return True
        if prop.get("code") == "deprecated" and prop.get("valueBoolean") is True:
            return True
    return False


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


# =============================================================================
# CodeSystem Resolution
# =============================================================================


def build_concept_tree(raw_concepts: List[Dict[str, Any]]) -> Tuple[ConceptNode, ...]:
    """Convert nested CodeSystem.concept entries into immutable nodes.

    Built bottom-up with an explicit stack so deep hierarchies don't hit the
    recursion limit.
    """
    built: Dict[int, ConceptNode] = {}
    stack: List[Tuple[Dict[str, Any], bool]] = [(item, False) for item in reversed(raw_concepts)]

    while stack:
        item, children_done = stack.pop()
        children = item.get("concept") or []
        if not children_done:
            stack.append((item, True))
            stack.extend((child, False) for child in reversed(children))
            continue
        built[id(item)] = ConceptNode(
            code=str(item.get("code", "")),
            display=item.get("display"),
            german_display=find_german_designation(item),
            deprecated=_is_deprecated(item),
            children=tuple(built[id(child)] for child in children),
        )

    return tuple(built[id(item)] for item in raw_concepts)


def find_concept(roots: Tuple[ConceptNode, ...], code: Optional[str]) -> Optional[ConceptNode]:
    """Depth-first search for a code anywhere in the hierarchy."""
    stack = list(reversed(roots))
    while stack:
        node = stack.pop()
        if node.code == code:
            return node
        stack.extend(reversed(node.children))
    return None


def flatten_concepts(
    roots: Tuple[ConceptNode, ...], system: Optional[str], version: Optional[str]
) -> List[Concept]:
    """Flatten a hierarchy depth-first, leaving out deprecated concepts.

    Children of a deprecated concept are still visited and kept unless they
    are deprecated themselves.
    """
    concepts: List[Concept] = []
    stack = list(reversed(roots))
    while stack:
        node = stack.pop()
        if not node.deprecated:
            concepts.append(
                Concept(
                    code=node.code,
                    display=node.german_display or node.display,
                    system=system,
                    version=version,
                    german_display=node.german_display,
                )
            )
        stack.extend(reversed(node.children))
    return concepts


def apply_concept_filters(
    roots: Tuple[ConceptNode, ...], filters: List[Dict[str, Any]], system: Optional[str]
) -> Tuple[ConceptNode, ...]:
    """Narrow the working set according to compose.include.filter.

    Only "is-a" is supported: the working set becomes the anchor's
    descendants. Unknown anchors and unsupported operators are reported and
    leave the working set unchanged.
    """
    for concept_filter in filters:
        if concept_filter.get("op") != "is-a":
            logger.warning(
                f"Filter operation not supported: {concept_filter.get('op')} on {system}"
            )
            logger.debug(f"Unsupported filter: {concept_filter}")
            continue
        anchor = find_concept(roots, concept_filter.get("value"))
        if anchor is None:
            logger.warning(
                f"is-a anchor {concept_filter.get('value')} not found in {system}, filter ignored"
            )
            continue
        roots = anchor.children
    return roots


def resolve_code_system(
    url: str, index: TerminologyIndex, filters: Optional[List[Dict[str, Any]]] = None
) -> Optional[List[Concept]]:
    """Resolve a CodeSystem to its flat concept list, or None if unknown."""
    path = index.code_systems.get(url)
    if path is None:
        return None
    code_system = read_json_file(path)
    if code_system is None:
        return None

    identifiers = code_system.get("identifier") or [{}]
    system = code_system.get("url") or identifiers[0].get("system")
    roots = build_concept_tree(code_system.get("concept") or [])
    roots = apply_concept_filters(roots, filters or [], system)
    return flatten_concepts(roots, system, code_system.get("version"))


def combine_with_code_system(include: IncludeResolution, index: TerminologyIndex) -> None:
    """Replace an include's concepts with those of its (non-SNOMED) CodeSystem.

    Enumerated includes keep only the codes they name, in their order.
    """
    if not include.system or is_snomed(include.system):
        return
    system = CODE_SYSTEM_ALIASES.get(include.system, include.system)
    code_system_concepts = resolve_code_system(system, index, include.filters)
    if code_system_concepts is None:
        return

    if include.concepts is None:
        include.concepts = code_system_concepts
        return

    by_code = {concept.code: concept for concept in code_system_concepts}
    subset: List[Concept] = []
    for requested in include.concepts:
        found = by_code.get(requested.code)
        if found is None:
            continue
        if found.german_display is None and requested.german_display is not None:
            found = replace(
                found, display=requested.german_display, german_display=requested.german_display
            )
        subset.append(found)
    include.concepts = subset


# =============================================================================
# ValueSet Resolution
# =============================================================================


def _load_value_set(url: str, index: TerminologyIndex) -> Optional[Dict[str, Any]]:
    path = index.value_sets.get(url)
    if path is None:
        logger.warning(f"ValueSet {url} not found in terminology packages", extra={"value_set": url})
        return None
    return read_json_file(path)


def lookup_preferred_term(
    preferred_terms: Optional[PreferredTermIndex], system: Optional[str], code: str
) -> Optional[str]:
    if not preferred_terms or not is_snomed(system):
        return None
    entry = preferred_terms.get(code)
    return entry.term if entry is not None else None


def resolve_nested_includes(
    references: List[str], index: TerminologyIndex, visited: set
) -> List[IncludeResolution]:
    """Resolve include-by-reference chains to the systems they declare.

    Works through the chain with a queue; references already seen are skipped.
    """
    derived: List[IncludeResolution] = []
    pending = list(references)
    while pending:
        url = strip_version(str(pending.pop(0)))
        if url in visited:
            continue
        visited.add(url)
        nested = _load_value_set(url, index)
        if nested is None:
            continue
        for include in (nested.get("compose") or {}).get("include", []):
            if include.get("system"):
                derived.append(
                    IncludeResolution(system=include["system"], version=include.get("version"))
                )
            elif include.get("valueSet"):
                pending.extend(_as_list(include["valueSet"]))
    return derived


def _resolve_expansion(value_set: Dict[str, Any]) -> List[Concept]:
    expansion = value_set.get("expansion") or {}
    if expansion.get("total") is None or expansion.get("offset") is None:
        return []

    concepts: List[Concept] = []
    contains = expansion.get("contains") or []
    for item in contains[expansion["offset"]:expansion["total"]]:
        if not item.get("code"):
            continue
        german = find_german_designation(item)
        concepts.append(
            Concept(
                code=item["code"],
                display=german or item.get("display"),
                system=item.get("system"),
                version=item.get("version"),
                german_display=german,
            )
        )
    return concepts


def resolve_value_set(
    url: str,
    index: TerminologyIndex,
    preferred_terms: Optional[PreferredTermIndex] = None,
    stats: Optional[TranslationStats] = None,
) -> ValueSetResolution:
    """Resolve one ValueSet's includes and expansion.

    Args:
        url: ValueSet url without version
        index: Local terminology index
        preferred_terms: German preferred terms keyed by SNOMED concept id
        stats: Accumulator for German term coverage of enumerated concepts

    Returns:
        The resolved includes and expansion; empty if the ValueSet is unknown
    """
    value_set = _load_value_set(url, index)
    if value_set is None:
        return ValueSetResolution()

    resolution = ValueSetResolution()
    for include in (value_set.get("compose") or {}).get("include", []):
        filters = include.get("filter") or []
        if "concept" in include:
            system = include.get("system") or value_set.get("url")
            version = include.get("version") or value_set.get("version")
            concepts = []
            for raw in include.get("concept") or []:
                code = str(raw.get("code", ""))
                german = find_german_designation(raw) or lookup_preferred_term(
                    preferred_terms, system, code
                )
                if stats is not None:
                    stats.record(german is not None)
                concepts.append(
                    Concept(
                        code=code,
                        display=german or raw.get("display"),
                        system=system,
                        version=version,
                        german_display=german,
                    )
                )
            resolution.includes.append(
                IncludeResolution(system=system, version=version, concepts=concepts, filters=filters)
            )
        elif include.get("valueSet"):
            resolution.includes.extend(
                resolve_nested_includes(_as_list(include["valueSet"]), index, {url})
            )
        else:
            resolution.includes.append(
                IncludeResolution(
                    system=include.get("system"), version=include.get("version"), filters=filters
                )
            )

    resolution.expansion = _resolve_expansion(value_set)
    return resolution


def flatten_resolution(resolution: ValueSetResolution) -> List[Concept]:
    """Merge includes and expansion into one list with unique codes.

    Include concepts overwrite earlier ones with the same code; expansion
    concepts only fill codes the includes did not produce.
    """
    unique: Dict[str, Concept] = {}
    for include in resolution.includes:
        for concept in include.concepts or []:
            if concept.code:
                unique[concept.code] = concept
    for concept in resolution.expansion:
        if concept.code not in unique:
            unique[concept.code] = concept
    return list(unique.values())


def resolve_value_set_concepts(
    url: str,
    index: TerminologyIndex,
    preferred_terms: Optional[PreferredTermIndex] = None,
    stats: Optional[TranslationStats] = None,
) -> List[Concept]:
    """Resolve a ValueSet all the way to its flat concept list."""
    resolution = resolve_value_set(url, index, preferred_terms, stats)
    for include in resolution.includes:
        combine_with_code_system(include, index)
    return flatten_resolution(resolution)


# =============================================================================
# Main Entry Point
# =============================================================================


def generate_value_set_table(
    resource_table: ResourceTable,
    index: TerminologyIndex,
    preferred_terms: Optional[PreferredTermIndex] = None,
) -> Tuple[ValueSetTable, TranslationStats]:
    """Resolve every ValueSet bound in the resource table.

    ValueSets are resolved one after another, in the order their urls were
    collected. Enumerated SNOMED concepts take their display from
    ``preferred_terms`` when they carry no German designation.

    Returns:
        The ValueSet lookup table and the German coverage of enumerated codes
    """
    urls = collect_value_set_urls(resource_table)
    stats = TranslationStats()

    table: ValueSetTable = {
        url: resolve_value_set_concepts(url, index, preferred_terms, stats) for url in urls
    }

    logger.info(f"There should be {stats.german} german translations in {stats.total} Codes")
    return table, stats
