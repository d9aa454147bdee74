"""German translation sources and their overlay onto the ValueSet table.

Three independent sources, fetched concurrently and cached:
1. Preferred-term index: every German preferred term of the SNOMED CT
   German module, keyed by concept id
2. Concept maps: curated code -> German term mappings, keyed by system
3. Reference sets: German preferred terms of selected SNOMED CT refsets

The overlay is additive: a concept's German display, once set (inline or by
an earlier source), is never replaced. Applying it twice changes nothing.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .cache import FileCache
from .config import (
    CONCEPT_MAP_URLS,
    GERMAN_LANGUAGE_REFSET_ID,
    GERMAN_MODULE_ID,
    GERMAN_REFSET_IDS,
    PREFERRED_TERMS_CACHE_KEY,
    SYNONYM_TYPE_ID,
)
from .fetcher import TerminologyClient
from .models import Concept, MemberItem, PreferredTerm, TranslationStats, ValueSetTable
from .valueset_table import PreferredTermIndex, is_snomed

logger = logging.getLogger(__name__)

# {system: {code: German term}}
GermanTranslationTable = Dict[str, Dict[str, str]]


@dataclass
class TranslationSources:
    """The three translation sources, as fetched for one run."""

    preferred_terms: PreferredTermIndex = field(default_factory=dict)
    concept_maps: GermanTranslationTable = field(default_factory=dict)
    refsets: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# Source 1: Preferred-Term Index
# =============================================================================


def _is_preferred(term: PreferredTerm) -> bool:
    return term.acceptability_map.get(GERMAN_LANGUAGE_REFSET_ID) == "PREFERRED"


def build_preferred_term_index(items: List[Dict[str, Any]]) -> PreferredTermIndex:
    """Reduce raw member items to one German term per concept id.

    Items that are inactive, unreleased, not German or without a term are
    skipped. When a concept shows up twice the PREFERRED variant is kept; if
    neither is preferred, the later one wins and a warning is logged.
    """
    index: PreferredTermIndex = {}
    skipped = 0
    duplicates = 0

    for raw in items:
        try:
            item = MemberItem.model_validate(raw)
        except ValueError:
            skipped += 1
            continue
        component = item.referenced_component
        if not (item.active and item.released and component.lang == "de" and component.term):
            skipped += 1
            continue

        term = PreferredTerm(
            conceptId=component.concept_id,
            term=component.term,
            languageCode=component.lang,
            acceptabilityMap=component.acceptability_map,
        )
        existing = index.get(term.concept_id)
        if existing is None:
            index[term.concept_id] = term
            continue

        duplicates += 1
        if _is_preferred(term):
            index[term.concept_id] = term
        elif not _is_preferred(existing):
            logger.warning(
                f"The concept ID {term.concept_id} has no preferred term === "
                f"{term.acceptability_map.get(GERMAN_LANGUAGE_REFSET_ID)}"
            )
            index[term.concept_id] = term

    total = len(items)
    logger.debug(f"Get {len(index)} individual/{total} from German Concept IDs")
    logger.info(f"Not active or released: {skipped}/{total}")
    logger.info(f"Not accepted: {duplicates}/{total}")
    return index


async def fetch_preferred_terms(client: TerminologyClient, cache: FileCache) -> PreferredTermIndex:
    """Download (or load from cache) the German preferred-term index."""
    cached = cache.get(PREFERRED_TERMS_CACHE_KEY)
    if isinstance(cached, dict):
        try:
            return {key: PreferredTerm.model_validate(value) for key, value in cached.items()}
        except ValueError:
            logger.warning("Cached German concept ids are malformed, downloading again")

    result = await client.fetch_all_members(
        {
            "active": True,
            "conceptActive": True,
            "lang": "de",
            "module": GERMAN_MODULE_ID,
            "groupByConcept": True,
            "type": SYNONYM_TYPE_ID,
        }
    )
    index = build_preferred_term_index(result.items)
    if result.complete:
        cache.put(
            PREFERRED_TERMS_CACHE_KEY,
            {key: term.model_dump(by_alias=True) for key, term in index.items()},
        )
    else:
        logger.warning(
            f"German concept ids incomplete ({len(result.items)}/{result.total}), not cached",
            extra={"cache_key": PREFERRED_TERMS_CACHE_KEY, "total": result.total},
        )
    return index


# =============================================================================
# Source 2: Concept Maps
# =============================================================================


def concept_map_name(url: str) -> str:
    """Name a concept map download after its second-to-last url segment."""
    return url.split("/")[-2]


async def fetch_concept_map(
    url: str, client: TerminologyClient, cache: FileCache
) -> Optional[Dict[str, Any]]:
    """Fetch one ConceptMap document, None if it can't be retrieved."""
    name = concept_map_name(url)
    cache_key = f"conceptMap_{name}"
    cached = cache.get(cache_key)
    if isinstance(cached, dict) and cached.get("resourceType") == "ConceptMap":
        logger.debug(f"Returning cached ConceptMap {name}", extra={"cache_key": cache_key})
        return cached

    try:
        response = await client.get(url)
    except httpx.HTTPError as e:
        logger.error(f"Error fetching ConceptMap for {name}: {e}")
        return None
    if not response.is_success:
        logger.error(
            f"Error fetching ConceptMap for {name}: {response.status_code} {response.reason_phrase}",
            extra={"status_code": response.status_code},
        )
        return None

    try:
        concept_map = response.json()
    except ValueError as e:
        logger.error(f"Error parsing ConceptMap for {name}: {e}")
        return None
    if not isinstance(concept_map, dict) or concept_map.get("resourceType") != "ConceptMap":
        logger.error(f"Download for {name} is not a ConceptMap")
        return None

    cache.put(cache_key, concept_map)
    return concept_map


def concept_map_translations(concept_map: Optional[Dict[str, Any]]) -> GermanTranslationTable:
    """Map each group's source system to {code: display of the last target}."""
    translations: GermanTranslationTable = {}
    if not concept_map:
        return translations
    for group in concept_map.get("group") or []:
        codes = translations.setdefault(group.get("source", ""), {})
        for element in group.get("element") or []:
            targets = element.get("target") or []
            display = targets[-1].get("display") if targets else None
            if element.get("code") and display:
                codes[element["code"]] = display
    return translations


def merge_translation_tables(tables: List[GermanTranslationTable]) -> GermanTranslationTable:
    """Deep-merge translation tables; later tables win per system and code."""
    combined: GermanTranslationTable = {}
    for table in tables:
        for system, codes in table.items():
            combined.setdefault(system, {}).update(codes)
    return combined


async def fetch_concept_map_translations(
    client: TerminologyClient, cache: FileCache, urls: Optional[List[str]] = None
) -> GermanTranslationTable:
    concept_maps = await asyncio.gather(
        *(fetch_concept_map(url, client, cache) for url in (urls or CONCEPT_MAP_URLS))
    )
    return merge_translation_tables([concept_map_translations(cm) for cm in concept_maps])


# =============================================================================
# Source 3: Reference Sets
# =============================================================================


async def fetch_refset(
    name: str, refset_id: str, client: TerminologyClient, cache: FileCache
) -> List[Dict[str, Any]]:
    """Download all members of one reference set, cached under its name."""
    cached = cache.get(name)
    if isinstance(cached, dict) and isinstance(cached.get("items"), list):
        logger.debug(
            f"Get {len(cached['items'])}/{cached.get('total')} from {name} from cache",
            extra={"refset": name},
        )
        return cached["items"]

    result = await client.fetch_all_members({"referenceSet": refset_id, "active": True})
    if not result.complete:
        logger.error(
            f"There is a problem to retrieve the data from: {name} with ID: {refset_id}",
            extra={"refset": name, "total": result.total},
        )
        return result.items

    cache.put(name, {"items": result.items, "total": result.total})
    logger.debug(
        f"Get {len(result.items)}/{result.total} from {name} and saved it to cache",
        extra={"refset": name},
    )
    return result.items


def extract_refset_translations(items: List[Dict[str, Any]]) -> Dict[str, str]:
    """Map concept id to German preferred term for refset members."""
    translations: Dict[str, str] = {}
    for raw in items:
        try:
            component = MemberItem.model_validate(raw).referenced_component
        except ValueError:
            continue
        if component.concept_id and component.pt is not None and component.pt.term:
            translations[component.concept_id] = component.pt.term
    return translations


async def fetch_refset_translations(
    client: TerminologyClient,
    cache: FileCache,
    refset_ids: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Fetch every refset; for codes in several refsets the first listed wins."""
    refset_ids = refset_ids or GERMAN_REFSET_IDS
    results = await asyncio.gather(
        *(fetch_refset(name, refset_id, client, cache) for name, refset_id in refset_ids.items())
    )
    translations: Dict[str, str] = {}
    for items in results:
        for code, term in extract_refset_translations(items).items():
            translations.setdefault(code, term)
    return translations


# =============================================================================
# Overlay
# =============================================================================


async def fetch_translation_sources(
    client: TerminologyClient, cache: FileCache
) -> TranslationSources:
    """Fetch all three sources concurrently."""
    preferred_terms, concept_maps, refsets = await asyncio.gather(
        fetch_preferred_terms(client, cache),
        fetch_concept_map_translations(client, cache),
        fetch_refset_translations(client, cache),
    )
    return TranslationSources(
        preferred_terms=preferred_terms, concept_maps=concept_maps, refsets=refsets
    )


def _set_german_display(concept: Concept, term: Optional[str]) -> bool:
    if concept.german_display or not term:
        return False
    concept.german_display = term
    return True


def _iter_concepts(table: ValueSetTable):
    for concepts in table.values():
        yield from concepts


def apply_preferred_terms(table: ValueSetTable, preferred_terms: PreferredTermIndex) -> int:
    added = 0
    for concept in _iter_concepts(table):
        if is_snomed(concept.system) and concept.code in preferred_terms:
            added += _set_german_display(concept, preferred_terms[concept.code].term)
    return added


def apply_concept_map_translations(table: ValueSetTable, translations: GermanTranslationTable) -> int:
    added = 0
    for concept in _iter_concepts(table):
        codes = translations.get(concept.system or "")
        if codes:
            added += _set_german_display(concept, codes.get(concept.code))
    return added


def apply_refset_translations(table: ValueSetTable, translations: Dict[str, str]) -> int:
    added = 0
    for concept in _iter_concepts(table):
        if is_snomed(concept.system):
            added += _set_german_display(concept, translations.get(concept.code))
    return added


def apply_translation_overlay(table: ValueSetTable, sources: TranslationSources) -> ValueSetTable:
    """Fold the three sources into the table, highest precedence first."""
    added = apply_preferred_terms(table, sources.preferred_terms)
    logger.debug(f"Added {added} German terms from the preferred-term index")
    added = apply_concept_map_translations(table, sources.concept_maps)
    logger.debug(f"Added {added} German terms from concept maps")
    added = apply_refset_translations(table, sources.refsets)
    logger.debug(f"Added {added} German terms from reference sets")
    return table


def count_german_translations(table: ValueSetTable) -> TranslationStats:
    """Report how many concepts carry a German display."""
    stats = TranslationStats()
    for url, concepts in table.items():
        german = sum(1 for concept in concepts if concept.german_display)
        stats.german += german
        stats.total += len(concepts)
        logger.debug(f"{url}: {german}/{len(concepts)}", extra={"value_set": url})

    logger.info(
        f"Counting German Translations finished. Total: German:{stats.german} / All:{stats.total}. "
        f"In Total {stats.percentage:.2f}% of the ValueSetLookUpTable has German translations"
    )
    return stats
