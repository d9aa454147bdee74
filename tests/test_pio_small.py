"""Unit tests for the PIO-Small reduction and the excluded-path translation list."""

import json

from pio_lookup.generators.models import PathConstraint, ResourceEntry, ResourceMeta
from pio_lookup.generators.pio_small import (
    generate_exclusions_translation_list,
    generate_pio_small_table,
    load_exclusions,
)


def entry(*paths) -> ResourceEntry:
    return ResourceEntry(
        resource=ResourceMeta(profile="https://example.org/p|1.0", fhir_resource_type="Observation"),
        paths={path: PathConstraint(type="StringPIO") for path in paths},
    )


def lookup_table() -> dict:
    return {
        "P1": entry("P1.a", "P1.a.b", "P1.c", "P1.extension:foo.valueString"),
        "P2": entry("P2.a"),
        "P3": entry("P3.a"),
    }


def exclusions() -> dict:
    return {
        "P1": {
            "wholeResourceExcluded": False,
            "translation": "Beobachtung",
            "cardinalityReducedToOne": [],
            "excludedPaths": {
                "P1.a": "A übersetzt",
                "P1.zzz": None,
                "P1.extension:foo": "Foo",
            },
        },
        "P2": {"wholeResourceExcluded": True, "translation": "Zwei", "excludedPaths": None},
        "Missing": {"wholeResourceExcluded": True, "translation": "Fehlt", "excludedPaths": None},
        "P3": {"wholeResourceExcluded": False, "translation": "Drei", "excludedPaths": None},
    }


class TestGeneratePioSmallTable:
    """Tests for generate_pio_small_table."""

    def test_whole_resources_removed(self):
        small = generate_pio_small_table(lookup_table(), exclusions())
        assert list(small) == ["P1", "P3"]

    def test_paths_containing_excluded_path_removed(self):
        """Test that every path containing an excluded path string is cut."""
        small = generate_pio_small_table(lookup_table(), exclusions())

        assert list(small["P1"].paths) == ["P1.c"]
        assert list(small["P3"].paths) == ["P3.a"]

    def test_input_untouched(self):
        table = lookup_table()
        generate_pio_small_table(table, exclusions())

        assert list(table) == ["P1", "P2", "P3"]
        assert len(table["P1"].paths) == 4

    def test_no_exclusions(self):
        table = lookup_table()
        assert generate_pio_small_table(table, {}) == table


class TestExclusionsTranslationList:
    """Tests for generate_exclusions_translation_list."""

    def test_untranslated_dropped_and_slices_stripped(self):
        translation_list = generate_exclusions_translation_list(exclusions())
        assert translation_list["P1"]["excludedPaths"] == {
            "P1.a": "A übersetzt",
            "P1.extension": "Foo",
        }

    def test_whole_resource_entries_carried_over(self):
        translation_list = generate_exclusions_translation_list(exclusions())

        assert translation_list["P2"] == exclusions()["P2"]
        assert translation_list["P3"]["excludedPaths"] is None

    def test_input_untouched(self):
        original = exclusions()
        generate_exclusions_translation_list(original)
        assert original == exclusions()


class TestLoadExclusions:
    """Tests for load_exclusions."""

    def test_reads_document(self, tmp_path):
        path = tmp_path / "PioSmallExclusions.json"
        path.write_text(json.dumps(exclusions()), encoding="utf-8")
        assert load_exclusions(path) == exclusions()

    def test_missing_document_is_empty(self, tmp_path):
        assert load_exclusions(tmp_path / "missing.json") == {}
