"""Unit tests for path normalization and string helpers."""

import json

from pio_lookup.generators.helpers import (
    capitalize,
    normalize_element_path,
    read_json_file,
    strip_version,
    write_json_file,
)


class TestNormalizeElementPath:
    """Tests for normalize_element_path."""

    def test_plain_path_unchanged(self):
        """Test that a path without choice marker is returned as is."""
        assert normalize_element_path("Patient.name.family") == "Patient.name.family"

    def test_extension_slice_unchanged(self):
        """Test that extension slices without choice marker survive."""
        path = "resource.extension:extensionString"
        assert normalize_element_path(path) == path

    def test_single_segment_unchanged(self):
        """Test that a bare column name is returned as is."""
        assert normalize_element_path("extensionString") == "extensionString"

    def test_choice_slice_collapses(self):
        """Test that value[x]:valueString becomes valueString."""
        assert normalize_element_path("Observation.value[x]:valueString") == "Observation.valueString"

    def test_unsliced_choice_unchanged(self):
        """Test that a choice marker without slice is kept."""
        assert normalize_element_path("[x]") == "[x]"
        assert normalize_element_path("Observation.value[x]") == "Observation.value[x]"

    def test_other_slices_stripped_when_choice_present(self):
        """Test that non-extension slices are stripped next to a choice slice."""
        path = "Observation.code.coding:snomed.value[x]:valueCoding"
        assert normalize_element_path(path) == "Observation.code.coding.valueCoding"

    def test_extension_slice_kept_when_choice_present(self):
        """Test that extension slices are kept next to a choice slice."""
        path = "Patient.extension:birthPlace.value[x]:valueAddress"
        assert normalize_element_path(path) == "Patient.extension:birthPlace.valueAddress"

    def test_idempotent(self):
        """Test that normalizing twice equals normalizing once."""
        paths = [
            "Observation.value[x]:valueString",
            "Patient.extension:birthPlace.value[x]:valueAddress",
            "Observation.code.coding:snomed.value[x]:valueCoding",
            "Observation.value[x]",
            "resource.extension:extensionString",
        ]
        for path in paths:
            once = normalize_element_path(path)
            assert normalize_element_path(once) == once


class TestCapitalize:
    """Tests for capitalize."""

    def test_empty_string(self):
        assert capitalize("") == ""

    def test_lowercase(self):
        assert capitalize("hello") == "Hello"

    def test_already_capitalized(self):
        assert capitalize("Hello") == "Hello"

    def test_rest_untouched(self):
        """Test that only the first letter changes."""
        assert capitalize("dateTime") == "DateTime"

    def test_none(self):
        assert capitalize(None) is None


class TestJsonFiles:
    """Tests for the JSON file helpers."""

    def test_strip_version(self):
        assert strip_version("http://example.org/ValueSet/vs|1.0.0") == "http://example.org/ValueSet/vs"
        assert strip_version("http://example.org/ValueSet/vs") == "http://example.org/ValueSet/vs"

    def test_write_then_read(self, tmp_path):
        """Test that written documents are read back, umlauts included."""
        path = tmp_path / "nested" / "table.json"
        write_json_file(path, {"display": "Größe"})

        assert read_json_file(path) == {"display": "Größe"}
        assert "Größe" in path.read_text(encoding="utf-8")

    def test_read_invalid_json(self, tmp_path):
        """Test that unparseable files come back as None."""
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        assert read_json_file(path) is None

    def test_read_missing_file(self, tmp_path):
        assert read_json_file(tmp_path / "missing.json") is None

    def test_read_non_object(self, tmp_path):
        """Test that top-level arrays are rejected."""
        path = tmp_path / "list.json"
        path.write_text(json.dumps([1, 2]), encoding="utf-8")
        assert read_json_file(path) is None
