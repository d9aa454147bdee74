"""End-to-end tests for the pipeline, its artifacts, the CLI and run logging."""

import asyncio
import json
import logging
import sys

import httpx
import pytest

from pio_lookup.generators.config import CONCEPT_MAP_URLS
from pio_lookup.generators.translations import concept_map_name
from pio_lookup.generators.fetcher import RateLimiter, TerminologyClient
from pio_lookup.generators.logging import setup_run_logging
from pio_lookup.generators.pipeline import run_pipeline, write_artifacts
from pio_lookup.generators.resource_table import SnapshotFetchError

PROFILE = "KBV_PR_MIO_ULB_Condition_Test"
SNOMED = "http://snomed.info/sct"
VS_SNOMED = "https://fhir.kbv.de/ValueSet/KBV_VS_Test_Snomed"
VS_LOCAL = "https://fhir.kbv.de/ValueSet/KBV_VS_Test_Local"
CS_LOCAL = "https://fhir.kbv.de/CodeSystem/KBV_CS_Test_Local"
CONCEPT_MAP_NAME = concept_map_name(CONCEPT_MAP_URLS[0])


def condition_profile() -> dict:
    return {
        "resourceType": "StructureDefinition",
        "name": PROFILE,
        "url": f"https://fhir.kbv.de/StructureDefinition/{PROFILE}",
        "version": "1.0.0",
        "type": "Condition",
        "snapshot": {
            "element": [
                {
                    "id": "Condition.code",
                    "type": [{"code": "CodeableConcept"}],
                    "binding": {"strength": "required", "valueSet": f"{VS_SNOMED}|1.0.0"},
                },
                {
                    "id": "Condition.severity",
                    "type": [{"code": "CodeableConcept"}],
                    "binding": {"strength": "required", "valueSet": VS_LOCAL},
                },
                {"id": "Condition.note", "type": [{"code": "Annotation"}]},
            ]
        },
    }


def write_packages(root):
    profiles = root / "kbv.mio.ueberleitungsbogen"
    profiles.mkdir(parents=True)
    (profiles / f"{PROFILE}.json").write_text(json.dumps(condition_profile()), encoding="utf-8")

    terminology = root / "kbv.basis"
    terminology.mkdir()
    resources = {
        "vs-snomed.json": {
            "resourceType": "ValueSet",
            "url": VS_SNOMED,
            "compose": {
                "include": [
                    {
                        "system": SNOMED,
                        "concept": [
                            {"code": "1", "display": "Headache"},
                            {"code": "2", "display": "Fever"},
                            {"code": "3", "display": "Cough"},
                        ],
                    }
                ]
            },
        },
        "vs-local.json": {
            "resourceType": "ValueSet",
            "url": VS_LOCAL,
            "compose": {"include": [{"system": CS_LOCAL}]},
        },
        "cs-local.json": {
            "resourceType": "CodeSystem",
            "url": CS_LOCAL,
            "concept": [
                {"code": "mild", "display": "Mild", "designation": [{"language": "de", "value": "Leicht"}]},
                {"code": "severe", "display": "Severe"},
            ],
        },
    }
    for name, resource in resources.items():
        (terminology / name).write_text(json.dumps(resource), encoding="utf-8")


def exclusions_file(tmp_path):
    path = tmp_path / "PioSmallExclusions.json"
    path.write_text(
        json.dumps({
            PROFILE: {
                "wholeResourceExcluded": False,
                "translation": "Problem",
                "excludedPaths": {f"{PROFILE}.note": "Notiz", f"{PROFILE}.code:snomed": None},
            }
        }),
        encoding="utf-8",
    )
    return path


def terminology_server(request: httpx.Request) -> httpx.Response:
    """Fake terminology browser and concept map downloads."""
    if request.url.path.endswith("/members"):
        params = request.url.params
        if params.get("referenceSet") == "30191001000109":
            items = [{"active": True, "referencedComponent": {"conceptId": "3", "pt": {"term": "Husten"}}}]
            return httpx.Response(200, json={"items": items, "total": 1})
        if "referenceSet" in params:
            return httpx.Response(200, json={"items": [], "total": 0})
        items = [
            {
                "active": True,
                "released": True,
                "referencedComponent": {
                    "conceptId": "1",
                    "term": "Kopfschmerz",
                    "lang": "de",
                    "acceptabilityMap": {"31000274107": "PREFERRED"},
                },
            }
        ]
        return httpx.Response(200, json={"items": items, "total": 1})

    if CONCEPT_MAP_NAME in request.url.path:
        concept_map = {
            "resourceType": "ConceptMap",
            "group": [{"source": SNOMED, "element": [{"code": "2", "target": [{"display": "Fieber"}]}]}],
        }
        return httpx.Response(200, json=concept_map)
    return httpx.Response(404)


def make_client(handler) -> TerminologyClient:
    return TerminologyClient(
        base_url="https://snowstorm.test/MAIN",
        limiter=RateLimiter(max_requests=1000, period_s=1.0),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def run(tmp_path, small=True, handler=terminology_server):
    packages = tmp_path / "packages"
    if not packages.exists():
        write_packages(packages)
    return asyncio.run(
        run_pipeline(
            cache_dir=tmp_path / "cache",
            packages_dir=packages,
            exclusions_path=exclusions_file(tmp_path),
            small=small,
            client=make_client(handler),
        )
    )


class TestRunPipeline:
    """Tests for run_pipeline."""

    def test_resource_and_small_tables(self, tmp_path):
        result = run(tmp_path)

        assert set(result.resource_table[PROFILE].paths) == {
            f"{PROFILE}.code",
            f"{PROFILE}.severity",
            f"{PROFILE}.note",
        }
        assert set(result.pio_small_table[PROFILE].paths) == {f"{PROFILE}.code", f"{PROFILE}.severity"}

    def test_value_set_table_with_overlays(self, tmp_path):
        """Test that all three sources end up in the ValueSet table."""
        result = run(tmp_path)
        snomed = {c.code: c.german_display for c in result.value_set_table[VS_SNOMED]}
        local = {c.code: c.german_display for c in result.value_set_table[VS_LOCAL]}

        assert snomed == {"1": "Kopfschmerz", "2": "Fieber", "3": "Husten"}
        assert local == {"mild": "Leicht", "severe": None}
        assert (result.stats.german, result.stats.total) == (4, 5)

    def test_preferred_term_becomes_display(self, tmp_path):
        """Test that enumerated SNOMED codes show their German preferred term."""
        result = run(tmp_path)
        concepts = {c.code: c for c in result.value_set_table[VS_SNOMED]}

        assert (concepts["1"].display, concepts["1"].german_display) == ("Kopfschmerz", "Kopfschmerz")
        assert (concepts["2"].display, concepts["2"].german_display) == ("Fever", "Fieber")

    def test_excluded_paths_translation_list(self, tmp_path):
        result = run(tmp_path)
        assert result.excluded_paths_translations[PROFILE]["excludedPaths"] == {f"{PROFILE}.note": "Notiz"}

    def test_no_small(self, tmp_path):
        result = run(tmp_path, small=False)
        assert result.pio_small_table is None
        assert set(result.value_set_table) == {VS_SNOMED, VS_LOCAL}

    def test_degraded_sources_do_not_abort(self, tmp_path):
        """Test that an unreachable terminology server only loses translations."""

        def offline(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        result = run(tmp_path, handler=offline)
        snomed = {c.code: c.german_display for c in result.value_set_table[VS_SNOMED]}

        assert snomed == {"1": None, "2": None, "3": None}

    def test_snapshot_failure_propagates(self, tmp_path):
        """Test that an unfetchable snapshot aborts the run."""
        packages = tmp_path / "packages"
        write_packages(packages)
        profile = condition_profile()
        profile["name"] = "KBV_PR_MIO_ULB_Without_Snapshot"
        del profile["snapshot"]
        (packages / "kbv.mio.ueberleitungsbogen" / "KBV_PR_MIO_ULB_Without_Snapshot.json").write_text(
            json.dumps(profile), encoding="utf-8"
        )

        def no_snapshots(request: httpx.Request) -> httpx.Response:
            if "downloadsnapshot" in request.url.path:
                return httpx.Response(500)
            return terminology_server(request)

        with pytest.raises(SnapshotFetchError):
            run(tmp_path, handler=no_snapshots)


class TestWriteArtifacts:
    """Tests for write_artifacts."""

    def test_four_documents(self, tmp_path):
        result = run(tmp_path)
        written = write_artifacts(result, tmp_path / "out")

        assert sorted(written) == [
            "PioSmallLookUpTable.json",
            "ResourceLookUpTable.json",
            "TranslationListOfExcludedPaths.json",
            "ValueSetLookUpTable.json",
        ]
        resource_table = json.loads((tmp_path / "out" / "ResourceLookUpTable.json").read_text(encoding="utf-8"))
        assert resource_table[PROFILE]["resource"] == {
            "profile": f"https://fhir.kbv.de/StructureDefinition/{PROFILE}|1.0.0",
            "fhir-resource-type": "Condition",
        }
        assert resource_table[PROFILE]["paths"][f"{PROFILE}.code"] == {
            "type": "CodeableConceptPIO",
            "valueSet": f"{VS_SNOMED}|1.0.0",
        }
        value_sets = json.loads((tmp_path / "out" / "ValueSetLookUpTable.json").read_text(encoding="utf-8"))
        assert value_sets[VS_SNOMED][0] == {
            "code": "1",
            "display": "Kopfschmerz",
            "system": SNOMED,
            "germanDisplay": "Kopfschmerz",
        }

    def test_small_table_skipped_without_small(self, tmp_path):
        result = run(tmp_path, small=False)
        written = write_artifacts(result, tmp_path / "out")
        assert "PioSmallLookUpTable.json" not in written


def reset_run_logging():
    logger = logging.getLogger("pio_lookup")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestRunLogging:
    """Tests for setup_run_logging."""

    def teardown_method(self):
        reset_run_logging()

    def test_jsonl_file_with_extra_fields(self, tmp_path):
        run_id = setup_run_logging(tmp_path, run_id="test-run", level=logging.WARNING)
        logger = logging.getLogger("pio_lookup.generators.test")
        logger.debug("Resolved paths", extra={"profile": PROFILE, "page": 2})

        log_path = tmp_path / "runs" / "test-run" / "pipeline.jsonl"
        record = json.loads(log_path.read_text(encoding="utf-8").splitlines()[-1])

        assert run_id == "test-run"
        assert record["message"] == "Resolved paths"
        assert record["level"] == "DEBUG"
        assert record["profile"] == PROFILE
        assert record["page"] == 2

    def test_setup_replaces_previous_handlers(self, tmp_path):
        setup_run_logging(tmp_path, run_id="first")
        setup_run_logging(tmp_path, run_id="second")
        assert len(logging.getLogger("pio_lookup").handlers) == 2


class TestCli:
    """Tests for the pio-lookup-generate entry point."""

    def teardown_method(self):
        reset_run_logging()

    def test_snapshot_failure_exits_with_status_1(self, tmp_path, monkeypatch):
        from pio_lookup.scripts import generate_lookup_tables

        async def failing_pipeline(**kwargs):
            raise SnapshotFetchError("Could not fetch snapshot for KBV_PR_MIO_ULB_Device")

        monkeypatch.setattr(generate_lookup_tables, "run_pipeline", failing_pipeline)
        monkeypatch.setattr(
            sys,
            "argv",
            ["pio-lookup-generate", "--packages-dir", str(tmp_path), "--log-dir", str(tmp_path / "logs")],
        )

        with pytest.raises(SystemExit) as exc_info:
            generate_lookup_tables.main()

        assert exc_info.value.code == 1
