"""Configuration constants for the PIO lookup table generators."""

import os
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent.parent
PROJECT_DIR = BASE_DIR.parent
PACKAGES_DIR = Path(os.getenv("PIO_PACKAGES_DIR", str(PROJECT_DIR / "packages")))
OUTPUT_DIR = Path(os.getenv("PIO_OUTPUT_DIR", str(BASE_DIR / "data")))
LOG_DIR = Path(os.getenv("PIO_LOG_DIR", str(PROJECT_DIR / "logs")))

# =============================================================================
# Cache Configuration
# =============================================================================

CACHE_DIR = Path(os.getenv("PIO_CACHE_DIR", str(PROJECT_DIR / ".cache")))
DEFAULT_CACHE_EXPIRY_S = 60 * 60 * 24 * 7 * 4  # 4 weeks

# =============================================================================
# Remote Endpoints
# =============================================================================

SNOWSTORM_BASE_URL = os.getenv(
    "PIO_SNOWSTORM_BASE_URL",
    "https://browser.ihtsdotools.org/snowstorm/snomed-ct/MAIN/SNOMEDCT-DE",
)
SNAPSHOT_URL_TEMPLATE = os.getenv(
    "PIO_SNAPSHOT_URL_TEMPLATE",
    "https://simplifier.net/ulb/{name}/$downloadsnapshot?format=json",
)

REQUEST_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "Connection": "keep-alive",
    "Accept-Language": "de",
    "User-Agent": "Care-Regio-Pio-Editor/2",
}
REQUEST_TIMEOUT_S = 60.0

# Shared by every request of a pipeline run
MAX_REQUESTS_PER_PERIOD = 5
RATE_LIMIT_PERIOD_S = 1.0

MEMBERS_PAGE_LIMIT = 10000

SNAPSHOT_RETRIES = 3
SNAPSHOT_RETRY_DELAY_S = 1.0

# =============================================================================
# Terminology Configuration
# =============================================================================

GERMAN_MODULE_ID = "11000274103"
GERMAN_LANGUAGE_REFSET_ID = "31000274107"
SYNONYM_TYPE_ID = "900000000000013009"
PREFERRED_TERMS_CACHE_KEY = "germanConceptIds"

# Include systems that point at a ValueSet url instead of their CodeSystem
CODE_SYSTEM_ALIASES = {
    "http://ihe.net/fhir/ValueSet/IHE.FormatCode.codesystem":
        "http://ihe.net/fhir/ihe.formatcode.fhir/CodeSystem/formatcode",
}

CONCEPT_MAP_URLS = [
    "https://simplifier.net/base1x0/kbv-cm-base-terminology-complete-german/$download?format=json",
    "https://simplifier.net/ulb/kbv-cm-mio-ulb-overview/$download?format=json",
    "https://simplifier.net/basisprofil-de-r4/conceptmap-ops-snomed-category-mapping/$download?format=json",
]

GERMAN_REFSET_IDS = {
    "Allergene": "30121001000107",
    "Manifestation von Allergien": "30111001000102",
    "Unerwünschte Reaktionen bei Impfungen": "30131001000105",
    "Allergie/ Unverträglichkeiten bei Impfungen": "30141001000103",
    "Zielkrankheit von Impfungen": "30151001000101",
    "Immunisierung: Impfplan": "30161001000104",
    "MIO Basis-Profile": "71001000103",
    "MIO Kinderuntersuchungsheft": "10071001000102",
    "MIO Impfpass": "91001000102",
    "MIO Mutterpass": "81001000100",
    "ORPHAcodes": "50111001000103",
    "Mikroorgansimen": "30101001000100",
    "Substanzen": "20081001000107",
    "Top-Level-Konzepte und gängige Begriffe": "30191001000109",
    "Einheit": "30181001000106",
    "Impfprodukte": "30171001000108",
}

# =============================================================================
# Package Configuration
# =============================================================================

PROFILE_PACKAGE = "kbv.mio.ueberleitungsbogen"
PROFILE_FILE_PREFIX = "KBV_PR_MIO_ULB"

TERMINOLOGY_PACKAGES = [
    "hl7.fhir.r4.core",
    "de.basisprofil.r4",
    "kbv.basis",
    "kbv.mio.ueberleitungsbogen",
    "KBV_SFHIR",
    "ihe.formatcode.fhir",
]

TYPE_SUFFIX = "PIO"

EXCLUSIONS_FILE = Path(
    os.getenv("PIO_EXCLUSIONS_FILE", str(BASE_DIR / "helper" / "PioSmallExclusions.json"))
)

# Output file names
RESOURCE_TABLE_FILE = "ResourceLookUpTable.json"
PIO_SMALL_TABLE_FILE = "PioSmallLookUpTable.json"
VALUE_SET_TABLE_FILE = "ValueSetLookUpTable.json"
EXCLUDED_PATHS_TRANSLATION_FILE = "TranslationListOfExcludedPaths.json"
