"""
YARAify Client - abuse.ch YARA scanning and malware intelligence service

Implements the YARAify JSON API for file submission, task and hash lookups,
fuzzy-hash and rule searches, YARA rule retrieval and sample downloads.

Every query is a flat JSON object POSTed to the API endpoint; file uploads
are multipart with the same JSON under the "json_data" field. Responses are
JSON envelopes with a query_status token (see codec.py), except downloads,
which return a ZIP archive (see archive.py) or raw rule text.
"""

import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .archive import (
    SAMPLE_ARCHIVE_PASSWORD,
    first_member,
    read_archive,
    read_archive_file,
)
from .batch import (
    DEFAULT_RESULT_LIMIT,
    ErrorPolicy,
    clamp_limit,
    run_batch,
)
from .codec import (
    decode_envelope,
    parse_identifier,
    parse_identifier_results,
    parse_metadata,
    parse_metadata_list,
    parse_task_result_by_hash,
    parse_task_result_by_id,
    parse_yara_rule_metadata,
    require_success,
    sniff_envelope,
)
from .errors import DecodeError, InputValidationError
from .models import (
    IdentifierFilter,
    IdentifierResult,
    Metadata,
    TaskResult,
    YaraRuleMetadata,
)

# Optional fingerprinting libraries
try:
    import pefile
    HAS_PEFILE = True
except ImportError:
    HAS_PEFILE = False

try:
    import ssdeep
    HAS_SSDEEP = True
except ImportError:
    HAS_SSDEEP = False

try:
    import tlsh
    HAS_TLSH = True
except ImportError:
    HAS_TLSH = False

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

YARAIFY_ENDPOINT = "https://yaraify-api.abuse.ch/api/v1/"
YARAIFY_RULES_URL = "https://yaraify-api.abuse.ch/download/yaraify-rules.zip"

USER_AGENT = "yaraify-scanner"


class Query:
    """Values of the "query" key, one per remote operation."""
    GENERATE_IDENTIFIER = "generate_identifier"
    LIST_TASKS          = "list_tasks"
    GET_RESULTS         = "get_results"
    LOOKUP_HASH         = "lookup_hash"
    GET_YARA            = "get_yara"
    GET_CLAMAV          = "get_clamav"
    GET_IMPHASH         = "get_imphash"
    GET_TLSH            = "get_tlsh"
    GET_TELFHASH        = "get_telfhash"
    GET_GIMPHASH        = "get_gimphash"
    GET_DHASH_ICON      = "get_dhash_icon"
    GET_FILE            = "get_file"
    GET_UNPACKED        = "get_unpacked"
    GET_YARA_RULE       = "get_yara_rule"
    RECENT_YARARULES    = "recent_yararules"


# Short names for the metadata search families (CLI "lookup" kinds)
LOOKUP_QUERIES = {
    "yara": Query.GET_YARA,
    "clamav": Query.GET_CLAMAV,
    "imphash": Query.GET_IMPHASH,
    "tlsh": Query.GET_TLSH,
    "telfhash": Query.GET_TELFHASH,
    "gimphash": Query.GET_GIMPHASH,
    "dhash": Query.GET_DHASH_ICON,
}

# Upload option keys, sent as 0/1 integers
UPLOAD_FLAGS = ("clamav_scan", "unpack", "share_file", "skip_known", "skip_noisy")


# ---------------------------------------------------------------------------
# File analysis
# ---------------------------------------------------------------------------

@dataclass
class FileInfo:
    """Locally computed fingerprint of a file, comparable to Metadata."""
    path: str
    size: int
    sha256: str
    md5: str
    sha1: str
    sha3_384: str
    imphash: Optional[str] = None
    ssdeep_hash: Optional[str] = None
    tlsh_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def analyze_file(path: str) -> FileInfo:
    """Compute the hashes YARAify reports for a file, without uploading it."""
    file_path = Path(path)
    if not file_path.is_file():
        raise FileNotFoundError(f"File not found: {path}")

    data = file_path.read_bytes()

    info = FileInfo(
        path=str(file_path.resolve()),
        size=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        md5=hashlib.md5(data).hexdigest(),
        sha1=hashlib.sha1(data).hexdigest(),
        sha3_384=hashlib.sha3_384(data).hexdigest(),
    )

    if HAS_SSDEEP:
        info.ssdeep_hash = ssdeep.hash(data)

    if HAS_TLSH:
        digest = tlsh.hash(data)
        # Inputs under 50 bytes have no TLSH
        if digest and digest != "TNULL":
            info.tlsh_hash = digest

    if HAS_PEFILE and len(data) > 2 and data[:2] == b'MZ':
        try:
            pe = pefile.PE(data=data, fast_load=False)
        except pefile.PEFormatError as e:
            logger.debug("Not a parseable PE (%s): %s", path, e)
        else:
            info.imphash = pe.get_imphash() or None
            pe.close()

    return info


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class YaraifyConfig:
    """Configuration for the YARAify client.

    api_key is sent as the Auth-Key header. malpedia_token, when set, is
    forwarded with task and hash lookups so the service can attach Malpedia
    family attributions.

    The upload defaults (clamav_scan .. skip_noisy) apply when scan_file is
    called without explicit flags.
    """
    endpoint: str = YARAIFY_ENDPOINT
    rules_url: str = YARAIFY_RULES_URL
    api_key: Optional[str] = None
    malpedia_token: Optional[str] = None
    timeout: int = 30
    proxy: Optional[str] = None
    verify_ssl: bool = True
    user_agent: str = USER_AGENT
    result_limit: int = DEFAULT_RESULT_LIMIT
    clamav_scan: bool = True
    unpack: bool = False
    share_file: bool = False
    skip_known: bool = False
    skip_noisy: bool = True


# ---------------------------------------------------------------------------
# Request builder
# ---------------------------------------------------------------------------

def _flag(value: bool) -> int:
    return 1 if value else 0


class QueryBuilder:
    """Construct the flat JSON objects sent for each query kind.

    Every method returns a new dict; key order is fixed so the same inputs
    always serialize to the same bytes.
    """

    def __init__(self, config: YaraifyConfig):
        self.config = config

    @staticmethod
    def encode(request: Dict[str, Any]) -> bytes:
        return json.dumps(request).encode("utf-8")

    def _with_malpedia(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.config.malpedia_token:
            request["malpedia-token"] = self.config.malpedia_token
        return request

    def build_generate_identifier(self) -> Dict[str, Any]:
        return {"query": Query.GENERATE_IDENTIFIER}

    def build_list_tasks(
        self,
        identifier: str,
        task_status: IdentifierFilter = IdentifierFilter.ALL,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {"query": Query.LIST_TASKS, "identifier": identifier}
        # ALL is expressed by leaving the filter out
        if task_status is not None and task_status is not IdentifierFilter.ALL:
            request["task_status"] = task_status.value
        return request

    def build_upload(
        self,
        identifier: Optional[str] = None,
        clamav_scan: bool = True,
        unpack: bool = False,
        share_file: bool = False,
        skip_known: bool = False,
        skip_noisy: bool = True,
    ) -> Dict[str, Any]:
        """JSON carried in the json_data part of a multipart upload."""
        request: Dict[str, Any] = {}
        if identifier and identifier.strip():
            request["identifier"] = identifier
        request["clamav_scan"] = _flag(clamav_scan)
        request["unpack"] = _flag(unpack)
        request["share_file"] = _flag(share_file)
        request["skip_known"] = _flag(skip_known)
        request["skip_noisy"] = _flag(skip_noisy)
        return request

    def build_get_results(self, task_id: str) -> Dict[str, Any]:
        return self._with_malpedia({"query": Query.GET_RESULTS, "task_id": task_id})

    def build_lookup_hash(self, file_hash: str) -> Dict[str, Any]:
        return self._with_malpedia({"query": Query.LOOKUP_HASH, "search_term": file_hash})

    def build_search(self, query: str, search_term: str, limit: int) -> Dict[str, Any]:
        """Metadata search (get_yara, get_clamav, get_imphash, ...)."""
        return {
            "query": query,
            "search_term": search_term,
            "result_max": clamp_limit(limit),
        }

    def build_get_file(self, sha256: str) -> Dict[str, Any]:
        return {"query": Query.GET_FILE, "sha256_hash": sha256}

    def build_get_unpacked(self, sha256: str) -> Dict[str, Any]:
        return {"query": Query.GET_UNPACKED, "sha256_hash": sha256}

    def build_get_yara_rule(self, uuid: str) -> Dict[str, Any]:
        return {"query": Query.GET_YARA_RULE, "uuid": uuid}

    def build_recent_yararules(self) -> Dict[str, Any]:
        return {"query": Query.RECENT_YARARULES}


# ---------------------------------------------------------------------------
# HTTP Transport
# ---------------------------------------------------------------------------

class YaraifyTransport:
    """HTTP transport for the YARAify API.

    Returns raw response bodies. HTTP status codes are not interpreted: the
    service reports failures through query_status, which the client checks.
    """

    def __init__(self, config: YaraifyConfig):
        self.config = config
        self.session = requests.Session()
        self.session.verify = config.verify_ssl
        self.session.headers["User-Agent"] = config.user_agent
        if config.api_key:
            self.session.headers["Auth-Key"] = config.api_key

        if config.proxy:
            self.session.proxies = {
                "http": config.proxy,
                "https": config.proxy,
            }

    def _send(self, method: str, url: str, **kwargs) -> bytes:
        start = time.monotonic()
        try:
            resp = self.session.request(method, url, timeout=self.config.timeout, **kwargs)
        except requests.exceptions.SSLError as e:
            raise ConnectionError(
                f"TLS error talking to {url}: {e}\n"
                "Tip: Use --no-verify when going through an intercepting proxy."
            ) from e
        except requests.exceptions.RequestException as e:
            latency = (time.monotonic() - start) * 1000
            raise ConnectionError(f"HTTP request failed ({latency:.0f}ms): {e}") from e
        latency = (time.monotonic() - start) * 1000
        logger.debug(
            "%s %s -> HTTP %d, %d bytes, %.0fms",
            method, url, resp.status_code, len(resp.content), latency,
        )
        return resp.content

    def post(self, body: bytes) -> bytes:
        """POST a JSON query to the API endpoint."""
        return self._send(
            "POST",
            self.config.endpoint,
            data=body,
            headers={"Content-Type": "application/json"},
        )

    def post_multipart(self, fields: Dict[str, str], file_path: str) -> bytes:
        """POST a file plus form fields as multipart/form-data."""
        with open(file_path, "rb") as fh:
            files = {"file": (os.path.basename(file_path), fh)}
            return self._send("POST", self.config.endpoint, data=fields, files=files)

    def get(self, url: str) -> bytes:
        """GET an arbitrary URL (used for the bulk rule feed)."""
        return self._send("GET", url)


# ---------------------------------------------------------------------------
# High-level YARAify client
# ---------------------------------------------------------------------------

def _require(value: Optional[str], name: str) -> str:
    if value is None or not str(value).strip():
        raise InputValidationError(f"The given {name} is null or empty")
    return value


class YaraifyClient:
    """High-level client for the YARAify API.

    Single-item methods raise on any failure. The plural methods take an
    ErrorPolicy: CONTINUE leaves failing inputs out of the returned dict,
    ABORT re-raises the first failure.
    """

    def __init__(self, config: Optional[YaraifyConfig] = None, transport=None):
        self.config = config or YaraifyConfig()
        self.builder = QueryBuilder(self.config)
        self.transport = transport if transport is not None else YaraifyTransport(self.config)

    # -- Plumbing -----------------------------------------------------------

    def _query(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Send a JSON query and return the validated envelope."""
        logger.debug("query %s", request.get("query"))
        raw = self.transport.post(self.builder.encode(request))
        return require_success(decode_envelope(raw), query=request.get("query", ""))

    def _download(self, request: Dict[str, Any]) -> bytes:
        """Send a download query and return the raw body.

        Failures come back as a JSON envelope instead of file content.
        """
        logger.debug("download %s", request.get("query"))
        raw = self.transport.post(self.builder.encode(request))
        envelope = sniff_envelope(raw)
        if envelope is not None:
            require_success(envelope, query=request.get("query", ""))
        return raw

    @staticmethod
    def _check_extract_options(temp_path: Optional[str], in_memory: bool):
        if in_memory and temp_path is not None:
            raise InputValidationError("temp_path cannot be combined with in_memory")

    @staticmethod
    def _extract(
        raw: bytes,
        password: Optional[str],
        temp_path: Optional[str],
        in_memory: bool,
    ) -> List[bytes]:
        if in_memory:
            return read_archive(raw, password)
        return read_archive_file(raw, password, temp_path)

    def _upload_flags(self, overrides: Dict[str, Optional[bool]]) -> Dict[str, bool]:
        return {
            name: getattr(self.config, name) if overrides.get(name) is None else overrides[name]
            for name in UPLOAD_FLAGS
        }

    # -- Identifiers --------------------------------------------------------

    def create_identifier(self) -> str:
        """Ask the service for a new private identifier."""
        envelope = self._query(self.builder.build_generate_identifier())
        identifier = parse_identifier(envelope)
        if not identifier:
            raise DecodeError("generate_identifier response carried no identifier")
        return identifier

    def query_identifier(
        self,
        identifier: str,
        task_status: IdentifierFilter = IdentifierFilter.ALL,
    ) -> List[IdentifierResult]:
        """List the tasks bound to an identifier, optionally filtered by status."""
        _require(identifier, "identifier")
        envelope = self._query(self.builder.build_list_tasks(identifier, task_status))
        return parse_identifier_results(envelope)

    # -- Uploads ------------------------------------------------------------

    def scan_file(
        self,
        path: str,
        identifier: Optional[str] = None,
        clamav: Optional[bool] = None,
        unpack: Optional[bool] = None,
        share_file: Optional[bool] = None,
        skip_known: Optional[bool] = None,
        skip_noisy: Optional[bool] = None,
    ) -> Metadata:
        """Upload a file for scanning and return the metadata the service assigned.

        Flags left as None fall back to the config defaults.
        """
        if path is None:
            raise InputValidationError("The given file path is None")
        file_path = Path(path)
        if not file_path.exists():
            raise InputValidationError(f"The given file does not exist: {path}")
        if file_path.is_dir():
            raise InputValidationError(f"The given path refers to a folder: {path}")

        flags = self._upload_flags({
            "clamav_scan": clamav,
            "unpack": unpack,
            "share_file": share_file,
            "skip_known": skip_known,
            "skip_noisy": skip_noisy,
        })
        request = self.builder.build_upload(identifier=identifier, **flags)

        try:
            logger.debug("upload %s (%d bytes)", file_path, file_path.stat().st_size)
            raw = self.transport.post_multipart(
                {"json_data": json.dumps(request)}, str(file_path),
            )
        except ConnectionError:
            raise
        except OSError as e:
            # Opening the local file failed (permissions, vanished, ...)
            raise InputValidationError(f"The given file cannot be read: {path}: {e}") from e
        envelope = require_success(decode_envelope(raw), query="upload")

        metadata = parse_metadata(envelope.get("data"))
        if metadata is None:
            raise DecodeError("An error occurred when parsing the file upload response", raw=raw)
        return metadata

    def scan_files(
        self,
        paths: List[str],
        identifier: Optional[str] = None,
        clamav: Optional[bool] = None,
        unpack: Optional[bool] = None,
        share_file: Optional[bool] = None,
        skip_known: Optional[bool] = None,
        skip_noisy: Optional[bool] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, Metadata]:
        """Upload several files in order; keys of the result are the given paths."""
        def scan(path: str) -> Metadata:
            return self.scan_file(
                path, identifier=identifier, clamav=clamav, unpack=unpack,
                share_file=share_file, skip_known=skip_known, skip_noisy=skip_noisy,
            )
        keys = None if paths is None else [str(p) for p in paths]
        return run_batch(keys, scan, policy=policy, label="files")

    def scan_folder(
        self,
        folder: str,
        identifier: Optional[str] = None,
        clamav: Optional[bool] = None,
        unpack: Optional[bool] = None,
        share_file: Optional[bool] = None,
        skip_known: Optional[bool] = None,
        skip_noisy: Optional[bool] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, Metadata]:
        """Upload every regular file directly inside folder (no recursion).

        An empty folder yields an empty dict.
        """
        if folder is None:
            raise InputValidationError("The given folder is None")
        folder_path = Path(folder)
        if not folder_path.is_dir():
            raise InputValidationError(f"The given folder does not exist: {folder}")

        paths = sorted(str(p) for p in folder_path.iterdir() if p.is_file())
        if not paths:
            return {}
        return self.scan_files(
            paths, identifier=identifier, clamav=clamav, unpack=unpack,
            share_file=share_file, skip_known=skip_known, skip_noisy=skip_noisy,
            policy=policy,
        )

    # -- Task and hash lookups ----------------------------------------------

    def query_task_id(self, task_id: str) -> TaskResult:
        """Fetch the report of a single task."""
        _require(task_id, "task ID")
        envelope = self._query(self.builder.build_get_results(task_id))
        result = parse_task_result_by_id(task_id, envelope)
        if result is None:
            raise DecodeError("Failure when parsing the returned JSON")
        return result

    def query_file_hash(self, file_hash: str) -> TaskResult:
        """Fetch every task recorded for a file hash."""
        _require(file_hash, "file hash")
        envelope = self._query(self.builder.build_lookup_hash(file_hash))
        result = parse_task_result_by_hash(envelope)
        if result is None:
            raise DecodeError("Failure when parsing the returned JSON")
        return result

    def query_file_hashes(
        self,
        file_hashes: List[str],
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, TaskResult]:
        return run_batch(file_hashes, self.query_file_hash, policy=policy, label="file hashes")

    # -- Metadata searches --------------------------------------------------

    def _search(self, query: str, search_term: str, limit: Optional[int]) -> List[Metadata]:
        _require(search_term, "search term")
        if limit is None:
            limit = self.config.result_limit
        envelope = self._query(self.builder.build_search(query, search_term, limit))
        return parse_metadata_list(envelope)

    def _search_many(
        self,
        query: str,
        search_terms: List[str],
        limit: Optional[int],
        policy: ErrorPolicy,
        label: str,
    ) -> Dict[str, List[Metadata]]:
        # Clamp once; every member of the batch uses the same result_max
        limit = clamp_limit(self.config.result_limit if limit is None else limit)
        def search(term: str) -> List[Metadata]:
            return self._search(query, term, limit)

        return run_batch(search_terms, search, policy=policy, label=label)

    def lookup(self, kind: str, search_term: str, limit: Optional[int] = None) -> List[Metadata]:
        """Metadata search by short kind name (see LOOKUP_QUERIES)."""
        query = LOOKUP_QUERIES.get(kind)
        if query is None:
            raise InputValidationError(f"Unknown lookup kind: {kind}")
        return self._search(query, search_term, limit)

    def lookup_many(
        self,
        kind: str,
        search_terms: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        query = LOOKUP_QUERIES.get(kind)
        if query is None:
            raise InputValidationError(f"Unknown lookup kind: {kind}")
        return self._search_many(query, search_terms, limit, policy, f"{kind} search terms")

    def query_yara_rule(self, rule_name: str, limit: Optional[int] = None) -> List[Metadata]:
        """Files that matched a YARA rule. limit is clamped to [1, 1000], default 25."""
        return self._search(Query.GET_YARA, rule_name, limit)

    def query_yara_rules(
        self,
        rule_names: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_YARA, rule_names, limit, policy, "YARA rule names")

    def query_clamav_rule(self, signature: str, limit: Optional[int] = None) -> List[Metadata]:
        """Files that matched a ClamAV signature."""
        return self._search(Query.GET_CLAMAV, signature, limit)

    def query_clamav_rules(
        self,
        signatures: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_CLAMAV, signatures, limit, policy, "ClamAV signatures")

    def query_import_hash(self, imphash: str, limit: Optional[int] = None) -> List[Metadata]:
        return self._search(Query.GET_IMPHASH, imphash, limit)

    def query_import_hashes(
        self,
        imphashes: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_IMPHASH, imphashes, limit, policy, "import hashes")

    def query_tlsh(self, tlsh_hash: str, limit: Optional[int] = None) -> List[Metadata]:
        return self._search(Query.GET_TLSH, tlsh_hash, limit)

    def query_tlsh_hashes(
        self,
        tlsh_hashes: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_TLSH, tlsh_hashes, limit, policy, "TLSH hashes")

    def query_telfhash(self, telfhash: str, limit: Optional[int] = None) -> List[Metadata]:
        return self._search(Query.GET_TELFHASH, telfhash, limit)

    def query_telfhashes(
        self,
        telfhashes: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_TELFHASH, telfhashes, limit, policy, "telfhashes")

    def query_gimphash(self, gimphash: str, limit: Optional[int] = None) -> List[Metadata]:
        """Files sharing a Go import hash."""
        return self._search(Query.GET_GIMPHASH, gimphash, limit)

    def query_gimphashes(
        self,
        gimphashes: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_GIMPHASH, gimphashes, limit, policy, "Go import hashes")

    def query_icon_dhash(self, dhash: str, limit: Optional[int] = None) -> List[Metadata]:
        return self._search(Query.GET_DHASH_ICON, dhash, limit)

    def query_icon_dhashes(
        self,
        dhashes: List[str],
        limit: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, List[Metadata]]:
        return self._search_many(Query.GET_DHASH_ICON, dhashes, limit, policy, "icon dhashes")

    # -- Sample downloads ---------------------------------------------------

    def download_sample_archive(self, sha256: str) -> bytes:
        """The sample as served: a ZIP protected with the password "infected"."""
        _require(sha256, "SHA-256 hash")
        return self._download(self.builder.build_get_file(sha256))

    def download_sample(
        self,
        sha256: str,
        temp_path: Optional[str] = None,
        in_memory: bool = False,
    ) -> bytes:
        """Download a sample and return the raw file.

        Args:
            sha256: SHA-256 of the sample.
            temp_path: Where to spool the archive while extracting. Defaults
                to a fresh temp file for this call. Deleted before returning.
            in_memory: Extract without writing anything to disk.
        """
        self._check_extract_options(temp_path, in_memory)
        raw = self.download_sample_archive(sha256)
        return first_member(self._extract(raw, SAMPLE_ARCHIVE_PASSWORD, temp_path, in_memory))

    def download_unpacked_archive(self, sha256: str) -> bytes:
        """The unpacked payload of a sample, as a password-protected ZIP."""
        _require(sha256, "SHA-256 hash")
        return self._download(self.builder.build_get_unpacked(sha256))

    def download_unpacked_sample(
        self,
        sha256: str,
        temp_path: Optional[str] = None,
        in_memory: bool = False,
    ) -> bytes:
        """Download the unpacked payload of a sample and return the raw file."""
        self._check_extract_options(temp_path, in_memory)
        raw = self.download_unpacked_archive(sha256)
        return first_member(self._extract(raw, SAMPLE_ARCHIVE_PASSWORD, temp_path, in_memory))

    # -- YARA rules ---------------------------------------------------------

    def recent_yara_rules(self) -> List[YaraRuleMetadata]:
        """Metadata of recently deployed rules. The uuid field feeds download_yara_rule."""
        envelope = self._query(self.builder.build_recent_yararules())
        return parse_yara_rule_metadata(envelope)

    def download_yara_rule(self, uuid: str) -> str:
        """Download one rule. Only rules whose TLP allows sharing are served."""
        _require(uuid, "UUID")
        raw = self._download(self.builder.build_get_yara_rule(uuid))
        return raw.decode("utf-8", errors="replace")

    def download_yara_rules(
        self,
        uuids: List[str],
        policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> Dict[str, str]:
        return run_batch(uuids, self.download_yara_rule, policy=policy, label="UUIDs")

    def download_all_yara_rules_archive(self) -> bytes:
        """Every shareable rule in a single unencrypted ZIP (regenerated every 5 minutes)."""
        return self.transport.get(self.config.rules_url)

    def download_all_yara_rules(
        self,
        temp_path: Optional[str] = None,
        in_memory: bool = False,
    ) -> List[str]:
        """Every shareable rule, one string per rule file."""
        self._check_extract_options(temp_path, in_memory)
        archive = self.download_all_yara_rules_archive()
        members = self._extract(archive, None, temp_path, in_memory)
        return [m.decode("utf-8", errors="replace") for m in members]


# ---------------------------------------------------------------------------
# Config persistence
# ---------------------------------------------------------------------------

CONFIG_DIR = Path.home() / ".yaraify_scanner"
CONFIG_FILE = CONFIG_DIR / "config.json"

ENV_API_KEY = "YARAIFY_API_KEY"
ENV_MALPEDIA_TOKEN = "MALPEDIA_TOKEN"


def save_config(config: YaraifyConfig, path: Path = CONFIG_FILE):
    """Save config to disk."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "endpoint": config.endpoint,
        "rules_url": config.rules_url,
        "timeout": config.timeout,
        "proxy": config.proxy,
        "verify_ssl": config.verify_ssl,
        "user_agent": config.user_agent,
        "result_limit": config.result_limit,
        "clamav_scan": config.clamav_scan,
        "unpack": config.unpack,
        "share_file": config.share_file,
        "skip_known": config.skip_known,
        "skip_noisy": config.skip_noisy,
    }
    if config.api_key:
        data["api_key"] = config.api_key
    if config.malpedia_token:
        data["malpedia_token"] = config.malpedia_token
    path.write_text(json.dumps(data, indent=2))


def load_config(path: Path = CONFIG_FILE) -> YaraifyConfig:
    """Load config from disk, or create defaults, then apply environment overrides."""
    config = YaraifyConfig()
    if path.exists():
        try:
            data = json.loads(path.read_text())
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            config = YaraifyConfig(**{k: v for k, v in data.items()
                                      if k in YaraifyConfig.__dataclass_fields__})
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable config %s: %s", path, e)

    if os.environ.get(ENV_API_KEY):
        config.api_key = os.environ[ENV_API_KEY]
    if os.environ.get(ENV_MALPEDIA_TOKEN):
        config.malpedia_token = os.environ[ENV_MALPEDIA_TOKEN]
    return config
