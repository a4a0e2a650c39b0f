"""
YARAify JSON response codec.

Every API call answers with an envelope:

    {"query_status": "<token>", "data": <object | array>}

The shape of `data` depends on the query kind. The service is not consistent
about key names between endpoints (the upload response says "mime_type" where
lookups say "file_type_mime", and "sha3_384_hash" where lookups say
"sha3_384"), so metadata decoding goes through a fixed table of key aliases.

Assemblers in this module never raise on malformed payloads. List shapes
degrade to an empty list and object shapes to None; the client decides
whether an absent result is an error.
"""

import json
import math
from typing import Any, Dict, List, Optional, Tuple

from .errors import DecodeError, QueryStatusError
from .models import (
    IdentifierResult,
    Metadata,
    Task,
    TaskResult,
    UnpackResult,
    YaraMatch,
    YaraRuleMetadata,
)


# ---------------------------------------------------------------------------
# Status vocabulary
# ---------------------------------------------------------------------------

SUCCESS_STATUSES = frozenset({
    "ok",
    "inserted",
    "updated",
    "success",
    "no_results",
    "queued",
})


def decode_envelope(raw: bytes) -> Dict[str, Any]:
    """Decode a response body into its top-level JSON object."""
    try:
        envelope = json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError as e:
        raise DecodeError(f"Response is not valid JSON: {e}", raw=raw) from e
    if not isinstance(envelope, dict):
        raise DecodeError(
            f"Expected a JSON object, got {type(envelope).__name__}", raw=raw,
        )
    return envelope


def query_status(envelope: Dict[str, Any]) -> str:
    """Raw query_status token, "" when absent."""
    return _opt_str(envelope.get("query_status"))


def check_query_status(envelope: Dict[str, Any]) -> bool:
    """True if the envelope's query_status is in the success vocabulary."""
    return query_status(envelope).lower() in SUCCESS_STATUSES


def require_success(envelope: Dict[str, Any], query: str = "") -> Dict[str, Any]:
    """Return the envelope, or raise QueryStatusError with the raw token."""
    if not check_query_status(envelope):
        raise QueryStatusError(query_status(envelope), query=query)
    return envelope


def sniff_envelope(raw: bytes) -> Optional[Dict[str, Any]]:
    """Decode raw bytes as an envelope if they look like one.

    Download endpoints return archive or rule bytes on success and a JSON
    envelope on failure. Returns None when the body is not a JSON object
    carrying a query_status.
    """
    if raw.lstrip()[:1] != b"{":
        return None
    try:
        envelope = decode_envelope(raw)
    except DecodeError:
        return None
    if "query_status" not in envelope:
        return None
    return envelope


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def _opt_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _opt_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, float):
        # NaN and +/-Infinity are valid for json.loads
        if not math.isfinite(value):
            return 0
        return int(value)
    return 0


def _opt_object(obj: Any, key: str) -> Optional[Dict[str, Any]]:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, dict) else None


def _opt_array(obj: Any, key: str) -> Optional[List[Any]]:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, list) else None


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

# (attribute, candidate keys in lookup order, kind)
METADATA_FIELDS: Tuple[Tuple[str, Tuple[str, ...], str], ...] = (
    ("file_name",  ("file_name",),                   "str"),
    ("file_size",  ("file_size",),                   "int"),
    ("mime_type",  ("file_type_mime", "mime_type"),  "str"),
    ("first_seen", ("first_seen",),                  "str"),
    ("last_seen",  ("last_seen",),                   "str"),
    ("sightings",  ("sightings",),                   "int"),
    ("sha256",     ("sha256_hash",),                 "str"),
    ("md5",        ("md5_hash",),                    "str"),
    ("sha1",       ("sha1_hash",),                   "str"),
    ("sha3_384",   ("sha3_384", "sha3_384_hash"),    "str"),
    ("imphash",    ("imphash",),                     "str"),
    ("ssdeep",     ("ssdeep",),                      "str"),
    ("tlsh",       ("tlsh",),                        "str"),
    ("telfhash",   ("telfhash",),                    "str"),
    ("gimphash",   ("gimphash",),                    "str"),
    ("dhash_icon", ("dhash_icon",),                  "str"),
)


def _lookup(obj: Dict[str, Any], keys: Tuple[str, ...], kind: str) -> Any:
    """First non-empty value among keys, or the kind's empty value."""
    for key in keys:
        if kind == "int":
            value = _opt_int(obj.get(key))
            if value:
                return value
        else:
            value = _opt_str(obj.get(key))
            if value:
                return value
    return 0 if kind == "int" else ""


def parse_metadata(obj: Any) -> Optional[Metadata]:
    """Decode one metadata object. None if the object itself is missing."""
    if not isinstance(obj, dict):
        return None
    values = {attr: _lookup(obj, keys, kind) for attr, keys, kind in METADATA_FIELDS}
    return Metadata(**values)


def parse_metadata_list(envelope: Dict[str, Any]) -> List[Metadata]:
    """Decode a `data` array of metadata objects, skipping bad elements."""
    results: List[Metadata] = []
    for item in _opt_array(envelope, "data") or []:
        metadata = parse_metadata(item)
        if metadata is None:
            continue
        results.append(metadata)
    return results


# ---------------------------------------------------------------------------
# Identifier results
# ---------------------------------------------------------------------------

def parse_identifier_results(envelope: Dict[str, Any]) -> List[IdentifierResult]:
    """Decode a list_tasks response."""
    results: List[IdentifierResult] = []
    for item in _opt_array(envelope, "data") or []:
        if not isinstance(item, dict):
            continue
        results.append(IdentifierResult(
            task_id=_opt_str(item.get("task_id")),
            task_status=_opt_str(item.get("task_status")),
            md5=_opt_str(item.get("md5_hash")),
            sha256=_opt_str(item.get("sha256_hash")),
            file_name=_opt_str(item.get("file_name")),
        ))
    return results


def parse_identifier(envelope: Dict[str, Any]) -> str:
    """Pull the new identifier out of a generate_identifier response."""
    identifier = _opt_str(envelope.get("identifier"))
    if not identifier:
        identifier = _opt_str((_opt_object(envelope, "data") or {}).get("identifier"))
    return identifier


# ---------------------------------------------------------------------------
# Task results
# ---------------------------------------------------------------------------

def parse_string_list(array: Any) -> Tuple[str, ...]:
    if not isinstance(array, list):
        return ()
    return tuple(_opt_str(item) for item in array)


def parse_yara_matches(array: Any) -> Tuple[YaraMatch, ...]:
    if not isinstance(array, list):
        return ()
    matches: List[YaraMatch] = []
    for item in array:
        if not isinstance(item, dict):
            continue
        matches.append(YaraMatch(
            rule_name=_opt_str(item.get("rule_name")),
            author=_opt_str(item.get("author")),
            description=_opt_str(item.get("description")),
            reference=_opt_str(item.get("reference")),
            tlp=_opt_str(item.get("tlp")),
        ))
    return tuple(matches)


def parse_unpack_results(array: Any) -> Tuple[UnpackResult, ...]:
    if not isinstance(array, list):
        return ()
    results: List[UnpackResult] = []
    for item in array:
        if not isinstance(item, dict):
            continue
        results.append(UnpackResult(
            file_name=_opt_str(item.get("unpacked_file_name")),
            md5=_opt_str(item.get("unpacked_md5")),
            sha256=_opt_str(item.get("unpacked_sha256")),
            yara_matches=parse_yara_matches(item.get("unpacked_yara_matches")),
        ))
    return tuple(results)


def parse_task_result_by_id(task_id: str, envelope: Dict[str, Any]) -> Optional[TaskResult]:
    """Decode a get_results response into a single-task result.

    The response carries no timestamp or file name of its own for the task,
    so both are taken from the file metadata.
    """
    data = _opt_object(envelope, "data")
    if data is None:
        return None

    metadata = parse_metadata(data.get("metadata"))
    task = Task(
        task_id=task_id,
        timestamp=metadata.first_seen if metadata else "",
        file_name=metadata.file_name if metadata else "",
        clamav_results=parse_string_list(data.get("clamav_results")),
        static_results=parse_yara_matches(data.get("static_results")),
        unpack_results=parse_unpack_results(data.get("unpacker_results")),
    )
    return TaskResult(metadata=metadata, tasks=(task,))


def parse_task_result_by_hash(envelope: Dict[str, Any]) -> Optional[TaskResult]:
    """Decode a lookup_hash response into a multi-task result.

    The ClamAV hits live on the envelope, not on each task, so every task in
    the result carries the same list.
    """
    data = _opt_object(envelope, "data")
    if data is None:
        return None

    metadata = parse_metadata(data.get("metadata"))
    clamav_results = parse_string_list(envelope.get("clamav_results"))

    tasks: List[Task] = []
    for item in _opt_array(data, "tasks") or []:
        if not isinstance(item, dict):
            continue
        tasks.append(Task(
            task_id=_opt_str(item.get("task_id")),
            timestamp=_opt_str(item.get("time_stamp")),
            file_name=_opt_str(item.get("file_name")),
            clamav_results=clamav_results,
            static_results=parse_yara_matches(item.get("static_results")),
            unpack_results=parse_unpack_results(item.get("unpacker_results")),
        ))
    return TaskResult(metadata=metadata, tasks=tuple(tasks))


# ---------------------------------------------------------------------------
# Rule metadata
# ---------------------------------------------------------------------------

YARA_RULE_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("time_stamp",     "time_stamp"),
    ("uuid",           "yarahub_uuid"),
    ("rule_name",      "rule_name"),
    ("author",         "author"),
    ("description",    "description"),
    ("date",           "date"),
    ("license",        "yarahub_license"),
    ("author_twitter", "yarahub_author_twitter"),
    ("reference_link", "yarahub_reference_link"),
    ("reference_md5",  "yarahub_reference_md5"),
    ("matching_tlp",   "yarahub_rule_matching_tlp"),
    ("sharing_tlp",    "yarahub_rule_sharing_tlp"),
    ("malpedia_family", "malpedia_family"),
)


def parse_yara_rule_metadata(envelope: Dict[str, Any]) -> List[YaraRuleMetadata]:
    """Decode a recent_yararules response."""
    results: List[YaraRuleMetadata] = []
    for item in _opt_array(envelope, "data") or []:
        if not isinstance(item, dict):
            continue
        results.append(YaraRuleMetadata(**{
            attr: _opt_str(item.get(key)) for attr, key in YARA_RULE_FIELDS
        }))
    return results


# ---------------------------------------------------------------------------
# Debug helpers
# ---------------------------------------------------------------------------

def hexdump(data: bytes, offset: int = 0, length: Optional[int] = None) -> str:
    """Produce a hex dump of a response body for debugging."""
    if length is not None:
        data = data[offset:offset + length]
    else:
        data = data[offset:]

    lines: List[str] = []
    for i in range(0, len(data), 16):
        chunk = data[i:i + 16]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"  {offset + i:08x}  {hex_part:<48s}  {ascii_part}")

    return "\n".join(lines)
