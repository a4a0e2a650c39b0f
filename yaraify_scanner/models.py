"""
Record types returned by the YARAify client.

All records are frozen dataclasses. Sequence fields are tuples so a record
cannot change after the codec hands it out.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class IdentifierFilter(Enum):
    """Server-side filter for list_tasks."""
    ALL = "all"
    QUEUED = "queued"
    PROCESSED = "processed"


@dataclass(frozen=True)
class Metadata:
    """File identity and fingerprint bundle.

    Every field is optional on the wire; absent strings decode to "" and
    absent counters to 0.
    """
    file_name: str = ""
    file_size: int = 0
    mime_type: str = ""
    first_seen: str = ""
    last_seen: str = ""
    sightings: int = 0
    sha256: str = ""
    md5: str = ""
    sha1: str = ""
    sha3_384: str = ""
    imphash: str = ""
    ssdeep: str = ""
    tlsh: str = ""
    telfhash: str = ""
    gimphash: str = ""
    dhash_icon: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class YaraMatch:
    """A single YARA rule hit."""
    rule_name: str = ""
    author: str = ""
    description: str = ""
    reference: str = ""
    tlp: str = ""


@dataclass(frozen=True)
class UnpackResult:
    """A payload produced by the unpacker, with its own rule hits."""
    file_name: str = ""
    md5: str = ""
    sha256: str = ""
    yara_matches: Tuple[YaraMatch, ...] = ()


@dataclass(frozen=True)
class Task:
    """One scan task.

    all_matches is the static matches followed by the matches of every
    unpacked payload, in order. It is derived once in __post_init__.
    """
    task_id: str = ""
    timestamp: str = ""
    file_name: str = ""
    clamav_results: Tuple[str, ...] = ()
    static_results: Tuple[YaraMatch, ...] = ()
    unpack_results: Tuple[UnpackResult, ...] = ()
    all_matches: Tuple[YaraMatch, ...] = field(init=False, default=())

    def __post_init__(self):
        matches = list(self.static_results)
        for unpacked in self.unpack_results:
            matches.extend(unpacked.yara_matches)
        object.__setattr__(self, "all_matches", tuple(matches))


@dataclass(frozen=True)
class TaskResult:
    """Metadata of a file plus the tasks that scanned it."""
    metadata: Optional[Metadata]
    tasks: Tuple[Task, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "tasks": [asdict(t) for t in self.tasks],
        }


@dataclass(frozen=True)
class IdentifierResult:
    """One row of a list_tasks response."""
    task_id: str = ""
    task_status: str = ""
    md5: str = ""
    sha256: str = ""
    file_name: str = ""


@dataclass(frozen=True)
class YaraRuleMetadata:
    """Provenance of a rule deployed on YARAify (YARAhub fields)."""
    time_stamp: str = ""
    uuid: str = ""
    rule_name: str = ""
    author: str = ""
    description: str = ""
    date: str = ""
    license: str = ""
    author_twitter: str = ""
    reference_link: str = ""
    reference_md5: str = ""
    matching_tlp: str = ""
    sharing_tlp: str = ""
    malpedia_family: str = ""
