"""YARAify Scanner - client for the abuse.ch YARAify service."""

from .batch import ErrorPolicy
from .client import YaraifyClient, YaraifyConfig, load_config, save_config
from .errors import (
    ArchiveError,
    DecodeError,
    InputValidationError,
    MemberNotFoundError,
    QueryStatusError,
    YaraifyError,
)
from .models import (
    IdentifierFilter,
    IdentifierResult,
    Metadata,
    Task,
    TaskResult,
    UnpackResult,
    YaraMatch,
    YaraRuleMetadata,
)

__version__ = "0.1.0"
