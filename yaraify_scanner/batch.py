"""
Sequential fan-out of single-item calls.

A batch call applies one operation to each key in order and collects the
results in a dict keyed by the caller's own key. Keys are never processed
concurrently, so which keys were attempted before a failure is always the
same for the same input.
"""

import logging
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from .errors import InputValidationError, YaraifyError

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_RESULT_LIMIT = 25
MAX_RESULT_LIMIT = 1000


class ErrorPolicy(Enum):
    """What a batch call does when one key fails."""
    CONTINUE = "continue"  # drop the key, keep going
    ABORT = "abort"        # re-raise, discard everything collected so far


# Failures that belong to a single key. Anything else is a bug and propagates.
BATCH_ERRORS = (YaraifyError, ConnectionError)


def clamp_limit(limit: int) -> int:
    """Clamp a result_max value to [1, 1000]; non-positive means the default 25."""
    if limit > MAX_RESULT_LIMIT:
        return MAX_RESULT_LIMIT
    if limit <= 0:
        return DEFAULT_RESULT_LIMIT
    return limit


def run_batch(
    keys: Optional[Iterable[K]],
    operation: Callable[[K], V],
    policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    label: str = "keys",
) -> Dict[K, V]:
    """Apply operation to every key in order.

    Args:
        keys: Inputs to process. Must be non-empty.
        operation: Single-item call, invoked once per key.
        policy: CONTINUE omits failing keys; ABORT re-raises the first failure.
        label: Human-readable name of the keys, used in errors and logs.

    Returns:
        Mapping of key -> result for every key that succeeded.
    """
    if keys is None:
        raise InputValidationError(f"The given list of {label} is None")
    key_list: List[K] = list(keys)
    if not key_list:
        raise InputValidationError(f"The given list of {label} is empty")
    if not isinstance(policy, ErrorPolicy):
        raise InputValidationError(f"Unknown error policy: {policy!r}")

    results: Dict[K, V] = {}
    for i, key in enumerate(key_list, start=1):
        logger.debug("batch %s [%d/%d] %s", label, i, len(key_list), key)
        try:
            results[key] = operation(key)
        except BATCH_ERRORS as e:
            if policy is ErrorPolicy.ABORT:
                raise
            logger.warning("Skipping %s: %s", key, e)
    return results
