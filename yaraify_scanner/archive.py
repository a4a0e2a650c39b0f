"""
Extraction of the ZIP archives served by YARAify downloads.

Samples (get_file / get_unpacked) come back as a ZIP protected with the
well-known password "infected"; the bulk rule feed comes back unencrypted.
pyzipper is used instead of the stdlib zipfile because it also reads WinZip
AES entries.

Two entry points:
  read_archive_file  spools the buffer to a temp file owned by this call and
                     always deletes it before returning or raising.
  read_archive       works on the in-memory buffer and never touches disk.

A member that fails to decompress is logged and skipped; the remaining
members are still returned.
"""

import io
import logging
import lzma
import os
import tempfile
import zlib
from pathlib import Path
from typing import List, Optional

import pyzipper

from .errors import ArchiveError, MemberNotFoundError

logger = logging.getLogger(__name__)

SAMPLE_ARCHIVE_PASSWORD = "infected"
TEMP_PREFIX = "yaraify-"
TEMP_SUFFIX = ".zip"

# Errors confined to one member: bad CRC/HMAC, wrong password, broken stream
MEMBER_ERRORS = (
    pyzipper.BadZipFile,
    RuntimeError,
    NotImplementedError,
    zlib.error,
    lzma.LZMAError,
    EOFError,
    OSError,
    ValueError,
)

# Errors that mean the container itself is unusable
CONTAINER_ERRORS = (
    pyzipper.BadZipFile,
    EOFError,
    OSError,
    ValueError,
)


def _is_encrypted(zf: pyzipper.AESZipFile) -> bool:
    return any(info.flag_bits & 0x1 for info in zf.infolist())


def _read_members(zf: pyzipper.AESZipFile, password: Optional[str]) -> List[bytes]:
    """Decompress every file member of an open archive, skipping broken ones."""
    if password and _is_encrypted(zf):
        zf.setpassword(password.encode("utf-8"))

    files: List[bytes] = []
    for info in zf.infolist():
        if info.is_dir():
            continue
        try:
            files.append(zf.read(info))
        except MEMBER_ERRORS as e:
            logger.warning("Skipping archive member %r: %s", info.filename, e)
    return files


def read_archive(data: bytes, password: Optional[str] = None) -> List[bytes]:
    """Extract every member of an in-memory ZIP archive.

    Args:
        data: Raw archive bytes.
        password: Applied only if the archive reports encrypted members.

    Returns:
        One bytes object per member that decompressed successfully, in
        archive order.
    """
    try:
        with pyzipper.AESZipFile(io.BytesIO(data)) as zf:
            return _read_members(zf, password)
    except CONTAINER_ERRORS as e:
        raise ArchiveError(f"Error whilst handling the in-memory ZIP archive: {e}") from e


def _spool_path(temp_path: Optional[str]) -> str:
    """Reserve the on-disk location of the archive; the caller must remove it."""
    if temp_path is None:
        fd, path = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX)
        os.close(fd)
        return path

    local_file = Path(temp_path)
    local_file.parent.mkdir(parents=True, exist_ok=True)
    return str(local_file)


def read_archive_file(
    data: bytes,
    password: Optional[str] = None,
    temp_path: Optional[str] = None,
) -> List[bytes]:
    """Extract every member of a ZIP archive via a temporary file.

    The archive is written to temp_path (overwriting whatever is there) or,
    when no path is given, to a fresh file unique to this call. The file is
    removed on every exit path, including errors.

    Args:
        data: Raw archive bytes.
        password: Applied only if the archive reports encrypted members.
        temp_path: Where to spool the archive. Callers running downloads in
            parallel must give each call its own path.

    Returns:
        One bytes object per member that decompressed successfully.

    Raises:
        ArchiveError: the container could not be written, opened or parsed. The
            reported path has already been deleted.
    """
    path = _spool_path(temp_path)
    try:
        # A partial write is removed by the finally below
        Path(path).write_bytes(data)
        with pyzipper.AESZipFile(path) as zf:
            return _read_members(zf, password)
    except CONTAINER_ERRORS as e:
        raise ArchiveError(
            f"Error whilst handling the (now deleted) ZIP archive {path}: {e}",
            path=path,
        ) from e
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def first_member(files: List[bytes]) -> bytes:
    """Return the first extracted member of a single-file archive."""
    if not files:
        raise MemberNotFoundError("No such file found in the downloaded ZIP archive")
    return files[0]
