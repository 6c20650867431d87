"""
File Handling Utilities

Reading files to send and persisting received ones. The transfer engines
only deal in byte buffers; this module is the bridge to the file system.
"""

import os
import stat
import hashlib
import tempfile
import logging
from typing import Iterable, Iterator, Optional

from .transport.ymodem import BatchFile, BatchFileHeader

log = logging.getLogger("files")

DEFAULT_FILE_MODE = 0o644  # for received files that carry no mode bits


def calculate_md5(data: bytes) -> str:
    """
    Calculate the MD5 hash of a buffer

    Args:
        data: The bytes to hash

    Returns:
        MD5 hex digest string
    """
    return hashlib.md5(data).hexdigest()


def read_file(file_path: str) -> bytes:
    with open(file_path, "rb") as f:
        return f.read()


def load_batch_file(file_path: str) -> BatchFile:
    """
    Read a file and its metadata into a BatchFile

    Args:
        file_path: Path to the file

    Returns:
        BatchFile named after the file's base name, with its size,
        modification time and permission bits
    """
    data = read_file(file_path)
    st = os.stat(file_path)
    return BatchFile(
        filename=os.path.basename(file_path),
        size=len(data),
        data=data,
        modification_time=int(st.st_mtime),
        mode_bits=stat.S_IMODE(st.st_mode) | stat.S_IFREG,
    )


def iter_batch_files(paths: Iterable[str]) -> Iterator[BatchFile]:
    """Lazily load each path, so only one file is held in memory at a time."""
    for path in paths:
        entry = load_batch_file(path)
        log.debug(f"Loaded {path}: {entry.size} bytes, MD5 {calculate_md5(entry.data)}")
        yield entry


def safe_filename(filename: str) -> str:
    """
    Reduce a received filename to a plain base name so a peer cannot write
    outside the target directory.
    """
    name = os.path.basename(filename.replace("\\", "/"))
    if name in ("", ".", ".."):
        raise ValueError(f"Unusable filename received: {filename!r}")
    return name


class FileWriter:
    """
    Persists files received in a YMODEM batch. Pass an instance as the
    ``on_file`` callback of YMODEM.recv().
    """

    def __init__(self, directory: str = ".", overwrite: bool = False):
        self.directory = directory
        self.overwrite = overwrite
        self.written = []

    def target_path(self, header: BatchFileHeader) -> str:
        return os.path.join(self.directory, safe_filename(header.filename))

    def __call__(self, header: BatchFileHeader, data: bytes) -> None:
        path = self.target_path(header)
        if os.path.exists(path) and not self.overwrite:
            raise FileExistsError(f"Refusing to overwrite {path}")

        os.makedirs(self.directory, exist_ok=True)
        mode = stat.S_IMODE(header.mode_bits) if header.mode_bits else DEFAULT_FILE_MODE
        replace_file(path, data, mode, header.modification_time or None)

        log.info(f"Saved {path} ({len(data)} bytes, MD5 {calculate_md5(data)})")
        self.written.append(path)


def replace_file(file_path: str, data: bytes, mode: int = DEFAULT_FILE_MODE,
                 modification_time: Optional[int] = None) -> None:
    """
    Write data to a temporary file next to file_path, then move it into
    place. A failed write leaves neither a partial file nor the temporary.
    """
    fd, temp_path = tempfile.mkstemp(prefix=".xymodem-", dir=os.path.dirname(file_path) or ".")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(temp_path, mode)
        if modification_time:
            os.utime(temp_path, (modification_time, modification_time))
        os.replace(temp_path, file_path)
    except OSError:
        log.debug(f"Removing incomplete {temp_path}")
        os.remove(temp_path)
        raise


def write_file(file_path: str, data: bytes) -> None:
    replace_file(file_path, data)
    log.info(f"Saved {file_path} ({len(data)} bytes, MD5 {calculate_md5(data)})")
