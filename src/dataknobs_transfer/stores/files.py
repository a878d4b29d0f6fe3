"""Opening transfer files, with gzip and text encoding handled in one place."""

from __future__ import annotations

import gzip
import logging
from pathlib import Path
from typing import IO

from ..exceptions import DestinationError, SourceError

logger = logging.getLogger(__name__)

GZIP_SUFFIX = ".gz"
GZIP_MAGIC = b"\x1f\x8b"


def is_gzip_path(path: str | Path) -> bool:
    return str(path).lower().endswith(GZIP_SUFFIX)


def output_path(path: str | Path, compress: bool) -> Path:
    """Path actually written, with ``.gz`` appended when compressing."""
    path = Path(path)
    if compress and not is_gzip_path(path):
        return path.with_name(path.name + GZIP_SUFFIX)
    return path


def open_text_writer(path: str | Path, compress: bool = False, encoding: str = "utf-8") -> IO[str]:
    """Open a text stream for writing, creating parent directories.

    Raises:
        DestinationError: If the file cannot be created
    """
    path = output_path(path, compress)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if compress:
            return gzip.open(path, "wt", encoding=encoding, newline="")
        return open(path, "w", encoding=encoding, newline="")
    except OSError as e:
        raise DestinationError(str(path), str(e)) from e


def open_text_reader(path: str | Path, encoding: str = "utf-8") -> IO[str]:
    """Open a text stream for reading; ``.gz`` files are decompressed.

    Undecodable bytes are replaced rather than aborting the read.

    Raises:
        SourceError: If the file cannot be opened
    """
    path = Path(path)
    try:
        if is_gzip_path(path):
            with open(path, "rb") as raw:
                magic = raw.read(2)
            if magic == GZIP_MAGIC:
                return gzip.open(path, "rt", encoding=encoding, errors="replace", newline="")
            logger.warning(f"{path} has a {GZIP_SUFFIX} suffix but is not gzip-compressed")
        return open(path, encoding=encoding, errors="replace", newline="")
    except OSError as e:
        raise SourceError(str(path), str(e)) from e
