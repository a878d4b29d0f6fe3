"""Binary archives through the external ``mongodump``/``mongorestore`` tools.

No document passes through this process: the tools talk to the database
directly. ``ArchiveTool`` builds the command line, runs the child process,
turns its verbose stderr output into progress events and maps the exit status
to success or ``ArchiveToolError``.

The tools write lines of the form ``<timestamp>\\t<message>``, for example::

    2026-02-01T18:00:05.658+0400	writing shop.orders to /tmp/dump/shop/orders.bson
    2026-02-01T18:00:08.763+0400	[........................]  shop.orders  101/66985  (0.2%)
    2026-02-01T18:00:10.772+0400	done dumping shop.orders (66985 documents)
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from ..exceptions import ArchiveToolError, ArchiveToolNotFoundError, DestinationError, SourceError
from ..stores.files import GZIP_SUFFIX, is_gzip_path

if TYPE_CHECKING:
    from ..progress import CancellationToken

logger = logging.getLogger(__name__)

MONGODUMP = "mongodump"
MONGORESTORE = "mongorestore"
ARCHIVE_SUFFIX = ".archive"

TOOL_ENV_VARS = {
    MONGODUMP: "DATAKNOBS_TRANSFER_MONGODUMP",
    MONGORESTORE: "DATAKNOBS_TRANSFER_MONGORESTORE",
}

# Seconds between cancellation checks while the child runs
POLL_INTERVAL = 0.1
TERMINATE_GRACE = 5.0

_SIZE_UNITS = (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024), ("B", 1))


class ToolEvent(Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ToolProgress:
    """One progress event parsed from tool output.

    For ``mongodump`` ``current``/``total`` count documents; for
    ``mongorestore`` they count bytes.
    """

    event: ToolEvent
    collection: str
    current: int = 0
    total: int = 0
    percent: float = 0.0
    documents: int = 0
    failures: int = 0


@dataclass
class ArchiveRunResult:
    """Outcome of one tool run."""

    returncode: int | None = None
    cancelled: bool = False
    documents: dict[str, int] = field(default_factory=dict)
    failures: dict[str, int] = field(default_factory=dict)
    error_lines: list[str] = field(default_factory=list)

    @property
    def total_documents(self) -> int:
        return sum(self.documents.values())

    @property
    def total_failures(self) -> int:
        return sum(self.failures.values())


def parse_size_to_bytes(text: str) -> int:
    """Parse ``"6.46MB"``, ``"455KB"`` or ``"12B"`` into bytes (binary multiples)."""
    text = text.strip()
    for suffix, multiplier in _SIZE_UNITS:
        if text.endswith(suffix):
            try:
                return int(float(text[: -len(suffix)]) * multiplier)
            except ValueError:
                return 0
    try:
        return int(float(text))
    except ValueError:
        return 0


def _message(line: str) -> str | None:
    parts = line.split("\t", 1)
    if len(parts) < 2:
        return None
    return parts[1].strip()


def _collection_name(namespace: str) -> str:
    _, _, name = namespace.partition(".")
    return name or namespace


def _parse_bar(message: str, parse_amount: Callable[[str], int]) -> ToolProgress | None:
    # [####....]  db.collection  current/total  (percent%)
    parts = message.split()
    if len(parts) < 4 or "/" not in parts[2]:
        return None
    current, _, total = parts[2].partition("/")
    try:
        percent = float(parts[3].strip("(%)"))
    except ValueError:
        percent = 0.0
    return ToolProgress(
        ToolEvent.PROGRESS,
        _collection_name(parts[1]),
        current=parse_amount(current),
        total=parse_amount(total),
        percent=percent,
    )


def _parse_count(text: str) -> int:
    return int(text)


def parse_dump_line(line: str) -> ToolProgress | None:
    """Parse one ``mongodump -v`` stderr line."""
    message = _message(line)
    if not message:
        return None
    if message.startswith("writing "):
        namespace = message[len("writing "):].split(" to ", 1)[0]
        return ToolProgress(ToolEvent.STARTED, _collection_name(namespace))
    if message.startswith("["):
        try:
            return _parse_bar(message, _parse_count)
        except ValueError:
            return None
    if message.startswith("done dumping "):
        namespace, _, counts = message[len("done dumping "):].partition(" (")
        try:
            documents = int(counts.split()[0])
        except (IndexError, ValueError):
            return None
        return ToolProgress(ToolEvent.COMPLETED, _collection_name(namespace), documents=documents)
    return None


def parse_restore_line(line: str) -> ToolProgress | None:
    """Parse one ``mongorestore -v`` stderr line."""
    message = _message(line)
    if not message:
        return None
    if message.startswith("restoring ") and " from " in message:
        namespace = message[len("restoring "):].split(" from ", 1)[0]
        return ToolProgress(ToolEvent.STARTED, _collection_name(namespace))
    if message.startswith("["):
        return _parse_bar(message, parse_size_to_bytes)
    if message.startswith("finished restoring "):
        namespace, _, counts = message[len("finished restoring "):].partition(" (")
        numbers = counts.rstrip(")").split(", ")
        try:
            documents = int(numbers[0].split()[0])
            failures = int(numbers[1].split()[0]) if len(numbers) > 1 else 0
        except (IndexError, ValueError):
            return None
        return ToolProgress(
            ToolEvent.COMPLETED, _collection_name(namespace), documents=documents, failures=failures
        )
    return None


def _looks_like_error(line: str) -> bool:
    return "error" in line or "Error" in line or "failed" in line


def find_tool(tool: str, explicit_path: str | None = None) -> str:
    """Locate a tool executable.

    Lookup order: explicit path, the ``DATAKNOBS_TRANSFER_<TOOL>`` environment
    variable, then ``PATH``.

    Raises:
        ArchiveToolNotFoundError: If no executable is found
    """
    for candidate in (explicit_path, os.environ.get(TOOL_ENV_VARS[tool])):
        if candidate:
            if Path(candidate).is_file() and os.access(candidate, os.X_OK):
                return candidate
            logger.warning(f"Configured {tool} path is not executable: {candidate}")
    found = shutil.which(tool)
    if found is None:
        raise ArchiveToolNotFoundError(tool)
    return found


def is_archive_file(path: Path) -> bool:
    """Whether ``path`` names a single archive file, compressed or not."""
    name = path.name
    return name.endswith(ARCHIVE_SUFFIX) or name.endswith(ARCHIVE_SUFFIX + GZIP_SUFFIX)


def archive_path(path: Path, gzip: bool = False) -> Path:
    """Archive output path, forced to the ``.archive`` suffix, plus ``.gz`` when compressed."""
    if not is_archive_file(path):
        path = path.with_suffix(ARCHIVE_SUFFIX)
    if gzip and not is_gzip_path(path):
        path = path.with_name(path.name + GZIP_SUFFIX)
    return path


class ArchiveTool:
    """Runs ``mongodump`` or ``mongorestore`` as a child process.

    Example:
        ```python
        tool = ArchiveTool(MONGODUMP)
        args = tool.dump_args("mongodb://localhost", "shop", Path("/tmp/shop"), archive=True)
        result = tool.run(args, on_progress=print)
        ```
    """

    def __init__(self, tool: str, executable: str | None = None):
        if tool not in TOOL_ENV_VARS:
            raise ValueError(f"Unknown archive tool: {tool}")
        self.tool = tool
        self.executable = find_tool(tool, executable)

    @property
    def parse_line(self) -> Callable[[str], ToolProgress | None]:
        return parse_dump_line if self.tool == MONGODUMP else parse_restore_line

    def dump_args(
        self,
        uri: str,
        database: str,
        path: Path,
        archive: bool = True,
        gzip: bool = False,
        exclude_collections: tuple[str, ...] = (),
        collection: str | None = None,
    ) -> list[str]:
        args = [self.executable, "--uri", uri, "--db", database, "-v"]
        if collection:
            args += ["--collection", collection]
        if gzip:
            args.append("--gzip")
        for name in exclude_collections:
            args += ["--excludeCollection", name]
        if archive:
            args.append(f"--archive={archive_path(path, gzip)}")
        else:
            args += ["--out", str(path)]
        return args

    def restore_args(
        self,
        uri: str,
        database: str,
        path: Path,
        drop: bool = False,
        gzip: bool = False,
        collection: str | None = None,
    ) -> list[str]:
        args = [self.executable, "--uri", uri, "-v"]
        if collection:
            args.append(f"--nsInclude={database}.{collection}")
        else:
            args += ["--db", database]
        if drop:
            args.append("--drop")
        if gzip:
            args.append("--gzip")
        if is_archive_file(path):
            args.append(f"--archive={path}")
        else:
            # A folder dump holds one sub-directory per database
            database_dir = path / database
            args += ["--dir", str(database_dir if database_dir.exists() else path)]
        return args

    def run(
        self,
        args: list[str],
        on_progress: Callable[[ToolProgress], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ArchiveRunResult:
        """Run the tool to completion or cancellation.

        Raises:
            ArchiveToolError: If the tool exits with a non-zero status
        """
        logger.info(f"Running {self.tool}: {' '.join(_redact(args))}")
        try:
            process = subprocess.Popen(
                args,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            error_class = SourceError if self.tool == MONGODUMP else DestinationError
            raise error_class(self.tool, f"could not start {self.executable}: {e}") from e

        lines: queue.Queue[str | None] = queue.Queue()

        def pump() -> None:
            assert process.stderr is not None
            for line in process.stderr:
                lines.put(line.rstrip("\r\n"))
            lines.put(None)

        reader = threading.Thread(target=pump, name=f"{self.tool}-stderr", daemon=True)
        reader.start()

        result = ArchiveRunResult()
        parse_line = self.parse_line
        finished = False
        while not finished:
            if cancel_token is not None and cancel_token.is_cancelled:
                self._terminate(process)
                result.cancelled = True
                break
            try:
                line = lines.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if line is None:
                finished = True
                continue
            logger.debug(f"{self.tool}: {line}")
            progress = parse_line(line)
            if progress is None:
                if _looks_like_error(line):
                    result.error_lines.append(line)
                continue
            if progress.event is ToolEvent.COMPLETED:
                result.documents[progress.collection] = progress.documents
                if progress.failures:
                    result.failures[progress.collection] = progress.failures
            if on_progress is not None:
                on_progress(progress)

        result.returncode = process.wait()
        reader.join(timeout=TERMINATE_GRACE)
        if result.cancelled:
            logger.info(f"{self.tool} cancelled")
            return result
        if result.returncode != 0:
            raise ArchiveToolError(self.tool, result.returncode, result.error_lines)
        logger.info(
            f"{self.tool} finished: {result.total_documents} documents in "
            f"{len(result.documents)} collections"
        )
        return result

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            process.kill()


def _redact(args: list[str]) -> list[str]:
    """Hide the connection string, which may carry credentials."""
    redacted = list(args)
    for index, arg in enumerate(redacted[:-1]):
        if arg == "--uri":
            redacted[index + 1] = "<uri>"
    return redacted
