"""Tests for dump/restore tool integration."""

import time
from pathlib import Path

import pytest

from dataknobs_transfer.exceptions import (
    ArchiveToolError,
    ArchiveToolNotFoundError,
    JobConfigurationError,
    SourceError,
)
from dataknobs_transfer.formats import (
    MONGODUMP,
    MONGORESTORE,
    ArchiveTool,
    ToolEvent,
    archive_path,
    find_tool,
    is_archive_file,
    parse_dump_line,
    parse_restore_line,
    parse_size_to_bytes,
)
from dataknobs_transfer.job import FileEndpoint, StoreEndpoint, TransferJob, TransferOptions
from dataknobs_transfer.pipeline import TransferPipeline, TransferState
from dataknobs_transfer.progress import CancellationToken, ProgressChannel
from dataknobs_transfer.stores import MemoryStore

TS = "2026-02-01T18:00:05.658+0400"

DUMP_OUTPUT = [
    f"{TS}\tdumping up to 4 collections in parallel",
    f"{TS}\twriting shop.orders to /tmp/shop.archive",
    f"{TS}\twriting shop.users to /tmp/shop.archive",
    f"{TS}\t[##########..............]  shop.orders  101/250  (40.4%)",
    f"{TS}\tdone dumping shop.users (3 documents)",
    f"{TS}\tdone dumping shop.orders (250 documents)",
]

RESTORE_OUTPUT = [
    f"{TS}\tpreparing collections to restore from",
    f"{TS}\trestoring shop.orders from archive 'shop.archive'",
    f"{TS}\t[############............]  shop.orders  6.46MB/12.9MB  (50.1%)",
    f"{TS}\tfinished restoring shop.orders (248 documents, 2 failures)",
    f"{TS}\t250 document(s) restored successfully. 2 document(s) failed to restore.",
]


def recorded_args(tool_script):
    return Path(str(tool_script) + ".args").read_text().splitlines()


class TestOutputParsing:
    """Test parsing verbose tool output."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("2KB", 2048),
            ("1.5MB", 1572864),
            ("12B", 12),
            ("1GB", 1073741824),
            ("100", 100),
            ("junk", 0),
        ],
    )
    def test_parse_size(self, text, expected):
        """Test sizes with binary multiples."""
        assert parse_size_to_bytes(text) == expected

    def test_dump_lines(self):
        """Test each kind of mongodump line."""
        started = parse_dump_line(DUMP_OUTPUT[1])
        assert started.event is ToolEvent.STARTED
        assert started.collection == "orders"

        progress = parse_dump_line(DUMP_OUTPUT[3])
        assert progress.event is ToolEvent.PROGRESS
        assert (progress.current, progress.total, progress.percent) == (101, 250, 40.4)

        done = parse_dump_line(DUMP_OUTPUT[5])
        assert done.event is ToolEvent.COMPLETED
        assert done.documents == 250

        assert parse_dump_line(DUMP_OUTPUT[0]) is None
        assert parse_dump_line("no tab here") is None

    def test_restore_lines(self):
        """Test each kind of mongorestore line."""
        assert parse_restore_line(RESTORE_OUTPUT[1]).collection == "orders"

        progress = parse_restore_line(RESTORE_OUTPUT[2])
        assert progress.current == int(6.46 * 1024**2)
        assert progress.total == int(12.9 * 1024**2)

        done = parse_restore_line(RESTORE_OUTPUT[3])
        assert (done.documents, done.failures) == (248, 2)

        assert parse_restore_line(RESTORE_OUTPUT[4]) is None


class TestFindTool:
    """Test locating tool executables."""

    def test_explicit_path(self, stub_tool):
        """Test that an explicit executable wins."""
        script = stub_tool("mongodump", [])
        assert find_tool(MONGODUMP, str(script)) == str(script)

    def test_environment_variable(self, stub_tool, monkeypatch):
        """Test the environment variable lookup."""
        script = stub_tool("my-restore", [])
        monkeypatch.setenv("DATAKNOBS_TRANSFER_MONGORESTORE", str(script))
        assert find_tool(MONGORESTORE) == str(script)

    def test_not_found(self, tmp_path, monkeypatch):
        """Test that a missing tool is reported."""
        monkeypatch.delenv("DATAKNOBS_TRANSFER_MONGODUMP", raising=False)
        monkeypatch.setenv("PATH", str(tmp_path))
        with pytest.raises(ArchiveToolNotFoundError):
            find_tool(MONGODUMP)


class TestArchiveTool:
    """Test command lines and running the tools."""

    def test_dump_args(self, stub_tool, tmp_path):
        """Test the mongodump command line."""
        tool = ArchiveTool(MONGODUMP, str(stub_tool("mongodump", [])))
        args = tool.dump_args(
            "mongodb://db", "shop", tmp_path / "shop", gzip=True, exclude_collections=("logs", "tmp")
        )
        assert args[1:] == [
            "--uri", "mongodb://db", "--db", "shop", "-v", "--gzip",
            "--excludeCollection", "logs", "--excludeCollection", "tmp",
            f"--archive={tmp_path / 'shop.archive.gz'}",
        ]

        args = tool.dump_args("mongodb://db", "shop", tmp_path / "out", archive=False, collection="orders")
        assert args[-4:] == ["--collection", "orders", "--out", str(tmp_path / "out")]

    def test_restore_args(self, stub_tool, tmp_path):
        """Test the mongorestore command line."""
        tool = ArchiveTool(MONGORESTORE, str(stub_tool("mongorestore", [])))
        args = tool.restore_args("mongodb://db", "shop", tmp_path / "shop.archive", drop=True, collection="orders")
        assert args[1:] == [
            "--uri", "mongodb://db", "-v", "--nsInclude=shop.orders", "--drop",
            f"--archive={tmp_path / 'shop.archive'}",
        ]

        (tmp_path / "dump" / "shop").mkdir(parents=True)
        args = tool.restore_args("mongodb://db", "shop", tmp_path / "dump")
        assert args[-2:] == ["--dir", str(tmp_path / "dump" / "shop")]
        assert "--db" in args

    def test_restore_gzipped_archive_args(self, stub_tool, tmp_path):
        """Test that a compressed archive is restored as an archive, not a folder."""
        tool = ArchiveTool(MONGORESTORE, str(stub_tool("mongorestore", [])))
        args = tool.restore_args("mongodb://db", "shop", tmp_path / "shop.archive.gz", gzip=True)
        assert args[-2:] == ["--gzip", f"--archive={tmp_path / 'shop.archive.gz'}"]
        assert "--dir" not in args

    @pytest.mark.parametrize(
        "name,gzip,expected",
        [
            ("shop", False, "shop.archive"),
            ("shop", True, "shop.archive.gz"),
            ("shop.archive", False, "shop.archive"),
            ("shop.archive", True, "shop.archive.gz"),
            ("shop.archive.gz", True, "shop.archive.gz"),
            ("shop.archive.gz", False, "shop.archive.gz"),
        ],
    )
    def test_archive_path(self, tmp_path, name, gzip, expected):
        """Test archive file naming with and without compression."""
        assert archive_path(tmp_path / name, gzip=gzip) == tmp_path / expected

    def test_is_archive_file(self, tmp_path):
        assert is_archive_file(tmp_path / "shop.archive")
        assert is_archive_file(tmp_path / "shop.archive.gz")
        assert not is_archive_file(tmp_path / "dump")
        assert not is_archive_file(tmp_path / "shop.gz")

    def test_run(self, stub_tool):
        """Test a successful run with progress events."""
        script = stub_tool("mongodump", DUMP_OUTPUT)
        events = []
        result = ArchiveTool(MONGODUMP, str(script)).run([str(script), "--db", "shop"], on_progress=events.append)

        assert result.returncode == 0
        assert result.documents == {"users": 3, "orders": 250}
        assert result.total_documents == 253
        assert [e.event for e in events] == [
            ToolEvent.STARTED, ToolEvent.STARTED, ToolEvent.PROGRESS, ToolEvent.COMPLETED, ToolEvent.COMPLETED,
        ]
        assert recorded_args(script) == ["--db", "shop"]

    def test_failure(self, stub_tool):
        """Test that a non-zero exit raises with the error lines."""
        script = stub_tool(
            "mongodump",
            [f"{TS}\tFailed: error connecting to db server: no reachable servers"],
            returncode=1,
        )
        with pytest.raises(ArchiveToolError) as exc_info:
            ArchiveTool(MONGODUMP, str(script)).run([str(script)])
        assert exc_info.value.returncode == 1
        assert "no reachable servers" in exc_info.value.stderr_lines[0]

    def test_cancel(self, stub_tool):
        """Test that cancellation terminates the child process."""
        script = stub_tool("mongodump", DUMP_OUTPUT[:2], sleep=30)
        token = CancellationToken()

        started = time.monotonic()
        result = ArchiveTool(MONGODUMP, str(script)).run(
            [str(script)], on_progress=lambda progress: token.cancel(), cancel_token=token
        )

        assert result.cancelled
        assert time.monotonic() - started < 20


class TestArchiveJobs:
    """Test archive jobs run by the pipeline."""

    def test_dump_database(self, store, stub_tool, tmp_path):
        """Test a database dump to an archive file."""
        script = stub_tool("mongodump", DUMP_OUTPUT)
        job = TransferJob(
            StoreEndpoint(store, "shop"),
            FileEndpoint(tmp_path / "shop.archive"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(script), exclude_collections=("logs",)),
        )
        channel = ProgressChannel()
        outcome = TransferPipeline().run(job, channel)

        assert outcome.state is TransferState.COMPLETED
        assert outcome.committed == 253
        assert {unit.unit: unit.stats.committed for unit in outcome.units} == {"users": 3, "orders": 250}
        assert recorded_args(script) == [
            "--uri", "mongodb://localhost:27017", "--db", "shop", "-v",
            "--excludeCollection", "logs", f"--archive={tmp_path / 'shop.archive'}",
        ]
        snapshots = channel.drain()
        assert snapshots[0].processed == 101
        assert snapshots[0].unit == "orders"

    def test_dump_gzipped_archive(self, store, stub_tool, tmp_path):
        """Test that a compressed dump gets a single ``.archive.gz`` suffix."""
        script = stub_tool("mongodump", DUMP_OUTPUT)
        job = TransferJob(
            StoreEndpoint(store, "shop"),
            FileEndpoint(tmp_path / "shop.archive"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(script), gzip=True),
        )
        outcome = TransferPipeline().run(job)

        assert outcome.succeeded
        assert recorded_args(script)[-2:] == ["--gzip", f"--archive={tmp_path / 'shop.archive.gz'}"]

    def test_restore_gzipped_archive(self, store, stub_tool, tmp_path):
        """Test that restoring ``.archive.gz`` detects compression from the name."""
        script = stub_tool("mongorestore", RESTORE_OUTPUT)
        archive = tmp_path / "shop.archive.gz"
        archive.write_bytes(b"\x1f\x8b")
        job = TransferJob(
            FileEndpoint(archive),
            StoreEndpoint(store, "shop"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(script)),
        )
        outcome = TransferPipeline().run(job)

        assert outcome.succeeded
        assert recorded_args(script)[-2:] == ["--gzip", f"--archive={archive}"]

    def test_dump_collection_to_folder(self, store, stub_tool, tmp_path):
        """Test a single collection dumped to a folder."""
        script = stub_tool("mongodump", DUMP_OUTPUT[-1:])
        job = TransferJob(
            StoreEndpoint(store, "shop", "orders"),
            FileEndpoint(tmp_path / "dump"),
            "archive",
            options=TransferOptions(tool_path=str(script), archive_layout="folder", gzip=True),
        )
        outcome = TransferPipeline().run(job)

        assert outcome.succeeded
        args = recorded_args(script)
        assert args[-5:] == ["--collection", "orders", "--gzip", "--out", str(tmp_path / "dump")]

    def test_restore(self, store, stub_tool, tmp_path):
        """Test restoring an archive with failures counted."""
        script = stub_tool("mongorestore", RESTORE_OUTPUT)
        archive = tmp_path / "shop.archive"
        archive.write_bytes(b"\x00")
        job = TransferJob(
            FileEndpoint(archive),
            StoreEndpoint(store, "shop"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(script), drop_before=True),
        )
        outcome = TransferPipeline().run(job)

        assert outcome.succeeded
        assert outcome.committed == 248
        assert outcome.failed == 2
        assert recorded_args(script) == [
            "--uri", "mongodb://localhost:27017", "-v", "--db", "shop", "--drop", f"--archive={archive}",
        ]

    def test_restore_missing_archive(self, store, stub_tool, tmp_path):
        """Test that a missing archive fails the job."""
        job = TransferJob(
            FileEndpoint(tmp_path / "absent.archive"),
            StoreEndpoint(store, "shop"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(stub_tool("mongorestore", []))),
        )
        outcome = TransferPipeline().run(job)
        assert outcome.state is TransferState.FAILED
        assert isinstance(outcome.error, SourceError)

    def test_store_without_uri(self, stub_tool, tmp_path):
        """Test that archive jobs need a connection string."""
        job = TransferJob(
            StoreEndpoint(MemoryStore(), "shop"),
            FileEndpoint(tmp_path / "shop.archive"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(stub_tool("mongodump", []))),
        )
        outcome = TransferPipeline().run(job)
        assert isinstance(outcome.error, JobConfigurationError)

    def test_tool_failure_fails_job(self, store, stub_tool, tmp_path):
        """Test that a failing tool fails the job."""
        script = stub_tool("mongodump", [f"{TS}\tFailed: bad auth"], returncode=2)
        job = TransferJob(
            StoreEndpoint(store, "shop"),
            FileEndpoint(tmp_path / "shop.archive"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(script)),
        )
        outcome = TransferPipeline().run(job)
        assert outcome.state is TransferState.FAILED
        assert isinstance(outcome.error, ArchiveToolError)

    def test_cancel_dump(self, store, stub_tool, tmp_path):
        """Test cancelling a running dump."""
        script = stub_tool("mongodump", DUMP_OUTPUT[:4], sleep=30)
        token = CancellationToken()

        class CancelOnProgress:
            def publish(self, snapshot):
                token.cancel()

        job = TransferJob(
            StoreEndpoint(store, "shop"),
            FileEndpoint(tmp_path / "shop.archive"),
            "archive",
            scope="database",
            options=TransferOptions(tool_path=str(script)),
        )
        outcome = TransferPipeline().run(job, CancelOnProgress(), token)
        assert outcome.state is TransferState.CANCELLED
