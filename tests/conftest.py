"""Pytest configuration for dataknobs_transfer tests."""

import stat
import sys
import textwrap
from pathlib import Path

import pytest
from bson import ObjectId

# Add the package source to path for testing
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from dataknobs_transfer.job import InsertMode  # noqa: E402
from dataknobs_transfer.stores import MemoryStore  # noqa: E402


@pytest.fixture
def store():
    """Empty in-memory store."""
    return MemoryStore({"uri": "mongodb://localhost:27017"})


@pytest.fixture
def sample_documents():
    """Nested documents with a mix of value kinds."""
    return [
        {
            "_id": ObjectId("64b7f0c2a1b2c3d4e5f60718"),
            "name": "Alice",
            "age": 30,
            "address": {"city": "Lisbon", "zip": "1000"},
            "tags": ["admin", "ops"],
        },
        {
            "_id": ObjectId("64b7f0c2a1b2c3d4e5f60719"),
            "name": "Bob",
            "age": 25,
            "address": {"city": "Porto"},
            "score": 4.5,
        },
        {
            "_id": ObjectId("64b7f0c2a1b2c3d4e5f6071a"),
            "name": "Carol",
            "active": True,
            "tags": [],
        },
    ]


@pytest.fixture
def populated_store(store, sample_documents):
    """Store with ``app.users`` holding the sample documents."""
    store.collection("app", "users").write_batch(sample_documents, InsertMode.INSERT)
    return store


@pytest.fixture
def stub_tool(tmp_path):
    """Factory writing an executable script that prints lines to stderr and exits.

    Example:
        tool = stub_tool("mongodump", ["...\\twriting app.users to /x"], returncode=0)
    """

    def make(name, stderr_lines, returncode=0, sleep=0.0):
        script = tmp_path / name
        body = "\n".join(f"sys.stderr.write({line + chr(10)!r}); sys.stderr.flush()" for line in stderr_lines)
        script.write_text(
            "#!" + sys.executable + "\n"
            + textwrap.dedent(
                f"""\
                import sys, time
                with open({str(tmp_path / (name + '.args'))!r}, "w") as f:
                    f.write("\\n".join(sys.argv[1:]))
                """
            )
            + body
            + "\n"
            + f"time.sleep({sleep})\n"
            + f"sys.exit({returncode})\n"
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return make
