import pytest

from llama_lifecycle.frameworks_drivers.process_record import ProcessRecordStore
from llama_lifecycle.shared.errors import ProcessError


@pytest.fixture
def store(temp_dir):
    return ProcessRecordStore(str(temp_dir / "records"))


class TestProcessRecordStore:
    """Test cases for ProcessRecordStore."""

    def test_create_and_read(self, store):
        """Test that a record round-trips pid and create time."""
        path = store.create("llama-server_http_127.0.0.1_8080", 4321, 1700000000.125)

        record = store.read("llama-server_http_127.0.0.1_8080")

        assert path.name == "llama-server_http_127.0.0.1_8080.pid"
        assert path.read_text().splitlines()[0] == "4321"
        assert record.pid == 4321
        assert record.create_time == pytest.approx(1700000000.125)

    def test_pid_only_record(self, store):
        """Test that a record written by other tools with just a pid is readable."""
        store.record_dir.mkdir(parents=True)
        store.path_for("legacy").write_text("99\n")

        record = store.read("legacy")

        assert record.pid == 99
        assert record.create_time is None

    def test_create_is_exclusive(self, store):
        """Test that a second record for the same id is refused."""
        store.create("dup", 1)

        with pytest.raises(ProcessError, match="reap orphans"):
            store.create("dup", 2)

        assert store.read("dup").pid == 1

    def test_read_missing(self, store):
        """Test that a missing record reads as None."""
        assert store.read("absent") is None

    @pytest.mark.parametrize("content", ["", "not-a-pid\n", "-5\n"])
    def test_read_corrupt(self, store, content):
        """Test that a corrupt record raises ValueError."""
        store.record_dir.mkdir(parents=True)
        store.path_for("corrupt").write_text(content)

        with pytest.raises(ValueError):
            store.read("corrupt")

    def test_discover_with_pattern(self, store):
        """Test glob discovery over record ids."""
        store.create("llama-server_http_127.0.0.1_1", 1)
        store.create("llama-server_uds", 2)
        store.create("other-engine_http_127.0.0.1_2", 3)
        (store.record_dir / "llama-server_uds.log").write_text("log")

        assert store.discover("llama-server_*") == ["llama-server_http_127.0.0.1_1", "llama-server_uds"]
        assert len(store.discover()) == 3

    def test_discover_without_directory(self, store):
        """Test that a missing record directory means no records."""
        assert store.discover() == []

    def test_remove_is_idempotent(self, store):
        """Test that removing a vanished record is not an error."""
        store.create("gone", 1)

        store.remove("gone")
        store.remove("gone")

        assert store.read("gone") is None
