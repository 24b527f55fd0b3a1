import pytest
import pytest_asyncio

from web_ssh_gateway.errors import InvalidRequest, NotADirectory, NotConnected
from web_ssh_gateway.ssh_manager import SSHConfig

from conftest import PEM_BYTES


@pytest_asyncio.fixture
async def connected(gateway):
    gateway.credentials.store("left", PEM_BYTES)
    gateway.credentials.store("right", PEM_BYTES)
    await gateway.registry.connect("left", SSHConfig(host="left.example.com", username="alice"))
    await gateway.registry.connect("right", SSHConfig(host="right.example.com", username="alice"))
    return gateway


class TestBatchOperations:
    """Test copy / move within one backend"""

    @pytest.mark.asyncio
    async def test_validation(self, gateway):
        with pytest.raises(InvalidRequest, match="Sources array is required"):
            await gateway.copy_entries([], "/dest")
        with pytest.raises(InvalidRequest, match="Destination path is required"):
            await gateway.move_entries(["/a"], "")

    @pytest.mark.asyncio
    async def test_destination_must_be_directory(self, gateway, workspace):
        (workspace / "a.txt").write_text("a")
        (workspace / "file").write_text("f")
        with pytest.raises(NotADirectory):
            await gateway.copy_entries(["/a.txt"], "/file")

    @pytest.mark.asyncio
    async def test_partial_failure(self, gateway, workspace):
        (workspace / "a.txt").write_text("a")
        (workspace / "dest").mkdir()

        results = await gateway.copy_entries(["/missing.txt", "/a.txt", "/../x"], "/dest")

        assert [r.success for r in results] == [False, True, False]
        assert results[0].error
        assert results[0].dest == ""
        assert results[1].dest == "/dest/a.txt"
        assert "Path traversal not allowed" in results[2].error
        assert (workspace / "dest" / "a.txt").read_text() == "a"

    @pytest.mark.asyncio
    async def test_move(self, gateway, workspace):
        (workspace / "a.txt").write_text("a")
        (workspace / "dest").mkdir()

        results = await gateway.move_entries(["/a.txt"], "/dest")

        assert results[0].success
        assert not (workspace / "a.txt").exists()
        assert (workspace / "dest" / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_remote_copy(self, connected, remote_home):
        (remote_home / "src").mkdir()
        (remote_home / "src" / "f.txt").write_text("f")
        (remote_home / "dest").mkdir()

        results = await connected.copy_entries(
            [str(remote_home / "src")], str(remote_home / "dest"), "left"
        )

        assert results[0].success
        assert (remote_home / "dest" / "src" / "f.txt").read_text() == "f"


class TestTransfer:
    """Test transfers between backends"""

    @pytest.mark.asyncio
    async def test_unknown_operation(self, gateway):
        with pytest.raises(InvalidRequest, match="Unknown transfer operation"):
            await gateway.transfer_entries(["/a"], "/b", operation="link")

    @pytest.mark.asyncio
    async def test_local_to_remote_copy(self, connected, workspace, remote_home):
        (workspace / "docs" / "sub").mkdir(parents=True)
        (workspace / "docs" / "readme.md").write_text("# readme")
        (workspace / "docs" / "sub" / ".env").write_text("KEY=1")
        (workspace / "single.bin").write_bytes(b"\x00\xff")

        results = await connected.transfer_entries(
            ["/docs", "/single.bin"], str(remote_home), source_slot=None, dest_slot="left"
        )

        assert all(r.success for r in results)
        assert results[0].dest == str(remote_home / "docs")
        assert (remote_home / "docs" / "readme.md").read_text() == "# readme"
        assert (remote_home / "docs" / "sub" / ".env").read_text() == "KEY=1"
        assert (remote_home / "single.bin").read_bytes() == b"\x00\xff"
        assert (workspace / "docs").exists()

    @pytest.mark.asyncio
    async def test_remote_to_local_move(self, connected, workspace, remote_home):
        (remote_home / "logs").mkdir()
        (remote_home / "logs" / "app.log").write_text("line")
        (workspace / "inbox").mkdir()

        results = await connected.transfer_entries(
            [str(remote_home / "logs")], "/inbox", source_slot="left", operation="move"
        )

        assert results[0].success
        assert results[0].dest == "/inbox/logs"
        assert (workspace / "inbox" / "logs" / "app.log").read_text() == "line"
        assert not (remote_home / "logs").exists()

    @pytest.mark.asyncio
    async def test_remote_to_remote(self, connected, remote_home):
        # Both fake hosts share one disk; the slots are still distinct transports.
        (remote_home / "a.txt").write_text("a")
        (remote_home / "other").mkdir()

        results = await connected.transfer_entries(
            [str(remote_home / "a.txt")],
            str(remote_home / "other"),
            source_slot="left",
            dest_slot="right",
        )

        assert results[0].success
        assert (remote_home / "other" / "a.txt").read_text() == "a"

    @pytest.mark.asyncio
    async def test_move_keeps_failed_sources(self, connected, workspace, remote_home):
        (workspace / "ok.txt").write_text("ok")

        results = await connected.transfer_entries(
            ["/ok.txt", "/missing.txt"], str(remote_home), dest_slot="left", operation="move"
        )

        assert [r.success for r in results] == [True, False]
        assert not (workspace / "ok.txt").exists()
        assert (remote_home / "ok.txt").read_text() == "ok"

    @pytest.mark.asyncio
    async def test_same_slot_delegates(self, gateway, workspace):
        (workspace / "a.txt").write_text("a")
        (workspace / "dest").mkdir()

        results = await gateway.transfer_entries(["/a.txt"], "/dest", operation="move")

        assert results[0].success
        assert (workspace / "dest" / "a.txt").exists()
        assert not (workspace / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_disconnected_destination(self, gateway, workspace):
        (workspace / "a.txt").write_text("a")

        with pytest.raises(NotConnected, match="not established"):
            await gateway.transfer_entries(["/a.txt"], "/tmp", dest_slot="left")

    @pytest.mark.asyncio
    async def test_disconnected_source_fails_items(self, gateway, workspace):
        (workspace / "dest").mkdir()

        results = await gateway.transfer_entries(["/etc/hosts"], "/dest", source_slot="left")

        assert results[0].success is False
        assert "not established" in results[0].error

    @pytest.mark.asyncio
    async def test_disconnected_source_slot(self, gateway):
        with pytest.raises(NotConnected):
            await gateway.copy_entries(["/etc/hosts"], "/tmp", "left")
