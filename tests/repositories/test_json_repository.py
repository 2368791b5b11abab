"""Tests for JsonStorage and the snapshot file helpers."""

import json
import os
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Annotated

import pytest
import pytest_asyncio
from pydantic import BaseModel

from polystore.core.errors import (
    DuplicateKeyError,
    MissingKeyError,
    NotFoundError,
    StorageIOError,
)
from polystore.models import PrimaryKey, data_class
from polystore.repositories import json_repository
from polystore.repositories.json_repository import JsonStorage, read_snapshot, write_snapshot
from tests.utils.entities import Counter, Note, Player, Rank


@data_class("tagged")
class Tagged(BaseModel):
    key: Annotated[str | None, PrimaryKey(document_id=False)] = None
    tags: list[str] = []


@pytest_asyncio.fixture
async def player_storage(tmp_path: Path) -> JsonStorage[Player]:
    """Initialized Player storage in a temporary directory."""
    storage = JsonStorage(Player, tmp_path / "data")
    await storage.init()
    return storage


def read_file(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


class TestSnapshotFiles:
    def test_write_then_read(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "things.json"

        write_snapshot(path, [{"id": 1, "name": "ä"}])

        assert read_snapshot(path) == [{"id": 1, "name": "ä"}]
        assert '"name": "ä"' in path.read_text(encoding="utf-8")
        assert not path.with_name("things.json.tmp").exists()

    def test_pretty_printed(self, tmp_path: Path) -> None:
        path = tmp_path / "things.json"

        write_snapshot(path, [])

        assert path.read_text(encoding="utf-8") == '{\n  "data": []\n}'

    @pytest.mark.parametrize("content", ["", "  \n"])
    def test_empty_file_holds_nothing(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "things.json"
        path.write_text(content, encoding="utf-8")

        assert read_snapshot(path) == []

    @pytest.mark.parametrize("content", ["[]", '{"data": {}}'])
    def test_wrong_shape(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "things.json"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(ValueError):
            _ = read_snapshot(path)


class TestInit:
    @pytest.mark.asyncio
    async def test_creates_empty_snapshot(self, player_storage: JsonStorage[Player]) -> None:
        assert player_storage.path.name == "player.json"
        assert read_file(player_storage.path) == {"data": []}

    def test_file_name_override(self, tmp_path: Path) -> None:
        @data_class(file="tally")
        class Tally(Counter):
            pass

        storage = JsonStorage(Tally, tmp_path)

        assert storage.path == tmp_path / "tally.json"

    @pytest.mark.asyncio
    async def test_zero_byte_file_is_tolerated(self, tmp_path: Path) -> None:
        (tmp_path / "player.json").touch()
        storage = JsonStorage(Player, tmp_path)

        await storage.init()

        assert await storage.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path: Path) -> None:
        (tmp_path / "player.json").write_text("{not json", encoding="utf-8")
        storage = JsonStorage(Player, tmp_path)

        with pytest.raises(StorageIOError):
            await storage.init()

    @pytest.mark.asyncio
    async def test_reload_after_restart(self, tmp_path: Path) -> None:
        first = JsonStorage(Player, tmp_path)
        await first.init()
        player = await first.insert(
            Player(name="ada", rank=Rank.GOLD, balance=Decimal("12.50"))
        )

        # Act
        second = JsonStorage(Player, tmp_path)
        await second.init()
        found = await second.find_by_id(player.id)

        # Assert
        assert found is not None
        assert found.name == "ada"
        assert found.rank is Rank.GOLD
        assert found.balance == Decimal("12.50")
        assert found.created_at == player.created_at

    @pytest.mark.asyncio
    async def test_truncated_tmp_file_is_ignored(self, tmp_path: Path) -> None:
        """A write interrupted before the rename leaves the committed snapshot in charge."""
        first = JsonStorage(Player, tmp_path)
        await first.init()
        player = await first.insert(Player(name="ada", score=5))
        (tmp_path / "player.json.tmp").write_text('{"data": [{"id"', encoding="utf-8")

        # Act
        second = JsonStorage(Player, tmp_path)
        await second.init()
        everything = await second.find_all()

        # Assert
        assert everything == [player]
        assert everything[0].name == "ada"
        assert everything[0].score == 5
        assert read_file(tmp_path / "player.json")["data"][0]["id"] == str(player.id)


class TestCrud:
    """Tests for single-entity operations."""

    @pytest.mark.asyncio
    async def test_insert_writes_snapshot(self, player_storage: JsonStorage[Player]) -> None:
        player = await player_storage.insert(Player(name="ada", session_token="secret"))

        # Assert
        records = read_file(player_storage.path)["data"]
        assert len(records) == 1
        assert records[0]["id"] == str(player.id)
        assert records[0]["rank"] == "BRONZE"
        assert records[0]["balance"] == "0"
        assert "session_token" not in records[0]
        assert await player_storage.count() == 1

    @pytest.mark.asyncio
    async def test_insert_generates_identifier(self, player_storage: JsonStorage[Player]) -> None:
        saved = await player_storage.insert(Player(name="ada"))

        assert isinstance(saved.id, uuid.UUID)

    @pytest.mark.asyncio
    async def test_non_identifier_key_is_required(self, tmp_path: Path) -> None:
        storage = JsonStorage(Counter, tmp_path)
        await storage.init()

        with pytest.raises(MissingKeyError):
            _ = await storage.insert(Counter())

    @pytest.mark.asyncio
    async def test_duplicate_key(self, player_storage: JsonStorage[Player]) -> None:
        player = await player_storage.insert(Player(name="ada"))

        with pytest.raises(DuplicateKeyError):
            _ = await player_storage.insert(Player(id=player.id, name="bob"))

    @pytest.mark.asyncio
    async def test_update(self, player_storage: JsonStorage[Player]) -> None:
        player = await player_storage.insert(Player(name="ada"))
        player.score = 9

        _ = await player_storage.update(player)

        assert read_file(player_storage.path)["data"][0]["score"] == 9

    @pytest.mark.asyncio
    async def test_stored_record_is_detached_from_entity(self, tmp_path: Path) -> None:
        """Mutating an entity after a write does not reach the stored copy."""
        storage = JsonStorage(Tagged, tmp_path)
        await storage.init()
        tagged = await storage.insert(Tagged(key="t1", tags=["x"]))

        # Act
        tagged.tags.append("unsaved")
        after_insert = await storage.find_by_id("t1")
        tagged.tags = ["y"]
        _ = await storage.update(tagged)
        tagged.tags.append("unsaved")
        after_update = await storage.find_by_id("t1")

        # Assert
        assert after_insert is not None
        assert after_insert.tags == ["x"]
        assert after_update is not None
        assert after_update.tags == ["y"]
        assert read_file(storage.path)["data"] == [{"key": "t1", "tags": ["y"]}]

    @pytest.mark.asyncio
    async def test_batch_record_is_detached_from_entity(self, tmp_path: Path) -> None:
        storage = JsonStorage(Tagged, tmp_path)
        await storage.init()
        tagged = Tagged(key="t1", tags=["x"])

        _ = await storage.save_all_transactional([tagged])
        tagged.tags.append("unsaved")

        found = await storage.find_by_id("t1")
        assert found is not None
        assert found.tags == ["x"]

    @pytest.mark.asyncio
    async def test_update_missing(self, player_storage: JsonStorage[Player]) -> None:
        with pytest.raises(NotFoundError):
            _ = await player_storage.update(Player(id=uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_string_key_finds_identifier(self, player_storage: JsonStorage[Player]) -> None:
        player = await player_storage.insert(Player(name="ada"))

        found = await player_storage.find_by_id(str(player.id).upper())

        assert found == player
        assert await player_storage.exists_by_id(str(player.id))

    @pytest.mark.asyncio
    async def test_delete(self, player_storage: JsonStorage[Player]) -> None:
        player = await player_storage.insert(Player(name="ada"))

        assert await player_storage.delete_by_id(player.id) is True
        assert await player_storage.delete_by_id(player.id) is False
        assert read_file(player_storage.path) == {"data": []}

    @pytest.mark.asyncio
    async def test_find_all_in_insertion_order(self, tmp_path: Path) -> None:
        storage = JsonStorage(Note, tmp_path)
        await storage.init()
        for code in [3, 1, 2]:
            _ = await storage.insert(Note(code=code))

        # Act
        everything = await storage.find_all()
        page = await storage.find_all(limit=1, offset=1)

        # Assert
        assert [n.code for n in everything] == [3, 1, 2]
        assert [n.code for n in page] == [1]
        assert await storage.find_all(limit=0) == []

    @pytest.mark.asyncio
    async def test_negative_paging_is_rejected(self, player_storage: JsonStorage[Player]) -> None:
        with pytest.raises(ValueError):
            _ = await player_storage.find_all(offset=-1)


class TestWriteFailure:
    """A failed snapshot write leaves memory and file untouched."""

    @pytest.mark.asyncio
    async def test_failed_replace_rolls_back(
        self, player_storage: JsonStorage[Player], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        kept = await player_storage.insert(Player(name="ada"))
        before = player_storage.path.read_text(encoding="utf-8")

        def fail_replace(src: str | os.PathLike, dst: str | os.PathLike) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(json_repository.os, "replace", fail_replace)

        # Act
        with pytest.raises(StorageIOError):
            _ = await player_storage.insert(Player(name="bob"))

        # Assert
        assert await player_storage.count() == 1
        assert await player_storage.exists_by_id(kept.id)
        assert player_storage.path.read_text(encoding="utf-8") == before
        assert not player_storage.path.with_name("player.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_failed_batch_rolls_back(
        self, player_storage: JsonStorage[Player], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fail_replace(src: str | os.PathLike, dst: str | os.PathLike) -> None:
            raise OSError("read-only file system")

        monkeypatch.setattr(json_repository.os, "replace", fail_replace)

        with pytest.raises(StorageIOError):
            _ = await player_storage.save_all_transactional([Player(name="a"), Player(name="b")])

        assert await player_storage.count() == 0


class TestBatches:
    @pytest.mark.asyncio
    async def test_save_all_persists_once(
        self, player_storage: JsonStorage[Player], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        writes: list[int] = []
        original = json_repository.write_snapshot

        def counting_write(path: Path, records: list[dict]) -> None:
            writes.append(len(records))
            original(path, records)

        monkeypatch.setattr(json_repository, "write_snapshot", counting_write)
        players = [Player(name=f"p{i}") for i in range(5)]

        # Act
        saved = await player_storage.save_all(players)

        # Assert
        assert saved == players
        assert writes == [5]
        assert len(read_file(player_storage.path)["data"]) == 5

    @pytest.mark.asyncio
    async def test_save_all_upserts(self, player_storage: JsonStorage[Player]) -> None:
        player = await player_storage.insert(Player(name="ada"))
        player.score = 3

        _ = await player_storage.save_all_transactional([player, Player(name="bob")])

        found = await player_storage.find_by_id(player.id)
        assert found is not None
        assert found.score == 3
        assert await player_storage.count() == 2

    @pytest.mark.asyncio
    async def test_batch_with_unkeyed_item_changes_nothing(self, tmp_path: Path) -> None:
        storage = JsonStorage(Counter, tmp_path)
        await storage.init()

        with pytest.raises(MissingKeyError):
            _ = await storage.save_all([Counter(key="a"), Counter()])

        assert await storage.count() == 0

