"""
Versioned state snapshots: save, backup fallback, legacy migration,
archiving and clearing.
"""

from __future__ import annotations

import json
import os

import pytest
import pytest_asyncio

from batchbot.persistence import SCHEMA_VERSION, StateStore


@pytest_asyncio.fixture
async def store(tmp_path, logger):
    s = StateStore(str(tmp_path / "data"), logger, max_archives=3)
    await s.init_storage()
    return s


def read(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class TestSaveLoad:
    @pytest.mark.asyncio
    async def test_missing_state_is_none(self, store):
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        assert await store.save({"wallet": 420.0, "assets": []})
        data = await store.load()
        assert data["wallet"] == 420.0
        assert data["version"] == SCHEMA_VERSION
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_previous_file_becomes_backup(self, store):
        await store.save({"wallet": 1.0, "assets": []})
        assert not os.path.exists(store.backup_file)
        await store.save({"wallet": 2.0, "assets": []})
        assert read(store.backup_file)["wallet"] == 1.0
        assert read(store.state_file)["wallet"] == 2.0

    @pytest.mark.asyncio
    async def test_corrupt_primary_falls_back_to_backup(self, store):
        await store.save({"wallet": 1.0, "assets": []})
        await store.save({"wallet": 2.0, "assets": []})
        with open(store.state_file, "w", encoding="utf-8") as f:
            f.write("{not json")
        data = await store.load()
        assert data["wallet"] == 1.0

    @pytest.mark.asyncio
    async def test_both_files_corrupt(self, store):
        for path in (store.state_file, store.backup_file):
            with open(path, "w", encoding="utf-8") as f:
                f.write("[]")
        assert await store.load() is None


class TestMigration:
    @pytest.mark.asyncio
    async def test_legacy_flat_position_becomes_batch(self, store):
        legacy = {
            "version": "1.0.0",
            "wallet": 390.0,
            "assets": [
                {"market": "BTC/EUR", "currentState": "sell", "buyPrice": 100.0, "cryptoAmount": 0.9975,
                 "maxPrice": 101.0, "profit": 1.5},
                {"market": "ETH/EUR", "currentState": "buy", "buyPrice": 0, "cryptoAmount": 0},
            ],
        }
        with open(store.state_file, "w", encoding="utf-8") as f:
            json.dump(legacy, f)

        data = await store.load()

        assert data["version"] == SCHEMA_VERSION
        btc, eth = data["assets"]
        assert btc["realizedProfit"] == 1.5
        assert len(btc["batches"]) == 1
        batch = btc["batches"][0]
        assert batch["buyPrice"] == 100.0
        assert batch["peakPrice"] == 101.0
        assert batch["buyAmount"] == pytest.approx(99.75)
        assert eth["batches"] == []
        # Rewritten in the current schema
        assert read(store.state_file)["version"] == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_current_assets_pass_through(self, store):
        asset = {"market": "BTC/EUR", "batches": [], "realizedProfit": 0.0}
        migrated = await store.migrate({"version": "1.0.0", "assets": [asset]})
        assert migrated["assets"] == [asset]


class TestArchive:
    @pytest.mark.asyncio
    async def test_nothing_to_archive(self, store):
        assert await store.archive() is None

    @pytest.mark.asyncio
    async def test_archive_keeps_newest(self, store):
        for stamp in ("2020-01-01", "2020-01-02", "2020-01-03", "2020-01-04"):
            with open(os.path.join(store.history_dir, f"state-{stamp}.json"), "w") as f:
                f.write("{}")
        await store.save({"wallet": 1.0, "assets": []})

        target = await store.archive()

        assert target is not None and os.path.exists(target)
        kept = sorted(os.listdir(store.history_dir))
        assert len(kept) == 3
        assert os.path.basename(target) in kept
        assert "state-2020-01-01.json" not in kept
        assert "state-2020-01-02.json" not in kept

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.save({"wallet": 1.0, "assets": []})
        await store.save({"wallet": 2.0, "assets": []})
        assert await store.clear()
        assert not os.path.exists(store.state_file)
        assert not os.path.exists(store.backup_file)
        assert await store.load() is None
