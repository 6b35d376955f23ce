# batchbot/persistence.py
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiofiles
import aiofiles.os

from .models import utc_now_iso

SCHEMA_VERSION = "2.0.0"
STATE_FILE = "trading-state.json"
BACKUP_FILE = "trading-state.backup.json"
HISTORY_DIR = "history"


class StateStore:
    """
    Versioned JSON snapshots of the trading session.
    Every save keeps the previous file as a backup; loading falls back to it
    when the primary file cannot be read.
    """
    def __init__(self, state_dir: str, logger, max_archives: int = 10):
        self.state_dir = state_dir
        self.logger = logger
        self.max_archives = max_archives
        self.state_file = os.path.join(state_dir, STATE_FILE)
        self.backup_file = os.path.join(state_dir, BACKUP_FILE)
        self.history_dir = os.path.join(state_dir, HISTORY_DIR)

    async def init_storage(self):
        await aiofiles.os.makedirs(self.state_dir, exist_ok=True)
        await aiofiles.os.makedirs(self.history_dir, exist_ok=True)
        self.logger.info("✅ Storage directories initialized")

    async def _read_json(self, path: str) -> Dict[str, Any]:
        async with aiofiles.open(path, mode='r', encoding='utf-8') as f:
            data = json.loads(await f.read())
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not hold a state object")
        return data

    async def _write_json(self, path: str, data: Dict[str, Any]):
        async with aiofiles.open(path, mode='w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2))

    async def _copy(self, src: str, dst: str):
        async with aiofiles.open(src, mode='rb') as f:
            content = await f.read()
        async with aiofiles.open(dst, mode='wb') as f:
            await f.write(content)

    async def save(self, snapshot: Dict[str, Any]) -> bool:
        data = dict(snapshot)
        data["version"] = SCHEMA_VERSION
        data["timestamp"] = utc_now_iso()
        try:
            if await aiofiles.os.path.exists(self.state_file):
                await self._copy(self.state_file, self.backup_file)
            await self._write_json(self.state_file, data)
            return True
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(f"❌ Failed to save state: {e}")
            return False

    async def load(self) -> Optional[Dict[str, Any]]:
        if not await aiofiles.os.path.exists(self.state_file):
            self.logger.info("ℹ️ No saved state found, starting fresh")
            return None
        try:
            data = await self._read_json(self.state_file)
        except (OSError, ValueError) as e:
            self.logger.error(f"❌ Failed to load state: {e}")
            return await self._load_backup()

        if data.get("version") != SCHEMA_VERSION:
            self.logger.warning(f"⚠️ Schema version mismatch: {data.get('version')} != {SCHEMA_VERSION}, migrating...")
            return await self.migrate(data)

        self.logger.info(f"✅ Loaded state from {data.get('timestamp')}")
        return data

    async def _load_backup(self) -> Optional[Dict[str, Any]]:
        self.logger.info("   Attempting to load from backup...")
        try:
            data = await self._read_json(self.backup_file)
        except (OSError, ValueError) as e:
            self.logger.error(f"❌ Backup also failed: {e}")
            return None
        self.logger.info("✅ Loaded state from backup")
        if data.get("version") != SCHEMA_VERSION:
            return await self.migrate(data)
        return data

    async def migrate(self, old: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Brings an older snapshot up to the current schema and rewrites the file.
        Legacy flat positions (one buyPrice/cryptoAmount per asset) become a single batch.
        """
        migrated = dict(old)
        migrated["assets"] = [_migrate_asset(a) for a in old.get("assets") or [] if isinstance(a, dict)]
        migrated["version"] = SCHEMA_VERSION
        migrated["timestamp"] = utc_now_iso()
        try:
            await self._write_json(self.state_file, migrated)
        except OSError as e:
            self.logger.error(f"❌ Migration failed: {e}")
            return None
        self.logger.info("✅ State migrated successfully")
        return migrated

    async def archive(self) -> Optional[str]:
        if not await aiofiles.os.path.exists(self.state_file):
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
        target = os.path.join(self.history_dir, f"state-{stamp}.json")
        try:
            await aiofiles.os.makedirs(self.history_dir, exist_ok=True)
            await self._copy(self.state_file, target)
            self.logger.info(f"📦 State archived to {os.path.basename(target)}")
            await self._cleanup_archives()
        except OSError as e:
            self.logger.error(f"❌ Failed to archive state: {e}")
            return None
        return target

    async def _cleanup_archives(self):
        files = sorted(
            (f for f in await aiofiles.os.listdir(self.history_dir) if f.startswith("state-") and f.endswith(".json")),
            reverse=True,
        )
        stale = files[self.max_archives:]
        for name in stale:
            await aiofiles.os.remove(os.path.join(self.history_dir, name))
        if stale:
            self.logger.info(f"🗑️ Cleaned up {len(stale)} old archives")

    async def clear(self) -> bool:
        try:
            for path in (self.state_file, self.backup_file):
                if await aiofiles.os.path.exists(path):
                    await aiofiles.os.remove(path)
        except OSError as e:
            self.logger.error(f"❌ Failed to clear state: {e}")
            return False
        self.logger.info("🗑️ Cleared all saved state")
        return True


def _migrate_asset(record: Dict[str, Any]) -> Dict[str, Any]:
    if "batches" in record:
        return record
    asset = {
        "market": record.get("market"),
        "batches": [],
        "realizedProfit": record.get("realizedProfit", record.get("profit", 0.0)),
        "invested": record.get("invested", 0.0),
        "tradeCount": record.get("tradeCount", 0),
        "tradeIndex": record.get("tradeIndex", 0),
    }
    buy_price = float(record.get("buyPrice") or 0.0)
    crypto = float(record.get("cryptoAmount") or 0.0)
    holding = record.get("currentState", record.get("mode")) == "sell"
    if holding and buy_price > 0 and crypto > 0:
        asset["batches"].append({
            "buyPrice": buy_price,
            "buyAmount": float(record.get("buyAmount") or crypto * buy_price),
            "cryptoAmount": crypto,
            "peakPrice": float(record.get("maxPrice") or buy_price),
            "waitIndex": int(record.get("waitIndex") or 0),
        })
    return asset
