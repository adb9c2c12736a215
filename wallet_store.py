"""钱包列表持久化：窄接口 WalletStore、JSON 文件实现，以及钱包生命周期管理。"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from config import WALLET_STORE_FILE, Network
from models import WalletRecord
from wallet_service import create_wallet_record

logger = logging.getLogger(__name__)


class WalletStore(Protocol):
    """外部存储接口。核心只通过这四个方法读写，不关心底层介质。"""

    def load(self) -> List[WalletRecord]:
        ...

    def save(self, records: List[WalletRecord]) -> None:
        ...

    def get_active_id(self) -> Optional[str]:
        ...

    def set_active_id(self, wallet_id: Optional[str]) -> None:
        ...


class JsonWalletStore:
    """把钱包列表与当前钱包 id 写入本地 JSON 文件。"""

    def __init__(self, path: Path = WALLET_STORE_FILE) -> None:
        self.path = Path(path)

    def _read(self) -> Dict[str, object]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            # 损坏时直接报错，避免下次保存覆盖原文件
            raise ValueError(f"钱包文件已损坏: {self.path}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"钱包文件格式无效: {self.path}")
        return data

    def _write(self, data: Dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def load(self) -> List[WalletRecord]:
        items = self._read().get("wallets") or []
        return [WalletRecord.from_dict(item) for item in items]  # type: ignore[union-attr]

    def save(self, records: List[WalletRecord]) -> None:
        data = self._read()
        data["wallets"] = [record.to_dict() for record in records]
        self._write(data)

    def get_active_id(self) -> Optional[str]:
        active = self._read().get("active_id")
        return str(active) if active else None

    def set_active_id(self, wallet_id: Optional[str]) -> None:
        data = self._read()
        data["active_id"] = wallet_id
        self._write(data)


class InMemoryWalletStore:
    """仅存在于内存中的存储，用于测试或不落盘的会话。"""

    def __init__(self) -> None:
        self._records: List[WalletRecord] = []
        self._active_id: Optional[str] = None

    def load(self) -> List[WalletRecord]:
        return list(self._records)

    def save(self, records: List[WalletRecord]) -> None:
        self._records = list(records)

    def get_active_id(self) -> Optional[str]:
        return self._active_id

    def set_active_id(self, wallet_id: Optional[str]) -> None:
        self._active_id = wallet_id


class WalletRegistry:
    """
    钱包记录的生命周期：创建/导入时生成，仅能重命名，断开时删除。

    新建或导入的钱包自动成为当前钱包。
    """

    def __init__(self, store: WalletStore) -> None:
        self._store = store

    def list(self) -> List[WalletRecord]:
        return self._store.load()

    def get(self, wallet_id: str) -> Optional[WalletRecord]:
        for record in self._store.load():
            if record.id == wallet_id:
                return record
        return None

    def create(self, display_name: str, network: Network = Network.TESTNET, keep_phrase: bool = True) -> WalletRecord:
        return self._add(create_wallet_record(display_name, network=network, keep_phrase=keep_phrase))

    def import_phrase(
        self,
        phrase: str,
        display_name: str,
        network: Network = Network.TESTNET,
        keep_phrase: bool = True,
    ) -> WalletRecord:
        return self._add(create_wallet_record(display_name, network=network, phrase=phrase, keep_phrase=keep_phrase))

    def rename(self, wallet_id: str, display_name: str) -> WalletRecord:
        records = self._store.load()
        for record in records:
            if record.id == wallet_id:
                record.display_name = display_name
                self._store.save(records)
                return record
        raise KeyError(wallet_id)

    def disconnect(self, wallet_id: str) -> None:
        records = self._store.load()
        remaining = [record for record in records if record.id != wallet_id]
        if len(remaining) == len(records):
            raise KeyError(wallet_id)
        self._store.save(remaining)
        if self._store.get_active_id() == wallet_id:
            self._store.set_active_id(remaining[0].id if remaining else None)
        logger.info("已断开钱包 %s", wallet_id)

    def active(self) -> Optional[WalletRecord]:
        active_id = self._store.get_active_id()
        return self.get(active_id) if active_id else None

    def set_active(self, wallet_id: str) -> WalletRecord:
        record = self.get(wallet_id)
        if record is None:
            raise KeyError(wallet_id)
        self._store.set_active_id(wallet_id)
        return record

    def _add(self, record: WalletRecord) -> WalletRecord:
        records = self._store.load()
        records.append(record)
        self._store.save(records)
        self._store.set_active_id(record.id)
        return record
