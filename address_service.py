"""收款地址解析服务：封装密钥派生，并按助记词指纹短期缓存地址信息。"""

import hashlib
import hmac
import logging
import secrets
import time
from typing import Callable, Optional

from cachetools import TTLCache

from config import ADDRESS_CACHE_TTL, CACHE_MAX_ENTRIES, Chain, Network, get_network_config
from models import AddressInfo
from wallet_service import derive_key_material

logger = logging.getLogger(__name__)


class AddressResolver:
    """
    解析 (链, 助记词, 网络) -> AddressInfo。

    缓存键使用进程内随机密钥下的 HMAC 指纹，缓存中不保存助记词或任何私钥。
    """

    def __init__(
        self,
        ttl: float = ADDRESS_CACHE_TTL,
        clock: Optional[Callable[[], float]] = None,
        deriver: Callable = derive_key_material,
        maxsize: int = CACHE_MAX_ENTRIES,
    ) -> None:
        self._deriver = deriver
        self._fingerprint_key = secrets.token_bytes(32)
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock or time.monotonic)

    def fingerprint(self, phrase: str) -> str:
        normalized = " ".join(phrase.strip().lower().split())
        return hmac.new(self._fingerprint_key, normalized.encode("utf-8"), hashlib.sha256).hexdigest()

    def resolve(self, chain: Chain, phrase: str, network: Network = Network.TESTNET) -> AddressInfo:
        chain = Chain(chain)
        network = Network(network)
        key = (chain, network, self.fingerprint(phrase))
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        material = self._deriver(phrase, chain, network)
        info = AddressInfo(
            address=material.address,
            network=get_network_config(chain, network).name,
            is_native=True,
            contract_address=None,
        )
        self._cache[key] = info
        logger.debug("已派生 %s 地址 %s", chain.value, info.address)
        return info

    def clear(self) -> None:
        self._cache.clear()
