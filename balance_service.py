"""余额查询服务：每条链一个实例，带缓存、单飞去重、限流与服务商回退。"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from config import (
    BALANCE_CACHE_TTL,
    BALANCE_TIMEOUT,
    BTC_BALANCE_PROVIDERS,
    ETH_RPC_PROVIDERS,
    RATE_LIMIT_BACKOFF,
    SOL_RPC_PROVIDERS,
    Chain,
    Network,
    get_network_config,
)
from errors import ProviderUnavailableError
from models import BalanceSnapshot
from providers import ProviderEndpoint, RateLimiter, endpoints_from, first_success, request_json, rpc_call
from ttl_cache import TtlCache

logger = logging.getLogger(__name__)

BalanceFetcher = Callable[[httpx.AsyncClient, ProviderEndpoint, str, float], Awaitable[int]]


def _to_int(value: Any) -> int:
    """宽松地把服务商字段转为整数，缺失或空值按 0 处理。"""
    if value is None or value == "":
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
    return int(value)


def parse_btc_balance(data: Any) -> int:
    """兼容 BlockCypher（balance）与 Esplora（chain_stats）两种返回格式。"""
    if not isinstance(data, dict):
        raise ValueError("余额响应不是 JSON 对象")
    if "chain_stats" in data:
        stats = data.get("chain_stats") or {}
        funded = _to_int(stats.get("funded_txo_sum"))
        spent = _to_int(stats.get("spent_txo_sum"))
        return max(funded - spent, 0)
    return max(_to_int(data.get("balance")), 0)


async def fetch_btc_balance(
    client: httpx.AsyncClient, endpoint: ProviderEndpoint, address: str, timeout: float
) -> int:
    data = await request_json(client, "GET", endpoint.format(address=address), timeout)
    return parse_btc_balance(data)


async def fetch_eth_balance(
    client: httpx.AsyncClient, endpoint: ProviderEndpoint, address: str, timeout: float
) -> int:
    result = await rpc_call(client, endpoint.url, "eth_getBalance", [address, "latest"], timeout)
    return _to_int(result)


async def fetch_sol_balance(
    client: httpx.AsyncClient, endpoint: ProviderEndpoint, address: str, timeout: float
) -> int:
    result = await rpc_call(client, endpoint.url, "getBalance", [address], timeout)
    if isinstance(result, dict):
        return _to_int(result.get("value"))
    return _to_int(result)


class BalanceOracle:
    """
    单条链的余额查询。

    流程：新鲜缓存 -> 单飞去重 -> 有序服务商（限流、超时、429 退避）
    -> 全部失败时返回最后缓存值或零值，且 degraded=True。
    """

    def __init__(
        self,
        chain: Chain,
        endpoints: Mapping[Network, List[ProviderEndpoint]],
        fetcher: BalanceFetcher,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        ttl: float = BALANCE_CACHE_TTL,
        timeout: float = BALANCE_TIMEOUT,
        backoff: float = RATE_LIMIT_BACKOFF,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.chain = Chain(chain)
        self._endpoints = {Network(net): list(items) for net, items in endpoints.items()}
        self._fetcher = fetcher
        self._client = client
        self._limiter = limiter
        self._timeout = timeout
        self._backoff = backoff
        self._wall_clock = wall_clock or time.time
        self._cache: TtlCache[Tuple[str, Network], BalanceSnapshot] = TtlCache(ttl, clock=clock)

    @property
    def operation(self) -> str:
        return f"{self.chain.value.lower()}_balance"

    async def get_balance(self, address: str, network: Network = Network.TESTNET) -> BalanceSnapshot:
        network = Network(network)
        key = (address, network)
        try:
            return await self._cache.get_or_fetch(key, lambda: self._fetch(address, network))
        except ProviderUnavailableError as exc:
            stale = self._cache.get_stale(key)
            if stale is not None:
                logger.warning("%s 余额服务商全部失败，返回缓存值：%s", self.chain.value, exc)
                return stale.as_degraded()
            logger.warning("%s 余额服务商全部失败且无缓存，返回零值：%s", self.chain.value, exc)
            return self._snapshot(address, network, 0, source="none", degraded=True)

    def invalidate(self, address: str, network: Network = Network.TESTNET) -> None:
        self._cache.invalidate((address, Network(network)))

    def clear(self) -> None:
        self._cache.clear()

    async def _fetch(self, address: str, network: Network) -> BalanceSnapshot:
        endpoints = self._endpoints.get(network, [])

        async def call(endpoint: ProviderEndpoint) -> int:
            return await self._fetcher(self._client, endpoint, address, self._timeout)

        amount, endpoint = await first_success(
            self.operation, endpoints, call, self._limiter, backoff=self._backoff
        )
        logger.info("%s 余额 %s 来自 %s", self.chain.value, amount, endpoint.name)
        return self._snapshot(address, network, amount, source=endpoint.name, degraded=False)

    def _snapshot(self, address: str, network: Network, amount: int, source: str, degraded: bool) -> BalanceSnapshot:
        net_cfg = get_network_config(self.chain, network)
        return BalanceSnapshot(
            chain=self.chain,
            address=address,
            network=network,
            amount=amount,
            unit=net_cfg.unit,
            decimals=net_cfg.decimals,
            as_of=self._wall_clock(),
            source=source,
            degraded=degraded,
        )


_BALANCE_SOURCES: Dict[Chain, Tuple[Dict[Network, List[Tuple[str, str]]], BalanceFetcher]] = {
    Chain.BTC: (BTC_BALANCE_PROVIDERS, fetch_btc_balance),
    Chain.ETH: (ETH_RPC_PROVIDERS, fetch_eth_balance),
    Chain.SOL: (SOL_RPC_PROVIDERS, fetch_sol_balance),
}


def create_balance_oracles(
    client: httpx.AsyncClient,
    limiter: RateLimiter,
    **kwargs: Any,
) -> Dict[Chain, BalanceOracle]:
    """为每条链构造一个独立的 BalanceOracle（独立缓存，互不阻塞）。"""
    oracles: Dict[Chain, BalanceOracle] = {}
    for chain in Chain:
        table, fetcher = _BALANCE_SOURCES[chain]
        endpoints = {network: endpoints_from(items) for network, items in table.items()}
        oracles[chain] = BalanceOracle(chain, endpoints, fetcher, client, limiter, **kwargs)
    return oracles
