"""交易广播：按顺序尝试各服务商，把各异的响应格式统一为交易标识。"""

import base64
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Tuple

import httpx

from config import (
    BROADCAST_TIMEOUT,
    BTC_BROADCAST_PROVIDERS,
    ETH_RPC_PROVIDERS,
    RATE_LIMIT_BACKOFF,
    SOL_RPC_PROVIDERS,
    Chain,
    Network,
)
from errors import BroadcastError, ProviderUnavailableError
from models import SignedTransaction
from providers import (
    JsonRpcError,
    ProviderEndpoint,
    RateLimiter,
    endpoints_from,
    first_success,
    request_json,
    request_raw,
    rpc_call,
)

logger = logging.getLogger(__name__)

Submitter = Callable[[httpx.AsyncClient, ProviderEndpoint, SignedTransaction, float], Awaitable[str]]

# 节点已持有该交易时的拒绝信息（geth、bitcoind、BlockCypher、Solana）
_ALREADY_KNOWN_MARKERS = (
    "already known",
    "alreadyknown",
    "txn-already-known",
    "txn-already-in-mempool",
    "already in block chain",
    "already exists",
    "already been processed",
)


def is_already_known(exc: Exception) -> bool:
    """判断广播失败是否只是因为交易已在内存池或已上链。"""
    if isinstance(exc, httpx.HTTPStatusError):
        text = exc.response.text
    elif isinstance(exc, JsonRpcError):
        text = str(exc)
    else:
        return False
    text = text.lower()
    return any(marker in text for marker in _ALREADY_KNOWN_MARKERS)


async def submit_btc(
    client: httpx.AsyncClient, endpoint: ProviderEndpoint, signed: SignedTransaction, timeout: float
) -> str:
    """
    BlockCypher 接收 JSON 包装的 hex，返回 {"tx": {"hash": ...}}；
    Esplora 系（blockstream / mempool）接收纯文本 hex，返回纯文本 txid。
    """
    if endpoint.name == "blockcypher":
        data = await request_json(client, "POST", endpoint.url, timeout, json={"tx": signed.hex})
        tx_hash = ((data or {}).get("tx") or {}).get("hash")
        if not tx_hash:
            raise ValueError("广播响应缺少 tx.hash")
        return str(tx_hash)
    response = await request_raw(
        client, "POST", endpoint.url, timeout, content=signed.hex, headers={"Content-Type": "text/plain"}
    )
    tx_hash = response.text.strip()
    if not tx_hash:
        raise ValueError("广播响应为空")
    return tx_hash


async def submit_eth(
    client: httpx.AsyncClient, endpoint: ProviderEndpoint, signed: SignedTransaction, timeout: float
) -> str:
    result = await rpc_call(client, endpoint.url, "eth_sendRawTransaction", ["0x" + signed.hex], timeout)
    if not isinstance(result, str) or not result:
        raise ValueError("广播响应缺少交易哈希")
    return result


async def submit_sol(
    client: httpx.AsyncClient, endpoint: ProviderEndpoint, signed: SignedTransaction, timeout: float
) -> str:
    encoded = base64.b64encode(signed.raw).decode("ascii")
    result = await rpc_call(
        client,
        endpoint.url,
        "sendTransaction",
        [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        timeout,
    )
    if not isinstance(result, str) or not result:
        raise ValueError("广播响应缺少交易签名")
    return result


class Broadcaster:
    """
    单条链的广播器。

    每次调用最多成功提交一次：某个服务商接受后立即返回，不再尝试其他服务商，
    也不自动重试；是否重新提交由调用方决定。
    """

    def __init__(
        self,
        chain: Chain,
        endpoints: Mapping[Network, List[ProviderEndpoint]],
        submitter: Submitter,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        timeout: float = BROADCAST_TIMEOUT,
        backoff: float = RATE_LIMIT_BACKOFF,
    ) -> None:
        self.chain = Chain(chain)
        self._endpoints = {Network(net): list(items) for net, items in endpoints.items()}
        self._submitter = submitter
        self._client = client
        self._limiter = limiter
        self._timeout = timeout
        self._backoff = backoff

    @property
    def operation(self) -> str:
        return f"{self.chain.value.lower()}_broadcast"

    async def broadcast(self, signed: SignedTransaction, network: Network) -> str:
        if signed.chain != self.chain:
            raise BroadcastError(f"{self.chain.value} 广播器不能提交 {signed.chain.value} 交易")

        async def call(endpoint: ProviderEndpoint) -> str:
            try:
                return await self._submitter(self._client, endpoint, signed, self._timeout)
            except (httpx.HTTPStatusError, JsonRpcError) as exc:
                # 前一个服务商可能已接受但超时，此时以本地交易标识为准
                if is_already_known(exc):
                    logger.info("%s 报告交易 %s 已存在，视为广播成功", endpoint.name, signed.tx_id)
                    return signed.tx_id
                raise

        try:
            tx_id, endpoint = await first_success(
                self.operation,
                self._endpoints.get(Network(network), []),
                call,
                self._limiter,
                backoff=self._backoff,
            )
        except ProviderUnavailableError as exc:
            raise BroadcastError(f"{self.chain.value} 交易广播失败", exc.failures) from exc

        if tx_id.lower().removeprefix("0x") != signed.tx_id.lower().removeprefix("0x"):
            logger.warning("%s 返回的交易标识 %s 与本地计算的 %s 不一致", endpoint.name, tx_id, signed.tx_id)
        logger.info("%s 交易已由 %s 广播：%s", self.chain.value, endpoint.name, tx_id)
        return tx_id


_BROADCAST_SOURCES: Dict[Chain, Tuple[Dict[Network, List[Tuple[str, str]]], Submitter]] = {
    Chain.BTC: (BTC_BROADCAST_PROVIDERS, submit_btc),
    Chain.ETH: (ETH_RPC_PROVIDERS, submit_eth),
    Chain.SOL: (SOL_RPC_PROVIDERS, submit_sol),
}


def create_broadcasters(client: httpx.AsyncClient, limiter: RateLimiter, **kwargs: Any) -> Dict[Chain, Broadcaster]:
    broadcasters: Dict[Chain, Broadcaster] = {}
    for chain in Chain:
        table, submitter = _BROADCAST_SOURCES[chain]
        endpoints = {network: endpoints_from(items) for network, items in table.items()}
        broadcasters[chain] = Broadcaster(chain, endpoints, submitter, client, limiter, **kwargs)
    return broadcasters
