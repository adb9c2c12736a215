"""ETH 交易构建与签名：gas 价格、gas 估算 +10%、nonce，签名后恢复发送方校验。"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from eth_account import Account
from eth_utils import is_address, to_checksum_address

from config import (
    BALANCE_TIMEOUT,
    DEFAULT_GAS_PRICE_WEI,
    ETH_RPC_PROVIDERS,
    ETH_TRANSFER_GAS,
    GAS_LIMIT_MULTIPLIER_DEN,
    GAS_LIMIT_MULTIPLIER_NUM,
    RATE_LIMIT_BACKOFF,
    Chain,
    Network,
    get_network_config,
)
from errors import DustAmountError, InvalidAddressError, ProviderUnavailableError, SigningError
from models import ChainKeyMaterial, EthUnsigned, SignedTransaction, TxStatus
from providers import ProviderEndpoint, RateLimiter, endpoints_from, first_success, rpc_call

logger = logging.getLogger(__name__)


def _hex_to_int(value: Any) -> int:
    if value is None:
        raise ValueError("RPC 返回为空")
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def validate_eth_address(address: str) -> str:
    """校验并返回校验和格式地址。"""
    if not isinstance(address, str) or not is_address(address):
        raise InvalidAddressError(f"无效的以太坊地址: {address}")
    return to_checksum_address(address)


def apply_gas_margin(estimate: int) -> int:
    """gas 估算值乘以 1.1 并向上取整。"""
    return -(-estimate * GAS_LIMIT_MULTIPLIER_NUM // GAS_LIMIT_MULTIPLIER_DEN)


class EthTransactionBuilder:
    """通过 JSON-RPC 组装 legacy (EIP-155) 转账交易。"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        timeout: float = BALANCE_TIMEOUT,
        backoff: float = RATE_LIMIT_BACKOFF,
    ) -> None:
        self._client = client
        self._limiter = limiter
        self._timeout = timeout
        self._backoff = backoff
        self._endpoints = {net: endpoints_from(items) for net, items in ETH_RPC_PROVIDERS.items()}

    def validate(self, recipient: str, amount_wei: int, network: Optional[Network] = None) -> str:
        to = validate_eth_address(recipient)
        if amount_wei <= 0:
            raise DustAmountError("金额必须大于 0")
        return to

    async def _rpc(self, network: Network, operation: str, method: str, params: List[Any]) -> Any:
        async def call(endpoint: ProviderEndpoint) -> Any:
            return await rpc_call(self._client, endpoint.url, method, params, self._timeout)

        result, _ = await first_success(
            operation, self._endpoints.get(Network(network), []), call, self._limiter, backoff=self._backoff
        )
        return result

    async def get_gas_price(self, network: Network) -> int:
        """节点 gas 价格，不可用时使用 20 gwei 默认值。"""
        try:
            return _hex_to_int(await self._rpc(network, "eth_gas_price", "eth_gasPrice", []))
        except ProviderUnavailableError as exc:
            logger.warning("gas 价格获取失败，使用默认值：%s", exc)
            return DEFAULT_GAS_PRICE_WEI

    async def estimate_gas(self, tx: Dict[str, Any], network: Network) -> int:
        try:
            estimate = _hex_to_int(await self._rpc(network, "eth_estimate_gas", "eth_estimateGas", [tx]))
        except ProviderUnavailableError as exc:
            logger.warning("gas 估算失败，使用标准转账 gas：%s", exc)
            estimate = ETH_TRANSFER_GAS
        return apply_gas_margin(estimate)

    async def get_nonce(self, address: str, network: Network) -> int:
        # pending 包含内存池中尚未确认的交易
        result = await self._rpc(network, "eth_nonce", "eth_getTransactionCount", [address, "pending"])
        return _hex_to_int(result)

    async def build(
        self,
        sender_address: str,
        recipient: str,
        amount_wei: int,
        network: Network,
        gas_price: Optional[int] = None,
    ) -> EthUnsigned:
        network = Network(network)
        to = self.validate(recipient, amount_wei)
        sender = validate_eth_address(sender_address)
        price = gas_price if gas_price is not None else await self.get_gas_price(network)
        gas_limit = await self.estimate_gas({"from": sender, "to": to, "value": hex(amount_wei)}, network)
        nonce = await self.get_nonce(sender, network)
        unsigned = EthUnsigned(
            sender_address=sender,
            nonce=nonce,
            gas_limit=gas_limit,
            gas_price=price,
            to=to,
            value_wei=amount_wei,
            chain_id=int(get_network_config(Chain.ETH, network).chain_id or 0),
        )
        logger.info("ETH 交易已构建：nonce=%d gas=%d gasPrice=%d", nonce, gas_limit, price)
        return unsigned

    async def estimate_fee(self, network: Network) -> int:
        """标准转账的预估手续费（wei）。"""
        price = await self.get_gas_price(network)
        return apply_gas_margin(ETH_TRANSFER_GAS) * price

    async def get_status(self, tx_id: str, network: Network) -> TxStatus:
        receipt = await self._rpc(network, "eth_status", "eth_getTransactionReceipt", [tx_id])
        if not receipt:
            return TxStatus(tx_id=tx_id, confirmed=False)
        block = receipt.get("blockNumber")
        if block is None:
            return TxStatus(tx_id=tx_id, confirmed=False)
        block_height = _hex_to_int(block)
        confirmations = 1
        try:
            head = _hex_to_int(await self._rpc(network, "eth_block_number", "eth_blockNumber", []))
            confirmations = max(head - block_height + 1, 1)
        except ProviderUnavailableError:
            pass
        # status 0x0 表示执行失败，虽已上链但不视为确认成功
        succeeded = _hex_to_int(receipt.get("status", "0x1")) == 1
        return TxStatus(
            tx_id=tx_id,
            confirmed=succeeded,
            confirmations=confirmations if succeeded else 0,
            block_height=block_height,
            failed=not succeeded,
        )


class EthTransactionSigner:
    def sign(self, unsigned: EthUnsigned, material: ChainKeyMaterial) -> SignedTransaction:
        """签名后从原始交易恢复发送方，不一致即视为签名失败。"""
        if material.chain != Chain.ETH:
            raise SigningError(f"密钥属于 {material.chain.value}，不能签名 ETH 交易")
        if material.address.lower() != unsigned.sender_address.lower():
            raise SigningError("签名密钥与发送地址不匹配")
        try:
            signed = Account.sign_transaction(unsigned.to_tx_dict(), material.private_key)
            recovered = Account.recover_transaction(signed.raw_transaction)
        except (TypeError, ValueError) as exc:
            raise SigningError(f"ETH 签名失败: {exc}") from exc
        if recovered.lower() != unsigned.sender_address.lower():
            raise SigningError("签名恢复出的地址与发送地址不一致")
        tx_id = "0x" + bytes(signed.hash).hex()
        logger.info("ETH 交易已签名 %s", tx_id)
        return SignedTransaction(
            chain=Chain.ETH,
            network=material.network,
            raw=bytes(signed.raw_transaction),
            tx_id=tx_id,
        )
