"""SOL 交易构建与签名：单条系统转账指令 + 最新 blockhash，Ed25519 签名。"""

import base64
import logging
from typing import Any, List, Optional

import httpx
from base58 import b58decode, b58encode
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from config import (
    BALANCE_TIMEOUT,
    RATE_LIMIT_BACKOFF,
    SOL_DEFAULT_FEE_LAMPORTS,
    SOL_RPC_PROVIDERS,
    Chain,
    Network,
)
from errors import DustAmountError, InvalidAddressError, ProviderUnavailableError, SigningError
from models import ChainKeyMaterial, SignedTransaction, SolUnsigned, TxStatus
from providers import ProviderEndpoint, RateLimiter, endpoints_from, first_success, rpc_call

logger = logging.getLogger(__name__)


def validate_sol_address(address: str) -> Pubkey:
    """Base58 解码后必须恰好 32 字节。"""
    try:
        raw = b58decode(address)
    except ValueError as exc:
        raise InvalidAddressError(f"无效的 Solana 地址: {address}") from exc
    if len(raw) != 32:
        raise InvalidAddressError(f"无效的 Solana 地址: {address}")
    return Pubkey.from_bytes(raw)


def build_message(unsigned: SolUnsigned) -> Message:
    return Message.new_with_blockhash(
        list(unsigned.instructions),
        Pubkey.from_string(unsigned.fee_payer),
        Hash.from_string(unsigned.recent_blockhash),
    )


class SolTransactionBuilder:
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
        self._endpoints = {net: endpoints_from(items) for net, items in SOL_RPC_PROVIDERS.items()}

    def validate(self, recipient: str, lamports: int, network: Optional[Network] = None) -> Pubkey:
        to = validate_sol_address(recipient)
        if lamports <= 0:
            raise DustAmountError("金额必须大于 0")
        return to

    async def _rpc(self, network: Network, operation: str, method: str, params: List[Any]) -> Any:
        async def call(endpoint: ProviderEndpoint) -> Any:
            return await rpc_call(self._client, endpoint.url, method, params, self._timeout)

        result, _ = await first_success(
            operation, self._endpoints.get(Network(network), []), call, self._limiter, backoff=self._backoff
        )
        return result

    async def get_latest_blockhash(self, network: Network) -> str:
        result = await self._rpc(network, "sol_blockhash", "getLatestBlockhash", [{"commitment": "finalized"}])
        value = (result or {}).get("value") or {}
        blockhash = value.get("blockhash")
        if not blockhash:
            raise ProviderUnavailableError("sol_blockhash", [("rpc", "响应缺少 blockhash")])
        return str(blockhash)

    async def build(self, sender_address: str, recipient: str, lamports: int, network: Network) -> SolUnsigned:
        to = self.validate(recipient, lamports)
        sender = validate_sol_address(sender_address)
        blockhash = await self.get_latest_blockhash(Network(network))
        instruction = transfer(TransferParams(from_pubkey=sender, to_pubkey=to, lamports=lamports))
        logger.info("SOL 交易已构建：%d lamports，blockhash %s", lamports, blockhash)
        return SolUnsigned(
            instructions=(instruction,),
            recent_blockhash=blockhash,
            fee_payer=str(sender),
            recipient=str(to),
            lamports=lamports,
        )

    async def estimate_fee(self, network: Network, unsigned: Optional[SolUnsigned] = None) -> int:
        """向节点查询消息手续费，失败或未给出消息时返回 5000 lamports。"""
        if unsigned is None:
            return SOL_DEFAULT_FEE_LAMPORTS
        encoded = base64.b64encode(bytes(build_message(unsigned))).decode("ascii")
        try:
            result = await self._rpc(
                network, "sol_fee", "getFeeForMessage", [encoded, {"commitment": "processed"}]
            )
        except ProviderUnavailableError as exc:
            logger.warning("SOL 手续费查询失败，使用默认值：%s", exc)
            return SOL_DEFAULT_FEE_LAMPORTS
        value = (result or {}).get("value")
        return int(value) if value is not None else SOL_DEFAULT_FEE_LAMPORTS

    async def get_status(self, tx_id: str, network: Network) -> TxStatus:
        result = await self._rpc(
            network, "sol_status", "getSignatureStatuses", [[tx_id], {"searchTransactionHistory": True}]
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return TxStatus(tx_id=tx_id, confirmed=False)
        level = status.get("confirmationStatus")
        confirmed = status.get("err") is None and level in ("confirmed", "finalized")
        return TxStatus(
            tx_id=tx_id,
            confirmed=confirmed,
            confirmations=int(status.get("confirmations") or (1 if confirmed else 0)),
            block_height=status.get("slot"),
            failed=status.get("err") is not None,
        )


class SolTransactionSigner:
    def sign(self, unsigned: SolUnsigned, material: ChainKeyMaterial) -> SignedTransaction:
        if material.chain != Chain.SOL:
            raise SigningError(f"密钥属于 {material.chain.value}，不能签名 SOL 交易")
        if material.address != unsigned.fee_payer:
            raise SigningError("签名密钥与付款地址不匹配")
        try:
            message = build_message(unsigned)
        except ValueError as exc:
            raise SigningError(f"无法组装 SOL 消息: {exc}") from exc
        payload = bytes(message)

        signing_key = SigningKey(material.private_key)
        signature = signing_key.sign(payload).signature
        try:
            VerifyKey(material.public_key).verify(payload, signature)
        except BadSignatureError as exc:
            raise SigningError("SOL 签名自检失败") from exc

        tx = Transaction.populate(message, [Signature.from_bytes(signature)])
        tx_id = b58encode(signature).decode("utf-8")
        logger.info("SOL 交易已签名 %s", tx_id)
        return SignedTransaction(chain=Chain.SOL, network=material.network, raw=bytes(tx), tx_id=tx_id)
