"""
钱包引擎：对外暴露 derive_address / get_balance / send 等操作。

所有公开操作都返回 Result，错误被分类后放入 Result.error，不会抛到调用方。
各链服务在启动时显式构造并注入，不使用全局单例。
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

import httpx

from address_service import AddressResolver
from balance_service import BalanceOracle, create_balance_oracles
from broadcast_service import Broadcaster, create_broadcasters
from btc_service import BtcTransactionBuilder, BtcTransactionSigner, clamp_fee, validate_btc_address
from config import DEFAULT_GAS_PRICE_WEI, ETH_TRANSFER_GAS, SOL_DEFAULT_FEE_LAMPORTS, USER_AGENT, Chain, Network
from errors import InsufficientFundsError, InvalidStateError, WalletError
from eth_service import EthTransactionBuilder, EthTransactionSigner, apply_gas_margin, validate_eth_address
from models import (
    AddressInfo,
    BalanceSnapshot,
    ChainKeyMaterial,
    EthUnsigned,
    SendStage,
    SignedTransaction,
    TxState,
    TxStatus,
    UnsignedTransaction,
)
from providers import RateLimiter
from sol_service import SolTransactionBuilder, SolTransactionSigner, validate_sol_address
from wallet_service import derive_key_material

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """调用方边界的返回值：要么携带 value，要么携带分类后的 error。"""

    value: Optional[T] = None
    error: Optional[WalletError] = None
    stage: Optional[SendStage] = None
    operation: Optional["SendOperation"] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    @classmethod
    def success(cls, value: T, **kwargs: Any) -> "Result[T]":
        return cls(value=value, **kwargs)

    @classmethod
    def failure(cls, error: WalletError, **kwargs: Any) -> "Result[T]":
        return cls(error=error, **kwargs)


# None 表示尚未构建
_TRANSITIONS: Dict[Optional[TxState], frozenset] = {
    None: frozenset({TxState.BUILT, TxState.FAILED}),
    TxState.BUILT: frozenset({TxState.SIGNED, TxState.FAILED}),
    TxState.SIGNED: frozenset({TxState.BROADCASTING, TxState.FAILED}),
    TxState.BROADCASTING: frozenset({TxState.CONFIRMED, TxState.FAILED}),
    TxState.CONFIRMED: frozenset(),
    TxState.FAILED: frozenset(),
}


@dataclass
class SendOperation:
    """单次发送：Built -> Signed -> Broadcasting -> Confirmed | Failed。"""

    chain: Chain
    network: Network
    recipient: str
    amount: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    sender: Optional[str] = None
    state: Optional[TxState] = None
    unsigned: Optional[UnsignedTransaction] = None
    signed: Optional[SignedTransaction] = field(default=None, repr=False)
    tx_id: Optional[str] = None
    error: Optional[WalletError] = None
    history: List[TxState] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in (TxState.CONFIRMED, TxState.FAILED)

    def advance(self, new_state: TxState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            current = self.state.value if self.state else "pending"
            raise InvalidStateError(f"非法状态转换: {current} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: WalletError) -> None:
        self.error = error
        if not self.is_terminal:
            self.advance(TxState.FAILED)


def _fee_reserve(chain: Chain, fee: Optional[int]) -> int:
    """
    构建前充足性检查需要预留的手续费，不访问网络。

    ETH 按转账 gas 上限乘以调用方 gas 价格（缺省时用默认价格）预留，构建后再按实际报价复查。
    """
    if chain == Chain.BTC:
        return clamp_fee(fee)
    if chain == Chain.ETH:
        return apply_gas_margin(ETH_TRANSFER_GAS) * (fee or DEFAULT_GAS_PRICE_WEI)
    if chain == Chain.SOL:
        return SOL_DEFAULT_FEE_LAMPORTS
    raise ValueError(f"不支持的链: {chain}")


def validate_address(chain: Chain, address: str, network: Network) -> None:
    """按链校验地址格式，失败时抛出 InvalidAddressError。"""
    if chain == Chain.BTC:
        validate_btc_address(address, network)
    elif chain == Chain.ETH:
        validate_eth_address(address)
    elif chain == Chain.SOL:
        validate_sol_address(address)
    else:
        raise ValueError(f"不支持的链: {chain}")


class WalletEngine:
    def __init__(
        self,
        resolver: AddressResolver,
        oracles: Mapping[Chain, BalanceOracle],
        builders: Mapping[Chain, Any],
        signers: Mapping[Chain, Any],
        broadcasters: Mapping[Chain, Broadcaster],
        deriver: Callable[[str, Chain, Network], ChainKeyMaterial] = derive_key_material,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        for name, table in (("oracles", oracles), ("builders", builders), ("signers", signers),
                            ("broadcasters", broadcasters)):
            missing = set(Chain) - set(table)
            if missing:
                raise ValueError(f"{name} 缺少链: {sorted(c.value for c in missing)}")
        self.resolver = resolver
        self.oracles = dict(oracles)
        self.builders = dict(builders)
        self.signers = dict(signers)
        self.broadcasters = dict(broadcasters)
        self._deriver = deriver
        # 由 create() 创建时由引擎负责关闭
        self._owned_client = client

    @classmethod
    def create(
        cls,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        **kwargs: Any,
    ) -> "WalletEngine":
        """用一个共享的 HTTP 客户端与限流器装配所有链的服务。"""
        owned = None
        if client is None:
            client = owned = httpx.AsyncClient(headers={"User-Agent": USER_AGENT})
        limiter = limiter or RateLimiter()
        return cls(
            resolver=AddressResolver(),
            oracles=create_balance_oracles(client, limiter, **kwargs),
            builders={
                Chain.BTC: BtcTransactionBuilder(client, limiter),
                Chain.ETH: EthTransactionBuilder(client, limiter),
                Chain.SOL: SolTransactionBuilder(client, limiter),
            },
            signers={
                Chain.BTC: BtcTransactionSigner(),
                Chain.ETH: EthTransactionSigner(),
                Chain.SOL: SolTransactionSigner(),
            },
            broadcasters=create_broadcasters(client, limiter),
            client=owned,
        )

    async def aclose(self) -> None:
        if self._owned_client is not None:
            await self._owned_client.aclose()

    async def __aenter__(self) -> "WalletEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def derive_address(self, phrase: str, chain: Chain, network: Network = Network.TESTNET) -> Result[AddressInfo]:
        try:
            return Result.success(self.resolver.resolve(Chain(chain), phrase, Network(network)))
        except WalletError as exc:
            return Result.failure(exc)

    async def get_balance(
        self, address: str, chain: Chain, network: Network = Network.TESTNET
    ) -> Result[BalanceSnapshot]:
        chain = Chain(chain)
        network = Network(network)
        try:
            # 地址无效时不访问服务商，也不消耗限流额度
            validate_address(chain, address, network)
            snapshot = await self.oracles[chain].get_balance(address, network)
        except WalletError as exc:
            return Result.failure(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("余额查询出现未预期的错误")
            return Result.failure(WalletError(str(exc)))
        return Result.success(snapshot)

    async def send(
        self,
        phrase: str,
        chain: Chain,
        network: Network,
        recipient: str,
        amount: int,
        fee: Optional[int] = None,
    ) -> Result[str]:
        """
        发送原生资产，返回交易标识。

        校验顺序：助记词、收款地址、金额/粉尘、余额充足性（均在构建之前），
        随后依次构建、签名、广播。广播一旦开始，调用方取消也不会中断提交。

        :param fee: BTC 为手续费（聪），ETH 为 gas 价格（wei），SOL 忽略
        """
        chain = Chain(chain)
        network = Network(network)
        op = SendOperation(chain=chain, network=network, recipient=recipient, amount=amount)
        stage = SendStage.BUILD
        try:
            material = self._deriver(phrase, chain, network)
            op.sender = material.address
            builder = self.builders[chain]
            builder.validate(recipient, amount, network)
            await self._check_sufficiency(chain, material.address, network, amount + _fee_reserve(chain, fee))

            op.unsigned = await self._build(chain, builder, material.address, recipient, amount, network, fee)
            if isinstance(op.unsigned, EthUnsigned):
                await self._check_sufficiency(
                    chain, material.address, network, amount + op.unsigned.max_fee_wei
                )
            op.advance(TxState.BUILT)

            stage = SendStage.SIGN
            op.signed = self.signers[chain].sign(op.unsigned, material)
            del material
            op.tx_id = op.signed.tx_id
            op.advance(TxState.SIGNED)

            stage = SendStage.BROADCAST
            op.advance(TxState.BROADCASTING)
            op.tx_id = await asyncio.shield(self.broadcasters[chain].broadcast(op.signed, network))
        except WalletError as exc:
            logger.warning("%s 发送在 %s 阶段失败：%s", chain.value, stage.value, exc)
            op.fail(exc)
            return Result.failure(exc, stage=stage, operation=op)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s 发送在 %s 阶段出现未预期的错误", chain.value, stage.value)
            error = WalletError(str(exc))
            op.fail(error)
            return Result.failure(error, stage=stage, operation=op)

        self.oracles[chain].invalidate(op.sender, network)
        return Result.success(op.tx_id, operation=op)

    async def confirm(self, op: SendOperation) -> Result[TxStatus]:
        """查询已广播交易的状态，确认或失败时推进状态机。"""
        if op.state != TxState.BROADCASTING or not op.tx_id:
            return Result.failure(InvalidStateError("只有广播中的交易可以查询确认状态"), operation=op)
        result = await self.get_status(op.chain, op.tx_id, op.network)
        if result.ok and result.value is not None:
            if result.value.confirmed:
                op.advance(TxState.CONFIRMED)
            elif result.value.failed:
                op.fail(WalletError(f"交易 {op.tx_id} 执行失败"))
        result.operation = op
        return result

    async def get_status(self, chain: Chain, tx_id: str, network: Network = Network.TESTNET) -> Result[TxStatus]:
        try:
            status = await self.builders[Chain(chain)].get_status(tx_id, Network(network))
        except WalletError as exc:
            return Result.failure(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("交易状态查询出现未预期的错误")
            return Result.failure(WalletError(str(exc)))
        return Result.success(status)

    async def estimate_fee(self, chain: Chain, network: Network = Network.TESTNET) -> Result[int]:
        try:
            fee = await self.builders[Chain(chain)].estimate_fee(Network(network))
        except WalletError as exc:
            return Result.failure(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("手续费估算出现未预期的错误")
            return Result.failure(WalletError(str(exc)))
        return Result.success(fee)

    async def _check_sufficiency(self, chain: Chain, address: str, network: Network, required: int) -> None:
        snapshot = await self.oracles[chain].get_balance(address, network)
        if snapshot.degraded:
            # 降级快照不可靠，交给构建阶段的 UTXO / nonce 查询决定
            logger.warning("%s 余额为降级数据，跳过本地充足性检查", chain.value)
            return
        if required > snapshot.amount:
            raise InsufficientFundsError(required=required, available=snapshot.amount)

    @staticmethod
    async def _build(
        chain: Chain,
        builder: Any,
        sender: str,
        recipient: str,
        amount: int,
        network: Network,
        fee: Optional[int],
    ) -> UnsignedTransaction:
        if chain == Chain.BTC:
            return await builder.build(sender, recipient, amount, network, fee_sats=fee)
        if chain == Chain.ETH:
            return await builder.build(sender, recipient, amount, network, gas_price=fee)
        if chain == Chain.SOL:
            return await builder.build(sender, recipient, amount, network)
        raise ValueError(f"不支持的链: {chain}")
