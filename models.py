"""数据模型定义，包含钱包记录、派生密钥、UTXO、交易与余额快照。"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from config import Chain, Network


@dataclass
class WalletRecord:
    """单个钱包记录，三条链地址共用一套助记词。"""

    id: str
    display_name: str
    eth_address: str
    btc_address: str
    sol_address: str
    created_at: str
    network: str = Network.TESTNET.value
    secret_phrase: Optional[str] = field(default=None, repr=False)

    def address_for(self, chain: Chain) -> str:
        """按链取地址。"""
        mapping = {
            Chain.BTC: self.btc_address,
            Chain.ETH: self.eth_address,
            Chain.SOL: self.sol_address,
        }
        return mapping[Chain(chain)]

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "id": self.id,
            "display_name": self.display_name,
            "eth_address": self.eth_address,
            "btc_address": self.btc_address,
            "sol_address": self.sol_address,
            "created_at": self.created_at,
            "network": self.network,
        }
        if self.secret_phrase is not None:
            data["secret_phrase"] = self.secret_phrase
        return data

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "WalletRecord":
        return WalletRecord(
            id=str(data["id"]),
            display_name=str(data.get("display_name", "")),
            eth_address=str(data.get("eth_address", "")),
            btc_address=str(data.get("btc_address", "")),
            sol_address=str(data.get("sol_address", "")),
            created_at=str(data.get("created_at", "")),
            network=str(data.get("network", Network.TESTNET.value)),
            secret_phrase=data.get("secret_phrase"),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class ChainKeyMaterial:
    """某条链的派生结果，私钥不参与 repr，避免误入日志。"""

    chain: Chain
    network: Network
    derivation_path: str
    private_key: bytes = field(repr=False)
    public_key: bytes
    address: str


@dataclass(frozen=True)
class AddressInfo:
    """收款地址信息，只包含可公开的字段。"""

    address: str
    network: str
    is_native: bool = True
    contract_address: Optional[str] = None


@dataclass(frozen=True)
class Utxo:
    tx_id: str
    output_index: int
    value_sats: int
    # 服务商提供时记录锁定脚本（hex）与类型
    script_pubkey: Optional[str] = None
    script_type: Optional[str] = None


@dataclass(frozen=True)
class TxOutput:
    address: str
    script: bytes
    value_sats: int


@dataclass(frozen=True)
class BtcUnsigned:
    """未签名 BTC 交易。fee_sats 为实际手续费（含被并入的粉尘找零）。"""

    sender_address: str
    inputs: Tuple[Utxo, ...]
    recipient_out: TxOutput
    change_out: Optional[TxOutput]
    fee_sats: int

    @property
    def input_total(self) -> int:
        return sum(utxo.value_sats for utxo in self.inputs)

    @property
    def outputs(self) -> Tuple[TxOutput, ...]:
        if self.change_out is None:
            return (self.recipient_out,)
        return (self.recipient_out, self.change_out)


@dataclass(frozen=True)
class EthUnsigned:
    sender_address: str
    nonce: int
    gas_limit: int
    gas_price: int
    to: str
    value_wei: int
    chain_id: int

    @property
    def max_fee_wei(self) -> int:
        return self.gas_limit * self.gas_price

    def to_tx_dict(self) -> Dict[str, object]:
        """转换为 eth-account 可签名的 legacy (EIP-155) 交易字典。"""
        return {
            "nonce": self.nonce,
            "gasPrice": self.gas_price,
            "gas": self.gas_limit,
            "to": self.to,
            "value": self.value_wei,
            "data": b"",
            "chainId": self.chain_id,
        }


@dataclass(frozen=True)
class SolUnsigned:
    """未签名 SOL 转账，instructions 为 solders Instruction 列表。"""

    instructions: Tuple[object, ...]
    recent_blockhash: str
    fee_payer: str
    recipient: str
    lamports: int


UnsignedTransaction = Union[BtcUnsigned, EthUnsigned, SolUnsigned]


@dataclass(frozen=True)
class SignedTransaction:
    """已签名、可直接广播的交易，tx_id 为本地计算的标识。"""

    chain: Chain
    network: Network
    raw: bytes = field(repr=False)
    tx_id: str

    @property
    def hex(self) -> str:
        return self.raw.hex()


@dataclass(frozen=True)
class BalanceSnapshot:
    """余额快照。degraded=True 表示服务商全部失败后返回的缓存值或零值。"""

    chain: Chain
    address: str
    network: Network
    amount: int
    unit: str
    decimals: int
    as_of: float
    source: str
    degraded: bool = False

    @property
    def display_amount(self) -> Decimal:
        """换算为展示单位（BTC / ETH / SOL）。"""
        return Decimal(self.amount) / (Decimal(10) ** self.decimals)

    def as_degraded(self) -> "BalanceSnapshot":
        return BalanceSnapshot(
            chain=self.chain,
            address=self.address,
            network=self.network,
            amount=self.amount,
            unit=self.unit,
            decimals=self.decimals,
            as_of=self.as_of,
            source=self.source,
            degraded=True,
        )


@dataclass(frozen=True)
class TxStatus:
    tx_id: str
    confirmed: bool
    confirmations: int = 0
    block_height: Optional[int] = None
    # 已上链但执行失败（ETH receipt status=0、SOL err 非空）
    failed: bool = False


class TxState(str, Enum):
    """单次发送的状态机节点。"""

    BUILT = "built"
    SIGNED = "signed"
    BROADCASTING = "broadcasting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SendStage(str, Enum):
    """发送失败时所处阶段，便于调用方决定是否重试。"""

    BUILD = "build"
    SIGN = "sign"
    BROADCAST = "broadcast"
