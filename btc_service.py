"""BTC 交易构建与签名：UTXO 选择、粉尘找零处理、P2WPKH (BIP143) 签名。"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import httpx
from eth_keys import keys as eth_keys

from bitcoin_script import (
    SCRIPT_P2WPKH,
    classify_script,
    decode_address,
    p2wpkh_address,
    p2wpkh_script,
    sha256d,
    varint,
)
from config import (
    BALANCE_TIMEOUT,
    BTC_FEE_PROVIDERS,
    BTC_STATUS_PROVIDERS,
    BTC_UTXO_PROVIDERS,
    DEFAULT_FEE_SATS,
    DUST_LIMIT_SATS,
    MAX_FEE_SATS,
    MIN_FEE_SATS,
    RATE_LIMIT_BACKOFF,
    Chain,
    Network,
)
from errors import (
    DustAmountError,
    InsufficientFundsError,
    InvalidAddressError,
    ProviderUnavailableError,
    SigningError,
)
from models import BtcUnsigned, ChainKeyMaterial, SignedTransaction, TxOutput, TxStatus, Utxo
from providers import ProviderEndpoint, RateLimiter, endpoints_from, first_success, request_json
from wallet_service import SECP256K1_N

logger = logging.getLogger(__name__)

TX_VERSION = 2
# 允许 RBF 的序列号
INPUT_SEQUENCE = 0xFFFFFFFD
SIGHASH_ALL = 1

# 估算 1 输入 2 输出 P2WPKH 交易的虚拟字节数
_VBYTES_BASE = 11
_VBYTES_PER_INPUT = 68
_VBYTES_PER_OUTPUT = 31


def clamp_fee(fee_sats: Optional[int]) -> int:
    """调用方手续费或默认值，限制在 [MIN_FEE_SATS, MAX_FEE_SATS]。"""
    fee = DEFAULT_FEE_SATS if fee_sats is None else int(fee_sats)
    return min(max(fee, MIN_FEE_SATS), MAX_FEE_SATS)


def validate_btc_address(address: str, network: Network) -> bytes:
    """校验地址并返回其锁定脚本。"""
    try:
        _, script = decode_address(address, network)
    except ValueError as exc:
        raise InvalidAddressError(str(exc)) from exc
    return script


def parse_utxos(data: Any) -> List[Utxo]:
    """兼容 Esplora（列表）与 BlockCypher（txrefs）两种 UTXO 格式。"""
    if isinstance(data, list):
        return [
            Utxo(
                tx_id=str(item["txid"]),
                output_index=int(item["vout"]),
                value_sats=int(item.get("value") or 0),
                script_pubkey=item.get("scriptpubkey"),
            )
            for item in data
        ]
    if isinstance(data, dict):
        refs = list(data.get("txrefs") or []) + list(data.get("unconfirmed_txrefs") or [])
        utxos = []
        for item in refs:
            if item.get("spent"):
                continue
            utxos.append(
                Utxo(
                    tx_id=str(item["tx_hash"]),
                    output_index=int(item["tx_output_n"]),
                    value_sats=int(item.get("value") or 0),
                    script_pubkey=item.get("script"),
                )
            )
        return utxos
    raise ValueError("UTXO 响应格式无效")


def select_utxos(
    utxos: Sequence[Utxo],
    sender_address: str,
    sender_script: bytes,
    recipient_address: str,
    recipient_script: bytes,
    amount_sats: int,
    fee_sats: int,
) -> BtcUnsigned:
    """
    按列表顺序累加 UTXO 直到覆盖 amount + fee。

    找零低于粉尘阈值时不创建找零输出，差额并入手续费，
    保证 输出合计 + 手续费 == 输入合计。
    """
    target = amount_sats + fee_sats
    selected: List[Utxo] = []
    total = 0
    for utxo in utxos:
        selected.append(utxo)
        total += utxo.value_sats
        if total >= target:
            break
    if total < target:
        available = sum(utxo.value_sats for utxo in utxos)
        raise InsufficientFundsError(required=target, available=available)

    change = total - target
    change_out: Optional[TxOutput] = None
    fee = fee_sats
    if change >= DUST_LIMIT_SATS:
        change_out = TxOutput(address=sender_address, script=sender_script, value_sats=change)
    else:
        fee += change
    return BtcUnsigned(
        sender_address=sender_address,
        inputs=tuple(selected),
        recipient_out=TxOutput(address=recipient_address, script=recipient_script, value_sats=amount_sats),
        change_out=change_out,
        fee_sats=fee,
    )


class BtcTransactionBuilder:
    """拉取 UTXO 并组装未签名交易，不做签名。"""

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
        self._utxo_endpoints = {net: endpoints_from(items) for net, items in BTC_UTXO_PROVIDERS.items()}
        self._fee_endpoints = {net: endpoints_from(items) for net, items in BTC_FEE_PROVIDERS.items()}
        self._status_endpoints = {net: endpoints_from(items) for net, items in BTC_STATUS_PROVIDERS.items()}

    def validate(self, recipient: str, amount_sats: int, network: Network) -> None:
        """本地校验，失败时不会发起任何网络请求。"""
        validate_btc_address(recipient, network)
        if amount_sats <= 0:
            raise DustAmountError("金额必须大于 0")
        if amount_sats < DUST_LIMIT_SATS:
            raise DustAmountError(f"金额低于粉尘阈值 {DUST_LIMIT_SATS} 聪")

    async def fetch_utxos(self, address: str, network: Network) -> List[Utxo]:
        async def call(endpoint: ProviderEndpoint) -> List[Utxo]:
            data = await request_json(self._client, "GET", endpoint.format(address=address), self._timeout)
            return parse_utxos(data)

        utxos, endpoint = await first_success(
            "btc_utxo", self._utxo_endpoints.get(Network(network), []), call, self._limiter, backoff=self._backoff
        )
        logger.info("从 %s 获取到 %d 个 UTXO", endpoint.name, len(utxos))
        return utxos

    async def build(
        self,
        sender_address: str,
        recipient: str,
        amount_sats: int,
        network: Network,
        fee_sats: Optional[int] = None,
    ) -> BtcUnsigned:
        network = Network(network)
        self.validate(recipient, amount_sats, network)
        sender_script = validate_btc_address(sender_address, network)
        recipient_script = validate_btc_address(recipient, network)
        fee = clamp_fee(fee_sats)
        utxos = await self.fetch_utxos(sender_address, network)
        unsigned = select_utxos(
            utxos, sender_address, sender_script, recipient, recipient_script, amount_sats, fee
        )
        logger.info(
            "BTC 交易已构建：%d 个输入，手续费 %d 聪，找零 %s",
            len(unsigned.inputs),
            unsigned.fee_sats,
            unsigned.change_out.value_sats if unsigned.change_out else "无",
        )
        return unsigned

    async def estimate_fee(self, network: Network, num_inputs: int = 1, num_outputs: int = 2) -> int:
        """按服务商的每 kB 费率估算手续费，失败时返回默认值。结果同样受上下限约束。"""
        vbytes = _VBYTES_BASE + _VBYTES_PER_INPUT * num_inputs + _VBYTES_PER_OUTPUT * num_outputs

        async def call(endpoint: ProviderEndpoint) -> int:
            data = await request_json(self._client, "GET", endpoint.url, self._timeout)
            per_kb = int((data or {}).get("medium_fee_per_kb") or 0)
            if per_kb <= 0:
                raise ValueError("缺少 medium_fee_per_kb")
            return per_kb * vbytes // 1000

        try:
            fee, _ = await first_success(
                "btc_fee", self._fee_endpoints.get(Network(network), []), call, self._limiter, backoff=self._backoff
            )
        except ProviderUnavailableError as exc:
            logger.warning("手续费估算失败，使用默认值：%s", exc)
            return DEFAULT_FEE_SATS
        return clamp_fee(fee)

    async def get_status(self, tx_id: str, network: Network) -> TxStatus:
        async def call(endpoint: ProviderEndpoint) -> TxStatus:
            data = await request_json(self._client, "GET", endpoint.format(txid=tx_id), self._timeout)
            if not isinstance(data, dict):
                raise ValueError("状态响应格式无效")
            confirmed = bool(data.get("confirmed"))
            height = data.get("block_height")
            return TxStatus(
                tx_id=tx_id,
                confirmed=confirmed,
                confirmations=1 if confirmed else 0,
                block_height=int(height) if height is not None else None,
            )

        status, _ = await first_success(
            "btc_status", self._status_endpoints.get(Network(network), []), call, self._limiter, backoff=self._backoff
        )
        return status


def _der_int(value: int) -> bytes:
    body = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
    if body[0] & 0x80:
        body = b"\x00" + body
    return b"\x02" + bytes([len(body)]) + body


def encode_der_signature(r: int, s: int) -> bytes:
    body = _der_int(r) + _der_int(s)
    return b"\x30" + bytes([len(body)]) + body


@dataclass
class PsbtInput:
    """部分签名交易中的一个输入，标记为见证 v0 并携带 witness UTXO。"""

    utxo: Utxo
    witness_script: bytes
    partial_sig: Optional[bytes] = None
    final_witness: List[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> bytes:
        return bytes.fromhex(self.utxo.tx_id)[::-1] + self.utxo.output_index.to_bytes(4, "little")


@dataclass
class PartiallySignedTransaction:
    inputs: List[PsbtInput]
    outputs: List[TxOutput]
    version: int = TX_VERSION
    locktime: int = 0

    def sighash(self, index: int) -> bytes:
        """BIP143 见证 v0 签名摘要（SIGHASH_ALL）。"""
        hash_prevouts = sha256d(b"".join(inp.outpoint for inp in self.inputs))
        hash_sequence = sha256d(b"".join(INPUT_SEQUENCE.to_bytes(4, "little") for _ in self.inputs))
        hash_outputs = sha256d(b"".join(self._serialize_output(out) for out in self.outputs))

        inp = self.inputs[index]
        # P2WPKH 的 scriptCode 为对应的 P2PKH 脚本
        script_code = b"\x76\xa9\x14" + inp.witness_script[2:] + b"\x88\xac"
        preimage = b"".join(
            [
                self.version.to_bytes(4, "little"),
                hash_prevouts,
                hash_sequence,
                inp.outpoint,
                varint(len(script_code)) + script_code,
                inp.utxo.value_sats.to_bytes(8, "little"),
                INPUT_SEQUENCE.to_bytes(4, "little"),
                hash_outputs,
                self.locktime.to_bytes(4, "little"),
                SIGHASH_ALL.to_bytes(4, "little"),
            ]
        )
        return sha256d(preimage)

    def sign_all_inputs(self, private_key: bytes) -> None:
        signer = eth_keys.PrivateKey(private_key)
        public_key = signer.public_key
        for index, inp in enumerate(self.inputs):
            digest = self.sighash(index)
            signature = signer.sign_msg_hash(digest)
            r, s, v = signature.r, signature.s, signature.v
            # BIP62 低 S 规范
            if s > SECP256K1_N // 2:
                s = SECP256K1_N - s
                v ^= 1
            if not public_key.verify_msg_hash(digest, eth_keys.Signature(vrs=(v, r, s))):
                raise SigningError(f"输入 {index} 签名自检失败")
            inp.partial_sig = encode_der_signature(r, s) + bytes([SIGHASH_ALL])

    def finalize_all_inputs(self, public_key: bytes) -> None:
        for index, inp in enumerate(self.inputs):
            if inp.partial_sig is None:
                raise SigningError(f"输入 {index} 尚未签名")
            inp.final_witness = [inp.partial_sig, public_key]

    def extract(self) -> bytes:
        """序列化为带见证数据的原始交易。"""
        if any(not inp.final_witness for inp in self.inputs):
            raise SigningError("存在未完成的输入，无法导出交易")
        parts = [self.version.to_bytes(4, "little"), b"\x00\x01", self._serialize_body()]
        for inp in self.inputs:
            parts.append(varint(len(inp.final_witness)))
            for item in inp.final_witness:
                parts.append(varint(len(item)) + item)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    def txid(self) -> str:
        legacy = self.version.to_bytes(4, "little") + self._serialize_body() + self.locktime.to_bytes(4, "little")
        return sha256d(legacy)[::-1].hex()

    def _serialize_body(self) -> bytes:
        parts = [varint(len(self.inputs))]
        for inp in self.inputs:
            parts.append(inp.outpoint + b"\x00" + INPUT_SEQUENCE.to_bytes(4, "little"))
        parts.append(varint(len(self.outputs)))
        parts.extend(self._serialize_output(out) for out in self.outputs)
        return b"".join(parts)

    @staticmethod
    def _serialize_output(out: TxOutput) -> bytes:
        return out.value_sats.to_bytes(8, "little") + varint(len(out.script)) + out.script


class BtcTransactionSigner:
    """用派生密钥签名 BTC 交易；任何密钥/地址/脚本不一致都直接终止。"""

    def sign(self, unsigned: BtcUnsigned, material: ChainKeyMaterial) -> SignedTransaction:
        if material.chain != Chain.BTC:
            raise SigningError(f"密钥属于 {material.chain.value}，不能签名 BTC 交易")
        expected_script = p2wpkh_script(material.public_key)
        own_address = p2wpkh_address(material.public_key, material.network)
        if own_address != unsigned.sender_address:
            raise SigningError("签名密钥与发送地址不匹配")

        inputs = [PsbtInput(utxo=utxo, witness_script=self._resolve_script(utxo, unsigned, material.network))
                  for utxo in unsigned.inputs]
        for inp in inputs:
            if inp.witness_script != expected_script:
                raise SigningError(f"UTXO {inp.utxo.tx_id}:{inp.utxo.output_index} 的脚本与签名公钥不匹配")

        outputs = list(unsigned.outputs)
        if sum(out.value_sats for out in outputs) + unsigned.fee_sats != unsigned.input_total:
            raise SigningError("输入合计与输出合计加手续费不一致")

        psbt = PartiallySignedTransaction(inputs=inputs, outputs=outputs)
        psbt.sign_all_inputs(material.private_key)
        psbt.finalize_all_inputs(material.public_key)
        raw = psbt.extract()
        tx_id = psbt.txid()
        logger.info("BTC 交易已签名 %s", tx_id)
        return SignedTransaction(chain=Chain.BTC, network=material.network, raw=raw, tx_id=tx_id)

    @staticmethod
    def _resolve_script(utxo: Utxo, unsigned: BtcUnsigned, network: Network) -> bytes:
        """
        确定 UTXO 的锁定脚本。服务商给出脚本时以其为准，否则取发送地址的脚本；
        无法确定为 P2WPKH 时直接报错，不回退到 legacy 签名。
        """
        if utxo.script_type and utxo.script_type != SCRIPT_P2WPKH:
            raise SigningError(f"不支持的 UTXO 类型: {utxo.script_type}")
        if utxo.script_pubkey:
            try:
                script = bytes.fromhex(utxo.script_pubkey)
            except ValueError as exc:
                raise SigningError("UTXO 脚本不是合法的 hex") from exc
        else:
            try:
                _, script = decode_address(unsigned.sender_address, network)
            except ValueError as exc:
                raise SigningError(f"无法解析发送地址脚本: {exc}") from exc
        if classify_script(script) != SCRIPT_P2WPKH:
            raise SigningError("UTXO 不是 P2WPKH 输出，无法确定签名方式")
        return script

