"""助记词与密钥派生服务，支持 BTC（BIP84）、ETH（BIP44）与 Solana 三条链。"""

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from base58 import b58encode
from eth_account import Account
from eth_keys import constants as eth_constants
from eth_keys import keys as eth_keys
from mnemonic import Mnemonic
from nacl.signing import SigningKey

from bitcoin_script import p2wpkh_address
from config import Chain, Network, get_network_config
from errors import InvalidMnemonicError
from models import ChainKeyMaterial, WalletRecord

logger = logging.getLogger(__name__)

# 使用标准 BIP39 英文词表的生成器
MNEMONIC_GEN = Mnemonic("english")

# 曲线阶常量
SECP256K1_N = eth_constants.SECPK1_N


def _normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.strip().lower().split())


def generate_mnemonic(num_words: int = 12) -> str:
    """使用标准 BIP39 词表生成助记词。"""
    mapping = {12: 128, 15: 160, 18: 192, 21: 224, 24: 256}
    if num_words not in mapping:
        raise ValueError("助记词长度仅支持 12/15/18/21/24")
    strength = mapping[num_words]
    return MNEMONIC_GEN.generate(strength=strength)


def validate_mnemonic(phrase: str) -> bool:
    """校验 BIP39 校验和，词表外的单词同样视为无效。"""
    try:
        return MNEMONIC_GEN.check(_normalize_phrase(phrase))
    except (ValueError, LookupError):
        return False


def _mnemonic_to_seed(phrase: str, passphrase: str = "") -> bytes:
    """通过 BIP39 标准将助记词转换为种子，校验失败时不做任何派生。"""
    if not validate_mnemonic(phrase):
        raise InvalidMnemonicError("助记词校验未通过")
    return MNEMONIC_GEN.to_seed(_normalize_phrase(phrase), passphrase)


def _derive_child(private_key: bytes, chain_code: bytes, index: int, hardened: bool) -> Tuple[bytes, bytes]:
    """执行单步 BIP32 子密钥派生（secp256k1）。"""
    if hardened:
        data = b"\x00" + private_key + index.to_bytes(4, "big")
    else:
        pub_compressed = eth_keys.PrivateKey(private_key).public_key.to_compressed_bytes()
        data = pub_compressed + index.to_bytes(4, "big")
    I = hmac.new(chain_code, data, hashlib.sha512).digest()
    Il, Ir = I[:32], I[32:]
    child_int = (int.from_bytes(Il, "big") + int.from_bytes(private_key, "big")) % SECP256K1_N
    child_key = child_int.to_bytes(32, "big")
    return child_key, Ir


def _derive_private_key_from_path(seed: bytes, path: str) -> bytes:
    """从种子和路径计算最终 secp256k1 私钥。"""
    I = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
    priv, chain = I[:32], I[32:]
    segments = path.split("/")[1:]  # 跳过 m
    for seg in segments:
        hardened = seg.endswith("'")
        index = int(seg.rstrip("'"))
        if hardened:
            index += 0x80000000
        priv, chain = _derive_child(priv, chain, index, hardened)
    return priv


def _derive_btc(seed: bytes, network: Network) -> ChainKeyMaterial:
    """BIP84 路径派生 P2WPKH 地址。"""
    path = get_network_config(Chain.BTC, network).derivation_path
    priv_key_bytes = _derive_private_key_from_path(seed, path)
    pub_compressed = eth_keys.PrivateKey(priv_key_bytes).public_key.to_compressed_bytes()
    return ChainKeyMaterial(
        chain=Chain.BTC,
        network=network,
        derivation_path=path,
        private_key=priv_key_bytes,
        public_key=pub_compressed,
        address=p2wpkh_address(pub_compressed, network),
    )


def _derive_eth(seed: bytes, network: Network) -> ChainKeyMaterial:
    """从种子和标准以太坊路径生成校验和格式地址。"""
    path = get_network_config(Chain.ETH, network).derivation_path
    priv_key_bytes = _derive_private_key_from_path(seed, path)
    acct = Account.from_key(priv_key_bytes)
    public_key = eth_keys.PrivateKey(priv_key_bytes).public_key.to_bytes()
    return ChainKeyMaterial(
        chain=Chain.ETH,
        network=network,
        derivation_path=path,
        private_key=priv_key_bytes,
        public_key=public_key,
        address=acct.address,
    )


def _derive_sol(seed: bytes, network: Network) -> ChainKeyMaterial:
    """取种子前 32 字节作为 ed25519 私钥种子，地址为 Base58 公钥。"""
    private_seed = seed[:32]
    signing_key = SigningKey(private_seed)
    verify_key = bytes(signing_key.verify_key)
    return ChainKeyMaterial(
        chain=Chain.SOL,
        network=network,
        derivation_path=get_network_config(Chain.SOL, network).derivation_path,
        private_key=private_seed,
        public_key=verify_key,
        address=b58encode(verify_key).decode("utf-8"),
    )


_DERIVERS = {
    Chain.BTC: _derive_btc,
    Chain.ETH: _derive_eth,
    Chain.SOL: _derive_sol,
}
assert set(_DERIVERS) == set(Chain), "每条链都必须有派生实现"


def derive_key_material(phrase: str, chain: Chain, network: Network) -> ChainKeyMaterial:
    """
    纯函数：助记词 -> 指定链的密钥材料。

    相同助记词、链与网络必然得到逐字节相同的结果；不访问网络，也不持久化。

    :param phrase: BIP39 助记词
    :param chain: 目标链
    :param network: 主网或测试网（BTC 路径与地址编码随网络变化）
    """
    chain = Chain(chain)
    network = Network(network)
    seed = _mnemonic_to_seed(phrase)
    return _DERIVERS[chain](seed, network)


def create_wallet_record(
    display_name: str,
    network: Network = Network.TESTNET,
    phrase: Optional[str] = None,
    keep_phrase: bool = True,
) -> WalletRecord:
    """
    创建（phrase 为空）或导入（提供 phrase）钱包记录。

    :param display_name: 展示名称
    :param network: 地址所属网络
    :param phrase: 导入时提供的助记词
    :param keep_phrase: 是否把助记词交给 WalletStore 保存
    """
    phrase = _normalize_phrase(phrase) if phrase else generate_mnemonic(12)
    if not validate_mnemonic(phrase):
        raise InvalidMnemonicError("助记词校验未通过")
    addresses = {chain: derive_key_material(phrase, chain, network).address for chain in Chain}
    record = WalletRecord(
        id=uuid.uuid4().hex[:16],
        display_name=display_name or "Wallet",
        eth_address=addresses[Chain.ETH],
        btc_address=addresses[Chain.BTC],
        sol_address=addresses[Chain.SOL],
        created_at=datetime.now(timezone.utc).isoformat(),
        network=Network(network).value,
        secret_phrase=phrase if keep_phrase else None,
    )
    logger.info("已创建钱包 %s (%s)", record.id, record.display_name)
    return record
