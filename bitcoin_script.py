"""比特币地址与锁定脚本工具：hash160、P2WPKH、bech32 与 Base58Check 解析。"""

import hashlib
from typing import Tuple

from base58 import b58decode_check
from bech32 import decode as bech32_decode
from bech32 import encode as bech32_encode
from Crypto.Hash import RIPEMD160

from config import Network

# Base58Check 版本字节：(P2PKH, P2SH)
_BASE58_VERSIONS = {
    Network.MAINNET: (0x00, 0x05),
    Network.TESTNET: (0x6F, 0xC4),
}
_BECH32_HRP = {
    Network.MAINNET: "bc",
    Network.TESTNET: "tb",
}

SCRIPT_P2WPKH = "p2wpkh"
SCRIPT_P2WSH = "p2wsh"
SCRIPT_P2TR = "p2tr"
SCRIPT_P2PKH = "p2pkh"
SCRIPT_P2SH = "p2sh"


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """双 SHA256（比特币标准）。"""
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """SHA256 后再 RIPEMD160。"""
    return RIPEMD160.new(sha256(data)).digest()


def p2wpkh_script(pubkey_compressed: bytes) -> bytes:
    """见证 v0 公钥哈希脚本：OP_0 <20 字节>。"""
    if len(pubkey_compressed) != 33:
        raise ValueError("P2WPKH 仅支持 33 字节压缩公钥")
    return b"\x00\x14" + hash160(pubkey_compressed)


def p2wpkh_address(pubkey_compressed: bytes, network: Network) -> str:
    program = hash160(pubkey_compressed)
    address = bech32_encode(_BECH32_HRP[Network(network)], 0, program)
    if address is None:
        raise ValueError("bech32 编码失败")
    return address


def varint(n: int) -> bytes:
    """比特币变长整数编码。"""
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def decode_address(address: str, network: Network) -> Tuple[str, bytes]:
    """
    解析地址，返回 (脚本类型, 锁定脚本)。

    支持 bech32 见证地址（v0 P2WPKH/P2WSH、v1 P2TR）以及 Base58Check 的 P2PKH/P2SH。
    网络不匹配或格式错误时抛出 ValueError。
    """
    network = Network(network)
    address = address.strip()
    hrp = _BECH32_HRP[network]
    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32_decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"bech32 地址校验失败: {address}")
        program = bytes(witprog)
        if witver == 0 and len(program) == 20:
            return SCRIPT_P2WPKH, b"\x00\x14" + program
        if witver == 0 and len(program) == 32:
            return SCRIPT_P2WSH, b"\x00\x20" + program
        if witver == 1 and len(program) == 32:
            return SCRIPT_P2TR, b"\x51\x20" + program
        raise ValueError(f"不支持的见证版本或长度: v{witver}/{len(program)}")

    try:
        payload = b58decode_check(address)
    except ValueError as exc:
        raise ValueError(f"地址格式无效: {address}") from exc
    if len(payload) != 21:
        raise ValueError(f"地址长度无效: {address}")
    version, body = payload[0], payload[1:]
    p2pkh_version, p2sh_version = _BASE58_VERSIONS[network]
    if version == p2pkh_version:
        return SCRIPT_P2PKH, b"\x76\xa9\x14" + body + b"\x88\xac"
    if version == p2sh_version:
        return SCRIPT_P2SH, b"\xa9\x14" + body + b"\x87"
    raise ValueError(f"地址与网络 {network.value} 不匹配: {address}")


def classify_script(script: bytes) -> str:
    """识别锁定脚本类型，无法识别时返回空串。"""
    if len(script) == 22 and script[:2] == b"\x00\x14":
        return SCRIPT_P2WPKH
    if len(script) == 34 and script[:2] == b"\x00\x20":
        return SCRIPT_P2WSH
    if len(script) == 34 and script[:2] == b"\x51\x20":
        return SCRIPT_P2TR
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[-2:] == b"\x88\xac":
        return SCRIPT_P2PKH
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[-1:] == b"\x87":
        return SCRIPT_P2SH
    return ""
