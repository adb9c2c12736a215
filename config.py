"""全局配置，提供链/网络枚举、派生路径、服务商列表与各类阈值。"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class Chain(str, Enum):
    """支持的链，封闭枚举，新增链时需同步补齐各表。"""

    BTC = "BTC"
    ETH = "ETH"
    SOL = "SOL"


class Network(str, Enum):
    """主网 / 测试网。测试网分别对应 BTC testnet3、ETH Sepolia、SOL devnet。"""

    MAINNET = "mainnet"
    TESTNET = "testnet"


@dataclass(frozen=True)
class NetworkConfig:
    """单条链在某个网络下的静态配置。"""

    name: str
    chain: Chain
    network: Network
    derivation_path: str
    unit: str
    decimals: int
    chain_id: Optional[int] = None
    bech32_hrp: Optional[str] = None


# BIP84 原生隔离见证路径，测试网 coin_type 为 1'
DERIVATION_PATH_BTC_MAINNET = "m/84'/0'/0'/0/0"
DERIVATION_PATH_BTC_TESTNET = "m/84'/1'/0'/0/0"
# 标准以太坊路径
DERIVATION_PATH_ETH = "m/44'/60'/0'/0/0"
# Solana 直接取 BIP39 种子前 32 字节，不走 HD 路径
DERIVATION_PATH_SOL = "seed[0:32]"

PRESET_NETWORKS: Dict[Tuple[Chain, Network], NetworkConfig] = {
    (Chain.BTC, Network.MAINNET): NetworkConfig(
        name="Bitcoin",
        chain=Chain.BTC,
        network=Network.MAINNET,
        derivation_path=DERIVATION_PATH_BTC_MAINNET,
        unit="sat",
        decimals=8,
        bech32_hrp="bc",
    ),
    (Chain.BTC, Network.TESTNET): NetworkConfig(
        name="Bitcoin Testnet",
        chain=Chain.BTC,
        network=Network.TESTNET,
        derivation_path=DERIVATION_PATH_BTC_TESTNET,
        unit="sat",
        decimals=8,
        bech32_hrp="tb",
    ),
    (Chain.ETH, Network.MAINNET): NetworkConfig(
        name="Ethereum",
        chain=Chain.ETH,
        network=Network.MAINNET,
        derivation_path=DERIVATION_PATH_ETH,
        unit="wei",
        decimals=18,
        chain_id=1,
    ),
    (Chain.ETH, Network.TESTNET): NetworkConfig(
        name="Sepolia Testnet",
        chain=Chain.ETH,
        network=Network.TESTNET,
        derivation_path=DERIVATION_PATH_ETH,
        unit="wei",
        decimals=18,
        chain_id=11155111,
    ),
    (Chain.SOL, Network.MAINNET): NetworkConfig(
        name="Solana",
        chain=Chain.SOL,
        network=Network.MAINNET,
        derivation_path=DERIVATION_PATH_SOL,
        unit="lamport",
        decimals=9,
    ),
    (Chain.SOL, Network.TESTNET): NetworkConfig(
        name="Solana Devnet",
        chain=Chain.SOL,
        network=Network.TESTNET,
        derivation_path=DERIVATION_PATH_SOL,
        unit="lamport",
        decimals=9,
    ),
}


def get_network_config(chain: Chain, network: Network) -> NetworkConfig:
    """按链与网络取配置，缺失即配置错误。"""
    try:
        return PRESET_NETWORKS[(Chain(chain), Network(network))]
    except KeyError:
        raise ValueError(f"未配置的链/网络组合: {chain}/{network}") from None


# 服务商地址。BTC 的 REST 服务商用 {address} / {txid} 占位，ETH/SOL 为 JSON-RPC 节点
BTC_BALANCE_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [
        ("blockcypher", "https://api.blockcypher.com/v1/btc/test3/addrs/{address}/balance"),
        ("blockstream", "https://blockstream.info/testnet/api/address/{address}"),
        ("mempool", "https://mempool.space/testnet/api/address/{address}"),
    ],
    Network.MAINNET: [
        ("blockcypher", "https://api.blockcypher.com/v1/btc/main/addrs/{address}/balance"),
        ("blockstream", "https://blockstream.info/api/address/{address}"),
        ("mempool", "https://mempool.space/api/address/{address}"),
    ],
}

BTC_UTXO_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [
        ("blockstream", "https://blockstream.info/testnet/api/address/{address}/utxo"),
        ("mempool", "https://mempool.space/testnet/api/address/{address}/utxo"),
        ("blockcypher", "https://api.blockcypher.com/v1/btc/test3/addrs/{address}?unspentOnly=true"),
    ],
    Network.MAINNET: [
        ("blockstream", "https://blockstream.info/api/address/{address}/utxo"),
        ("mempool", "https://mempool.space/api/address/{address}/utxo"),
        ("blockcypher", "https://api.blockcypher.com/v1/btc/main/addrs/{address}?unspentOnly=true"),
    ],
}

BTC_BROADCAST_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [
        ("blockcypher", "https://api.blockcypher.com/v1/btc/test3/txs/push"),
        ("blockstream", "https://blockstream.info/testnet/api/tx"),
        ("mempool", "https://mempool.space/testnet/api/tx"),
    ],
    Network.MAINNET: [
        ("blockcypher", "https://api.blockcypher.com/v1/btc/main/txs/push"),
        ("blockstream", "https://blockstream.info/api/tx"),
        ("mempool", "https://mempool.space/api/tx"),
    ],
}

BTC_STATUS_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [
        ("blockstream", "https://blockstream.info/testnet/api/tx/{txid}/status"),
        ("mempool", "https://mempool.space/testnet/api/tx/{txid}/status"),
    ],
    Network.MAINNET: [
        ("blockstream", "https://blockstream.info/api/tx/{txid}/status"),
        ("mempool", "https://mempool.space/api/tx/{txid}/status"),
    ],
}

BTC_FEE_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [("blockcypher", "https://api.blockcypher.com/v1/btc/test3")],
    Network.MAINNET: [("blockcypher", "https://api.blockcypher.com/v1/btc/main")],
}

ETH_RPC_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [
        ("publicnode", "https://ethereum-sepolia-rpc.publicnode.com"),
        ("drpc", "https://sepolia.drpc.org"),
        ("sepolia-org", "https://rpc.sepolia.org"),
    ],
    Network.MAINNET: [
        ("publicnode", "https://ethereum-rpc.publicnode.com"),
        ("ankr", "https://rpc.ankr.com/eth"),
        ("cloudflare", "https://cloudflare-eth.com"),
    ],
}

SOL_RPC_PROVIDERS: Dict[Network, List[Tuple[str, str]]] = {
    Network.TESTNET: [
        ("solana-devnet", "https://api.devnet.solana.com"),
        ("helius-devnet", "https://devnet.helius-rpc.com"),
        ("alchemy-devnet", "https://solana-devnet.g.alchemy.com/v2/demo"),
    ],
    Network.MAINNET: [
        ("solana-mainnet", "https://api.mainnet-beta.solana.com"),
        ("alchemy-mainnet", "https://solana-mainnet.g.alchemy.com/v2/demo"),
        ("helius-mainnet", "https://rpc.helius.xyz"),
    ],
}

# 缓存与限流
BALANCE_CACHE_TTL = 30.0
ADDRESS_CACHE_TTL = 5 * 60.0
# 每个缓存的条目上限，超出后淘汰最久未用的条目
CACHE_MAX_ENTRIES = 1024
RATE_LIMIT_MAX_CALLS = 5
RATE_LIMIT_WINDOW = 60.0
# 429 后的短暂退避（秒）
RATE_LIMIT_BACKOFF = 1.0

# 超时（秒）
BALANCE_TIMEOUT = 10.0
BROADCAST_TIMEOUT = 30.0

# BTC 费用与粉尘阈值（聪）
DUST_LIMIT_SATS = 546
DEFAULT_FEE_SATS = 1000
MIN_FEE_SATS = 500
MAX_FEE_SATS = 10000

# ETH 燃料估算安全系数 +10%
GAS_LIMIT_MULTIPLIER_NUM = 110
GAS_LIMIT_MULTIPLIER_DEN = 100
DEFAULT_GAS_PRICE_WEI = 20 * 10**9
ETH_TRANSFER_GAS = 21000

SOL_DEFAULT_FEE_LAMPORTS = 5000

USER_AGENT = "Serein-Wallet/2.0"

# 钱包列表与当前钱包的本地存储位置
WALLET_STORE_FILE = Path("wallets.json")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LOG_LEVEL = "INFO"
