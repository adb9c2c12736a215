"""命令行入口：生成助记词、派生地址、查询余额、发送交易与钱包管理。"""

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path
from typing import List, Optional

from config import DEFAULT_LOG_LEVEL, LOG_FORMAT, WALLET_STORE_FILE, Chain, Network
from engine import Result, WalletEngine
from errors import WalletError
from wallet_service import generate_mnemonic
from wallet_store import JsonWalletStore, WalletRegistry


def _read_phrase(args: argparse.Namespace) -> str:
    """优先从文件读取助记词，否则在终端无回显输入。"""
    if args.phrase_file:
        return Path(args.phrase_file).read_text(encoding="utf-8").strip()
    return getpass.getpass("助记词: ").strip()


def _report(result: Result) -> int:
    if result.ok:
        return 0
    stage = f"[{result.stage.value}] " if result.stage else ""
    print(f"错误 {result.error_code}: {stage}{result.error}", file=sys.stderr)
    return 1


async def _cmd_address(args: argparse.Namespace) -> int:
    phrase = _read_phrase(args)
    async with WalletEngine.create() as engine:
        result = engine.derive_address(phrase, args.chain, args.network)
    if result.ok:
        print(f"{result.value.network}: {result.value.address}")
    return _report(result)


async def _cmd_balance(args: argparse.Namespace) -> int:
    async with WalletEngine.create() as engine:
        result = await engine.get_balance(args.address, args.chain, args.network)
    if result.ok:
        snap = result.value
        flag = " (降级：服务商不可用，数据可能过期)" if snap.degraded else ""
        print(f"{snap.display_amount} {args.chain.value} [{snap.amount} {snap.unit}, 来源 {snap.source}]{flag}")
    return _report(result)


async def _cmd_send(args: argparse.Namespace) -> int:
    phrase = _read_phrase(args)
    async with WalletEngine.create() as engine:
        result = await engine.send(phrase, args.chain, args.network, args.to, args.amount, fee=args.fee)
        if result.ok:
            print(f"已广播: {result.value}")
            if args.wait:
                status = await engine.confirm(result.operation)
                if status.ok:
                    print("已确认" if status.value.confirmed else "尚未确认")
    return _report(result)


async def _cmd_status(args: argparse.Namespace) -> int:
    async with WalletEngine.create() as engine:
        result = await engine.get_status(args.chain, args.txid, args.network)
    if result.ok:
        status = result.value
        if status.failed:
            print("执行失败")
        elif status.confirmed:
            print(f"已确认 ({status.confirmations} 确认, 高度 {status.block_height})")
        else:
            print("未确认")
    return _report(result)


async def _cmd_fee(args: argparse.Namespace) -> int:
    async with WalletEngine.create() as engine:
        result = await engine.estimate_fee(args.chain, args.network)
    if result.ok:
        print(result.value)
    return _report(result)


def _cmd_wallet(args: argparse.Namespace) -> int:
    registry = WalletRegistry(JsonWalletStore(Path(args.store)))
    active = registry.active()
    if args.action == "list":
        for record in registry.list():
            marker = "*" if active and active.id == record.id else " "
            print(f"{marker} {record.id} {record.display_name} [{record.network}]")
            for chain in Chain:
                print(f"    {chain.value}: {record.address_for(chain)}")
    elif args.action in ("create", "import"):
        phrase = _read_phrase(args) if args.action == "import" else None
        if phrase is None:
            record = registry.create(args.name, network=args.network, keep_phrase=not args.no_keep)
        else:
            record = registry.import_phrase(phrase, args.name, network=args.network, keep_phrase=not args.no_keep)
        print(f"{record.id} {record.display_name}")
    elif args.action == "rename":
        registry.rename(args.id, args.name)
    elif args.action == "remove":
        registry.disconnect(args.id)
    elif args.action == "use":
        registry.set_active(args.id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="serein-wallet", description="多链非托管钱包")
    parser.add_argument("--log-level", default=DEFAULT_LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    def add_chain(p: argparse.ArgumentParser) -> None:
        p.add_argument("--chain", type=lambda value: Chain(value.upper()), choices=list(Chain), required=True)
        p.add_argument("--network", type=Network, choices=list(Network), default=Network.TESTNET)

    p = sub.add_parser("new-mnemonic", help="生成新的 BIP39 助记词")
    p.add_argument("--words", type=int, default=12)

    p = sub.add_parser("address", help="派生收款地址")
    add_chain(p)
    p.add_argument("--phrase-file")

    p = sub.add_parser("balance", help="查询余额")
    add_chain(p)
    p.add_argument("--address", required=True)

    p = sub.add_parser("send", help="发送原生资产")
    add_chain(p)
    p.add_argument("--phrase-file")
    p.add_argument("--to", required=True)
    p.add_argument("--amount", type=int, required=True, help="最小单位：聪 / wei / lamport")
    p.add_argument("--fee", type=int, help="BTC 手续费（聪）或 ETH gas 价格（wei）")
    p.add_argument("--wait", action="store_true", help="广播后查询一次确认状态")

    p = sub.add_parser("status", help="查询交易状态")
    add_chain(p)
    p.add_argument("--txid", required=True)

    p = sub.add_parser("fee", help="估算手续费")
    add_chain(p)

    p = sub.add_parser("wallet", help="管理本地钱包列表")
    p.add_argument("action", choices=["list", "create", "import", "rename", "remove", "use"])
    p.add_argument("--store", default=str(WALLET_STORE_FILE))
    p.add_argument("--id")
    p.add_argument("--name", default="Wallet")
    p.add_argument("--network", type=Network, choices=list(Network), default=Network.TESTNET)
    p.add_argument("--phrase-file")
    p.add_argument("--no-keep", action="store_true", help="不在本地保存助记词")
    return parser


_ASYNC_COMMANDS = {
    "address": _cmd_address,
    "balance": _cmd_balance,
    "send": _cmd_send,
    "status": _cmd_status,
    "fee": _cmd_fee,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    if args.command == "new-mnemonic":
        print(generate_mnemonic(args.words))
        return 0
    if args.command == "wallet":
        if args.action in ("rename", "remove", "use") and not args.id:
            print("该操作需要 --id", file=sys.stderr)
            return 2
        try:
            return _cmd_wallet(args)
        except KeyError as exc:
            print(f"未找到钱包: {exc}", file=sys.stderr)
            return 1
        except WalletError as exc:
            print(f"错误 {exc.code}: {exc}", file=sys.stderr)
            return 1
    return asyncio.run(_ASYNC_COMMANDS[args.command](args))


if __name__ == "__main__":
    sys.exit(main())
