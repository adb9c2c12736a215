"""引擎测试：状态机、发送流程的校验顺序、分阶段错误与取消语义。"""

import asyncio
import unittest

import httpx

from address_service import AddressResolver
from balance_service import create_balance_oracles
from broadcast_service import create_broadcasters
from btc_service import BtcTransactionBuilder, BtcTransactionSigner
from config import DEFAULT_GAS_PRICE_WEI, Chain, Network
from engine import SendOperation, WalletEngine
from errors import InvalidStateError
from eth_service import EthTransactionBuilder, EthTransactionSigner
from fakes import OTHER_MNEMONIC, TEST_MNEMONIC, Router
from models import SendStage, SignedTransaction, TxState
from providers import RateLimiter
from sol_service import SolTransactionBuilder, SolTransactionSigner
from wallet_service import derive_key_material

BTC_SENDER = "tb1q6rz28mcfaxtmd6v789l9rrlrusdprr9pqcpvkl"
BTC_RECIPIENT = derive_key_material(OTHER_MNEMONIC, Chain.BTC, Network.TESTNET).address
ETH_RECIPIENT = derive_key_material(OTHER_MNEMONIC, Chain.ETH, Network.TESTNET).address
SOL_RECIPIENT = derive_key_material(OTHER_MNEMONIC, Chain.SOL, Network.TESTNET).address

BTC_BALANCE = "https://api.blockcypher.com/v1/btc/test3/addrs/"
BTC_UTXO = "https://blockstream.info/testnet/api/address/"
BTC_UTXO_FALLBACKS = ("https://mempool.space/testnet/api/address/",)
BTC_PUSH = "https://api.blockcypher.com/v1/btc/test3/txs/push"
BTC_PUSH_FALLBACKS = ("https://blockstream.info/testnet/api/tx", "https://mempool.space/testnet/api/tx")
ETH_HOST = "ethereum-sepolia-rpc.publicnode.com"
SOL_HOST = "api.devnet.solana.com"


class SendOperationTests(unittest.TestCase):
    def _op(self) -> SendOperation:
        return SendOperation(chain=Chain.BTC, network=Network.TESTNET, recipient=BTC_RECIPIENT, amount=1000)

    def test_happy_path(self) -> None:
        op = self._op()
        for state in (TxState.BUILT, TxState.SIGNED, TxState.BROADCASTING, TxState.CONFIRMED):
            op.advance(state)
        self.assertEqual(op.history, [TxState.BUILT, TxState.SIGNED, TxState.BROADCASTING, TxState.CONFIRMED])
        self.assertTrue(op.is_terminal)

    def test_cannot_skip_signing(self) -> None:
        op = self._op()
        op.advance(TxState.BUILT)
        with self.assertRaises(InvalidStateError):
            op.advance(TxState.BROADCASTING)

    # 签名之后不能回到 Built
    def test_no_return_to_built(self) -> None:
        op = self._op()
        op.advance(TxState.BUILT)
        op.advance(TxState.SIGNED)
        with self.assertRaises(InvalidStateError):
            op.advance(TxState.BUILT)

    def test_terminal_states(self) -> None:
        op = self._op()
        op.advance(TxState.FAILED)
        for state in TxState:
            with self.assertRaises(InvalidStateError):
                op.advance(state)

    def test_fail_is_idempotent_on_terminal(self) -> None:
        op = self._op()
        op.advance(TxState.FAILED)
        op.fail(InvalidStateError("again"))
        self.assertEqual(op.history, [TxState.FAILED])


class EngineTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.router = Router()
        self.client = self.router.client()
        self.engine = WalletEngine.create(client=self.client, limiter=RateLimiter(), backoff=0)

    async def asyncTearDown(self) -> None:
        await self.engine.aclose()
        await self.client.aclose()

    def btc_network_calls(self) -> int:
        prefixes = (BTC_UTXO,) + BTC_UTXO_FALLBACKS + (BTC_PUSH,) + BTC_PUSH_FALLBACKS
        return sum(self.router.count(prefix) for prefix in prefixes)


class DeriveAndBalanceTests(EngineTestCase):
    def test_derive_address(self) -> None:
        result = self.engine.derive_address(TEST_MNEMONIC, Chain.BTC, Network.TESTNET)
        self.assertTrue(result.ok)
        self.assertEqual(result.value.address, BTC_SENDER)
        self.assertEqual(result.value.network, "Bitcoin Testnet")
        self.assertTrue(result.value.is_native)
        self.assertIsNone(result.value.contract_address)

    def test_derive_address_invalid_phrase(self) -> None:
        result = self.engine.derive_address("not a phrase", Chain.ETH, Network.TESTNET)
        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "INVALID_MNEMONIC")

    async def test_get_balance_degraded_is_not_an_error(self) -> None:
        result = await self.engine.get_balance(BTC_SENDER, Chain.BTC, Network.TESTNET)
        self.assertTrue(result.ok)
        self.assertTrue(result.value.degraded)
        self.assertEqual(result.value.amount, 0)

    # 无效或网络不匹配的地址在本地拒绝，不访问任何服务商
    async def test_get_balance_invalid_address_makes_no_calls(self) -> None:
        cases = [
            (Chain.ETH, "not-an-address"),
            (Chain.BTC, "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"),
            (Chain.SOL, "0OIl"),
        ]
        for chain, address in cases:
            result = await self.engine.get_balance(address, chain, Network.TESTNET)
            self.assertFalse(result.ok, chain)
            self.assertEqual(result.error_code, "INVALID_ADDRESS")
        self.assertEqual(self.router.calls, [])

    def test_missing_chain_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            WalletEngine(
                resolver=AddressResolver(),
                oracles=self.engine.oracles,
                builders={Chain.BTC: self.engine.builders[Chain.BTC]},
                signers=self.engine.signers,
                broadcasters=self.engine.broadcasters,
            )


class BtcSendTests(EngineTestCase):
    def _fund(self, balance: int, utxos: list) -> None:
        self.router.add_json(BTC_BALANCE, {"balance": balance})
        self.router.add_json(BTC_UTXO, utxos)

    async def test_send_success_and_confirm(self) -> None:
        self._fund(20000, [{"txid": "aa" * 32, "vout": 0, "value": 8000}])
        self.router.add_json(BTC_PUSH, {"tx": {"hash": "ff" * 32}}, status_code=201)

        result = await self.engine.send(TEST_MNEMONIC, Chain.BTC, Network.TESTNET, BTC_RECIPIENT, 5000)

        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.value, "ff" * 32)
        op = result.operation
        self.assertEqual(op.state, TxState.BROADCASTING)
        self.assertEqual(op.history, [TxState.BUILT, TxState.SIGNED, TxState.BROADCASTING])
        self.assertEqual(op.sender, BTC_SENDER)
        self.assertEqual(op.unsigned.fee_sats, 1000)
        self.assertEqual(op.unsigned.change_out.value_sats, 2000)
        self.assertEqual(self.router.count(BTC_PUSH), 1)

        self.router.add_json("https://blockstream.info/testnet/api/tx/", {"confirmed": True, "block_height": 7})
        status = await self.engine.confirm(op)
        self.assertTrue(status.ok)
        self.assertEqual(op.state, TxState.CONFIRMED)

        again = await self.engine.confirm(op)
        self.assertEqual(again.error_code, "INVALID_STATE")

    # amount + fee 超过余额：只查询余额，不触发构建与广播
    async def test_insufficient_funds_makes_no_build_calls(self) -> None:
        self._fund(3000, [{"txid": "aa" * 32, "vout": 0, "value": 3000}])

        result = await self.engine.send(TEST_MNEMONIC, Chain.BTC, Network.TESTNET, BTC_RECIPIENT, 2500)

        self.assertEqual(result.error_code, "INSUFFICIENT_FUNDS")
        self.assertEqual(result.error.required, 3500)
        self.assertEqual(result.stage, SendStage.BUILD)
        self.assertEqual(result.operation.state, TxState.FAILED)
        self.assertEqual(self.btc_network_calls(), 0)
        self.assertEqual(len(self.router.calls), 1)

    async def test_local_validation_makes_no_calls(self) -> None:
        cases = [
            ("abandon " * 12, BTC_RECIPIENT, 5000, "INVALID_MNEMONIC"),
            (TEST_MNEMONIC, "tb1qinvalid", 5000, "INVALID_ADDRESS"),
            (TEST_MNEMONIC, ETH_RECIPIENT, 5000, "INVALID_ADDRESS"),
            (TEST_MNEMONIC, BTC_RECIPIENT, 545, "DUST_AMOUNT"),
            (TEST_MNEMONIC, BTC_RECIPIENT, -1, "DUST_AMOUNT"),
        ]
        for phrase, recipient, amount, code in cases:
            result = await self.engine.send(phrase, Chain.BTC, Network.TESTNET, recipient, amount)
            self.assertEqual(result.error_code, code)
            self.assertEqual(result.stage, SendStage.BUILD)
        self.assertEqual(self.router.calls, [])

    # 余额降级时跳过本地检查，由 UTXO 决定
    async def test_degraded_balance_defers_to_utxos(self) -> None:
        self.router.add_status(BTC_BALANCE, 500)
        self.router.add_json(BTC_UTXO, [{"txid": "aa" * 32, "vout": 0, "value": 1000}])

        result = await self.engine.send(TEST_MNEMONIC, Chain.BTC, Network.TESTNET, BTC_RECIPIENT, 5000)

        self.assertEqual(result.error_code, "INSUFFICIENT_FUNDS")
        self.assertEqual(result.stage, SendStage.BUILD)

    async def test_signing_failure_is_fatal(self) -> None:
        self._fund(20000, [{"txid": "aa" * 32, "vout": 0, "value": 8000, "scriptpubkey": "0014" + "00" * 20}])

        result = await self.engine.send(TEST_MNEMONIC, Chain.BTC, Network.TESTNET, BTC_RECIPIENT, 5000)

        self.assertEqual(result.error_code, "SIGNING_FAILED")
        self.assertEqual(result.stage, SendStage.SIGN)
        self.assertEqual(result.operation.history, [TxState.BUILT, TxState.FAILED])
        self.assertEqual(self.router.count(BTC_PUSH), 0)

    async def test_broadcast_failure_reports_stage(self) -> None:
        self._fund(20000, [{"txid": "aa" * 32, "vout": 0, "value": 8000}])
        for prefix in (BTC_PUSH,) + BTC_PUSH_FALLBACKS:
            self.router.add_status(prefix, 500)

        result = await self.engine.send(TEST_MNEMONIC, Chain.BTC, Network.TESTNET, BTC_RECIPIENT, 5000)

        self.assertEqual(result.error_code, "BROADCAST_FAILED")
        self.assertEqual(result.stage, SendStage.BROADCAST)
        self.assertEqual(
            result.operation.history,
            [TxState.BUILT, TxState.SIGNED, TxState.BROADCASTING, TxState.FAILED],
        )
        # 每个服务商最多提交一次
        self.assertEqual(self.router.count(BTC_PUSH), 1)
        self.assertIsNotNone(result.operation.signed)


class EthSolSendTests(EngineTestCase):
    def _eth_node(self, balance: int) -> None:
        self.router.add_rpc(ETH_HOST, "eth_getBalance", result=hex(balance))
        self.router.add_rpc(ETH_HOST, "eth_gasPrice", result=hex(10**9))
        self.router.add_rpc(ETH_HOST, "eth_estimateGas", result=hex(21000))
        self.router.add_rpc(ETH_HOST, "eth_getTransactionCount", result="0x2")

    async def test_eth_send(self) -> None:
        self._eth_node(10**18)
        self.router.add_rpc(ETH_HOST, "eth_sendRawTransaction", result="0x" + "12" * 32)

        result = await self.engine.send(TEST_MNEMONIC, Chain.ETH, Network.TESTNET, ETH_RECIPIENT, 10**16)

        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.value, "0x" + "12" * 32)
        self.assertEqual(result.operation.unsigned.nonce, 2)
        self.assertEqual(result.operation.unsigned.gas_limit, 23100)

    # 余额够付金额但不够付默认 gas 预留：构建前失败，只查询余额
    async def test_eth_gas_reserve_fails_before_build(self) -> None:
        self._eth_node(10**16 + 1000)

        result = await self.engine.send(TEST_MNEMONIC, Chain.ETH, Network.TESTNET, ETH_RECIPIENT, 10**16)

        self.assertEqual(result.error_code, "INSUFFICIENT_FUNDS")
        self.assertEqual(result.stage, SendStage.BUILD)
        self.assertEqual(result.error.required, 10**16 + 23100 * DEFAULT_GAS_PRICE_WEI)
        self.assertEqual(self.router.rpc_methods(), ["eth_getBalance"])

    # 调用方指定的 gas 价格用于预留
    async def test_eth_gas_reserve_uses_caller_price(self) -> None:
        self._eth_node(10**16)

        result = await self.engine.send(TEST_MNEMONIC, Chain.ETH, Network.TESTNET, ETH_RECIPIENT, 10**16, fee=10**9)

        self.assertEqual(result.error.required, 10**16 + 23100 * 10**9)
        self.assertEqual(self.router.rpc_methods(), ["eth_getBalance"])

    # 节点报价高于默认价格时，构建后复查，签名前失败
    async def test_eth_quoted_gas_pushes_over_balance(self) -> None:
        self.router.add_rpc(ETH_HOST, "eth_getBalance", result=hex(10**16 + 5 * 10**14))
        self.router.add_rpc(ETH_HOST, "eth_gasPrice", result=hex(50 * 10**9))
        self.router.add_rpc(ETH_HOST, "eth_estimateGas", result=hex(21000))
        self.router.add_rpc(ETH_HOST, "eth_getTransactionCount", result="0x2")

        result = await self.engine.send(TEST_MNEMONIC, Chain.ETH, Network.TESTNET, ETH_RECIPIENT, 10**16)

        self.assertEqual(result.error_code, "INSUFFICIENT_FUNDS")
        self.assertEqual(result.stage, SendStage.BUILD)
        self.assertIsNotNone(result.operation.unsigned)
        self.assertIsNone(result.operation.signed)
        self.assertNotIn("eth_sendRawTransaction", self.router.rpc_methods())

    async def test_sol_insufficient_includes_fee(self) -> None:
        self.router.add_rpc(SOL_HOST, "getBalance", result={"value": 5000})

        result = await self.engine.send(TEST_MNEMONIC, Chain.SOL, Network.TESTNET, SOL_RECIPIENT, 1000)

        self.assertEqual(result.error_code, "INSUFFICIENT_FUNDS")
        self.assertEqual(result.error.required, 6000)
        self.assertEqual(self.router.rpc_methods(), ["getBalance"])

    async def test_sol_send(self) -> None:
        self.router.add_rpc(SOL_HOST, "getBalance", result={"value": 10**9})
        self.router.add_rpc(
            SOL_HOST,
            "getLatestBlockhash",
            result={"value": {"blockhash": "11111111111111111111111111111111", "lastValidBlockHeight": 1}},
        )
        self.router.add_rpc(SOL_HOST, "sendTransaction", result="sig")

        result = await self.engine.send(TEST_MNEMONIC, Chain.SOL, Network.TESTNET, SOL_RECIPIENT, 1000)

        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.operation.state, TxState.BROADCASTING)


class _SlowBroadcaster:
    chain = Chain.BTC

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.finished = asyncio.Event()
        self.submissions = 0

    async def broadcast(self, signed: SignedTransaction, network: Network) -> str:
        self.started.set()
        await self.release.wait()
        self.submissions += 1
        self.finished.set()
        return signed.tx_id


class CancellationTests(unittest.IsolatedAsyncioTestCase):
    # 广播开始后取消发送，不会中断已经开始的提交
    async def test_broadcast_survives_cancellation(self) -> None:
        router = Router()
        router.add_json(BTC_BALANCE, {"balance": 20000})
        router.add_json(BTC_UTXO, [{"txid": "aa" * 32, "vout": 0, "value": 8000}])
        client: httpx.AsyncClient = router.client()
        limiter = RateLimiter()
        slow = _SlowBroadcaster()
        broadcasters = create_broadcasters(client, limiter)
        broadcasters[Chain.BTC] = slow
        engine = WalletEngine(
            resolver=AddressResolver(),
            oracles=create_balance_oracles(client, limiter),
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
            broadcasters=broadcasters,
        )

        task = asyncio.create_task(
            engine.send(TEST_MNEMONIC, Chain.BTC, Network.TESTNET, BTC_RECIPIENT, 5000)
        )
        await asyncio.wait_for(slow.started.wait(), timeout=10)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        slow.release.set()
        await asyncio.wait_for(slow.finished.wait(), timeout=10)
        self.assertEqual(slow.submissions, 1)
        await client.aclose()


if __name__ == "__main__":
    unittest.main()
