import unittest

from eth_account import Account
from eth_utils import keccak

from config import DEFAULT_GAS_PRICE_WEI, Chain, Network
from errors import DustAmountError, InvalidAddressError, SigningError
from eth_service import EthTransactionBuilder, EthTransactionSigner, apply_gas_margin, validate_eth_address
from fakes import OTHER_MNEMONIC, TEST_MNEMONIC, Router
from models import EthUnsigned
from providers import RateLimiter
from wallet_service import derive_key_material

SENDER = derive_key_material(TEST_MNEMONIC, Chain.ETH, Network.TESTNET)
RECIPIENT = derive_key_material(OTHER_MNEMONIC, Chain.ETH, Network.TESTNET)
RPC_HOST = "ethereum-sepolia-rpc.publicnode.com"


def _unsigned(**overrides) -> EthUnsigned:
    fields = dict(
        sender_address=SENDER.address,
        nonce=3,
        gas_limit=23100,
        gas_price=2 * 10**9,
        to=RECIPIENT.address,
        value_wei=10**15,
        chain_id=11155111,
    )
    fields.update(overrides)
    return EthUnsigned(**fields)


class HelperTests(unittest.TestCase):
    def test_gas_margin_rounds_up(self) -> None:
        self.assertEqual(apply_gas_margin(21000), 23100)
        self.assertEqual(apply_gas_margin(21001), 23102)

    def test_address_validation(self) -> None:
        self.assertEqual(validate_eth_address(SENDER.address.lower()), SENDER.address)
        with self.assertRaises(InvalidAddressError):
            validate_eth_address("0x1234")
        with self.assertRaises(InvalidAddressError):
            validate_eth_address("tb1q6rz28mcfaxtmd6v789l9rrlrusdprr9pqcpvkl")


class BuilderTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.router = Router()
        self.client = self.router.client()
        self.builder = EthTransactionBuilder(self.client, RateLimiter(), backoff=0)

    async def asyncTearDown(self) -> None:
        await self.client.aclose()

    async def test_build(self) -> None:
        self.router.add_rpc(RPC_HOST, "eth_gasPrice", result="0x3b9aca00")
        self.router.add_rpc(RPC_HOST, "eth_estimateGas", result="0x5208")
        self.router.add_rpc(RPC_HOST, "eth_getTransactionCount", result="0x7")

        unsigned = await self.builder.build(SENDER.address, RECIPIENT.address.lower(), 10**16, Network.TESTNET)

        self.assertEqual(unsigned.gas_price, 10**9)
        self.assertEqual(unsigned.gas_limit, 23100)
        self.assertEqual(unsigned.nonce, 7)
        self.assertEqual(unsigned.chain_id, 11155111)
        self.assertEqual(unsigned.to, RECIPIENT.address)
        self.assertEqual(unsigned.max_fee_wei, 23100 * 10**9)

    # gas 价格不可用时使用默认值，调用方指定时不查询
    async def test_gas_price_fallbacks(self) -> None:
        self.router.add_rpc(RPC_HOST, "eth_estimateGas", result="0x5208")
        self.router.add_rpc(RPC_HOST, "eth_getTransactionCount", result="0x0")

        unsigned = await self.builder.build(SENDER.address, RECIPIENT.address, 1, Network.TESTNET)
        self.assertEqual(unsigned.gas_price, DEFAULT_GAS_PRICE_WEI)

        self.router.calls.clear()
        unsigned = await self.builder.build(SENDER.address, RECIPIENT.address, 1, Network.TESTNET, gas_price=5)
        self.assertEqual(unsigned.gas_price, 5)
        self.assertNotIn("eth_gasPrice", self.router.rpc_methods())

    def test_validate(self) -> None:
        with self.assertRaises(DustAmountError):
            self.builder.validate(RECIPIENT.address, 0)
        with self.assertRaises(InvalidAddressError):
            self.builder.validate("not-an-address", 1)

    async def test_status_confirmed(self) -> None:
        self.router.add_rpc(RPC_HOST, "eth_getTransactionReceipt", result={"blockNumber": "0x10", "status": "0x1"})
        self.router.add_rpc(RPC_HOST, "eth_blockNumber", result="0x12")
        status = await self.builder.get_status("0x" + "ab" * 32, Network.TESTNET)
        self.assertTrue(status.confirmed)
        self.assertEqual(status.confirmations, 3)
        self.assertEqual(status.block_height, 16)

    async def test_status_reverted_and_pending(self) -> None:
        self.router.add_rpc(RPC_HOST, "eth_getTransactionReceipt", result={"blockNumber": "0x10", "status": "0x0"})
        self.router.add_rpc(RPC_HOST, "eth_blockNumber", result="0x10")
        reverted = await self.builder.get_status("0x01", Network.TESTNET)
        self.assertFalse(reverted.confirmed)
        self.assertTrue(reverted.failed)

        pending_router = Router().add_rpc(RPC_HOST, "eth_getTransactionReceipt", result=None)
        async with pending_router.client() as client:
            pending = await EthTransactionBuilder(client, RateLimiter()).get_status("0x02", Network.TESTNET)
        self.assertFalse(pending.confirmed)
        self.assertFalse(pending.failed)


class SignerTests(unittest.TestCase):
    def test_sign_and_recover(self) -> None:
        signed = EthTransactionSigner().sign(_unsigned(), SENDER)

        self.assertEqual(signed.chain, Chain.ETH)
        self.assertEqual(Account.recover_transaction(signed.raw), SENDER.address)
        self.assertEqual(signed.tx_id, "0x" + keccak(signed.raw).hex())

    def test_wrong_key_rejected(self) -> None:
        with self.assertRaises(SigningError):
            EthTransactionSigner().sign(_unsigned(), RECIPIENT)

    def test_wrong_chain_rejected(self) -> None:
        sol = derive_key_material(TEST_MNEMONIC, Chain.SOL, Network.TESTNET)
        with self.assertRaises(SigningError):
            EthTransactionSigner().sign(_unsigned(), sol)


if __name__ == "__main__":
    unittest.main()
