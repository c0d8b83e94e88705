# flowsniper/chain_client.py
"""
Chain Client - Async Web3 Access Layer

Wraps an AsyncWeb3 connection to Polygon: ERC-20 reads, Multicall3 batches,
gas pricing and signed transaction submission. Every submission goes through
the NonceManager so concurrent callers sharing a signer never collide on
the account nonce.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, to_checksum_address, to_hex
from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware

from config.addresses import MAX_UINT256, UTILITY_ADDRESSES
from config.settings import Settings
from flowsniper.exceptions import ErrorCategory, ExecutionRevertedError, QuoteFailure
from flowsniper.risk_manager import classify_error
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

# Priority bump applied to the node's gas price
GAS_MULTIPLIER_MIN = Decimal("1.2")
GAS_MULTIPLIER_MAX = Decimal("1.5")

# Headroom on top of eth_estimateGas
GAS_LIMIT_BUFFER = Decimal("1.2")

ERC20_ABI = [
    {"constant": True, "inputs": [], "name": "decimals",
     "outputs": [{"name": "", "type": "uint8"}], "type": "function"},
    {"constant": True, "inputs": [], "name": "symbol",
     "outputs": [{"name": "", "type": "string"}], "type": "function"},
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "balance", "type": "uint256"}], "type": "function"},
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}, {"name": "_spender", "type": "address"}],
     "name": "allowance", "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
]

MULTICALL3_ABI = [
    {
        "inputs": [
            {"name": "requireSuccess", "type": "bool"},
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "callData", "type": "bytes"}
                ],
                "name": "calls",
                "type": "tuple[]"
            }
        ],
        "name": "tryAggregate",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"}
                ],
                "name": "returnData",
                "type": "tuple[]"
            }
        ],
        "stateMutability": "view",
        "type": "function"
    }
]


def encode_call(signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> bytes:
    """
    Build raw calldata: 4-byte selector followed by ABI-encoded arguments.

    Args:
        signature: Canonical function signature, e.g. "approve(address,uint256)"
        arg_types: ABI types of the arguments
        args: Argument values

    Returns:
        Calldata bytes
    """
    return function_signature_to_4byte_selector(signature) + encode(list(arg_types), list(args))


def erc20_approve_data(spender: str, amount: int = MAX_UINT256) -> bytes:
    return encode_call("approve(address,uint256)", ["address", "uint256"],
                       [to_checksum_address(spender), amount])


def erc20_transfer_data(to: str, amount: int) -> bytes:
    return encode_call("transfer(address,uint256)", ["address", "uint256"],
                       [to_checksum_address(to), amount])


def erc20_transfer_from_data(owner: str, to: str, amount: int) -> bytes:
    return encode_call("transferFrom(address,address,uint256)", ["address", "address", "uint256"],
                       [to_checksum_address(owner), to_checksum_address(to), amount])


def clamp_gas_multiplier(multiplier: Decimal) -> Decimal:
    return min(max(Decimal(str(multiplier)), GAS_MULTIPLIER_MIN), GAS_MULTIPLIER_MAX)


class NonceManager:
    """
    Sequential nonce allocation shared by every transaction sender.

    One asyncio.Lock (FIFO for waiters) serializes allocation and submission.
    The first nonce per address comes from the node's pending count; after a
    failed submission the cached value is dropped and re-read next time.
    """

    def __init__(self, w3: AsyncWeb3):
        self.w3 = w3
        self._lock = asyncio.Lock()
        self._next_nonce: Dict[str, int] = {}

    @asynccontextmanager
    async def allocate(self, address: str) -> AsyncIterator[int]:
        """Hold the submission lock and yield the next nonce for ``address``."""
        key = address.lower()
        async with self._lock:
            if key not in self._next_nonce:
                self._next_nonce[key] = await self.w3.eth.get_transaction_count(
                    to_checksum_address(address), "pending"
                )
            nonce = self._next_nonce[key]
            try:
                yield nonce
            except BaseException:
                self._next_nonce.pop(key, None)
                raise
            self._next_nonce[key] = nonce + 1


class ChainClient:
    """
    Async access to the chain for the engine components.

    Features:
    - ERC-20 balance / allowance / decimals reads
    - Multicall3 tryAggregate batching (per-call success flags)
    - Priority gas pricing (node gas price x [1.2, 1.5])
    - Signed legacy transactions through the shared NonceManager
    - Receipt waiting with revert classification
    """

    def __init__(self, settings: Settings, w3: Optional[AsyncWeb3] = None):
        self.settings = settings
        self.chain_id = settings.network.chain_id
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.network.rpc_url))

        if w3 is None:
            # Polygon block headers carry POA extraData
            self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self.nonce_manager = NonceManager(self.w3)
        self.gas_multiplier = clamp_gas_multiplier(settings.trading.gas_price_multiplier)
        self.multicall = self.w3.eth.contract(
            address=to_checksum_address(UTILITY_ADDRESSES["MULTICALL3"]),
            abi=MULTICALL3_ABI,
        )

        logger.info(f"ChainClient ready (chain {self.chain_id}, gas x{self.gas_multiplier})")

    def erc20(self, token: str):
        return self.w3.eth.contract(address=to_checksum_address(token), abi=ERC20_ABI)

    # Reads

    async def get_decimals(self, token: str) -> int:
        return int(await self.erc20(token).functions.decimals().call())

    async def token_balance(self, token: str, owner: str) -> int:
        return int(await self.erc20(token).functions.balanceOf(to_checksum_address(owner)).call())

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return int(await self.erc20(token).functions.allowance(
            to_checksum_address(owner), to_checksum_address(spender)
        ).call())

    async def native_balance(self, address: str) -> int:
        return int(await self.w3.eth.get_balance(to_checksum_address(address)))

    async def try_aggregate(self, calls: List[Tuple[str, bytes]]) -> List[Tuple[bool, bytes]]:
        """
        Run read-only calls in one Multicall3 round trip.

        Individual call failures come back as (False, b"") entries; only a
        failure of the batch itself raises QuoteFailure.
        """
        payload = [(to_checksum_address(target), data) for target, data in calls]
        try:
            results = await self.multicall.functions.tryAggregate(False, payload).call()
        except Exception as e:
            raise QuoteFailure(f"Multicall batch failed: {e}", details={"calls": len(calls)}) from e

        return [(bool(success), bytes(data)) for success, data in results]

    # Gas

    async def priority_gas_price(self) -> int:
        """Node gas price scaled by the configured priority multiplier."""
        base = await self.w3.eth.gas_price
        return int(Decimal(base) * self.gas_multiplier)

    # Writes

    async def send_transaction(self, signer: LocalAccount, to: str, data: bytes,
                               value: int = 0, gas_limit: Optional[int] = None) -> str:
        """
        Sign and broadcast a transaction from ``signer``.

        Args:
            signer: Local account holding the key
            to: Target contract
            data: Calldata
            value: Native value in wei
            gas_limit: Explicit gas limit; estimated when omitted

        Returns:
            Transaction hash (0x-prefixed hex)
        """
        gas_price = await self.priority_gas_price()

        async with self.nonce_manager.allocate(signer.address) as nonce:
            tx = {
                "from": signer.address,
                "to": to_checksum_address(to),
                "data": to_hex(data),
                "value": value,
                "nonce": nonce,
                "gasPrice": gas_price,
                "chainId": self.chain_id,
            }

            if gas_limit is None:
                gas_limit = await self._estimate_gas(tx)
            tx["gas"] = gas_limit

            signed = signer.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash_hex = to_hex(tx_hash)
        logger.debug(f"Sent tx {tx_hash_hex} (nonce {nonce}, {gas_price} wei)")
        return tx_hash_hex

    async def _estimate_gas(self, tx: Dict[str, Any]) -> int:
        try:
            estimate = await self.w3.eth.estimate_gas(tx)
        except Exception as e:
            raise ExecutionRevertedError(
                f"Gas estimation failed: {e}", category=classify_error(e)
            ) from e
        return int(Decimal(estimate) * GAS_LIMIT_BUFFER)

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Await the receipt of ``tx_hash``.

        Raises:
            ExecutionRevertedError: if the transaction reverted on-chain
        """
        timeout = timeout or self.settings.trading.execution_timeout
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)

        if receipt["status"] != 1:
            raise ExecutionRevertedError(
                f"Transaction {tx_hash} reverted",
                category=ErrorCategory.DEX_REVERT,
                tx_hash=tx_hash,
            )

        return receipt
