# flowsniper/trade_executor.py
"""
Trade Executor - Single-Leg Swap Submission

Builds and submits one swap on either AMM venue: QuickSwap V2 through
swapExactTokensForTokens along a two-hop path, Uniswap V3 through the
router's exactInputSingle with the winning fee tier. Also carries the
plain transfers and native-token swaps used by consolidation and the
control handlers.
"""

import time
import uuid
from decimal import Decimal
from typing import Callable, Optional, Union

from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from config.addresses import DEX_ADDRESSES, MAX_UINT256, POLYGON_ADDRESSES
from config.settings import Settings
from flowsniper.chain_client import encode_call, erc20_approve_data, erc20_transfer_data
from flowsniper.decimal_utils import normalize_amount
from flowsniper.exceptions import InsufficientGasError
from flowsniper.types import Token, Venue
from flowsniper.utils.helpers import truncate_address
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

V2_SWAP_EXACT_TOKENS_FOR_TOKENS = "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
V2_SWAP_EXACT_TOKENS_FOR_ETH = "swapExactTokensForETH(uint256,uint256,address[],address,uint256)"
V3_EXACT_INPUT_SINGLE = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))"

SWAP_DEADLINE_SECONDS = 300
SIMULATED_TX_PREFIX = "0xSIM_"


def compute_min_amount_out(quoted_amount_out: int, slippage_tolerance: Union[Decimal, str]) -> int:
    """
    Minimum acceptable output for a quoted swap.

    Args:
        quoted_amount_out: Quoted output in base units
        slippage_tolerance: Fraction in [0, 1)

    Returns:
        quoted_amount_out * (1 - slippage_tolerance), truncated to base units

    Raises:
        ValueError: slippage outside [0, 1)
    """
    slippage = Decimal(str(slippage_tolerance))
    if not (Decimal(0) <= slippage < Decimal(1)):
        raise ValueError(f"slippage_tolerance must be in [0, 1), got {slippage}")
    return int(Decimal(quoted_amount_out) * (Decimal(1) - slippage))


def v2_swap_data(amount_in: int, min_amount_out: int, path, recipient: str, deadline: int,
                 to_native: bool = False) -> bytes:
    signature = V2_SWAP_EXACT_TOKENS_FOR_ETH if to_native else V2_SWAP_EXACT_TOKENS_FOR_TOKENS
    return encode_call(
        signature,
        ["uint256", "uint256", "address[]", "address", "uint256"],
        [amount_in, min_amount_out, [to_checksum_address(a) for a in path],
         to_checksum_address(recipient), deadline],
    )


def v3_swap_data(token_in: str, token_out: str, fee_tier: int, recipient: str, deadline: int,
                 amount_in: int, min_amount_out: int) -> bytes:
    params = (
        to_checksum_address(token_in),
        to_checksum_address(token_out),
        fee_tier,
        to_checksum_address(recipient),
        deadline,
        amount_in,
        min_amount_out,
        0,  # sqrtPriceLimitX96: none
    )
    return encode_call(
        V3_EXACT_INPUT_SINGLE,
        ["(address,address,uint24,address,uint256,uint256,uint256,uint160)"],
        [params],
    )


def simulated_tx_hash() -> str:
    return SIMULATED_TX_PREFIX + uuid.uuid4().hex


class TradeExecutor:
    """
    Submits swaps and transfers for the trading signer.

    Features:
    - Native balance floor check before every submission
    - One-time MaxUint256 router approval per token
    - V2 path swaps and V3 single-pool swaps with a slippage floor
    - Optional receipt wait with revert classification
    - Simulated submissions for DEMO sessions
    """

    def __init__(self, settings: Settings, chain, registry, custody,
                 v2_router: str = DEX_ADDRESSES["QUICKSWAP_ROUTER"],
                 v3_router: str = DEX_ADDRESSES["UNISWAP_V3_ROUTER"],
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.chain = chain
        self.registry = registry
        self.custody = custody
        self.v2_router = v2_router
        self.v3_router = v3_router
        self.min_native_balance: Decimal = settings.risk.min_native_balance
        self._clock = clock

    def _deadline(self) -> int:
        return int(self._clock()) + SWAP_DEADLINE_SECONDS

    def router_for(self, venue: Venue) -> str:
        return self.v2_router if venue is Venue.AMM_V2 else self.v3_router

    async def check_gas(self, address: str) -> Decimal:
        """
        Native balance of ``address`` in whole tokens.

        Raises:
            InsufficientGasError: balance below the configured floor
        """
        balance = normalize_amount(await self.chain.native_balance(address), 18)
        if balance < self.min_native_balance:
            raise InsufficientGasError(
                f"Native balance {balance} below floor {self.min_native_balance} for {truncate_address(address)}",
                address=address,
                balance=balance,
                required=self.min_native_balance,
            )
        return balance

    async def ensure_router_allowance(self, token: str, spender: str, signer: LocalAccount,
                                      amount: int) -> Optional[str]:
        """Approve ``spender`` for MaxUint256 when the current allowance is below ``amount``."""
        current = await self.chain.allowance(token, signer.address, spender)
        if current >= amount:
            return None

        logger.info(f"🔓 Approving {truncate_address(spender)} for {truncate_address(token)}")
        tx_hash = await self.chain.send_transaction(signer, token, erc20_approve_data(spender, MAX_UINT256))
        await self.chain.wait_for_receipt(tx_hash)
        return tx_hash

    async def execute(self, token_in: Token, token_out: Token, amount_in: int, min_amount_out: int,
                      venue: Venue, fee_tier: Optional[int] = None, wait: bool = False,
                      signer: Optional[LocalAccount] = None, simulate: bool = False) -> str:
        """
        Submit one swap leg.

        Args:
            token_in: Token spent
            token_out: Token received
            amount_in: Input in base units
            min_amount_out: Output floor in base units
            venue: AMM_V2 or AMM_V3
            fee_tier: Pool fee, required for AMM_V3
            wait: Await the receipt before returning
            signer: Explicit signer; resolved through custody when omitted
            simulate: Return a simulated hash without touching the chain

        Returns:
            Transaction hash

        Raises:
            InsufficientGasError: signer below the native balance floor
            ExecutionRevertedError: gas estimation failed or the receipt reverted
        """
        if amount_in <= 0:
            raise ValueError("amount_in must be positive")
        if venue is Venue.AMM_V3 and fee_tier is None:
            raise ValueError("fee_tier is required for AMM_V3 swaps")

        if simulate:
            tx_hash = simulated_tx_hash()
            logger.info(f"🧪 Simulated {venue.label} swap {token_in.symbol} -> {token_out.symbol} | {tx_hash}")
            return tx_hash

        await self.registry.resolve_decimals(token_in.address)
        await self.registry.resolve_decimals(token_out.address)

        signer = signer or self.custody.resolve_signer()
        await self.check_gas(signer.address)

        router = self.router_for(venue)
        await self.ensure_router_allowance(token_in.address, router, signer, amount_in)

        if venue is Venue.AMM_V2:
            data = v2_swap_data(amount_in, min_amount_out, [token_in.address, token_out.address],
                                signer.address, self._deadline())
        else:
            data = v3_swap_data(token_in.address, token_out.address, fee_tier, signer.address,
                                self._deadline(), amount_in, min_amount_out)

        tx_hash = await self.chain.send_transaction(signer, router, data)
        logger.info(f"📤 {venue.label} swap {token_in.symbol} -> {token_out.symbol} submitted | {tx_hash}")

        if wait:
            await self.chain.wait_for_receipt(tx_hash)

        return tx_hash

    async def swap_to_native(self, amount_in: int, min_amount_out: int = 0,
                             signer: Optional[LocalAccount] = None, wait: bool = True) -> str:
        """Swap the quote stablecoin for the native gas token on the V2 router."""
        quote_token = self.registry.quote_token()
        signer = signer or self.custody.resolve_signer()

        await self.ensure_router_allowance(quote_token.address, self.v2_router, signer, amount_in)
        data = v2_swap_data(amount_in, min_amount_out,
                            [quote_token.address, POLYGON_ADDRESSES["WMATIC"]],
                            signer.address, self._deadline(), to_native=True)

        tx_hash = await self.chain.send_transaction(signer, self.v2_router, data)
        logger.info(f"⛽ Swapped {normalize_amount(amount_in, quote_token.decimals)} "
                    f"{quote_token.symbol} to native | {tx_hash}")
        if wait:
            await self.chain.wait_for_receipt(tx_hash)
        return tx_hash

    async def transfer(self, token: Token, to: str, amount: int,
                       signer: Optional[LocalAccount] = None, wait: bool = True) -> str:
        """Plain ERC-20 transfer from the signer."""
        if amount <= 0:
            raise ValueError("transfer amount must be positive")

        signer = signer or self.custody.resolve_signer()
        await self.check_gas(signer.address)

        tx_hash = await self.chain.send_transaction(signer, token.address, erc20_transfer_data(to, amount))
        logger.info(f"➡️ Transferred {normalize_amount(amount, token.decimals)} {token.symbol} "
                    f"to {truncate_address(to)} | {tx_hash}")
        if wait:
            await self.chain.wait_for_receipt(tx_hash)
        return tx_hash
