# config/addresses.py
"""
Polygon Mainnet Contract Addresses
Centralized address book for the tokens and venues the engine trades on
"""

from typing import List

# =============================================================================
# CORE TOKEN ADDRESSES (Polygon Mainnet)
# =============================================================================

POLYGON_ADDRESSES = {
    # Stablecoins (quote side of every pair)
    "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",  # Tether USD
    "USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",  # Native USD Coin
    "USDC.e": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",  # Bridged USD Coin

    # Native & Wrapped Tokens
    "WMATIC": "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",  # Wrapped POL
    "WETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",  # Wrapped Ethereum
    "WBTC": "0x1BFD67037B42Cf73acF2047067bd4F2C47D9BfD6",  # Wrapped Bitcoin

    # Other Major Tokens
    "LINK": "0x53E0bca35eC356BD5ddDFebbD1Fc0fD03FaBad39",  # Chainlink
    "AAVE": "0xD6DF932A45C0f255f85145f286eA0b292B21C90B",  # Aave Token
    "UNI": "0xb33EaAd8d922B1083446DC23f610c2567fB5180f",  # Uniswap
}

# =============================================================================
# DEX ADDRESSES
# =============================================================================

DEX_ADDRESSES = {
    # QuickSwap (Uniswap V2 fork) - constant-product venue
    "QUICKSWAP_ROUTER": "0xa5E0829CaCEd8fFDD4De3c43696c57F7D7A678ff",

    # Uniswap V3 - concentrated-liquidity venue
    "UNISWAP_V3_ROUTER": "0xE592427A0AEce92De3Edee1F18E0157C05861564",
    "UNISWAP_V3_QUOTER": "0xb27308f9F90D607463bb33eA1BeBb41C27CE5AB6",
}

UTILITY_ADDRESSES = {
    "MULTICALL3": "0xcA11bde05977b3631167028862bE2a173976CA11",
    "NATIVE_TOKEN": "0x0000000000000000000000000000000000000000",  # POL
}

# =============================================================================
# TOKEN METADATA
# =============================================================================

# Static decimals table; anything missing is resolved on-chain once
TOKEN_DECIMALS = {
    POLYGON_ADDRESSES["USDT"].lower(): 6,
    POLYGON_ADDRESSES["USDC"].lower(): 6,
    POLYGON_ADDRESSES["USDC.e"].lower(): 6,
    POLYGON_ADDRESSES["WMATIC"].lower(): 18,
    POLYGON_ADDRESSES["WETH"].lower(): 18,
    POLYGON_ADDRESSES["WBTC"].lower(): 8,
    POLYGON_ADDRESSES["LINK"].lower(): 18,
    POLYGON_ADDRESSES["AAVE"].lower(): 18,
    POLYGON_ADDRESSES["UNI"].lower(): 18,
}

# Ticker symbols used by the centralized-exchange price endpoints
CEX_SYMBOLS = {
    "WMATIC": "POLUSDT",
    "WETH": "ETHUSDT",
    "WBTC": "BTCUSDT",
    "LINK": "LINKUSDT",
    "AAVE": "AAVEUSDT",
    "UNI": "UNIUSDT",
    "USDC": "USDCUSDT",
}

# CoinGecko ids for the reference-data fallback
COINGECKO_IDS = {
    "WMATIC": "matic-network",
    "WETH": "ethereum",
    "WBTC": "bitcoin",
    "LINK": "chainlink",
    "AAVE": "aave",
    "UNI": "uniswap",
    "USDC": "usd-coin",
    "USDT": "tether",
}

# Tokens scanned against the quote stablecoin, in round-robin order
DEFAULT_SCAN_SYMBOLS = ["WMATIC", "WETH", "WBTC", "LINK", "AAVE", "UNI"]

QUOTE_SYMBOL = "USDT"

# =============================================================================
# VENUE CONSTANTS
# =============================================================================

# Uniswap V3 fee tiers in hundredths of a basis point, cheapest first
UNISWAP_V3_FEE_TIERS = [500, 3000, 10000]

# Gas units per operation, used for static gas-cost estimates
GAS_ESTIMATES = {
    "ERC20_TRANSFER": 65000,
    "ERC20_APPROVE": 60000,
    "ERC20_TRANSFER_FROM": 80000,
    "UNISWAP_V2_SWAP": 200000,
    "UNISWAP_V3_SWAP": 250000,
}

MAX_UINT256 = 2 ** 256 - 1


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_token_symbol(address: str) -> str:
    """Get token symbol from address"""
    address_lower = address.lower()
    for symbol, token_address in POLYGON_ADDRESSES.items():
        if token_address.lower() == address_lower:
            return symbol
    return f"UNKNOWN({address[:6]}...)"


def get_stablecoin_addresses() -> List[str]:
    """Get list of stablecoin addresses"""
    return [
        POLYGON_ADDRESSES["USDT"],
        POLYGON_ADDRESSES["USDC"],
        POLYGON_ADDRESSES["USDC.e"],
    ]


def is_stablecoin(address: str) -> bool:
    """Check if token is a stablecoin"""
    return address.lower() in [addr.lower() for addr in get_stablecoin_addresses()]
