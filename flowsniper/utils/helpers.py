# flowsniper/utils/helpers.py
"""
Helper functions for the FlowSniper engine.

Provides utility functions for:
- Address validation and display
- Currency and duration formatting

Usage:
    from flowsniper.utils.helpers import format_currency, truncate_address

    format_currency(Decimal("0.21"))  # "+0.2100 USDT"
"""

import re
from decimal import Decimal, getcontext
from typing import Union

from web3 import Web3

# Set high precision for decimal calculations
getcontext().prec = 50


def validate_address(address: str) -> bool:
    """
    Validate Ethereum/Polygon address format.

    Args:
        address: Address to validate

    Returns:
        True if valid address format
    """
    if not address:
        return False

    if not re.match(r'^0x[a-fA-F0-9]{40}$', address):
        return False

    return Web3.is_address(address)

def same_address(a: str, b: str) -> bool:
    """Case-insensitive address comparison"""
    if not a or not b:
        return False
    return a.lower() == b.lower()

def truncate_address(address: str, start_chars: int = 6, end_chars: int = 4) -> str:
    """Truncate address for display"""
    if not address or len(address) <= start_chars + end_chars:
        return address
    return f"{address[:start_chars]}...{address[-end_chars:]}"

def format_currency(amount: Union[float, Decimal, int], currency: str = "USDT", decimals: int = 4) -> str:
    """Format a signed amount such as '+0.2100 USDT'"""
    value = Decimal(str(amount))
    sign = "+" if value > 0 else ""
    return f"{sign}{value:,.{decimals}f} {currency}"

def format_duration(seconds: Union[int, float]) -> str:
    """Format duration in human readable format"""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}m"
