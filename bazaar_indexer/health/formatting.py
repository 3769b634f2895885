"""
Human-readable rendering of x402 payment amounts.
"""
import re
from typing import NamedTuple

from bazaar_indexer.schemas.x402 import PaymentRequirements, PricingInfo


class TokenInfo(NamedTuple):
    symbol: str
    decimals: int


# Keys are lowercase; lookups are case-insensitive.
KNOWN_TOKENS = {
    "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913": TokenInfo("USDC", 6),  # Base
    "0x036cbd53842c5426634e7929541ec2318f3dcf7e": TokenInfo("USDC", 6),  # Base Sepolia
    "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359": TokenInfo("USDC", 6),  # Polygon
    "0x41e94eb019c0762f9bfcf9fb1e58725bfb0e7582": TokenInfo("USDC", 6),  # Polygon Amoy
    "0xb97ef9ef8734c71904d8002f8b6bc66dd9c48a6e": TokenInfo("USDC", 6),  # Avalanche
    "0x5425890298aed601595a70ab815c96711a31bc65": TokenInfo("USDC", 6),  # Avalanche Fuji
    "epjfwdd5aufqssqem2qn1xzybapc8g4weggkzwytdt1v": TokenInfo("USDC", 6),  # Solana
    "4zmmc9srt5ri5x14gagxhahii3gnpaeerypjgzjdncdu": TokenInfo("USDC", 6),  # Solana devnet
}

DEFAULT_ERC20_DECIMALS = 18
DEFAULT_DECIMALS = 6

_ATOMIC_AMOUNT = re.compile(r"[0-9]+")


def _is_evm_address(asset: str) -> bool:
    return asset.startswith("0x") and len(asset) > 10


def get_asset_info(asset: str) -> TokenInfo:
    known = KNOWN_TOKENS.get(asset.lower())
    if known is not None:
        return known
    if "USDC" in asset:
        return TokenInfo("USDC", 6)
    if _is_evm_address(asset):
        return TokenInfo(f"{asset[:6]}...{asset[-4:]}", DEFAULT_ERC20_DECIMALS)
    return TokenInfo(asset, DEFAULT_DECIMALS)


def get_asset_symbol(asset: str) -> str:
    return get_asset_info(asset).symbol


def format_amount(atomic_amount: str, asset: str) -> str:
    """
    Renders an integer amount of atomic units as ``"<whole>[.<frac>] <symbol>"``.
    Integer arithmetic only; anything that is not a plain digit string comes
    back as ``"<raw> (raw)"``.
    """
    raw = str(atomic_amount)
    if not _ATOMIC_AMOUNT.fullmatch(raw):
        return f"{raw} (raw)"

    symbol, decimals = get_asset_info(asset)
    whole, fraction = divmod(int(raw), 10 ** decimals)
    fraction_str = str(fraction).rjust(decimals, "0").rstrip("0") if decimals else ""

    if not fraction_str:
        return f"{whole} {symbol}"
    return f"{whole}.{fraction_str} {symbol}"


def to_pricing_info(requirement: PaymentRequirements) -> PricingInfo:
    return PricingInfo(
        scheme=requirement.scheme,
        network=requirement.network,
        max_amount_required=requirement.max_amount_required,
        asset=requirement.asset,
        pay_to=requirement.pay_to,
        max_timeout_seconds=requirement.max_timeout_seconds,
        formatted_amount=format_amount(requirement.max_amount_required, requirement.asset),
    )
