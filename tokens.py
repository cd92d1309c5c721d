from enum import Enum

from errors import InvalidInput


class TokenType(str, Enum):
    """supported settlement identifiers. opaque partition key for the ledger."""

    USDC_ARBITRUM = "USDC-ARBITRUM"
    USDC_SOLANA = "USDC-SOLANA"


def parse_token_type(value) -> TokenType:
    if isinstance(value, TokenType):
        return value
    try:
        return TokenType(value)
    except ValueError:
        raise InvalidInput(f"unsupported token type {value!r}")
