from __future__ import annotations

from web3 import Web3

from app.config import get_settings


class UnsupportedChainError(ValueError):
    pass


def get_rpc_urls() -> list[str]:
    """
    Return configured RPC URLs in fallback order.
    Raises UnsupportedChainError if none are configured.
    """
    urls = get_settings().RPC_URL_LIST
    if not urls:
        raise UnsupportedChainError("RPC_URLS is not configured")
    return urls


def caip2(chain_id: int) -> str:
    return f"eip155:{int(chain_id)}"


def is_valid_address(value: str | None) -> bool:
    if not value or not isinstance(value, str):
        return False
    return Web3.is_address(value.strip())


def normalize_address(value: str) -> str:
    return Web3.to_checksum_address(value.strip())


def same_address(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()
