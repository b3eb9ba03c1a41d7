from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Callable, TypeVar

from eth_abi import decode as abi_decode
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from app.config import get_settings
from chain.abis import ERC20_ABI
from chain.chains import get_rpc_urls, same_address

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


class Web3RPCError(RuntimeError):
    pass


@lru_cache
def _get_web3(rpc_url: str) -> Web3:
    """
    Lazily create and cache a Web3 instance per RPC URL.
    """
    timeout = get_settings().rpc_timeout_s
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    if not w3.is_connected():
        raise Web3RPCError(f"Unable to connect to RPC: {rpc_url}")

    return w3


def with_any_provider(fn: Callable[[Web3], T]) -> T:
    """
    Run fn against each configured RPC URL in order until one succeeds.
    """
    last_err: Exception | None = None
    for url in get_rpc_urls():
        try:
            return fn(_get_web3(url))
        except ContractLogicError:
            raise
        except Exception as e:
            logger.warning("rpc %s failed: %s: %s", url, type(e).__name__, e)
            last_err = e
    raise Web3RPCError(f"all RPC endpoints failed: {last_err}") from last_err


def _pad_topic(address: str) -> str:
    return "0x" + "0" * 24 + Web3.to_checksum_address(address)[2:].lower()


def _topic_address(topic: Any) -> str:
    raw = bytes(topic)
    return Web3.to_checksum_address("0x" + raw[-20:].hex())


# ---------------------------
# Native chain helpers
# ---------------------------

def get_native_balance(address: str) -> int:
    """
    Return native token balance in wei.
    """
    try:
        return int(with_any_provider(lambda w3: w3.eth.get_balance(Web3.to_checksum_address(address))))
    except Exception as e:
        raise Web3RPCError(f"get_native_balance failed: {e}") from e


def recent_native_transfers(address: str, *, limit: int, scan_blocks: int) -> list[dict[str, Any]]:
    """
    Newest-first native value transfers sent by `address`, looking back at
    most `scan_blocks` blocks and returning at most `limit` entries.
    """
    sender = Web3.to_checksum_address(address)

    def _scan(w3: Web3) -> list[dict[str, Any]]:
        # hop addresses are fresh; no nonce means nothing was ever sent
        if w3.eth.get_transaction_count(sender) == 0:
            return []

        found: list[dict[str, Any]] = []
        latest = int(w3.eth.block_number)
        lowest = max(0, latest - max(0, scan_blocks) + 1)
        for number in range(latest, lowest - 1, -1):
            block = w3.eth.get_block(number, full_transactions=True)
            for tx in reversed(block.get("transactions", [])):
                if not same_address(tx.get("from"), sender):
                    continue
                found.append(
                    {
                        "signature": Web3.to_hex(tx["hash"]),
                        "source": sender,
                        "destination": tx.get("to") or "",
                        "amount": int(tx.get("value") or 0),
                        "mint": None,
                    }
                )
                if len(found) >= limit:
                    return found
        return found

    try:
        return with_any_provider(_scan)
    except Exception as e:
        raise Web3RPCError(f"recent_native_transfers failed: {e}") from e


# ---------------------------
# ERC20 helpers
# ---------------------------

def _erc20_contract(w3: Web3, token_address: str):
    return w3.eth.contract(
        address=Web3.to_checksum_address(token_address),
        abi=ERC20_ABI,
    )


def erc20_balance(token_address: str, owner: str) -> int:
    """
    Return ERC20 balance (raw uint256).
    """
    try:
        return int(
            with_any_provider(
                lambda w3: _erc20_contract(w3, token_address)
                .functions.balanceOf(Web3.to_checksum_address(owner))
                .call()
            )
        )
    except ContractLogicError as e:
        raise Web3RPCError(f"erc20_balance reverted: {e}") from e
    except Exception as e:
        raise Web3RPCError(f"erc20_balance failed: {e}") from e


def recent_erc20_transfers(
    token_address: str,
    address: str,
    *,
    limit: int,
    scan_blocks: int,
) -> list[dict[str, Any]]:
    """
    Newest-first ERC20 Transfer events emitted with `from == address`.
    """
    token = Web3.to_checksum_address(token_address)
    sender = Web3.to_checksum_address(address)

    def _scan(w3: Web3) -> list[dict[str, Any]]:
        latest = int(w3.eth.block_number)
        logs = w3.eth.get_logs(
            {
                "fromBlock": max(0, latest - max(0, scan_blocks) + 1),
                "toBlock": latest,
                "address": token,
                "topics": [TRANSFER_TOPIC, _pad_topic(sender)],
            }
        )
        out: list[dict[str, Any]] = []
        for log in reversed(list(logs)):
            topics = log.get("topics") or []
            if len(topics) < 3:
                continue
            (value,) = abi_decode(["uint256"], bytes(log["data"]))
            out.append(
                {
                    "signature": Web3.to_hex(log["transactionHash"]),
                    "source": sender,
                    "destination": _topic_address(topics[2]),
                    "amount": int(value),
                    "mint": token,
                }
            )
            if len(out) >= limit:
                break
        return out

    try:
        return with_any_provider(_scan)
    except Exception as e:
        raise Web3RPCError(f"recent_erc20_transfers failed: {e}") from e


# ---------------------------
# Receipts
# ---------------------------

def get_transaction_status(tx_hash: str) -> str | None:
    """
    "success" / "failed" once mined, None while unknown or pending.
    """

    def _status(w3: Web3) -> str | None:
        try:
            receipt = w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return "success" if int(receipt.get("status", 0)) == 1 else "failed"

    try:
        return with_any_provider(_status)
    except Exception as e:
        raise Web3RPCError(f"get_transaction_status failed: {e}") from e
