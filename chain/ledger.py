from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from app.domain.models import FungibleAsset, NativeAsset
from chain import rpc


class LedgerTransfer(BaseModel):
    signature: str
    source: str
    destination: str
    amount: int
    # None for native transfers
    mint: str | None = None


class Ledger(ABC):
    """
    Read-only ledger RPC contract used by ChainProbe.
    """

    @abstractmethod
    def get_balance(self, address: str, asset: NativeAsset | FungibleAsset) -> int: ...

    @abstractmethod
    def get_recent_transfers(
        self,
        address: str,
        limit: int,
        *,
        asset: NativeAsset | FungibleAsset | None = None,
    ) -> list[LedgerTransfer]: ...

    @abstractmethod
    def get_signature_status(self, signature: str) -> str | None: ...


class Web3Ledger(Ledger):
    """
    EVM ledger over web3 JSON-RPC. Native = chain coin, Fungible = ERC20.
    """

    def __init__(self, *, scan_blocks: int = 256):
        self.scan_blocks = scan_blocks

    def get_balance(self, address: str, asset: NativeAsset | FungibleAsset) -> int:
        if isinstance(asset, FungibleAsset):
            return rpc.erc20_balance(asset.mint, address)
        return rpc.get_native_balance(address)

    def get_recent_transfers(
        self,
        address: str,
        limit: int,
        *,
        asset: NativeAsset | FungibleAsset | None = None,
    ) -> list[LedgerTransfer]:
        if isinstance(asset, FungibleAsset):
            rows = rpc.recent_erc20_transfers(asset.mint, address, limit=limit, scan_blocks=self.scan_blocks)
        else:
            rows = rpc.recent_native_transfers(address, limit=limit, scan_blocks=self.scan_blocks)
        return [LedgerTransfer.model_validate(r) for r in rows]

    def get_signature_status(self, signature: str) -> str | None:
        return rpc.get_transaction_status(signature)
