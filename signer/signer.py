from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from eth_abi import encode as abi_encode
from web3 import Web3

from app.domain.errors import UpstreamSigningError
from app.domain.models import FungibleAsset, HopWallet, NativeAsset
from chain.abis import ERC20_TRANSFER_SELECTOR
from chain.chains import caip2
from signer.client import SigningServiceClient
from tools.call_runner import run_call


class Signer(ABC):
    """
    "Transfer asset X from hop address A to address B", backed by a remote
    custodial signing service keyed by a per-hop wallet id.
    """

    @abstractmethod
    def create_wallet(self, *, idempotency_key: str | None = None) -> HopWallet: ...

    @abstractmethod
    def transfer(
        self,
        *,
        wallet_id: str,
        from_address: str,
        to_address: str,
        asset: NativeAsset | FungibleAsset,
        amount: int,
        idempotency_key: str,
    ) -> str: ...


def build_transfer_tx(
    *,
    from_address: str,
    to_address: str,
    asset: NativeAsset | FungibleAsset,
    amount: int,
) -> dict[str, Any]:
    """
    Native: value transfer. Fungible: ERC20 transfer(to, amount) call on the mint.
    """
    sender = Web3.to_checksum_address(from_address)
    recipient = Web3.to_checksum_address(to_address)

    if isinstance(asset, FungibleAsset):
        calldata = abi_encode(["address", "uint256"], [recipient, int(amount)])
        return {
            "from": sender,
            "to": Web3.to_checksum_address(asset.mint),
            "value": "0x0",
            "data": ERC20_TRANSFER_SELECTOR + calldata.hex(),
        }

    return {
        "from": sender,
        "to": recipient,
        "value": hex(int(amount)),
    }


class RemoteSigner(Signer):
    def __init__(self, client: SigningServiceClient, *, chain_id: int, sponsor_gas: bool = True):
        self.client = client
        self.chain_id = chain_id
        self.sponsor_gas = sponsor_gas

    def create_wallet(self, *, idempotency_key: str | None = None) -> HopWallet:
        created = run_call(
            call_name="signer.create_wallet",
            request={"chainId": self.chain_id},
            fn=lambda: self.client.create_wallet(idempotency_key=idempotency_key),
            error_cls=UpstreamSigningError,
        )
        return HopWallet(wallet_id=created["walletId"], address=created["address"])

    def transfer(
        self,
        *,
        wallet_id: str,
        from_address: str,
        to_address: str,
        asset: NativeAsset | FungibleAsset,
        amount: int,
        idempotency_key: str,
    ) -> str:
        tx = build_transfer_tx(
            from_address=from_address,
            to_address=to_address,
            asset=asset,
            amount=amount,
        )
        return run_call(
            call_name="signer.sign_and_broadcast",
            request={"walletId": wallet_id, "to": to_address, "asset": asset.model_dump(), "amount": str(amount)},
            fn=lambda: self.client.send_transaction(
                wallet_id=wallet_id,
                caip2=caip2(self.chain_id),
                transaction=tx,
                idempotency_key=idempotency_key,
                sponsor=self.sponsor_gas,
            ),
            error_cls=UpstreamSigningError,
        )
