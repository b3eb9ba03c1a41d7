from __future__ import annotations

import secrets
from typing import Any

import requests
from requests.auth import HTTPBasicAuth


class SigningServiceError(RuntimeError):
    pass


def random_idempotency_key(prefix: str) -> str:
    return f"{prefix}:{secrets.token_hex(12)}"


class SigningServiceClient:
    """
    Thin HTTP client for the custodial signing service.

    Wallets live in the service; this process only ever holds wallet ids.
    """

    def __init__(
        self,
        *,
        base_url: str,
        app_id: str,
        app_secret: str,
        timeout_s: float = 30.0,
        session: requests.Session | None = None,
    ):
        if not app_id or not app_secret:
            raise SigningServiceError("SIGNER_APP_ID and SIGNER_APP_SECRET are required")
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.timeout_s = timeout_s
        self._auth = HTTPBasicAuth(app_id, app_secret)
        self._session = session or requests.Session()

    def _fetch_json(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {
            "content-type": "application/json",
            "privy-app-id": self.app_id,
        }
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key

        res = self._session.request(
            method,
            f"{self.base_url}{path}",
            json=body,
            headers=headers,
            auth=self._auth,
            timeout=self.timeout_s,
        )

        try:
            payload = res.json()
        except ValueError:
            payload = None

        if not res.ok:
            msg = None
            if isinstance(payload, dict) and isinstance(payload.get("error"), str):
                msg = payload["error"]
            raise SigningServiceError(msg or f"Signing service request failed ({res.status_code})")

        if not isinstance(payload, dict):
            raise SigningServiceError("Signing service returned a non-object response")
        return payload

    def create_wallet(self, *, chain_type: str = "ethereum", idempotency_key: str | None = None) -> dict[str, str]:
        payload = self._fetch_json(
            "POST",
            "/v1/wallets",
            body={"chain_type": chain_type},
            idempotency_key=idempotency_key or random_idempotency_key("transfer:createWallet"),
        )

        wallet_id = str(payload.get("id") or "").strip()
        address = str(payload.get("address") or "").strip()
        if not wallet_id or not address:
            raise SigningServiceError("Signing service returned an invalid wallet response")

        return {"walletId": wallet_id, "address": address}

    def send_transaction(
        self,
        *,
        wallet_id: str,
        caip2: str,
        transaction: dict[str, Any],
        idempotency_key: str,
        sponsor: bool = False,
    ) -> str:
        if not wallet_id:
            raise SigningServiceError("walletId required")

        body: dict[str, Any] = {
            "method": "eth_sendTransaction",
            "caip2": caip2,
            "params": {"transaction": transaction},
        }
        # gas paid by the app's sponsor account, hop wallets hold no native balance
        if sponsor:
            body["sponsor"] = True

        payload = self._fetch_json(
            "POST",
            f"/v1/wallets/{requests.utils.quote(wallet_id, safe='')}/rpc",
            body=body,
            idempotency_key=idempotency_key,
        )

        tx_hash = str((payload.get("data") or {}).get("hash") or "").strip()
        if not tx_hash:
            raise SigningServiceError("Signing service did not return a transaction hash")
        return tx_hash
