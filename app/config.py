import json
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # storage
    database_url: str = ""
    transfer_store: str = "sql"  # "sql" | "memory" (memory is for local dev/tests only)
    store_attempts: int = 4
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # ledger
    chain_id: int = 1
    rpc_urls: str = ""  # JSON list, tried in order
    rpc_timeout_s: float = 10.0
    reconcile_lookback: int = 20
    native_scan_blocks: int = 256

    # signing service
    signer_base_url: str = "https://api.privy.io"
    signer_app_id: str = ""
    signer_app_secret: str = ""
    signer_timeout_s: float = 30.0
    signer_sponsor_gas: bool = True  # hop wallets never hold native gas

    # fees
    treasury_wallet: str = ""
    holder_token_mint: str = ""
    fee_bps: int = 50

    # routing parameters
    min_hops: int = 7
    max_hops: int = 12
    min_hop_delay_ms: int = 500
    max_hop_delay_ms: int = 3000
    hop_overhead_ms: int = 2000
    min_total_ms: int = 120_000
    max_total_ms: int = 300_000
    hold_final_hop: bool = True

    # executor
    in_flight_stale_ms: int = 120_000
    funding_signature_timeout_ms: int = 90_000

    # event stream
    sse_keepalive_s: float = 15.0
    sse_queue_size: int = 64

    # logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def DATABASE_URL(self) -> str:
        return self.database_url

    @property
    def RPC_URL_LIST(self) -> list[str]:
        """
        RPC_URLS accepts a JSON list ('["https://a", "https://b"]')
        or a single bare URL.
        """
        raw = (self.rpc_urls or "").strip()
        if not raw:
            return []
        if not raw.startswith("["):
            return [raw.rstrip("/")]
        try:
            data = json.loads(raw)
        except Exception as e:
            raise ValueError("RPC_URLS must be valid JSON") from e
        if not isinstance(data, list):
            raise ValueError("RPC_URLS must be a JSON list")
        return [str(u).rstrip("/") for u in data if str(u).strip()]

    @property
    def TREASURY_WALLET(self) -> str | None:
        return self.treasury_wallet.strip() or None

    @property
    def HOLDER_TOKEN_MINT(self) -> str | None:
        return self.holder_token_mint.strip() or None


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader (process-level).
    """
    return Settings()
