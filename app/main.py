from fastapi import FastAPI

from api.v1.transfers import router as transfers_router
from app.config import get_settings
from app.core.logging import configure_logging
from app.core.middleware import TransferContextMiddleware


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(title="Hop Transfer Service", version="0.1.0")
    app.add_middleware(TransferContextMiddleware)
    app.include_router(transfers_router, prefix="/v1")

    @app.get("/healthz")
    async def healthz():
        s = get_settings()
        return {
            "ok": True,
            "store": s.transfer_store,
            "db_configured": bool(s.DATABASE_URL),
            "rpc_configured": bool(s.RPC_URL_LIST),
            "signer_configured": bool(s.signer_app_id and s.signer_app_secret),
            "treasury_configured": bool(s.TREASURY_WALLET),
        }

    return app


app = create_app()
