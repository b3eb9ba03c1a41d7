from __future__ import annotations

import re

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.context import set_transfer_id

# routing has not happened yet, so path_params is still empty here
_TRANSFER_PATH = re.compile(r"/transfers/([^/]+)")


class TransferContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        """
        Sets transfer_id into contextvars for the lifetime of the request.

        Priority:
        1. Path segment: /transfers/{transfer_id}
        2. Header: X-Transfer-Id
        """
        match = _TRANSFER_PATH.search(request.url.path)
        transfer_id = match.group(1) if match else request.headers.get("X-Transfer-Id")

        try:
            if transfer_id:
                set_transfer_id(transfer_id)
            return await call_next(request)
        finally:
            set_transfer_id(None)
