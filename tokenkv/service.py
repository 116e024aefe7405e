"""
Directory HTTP service.

    GET  /healthz   liveness
    POST /lookup    {"provider", "query": {"protectedKey", "history"}} -> [LookupResult]
    POST /submit    {"beef" (hex), "txid", "topics"} -> {"txid", "admitted"}

Each endpoint is rate limited per client address; over-limit requests get 429.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from .config import DEFAULT_TOPICS, DIRECTORY_RPM
from .directory import DirectoryService, InMemoryDirectory
from .errors import DirectoryError, EnvelopeError
from .logging_config import set_operation_id
from .models import LookupRequest, SubmitRequest, SubmitResponse
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def create_app(
    directory: Optional[DirectoryService] = None,
    rpm: int = DIRECTORY_RPM,
    limiter: Optional[RateLimiter] = None
) -> FastAPI:
    app = FastAPI(title="TokenKV Directory")
    app.state.directory = directory or InMemoryDirectory(DEFAULT_TOPICS)
    app.state.limiter = limiter or RateLimiter(rpm)

    def _throttle(request: Request, endpoint: str) -> None:
        client = request.client.host if request.client else "unknown"
        result = app.state.limiter.check(f"{client}:{endpoint}")
        if not result.allowed:
            raise HTTPException(
                429,
                "RATE_LIMIT",
                headers={"Retry-After": str(int(result.retry_after or 0) + 1)},
            )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.post("/lookup")
    async def lookup(req: LookupRequest, request: Request):
        set_operation_id()
        _throttle(request, "lookup")
        try:
            results = await app.state.directory.lookup(
                req.query.protectedKey, history=req.query.history
            )
        except DirectoryError as e:
            raise HTTPException(400, str(e))
        return [r.to_dict() for r in results]

    @app.post("/submit", response_model=SubmitResponse)
    async def submit(req: SubmitRequest, request: Request):
        set_operation_id()
        _throttle(request, "submit")
        try:
            beef = bytes.fromhex(req.beef)
        except ValueError:
            raise HTTPException(400, "beef must be hex")
        try:
            admitted = await app.state.directory.submit(beef, req.txid, req.topics)
        except (DirectoryError, EnvelopeError) as e:
            logger.warning("Rejected submission %s: %s", req.txid, e)
            raise HTTPException(400, str(e))
        return SubmitResponse(txid=req.txid, admitted=admitted)

    return app
