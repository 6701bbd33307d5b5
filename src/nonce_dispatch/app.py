import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, NonNegativeInt, PositiveFloat, PositiveInt

from nonce_dispatch.config import Settings, load_settings
from nonce_dispatch.connection import EndpointPool
from nonce_dispatch.constants import ErrorKind
from nonce_dispatch.dispatch import DispatchCoordinator
from nonce_dispatch.errors import DispatchError
from nonce_dispatch.keys import Keypair
from nonce_dispatch.logging_config import setup_logging
from nonce_dispatch.nonce import NonceLedgerReader
from nonce_dispatch.txn_factory import TransferIntent

setup_logging()
log = logging.getLogger("nonce_dispatch.app")

# Caller mistakes; everything else is the remote's fault
CLIENT_ERRORS = {
    ErrorKind.MALFORMED_ACCOUNT,
    ErrorKind.INVALID_ADDRESS,
    ErrorKind.UNKNOWN_ENDPOINT,
    ErrorKind.CONFIG,
}


def _http_error(e: DispatchError) -> HTTPException:
    status = 422 if e.kind in CLIENT_ERRORS else 502
    return HTTPException(status_code=status, detail={"error": e.kind.value, "detail": e.detail})


class DispatchReq(BaseModel):
    recipient: str
    amount: PositiveInt  # lamports
    fee_amount: NonNegativeInt  # lamports, paid to each endpoint's fee recipient
    endpoints: list[str] | None = None
    timeout: PositiveFloat | None = None


def create_app(settings: Settings | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the service. ``transport`` replaces the network for every client (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = settings or load_settings()
        log.info("Opening %s endpoint connections: %s", len(s.endpoints), ", ".join(s.endpoints))
        async with (
            httpx.AsyncClient(timeout=s.rpc_timeout, transport=transport) as rpc,
            EndpointPool(s.endpoints.values(), timeout=s.send_timeout, transport=transport) as pool,
        ):
            app.state.settings = s
            app.state.pool = pool
            app.state.reader = NonceLedgerReader(rpc, s.rpc_url, commitment=s.commitment, timeout=s.rpc_timeout)
            app.state.coordinator = DispatchCoordinator(app.state.reader, pool, send_timeout=s.send_timeout)
            app.state.payer = Keypair.from_secret(s.payer_secret) if s.payer_secret else None
            if app.state.payer is None:
                log.warning("PAYER_SECRET not set, /dispatch is disabled")
            if s.nonce_account is None:
                log.warning("No nonce account configured, /dispatch and /nonce are disabled")
            log.info("Ready")
            try:
                yield
            finally:
                log.info("Shutting down...")
        log.info("Shutdown complete")

    app = FastAPI(
        title="Nonce Dispatch",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Dispatch", "description": "Send a transfer through every landing service"},
            {"name": "State", "description": "Connections and nonce state"},
        ],
    )

    r_dispatch = APIRouter(tags=["Dispatch"])
    r_state = APIRouter(prefix="/state", tags=["State"])

    @app.get("/health")
    def health(request: Request):
        pool: EndpointPool = request.app.state.pool
        return {"status": "ok", "endpoints": len(pool.names)}

    @r_state.get("/endpoints")
    def endpoints(request: Request):
        return request.app.state.pool.stats()

    @r_state.get("/nonce")
    async def nonce(request: Request):
        s: Settings = request.app.state.settings
        if s.nonce_account is None:
            raise HTTPException(status_code=503, detail="nonce account not configured")
        try:
            snap = await request.app.state.reader.read(s.nonce_account)
        except DispatchError as e:
            raise _http_error(e) from e
        return {
            "address": s.nonce_account.address,
            "replay_value": snap.replay_value_b58,
            "authority": snap.authority_address,
            "lamports_per_signature": snap.lamports_per_signature,
        }

    @r_dispatch.post("/dispatch")
    async def dispatch(req: DispatchReq, request: Request):
        s: Settings = request.app.state.settings
        payer: Keypair | None = request.app.state.payer
        if payer is None or s.nonce_account is None:
            raise HTTPException(status_code=503, detail="payer or nonce account not configured")

        intent = TransferIntent(
            payer=payer,
            main_recipient=req.recipient,
            main_amount=req.amount,
            fee_recipients=s.fee_recipients(),
            fee_amount=req.fee_amount,
        )
        coordinator: DispatchCoordinator = request.app.state.coordinator
        try:
            batch = await coordinator.dispatch(intent, s.nonce_account, req.endpoints, timeout=req.timeout)
        except DispatchError as e:
            raise _http_error(e) from e
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return batch.to_dict()

    app.include_router(r_dispatch)
    app.include_router(r_state)
    return app


app = create_app()
