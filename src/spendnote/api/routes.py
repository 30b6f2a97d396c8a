"""REST API endpoints for the spend-note engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from spendnote import __version__
from spendnote.config import configure_logging, get_settings
from spendnote.core.coordinator import SpendCoordinator
from spendnote.core.ledger import InMemoryLedger
from spendnote.exceptions import (
    InvalidInputError,
    InvalidLinkError,
    IssueError,
    LedgerError,
    LedgerUnavailableError,
    StorageUnavailableError,
)
from spendnote.models.schemas import (
    ClaimRequest,
    ClaimResponse,
    IssueRequest,
    IssueResponse,
    LinkRequest,
    LinkResponse,
    NoteInfoResponse,
    StateResponse,
)

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    proof_backend: str
    mock_proofs: bool
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    version: str = __version__


class MessageResponse(BaseModel):
    """Claim message a recipient must sign."""

    message: str


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert Pydantic validation errors (422) to 400 Bad Request."""
    error_messages = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        error_messages.append(f"{field}: {error['msg']}")
    return JSONResponse(status_code=400, content={"detail": "; ".join(error_messages)})


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (LedgerUnavailableError, StorageUnavailableError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, IssueError):
        status = 503 if exc.retryable else 502
        return HTTPException(status_code=status, detail=str(exc))
    if isinstance(exc, LedgerError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")


def create_app(coordinator: Optional[SpendCoordinator] = None) -> FastAPI:
    """
    Build the HTTP application around a coordinator.

    Without a coordinator one is built from settings at startup, talking to
    an in-process ledger.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.coordinator is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            app.state.coordinator = SpendCoordinator.from_settings(settings, InMemoryLedger())
        if not app.state.coordinator.tree.initialized:
            await app.state.coordinator.start()
        yield

    app = FastAPI(
        title="Spend Note API",
        description="Private spend notes with shareable claim links",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    def engine() -> SpendCoordinator:
        return app.state.coordinator

    # ========================================================================
    # System Endpoints
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Check service health and the active proof backend."""
        broker = engine().broker
        return HealthResponse(
            status="operational",
            proof_backend=broker.backend_name,
            mock_proofs=broker.is_mock,
        )

    @app.get("/state", response_model=StateResponse, tags=["System"])
    async def get_state():
        """Current local root, leaf count and ledger root."""
        return StateResponse(**await engine().get_state())

    # ========================================================================
    # Issue Endpoints
    # ========================================================================

    @app.post("/notes", response_model=IssueResponse, tags=["Issue"])
    async def issue_note(request: IssueRequest):
        """
        Create a spend note.

        - **wallet_address**: Sender wallet (0x + 40 hex)
        - **amount**: Amount in base units (defaults to the configured amount)
        """
        try:
            receipt = await engine().issue(request.wallet_address, request.amount)
        except (InvalidInputError, IssueError) as e:
            logger.error("Issue failed: %s", e)
            raise _http_error(e)

        return IssueResponse(
            note_hash=receipt.note_hash,
            leaf_index=receipt.leaf_index,
            merkle_root=receipt.merkle_root,
            nullifier=receipt.nullifier_data.nullifier,
            receipt_id=receipt.receipt_id,
            mock_proof=receipt.proof.is_mock,
        )

    @app.post("/links", response_model=LinkResponse, tags=["Issue"])
    async def create_link(request: LinkRequest):
        """Create a spend note and return a shareable claim link for it."""
        try:
            issued = await engine().generate_link(
                request.wallet_address, request.amount, request.ttl_minutes
            )
        except (InvalidInputError, IssueError) as e:
            logger.error("Link generation failed: %s", e)
            raise _http_error(e)

        return LinkResponse(
            link=issued.link,
            token=issued.token,
            note_hash=issued.receipt.note_hash,
            expires_at=issued.expires_at,
        )

    # ========================================================================
    # Claim Endpoints
    # ========================================================================

    @app.get("/links/{token}", response_model=NoteInfoResponse, tags=["Claim"])
    async def get_note_info(token: str):
        """Describe the note behind a claim link."""
        try:
            info = await engine().get_note_info(token)
        except LedgerUnavailableError as e:
            raise _http_error(e)
        return NoteInfoResponse(
            is_valid=info.is_valid,
            note_hash=info.note_hash,
            amount=info.amount,
            is_spent=info.is_spent,
            error=info.error,
        )

    @app.get("/links/{token}/message", response_model=MessageResponse, tags=["Claim"])
    async def get_claim_message(token: str, claimant: str = Query(..., min_length=1)):
        """Canonical message ``claimant`` must sign to claim the link."""
        try:
            return MessageResponse(message=engine().claim_message(token, claimant))
        except InvalidLinkError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/claims", response_model=ClaimResponse, tags=["Claim"])
    async def claim(request: ClaimRequest):
        """
        Redeem a claim link.

        Rejections (expired, malformed, bad signature, already claimed) are
        returned with ``success`` false rather than as HTTP errors.
        """
        try:
            result = await engine().claim(
                request.token, request.signature, request.recipient_address
            )
        except LedgerError as e:
            logger.error("Claim failed: %s", e)
            raise _http_error(e)
        return ClaimResponse(**result.to_dict())

    return app


# ``uvicorn spendnote.api.routes:app``
app = create_app()
