"""FastAPI application for intent submission, tracking and cancellation."""

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from intentx import __version__
from intentx.errors import IntentError, ValidationError
from intentx.execution.engine import IntentLifecycleEngine
from intentx.execution.intents import IntentRequest, parse_amount
from intentx.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


class CreateIntentBody(BaseModel):
    """POST /intents body. `slippage` is a percent, `slippageBps` wins when both are sent."""

    model_config = ConfigDict(populate_by_name=True)

    source_token: str = Field(alias="sourceToken")
    target_token: str = Field(alias="targetToken")
    source_amount: str | int | float = Field(alias="sourceAmount")
    min_target_amount: str | int | float = Field(alias="minTargetAmount")
    slippage: str | int | float | None = None
    slippage_bps: int | None = Field(default=None, alias="slippageBps")
    user_address: str = Field(alias="userAddress")
    signature: str
    timestamp: int

    def resolve_slippage_bps(self) -> int:
        if self.slippage_bps is not None:
            return self.slippage_bps
        if self.slippage is None:
            raise ValidationError("slippage or slippageBps is required")
        try:
            bps = Decimal(str(self.slippage)) * 100
        except InvalidOperation:
            raise ValidationError(f"slippage is not a number: {self.slippage!r}")
        if not bps.is_finite() or bps != bps.to_integral_value():
            raise ValidationError("slippage must be a whole number of basis points")
        return int(bps)

    def to_request(self) -> IntentRequest:
        return IntentRequest(
            source_token=self.source_token,
            target_token=self.target_token,
            source_amount=parse_amount(self.source_amount, "sourceAmount"),
            min_target_amount=parse_amount(self.min_target_amount, "minTargetAmount"),
            slippage_bps=self.resolve_slippage_bps(),
            user_address=self.user_address,
            timestamp=self.timestamp,
        )


class CancelIntentBody(BaseModel):
    requester: str


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_engine(runtime: Runtime = Depends(get_runtime)) -> IntentLifecycleEngine:
    return runtime.engine


router = APIRouter()


@router.post("/intents", status_code=201)
def create_intent(
    body: CreateIntentBody, engine: IntentLifecycleEngine = Depends(get_engine)
) -> dict[str, Any]:
    """Admit a signed swap intent.

    Returns:
        The created intent (status pending).
    """
    intent = engine.admit(body.to_request(), body.signature)
    return intent.to_dict()


@router.get("/intents/{user_address}")
def list_user_intents(
    user_address: str, engine: IntentLifecycleEngine = Depends(get_engine)
) -> list[dict[str, Any]]:
    """Intents of a user, most recent first."""
    return [intent.to_dict() for intent in engine.list_by_user(user_address)]


@router.get("/intent/{intent_id}")
def get_intent(intent_id: str, engine: IntentLifecycleEngine = Depends(get_engine)) -> dict[str, Any]:
    return engine.get(intent_id).to_dict()


@router.post("/intents/{intent_id}/cancel")
def cancel_intent(
    intent_id: str,
    body: CancelIntentBody,
    engine: IntentLifecycleEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Cancel a pending intent.

    Args:
        intent_id: Intent identifier.
        body: Requester address (must own the intent).

    Returns:
        The cancelled intent.
    """
    intent = engine.cancel(intent_id, body.requester)
    logger.info(
        f"Intent cancelled via API: {intent_id[:8]}",
        extra={"intent_id": intent_id, "requester": body.requester},
    )
    return intent.to_dict()


@router.get("/intents-pending")
def list_pending_intents(engine: IntentLifecycleEngine = Depends(get_engine)) -> list[dict[str, Any]]:
    return [intent.to_dict() for intent in engine.list_pending()]


@router.get("/analytics")
def analytics(
    user_address: str | None = Query(default=None, alias="userAddress"),
    engine: IntentLifecycleEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Aggregate counts, for one user when `userAddress` is given."""
    return engine.analytics(user_address).to_dict()


@router.get("/health")
def health(runtime: Runtime = Depends(get_runtime)) -> Any:
    """Health check endpoint.

    Returns:
        Health status information (503 when unhealthy).
    """
    status_dict = runtime.health.to_dict()
    if not runtime.health.is_healthy:
        return JSONResponse(status_code=503, content=status_dict)
    return status_dict


async def intent_error_handler(request: Request, exc: IntentError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"Request failed: {exc.message}", extra={"path": request.url.path})
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.name, "detail": exc.message},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())[1:])
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"error": ValidationError.__name__, "detail": "; ".join(problems)},
    )


def create_app(runtime: Runtime | None = None, run_scheduler: bool | None = None) -> FastAPI:
    """Create the FastAPI app.

    Startup runs crash recovery, then (optionally) the polling scheduler in
    the app's event loop. Shutdown stops the scheduler and waits for the
    in-flight sweep.

    Args:
        runtime: Runtime to serve (built from settings when omitted).
        run_scheduler: Start the scheduler (defaults to `scheduler_enabled`).

    Returns:
        FastAPI application.
    """
    runtime = runtime or build_runtime()
    if run_scheduler is None:
        run_scheduler = runtime.settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.engine.recover()
        task = None
        if run_scheduler:
            task = asyncio.create_task(runtime.scheduler.run())
        try:
            yield
        finally:
            if task is not None:
                runtime.scheduler.stop()
                await task

    app = FastAPI(
        title="IntentX API",
        description="Signed swap intents with at-most-once execution",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(IntentError, intent_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"name": "IntentX", "version": __version__, "status": "running"}

    # The web client talks to /api/..., scripts to the bare paths.
    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app
