"""
api.py

REST API layer for the SoftwarePar project billing core.

Framework : FastAPI
Auth      : Bearer token.  The token is resolved to a User by the
            get_current_user dependency; here the token is the user's UUID,
            the real token verification lives in the platform's auth
            service.  Every endpoint passes the resolved user id to the
            relevant use case command.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /users                                  - billing projection of platform users
  ├── /projects                               - project CRUD & progress
  │   ├── /{project_id}/timeline              - milestones (drive progress)
  │   ├── /{project_id}/payment-stages        - stage ledger
  │   └── /{project_id}/budget-negotiations   - negotiation chain
  ├── /payment-stages/{stage_id}              - link issuing, manual confirmation
  ├── /budget-negotiations/{negotiation_id}   - respond to a proposal
  ├── /payments/webhook                       - payment gateway callback
  ├── /notifications                          - current-user inbox
  └── /admin                                  - gateway credentials
  /ws                                         - realtime notifications
  /mcp                                        - MCP server

Error handling
--------------
  ValidationError / ValueError       → 422
  NotFoundError                      → 404
  AuthorizationError                 → 403
  InvalidStateTransitionError        → 409
  ConflictError                      → 409
  ConfigurationError                 → 503 (generic message, details logged)
  GatewayError                       → 502 (generic message, details logged)
  Unhandled                          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn api:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Path,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, EmailStr, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    GatewayError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    # Ports
    AbstractNotificationDispatcher,
    AbstractPaymentGateway,
    AbstractUnitOfWork,
    # Use-case commands
    CreatePaymentStagesCommand,
    CreateProjectCommand,
    CreateTimelineItemCommand,
    CreateUserCommand,
    DeleteProjectCommand,
    IssuePaymentLinkCommand,
    ConfirmStagePaidCommand,
    MarkNotificationReadCommand,
    PaymentWebhookCommand,
    ProposeBudgetCommand,
    RespondToNegotiationCommand,
    UpdateProjectProgressCommand,
    UpdateTimelineItemCommand,
    # Use-case classes
    ConfirmStagePaidUseCase,
    CreatePaymentStagesUseCase,
    CreateProjectUseCase,
    CreateTimelineItemUseCase,
    CreateUserUseCase,
    DeleteProjectUseCase,
    GetProjectUseCase,
    GetUserUseCase,
    HandlePaymentWebhookUseCase,
    IssuePaymentLinkUseCase,
    ListNegotiationsUseCase,
    ListNotificationsUseCase,
    ListPaymentStagesUseCase,
    ListProjectsUseCase,
    ListTimelineUseCase,
    ListUsersUseCase,
    MarkNotificationReadUseCase,
    ProposeBudgetUseCase,
    RespondToNegotiationUseCase,
    UpdateProjectProgressUseCase,
    UpdateTimelineItemUseCase,
    require_admin,
)
from channels import EmailChannel, WhatsAppChannel
from config import MercadoPagoConfig, TwilioConfig, VersionedSettings, get_config
from dispatcher import NotificationDispatcher
from gateway import MercadoPagoGateway
from infrastructure import InMemoryUnitOfWork
from model import NegotiationDecision, TimelineStatus, User, UserRole
from realtime import ConnectionRegistry
from service import StageSpec

logger = logging.getLogger(__name__)

GENERIC_UPSTREAM_MESSAGE = (
    "The payment service is temporarily unavailable. "
    "Please try again or contact support."
)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the long-lived collaborators and tear them down on shutdown."""
    config = get_config()
    mercadopago_settings = VersionedSettings(config.mercadopago)
    twilio_settings = VersionedSettings(config.whatsapp)
    registry = ConnectionRegistry()
    gateway = MercadoPagoGateway(mercadopago_settings, config)
    dispatcher = NotificationDispatcher(
        registry,
        email=EmailChannel(config.email),
        whatsapp=WhatsAppChannel(
            twilio_settings, default_link=f"{config.base_url.rstrip('/')}/client/projects"
        ),
    )

    app.state.config = config
    app.state.mercadopago_settings = mercadopago_settings
    app.state.twilio_settings = twilio_settings
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher
    logger.info(f"Billing service started ({config.environment})")

    yield

    await registry.close_all()
    await gateway.aclose()
    logger.info("Billing service stopped")


app = FastAPI(
    title="SoftwarePar Billing API",
    version="1.0.0",
    description=(
        "Staged payments unlocked by project progress, budget negotiation, "
        "payment links and client notifications."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(ValidationError)
async def validation_handler(request, exc: ValidationError):
    return JSONResponse(
        status_code=422, content={"detail": str(exc), "problems": exc.problems}
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_handler(request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidStateTransitionError)
async def invalid_state_handler(request, exc: InvalidStateTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_handler(request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": GENERIC_UPSTREAM_MESSAGE})


@app.exception_handler(GatewayError)
async def gateway_handler(request, exc: GatewayError):
    logger.error(f"Gateway error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": GENERIC_UPSTREAM_MESSAGE})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_dispatcher(request: Request) -> AbstractNotificationDispatcher:
    return request.app.state.dispatcher


def get_gateway(request: Request) -> AbstractPaymentGateway:
    return request.app.state.gateway


_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    uow: AbstractUnitOfWork = Depends(get_uow),
) -> User:
    """Resolve the bearer token (a user UUID) to an active user."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    try:
        user_id = uuid.UUID(credentials.credentials)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token.")
    with uow:
        user = uow.users.get(user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid token.")
    return user


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _check_enum(value: str, enum_cls, field_name: str) -> str:
    valid = {m.value for m in enum_cls}
    if value not in valid:
        raise ValueError(f"{field_name} must be one of: {sorted(valid)}")
    return value


# ---------------------------------------------------------------------------
# User schemas
# ---------------------------------------------------------------------------

class CreateUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    role: str = Field(default=UserRole.CLIENT.value)
    whatsapp_number: Optional[str] = Field(default=None, pattern=r"^\+[1-9]\d{6,14}$")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        return _check_enum(v, UserRole, "role")


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="")
    price: Decimal = Field(..., ge=0, decimal_places=2)
    client_id: Optional[uuid.UUID] = Field(
        default=None, description="Required when an admin creates the project."
    )
    partner_id: Optional[uuid.UUID] = None
    start_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None


class UpdateProgressRequest(BaseModel):
    progress: int = Field(..., description="Completion percentage, 0-100.")


# ---------------------------------------------------------------------------
# Timeline schemas
# ---------------------------------------------------------------------------

class CreateTimelineItemRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="")
    status: str = Field(default=TimelineStatus.PENDING.value)
    estimated_date: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _check_enum(v, TimelineStatus, "status")


class UpdateTimelineItemRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[str] = None
    estimated_date: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_enum(v, TimelineStatus, "status")


# ---------------------------------------------------------------------------
# Payment stage schemas
# ---------------------------------------------------------------------------

class StageSpecRequest(BaseModel):
    name: str
    percentage: int
    required_progress: int


class CreatePaymentStagesRequest(BaseModel):
    stages: Optional[List[StageSpecRequest]] = Field(
        default=None,
        description="Omit to use the default split: 25% each at 0/50/90/100% progress.",
    )


# ---------------------------------------------------------------------------
# Negotiation schemas
# ---------------------------------------------------------------------------

_DECISION_ALIASES = {"accept": "accepted", "reject": "rejected", "counter": "countered"}


class ProposeBudgetRequest(BaseModel):
    proposed_price: Decimal
    message: str = Field(default="", max_length=2000)


class RespondNegotiationRequest(BaseModel):
    decision: str = Field(..., description="accepted | rejected | countered")
    counter_price: Optional[Decimal] = None
    message: str = Field(default="", max_length=2000)

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: str) -> str:
        return _check_enum(_DECISION_ALIASES.get(v, v), NegotiationDecision, "decision")


# ---------------------------------------------------------------------------
# Admin settings schemas
# ---------------------------------------------------------------------------

class MercadoPagoSettingsRequest(BaseModel):
    access_token: Optional[str] = None
    public_key: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_production: Optional[bool] = None


class TwilioSettingsRequest(BaseModel):
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    whatsapp_number: Optional[str] = None
    is_production: Optional[bool] = None


def _masked_mercadopago(settings: VersionedSettings[MercadoPagoConfig]) -> Dict:
    creds = settings.current
    return {
        "version": settings.version,
        "is_production": creds.is_production,
        "has_access_token": bool(creds.access_token),
        "has_public_key": bool(creds.public_key),
        "has_client_id": bool(creds.client_id),
        "has_client_secret": bool(creds.client_secret),
        "has_webhook_secret": bool(creds.webhook_secret),
    }


def _masked_twilio(settings: VersionedSettings[TwilioConfig]) -> Dict:
    creds = settings.current
    return {
        "version": settings.version,
        "is_production": creds.is_production,
        "has_account_sid": bool(creds.account_sid),
        "has_auth_token": bool(creds.auth_token),
        "whatsapp_number": creds.whatsapp_number,
    }


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

user_router = APIRouter(prefix="/users", tags=["Users"])


@user_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a user",
)
def create_user(
    body: CreateUserRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Register the billing projection of a platform user.  The returned id is
    also the bearer token for that user.
    """
    cmd = CreateUserCommand(
        full_name=body.full_name,
        email=str(body.email),
        role=UserRole(body.role),
        whatsapp_number=body.whatsapp_number,
    )
    return _ok(CreateUserUseCase().execute(cmd, uow))


@user_router.get("", summary="List all users")
def list_users(
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    require_admin(current_user)
    return _ok(ListUsersUseCase().execute(uow))


@user_router.get("/{user_id}", summary="Get a user by ID")
def get_user(
    user_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    if current_user.id != user_id:
        require_admin(current_user)
    return _ok(GetUserUseCase().execute(user_id, uow))


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
)
def create_project(
    body: CreateProjectRequest,
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateProjectCommand(
        name=body.name,
        description=body.description,
        price=body.price,
        acting_user_id=current_user.id,
        client_id=body.client_id,
        partner_id=body.partner_id,
        start_date=body.start_date,
        delivery_date=body.delivery_date,
    )
    return _ok(CreateProjectUseCase().execute(cmd, uow))


@project_router.get("", summary="List the projects visible to the current user")
def list_projects(
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListProjectsUseCase().execute(current_user.id, uow))


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetProjectUseCase().execute(project_id, current_user.id, uow))


@project_router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a project and its billing records",
)
def delete_project(
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteProjectUseCase().execute(
        DeleteProjectCommand(project_id=project_id, acting_user_id=current_user.id), uow
    )


@project_router.put("/{project_id}/progress", summary="Set project progress")
async def update_progress(
    body: UpdateProgressRequest,
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
):
    """
    Admin-only.  Stages whose required progress has been reached become
    available and the client is notified once for each.
    """
    cmd = UpdateProjectProgressCommand(
        project_id=project_id, progress=body.progress, acting_user_id=current_user.id
    )
    return _ok(await UpdateProjectProgressUseCase().execute(cmd, uow, dispatcher))


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

timeline_router = APIRouter(prefix="/projects/{project_id}/timeline", tags=["Timeline"])


@timeline_router.get("", summary="List the project timeline")
def list_timeline(
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListTimelineUseCase().execute(project_id, current_user.id, uow))


@timeline_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Add a timeline item",
)
def create_timeline_item(
    body: CreateTimelineItemRequest,
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateTimelineItemCommand(
        project_id=project_id,
        title=body.title,
        acting_user_id=current_user.id,
        description=body.description,
        status=TimelineStatus(body.status),
        estimated_date=body.estimated_date,
    )
    return _ok(CreateTimelineItemUseCase().execute(cmd, uow))


@timeline_router.put("/{item_id}", summary="Update a timeline item")
async def update_timeline_item(
    body: UpdateTimelineItemRequest,
    project_id: uuid.UUID = Path(...),
    item_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
):
    """Completing an item recomputes project progress and re-runs stage gating."""
    cmd = UpdateTimelineItemCommand(
        project_id=project_id,
        item_id=item_id,
        acting_user_id=current_user.id,
        title=body.title,
        description=body.description,
        status=TimelineStatus(body.status) if body.status else None,
        estimated_date=body.estimated_date,
    )
    return _ok(await UpdateTimelineItemUseCase().execute(cmd, uow, dispatcher))


# ---------------------------------------------------------------------------
# Payment stages
# ---------------------------------------------------------------------------

project_stage_router = APIRouter(
    prefix="/projects/{project_id}/payment-stages", tags=["Payment Stages"]
)
stage_router = APIRouter(prefix="/payment-stages", tags=["Payment Stages"])


@project_stage_router.get("", summary="List payment stages by required progress")
def list_payment_stages(
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListPaymentStagesUseCase().execute(project_id, current_user.id, uow))


@project_stage_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create the project's payment stages",
)
async def create_payment_stages(
    body: CreatePaymentStagesRequest,
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
):
    """
    Admin-only.  Percentages must sum to 100; every problem with the list is
    reported at once.  Amounts are frozen from the current project price.
    """
    specs = None
    if body.stages is not None:
        specs = [
            StageSpec(s.name, s.percentage, s.required_progress) for s in body.stages
        ]
    cmd = CreatePaymentStagesCommand(
        project_id=project_id, acting_user_id=current_user.id, stages=specs
    )
    return _ok(await CreatePaymentStagesUseCase().execute(cmd, uow, dispatcher))


@stage_router.post("/{stage_id}/generate-link", summary="Issue a payment link")
async def generate_payment_link(
    stage_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
    gateway: AbstractPaymentGateway = Depends(get_gateway),
):
    """Only available stages get a link; regenerating replaces the old one."""
    cmd = IssuePaymentLinkCommand(stage_id=stage_id, acting_user_id=current_user.id)
    return _ok(await IssuePaymentLinkUseCase().execute(cmd, uow, dispatcher, gateway))


@stage_router.post("/{stage_id}/complete", summary="Confirm a stage as paid")
async def complete_payment_stage(
    stage_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
):
    """Admin-only.  Confirming an already-paid stage returns it unchanged."""
    cmd = ConfirmStagePaidCommand(stage_id=stage_id, acting_user_id=current_user.id)
    return _ok(await ConfirmStagePaidUseCase().execute(cmd, uow, dispatcher))


# ---------------------------------------------------------------------------
# Budget negotiations
# ---------------------------------------------------------------------------

project_negotiation_router = APIRouter(
    prefix="/projects/{project_id}/budget-negotiations", tags=["Budget Negotiation"]
)
negotiation_router = APIRouter(prefix="/budget-negotiations", tags=["Budget Negotiation"])


@project_negotiation_router.get("", summary="List the negotiation chain, newest first")
def list_negotiations(
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListNegotiationsUseCase().execute(project_id, current_user.id, uow))


@project_negotiation_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Propose a new price",
)
async def propose_budget(
    body: ProposeBudgetRequest,
    project_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
):
    cmd = ProposeBudgetCommand(
        project_id=project_id,
        acting_user_id=current_user.id,
        proposed_price=body.proposed_price,
        message=body.message,
    )
    return _ok(await ProposeBudgetUseCase().execute(cmd, uow, dispatcher))


@negotiation_router.put("/{negotiation_id}/respond", summary="Respond to a proposal")
async def respond_to_negotiation(
    body: RespondNegotiationRequest,
    negotiation_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
):
    """
    Accepting sets the project price and starts the project.  Countering
    returns the new pending proposal.
    """
    cmd = RespondToNegotiationCommand(
        negotiation_id=negotiation_id,
        acting_user_id=current_user.id,
        decision=NegotiationDecision(body.decision),
        counter_price=body.counter_price,
        message=body.message,
    )
    return _ok(await RespondToNegotiationUseCase().execute(cmd, uow, dispatcher))


# ---------------------------------------------------------------------------
# Payment gateway webhook
# ---------------------------------------------------------------------------

payment_router = APIRouter(prefix="/payments", tags=["Payments"])


@payment_router.post("/webhook", summary="Payment gateway notification")
async def payment_webhook(
    request: Request,
    uow: AbstractUnitOfWork = Depends(get_uow),
    dispatcher: AbstractNotificationDispatcher = Depends(get_dispatcher),
    gateway: AbstractPaymentGateway = Depends(get_gateway),
):
    """
    Accepts ``{"type": "payment", "data": {"id": ...}}`` in the body or the
    equivalent ``type`` / ``data.id`` query parameters.  Unrelated events are
    acknowledged and ignored; a gateway failure answers 502 so the gateway
    retries the delivery.
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    event_type = body.get("type") or request.query_params.get("type")
    payment_id = data.get("id") or request.query_params.get("data.id")

    result = await HandlePaymentWebhookUseCase().execute(
        PaymentWebhookCommand(
            event_type=event_type,
            payment_id=str(payment_id) if payment_id is not None else None,
        ),
        uow,
        dispatcher,
        gateway,
    )
    return {"message": "Webhook processed", "data": dataclasses.asdict(result)}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

notification_router = APIRouter(prefix="/notifications", tags=["Notifications"])


@notification_router.get("", summary="Current user's notifications, newest first")
def list_notifications(
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListNotificationsUseCase().execute(current_user.id, uow))


@notification_router.put("/{notification_id}/read", summary="Mark a notification as read")
def mark_notification_read(
    notification_id: uuid.UUID = Path(...),
    current_user: User = Depends(get_current_user),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = MarkNotificationReadCommand(
        notification_id=notification_id, acting_user_id=current_user.id
    )
    return _ok(MarkNotificationReadUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Admin: gateway credentials
# ---------------------------------------------------------------------------

admin_router = APIRouter(prefix="/admin", tags=["Admin"])


@admin_router.get("/mercadopago", summary="MercadoPago settings (secrets masked)")
def get_mercadopago_settings(
    request: Request,
    current_user: User = Depends(get_current_user),
):
    require_admin(current_user)
    return _ok(_masked_mercadopago(request.app.state.mercadopago_settings))


@admin_router.put("/mercadopago", summary="Update MercadoPago settings")
def update_mercadopago_settings(
    body: MercadoPagoSettingsRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
):
    """Omitted fields keep their value.  The gateway client is rebuilt on next use."""
    require_admin(current_user)
    settings = request.app.state.mercadopago_settings
    settings.update(**body.model_dump())
    logger.info(f"MercadoPago settings updated by {current_user.id} (v{settings.version})")
    return _ok(_masked_mercadopago(settings))


@admin_router.get("/twilio", summary="Twilio settings (secrets masked)")
def get_twilio_settings(
    request: Request,
    current_user: User = Depends(get_current_user),
):
    require_admin(current_user)
    return _ok(_masked_twilio(request.app.state.twilio_settings))


@admin_router.put("/twilio", summary="Update Twilio settings")
def update_twilio_settings(
    body: TwilioSettingsRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
):
    require_admin(current_user)
    settings = request.app.state.twilio_settings
    settings.update(**body.model_dump())
    logger.info(f"Twilio settings updated by {current_user.id} (v{settings.version})")
    return _ok(_masked_twilio(settings))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(user_router)
api_v1.include_router(project_router)
api_v1.include_router(timeline_router)
api_v1.include_router(project_stage_router)
api_v1.include_router(stage_router)
api_v1.include_router(project_negotiation_router)
api_v1.include_router(negotiation_router)
api_v1.include_router(payment_router)
api_v1.include_router(notification_router)
api_v1.include_router(admin_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server - exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# REALTIME
# ===========================================================================

@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket):
    """
    Clients authenticate with ``{"type": "auth", "userId": "<uuid>"}`` and
    then receive ``{"type": "notification", "data": {...}}`` pushes.
    """
    registry: ConnectionRegistry = websocket.app.state.registry
    await websocket.accept()
    await websocket.send_json({"type": "welcome", "message": "Connected to SoftwarePar"})
    user_id: Optional[uuid.UUID] = None
    try:
        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "auth":
                try:
                    candidate = uuid.UUID(str(message.get("userId")))
                except ValueError:
                    await websocket.send_json({"type": "auth_error", "message": "Invalid user id"})
                    continue
                uow = websocket.app.dependency_overrides.get(get_uow, get_uow)()
                with uow:
                    user = uow.users.get(candidate)
                if user is None or not user.is_active:
                    await websocket.send_json({"type": "auth_error", "message": "Unknown user"})
                    continue
                if user_id is not None:
                    await registry.remove(user_id, websocket)
                user_id = candidate
                await registry.add(user_id, websocket)
                await websocket.send_json({"type": "auth_success", "userId": str(user_id)})
            elif kind == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        if user_id is not None:
            await registry.remove(user_id, websocket)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION - tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Users",
        "description": (
            "The billing view of platform users: name, contact details and role.  "
            "Admins receive negotiation and payment notifications; clients own projects."
        ),
    },
    {
        "name": "Projects",
        "description": (
            "Projects carry the price and the completion percentage that gates "
            "payment stages.  Deleting a project removes its stages, timeline and "
            "negotiations."
        ),
    },
    {
        "name": "Timeline",
        "description": (
            "Project milestones.  Completing one recomputes progress as the share "
            "of completed items."
        ),
    },
    {
        "name": "Payment Stages",
        "description": (
            "Installments of the project price, each unlocked at a progress "
            "threshold: pending → available → paid."
        ),
    },
    {
        "name": "Budget Negotiation",
        "description": (
            "Proposal / counter-proposal chain on a project's price.  Acceptance "
            "sets the price and moves the project to in progress."
        ),
    },
    {
        "name": "Payments",
        "description": "Payment gateway callbacks.  Duplicate deliveries are harmless.",
    },
    {
        "name": "Notifications",
        "description": "The current user's notification inbox.",
    },
    {
        "name": "Admin",
        "description": "Runtime-editable payment and WhatsApp gateway credentials.",
    },
]

app.openapi_tags = tags_metadata
