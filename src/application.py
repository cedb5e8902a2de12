"""
application.py

Application layer for the SoftwarePar project billing core.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data the
     presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in
     infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that multiple repository mutations
     inside a single use case are wrapped in one atomic transaction.
  4. Declaring the outbound ports for the payment gateway and the
     notification dispatcher.
  5. Implementing Use Case handlers, one class per user-facing operation,
     that orchestrate service calls, repository reads/writes and
     notifications in the correct order.

Structure
---------
DTOs
    UserDTO, ProjectDTO, PaymentStageDTO, BudgetNegotiationDTO,
    TimelineItemDTO, NotificationDTO, ProgressUpdateDTO, WebhookResultDTO

Repository interfaces
    AbstractUserRepository
    AbstractProjectRepository
    AbstractPaymentStageRepository
    AbstractNegotiationRepository
    AbstractTimelineRepository
    AbstractNotificationRepository

Unit of Work
    AbstractUnitOfWork

Outbound ports
    AbstractPaymentGateway       (PreferenceRequest, PaymentPreference, GatewayPayment)
    AbstractNotificationDispatcher (NotificationEvent, EmailPayload, WhatsAppPayload)

Use Cases
    --- Users ---
    CreateUserUseCase, GetUserUseCase, ListUsersUseCase

    --- Projects & progress ---
    CreateProjectUseCase, GetProjectUseCase, ListProjectsUseCase,
    DeleteProjectUseCase, UpdateProjectProgressUseCase,
    RecomputeProgressUseCase

    --- Timeline ---
    ListTimelineUseCase, CreateTimelineItemUseCase, UpdateTimelineItemUseCase

    --- Stage ledger ---
    ListPaymentStagesUseCase, CreatePaymentStagesUseCase,
    IssuePaymentLinkUseCase, ConfirmStagePaidUseCase,
    HandlePaymentWebhookUseCase

    --- Negotiation ---
    ListNegotiationsUseCase, ProposeBudgetUseCase, RespondToNegotiationUseCase

    --- Notifications ---
    ListNotificationsUseCase, MarkNotificationReadUseCase

Design notes
------------
- Use cases receive commands and return DTOs only.
- Use cases that notify are coroutines.  All repository work happens inside
  one ``with uow:`` block with no awaits in it; gateway calls happen before
  the block and notifications are dispatched after it has committed, so a
  failing side channel never unwinds a core mutation.
- Status changes that must happen exactly once (stage gating, payment
  confirmation, negotiation response) go through the repositories'
  compare-and-set ``save_if_status``.
- Money leaves this layer as a two-decimal string; timestamps as ISO-8601.
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from model import (
    BudgetNegotiation,
    NegotiationDecision,
    NegotiationStatus,
    Notification,
    NotificationSeverity,
    PaymentStage,
    Project,
    ProjectTimelineItem,
    StageStatus,
    TimelineStatus,
    User,
    UserRole,
)
from service import (
    DEFAULT_STAGE_SPECS,
    InvalidStateTransition,
    NegotiationService,
    NotificationService,
    PaymentStageService,
    ProgressService,
    ProjectService,
    StageSpec,
    StateConflict,
    TimelineService,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class ValidationError(ApplicationError):
    """Raised when input is malformed or out of range; nothing was written."""

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class AuthorizationError(ApplicationError):
    """Raised when the acting user lacks the required role or ownership."""


class InvalidStateTransitionError(ApplicationError):
    """Raised when the entity's status does not allow the operation."""


class ConflictError(ApplicationError):
    """Raised when the request collides with existing state."""


class ConfigurationError(ApplicationError):
    """Raised when an external collaborator is missing credentials."""


class GatewayError(ApplicationError):
    """Raised when an external collaborator fails (network, timeout, non-2xx)."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class UserDTO:
    id: str
    full_name: str
    email: str
    role: str
    whatsapp_number: Optional[str]
    is_active: bool


@dataclass
class ProjectDTO:
    id: str
    name: str
    description: str
    price: str
    status: str
    progress: int
    client_id: str
    partner_id: Optional[str]
    start_date: Optional[str]
    delivery_date: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class PaymentStageDTO:
    id: str
    project_id: str
    stage_name: str
    stage_percentage: int
    amount: str
    required_progress: int
    status: str
    payment_link: Optional[str]
    external_payment_id: Optional[str]
    paid_at: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class BudgetNegotiationDTO:
    id: str
    project_id: str
    proposed_by: str
    original_price: str
    proposed_price: str
    message: str
    status: str
    created_at: str
    responded_at: Optional[str]


@dataclass
class TimelineItemDTO:
    id: str
    project_id: str
    title: str
    description: str
    status: str
    estimated_date: Optional[str]
    completed_at: Optional[str]
    created_at: str


@dataclass
class NotificationDTO:
    id: str
    user_id: str
    title: str
    message: str
    type: str
    is_read: bool
    created_at: str


@dataclass
class ProgressUpdateDTO:
    """A project after a progress write, plus the stages that write unlocked."""
    project: ProjectDTO
    unlocked_stages: List[PaymentStageDTO]


@dataclass
class WebhookResultDTO:
    processed: bool
    stage: Optional[PaymentStageDTO] = None
    detail: str = ""


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def user(u: User) -> UserDTO:
        return UserDTO(
            id=str(u.id),
            full_name=u.full_name,
            email=u.email,
            role=u.role.value,
            whatsapp_number=u.whatsapp_number,
            is_active=u.is_active,
        )

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            name=p.name,
            description=p.description,
            price=_money(p.price),
            status=p.status.value,
            progress=p.progress,
            client_id=str(p.client_id),
            partner_id=str(p.partner_id) if p.partner_id else None,
            start_date=_fmt(p.start_date),
            delivery_date=_fmt(p.delivery_date),
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def stage(s: PaymentStage) -> PaymentStageDTO:
        return PaymentStageDTO(
            id=str(s.id),
            project_id=str(s.project_id),
            stage_name=s.stage_name,
            stage_percentage=s.stage_percentage,
            amount=_money(s.amount),
            required_progress=s.required_progress,
            status=s.status.value,
            payment_link=s.payment_link,
            external_payment_id=s.external_payment_id,
            paid_at=_fmt(s.paid_at),
            created_at=_fmt(s.created_at),
            updated_at=_fmt(s.updated_at),
        )

    @staticmethod
    def negotiation(n: BudgetNegotiation) -> BudgetNegotiationDTO:
        return BudgetNegotiationDTO(
            id=str(n.id),
            project_id=str(n.project_id),
            proposed_by=str(n.proposed_by),
            original_price=_money(n.original_price),
            proposed_price=_money(n.proposed_price),
            message=n.message,
            status=n.status.value,
            created_at=_fmt(n.created_at),
            responded_at=_fmt(n.responded_at),
        )

    @staticmethod
    def timeline_item(t: ProjectTimelineItem) -> TimelineItemDTO:
        return TimelineItemDTO(
            id=str(t.id),
            project_id=str(t.project_id),
            title=t.title,
            description=t.description,
            status=t.status.value,
            estimated_date=_fmt(t.estimated_date),
            completed_at=_fmt(t.completed_at),
            created_at=_fmt(t.created_at),
        )

    @staticmethod
    def notification(n: Notification) -> NotificationDTO:
        return NotificationDTO(
            id=str(n.id),
            user_id=str(n.user_id),
            title=n.title,
            message=n.message,
            type=n.type.value,
            is_read=n.is_read,
            created_at=_fmt(n.created_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractUserRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, user_id: uuid.UUID) -> Optional[User]: ...
    @abc.abstractmethod
    def get_by_email(self, email: str) -> Optional[User]: ...
    @abc.abstractmethod
    def list_all(self) -> List[User]: ...
    @abc.abstractmethod
    def list_by_role(self, role: UserRole) -> List[User]: ...
    @abc.abstractmethod
    def save(self, user: User) -> None: ...


class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...
    @abc.abstractmethod
    def update(self, project: Project) -> bool:
        """Write an existing project; returns False if the row is gone."""
    @abc.abstractmethod
    def delete(self, project_id: uuid.UUID) -> None: ...


class AbstractPaymentStageRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, stage_id: uuid.UUID) -> Optional[PaymentStage]: ...
    @abc.abstractmethod
    def get_by_external_id(self, external_id: str) -> Optional[PaymentStage]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[PaymentStage]:
        """Stages ordered by required_progress."""
    @abc.abstractmethod
    def save(self, stage: PaymentStage) -> None: ...
    @abc.abstractmethod
    def save_if_status(self, stage: PaymentStage, expected: StageStatus) -> bool:
        """Write the stage only if the stored status still equals `expected`."""
    @abc.abstractmethod
    def delete_for_project(self, project_id: uuid.UUID) -> None: ...


class AbstractNegotiationRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, negotiation_id: uuid.UUID) -> Optional[BudgetNegotiation]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[BudgetNegotiation]: ...
    @abc.abstractmethod
    def save(self, negotiation: BudgetNegotiation) -> None: ...
    @abc.abstractmethod
    def save_if_status(
        self, negotiation: BudgetNegotiation, expected: NegotiationStatus
    ) -> bool: ...
    @abc.abstractmethod
    def delete_for_project(self, project_id: uuid.UUID) -> None: ...


class AbstractTimelineRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, item_id: uuid.UUID) -> Optional[ProjectTimelineItem]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[ProjectTimelineItem]: ...
    @abc.abstractmethod
    def has_for_project(self, project_id: uuid.UUID) -> bool: ...
    @abc.abstractmethod
    def save(self, item: ProjectTimelineItem) -> None: ...
    @abc.abstractmethod
    def delete_for_project(self, project_id: uuid.UUID) -> None: ...


class AbstractNotificationRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, notification_id: uuid.UUID) -> Optional[Notification]: ...
    @abc.abstractmethod
    def list_for_user(self, user_id: uuid.UUID) -> List[Notification]: ...
    @abc.abstractmethod
    def save(self, notification: Notification) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.projects.save(project)
            uow.commit()
    """
    users: AbstractUserRepository
    projects: AbstractProjectRepository
    stages: AbstractPaymentStageRepository
    negotiations: AbstractNegotiationRepository
    timeline: AbstractTimelineRepository
    notifications: AbstractNotificationRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# OUTBOUND PORTS
# ===========================================================================

@dataclass
class PreferenceRequest:
    amount: Decimal
    description: str
    project_id: uuid.UUID
    payer_email: str
    payer_name: str
    external_reference: Optional[str] = None


@dataclass
class PaymentPreference:
    """A checkout preference created at the payment gateway."""
    external_id: str
    primary_link: Optional[str]
    sandbox_link: Optional[str] = None

    @property
    def link(self) -> Optional[str]:
        return self.primary_link or self.sandbox_link


@dataclass
class GatewayPayment:
    """The authoritative state of one payment, as reported by the gateway."""
    id: str
    status: str
    external_reference: Optional[str] = None
    preference_id: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == "approved"


class AbstractPaymentGateway(abc.ABC):
    """
    Payment link issuer.

    Implementations raise ConfigurationError when credentials are missing and
    GatewayError on network, timeout or API failures.
    """

    @abc.abstractmethod
    async def create_preference(self, request: PreferenceRequest) -> PaymentPreference: ...

    @abc.abstractmethod
    async def get_payment(self, payment_id: str) -> GatewayPayment: ...


@dataclass
class EmailPayload:
    to: str
    subject: str
    template: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WhatsAppPayload:
    to: Optional[str]
    template: str
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationEvent:
    recipient_id: uuid.UUID
    title: str
    message: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    email: Optional[EmailPayload] = None
    whatsapp: Optional[WhatsAppPayload] = None


class AbstractNotificationDispatcher(abc.ABC):
    """
    Persists a notification row and fans the event out to side channels.

    Only the persistence step may raise; side channel failures are logged
    and swallowed.
    """

    @abc.abstractmethod
    async def dispatch(
        self, event: NotificationEvent, uow: AbstractUnitOfWork
    ) -> Notification: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_project_svc = ProjectService()
_progress_svc = ProgressService()
_timeline_svc = TimelineService()
_stage_svc = PaymentStageService()
_negotiation_svc = NegotiationService()
_notification_svc = NotificationService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_user_or_raise(uow: AbstractUnitOfWork, user_id: uuid.UUID) -> User:
    user = uow.users.get(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")
    return user


def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_stage_or_raise(uow: AbstractUnitOfWork, stage_id: uuid.UUID) -> PaymentStage:
    stage = uow.stages.get(stage_id)
    if stage is None:
        raise NotFoundError(f"Payment stage {stage_id} not found.")
    return stage


def _get_negotiation_or_raise(
    uow: AbstractUnitOfWork, negotiation_id: uuid.UUID
) -> BudgetNegotiation:
    negotiation = uow.negotiations.get(negotiation_id)
    if negotiation is None:
        raise NotFoundError(f"Budget negotiation {negotiation_id} not found.")
    return negotiation


def require_admin(actor: User) -> None:
    if actor.role != UserRole.ADMIN:
        raise AuthorizationError("This operation requires the admin role.")


def _require_project_access(actor: User, project: Project) -> None:
    """Admins see every project; clients and partners only their own."""
    if actor.role == UserRole.ADMIN:
        return
    if actor.role == UserRole.CLIENT and project.client_id == actor.id:
        return
    if actor.role == UserRole.PARTNER and project.partner_id == actor.id:
        return
    raise AuthorizationError(f"User {actor.id} has no access to project {project.id}.")


def _require_project_client(actor: User, project: Project) -> None:
    if actor.role == UserRole.ADMIN:
        return
    if actor.role == UserRole.CLIENT and project.client_id == actor.id:
        return
    raise AuthorizationError("Only an admin or the project client may request a payment link.")


def _require_negotiating_party(actor: User, project: Project) -> None:
    if actor.role == UserRole.ADMIN:
        return
    if actor.role == UserRole.CLIENT and project.client_id == actor.id:
        return
    raise AuthorizationError("Only an admin or the project client may negotiate its price.")


def _seed_default_timeline(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> bool:
    """Create the default milestones unless the project already has a timeline."""
    if uow.timeline.has_for_project(project_id):
        return False
    for item in _timeline_svc.default_items(project_id):
        uow.timeline.save(item)
    logger.info(f"Seeded default timeline for project {project_id}")
    return True


def _reevaluate_gating(uow: AbstractUnitOfWork, project: Project) -> List[PaymentStage]:
    """
    Flip every pending stage whose threshold has been reached.

    Each flip is a compare-and-set against PENDING, so a stage is reported
    by at most one caller.
    """
    stages = uow.stages.list_for_project(project.id)
    flipped = []
    for candidate in _stage_svc.stages_to_unlock(stages, project.progress):
        if uow.stages.save_if_status(candidate, StageStatus.PENDING):
            logger.info(
                f"Stage '{candidate.stage_name}' of project {project.id} is now available "
                f"(progress {project.progress}% >= {candidate.required_progress}%)"
            )
            flipped.append(candidate)
    return flipped


def _recompute_progress(
    uow: AbstractUnitOfWork, project_id: uuid.UUID
) -> Tuple[Optional[int], Optional[Project], List[PaymentStage]]:
    items = uow.timeline.list_for_project(project_id)
    progress = _progress_svc.compute_progress(items)
    if progress is None:
        return None, None, []
    project = uow.projects.get(project_id)
    if project is None:
        return progress, None, []
    _project_svc.set_progress(project, progress)
    if not uow.projects.update(project):
        return progress, None, []
    return progress, project, _reevaluate_gating(uow, project)


def _admins(uow: AbstractUnitOfWork) -> List[User]:
    return [u for u in uow.users.list_by_role(UserRole.ADMIN) if u.is_active]


async def _dispatch_all(
    dispatcher: AbstractNotificationDispatcher,
    uow: AbstractUnitOfWork,
    events: Sequence[NotificationEvent],
) -> None:
    for event in events:
        await dispatcher.dispatch(event, uow)


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

def _stage_available_event(
    client: User, project: Project, stage: PaymentStage
) -> NotificationEvent:
    amount = _money(stage.amount)
    context = {
        "user_name": client.full_name,
        "project_name": project.name,
        "stage_name": stage.stage_name,
        "amount": amount,
        "link": stage.payment_link,
    }
    return NotificationEvent(
        recipient_id=client.id,
        title="Payment available",
        message=(
            f"The stage '{stage.stage_name}' of project '{project.name}' "
            f"is ready for payment (${amount})."
        ),
        severity=NotificationSeverity.SUCCESS,
        email=EmailPayload(
            to=client.email,
            subject=f"Payment available - {project.name}",
            template="payment_available.html",
            context=context,
        ),
        whatsapp=WhatsAppPayload(
            to=client.whatsapp_number, template="payment_reminder", variables=context
        ),
    )


def _link_issued_event(
    client: User, project: Project, stage: PaymentStage
) -> NotificationEvent:
    amount = _money(stage.amount)
    context = {
        "user_name": client.full_name,
        "project_name": project.name,
        "stage_name": stage.stage_name,
        "amount": amount,
        "link": stage.payment_link,
    }
    return NotificationEvent(
        recipient_id=client.id,
        title="Payment link ready",
        message=(
            f"Your payment link for '{stage.stage_name}' of project "
            f"'{project.name}' (${amount}) is ready."
        ),
        severity=NotificationSeverity.INFO,
        email=EmailPayload(
            to=client.email,
            subject=f"Payment link - {stage.stage_name}",
            template="payment_link.html",
            context=context,
        ),
        whatsapp=WhatsAppPayload(
            to=client.whatsapp_number, template="payment_reminder", variables=context
        ),
    )


def _stage_paid_events(
    client: Optional[User], admins: Sequence[User], project: Project, stage: PaymentStage
) -> List[NotificationEvent]:
    amount = _money(stage.amount)
    events = []
    if client is not None:
        context = {
            "user_name": client.full_name,
            "project_name": project.name,
            "stage_name": stage.stage_name,
            "amount": amount,
        }
        events.append(NotificationEvent(
            recipient_id=client.id,
            title="Payment received",
            message=(
                f"We received your payment of ${amount} for '{stage.stage_name}' "
                f"of project '{project.name}'."
            ),
            severity=NotificationSeverity.SUCCESS,
            email=EmailPayload(
                to=client.email,
                subject=f"Payment received - {project.name}",
                template="payment_confirmed.html",
                context=context,
            ),
            whatsapp=WhatsAppPayload(
                to=client.whatsapp_number, template="payment_confirmed", variables=context
            ),
        ))
    for admin in admins:
        events.append(NotificationEvent(
            recipient_id=admin.id,
            title="Stage paid",
            message=(
                f"Stage '{stage.stage_name}' of project '{project.name}' "
                f"was paid (${amount})."
            ),
            severity=NotificationSeverity.SUCCESS,
        ))
    return events


def _proposal_events(
    recipients: Sequence[User],
    project: Project,
    negotiation: BudgetNegotiation,
    is_counter: bool,
) -> List[NotificationEvent]:
    amount = _money(negotiation.proposed_price)
    title = "Counter-offer received" if is_counter else "New budget proposal"
    kind = "a counter-offer" if is_counter else "a new budget proposal"
    events = []
    for user in recipients:
        context = {
            "user_name": user.full_name,
            "project_name": project.name,
            "amount": amount,
            "is_counter": is_counter,
            "message": negotiation.message,
        }
        events.append(NotificationEvent(
            recipient_id=user.id,
            title=title,
            message=f"Project '{project.name}' has {kind} of ${amount}.",
            severity=NotificationSeverity.WARNING,
            email=EmailPayload(
                to=user.email,
                subject=f"{title} - {project.name}",
                template="budget_negotiation.html",
                context=context,
            ),
            whatsapp=WhatsAppPayload(
                to=user.whatsapp_number, template="budget_negotiation", variables=context
            ),
        ))
    return events


def _negotiation_result_event(
    proposer: User, project: Project, negotiation: BudgetNegotiation
) -> NotificationEvent:
    accepted = negotiation.status == NegotiationStatus.ACCEPTED
    amount = _money(negotiation.proposed_price)
    verdict = "accepted" if accepted else "rejected"
    return NotificationEvent(
        recipient_id=proposer.id,
        title=f"Budget proposal {verdict}",
        message=f"Your proposal of ${amount} for project '{project.name}' was {verdict}.",
        severity=NotificationSeverity.SUCCESS if accepted else NotificationSeverity.WARNING,
        email=EmailPayload(
            to=proposer.email,
            subject=f"Budget proposal {verdict} - {project.name}",
            template="negotiation_result.html",
            context={
                "user_name": proposer.full_name,
                "project_name": project.name,
                "amount": amount,
                "accepted": accepted,
            },
        ),
    )


def _stage_available_events(
    uow: AbstractUnitOfWork, project: Project, stages: Sequence[PaymentStage]
) -> List[NotificationEvent]:
    if not stages:
        return []
    client = uow.users.get(project.client_id)
    if client is None:
        logger.warning(f"Client {project.client_id} of project {project.id} not found")
        return []
    return [_stage_available_event(client, project, s) for s in stages]


# ===========================================================================
# USE CASES: USERS
# ===========================================================================

@dataclass
class CreateUserCommand:
    full_name: str
    email: str
    role: UserRole = UserRole.CLIENT
    whatsapp_number: Optional[str] = None


class CreateUserUseCase:
    """Register the billing projection of a platform user."""

    def execute(self, cmd: CreateUserCommand, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            if not cmd.full_name.strip():
                raise ValidationError("full_name must not be empty.")
            if uow.users.get_by_email(cmd.email) is not None:
                raise ConflictError(f"A user with email '{cmd.email}' already exists.")
            user = User(
                full_name=cmd.full_name,
                email=cmd.email,
                role=cmd.role,
                whatsapp_number=cmd.whatsapp_number,
            )
            uow.users.save(user)
            uow.commit()
            return _Assembler.user(user)


class GetUserUseCase:
    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            return _Assembler.user(_get_user_or_raise(uow, user_id))


class ListUsersUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[UserDTO]:
        with uow:
            return [_Assembler.user(u) for u in uow.users.list_all()]


# ===========================================================================
# USE CASES: PROJECTS & PROGRESS
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    description: str
    price: Any
    acting_user_id: uuid.UUID
    client_id: Optional[uuid.UUID] = None
    partner_id: Optional[uuid.UUID] = None
    start_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None


class CreateProjectUseCase:
    """
    Create a project.  Admins create on behalf of any client; a client
    always creates for themselves.
    """

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            if actor.role == UserRole.CLIENT:
                client_id = actor.id
            elif actor.role == UserRole.ADMIN:
                if cmd.client_id is None:
                    raise ValidationError("client_id is required.")
                client_id = cmd.client_id
            else:
                raise AuthorizationError("Partners cannot create projects.")

            client = _get_user_or_raise(uow, client_id)
            if client.role != UserRole.CLIENT:
                raise ValidationError(f"User {client_id} is not a client.")
            if cmd.partner_id is not None:
                _get_user_or_raise(uow, cmd.partner_id)

            try:
                project = _project_svc.create_project(
                    name=cmd.name,
                    description=cmd.description,
                    price=cmd.price,
                    client_id=client_id,
                    partner_id=cmd.partner_id,
                    start_date=cmd.start_date,
                    delivery_date=cmd.delivery_date,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.projects.save(project)
            uow.commit()
            return _Assembler.project(project)


class GetProjectUseCase:
    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> ProjectDTO:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            project = _get_project_or_raise(uow, project_id)
            _require_project_access(actor, project)
            return _Assembler.project(project)


class ListProjectsUseCase:
    def execute(self, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            projects = uow.projects.list_all()
            if actor.role == UserRole.CLIENT:
                projects = [p for p in projects if p.client_id == actor.id]
            elif actor.role == UserRole.PARTNER:
                projects = [p for p in projects if p.partner_id == actor.id]
            return [_Assembler.project(p) for p in projects]


@dataclass
class DeleteProjectCommand:
    project_id: uuid.UUID
    acting_user_id: uuid.UUID


class DeleteProjectUseCase:
    """Delete a project together with its stages, timeline and negotiations."""

    def execute(self, cmd: DeleteProjectCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            require_admin(_get_user_or_raise(uow, cmd.acting_user_id))
            _get_project_or_raise(uow, cmd.project_id)
            uow.stages.delete_for_project(cmd.project_id)
            uow.timeline.delete_for_project(cmd.project_id)
            uow.negotiations.delete_for_project(cmd.project_id)
            uow.projects.delete(cmd.project_id)
            uow.commit()
            logger.info(f"Deleted project {cmd.project_id} and its billing records")


@dataclass
class UpdateProjectProgressCommand:
    project_id: uuid.UUID
    progress: int
    acting_user_id: uuid.UUID


class UpdateProjectProgressUseCase:
    """
    Admin sets the project progress directly; newly reached stages unlock
    and the client is notified once per unlocked stage.
    """

    async def execute(
        self,
        cmd: UpdateProjectProgressCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> ProgressUpdateDTO:
        with uow:
            require_admin(_get_user_or_raise(uow, cmd.acting_user_id))
            project = _get_project_or_raise(uow, cmd.project_id)
            try:
                _project_svc.set_progress(project, cmd.progress)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if not uow.projects.update(project):
                raise NotFoundError(f"Project {cmd.project_id} not found.")
            flipped = _reevaluate_gating(uow, project)
            events = _stage_available_events(uow, project, flipped)
            uow.commit()

        await _dispatch_all(dispatcher, uow, events)
        return ProgressUpdateDTO(
            project=_Assembler.project(project),
            unlocked_stages=[_Assembler.stage(s) for s in flipped],
        )


class RecomputeProgressUseCase:
    """
    Derive progress from the timeline and run stage gating.

    Returns the new percentage, or None when the project has no timeline
    items (nothing is written in that case).
    """

    async def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> Optional[int]:
        with uow:
            progress, project, flipped = _recompute_progress(uow, project_id)
            events = _stage_available_events(uow, project, flipped) if project else []
            uow.commit()
        await _dispatch_all(dispatcher, uow, events)
        return progress


# ===========================================================================
# USE CASES: TIMELINE
# ===========================================================================

class ListTimelineUseCase:
    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[TimelineItemDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            project = _get_project_or_raise(uow, project_id)
            _require_project_access(actor, project)
            return [_Assembler.timeline_item(t) for t in uow.timeline.list_for_project(project_id)]


@dataclass
class CreateTimelineItemCommand:
    project_id: uuid.UUID
    title: str
    acting_user_id: uuid.UUID
    description: str = ""
    status: TimelineStatus = TimelineStatus.PENDING
    estimated_date: Optional[datetime] = None


class CreateTimelineItemUseCase:
    def execute(self, cmd: CreateTimelineItemCommand, uow: AbstractUnitOfWork) -> TimelineItemDTO:
        with uow:
            require_admin(_get_user_or_raise(uow, cmd.acting_user_id))
            _get_project_or_raise(uow, cmd.project_id)
            try:
                item = _timeline_svc.create_item(
                    project_id=cmd.project_id,
                    title=cmd.title,
                    description=cmd.description,
                    status=cmd.status,
                    estimated_date=cmd.estimated_date,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.timeline.save(item)
            uow.commit()
            return _Assembler.timeline_item(item)


@dataclass
class UpdateTimelineItemCommand:
    project_id: uuid.UUID
    item_id: uuid.UUID
    acting_user_id: uuid.UUID
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TimelineStatus] = None
    estimated_date: Optional[datetime] = None


class UpdateTimelineItemUseCase:
    """
    Update a milestone.  Setting its status to completed recomputes the
    project progress, which in turn runs stage gating.
    """

    async def execute(
        self,
        cmd: UpdateTimelineItemCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> TimelineItemDTO:
        events: List[NotificationEvent] = []
        with uow:
            require_admin(_get_user_or_raise(uow, cmd.acting_user_id))
            item = uow.timeline.get(cmd.item_id)
            if item is None or item.project_id != cmd.project_id:
                raise NotFoundError(
                    f"Timeline item {cmd.item_id} not found in project {cmd.project_id}."
                )
            try:
                item, completed_now = _timeline_svc.update_item(
                    item,
                    title=cmd.title,
                    description=cmd.description,
                    status=cmd.status,
                    estimated_date=cmd.estimated_date,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.timeline.save(item)
            if completed_now:
                _, project, flipped = _recompute_progress(uow, cmd.project_id)
                if project is not None:
                    events = _stage_available_events(uow, project, flipped)
            uow.commit()

        await _dispatch_all(dispatcher, uow, events)
        return _Assembler.timeline_item(item)


# ===========================================================================
# USE CASES: STAGE LEDGER
# ===========================================================================

class ListPaymentStagesUseCase:
    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[PaymentStageDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            project = _get_project_or_raise(uow, project_id)
            _require_project_access(actor, project)
            return [_Assembler.stage(s) for s in uow.stages.list_for_project(project_id)]


@dataclass
class CreatePaymentStagesCommand:
    project_id: uuid.UUID
    acting_user_id: uuid.UUID
    stages: Optional[List[StageSpec]] = None


class CreatePaymentStagesUseCase:
    """
    Build the project's stage ledger from a list of specs (or the default
    four-stage split).  The specs are validated as a whole before anything
    is written.  Stages whose threshold is already met start available and
    the client is told about each of them.
    """

    async def execute(
        self,
        cmd: CreatePaymentStagesCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> List[PaymentStageDTO]:
        specs = list(DEFAULT_STAGE_SPECS) if cmd.stages is None else list(cmd.stages)
        with uow:
            require_admin(_get_user_or_raise(uow, cmd.acting_user_id))
            problems = _stage_svc.validate_specs(specs)
            if problems:
                raise ValidationError("Invalid payment stage list.", problems)
            project = _get_project_or_raise(uow, cmd.project_id)
            if uow.stages.list_for_project(project.id):
                raise ConflictError(f"Project {project.id} already has payment stages.")

            stages = _stage_svc.create_stages(project, specs)
            for stage in stages:
                uow.stages.save(stage)
            _seed_default_timeline(uow, project.id)

            available = [s for s in stages if s.status == StageStatus.AVAILABLE]
            available += _reevaluate_gating(uow, project)
            events = _stage_available_events(uow, project, available)
            stages = uow.stages.list_for_project(project.id)
            uow.commit()
            logger.info(f"Created {len(stages)} payment stages for project {project.id}")

        await _dispatch_all(dispatcher, uow, events)
        return [_Assembler.stage(s) for s in stages]


@dataclass
class IssuePaymentLinkCommand:
    stage_id: uuid.UUID
    acting_user_id: uuid.UUID


class IssuePaymentLinkUseCase:
    """
    Obtain a checkout link from the payment gateway for an available stage
    and store it on the stage, replacing any earlier link.
    """

    async def execute(
        self,
        cmd: IssuePaymentLinkCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
        gateway: AbstractPaymentGateway,
    ) -> PaymentStageDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            stage = _get_stage_or_raise(uow, cmd.stage_id)
            project = _get_project_or_raise(uow, stage.project_id)
            _require_project_client(actor, project)
            client = _get_user_or_raise(uow, project.client_id)
            try:
                _stage_svc.ensure_link_issuable(stage)
            except InvalidStateTransition as exc:
                raise InvalidStateTransitionError(str(exc)) from exc

        preference = await gateway.create_preference(
            PreferenceRequest(
                amount=stage.amount,
                description=f"{stage.stage_name} - {project.name}",
                project_id=project.id,
                payer_email=client.email,
                payer_name=client.full_name,
                external_reference=f"stage-{stage.id}",
            )
        )
        if not preference.link:
            raise GatewayError(f"Gateway preference {preference.external_id} has no link.")

        with uow:
            stage = _get_stage_or_raise(uow, cmd.stage_id)
            try:
                _stage_svc.ensure_link_issuable(stage)
            except InvalidStateTransition as exc:
                raise InvalidStateTransitionError(str(exc)) from exc
            _stage_svc.attach_link(stage, preference.external_id, preference.link)
            if not uow.stages.save_if_status(stage, StageStatus.AVAILABLE):
                raise InvalidStateTransitionError(
                    f"Payment stage {stage.id} changed status while its link was issued."
                )
            uow.commit()
            logger.info(
                f"Issued payment link for stage {stage.id} (preference {preference.external_id})"
            )

        await dispatcher.dispatch(_link_issued_event(client, project, stage), uow)
        return _Assembler.stage(stage)


def _confirm_paid(
    uow: AbstractUnitOfWork, stage_id: uuid.UUID
) -> Tuple[PaymentStage, bool]:
    """
    Check-and-set the stage to PAID.  Returns the stage and whether this
    call performed the transition.
    """
    for _ in range(3):
        stage = _get_stage_or_raise(uow, stage_id)
        previous = stage.status
        if not _stage_svc.mark_paid(stage):
            return stage, False
        if uow.stages.save_if_status(stage, previous):
            logger.info(f"Payment stage {stage.id} marked as paid")
            return stage, True
    raise ConflictError(f"Payment stage {stage_id} is being modified concurrently.")


def _stage_paid_notifications(
    uow: AbstractUnitOfWork, stage: PaymentStage
) -> List[NotificationEvent]:
    project = uow.projects.get(stage.project_id)
    if project is None:
        return []
    client = uow.users.get(project.client_id)
    return _stage_paid_events(client, _admins(uow), project, stage)


@dataclass
class ConfirmStagePaidCommand:
    stage_id: uuid.UUID
    acting_user_id: uuid.UUID


class ConfirmStagePaidUseCase:
    """Manual confirmation by an admin (e.g. a bank transfer)."""

    async def execute(
        self,
        cmd: ConfirmStagePaidCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> PaymentStageDTO:
        with uow:
            require_admin(_get_user_or_raise(uow, cmd.acting_user_id))
            stage, changed = _confirm_paid(uow, cmd.stage_id)
            events = _stage_paid_notifications(uow, stage) if changed else []
            uow.commit()

        await _dispatch_all(dispatcher, uow, events)
        return _Assembler.stage(stage)


@dataclass
class PaymentWebhookCommand:
    event_type: Optional[str]
    payment_id: Optional[str]


def _stage_id_from_reference(reference: Optional[str]) -> Optional[uuid.UUID]:
    if not reference or not reference.startswith("stage-"):
        return None
    try:
        return uuid.UUID(reference[len("stage-"):])
    except ValueError:
        return None


class HandlePaymentWebhookUseCase:
    """
    Gateway callback.  The payment is re-read from the gateway; an approved
    payment confirms the matching stage.  Duplicate deliveries are no-ops.
    """

    async def execute(
        self,
        cmd: PaymentWebhookCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
        gateway: AbstractPaymentGateway,
    ) -> WebhookResultDTO:
        if cmd.event_type != "payment" or not cmd.payment_id:
            return WebhookResultDTO(processed=False, detail="ignored event")

        payment = await gateway.get_payment(cmd.payment_id)
        if not payment.approved:
            logger.info(f"Payment {payment.id} is {payment.status}; nothing to confirm")
            return WebhookResultDTO(processed=False, detail=f"payment {payment.status}")

        with uow:
            stage = None
            stage_id = _stage_id_from_reference(payment.external_reference)
            if stage_id is not None:
                stage = uow.stages.get(stage_id)
            if stage is None and payment.preference_id:
                stage = uow.stages.get_by_external_id(payment.preference_id)
            if stage is None:
                logger.warning(
                    f"Approved payment {payment.id} (reference {payment.external_reference}) "
                    "matches no payment stage"
                )
                return WebhookResultDTO(processed=False, detail="unknown stage")

            stage, changed = _confirm_paid(uow, stage.id)
            events = _stage_paid_notifications(uow, stage) if changed else []
            uow.commit()

        await _dispatch_all(dispatcher, uow, events)
        return WebhookResultDTO(processed=changed, stage=_Assembler.stage(stage))


# ===========================================================================
# USE CASES: NEGOTIATION
# ===========================================================================

class ListNegotiationsUseCase:
    def execute(
        self, project_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[BudgetNegotiationDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            project = _get_project_or_raise(uow, project_id)
            _require_project_access(actor, project)
            rows = _negotiation_svc.chain(uow.negotiations.list_for_project(project_id))
            return [_Assembler.negotiation(n) for n in rows]


def _other_party(uow: AbstractUnitOfWork, actor: User, project: Project) -> List[User]:
    """A client's move is answered by the admins; an admin's by the client."""
    if actor.role == UserRole.ADMIN:
        client = uow.users.get(project.client_id)
        return [client] if client else []
    return _admins(uow)


@dataclass
class ProposeBudgetCommand:
    project_id: uuid.UUID
    acting_user_id: uuid.UUID
    proposed_price: Any
    message: str = ""


class ProposeBudgetUseCase:
    async def execute(
        self,
        cmd: ProposeBudgetCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> BudgetNegotiationDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            project = _get_project_or_raise(uow, cmd.project_id)
            _require_negotiating_party(actor, project)
            try:
                negotiation = _negotiation_svc.propose(
                    project,
                    proposer_id=actor.id,
                    price=cmd.proposed_price,
                    message=cmd.message,
                    existing=uow.negotiations.list_for_project(project.id),
                )
            except StateConflict as exc:
                raise ConflictError(str(exc)) from exc
            except InvalidStateTransition as exc:
                raise InvalidStateTransitionError(str(exc)) from exc
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.negotiations.save(negotiation)
            uow.projects.update(project)
            events = _proposal_events(
                _other_party(uow, actor, project), project, negotiation, is_counter=False
            )
            uow.commit()
            logger.info(
                f"Budget proposal {negotiation.id} on project {project.id}: "
                f"{negotiation.original_price} -> {negotiation.proposed_price}"
            )

        await _dispatch_all(dispatcher, uow, events)
        return _Assembler.negotiation(negotiation)


@dataclass
class RespondToNegotiationCommand:
    negotiation_id: uuid.UUID
    acting_user_id: uuid.UUID
    decision: NegotiationDecision
    counter_price: Any = None
    message: str = ""


class RespondToNegotiationUseCase:
    """
    Accept, reject or counter a pending proposal.

    The pending status is re-checked by compare-and-set before the project
    price is touched, so a negotiation is resolved at most once.
    """

    async def execute(
        self,
        cmd: RespondToNegotiationCommand,
        uow: AbstractUnitOfWork,
        dispatcher: AbstractNotificationDispatcher,
    ) -> BudgetNegotiationDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            negotiation = _get_negotiation_or_raise(uow, cmd.negotiation_id)
            project = _get_project_or_raise(uow, negotiation.project_id)
            _require_negotiating_party(actor, project)
            if negotiation.proposed_by == actor.id:
                raise AuthorizationError("You cannot respond to your own proposal.")

            try:
                negotiation, counter = _negotiation_svc.respond(
                    negotiation,
                    decision=cmd.decision,
                    responder_id=actor.id,
                    counter_price=cmd.counter_price,
                    message=cmd.message,
                )
                if cmd.decision == NegotiationDecision.ACCEPTED:
                    _negotiation_svc.apply_acceptance(project, negotiation)
            except InvalidStateTransition as exc:
                raise InvalidStateTransitionError(str(exc)) from exc
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

            if not uow.negotiations.save_if_status(negotiation, NegotiationStatus.PENDING):
                raise InvalidStateTransitionError(
                    f"Negotiation {negotiation.id} is already resolved."
                )

            events: List[NotificationEvent] = []
            if cmd.decision == NegotiationDecision.ACCEPTED:
                uow.projects.update(project)
                _seed_default_timeline(uow, project.id)
            if counter is not None:
                uow.negotiations.save(counter)
                events = _proposal_events(
                    _other_party(uow, actor, project), project, counter, is_counter=True
                )
            else:
                proposer = uow.users.get(negotiation.proposed_by)
                if proposer is not None:
                    events = [_negotiation_result_event(proposer, project, negotiation)]
            uow.commit()
            logger.info(
                f"Negotiation {negotiation.id} on project {project.id} "
                f"{negotiation.status.value} by {actor.id}"
            )

        await _dispatch_all(dispatcher, uow, events)
        return _Assembler.negotiation(counter if counter is not None else negotiation)


# ===========================================================================
# USE CASES: NOTIFICATIONS
# ===========================================================================

class ListNotificationsUseCase:
    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[NotificationDTO]:
        with uow:
            rows = _notification_svc.inbox(uow.notifications.list_for_user(user_id))
            return [_Assembler.notification(n) for n in rows]


@dataclass
class MarkNotificationReadCommand:
    notification_id: uuid.UUID
    acting_user_id: uuid.UUID


class MarkNotificationReadUseCase:
    def execute(self, cmd: MarkNotificationReadCommand, uow: AbstractUnitOfWork) -> NotificationDTO:
        with uow:
            notification = uow.notifications.get(cmd.notification_id)
            if notification is None or notification.user_id != cmd.acting_user_id:
                raise NotFoundError(f"Notification {cmd.notification_id} not found.")
            notification.is_read = True
            uow.notifications.save(notification)
            uow.commit()
            return _Assembler.notification(notification)


def build_notification(event: NotificationEvent) -> Notification:
    """The persisted row for a dispatched event."""
    return _notification_svc.build(
        user_id=event.recipient_id,
        title=event.title,
        message=event.message,
        severity=event.severity,
    )
