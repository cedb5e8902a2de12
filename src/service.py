"""
service.py

Service layer for the SoftwarePar project billing core.

Responsibilities
----------------
Each service class encapsulates the business rules for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here; callers are responsible for storing
and retrieving models via a repository layer of their choosing.

Services
--------
- ProjectService       – Project creation and manual progress updates
- ProgressService      – Timeline-driven progress percentage (Progress Tracker)
- TimelineService      – Timeline items, completion stamping, default seed
- PaymentStageService  – Stage creation, progress gating, link and payment
                         state changes (Stage Ledger)
- NegotiationService   – Proposal / counter-proposal state machine
                         (Negotiation Engine)
- NotificationService  – Notification row construction

Design notes
------------
- UTC datetimes are used throughout.
- Validation failures raise ValueError with a descriptive message.
- Operations attempted from the wrong status raise InvalidStateTransition.
- Requests that collide with existing state raise StateConflict.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional, Sequence, Tuple

from model import (
    BudgetNegotiation,
    NegotiationDecision,
    NegotiationStatus,
    Notification,
    NotificationSeverity,
    PaymentStage,
    Project,
    ProjectStatus,
    ProjectTimelineItem,
    StageStatus,
    TimelineStatus,
)


CENTS = Decimal("0.01")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InvalidStateTransition(ValueError):
    """Raised when an entity's current status does not allow the operation."""


class StateConflict(ValueError):
    """Raised when the request collides with existing state."""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value) -> Decimal:
    """Coerce a number or numeric string to a 2-dp Decimal."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"'{value}' is not a valid amount.") from exc
    if not amount.is_finite():
        raise ValueError(f"'{value}' is not a valid amount.")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _require_percentage(value: int, field_name: str) -> None:
    if not (0 <= value <= 100):
        raise ValueError(f"{field_name} must be between 0 and 100.")


# ---------------------------------------------------------------------------
# ProjectService
# ---------------------------------------------------------------------------

class ProjectService:
    """
    Manages project creation and the admin-driven progress field.
    """

    def create_project(
        self,
        name: str,
        description: str,
        price,
        client_id: uuid.UUID,
        partner_id: Optional[uuid.UUID] = None,
        start_date: Optional[datetime] = None,
        delivery_date: Optional[datetime] = None,
    ) -> Project:
        """Create and return a new Project at status PENDING (unsaved)."""
        if not name.strip():
            raise ValueError("Project name must not be empty.")
        amount = to_money(price)
        if amount < 0:
            raise ValueError("Project price must not be negative.")
        if start_date and delivery_date and delivery_date < start_date:
            raise ValueError("delivery_date must not be before start_date.")
        return Project(
            name=name,
            description=description,
            price=amount,
            status=ProjectStatus.PENDING,
            progress=0,
            client_id=client_id,
            partner_id=partner_id,
            start_date=start_date,
            delivery_date=delivery_date,
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )

    def set_progress(self, project: Project, progress: int) -> Project:
        """Write a new completion percentage onto the project."""
        _require_percentage(progress, "progress")
        project.progress = progress
        project.updated_at = _utcnow()
        return project


# ---------------------------------------------------------------------------
# ProgressService
# ---------------------------------------------------------------------------

class ProgressService:
    """
    Derives a project's completion percentage from its timeline.
    """

    def compute_progress(self, items: Sequence[ProjectTimelineItem]) -> Optional[int]:
        """
        Return round(100 × completed / total), halves rounded up.

        Returns None when the project has no timeline items; callers must
        then leave the stored progress untouched.
        """
        if not items:
            return None
        completed = sum(1 for i in items if i.status == TimelineStatus.COMPLETED)
        ratio = Decimal(100 * completed) / Decimal(len(items))
        return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# TimelineService
# ---------------------------------------------------------------------------

DEFAULT_TIMELINE: Tuple[Tuple[str, str], ...] = (
    ("Analysis & Planning", "Requirements analysis and project planning"),
    ("Design & Architecture", "Interface design and system architecture"),
    ("Development - Phase 1", "Core features (50% of the project)"),
    ("Development - Phase 2", "Complete development and optimisations (90% of the project)"),
    ("Testing & QA", "Thorough testing and quality control"),
    ("Final Delivery", "Delivery of the finished project and documentation"),
)


class TimelineService:
    """
    Manages timeline items and the completed_at stamp.
    """

    def create_item(
        self,
        project_id: uuid.UUID,
        title: str,
        description: str = "",
        status: TimelineStatus = TimelineStatus.PENDING,
        estimated_date: Optional[datetime] = None,
    ) -> ProjectTimelineItem:
        """Create and return a new timeline item (unsaved)."""
        if not title.strip():
            raise ValueError("Timeline item title must not be empty.")
        now = _utcnow()
        return ProjectTimelineItem(
            project_id=project_id,
            title=title,
            description=description,
            status=status,
            estimated_date=estimated_date,
            completed_at=now if status == TimelineStatus.COMPLETED else None,
            created_at=now,
        )

    def update_item(
        self,
        item: ProjectTimelineItem,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[TimelineStatus] = None,
        estimated_date: Optional[datetime] = None,
    ) -> Tuple[ProjectTimelineItem, bool]:
        """
        Apply field-level updates to a timeline item.

        Returns the item and whether this update set its status to
        COMPLETED (the trigger for progress recomputation).
        """
        if title is not None:
            if not title.strip():
                raise ValueError("Timeline item title must not be empty.")
            item.title = title
        if description is not None:
            item.description = description
        if estimated_date is not None:
            item.estimated_date = estimated_date

        completed_now = status == TimelineStatus.COMPLETED
        if status is not None:
            if status == TimelineStatus.COMPLETED and item.status != TimelineStatus.COMPLETED:
                item.completed_at = _utcnow()
            elif status != TimelineStatus.COMPLETED:
                item.completed_at = None
            item.status = status
        return item, completed_now

    def default_items(self, project_id: uuid.UUID) -> List[ProjectTimelineItem]:
        """The six-milestone timeline seeded when a project leaves negotiation."""
        return [
            self.create_item(project_id, title, description)
            for title, description in DEFAULT_TIMELINE
        ]


# ---------------------------------------------------------------------------
# PaymentStageService
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageSpec:
    """One requested stage: a share of the price unlocked at a progress threshold."""
    name: str
    percentage: int
    required_progress: int


DEFAULT_STAGE_SPECS: Tuple[StageSpec, ...] = (
    StageSpec("Down payment - Project start", 25, 0),
    StageSpec("50% progress - Development", 25, 50),
    StageSpec("Pre-delivery - 90% complete", 25, 90),
    StageSpec("Final delivery", 25, 100),
)


class PaymentStageService:
    """
    The Stage Ledger rules.

    Gating invariant: a stage is AVAILABLE iff its required_progress is at or
    below the project's progress and it has not been paid.  Stages never move
    backwards, so lowering progress leaves available stages available.
    """

    def validate_specs(self, specs: Sequence[StageSpec]) -> List[str]:
        """Return every problem with the stage list; empty when it is usable."""
        problems: List[str] = []
        if not specs:
            return ["At least one payment stage is required."]
        for index, spec in enumerate(specs, start=1):
            if not spec.name.strip():
                problems.append(f"Stage {index}: name must not be empty.")
            if not (1 <= spec.percentage <= 100):
                problems.append(f"Stage {index}: percentage must be between 1 and 100.")
            if not (0 <= spec.required_progress <= 100):
                problems.append(f"Stage {index}: required_progress must be between 0 and 100.")
        total = sum(s.percentage for s in specs)
        if total != 100:
            problems.append(f"Stage percentages must sum to 100 (got {total}).")
        return problems

    def create_stages(self, project: Project, specs: Sequence[StageSpec]) -> List[PaymentStage]:
        """
        Build the stage batch for a project (unsaved).

        Amounts are frozen at price × percentage / 100.  A stage with no
        progress requirement starts AVAILABLE.
        """
        problems = self.validate_specs(specs)
        if problems:
            raise ValueError(" ".join(problems))
        now = _utcnow()
        stages = []
        for spec in specs:
            amount = (project.price * spec.percentage / Decimal(100)).quantize(
                CENTS, rounding=ROUND_HALF_UP
            )
            stages.append(
                PaymentStage(
                    project_id=project.id,
                    stage_name=spec.name,
                    stage_percentage=spec.percentage,
                    amount=amount,
                    required_progress=spec.required_progress,
                    status=(
                        StageStatus.AVAILABLE
                        if spec.required_progress == 0
                        else StageStatus.PENDING
                    ),
                    created_at=now,
                    updated_at=now,
                )
            )
        return stages

    def stages_to_unlock(
        self, stages: Sequence[PaymentStage], current_progress: int
    ) -> List[PaymentStage]:
        """
        Return AVAILABLE copies of every PENDING stage whose threshold has
        been reached.  Stages that are already available or paid are skipped.
        """
        _require_percentage(current_progress, "progress")
        now = _utcnow()
        return [
            replace(stage, status=StageStatus.AVAILABLE, updated_at=now)
            for stage in stages
            if stage.status == StageStatus.PENDING
            and stage.required_progress <= current_progress
        ]

    def ensure_link_issuable(self, stage: PaymentStage) -> None:
        if stage.status != StageStatus.AVAILABLE:
            raise InvalidStateTransition(
                f"Payment stage '{stage.stage_name}' is {stage.status.value}; "
                "a payment link can only be issued for an available stage."
            )

    def attach_link(
        self, stage: PaymentStage, external_id: str, link: str
    ) -> PaymentStage:
        """Record the gateway preference on the stage, replacing any earlier link."""
        stage.payment_link = link
        stage.external_payment_id = external_id
        stage.updated_at = _utcnow()
        return stage

    def mark_paid(self, stage: PaymentStage) -> bool:
        """
        Move a stage to PAID.  Returns False (and changes nothing) if the
        stage was already paid.
        """
        if stage.status == StageStatus.PAID:
            return False
        now = _utcnow()
        stage.status = StageStatus.PAID
        stage.paid_at = now
        stage.updated_at = now
        return True


# ---------------------------------------------------------------------------
# NegotiationService
# ---------------------------------------------------------------------------

class NegotiationService:
    """
    The negotiation state machine.

    Rows start PENDING.  ACCEPTED and REJECTED are terminal; COUNTERED is
    terminal for its row but spawns the next PENDING row in the chain.
    """

    NEGOTIABLE = (ProjectStatus.PENDING, ProjectStatus.NEGOTIATING)

    def propose(
        self,
        project: Project,
        proposer_id: uuid.UUID,
        price,
        message: str,
        existing: Sequence[BudgetNegotiation],
    ) -> BudgetNegotiation:
        """
        Open a new proposal (unsaved) and move the project into negotiation.

        Only one PENDING row may exist per project; a second proposal must
        be made as a counter-offer on the live row.
        """
        amount = to_money(price)
        if amount <= 0:
            raise ValueError("Proposed price must be greater than zero.")
        if project.status not in self.NEGOTIABLE:
            raise InvalidStateTransition(
                f"Project '{project.name}' is {project.status.value}; "
                "its price can no longer be negotiated."
            )
        if any(n.status == NegotiationStatus.PENDING for n in existing):
            raise StateConflict(
                f"Project '{project.name}' already has a pending negotiation; "
                "respond to it instead."
            )
        project.status = ProjectStatus.NEGOTIATING
        project.updated_at = _utcnow()
        return BudgetNegotiation(
            project_id=project.id,
            proposed_by=proposer_id,
            original_price=project.price,
            proposed_price=amount,
            message=message,
            status=NegotiationStatus.PENDING,
            created_at=_utcnow(),
        )

    def respond(
        self,
        negotiation: BudgetNegotiation,
        decision: NegotiationDecision,
        responder_id: uuid.UUID,
        counter_price=None,
        message: str = "",
    ) -> Tuple[BudgetNegotiation, Optional[BudgetNegotiation]]:
        """
        Resolve a PENDING negotiation.

        Returns the resolved row and, for a counter-offer, the new PENDING row
        (unsaved).  Project mutation on acceptance is done by apply_acceptance
        once the caller has won the status compare-and-set.
        """
        if negotiation.status != NegotiationStatus.PENDING:
            raise InvalidStateTransition(
                f"Negotiation {negotiation.id} is already {negotiation.status.value}."
            )

        counter: Optional[BudgetNegotiation] = None
        if decision == NegotiationDecision.COUNTERED:
            if counter_price is None:
                raise ValueError("counter_price is required to counter a proposal.")
            amount = to_money(counter_price)
            if amount <= 0:
                raise ValueError("Counter price must be greater than zero.")
            counter = BudgetNegotiation(
                project_id=negotiation.project_id,
                proposed_by=responder_id,
                original_price=negotiation.proposed_price,
                proposed_price=amount,
                message=message,
                status=NegotiationStatus.PENDING,
                created_at=_utcnow(),
            )

        negotiation.status = NegotiationStatus(decision.value)
        negotiation.responded_at = _utcnow()
        return negotiation, counter

    def apply_acceptance(self, project: Project, negotiation: BudgetNegotiation) -> Project:
        """Write the accepted price onto the project and start the work."""
        if project.status != ProjectStatus.NEGOTIATING:
            raise InvalidStateTransition(
                f"Project '{project.name}' is {project.status.value}, not negotiating."
            )
        project.price = negotiation.proposed_price
        project.status = ProjectStatus.IN_PROGRESS
        project.updated_at = _utcnow()
        return project

    def chain(self, negotiations: Sequence[BudgetNegotiation]) -> List[BudgetNegotiation]:
        """Return a project's negotiation rows newest first."""
        return sorted(negotiations, key=lambda n: n.created_at)[::-1]


# ---------------------------------------------------------------------------
# NotificationService
# ---------------------------------------------------------------------------

class NotificationService:
    """
    Creates and queries Notification rows.
    """

    def build(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
    ) -> Notification:
        """Create and return a notification row (unsaved)."""
        return Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=severity,
            is_read=False,
            created_at=_utcnow(),
        )

    def inbox(self, notifications: Sequence[Notification]) -> List[Notification]:
        """Return notifications newest first."""
        return sorted(notifications, key=lambda n: n.created_at)[::-1]
