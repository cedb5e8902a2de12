"""
model.py

Domain models for the SoftwarePar project billing core.

Entities
--------
- User
- Project
- PaymentStage
- BudgetNegotiation
- ProjectTimelineItem
- Notification

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Money is carried as Decimal with two decimal places.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class UserRole(str, Enum):
    """Role supplied by the auth layer; the billing core trusts it as given."""
    ADMIN = "admin"
    CLIENT = "client"
    PARTNER = "partner"


class ProjectStatus(str, Enum):
    """
    Lifecycle status of a project.

    NEGOTIATING -> IN_PROGRESS is the only transition performed by the
    billing core (on acceptance of a budget negotiation).
    """
    PENDING = "pending"
    NEGOTIATING = "negotiating"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """
    Status of a payment stage.

    PENDING   – required progress not yet reached.
    AVAILABLE – payable; the client may request a payment link.
    PAID      – payment confirmed; terminal.
    OVERDUE   – reserved.  Declared for schema compatibility, never entered.
    """
    PENDING = "pending"
    AVAILABLE = "available"
    PAID = "paid"
    OVERDUE = "overdue"


class NegotiationStatus(str, Enum):
    """Status of one row in a negotiation chain."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"


class NegotiationDecision(str, Enum):
    """Response the other party may give to a pending negotiation."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"


class TimelineStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class NotificationSeverity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class User:
    """
    Narrow projection of a platform user.

    Only the fields the billing core needs to address notifications and to
    tell admins from clients are kept here; credentials live elsewhere.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    full_name: str = ""
    email: str = ""
    role: UserRole = UserRole.CLIENT
    whatsapp_number: Optional[str] = None   # E.164, e.g. "+595981123456"
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Project aggregate
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    Aggregate root for payment stages, negotiation history and timeline.

    `price` may be rewritten by an accepted negotiation; `progress` is
    rewritten by an admin or recomputed from the timeline.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    description: str = ""
    price: Decimal = Decimal("0.00")
    status: ProjectStatus = ProjectStatus.PENDING
    progress: int = 0                           # 0 – 100

    client_id: uuid.UUID = field(default_factory=uuid.uuid4)    # FK → User.id
    partner_id: Optional[uuid.UUID] = None                      # FK → User.id

    start_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentStage:
    """
    One progress-gated installment of a project's price.

    `amount` is computed once from the project price at creation time and is
    never recomputed, even if the price later changes.  Status only moves
    forward: PENDING → AVAILABLE → PAID.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    stage_name: str = ""
    stage_percentage: int = 0
    amount: Decimal = Decimal("0.00")
    required_progress: int = 0                  # 0 – 100
    status: StageStatus = StageStatus.PENDING

    # Set by the payment link issuer
    payment_link: Optional[str] = None
    external_payment_id: Optional[str] = None   # gateway preference id

    paid_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class BudgetNegotiation:
    """
    One proposal in a project's negotiation chain.

    A counter-offer closes the current row as COUNTERED and opens a new
    PENDING row whose original_price is the countered proposed_price.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    proposed_by: uuid.UUID = field(default_factory=uuid.uuid4)  # FK → User.id
    original_price: Decimal = Decimal("0.00")
    proposed_price: Decimal = Decimal("0.00")
    message: str = ""
    status: NegotiationStatus = NegotiationStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    responded_at: Optional[datetime] = None


@dataclass
class ProjectTimelineItem:
    """
    A milestone on the project timeline.

    completed_at is stamped exactly when status transitions to COMPLETED.
    Completing an item drives the project progress recomputation.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    title: str = ""
    description: str = ""
    status: TimelineStatus = TimelineStatus.PENDING
    estimated_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass
class Notification:
    """
    Persisted copy of a dispatched event.

    Immutable once written except for the read flag.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)      # FK → User.id
    title: str = ""
    message: str = ""
    type: NotificationSeverity = NotificationSeverity.INFO
    is_read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
