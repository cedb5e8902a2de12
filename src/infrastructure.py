"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

Rows are stored in dicts keyed by UUID.  Reads hand out copies, so a use
case's changes only reach the store through an explicit save, and the
``save_if_status`` compare-and-set runs under a per-table lock.  Suitable for
local development, demos and tests.

To back the service with a real database, implement the same Abstract*
interfaces from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

where save_if_status becomes ``UPDATE ... WHERE id = :id AND status = :expected``.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Callable, List, Optional

from application import (
    AbstractNegotiationRepository,
    AbstractNotificationRepository,
    AbstractPaymentStageRepository,
    AbstractProjectRepository,
    AbstractTimelineRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
)
from model import UserRole


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A dict of rows with copy-out reads and an atomic check-and-put."""

    def __init__(self):
        super().__init__()
        self.lock = threading.Lock()

    def fetch(self, key: uuid.UUID):
        row = self.get(key)
        return copy.copy(row) if row is not None else None

    def put(self, obj) -> None:
        with self.lock:
            self[obj.id] = copy.copy(obj)

    def put_if(self, obj, predicate: Callable[[object], bool]) -> bool:
        """Store obj only if the current row exists and satisfies predicate."""
        with self.lock:
            current = self.get(obj.id)
            if current is None or not predicate(current):
                return False
            self[obj.id] = copy.copy(obj)
            return True

    def remove(self, key: uuid.UUID) -> None:
        with self.lock:
            self.pop(key, None)

    def remove_where(self, predicate: Callable[[object], bool]) -> None:
        with self.lock:
            for key in [k for k, row in self.items() if predicate(row)]:
                del self[key]

    def all(self) -> list:
        with self.lock:
            rows = list(self.values())
        return [copy.copy(r) for r in rows]


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.users:         _Store = _Store()
        self.projects:      _Store = _Store()
        self.stages:        _Store = _Store()
        self.negotiations:  _Store = _Store()
        self.timeline:      _Store = _Store()
        self.notifications: _Store = _Store()


_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryUserRepository(AbstractUserRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, user_id):           return self._s.fetch(user_id)
    def list_all(self):               return self._s.all()
    def save(self, user):             self._s.put(user)

    def get_by_email(self, email: str):
        wanted = email.lower()
        return next((u for u in self._s.all() if u.email.lower() == wanted), None)

    def list_by_role(self, role: UserRole):
        return [u for u in self._s.all() if u.role == role]


class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, project_id):        return self._s.fetch(project_id)
    def save(self, project):          self._s.put(project)
    def update(self, project):        return self._s.put_if(project, lambda _: True)
    def delete(self, project_id):     self._s.remove(project_id)

    def list_all(self):
        return sorted(self._s.all(), key=lambda p: p.created_at, reverse=True)


class InMemoryPaymentStageRepository(AbstractPaymentStageRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, stage_id):          return self._s.fetch(stage_id)
    def save(self, stage):            self._s.put(stage)

    def get_by_external_id(self, external_id: str):
        return next(
            (s for s in self._s.all() if s.external_payment_id == external_id), None
        )

    def list_for_project(self, project_id):
        stages = [s for s in self._s.all() if s.project_id == project_id]
        return sorted(stages, key=lambda s: (s.required_progress, s.created_at))

    def save_if_status(self, stage, expected) -> bool:
        return self._s.put_if(stage, lambda current: current.status == expected)

    def delete_for_project(self, project_id):
        self._s.remove_where(lambda s: s.project_id == project_id)


class InMemoryNegotiationRepository(AbstractNegotiationRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, negotiation_id):    return self._s.fetch(negotiation_id)
    def save(self, negotiation):      self._s.put(negotiation)

    def list_for_project(self, project_id):
        return [n for n in self._s.all() if n.project_id == project_id]

    def save_if_status(self, negotiation, expected) -> bool:
        return self._s.put_if(negotiation, lambda current: current.status == expected)

    def delete_for_project(self, project_id):
        self._s.remove_where(lambda n: n.project_id == project_id)


class InMemoryTimelineRepository(AbstractTimelineRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, item_id):           return self._s.fetch(item_id)
    def save(self, item):             self._s.put(item)

    def list_for_project(self, project_id):
        items = [t for t in self._s.all() if t.project_id == project_id]
        return sorted(items, key=lambda t: t.created_at)

    def has_for_project(self, project_id) -> bool:
        return any(t.project_id == project_id for t in self._s.all())

    def delete_for_project(self, project_id):
        self._s.remove_where(lambda t: t.project_id == project_id)


class InMemoryNotificationRepository(AbstractNotificationRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, notification_id):   return self._s.fetch(notification_id)
    def save(self, notification):     self._s.put(notification)

    def list_for_user(self, user_id) -> List:
        return [n for n in self._s.all() if n.user_id == user_id]


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  commit() and rollback() are no-ops
    because every save lands in the store immediately; use cases validate
    before their first write so a failed operation leaves nothing behind.
    """

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        db = db or _db
        self.users         = InMemoryUserRepository(db.users)
        self.projects      = InMemoryProjectRepository(db.projects)
        self.stages        = InMemoryPaymentStageRepository(db.stages)
        self.negotiations  = InMemoryNegotiationRepository(db.negotiations)
        self.timeline      = InMemoryTimelineRepository(db.timeline)
        self.notifications = InMemoryNotificationRepository(db.notifications)

    def commit(self)   -> None: pass
    def rollback(self) -> None: pass
