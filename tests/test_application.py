"""Use case tests against the in-memory unit of work."""

import uuid
from decimal import Decimal

import pytest

from application import (
    AuthorizationError,
    ConfirmStagePaidCommand,
    ConfirmStagePaidUseCase,
    ConflictError,
    CreatePaymentStagesCommand,
    CreatePaymentStagesUseCase,
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateUserCommand,
    CreateUserUseCase,
    DeleteProjectCommand,
    DeleteProjectUseCase,
    GatewayPayment,
    GetProjectUseCase,
    HandlePaymentWebhookUseCase,
    InvalidStateTransitionError,
    IssuePaymentLinkCommand,
    IssuePaymentLinkUseCase,
    ListNegotiationsUseCase,
    ListNotificationsUseCase,
    ListPaymentStagesUseCase,
    ListProjectsUseCase,
    ListTimelineUseCase,
    MarkNotificationReadCommand,
    MarkNotificationReadUseCase,
    NotFoundError,
    PaymentWebhookCommand,
    ProposeBudgetCommand,
    ProposeBudgetUseCase,
    RecomputeProgressUseCase,
    RespondToNegotiationCommand,
    RespondToNegotiationUseCase,
    UpdateProjectProgressCommand,
    UpdateProjectProgressUseCase,
    UpdateTimelineItemCommand,
    UpdateTimelineItemUseCase,
    ValidationError,
)
from model import NegotiationDecision, TimelineStatus, UserRole
from service import StageSpec

THRESHOLD_SPECS = [
    StageSpec("Deposit", 25, 0),
    StageSpec("Design", 25, 25),
    StageSpec("Build", 25, 50),
    StageSpec("Launch", 25, 90),
]


def _uid(dto):
    return uuid.UUID(dto.id)


async def _create_stages(uow, dispatcher, project, admin, specs=None):
    return await CreatePaymentStagesUseCase().execute(
        CreatePaymentStagesCommand(
            project_id=_uid(project),
            acting_user_id=_uid(admin),
            stages=specs if specs is not None else THRESHOLD_SPECS,
        ),
        uow,
        dispatcher,
    )


async def _set_progress(uow, dispatcher, project, admin, progress):
    return await UpdateProjectProgressUseCase().execute(
        UpdateProjectProgressCommand(
            project_id=_uid(project), progress=progress, acting_user_id=_uid(admin)
        ),
        uow,
        dispatcher,
    )


def _stages(uow, project, admin):
    return ListPaymentStagesUseCase().execute(_uid(project), _uid(admin), uow)


def _available(uow, project, admin):
    return [s.stage_name for s in _stages(uow, project, admin) if s.status == "available"]


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

class TestProjects:
    def test_client_creates_for_self(self, uow, client_user):
        project = CreateProjectUseCase().execute(
            CreateProjectCommand(
                name="App", description="", price="500", acting_user_id=_uid(client_user)
            ),
            uow,
        )
        assert project.client_id == client_user.id
        assert project.status == "pending"
        assert project.price == "500.00"

    def test_admin_must_name_client(self, uow, admin):
        with pytest.raises(ValidationError):
            CreateProjectUseCase().execute(
                CreateProjectCommand(
                    name="App", description="", price="500", acting_user_id=_uid(admin)
                ),
                uow,
            )

    def test_partner_cannot_create(self, uow):
        partner = CreateUserUseCase().execute(
            CreateUserCommand(full_name="Pat", email="pat@example.com", role=UserRole.PARTNER),
            uow,
        )
        with pytest.raises(AuthorizationError):
            CreateProjectUseCase().execute(
                CreateProjectCommand(
                    name="App", description="", price="500", acting_user_id=_uid(partner)
                ),
                uow,
            )

    def test_duplicate_email_conflicts(self, uow, client_user):
        with pytest.raises(ConflictError):
            CreateUserUseCase().execute(
                CreateUserCommand(full_name="Other", email=client_user.email), uow
            )

    def test_clients_only_see_their_projects(self, uow, admin, client_user, make_project):
        mine = make_project()
        stranger = CreateUserUseCase().execute(
            CreateUserCommand(full_name="Sam", email="sam@example.com"), uow
        )
        assert [p.id for p in ListProjectsUseCase().execute(_uid(client_user), uow)] == [mine.id]
        assert ListProjectsUseCase().execute(_uid(stranger), uow) == []
        with pytest.raises(AuthorizationError):
            GetProjectUseCase().execute(_uid(mine), _uid(stranger), uow)

    async def test_delete_cascades(self, uow, db, dispatcher, admin, client_user, make_project):
        project = make_project()
        await _propose(uow, dispatcher, project, client_user, "1500")
        await _create_stages(uow, dispatcher, project, admin)

        DeleteProjectUseCase().execute(
            DeleteProjectCommand(project_id=_uid(project), acting_user_id=_uid(admin)), uow
        )

        pid = _uid(project)
        assert db.projects.fetch(pid) is None
        assert not [s for s in db.stages.all() if s.project_id == pid]
        assert not [t for t in db.timeline.all() if t.project_id == pid]
        assert not [n for n in db.negotiations.all() if n.project_id == pid]
        with pytest.raises(NotFoundError):
            ListPaymentStagesUseCase().execute(pid, _uid(admin), uow)

    def test_only_admin_deletes(self, uow, client_user, make_project):
        project = make_project()
        with pytest.raises(AuthorizationError):
            DeleteProjectUseCase().execute(
                DeleteProjectCommand(project_id=_uid(project), acting_user_id=_uid(client_user)),
                uow,
            )


# ---------------------------------------------------------------------------
# Stage ledger and gating
# ---------------------------------------------------------------------------

class TestCreatePaymentStages:
    async def test_amounts_frozen_and_first_stage_available(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project("1000.00")
        stages = await _create_stages(uow, dispatcher, project, admin)

        assert [s.amount for s in stages] == ["250.00"] * 4
        assert [s.status for s in stages] == ["available", "pending", "pending", "pending"]
        assert dispatcher.titles_for(_uid(client_user)) == ["Payment available"]

    async def test_default_split(self, uow, dispatcher, admin, make_project):
        project = make_project()
        stages = await CreatePaymentStagesUseCase().execute(
            CreatePaymentStagesCommand(project_id=_uid(project), acting_user_id=_uid(admin)),
            uow,
            dispatcher,
        )
        assert [s.required_progress for s in stages] == [0, 50, 90, 100]
        assert sum(s.stage_percentage for s in stages) == 100

    async def test_seeds_default_timeline(self, uow, dispatcher, admin, make_project):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        timeline = ListTimelineUseCase().execute(_uid(project), _uid(admin), uow)
        assert len(timeline) == 6

    async def test_invalid_list_reports_problems(self, uow, dispatcher, admin, make_project):
        project = make_project()
        with pytest.raises(ValidationError) as excinfo:
            await _create_stages(
                uow, dispatcher, project, admin,
                [StageSpec("A", 60, 0), StageSpec("", 30, 150)],
            )
        assert len(excinfo.value.problems) == 3
        assert _stages(uow, project, admin) == []

    async def test_created_once(self, uow, dispatcher, admin, make_project):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        with pytest.raises(ConflictError):
            await _create_stages(uow, dispatcher, project, admin)

    async def test_client_cannot_create(self, uow, dispatcher, client_user, make_project):
        project = make_project()
        with pytest.raises(AuthorizationError):
            await _create_stages(uow, dispatcher, project, client_user)

    async def test_stages_reached_by_existing_progress_start_available(
        self, uow, dispatcher, admin, make_project
    ):
        project = make_project()
        await _set_progress(uow, dispatcher, project, admin, 60)
        await _create_stages(uow, dispatcher, project, admin)
        assert _available(uow, project, admin) == ["Deposit", "Design", "Build"]

    async def test_empty_list_is_rejected(self, uow, dispatcher, admin, make_project):
        project = make_project()
        with pytest.raises(ValidationError) as excinfo:
            await _create_stages(uow, dispatcher, project, admin, [])
        assert excinfo.value.problems == ["At least one payment stage is required."]
        assert _stages(uow, project, admin) == []

    async def test_amounts_stay_frozen_after_renegotiation(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project("1000.00")
        await _create_stages(uow, dispatcher, project, admin)

        proposal = await _propose(uow, dispatcher, project, client_user, "800")
        await _respond(uow, dispatcher, proposal, admin, NegotiationDecision.ACCEPTED)

        assert GetProjectUseCase().execute(_uid(project), _uid(admin), uow).price == "800.00"
        assert [s.amount for s in _stages(uow, project, admin)] == ["250.00"] * 4


class TestGating:
    @pytest.mark.parametrize(
        "progress,expected",
        [
            (0, ["Deposit"]),
            (24, ["Deposit"]),
            (25, ["Deposit", "Design"]),
            (26, ["Deposit", "Design"]),
            (50, ["Deposit", "Design", "Build"]),
            (90, ["Deposit", "Design", "Build", "Launch"]),
            (100, ["Deposit", "Design", "Build", "Launch"]),
        ],
    )
    async def test_available_iff_threshold_reached(
        self, uow, dispatcher, admin, make_project, progress, expected
    ):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        await _set_progress(uow, dispatcher, project, admin, progress)
        assert _available(uow, project, admin) == expected

    async def test_lowering_progress_never_relocks(self, uow, dispatcher, admin, make_project):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        await _set_progress(uow, dispatcher, project, admin, 60)
        result = await _set_progress(uow, dispatcher, project, admin, 10)

        assert result.project.progress == 10
        assert result.unlocked_stages == []
        assert _available(uow, project, admin) == ["Deposit", "Design", "Build"]

    async def test_repeated_progress_notifies_once(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        first = await _set_progress(uow, dispatcher, project, admin, 60)
        second = await _set_progress(uow, dispatcher, project, admin, 60)

        assert [s.stage_name for s in first.unlocked_stages] == ["Design", "Build"]
        assert second.unlocked_stages == []
        assert dispatcher.titles_for(_uid(client_user)).count("Payment available") == 3

    async def test_progress_out_of_range(self, uow, dispatcher, admin, make_project):
        project = make_project()
        with pytest.raises(ValidationError):
            await _set_progress(uow, dispatcher, project, admin, 101)

    async def test_only_admin_sets_progress(self, uow, dispatcher, client_user, make_project):
        project = make_project()
        with pytest.raises(AuthorizationError):
            await _set_progress(uow, dispatcher, project, client_user, 50)

    async def test_paid_stage_stays_paid(self, uow, dispatcher, admin, make_project):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        await ConfirmStagePaidUseCase().execute(
            ConfirmStagePaidCommand(stage_id=_uid(stages[0]), acting_user_id=_uid(admin)),
            uow,
            dispatcher,
        )
        await _set_progress(uow, dispatcher, project, admin, 100)
        statuses = [s.status for s in _stages(uow, project, admin)]
        assert statuses == ["paid", "available", "available", "available"]


class TestTimelineProgress:
    async def _complete(self, uow, dispatcher, project, admin, item):
        return await UpdateTimelineItemUseCase().execute(
            UpdateTimelineItemCommand(
                project_id=_uid(project),
                item_id=uuid.UUID(item.id),
                acting_user_id=_uid(admin),
                status=TimelineStatus.COMPLETED,
            ),
            uow,
            dispatcher,
        )

    async def test_completing_milestones_unlocks_stages(
        self, uow, dispatcher, admin, make_project
    ):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        items = ListTimelineUseCase().execute(_uid(project), _uid(admin), uow)

        for item in items[:3]:
            updated = await self._complete(uow, dispatcher, project, admin, item)
            assert updated.completed_at is not None

        refreshed = GetProjectUseCase().execute(_uid(project), _uid(admin), uow)
        assert refreshed.progress == 50
        assert _available(uow, project, admin) == ["Deposit", "Design", "Build"]

    async def test_recompute_without_timeline_leaves_progress(
        self, uow, dispatcher, admin, make_project
    ):
        project = make_project()
        await _set_progress(uow, dispatcher, project, admin, 40)
        assert await RecomputeProgressUseCase().execute(_uid(project), uow, dispatcher) is None
        assert GetProjectUseCase().execute(_uid(project), _uid(admin), uow).progress == 40

    async def test_recompute_never_recreates_deleted_project(
        self, uow, db, dispatcher, admin, make_project
    ):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        db.projects.remove(_uid(project))

        progress = await RecomputeProgressUseCase().execute(_uid(project), uow, dispatcher)

        assert progress == 0
        assert db.projects.fetch(_uid(project)) is None

    async def test_unknown_item(self, uow, dispatcher, admin, make_project):
        project = make_project()
        with pytest.raises(NotFoundError):
            await UpdateTimelineItemUseCase().execute(
                UpdateTimelineItemCommand(
                    project_id=_uid(project),
                    item_id=uuid.uuid4(),
                    acting_user_id=_uid(admin),
                    status=TimelineStatus.COMPLETED,
                ),
                uow,
                dispatcher,
            )


# ---------------------------------------------------------------------------
# Payment links and confirmation
# ---------------------------------------------------------------------------

class TestPaymentFlow:
    async def test_end_to_end(self, uow, dispatcher, gateway, admin, client_user, make_project):
        project = make_project("2000.00")
        stages = await _create_stages(uow, dispatcher, project, admin)
        await _set_progress(uow, dispatcher, project, admin, 30)
        design = stages[1]

        linked = await IssuePaymentLinkUseCase().execute(
            IssuePaymentLinkCommand(stage_id=_uid(design), acting_user_id=_uid(client_user)),
            uow,
            dispatcher,
            gateway,
        )
        assert linked.payment_link == "https://checkout.example/pref-1"
        assert linked.external_payment_id == "pref-1"
        request = gateway.requests[0]
        assert request.amount == Decimal("500.00")
        assert request.external_reference == f"stage-{design.id}"
        assert request.payer_email == client_user.email

        gateway.approve("pay-1", f"stage-{design.id}")
        result = await HandlePaymentWebhookUseCase().execute(
            PaymentWebhookCommand(event_type="payment", payment_id="pay-1"),
            uow,
            dispatcher,
            gateway,
        )
        assert result.processed is True
        assert result.stage.status == "paid"
        assert result.stage.paid_at is not None

        assert dispatcher.titles_for(_uid(client_user)) == [
            "Payment available",
            "Payment available",
            "Payment link ready",
            "Payment received",
        ]
        assert dispatcher.titles_for(_uid(admin)) == ["Stage paid"]

    async def test_duplicate_webhook_is_noop(
        self, uow, dispatcher, gateway, admin, make_project
    ):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        gateway.approve("pay-1", f"stage-{stages[0].id}")
        command = PaymentWebhookCommand(event_type="payment", payment_id="pay-1")

        first = await HandlePaymentWebhookUseCase().execute(command, uow, dispatcher, gateway)
        paid_at = first.stage.paid_at
        second = await HandlePaymentWebhookUseCase().execute(command, uow, dispatcher, gateway)

        assert second.processed is False
        assert second.stage.paid_at == paid_at
        assert dispatcher.titles_for(_uid(admin)) == ["Stage paid"]

    async def test_webhook_falls_back_to_preference_id(
        self, uow, dispatcher, gateway, admin, make_project
    ):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        await IssuePaymentLinkUseCase().execute(
            IssuePaymentLinkCommand(stage_id=_uid(stages[0]), acting_user_id=_uid(admin)),
            uow,
            dispatcher,
            gateway,
        )
        gateway.approve("pay-7", None, preference_id="pref-1")
        result = await HandlePaymentWebhookUseCase().execute(
            PaymentWebhookCommand(event_type="payment", payment_id="pay-7"),
            uow,
            dispatcher,
            gateway,
        )
        assert result.processed is True
        assert result.stage.id == stages[0].id

    async def test_webhook_for_unknown_stage_is_ignored(self, uow, dispatcher, gateway):
        gateway.approve("pay-9", f"stage-{uuid.uuid4()}")
        result = await HandlePaymentWebhookUseCase().execute(
            PaymentWebhookCommand(event_type="payment", payment_id="pay-9"),
            uow,
            dispatcher,
            gateway,
        )
        assert result.processed is False
        assert result.detail == "unknown stage"
        assert dispatcher.events == []

    async def test_non_payment_event_is_ignored(self, uow, dispatcher, gateway):
        result = await HandlePaymentWebhookUseCase().execute(
            PaymentWebhookCommand(event_type="merchant_order", payment_id="1"),
            uow,
            dispatcher,
            gateway,
        )
        assert result.processed is False
        assert result.detail == "ignored event"

    async def test_unapproved_payment_confirms_nothing(
        self, uow, dispatcher, gateway, admin, make_project
    ):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        gateway.payments["pay-2"] = GatewayPayment(
            id="pay-2", status="pending", external_reference=f"stage-{stages[0].id}"
        )
        result = await HandlePaymentWebhookUseCase().execute(
            PaymentWebhookCommand(event_type="payment", payment_id="pay-2"),
            uow,
            dispatcher,
            gateway,
        )
        assert result.processed is False
        assert _stages(uow, project, admin)[0].status == "available"

    async def test_link_refused_for_pending_stage(
        self, uow, dispatcher, gateway, admin, make_project
    ):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        with pytest.raises(InvalidStateTransitionError):
            await IssuePaymentLinkUseCase().execute(
                IssuePaymentLinkCommand(stage_id=_uid(stages[3]), acting_user_id=_uid(admin)),
                uow,
                dispatcher,
                gateway,
            )
        assert gateway.requests == []

    async def test_link_refused_for_stranger(self, uow, dispatcher, gateway, admin, make_project):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        stranger = CreateUserUseCase().execute(
            CreateUserCommand(full_name="Sam", email="sam@example.com"), uow
        )
        with pytest.raises(AuthorizationError):
            await IssuePaymentLinkUseCase().execute(
                IssuePaymentLinkCommand(stage_id=_uid(stages[0]), acting_user_id=_uid(stranger)),
                uow,
                dispatcher,
                gateway,
            )

    async def test_link_refused_for_project_partner(
        self, uow, dispatcher, gateway, admin, client_user
    ):
        partner = CreateUserUseCase().execute(
            CreateUserCommand(full_name="Pat Partner", email="pat@example.com", role=UserRole.PARTNER),
            uow,
        )
        project = CreateProjectUseCase().execute(
            CreateProjectCommand(
                name="Web shop",
                description="",
                price=Decimal("2000.00"),
                acting_user_id=_uid(admin),
                client_id=_uid(client_user),
                partner_id=_uid(partner),
            ),
            uow,
        )
        stages = await _create_stages(uow, dispatcher, project, admin)
        assert len(ListPaymentStagesUseCase().execute(_uid(project), _uid(partner), uow)) == 4
        with pytest.raises(AuthorizationError):
            await IssuePaymentLinkUseCase().execute(
                IssuePaymentLinkCommand(stage_id=_uid(stages[0]), acting_user_id=_uid(partner)),
                uow,
                dispatcher,
                gateway,
            )
        assert gateway.requests == []

    async def test_reissuing_replaces_link(self, uow, dispatcher, gateway, admin, make_project):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        command = IssuePaymentLinkCommand(stage_id=_uid(stages[0]), acting_user_id=_uid(admin))
        await IssuePaymentLinkUseCase().execute(command, uow, dispatcher, gateway)
        second = await IssuePaymentLinkUseCase().execute(command, uow, dispatcher, gateway)
        assert second.external_payment_id == "pref-2"

    async def test_manual_confirm_is_idempotent(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        command = ConfirmStagePaidCommand(stage_id=_uid(stages[0]), acting_user_id=_uid(admin))

        first = await ConfirmStagePaidUseCase().execute(command, uow, dispatcher)
        second = await ConfirmStagePaidUseCase().execute(command, uow, dispatcher)

        assert first.status == second.status == "paid"
        assert first.paid_at == second.paid_at
        assert dispatcher.titles_for(_uid(client_user)).count("Payment received") == 1

    async def test_manual_confirm_requires_admin(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project()
        stages = await _create_stages(uow, dispatcher, project, admin)
        with pytest.raises(AuthorizationError):
            await ConfirmStagePaidUseCase().execute(
                ConfirmStagePaidCommand(
                    stage_id=_uid(stages[0]), acting_user_id=_uid(client_user)
                ),
                uow,
                dispatcher,
            )


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------

async def _propose(uow, dispatcher, project, actor, price):
    return await ProposeBudgetUseCase().execute(
        ProposeBudgetCommand(
            project_id=_uid(project), acting_user_id=_uid(actor), proposed_price=price
        ),
        uow,
        dispatcher,
    )


async def _respond(uow, dispatcher, negotiation, actor, decision, counter_price=None):
    return await RespondToNegotiationUseCase().execute(
        RespondToNegotiationCommand(
            negotiation_id=_uid(negotiation),
            acting_user_id=_uid(actor),
            decision=decision,
            counter_price=counter_price,
        ),
        uow,
        dispatcher,
    )


class TestNegotiation:
    async def test_accept_sets_price_and_starts_project(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project("2000.00")
        proposal = await _propose(uow, dispatcher, project, client_user, "1800")
        assert proposal.original_price == "2000.00"
        assert dispatcher.titles_for(_uid(admin)) == ["New budget proposal"]

        accepted = await _respond(uow, dispatcher, proposal, admin, NegotiationDecision.ACCEPTED)

        assert accepted.status == "accepted"
        refreshed = GetProjectUseCase().execute(_uid(project), _uid(admin), uow)
        assert refreshed.price == "1800.00"
        assert refreshed.status == "in_progress"
        assert len(ListTimelineUseCase().execute(_uid(project), _uid(admin), uow)) == 6
        assert dispatcher.titles_for(_uid(client_user)) == ["Budget proposal accepted"]

    async def test_second_accept_rejected(self, uow, dispatcher, admin, client_user, make_project):
        project = make_project()
        proposal = await _propose(uow, dispatcher, project, client_user, "1800")
        await _respond(uow, dispatcher, proposal, admin, NegotiationDecision.ACCEPTED)
        with pytest.raises(InvalidStateTransitionError):
            await _respond(uow, dispatcher, proposal, admin, NegotiationDecision.ACCEPTED)

    async def test_counter_chain(self, uow, dispatcher, admin, client_user, make_project):
        project = make_project("100.00")
        proposal = await _propose(uow, dispatcher, project, client_user, "80")
        counter = await _respond(
            uow, dispatcher, proposal, admin, NegotiationDecision.COUNTERED, counter_price="90"
        )

        assert counter.status == "pending"
        assert counter.original_price == "80.00"
        assert counter.proposed_price == "90.00"
        assert counter.proposed_by == admin.id
        assert dispatcher.titles_for(_uid(client_user)) == ["Counter-offer received"]

        await _respond(uow, dispatcher, counter, client_user, NegotiationDecision.ACCEPTED)

        refreshed = GetProjectUseCase().execute(_uid(project), _uid(admin), uow)
        assert refreshed.price == "90.00"
        chain = ListNegotiationsUseCase().execute(_uid(project), _uid(client_user), uow)
        assert [(n.proposed_price, n.status) for n in chain] == [
            ("90.00", "accepted"),
            ("80.00", "countered"),
        ]

    async def test_reject_leaves_price(self, uow, dispatcher, admin, client_user, make_project):
        project = make_project("2000.00")
        proposal = await _propose(uow, dispatcher, project, client_user, "1000")
        await _respond(uow, dispatcher, proposal, admin, NegotiationDecision.REJECTED)

        refreshed = GetProjectUseCase().execute(_uid(project), _uid(admin), uow)
        assert refreshed.price == "2000.00"
        assert refreshed.status == "negotiating"
        assert dispatcher.titles_for(_uid(client_user)) == ["Budget proposal rejected"]

    async def test_second_pending_proposal_conflicts(
        self, uow, dispatcher, client_user, make_project
    ):
        project = make_project()
        await _propose(uow, dispatcher, project, client_user, "1800")
        with pytest.raises(ConflictError):
            await _propose(uow, dispatcher, project, client_user, "1700")

    async def test_cannot_respond_to_own_proposal(
        self, uow, dispatcher, client_user, make_project
    ):
        project = make_project()
        proposal = await _propose(uow, dispatcher, project, client_user, "1800")
        with pytest.raises(AuthorizationError):
            await _respond(uow, dispatcher, proposal, client_user, NegotiationDecision.ACCEPTED)

    async def test_non_positive_price(self, uow, dispatcher, client_user, make_project):
        project = make_project()
        with pytest.raises(ValidationError):
            await _propose(uow, dispatcher, project, client_user, "0")

    async def test_started_project_cannot_be_negotiated(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project()
        proposal = await _propose(uow, dispatcher, project, client_user, "1800")
        await _respond(uow, dispatcher, proposal, admin, NegotiationDecision.ACCEPTED)
        with pytest.raises(InvalidStateTransitionError):
            await _propose(uow, dispatcher, project, client_user, "1500")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class TestNotifications:
    async def test_inbox_newest_first_and_mark_read(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        await _set_progress(uow, dispatcher, project, admin, 30)

        inbox = ListNotificationsUseCase().execute(_uid(client_user), uow)
        assert len(inbox) == 2
        assert "Design" in inbox[0].message
        assert not any(n.is_read for n in inbox)

        read = MarkNotificationReadUseCase().execute(
            MarkNotificationReadCommand(
                notification_id=uuid.UUID(inbox[0].id), acting_user_id=_uid(client_user)
            ),
            uow,
        )
        assert read.is_read is True

    async def test_cannot_read_someone_elses(
        self, uow, dispatcher, admin, client_user, make_project
    ):
        project = make_project()
        await _create_stages(uow, dispatcher, project, admin)
        inbox = ListNotificationsUseCase().execute(_uid(client_user), uow)
        with pytest.raises(NotFoundError):
            MarkNotificationReadUseCase().execute(
                MarkNotificationReadCommand(
                    notification_id=uuid.UUID(inbox[0].id), acting_user_id=_uid(admin)
                ),
                uow,
            )
