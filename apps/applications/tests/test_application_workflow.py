"""
Tests for the application approval workflow.

Covers:
- Submission and application ids
- Level-by-level approval, forwarding, return and rejection
- Approval level, permission and scope checks
- Optimistic concurrency and idempotent request ids
- Append-only approval ledger
- Decision notifications and SLA tracking
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch
import uuid

import pytest
from django.utils import timezone

from apps.applications.models import Application, ApprovalEntry
from apps.applications.tasks import notify_application_decision, refresh_sla_status_task
from apps.applications.workflow import ApplicationWorkflow
from apps.core.exceptions import (
    ConcurrentModification, ImmutableRecordError, InvalidTransition,
    PermissionDeniedError, ScopeViolation, ValidationError,
)
from apps.rbac.models import AuditLog, Role

UNIT = 'KL-TVM-NYT-01'


@pytest.fixture
def beneficiary(make_user, grant_role, locations):
    user = make_user(email='applicant@example.org')
    grant_role(user, 'beneficiary', regions=[locations[UNIT]])
    return user


@pytest.fixture
def reviewers(make_user, grant_role, locations):
    """One reviewer per level, each covering the application's unit."""
    scopes = {
        'unit_admin': 'KL-TVM-NYT-01',
        'area_admin': 'KL-TVM-NYT',
        'district_admin': 'KL-TVM',
        'state_admin': 'KL',
    }
    reviewers = {}
    for role_name, code in scopes.items():
        user = make_user(email=f'{role_name}@example.org')
        grant_role(user, role_name, regions=[locations[code]])
        reviewers[role_name] = user
    return reviewers


@pytest.fixture
def submit(beneficiary, locations):
    def _submit(**data):
        data.setdefault('title', 'Housing repair grant')
        data.setdefault('unit', locations[UNIT])
        data.setdefault('scheme_id', 'SCH-HOUSING')
        data.setdefault('requested_amount', Decimal('25000.00'))
        return ApplicationWorkflow.submit(beneficiary, data)
    return _submit


@pytest.fixture
def application(submit):
    return submit()


def approve_through(application, reviewers, levels):
    for level in levels:
        application = ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers[level], remarks=f'Approved at {level}'
        )
    return application


@pytest.mark.django_db
class TestSubmit:
    """Tests for ApplicationWorkflow.submit."""

    def test_submission_starts_at_unit_level(self, application, locations):
        year = timezone.now().year

        assert application.application_id == f'APP{year}000001'
        assert application.status == Application.STATUS_PENDING
        assert application.current_level == Role.APPROVAL_UNIT
        assert application.version == 1
        assert application.unit == locations[UNIT]
        assert application.area == locations['KL-TVM-NYT']
        assert application.district == locations['KL-TVM']
        assert application.state == locations['KL']

    def test_submission_writes_first_ledger_entry(self, application, beneficiary):
        entry = application.approval_entries.get()

        assert entry.sequence == 1
        assert entry.action == ApprovalEntry.ACTION_SUBMIT
        assert entry.from_level is None
        assert entry.level == Role.APPROVAL_UNIT
        assert entry.assigned_to == beneficiary
        assert entry.deadline == application.sla_deadline

    def test_deadline_follows_configured_hours(self, settings, submit):
        settings.APPLICATION_SLA_HOURS = {'unit_admin': 24}

        application = submit()

        assert application.sla_deadline - application.submitted_at == timedelta(hours=24)

    def test_ids_are_sequential(self, submit):
        first = submit()
        second = submit()

        assert int(second.application_id[-6:]) == int(first.application_id[-6:]) + 1

    def test_requires_create_permission(self, reviewers, locations):
        with pytest.raises(PermissionDeniedError):
            ApplicationWorkflow.submit(reviewers['unit_admin'], {'title': 'x', 'unit': locations[UNIT]})

    def test_requires_unit_location(self, submit, locations):
        with pytest.raises(ValidationError):
            submit(unit=locations['KL-TVM-NYT'])


@pytest.mark.django_db
class TestTransitions:
    """Tests for moving applications through the review chain."""

    def test_unit_approval_moves_to_area(self, application, reviewers):
        application = ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], remarks='Documents verified'
        )

        assert application.status == Application.STATUS_AREA_REVIEW
        assert application.current_level == Role.APPROVAL_AREA
        assert application.version == 2
        entry = application.last_entry()
        assert (entry.sequence, entry.action, entry.from_level, entry.level) == (
            2, ApprovalEntry.ACTION_APPROVE, Role.APPROVAL_UNIT, Role.APPROVAL_AREA
        )
        assert entry.remarks == 'Documents verified'

    def test_approve_then_return_comes_back_to_unit(self, application, reviewers):
        application = approve_through(application, reviewers, ['unit_admin'])

        application = ApplicationWorkflow.transition(
            application.application_id, 'return', reviewers['area_admin'], remarks='Missing income proof'
        )

        assert application.current_level == Role.APPROVAL_UNIT
        assert application.status == Application.STATUS_UNIT_REVIEW
        assert not application.is_terminal
        assert application.approval_entries.count() == 3
        assert application.sla_deadline is not None

    def test_full_chain_approval(self, application, reviewers):
        application = approve_through(
            application, reviewers, ['unit_admin', 'area_admin', 'district_admin', 'state_admin']
        )

        assert application.status == Application.STATUS_APPROVED
        assert application.current_level == Role.APPROVAL_STATE
        assert application.approved_amount == Decimal('25000.00')
        assert application.decided_at is not None
        assert application.sla_deadline is None
        assert application.version == 5
        assert list(application.approval_entries.values_list('sequence', flat=True)) == [1, 2, 3, 4, 5]
        assert AuditLog.objects.by_action('application_approved').filter(
            target_id=str(application.id), user=reviewers['state_admin']
        ).exists()

    def test_rejected_application_accepts_no_more_transitions(self, application, reviewers):
        application = approve_through(application, reviewers, ['unit_admin'])
        application = ApplicationWorkflow.transition(
            application.application_id, 'reject', reviewers['area_admin'], remarks='Not eligible'
        )
        assert application.status == Application.STATUS_REJECTED

        for action in ('approve', 'forward', 'return', 'reject'):
            with pytest.raises(InvalidTransition):
                ApplicationWorkflow.transition(
                    application.application_id, action, reviewers['area_admin'], remarks='again'
                )
        assert application.approval_entries.count() == 3

    def test_forward_requires_remarks(self, application, reviewers):
        with pytest.raises(ValidationError):
            ApplicationWorkflow.transition(application.application_id, 'forward', reviewers['unit_admin'])

        application = ApplicationWorkflow.transition(
            application.application_id, 'forward', reviewers['unit_admin'], remarks='Needs area site visit'
        )
        assert application.current_level == Role.APPROVAL_AREA
        assert application.last_entry().action == ApprovalEntry.ACTION_FORWARD

    def test_forward_without_remarks_when_not_required(self, settings, application, reviewers):
        settings.WORKFLOW_FORWARD_REQUIRES_REMARKS = False

        application = ApplicationWorkflow.transition(application.application_id, 'forward', reviewers['unit_admin'])

        assert application.current_level == Role.APPROVAL_AREA

    def test_forward_beyond_state_is_invalid(self, application, reviewers):
        application = approve_through(application, reviewers, ['unit_admin', 'area_admin', 'district_admin'])

        with pytest.raises(InvalidTransition):
            ApplicationWorkflow.transition(
                application.application_id, 'forward', reviewers['state_admin'], remarks='Up'
            )

    def test_return_from_unit_is_invalid(self, application, reviewers):
        with pytest.raises(InvalidTransition):
            ApplicationWorkflow.transition(
                application.application_id, 'return', reviewers['unit_admin'], remarks='Back'
            )

    def test_unknown_action(self, application, reviewers):
        with pytest.raises(ValidationError):
            ApplicationWorkflow.transition(application.application_id, 'escalate', reviewers['unit_admin'])

    def test_stated_level_must_match(self, application, reviewers):
        with pytest.raises(InvalidTransition):
            ApplicationWorkflow.transition(
                application.application_id, 'approve', reviewers['unit_admin'], level=Role.APPROVAL_AREA
            )

    def test_lookup_by_primary_key(self, application, reviewers):
        application = ApplicationWorkflow.transition(application.id, 'approve', reviewers['unit_admin'])

        assert application.current_level == Role.APPROVAL_AREA


@pytest.mark.django_db
class TestCancel:
    """Tests for applicant cancellation."""

    def test_applicant_cancels(self, application, beneficiary):
        application = ApplicationWorkflow.transition(
            application.application_id, 'cancel', beneficiary, remarks='No longer needed'
        )

        assert application.status == Application.STATUS_CANCELLED
        assert application.is_terminal

    def test_reviewer_cannot_cancel(self, application, reviewers):
        with pytest.raises(PermissionDeniedError):
            ApplicationWorkflow.transition(application.application_id, 'cancel', reviewers['unit_admin'])

    def test_global_admin_cannot_cancel_for_applicant(self, application, make_user, grant_role):
        root = make_user()
        grant_role(root, 'super_admin')

        with pytest.raises(PermissionDeniedError):
            ApplicationWorkflow.transition(application.application_id, 'cancel', root)

    def test_other_beneficiary_cannot_cancel(self, application, make_user, grant_role, locations):
        neighbour = make_user()
        grant_role(neighbour, 'beneficiary', regions=[locations[UNIT]])

        with pytest.raises(ScopeViolation):
            ApplicationWorkflow.transition(application.application_id, 'cancel', neighbour)


@pytest.mark.django_db
class TestAuthorization:
    """Tests for approval level and scope checks."""

    def test_higher_level_cannot_act_before_its_turn(self, application, reviewers):
        with pytest.raises(PermissionDeniedError):
            ApplicationWorkflow.transition(application.application_id, 'approve', reviewers['area_admin'])

        assert application.approval_entries.count() == 1

    def test_reviewer_outside_scope(self, application, make_user, grant_role, locations):
        other_unit_admin = make_user()
        grant_role(other_unit_admin, 'unit_admin', regions=[locations['KL-MLP-TIR-01']])

        with pytest.raises(ScopeViolation):
            ApplicationWorkflow.transition(application.application_id, 'approve', other_unit_admin)

    def test_reviewer_for_sibling_unit_is_out_of_scope(self, application, make_user, grant_role, locations):
        sibling = make_user()
        grant_role(sibling, 'unit_admin', regions=[locations['KL-TVM-NYT-02']])

        with pytest.raises(ScopeViolation):
            ApplicationWorkflow.transition(application.application_id, 'approve', sibling)

    def test_user_without_permission(self, application, make_user):
        with pytest.raises(PermissionDeniedError):
            ApplicationWorkflow.transition(application.application_id, 'approve', make_user())

    def test_global_role_acts_at_any_level(self, application, make_user, grant_role):
        root = make_user()
        grant_role(root, 'super_admin')

        application = ApplicationWorkflow.transition(application.application_id, 'approve', root)

        assert application.current_level == Role.APPROVAL_AREA


@pytest.mark.django_db
class TestConcurrency:
    """Tests for version checks and idempotent request ids."""

    def test_stale_expected_version(self, application, reviewers):
        ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], expected_version=1
        )

        with pytest.raises(ConcurrentModification):
            ApplicationWorkflow.transition(
                application.application_id, 'approve', reviewers['area_admin'], expected_version=1
            )

    def test_second_writer_on_stale_read_loses(self, application, reviewers, make_user, grant_role, locations):
        second_reviewer = make_user()
        grant_role(second_reviewer, 'unit_admin', regions=[locations[UNIT]])
        stale = Application.objects.get(pk=application.pk)

        ApplicationWorkflow.transition(application.application_id, 'approve', reviewers['unit_admin'])

        with patch.object(ApplicationWorkflow, 'get_application', return_value=stale):
            with pytest.raises(ConcurrentModification):
                ApplicationWorkflow.transition(stale.application_id, 'reject', second_reviewer, remarks='No')

        application.refresh_from_db()
        assert application.status == Application.STATUS_AREA_REVIEW
        assert application.version == 2
        assert application.approval_entries.count() == 2

    def test_two_approvals_from_same_read(self, application, reviewers, make_user, grant_role, locations):
        second_reviewer = make_user()
        grant_role(second_reviewer, 'unit_admin', regions=[locations[UNIT]])
        stale = Application.objects.get(pk=application.pk)

        ApplicationWorkflow.transition(application.application_id, 'approve', reviewers['unit_admin'])

        with patch.object(ApplicationWorkflow, 'get_application', return_value=stale):
            with pytest.raises(ConcurrentModification):
                ApplicationWorkflow.transition(stale.application_id, 'approve', second_reviewer)

        application.refresh_from_db()
        assert application.version == 2
        assert application.current_level == Role.APPROVAL_AREA
        assert application.approval_entries.filter(action=ApprovalEntry.ACTION_APPROVE).count() == 1
        assert application.approval_entries.count() == 2

    def test_repeated_request_id_replays(self, application, reviewers):
        first = ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )
        second = ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )

        assert first.version == second.version == 2
        assert second.current_level == Role.APPROVAL_AREA
        assert application.approval_entries.filter(request_id='req-approve-1').count() == 1

    def test_replay_ignores_later_state(self, application, reviewers):
        ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )
        ApplicationWorkflow.transition(application.application_id, 'approve', reviewers['area_admin'])

        replayed = ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )

        assert replayed.current_level == Role.APPROVAL_DISTRICT
        assert replayed.approval_entries.count() == 3

    def test_request_id_reused_by_user_without_roles(self, application, reviewers, make_user):
        ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )

        with pytest.raises(PermissionDeniedError):
            ApplicationWorkflow.transition(
                application.application_id, 'reject', make_user(), request_id='req-approve-1'
            )

    def test_request_id_reused_outside_scope(self, application, reviewers, make_user, grant_role, locations):
        ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )
        other_area_admin = make_user()
        grant_role(other_area_admin, 'area_admin', regions=[locations['KL-MLP-TIR']])

        with pytest.raises(ScopeViolation):
            ApplicationWorkflow.transition(
                application.application_id, 'approve', other_area_admin, request_id='req-approve-1'
            )

    def test_request_id_reused_by_another_reviewer(self, application, reviewers):
        ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )

        with pytest.raises(InvalidTransition):
            ApplicationWorkflow.transition(
                application.application_id, 'approve', reviewers['area_admin'], request_id='req-approve-1'
            )

        application.refresh_from_db()
        assert application.current_level == Role.APPROVAL_AREA
        assert application.approval_entries.count() == 2

    def test_request_id_reused_for_another_action(self, application, reviewers):
        ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewers['unit_admin'], request_id='req-approve-1'
        )

        with pytest.raises(InvalidTransition):
            ApplicationWorkflow.transition(
                application.application_id, 'reject', reviewers['unit_admin'],
                remarks='Changed my mind', request_id='req-approve-1'
            )

        application.refresh_from_db()
        assert application.status == Application.STATUS_AREA_REVIEW


@pytest.mark.django_db
class TestLedger:
    """Tests for the append-only approval ledger."""

    def test_entries_cannot_be_changed(self, application):
        entry = application.approval_entries.get()
        entry.remarks = 'rewritten'

        with pytest.raises(ImmutableRecordError):
            entry.save()

    def test_entries_cannot_be_deleted(self, application):
        entry = application.approval_entries.get()

        with pytest.raises(ImmutableRecordError):
            entry.delete()
        with pytest.raises(ImmutableRecordError):
            ApprovalEntry.objects.filter(application=application).delete()

    def test_ledger_matches_application(self, application, reviewers):
        application = approve_through(application, reviewers, ['unit_admin', 'area_admin'])
        application = ApplicationWorkflow.transition(
            application.application_id, 'return', reviewers['district_admin'], remarks='Recheck'
        )

        last = application.last_entry()
        assert (last.level, last.status) == (application.current_level, application.status)


@pytest.mark.django_db
class TestDecisionNotification:
    """Tests for notifications after terminal transitions."""

    def test_dispatched_after_commit(self, application, reviewers, django_capture_on_commit_callbacks):
        with patch('apps.applications.workflow.notify_application_decision.delay') as delay:
            with django_capture_on_commit_callbacks(execute=True):
                ApplicationWorkflow.transition(
                    application.application_id, 'reject', reviewers['unit_admin'], remarks='Duplicate'
                )

        delay.assert_called_once_with(str(application.pk), Application.STATUS_REJECTED, str(reviewers['unit_admin'].id))

    def test_not_dispatched_for_intermediate_steps(self, application, reviewers, django_capture_on_commit_callbacks):
        with patch('apps.applications.workflow.notify_application_decision.delay') as delay:
            with django_capture_on_commit_callbacks(execute=True):
                ApplicationWorkflow.transition(application.application_id, 'approve', reviewers['unit_admin'])

        delay.assert_not_called()

    def test_dispatch_failure_does_not_undo_decision(self, application, reviewers, django_capture_on_commit_callbacks):
        with patch(
            'apps.applications.workflow.notify_application_decision.delay',
            side_effect=ConnectionError('broker down'),
        ):
            with django_capture_on_commit_callbacks(execute=True):
                ApplicationWorkflow.transition(
                    application.application_id, 'reject', reviewers['unit_admin'], remarks='Duplicate'
                )

        application.refresh_from_db()
        assert application.status == Application.STATUS_REJECTED

    def test_task_sends_for_matching_status(self, application, reviewers):
        ApplicationWorkflow.transition(application.application_id, 'reject', reviewers['unit_admin'], remarks='No')

        result = notify_application_decision(str(application.pk), 'rejected', str(reviewers['unit_admin'].id))

        assert result['status'] == 'sent'
        assert result['application_id'] == application.application_id

    def test_task_skips_stale_status(self, application, reviewers):
        result = notify_application_decision(str(application.pk), 'approved', str(reviewers['unit_admin'].id))

        assert result['status'] == 'skipped'

    def test_task_handles_missing_application(self, db):
        result = notify_application_decision(str(uuid.uuid4()), 'approved', str(uuid.uuid4()))

        assert result['status'] == 'error'


@pytest.mark.django_db
class TestSLA:
    """Tests for SLA tracking."""

    def test_refresh_marks_delayed_and_overdue(self, beneficiary, make_application, locations):
        now = timezone.now()
        on_time = make_application(beneficiary, locations[UNIT], sla_deadline=now + timedelta(hours=1))
        delayed = make_application(beneficiary, locations[UNIT], sla_deadline=now - timedelta(hours=2))
        overdue = make_application(beneficiary, locations[UNIT], sla_deadline=now - timedelta(hours=48))
        closed = make_application(
            beneficiary, locations[UNIT], sla_deadline=now - timedelta(hours=48),
            status=Application.STATUS_REJECTED,
        )

        assert ApplicationWorkflow.refresh_sla_status(now=now) == 2

        statuses = dict(Application.objects.values_list('pk', 'sla_status'))
        assert statuses[on_time.pk] == Application.SLA_ON_TIME
        assert statuses[delayed.pk] == Application.SLA_DELAYED
        assert statuses[overdue.pk] == Application.SLA_OVERDUE
        assert statuses[closed.pk] == Application.SLA_ON_TIME
        assert ApplicationWorkflow.refresh_sla_status(now=now) == 0

    def test_refresh_does_not_bump_version(self, beneficiary, make_application, locations):
        application = make_application(
            beneficiary, locations[UNIT], sla_deadline=timezone.now() - timedelta(hours=2)
        )

        ApplicationWorkflow.refresh_sla_status()

        application.refresh_from_db()
        assert application.version == 1

    def test_late_decision_records_sla(self, application, reviewers):
        Application.objects.filter(pk=application.pk).update(sla_deadline=timezone.now() - timedelta(hours=1))

        application = ApplicationWorkflow.transition(
            application.application_id, 'reject', reviewers['unit_admin'], remarks='Late'
        )

        assert application.sla_status == Application.SLA_DELAYED
        assert application.sla_deadline is None

    def test_next_level_gets_fresh_deadline(self, application, reviewers):
        Application.objects.filter(pk=application.pk).update(
            sla_deadline=timezone.now() - timedelta(hours=1), sla_status=Application.SLA_DELAYED
        )

        application = ApplicationWorkflow.transition(application.application_id, 'approve', reviewers['unit_admin'])

        assert application.sla_status == Application.SLA_ON_TIME
        assert application.sla_deadline > timezone.now()

    def test_periodic_task(self, beneficiary, make_application, locations):
        make_application(beneficiary, locations[UNIT], sla_deadline=timezone.now() - timedelta(hours=2))

        assert refresh_sla_status_task() == {'changed': 1}
