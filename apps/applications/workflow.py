"""
Application approval workflow.

Every change to an application's status or review level goes through
ApplicationWorkflow. A transition:
1. Checks permission and scope, then replays idempotently when the same
   actor repeats a request id already in the ledger
2. Checks version, status and the actor's approval level
3. Writes conditionally on the application's version
4. Appends exactly one ApprovalEntry

Transitions are never retried here. A caller receiving
ConcurrentModification must re-read the application first.
"""
from datetime import timedelta
from typing import Optional
import uuid
import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Max
from django.utils import timezone

from apps.applications.models import Application, ApprovalEntry
from apps.applications.tasks import notify_application_decision
from apps.core.exceptions import (
    ConcurrentModification, InvalidTransition, NotFoundError,
    PermissionDeniedError, ScopeViolation, ValidationError,
)
from apps.core.logging import SecurityLogger
from apps.core.sentry_utils import add_breadcrumb, capture_exception
from apps.locations.models import Location
from apps.locations.services import LocationHierarchy
from apps.rbac.access import AccessContext, AccessDecision
from apps.rbac.models import AuditLog, Role
from apps.rbac.resolver import PermissionResolver
from apps.rbac.scope import RegionalScopeFilter

logger = logging.getLogger(__name__)


class ApplicationWorkflow:
    """
    Service driving applications through the review chain.

    Usage:
        application = ApplicationWorkflow.submit(user, {'title': ..., 'unit': unit})
        application = ApplicationWorkflow.transition(
            application.application_id, 'approve', reviewer, remarks='ok', request_id='req-1'
        )
    """

    ACTION_PERMISSIONS = {
        ApprovalEntry.ACTION_APPROVE: 'applications.approve',
        ApprovalEntry.ACTION_FORWARD: 'applications.approve',
        ApprovalEntry.ACTION_REJECT: 'applications.approve',
        ApprovalEntry.ACTION_RETURN: 'applications.update.regional',
        ApprovalEntry.ACTION_CANCEL: 'applications.cancel.own',
    }

    SUBMIT_PERMISSION = 'applications.create'
    RESOURCE_TYPE = 'applications'

    # Attempts at allocating a unique application id on submit
    ID_ATTEMPTS = 3

    @classmethod
    def submit(cls, applicant, data: dict, context: Optional[AccessContext] = None) -> Application:
        """
        Create an application at the first review level.

        Args:
            applicant: User submitting the application
            data: dict with title, unit (Location) and optional description,
                requested_amount, scheme_id, project_id
            context: AccessContext for the permission check

        Returns:
            Application instance (status pending, level unit_admin)

        Raises:
            PermissionDeniedError: applicant lacks applications.create
            RateLimitExceeded: submission rate limit hit
            ValidationError: missing or invalid location
        """
        context = context or AccessContext()
        AccessDecision.require_permission(applicant, cls.SUBMIT_PERMISSION, context)

        unit = data.get('unit')
        if not isinstance(unit, Location) or unit.type != Location.TYPE_UNIT:
            raise ValidationError('Applications must be filed under a unit.', details={'unit': str(unit)})
        chain = LocationHierarchy.get_chain(unit)

        now = timezone.now()
        level = Role.APPROVAL_UNIT
        deadline = cls.deadline_for(level, now)

        for attempt in range(1, cls.ID_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    application = Application.objects.create(
                        application_id=Application.objects.next_application_id(now.year),
                        applicant=applicant,
                        title=data['title'],
                        description=data.get('description', ''),
                        requested_amount=data.get('requested_amount') or 0,
                        scheme_id=str(data.get('scheme_id') or ''),
                        project_id=str(data.get('project_id') or ''),
                        status=Application.STATUS_PENDING,
                        current_level=level,
                        state=chain[Location.TYPE_STATE],
                        district=chain[Location.TYPE_DISTRICT],
                        area=chain[Location.TYPE_AREA],
                        unit=chain[Location.TYPE_UNIT],
                        sla_deadline=deadline,
                        sla_status=Application.SLA_ON_TIME,
                        submitted_at=now,
                    )
                    ApprovalEntry.objects.create(
                        application=application,
                        sequence=1,
                        action=ApprovalEntry.ACTION_SUBMIT,
                        from_level=None,
                        level=level,
                        status=Application.STATUS_PENDING,
                        assigned_to=applicant,
                        remarks=data.get('remarks', ''),
                        deadline=deadline,
                        request_id=context.request_id,
                    )
                break
            except IntegrityError:
                if attempt == cls.ID_ATTEMPTS:
                    raise
                logger.warning(
                    "Application id collision on submit, retrying",
                    extra={'attempt': attempt, 'applicant_id': str(applicant.id)}
                )

        logger.info(
            f"Application submitted: {application.application_id}",
            extra={
                'application_id': application.application_id,
                'applicant_id': str(applicant.id),
                'unit_id': str(unit.id),
            }
        )
        return application

    @classmethod
    def transition(cls, application_id, action: str, actor, remarks: str = '',
                   request_id: Optional[str] = None, level: Optional[str] = None,
                   expected_version: Optional[int] = None, comments: str = '',
                   context: Optional[AccessContext] = None) -> Application:
        """
        Apply a workflow action to an application.

        Args:
            application_id: Human-readable application id (or primary key)
            action: approve, forward, reject, return or cancel
            actor: User taking the action
            remarks: Reviewer remarks recorded in the ledger
            request_id: Client request id; repeating it replays the earlier result
            level: Level the actor believes the application is at
            expected_version: Version the actor last read
            comments: Additional comments recorded in the ledger
            context: AccessContext for the permission check

        Returns:
            The application in its state after the transition

        Raises:
            NotFoundError: no such application
            ConcurrentModification: version moved since the actor read it
            InvalidTransition: action not allowed in the current state, or
                request_id already used by another actor or action
            PermissionDeniedError: permission or approval level missing
            RateLimitExceeded: permission rate limit hit
            ScopeViolation: application outside the actor's scope
            ValidationError: unknown action or missing remarks
        """
        if action not in cls.ACTION_PERMISSIONS:
            raise ValidationError(f"Unknown workflow action '{action}'.", details={'action': action})

        context = context or AccessContext()
        request_id = request_id or context.request_id
        application = cls.get_application(application_id)

        permission_name = cls.ACTION_PERMISSIONS[action]
        AccessDecision.require_permission(actor, permission_name, context)

        if not RegionalScopeFilter.can_access(actor, application, cls.RESOURCE_TYPE, permission_name):
            SecurityLogger.log_scope_violation(
                actor.id, cls.RESOURCE_TYPE, application.id, ip_address=context.ip_address
            )
            raise ScopeViolation('Application is outside your scope.')

        if request_id:
            previous = application.approval_entries.filter(request_id=request_id).first()
            if previous is not None:
                return cls._replay(application, previous, action, actor, request_id)

        if expected_version is not None and expected_version != application.version:
            raise ConcurrentModification(
                'Application was modified by another request.',
                details={'expected_version': expected_version, 'version': application.version}
            )

        if application.is_terminal:
            raise InvalidTransition(
                f"Application is {application.status}; no further transitions are accepted.",
                details={'status': application.status, 'action': action}
            )

        if level and level != application.current_level:
            raise InvalidTransition(
                f"Application is at {application.current_level}, not {level}.",
                details={'current_level': application.current_level, 'level': level}
            )

        if action == ApprovalEntry.ACTION_CANCEL:
            if application.applicant_id != actor.id:
                raise PermissionDeniedError('Only the applicant can cancel an application.')
        else:
            cls.check_approval_level(actor, application, permission_name, context.timestamp)

        status, next_level = cls.next_state(application, action, remarks)
        return cls._write(
            application, action, actor, status, next_level,
            remarks=remarks, comments=comments, request_id=request_id, context=context,
        )

    @classmethod
    def _replay(cls, application: Application, previous: ApprovalEntry, action: str, actor,
                request_id: str) -> Application:
        """
        Return the application for a request id already in the ledger.

        Only the same actor repeating the same action is a replay. Anything
        else reusing the id is rejected without revealing what it recorded.
        """
        if previous.assigned_to_id != actor.id or previous.action != action:
            logger.warning(
                f"Request id reused for a different transition on {application.application_id}",
                extra={'application_id': application.application_id, 'request_id': request_id}
            )
            raise InvalidTransition(
                'Request id was already used for a different transition.',
                details={'request_id': request_id}
            )

        logger.info(
            f"Replayed transition {action} on {application.application_id}",
            extra={'application_id': application.application_id, 'request_id': request_id}
        )
        return application

    @classmethod
    def next_state(cls, application: Application, action: str, remarks: str = ''):
        """
        Status and level an application moves to under ``action``.

        Returns:
            (status, level) tuple

        Raises:
            InvalidTransition: forward at the last level or return at the first
            ValidationError: forward without remarks when they are required
        """
        order = Role.APPROVAL_LEVEL_ORDER
        current = application.current_level
        index = order.index(current)

        if action == ApprovalEntry.ACTION_APPROVE:
            if current == Role.APPROVAL_STATE:
                return Application.STATUS_APPROVED, current
            next_level = order[index + 1]
            return Application.REVIEW_STATUS[next_level], next_level

        if action == ApprovalEntry.ACTION_FORWARD:
            if current == Role.APPROVAL_STATE:
                raise InvalidTransition(
                    'Cannot forward beyond the final review level.',
                    details={'current_level': current}
                )
            if getattr(settings, 'WORKFLOW_FORWARD_REQUIRES_REMARKS', True) and not remarks.strip():
                raise ValidationError('Remarks are required to forward an application.')
            next_level = order[index + 1]
            return Application.REVIEW_STATUS[next_level], next_level

        if action == ApprovalEntry.ACTION_RETURN:
            if current == Role.APPROVAL_UNIT:
                raise InvalidTransition(
                    'Cannot return from the first review level.',
                    details={'current_level': current}
                )
            previous_level = order[index - 1]
            return Application.REVIEW_STATUS[previous_level], previous_level

        if action == ApprovalEntry.ACTION_REJECT:
            return Application.STATUS_REJECTED, current

        return Application.STATUS_CANCELLED, current

    @classmethod
    def check_approval_level(cls, actor, application: Application, permission_name: str, at=None) -> None:
        """
        Require a role reviewing at the application's current level.

        The actor needs one assignment whose role reviews at
        ``current_level``, holds ``permission_name`` and covers the
        application's location. A role with global scope acts at any level.

        Raises:
            PermissionDeniedError: no such assignment
        """
        grants = PermissionResolver.resolve_assignment_grants(actor, at)
        if any(grant.has_global_scope for grant in grants):
            return

        location_ids = {
            str(location_id)
            for location_id in (application.state_id, application.district_id,
                                application.area_id, application.unit_id)
            if location_id
        }
        for grant in grants:
            if grant.approval_level != application.current_level:
                continue
            if permission_name not in grant.permission_names:
                continue
            regions = LocationHierarchy.expand_regions(grant.assignment.get_region_ids())
            if location_ids & {str(region_id) for region_id in regions}:
                return

        raise PermissionDeniedError(
            'Your role does not review applications at this level.',
            details={'current_level': application.current_level, 'permission': permission_name}
        )

    @classmethod
    def get_application(cls, application_id) -> Application:
        application = Application.objects.by_application_id(str(application_id))
        if application is None:
            application = Application.objects.filter(pk=cls._as_pk(application_id)).first()
        if application is None:
            raise NotFoundError('Application not found.', details={'application_id': str(application_id)})
        return application

    @classmethod
    def deadline_for(cls, level: str, now=None):
        hours = getattr(settings, 'APPLICATION_SLA_HOURS', {}).get(level, 72)
        return (now or timezone.now()) + timedelta(hours=hours)

    @classmethod
    def refresh_sla_status(cls, now=None) -> int:
        """
        Recompute sla_status of open applications.

        Returns:
            Number of applications whose SLA status changed
        """
        now = now or timezone.now()
        grace_limit = now - timedelta(hours=getattr(settings, 'APPLICATION_SLA_GRACE_HOURS', 24))
        tracked = Application.objects.open().filter(sla_deadline__isnull=False)

        changed = tracked.filter(sla_deadline__gte=now).exclude(
            sla_status=Application.SLA_ON_TIME
        ).update(sla_status=Application.SLA_ON_TIME, updated_at=now)
        changed += tracked.filter(sla_deadline__lt=now, sla_deadline__gte=grace_limit).exclude(
            sla_status=Application.SLA_DELAYED
        ).update(sla_status=Application.SLA_DELAYED, updated_at=now)
        changed += tracked.filter(sla_deadline__lt=grace_limit).exclude(
            sla_status=Application.SLA_OVERDUE
        ).update(sla_status=Application.SLA_OVERDUE, updated_at=now)

        if changed:
            logger.info(f"SLA status changed for {changed} applications", extra={'changed': changed})
        return changed

    @classmethod
    def _write(cls, application: Application, action: str, actor, status: str, next_level: str,
               remarks: str, comments: str, request_id: Optional[str],
               context: AccessContext) -> Application:
        now = timezone.now()
        from_level = application.current_level
        from_status = application.status
        terminal = status in Application.TERMINAL_STATUSES

        updates = {
            'status': status,
            'current_level': next_level,
            'version': F('version') + 1,
            'updated_at': now,
        }
        if terminal:
            # SLA is judged against the deadline of the level that decided
            updates['sla_status'] = application.compute_sla_status(now)
            updates['sla_deadline'] = None
            updates['decided_at'] = now
            deadline = None
        else:
            deadline = cls.deadline_for(next_level, now)
            updates['sla_status'] = Application.SLA_ON_TIME
            updates['sla_deadline'] = deadline
        if status == Application.STATUS_APPROVED and application.approved_amount is None:
            updates['approved_amount'] = application.requested_amount

        try:
            with transaction.atomic():
                rows = Application.objects.filter(
                    pk=application.pk, version=application.version
                ).update(**updates)
                if rows == 0:
                    raise ConcurrentModification(
                        'Application was modified by another request.',
                        details={'application_id': application.application_id, 'version': application.version}
                    )

                last_sequence = application.approval_entries.aggregate(last=Max('sequence'))['last'] or 0
                ApprovalEntry.objects.create(
                    application=application,
                    sequence=last_sequence + 1,
                    action=action,
                    from_level=from_level,
                    level=next_level,
                    status=status,
                    assigned_to=actor,
                    remarks=remarks,
                    comments=comments,
                    deadline=deadline,
                    request_id=request_id,
                )

                if terminal:
                    AuditLog.log_action(
                        action=f'application_{status}',
                        user=actor,
                        target_type='application',
                        target_id=application.id,
                        diff={'status': {'from': from_status, 'to': status}},
                        metadata={
                            'application_id': application.application_id,
                            'level': from_level,
                            'action': action,
                        },
                        ip_address=context.ip_address,
                        request_id=request_id,
                    )
                    transaction.on_commit(
                        lambda: cls._dispatch_decision(application.pk, status, actor.id)
                    )
        except IntegrityError:
            # Ledger sequence or request id taken by a concurrent transition
            raise ConcurrentModification(
                'Application was modified by another request.',
                details={'application_id': application.application_id}
            )

        application.refresh_from_db()
        logger.info(
            f"Application {application.application_id}: {action} at {from_level}",
            extra={
                'application_id': application.application_id,
                'action': action,
                'from_level': from_level,
                'to_level': next_level,
                'status': status,
                'actor_id': str(actor.id),
            }
        )
        add_breadcrumb(
            category="workflow",
            message=f"{action} {application.application_id}",
            data={'from_level': from_level, 'to_level': next_level, 'version': application.version}
        )
        return application

    @classmethod
    def _dispatch_decision(cls, application_pk, status: str, actor_id) -> None:
        try:
            notify_application_decision.delay(str(application_pk), status, str(actor_id))
        except Exception as e:
            logger.error(
                f"Failed to dispatch decision notification: {e}",
                extra={'application_pk': str(application_pk), 'status': status},
                exc_info=True
            )
            capture_exception(e, application={'pk': str(application_pk), 'status': status})

    @staticmethod
    def _as_pk(value):
        try:
            return uuid.UUID(str(value))
        except ValueError:
            return None
