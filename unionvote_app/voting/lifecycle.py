"""State transitions of voting instances.

draft -> scheduled -> active <-> paused -> ended, and cancelled from any
non-terminal state. Content (title, settings, options) is editable only in
draft. Every transition locks the instance row, is audited and emits an
event once committed. Closing always tabulates before the status flips,
so an ended instance always has a final snapshot set.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from voting import events
from voting.ballots import anonymize_instance_ballots, requires_anonymization
from voting.eligibility import eligible_member_count
from voting.events import emit_voting_event, record_audit
from voting.exceptions import QUORUM_NOT_REACHED, InvalidTransitionError, VotingError
from voting.models import Ballot, VotingInstance, VotingOption
from voting.tabulation import TabulationResult, tabulate

logger = logging.getLogger(__name__)

MIN_OPTIONS = 2
SWEEP_ACTOR = "system:sweep"

EDITABLE_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "type",
    "visibility",
    "starts_at",
    "ends_at",
    "requires_quorum",
    "quorum_percentage",
    "allow_abstention",
    "allow_vote_change",
    "is_anonymous",
    "is_secret",
    "requires_biometric",
    "requires_step_up",
    "max_votes_per_user",
    "ranked_method",
    "results_mode",
    "anonymization_timing",
    "confidence_level",
    "eligible_roles",
    "eligible_departments",
    "allowed_member_ids",
    "denied_member_ids",
)

Status = VotingInstance.Status


@dataclass
class SweepResult:
    activated: list[int] = field(default_factory=list)
    closed: list[int] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)


def _lock(instance: VotingInstance) -> VotingInstance:
    return VotingInstance.objects.select_for_update().get(pk=instance.pk)


def _require_status(instance: VotingInstance, allowed: Iterable[str], *, action: str) -> None:
    if instance.status not in set(allowed):
        raise InvalidTransitionError(f"Cannot {action} a voting that is {instance.status}.")


def _log_transition(instance: VotingInstance, *, transition: str, actor: str | None) -> None:
    logger.info(
        "voting.lifecycle.%s instance_id=%s actor=%s status=%s",
        transition,
        instance.pk,
        actor or "",
        instance.status,
        extra={
            "event": f"voting.lifecycle.{transition}",
            "component": "voting",
            "outcome": "success",
            "instance_id": instance.pk,
        },
    )


def _active_option_count(instance: VotingInstance) -> int:
    return VotingOption.objects.filter(instance=instance, is_active=True).count()


@transaction.atomic
def create_voting(
    *,
    instance: VotingInstance,
    options: Iterable[str] = (),
    actor: str | None = None,
) -> VotingInstance:
    """Persist a new draft instance together with its initial options."""
    instance.status = Status.draft
    if actor and not instance.created_by:
        instance.created_by = actor
    instance.full_clean(exclude=["status"])
    instance.save()

    for sort_order, title in enumerate(options, start=1):
        title = str(title or "").strip()
        if title:
            VotingOption.objects.create(instance=instance, title=title, sort_order=sort_order)

    record_audit(
        instance=instance,
        event_type="voting_created",
        payload={"title": instance.title, "type": instance.type},
        actor=actor,
    )
    _log_transition(instance, transition="created", actor=actor)
    return instance


@transaction.atomic
def update_draft(
    *,
    instance: VotingInstance,
    changes: Mapping[str, object],
    actor: str | None = None,
) -> VotingInstance:
    locked = _lock(instance)
    _require_status(locked, {Status.draft}, action="edit")

    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise VotingError(f"Fields cannot be edited: {', '.join(unknown)}")

    changed: list[str] = []
    for name, value in changes.items():
        if getattr(locked, name) != value:
            setattr(locked, name, value)
            changed.append(name)

    if changed:
        locked.full_clean()
        locked.save(update_fields=[*changed, "updated_at"])
        record_audit(instance=locked, event_type="voting_updated", payload={"fields": sorted(changed)}, actor=actor)

    instance.refresh_from_db()
    return instance


@transaction.atomic
def delete_voting(*, instance: VotingInstance, actor: str | None = None) -> None:
    """Delete a draft together with its options; the audit trail is kept."""
    locked = _lock(instance)
    _require_status(locked, {Status.draft}, action="delete")
    if Ballot.objects.filter(instance=locked).exists():
        raise InvalidTransitionError("Cannot delete a voting that has ballots.")

    instance_id = locked.pk
    record_audit(
        instance=locked,
        event_type="voting_deleted",
        payload={"instance_id": instance_id, "title": locked.title},
        is_public=False,
        actor=actor,
    )
    _log_transition(locked, transition="deleted", actor=actor)
    locked.delete()


@transaction.atomic
def add_option(
    *,
    instance: VotingInstance,
    title: str,
    description: str = "",
    actor: str | None = None,
) -> VotingOption:
    locked = _lock(instance)
    _require_status(locked, {Status.draft}, action="add options to")

    title = str(title or "").strip()
    if not title:
        raise VotingError("Option title is required.")

    last = VotingOption.objects.filter(instance=locked).aggregate(last=Max("sort_order"))["last"]
    option = VotingOption.objects.create(
        instance=locked,
        title=title,
        description=str(description or ""),
        sort_order=int(last or 0) + 1,
    )
    record_audit(
        instance=locked,
        event_type="option_added",
        payload={"option_id": option.pk, "title": option.title},
        actor=actor,
    )
    return option


@transaction.atomic
def remove_option(*, option: VotingOption, actor: str | None = None) -> None:
    locked = _lock(option.instance)
    _require_status(locked, {Status.draft}, action="remove options from")

    payload = {"option_id": option.pk, "title": option.title}
    option.delete()
    record_audit(instance=locked, event_type="option_removed", payload=payload, actor=actor)


@transaction.atomic
def set_option_active(*, option: VotingOption, is_active: bool, actor: str | None = None) -> VotingOption:
    """Hide or restore an option for future ballots; tallies keep it."""
    locked = _lock(option.instance)
    _require_status(locked, {Status.draft}, action="change options of")

    if option.is_active != is_active:
        option.is_active = is_active
        option.save(update_fields=["is_active"])
        record_audit(
            instance=locked,
            event_type="option_activated" if is_active else "option_deactivated",
            payload={"option_id": option.pk},
            actor=actor,
        )
    return option


@transaction.atomic
def schedule(*, instance: VotingInstance, actor: str | None = None, now: datetime.datetime | None = None) -> VotingInstance:
    now = now or timezone.now()
    locked = _lock(instance)
    _require_status(locked, {Status.draft}, action="schedule")

    if _active_option_count(locked) < MIN_OPTIONS:
        raise InvalidTransitionError(f"A voting needs at least {MIN_OPTIONS} options to be scheduled.")
    if locked.starts_at is None or locked.starts_at <= now:
        raise InvalidTransitionError("A voting can only be scheduled with a start time in the future.")
    if locked.ends_at is not None and locked.ends_at <= locked.starts_at:
        raise InvalidTransitionError("End time must be after the start time.")

    locked.status = Status.scheduled
    locked.save(update_fields=["status", "updated_at"])

    summary = {
        "title": locked.title,
        "starts_at": locked.starts_at.isoformat(),
        "ends_at": locked.ends_at.isoformat() if locked.ends_at else None,
    }
    record_audit(instance=locked, event_type=events.VOTING_SCHEDULED, payload=summary, actor=actor)
    emit_voting_event(instance=locked, event_type=events.VOTING_SCHEDULED, summary=summary)
    _log_transition(locked, transition="scheduled", actor=actor)

    instance.refresh_from_db()
    return instance


def refresh_total_eligible(*, instance: VotingInstance, actor: str | None = None) -> int:
    """Recompute and store the size of the eligible universe."""
    if instance.is_terminal:
        raise InvalidTransitionError("The eligible count of a finished voting is frozen.")

    total = eligible_member_count(instance=instance)
    VotingInstance.objects.filter(pk=instance.pk).update(total_eligible=total)
    previous = instance.total_eligible
    instance.total_eligible = total
    if previous != total:
        record_audit(
            instance=instance,
            event_type="eligible_count_refreshed",
            payload={"previous": previous, "total_eligible": total},
            actor=actor,
        )
    return total


@transaction.atomic
def activate(
    *,
    instance: VotingInstance,
    actor: str | None = None,
    override: bool = False,
    now: datetime.datetime | None = None,
) -> VotingInstance:
    """Open an instance for ballots.

    Without ``override`` the start time must have been reached. The eligible
    universe is counted once here and kept as the participation denominator.
    """
    now = now or timezone.now()
    locked = _lock(instance)
    _require_status(locked, {Status.draft, Status.scheduled}, action="start")

    if not override and (locked.starts_at is None or now < locked.starts_at):
        raise InvalidTransitionError("This voting cannot start before its start time.")
    if _active_option_count(locked) < MIN_OPTIONS:
        raise InvalidTransitionError(f"A voting needs at least {MIN_OPTIONS} active options to start.")

    # Counted before the status flips so a directory failure leaves it untouched.
    locked.total_eligible = eligible_member_count(instance=locked)
    locked.status = Status.active
    locked.actual_start_at = now
    locked.save(update_fields=["status", "actual_start_at", "total_eligible", "updated_at"])

    summary = {
        "title": locked.title,
        "total_eligible": locked.total_eligible,
        "ends_at": locked.ends_at.isoformat() if locked.ends_at else None,
        "manual_override": bool(override),
    }
    record_audit(instance=locked, event_type=events.VOTING_ACTIVATED, payload=summary, actor=actor)
    emit_voting_event(instance=locked, event_type=events.VOTING_ACTIVATED, summary=summary)
    _log_transition(locked, transition="activated", actor=actor)

    instance.refresh_from_db()
    return instance


@transaction.atomic
def pause(*, instance: VotingInstance, actor: str | None = None) -> VotingInstance:
    locked = _lock(instance)
    _require_status(locked, {Status.active}, action="pause")

    locked.status = Status.paused
    locked.save(update_fields=["status", "updated_at"])

    record_audit(instance=locked, event_type=events.VOTING_PAUSED, actor=actor)
    emit_voting_event(instance=locked, event_type=events.VOTING_PAUSED)
    _log_transition(locked, transition="paused", actor=actor)

    instance.refresh_from_db()
    return instance


@transaction.atomic
def resume(*, instance: VotingInstance, actor: str | None = None) -> VotingInstance:
    locked = _lock(instance)
    _require_status(locked, {Status.paused}, action="resume")

    locked.status = Status.active
    locked.save(update_fields=["status", "updated_at"])

    record_audit(instance=locked, event_type=events.VOTING_RESUMED, actor=actor)
    emit_voting_event(instance=locked, event_type=events.VOTING_RESUMED)
    _log_transition(locked, transition="resumed", actor=actor)

    instance.refresh_from_db()
    return instance


def _record_failure(*, instance: VotingInstance, event_type: str, exc: Exception, actor: str | None) -> None:
    failure_payload: dict[str, object] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
    }
    try:
        with transaction.atomic():
            record_audit(
                instance=instance,
                event_type=event_type,
                payload=failure_payload,
                is_public=False,
                actor=actor,
            )
    except Exception:
        logger.exception("Failed to record %s audit entry for instance=%s", event_type, instance.pk)


def close(
    *,
    instance: VotingInstance,
    actor: str | None = None,
    now: datetime.datetime | None = None,
) -> TabulationResult:
    """End an active or paused instance and publish its final results.

    Quorum shortfall does not block closing; it is recorded on the instance
    and reported as a notice on the returned result.
    """
    now = now or timezone.now()

    try:
        with transaction.atomic():
            locked = _lock(instance)
            _require_status(locked, {Status.active, Status.paused}, action="close")

            result = tabulate(instance=locked, voided=False)

            locked.status = Status.ended
            locked.actual_end_at = now
            locked.save(update_fields=["status", "actual_end_at", "updated_at"])

            if requires_anonymization(locked):
                anonymize_instance_ballots(instance=locked, actor=actor)

            summary = result.summary()
            record_audit(instance=locked, event_type=events.VOTING_ENDED, payload=summary, actor=actor)
            emit_voting_event(instance=locked, event_type=events.VOTING_ENDED, summary=summary)
            emit_voting_event(instance=locked, event_type=events.RESULTS_PUBLISHED, summary=summary)
    except InvalidTransitionError:
        raise
    except Exception as exc:
        _record_failure(instance=instance, event_type="voting_close_failed", exc=exc, actor=actor)
        raise VotingError(
            f"Failed to close voting: {exc}. "
            "Recovery: Verify database connectivity and voting state, then retry. "
            "Contact an administrator if the issue persists."
        ) from exc

    if QUORUM_NOT_REACHED in result.notices:
        logger.warning(
            "voting.lifecycle.quorum_not_reached instance_id=%s participation_rate=%s quorum_percentage=%s",
            locked.pk,
            result.participation.participation_rate,
            result.participation.quorum_percentage,
            extra={
                "event": "voting.lifecycle.quorum_not_reached",
                "component": "voting",
                "outcome": "notice",
                "instance_id": locked.pk,
            },
        )
    _log_transition(locked, transition="ended", actor=actor)

    instance.refresh_from_db()
    return result


@transaction.atomic
def cancel(
    *,
    instance: VotingInstance,
    reason: str,
    actor: str | None = None,
    now: datetime.datetime | None = None,
) -> VotingInstance:
    """Cancel a non-terminal instance.

    Ballots are kept for audit. If the instance ever opened, a snapshot set
    flagged as voided is computed for transparency.
    """
    now = now or timezone.now()
    reason = str(reason or "").strip()
    if not reason:
        raise InvalidTransitionError("A reason is required to cancel a voting.")

    locked = _lock(instance)
    _require_status(locked, {Status.draft, Status.scheduled, Status.active, Status.paused}, action="cancel")

    was_open = locked.actual_start_at is not None
    locked.status = Status.cancelled
    locked.cancellation_reason = reason
    update_fields = ["status", "cancellation_reason", "updated_at"]
    if was_open and locked.actual_end_at is None:
        locked.actual_end_at = now
        update_fields.append("actual_end_at")
    locked.save(update_fields=update_fields)

    if was_open:
        tabulate(instance=locked, voided=True)
        if requires_anonymization(locked) and Ballot.objects.filter(instance=locked, is_anonymized=False).exists():
            anonymize_instance_ballots(instance=locked, actor=actor)

    summary = {"reason": reason, "total_participants": locked.total_participants}
    record_audit(instance=locked, event_type=events.VOTING_CANCELLED, payload=summary, actor=actor)
    emit_voting_event(instance=locked, event_type=events.VOTING_CANCELLED, summary=summary)
    _log_transition(locked, transition="cancelled", actor=actor)

    instance.refresh_from_db()
    return instance


def sweep(*, now: datetime.datetime | None = None, dry_run: bool = False) -> SweepResult:
    """Start instances whose start time arrived and close those whose window elapsed.

    Each instance is handled in its own transaction; a failure is logged and
    the sweep moves on.
    """
    now = now or timezone.now()
    result = SweepResult()

    for instance in VotingInstance.objects.due_for_activation(now=now).order_by("starts_at", "id"):
        if dry_run:
            result.activated.append(int(instance.pk))
            continue
        try:
            activate(instance=instance, actor=SWEEP_ACTOR, now=now)
        except Exception as exc:
            logger.exception("Scheduled activation failed for instance=%s", instance.pk)
            result.failed.append((int(instance.pk), str(exc)))
        else:
            result.activated.append(int(instance.pk))

    closing = VotingInstance.objects.due_for_closing(now=now).order_by("ends_at", "id")
    if dry_run:
        # Instances that would be activated above are not active yet.
        closing = list(closing) + [
            i for i in VotingInstance.objects.filter(pk__in=result.activated) if i.ends_at and i.ends_at <= now
        ]

    for instance in closing:
        if dry_run:
            result.closed.append(int(instance.pk))
            continue
        try:
            close(instance=instance, actor=SWEEP_ACTOR, now=now)
        except Exception as exc:
            logger.exception("Scheduled close failed for instance=%s", instance.pk)
            result.failed.append((int(instance.pk), str(exc)))
        else:
            result.closed.append(int(instance.pk))

    return result
