"""Structured voting events for external notifiers.

The voting core does not format or deliver messages. After a successful
state change it sends ``voting_event`` once the surrounding transaction
commits. Receivers get the ``VotingEvent`` as ``event`` and its wire form
(``instanceId``, ``eventType``, ``timestamp``, ``summary``) as ``payload``.
"""

import datetime
import logging
from dataclasses import dataclass, field

from django.db import transaction
from django.dispatch import Signal
from django.utils import timezone

from voting.models import VotingAuditLogEntry, VotingInstance

logger = logging.getLogger(__name__)

VOTING_SCHEDULED = "voting_scheduled"
VOTING_ACTIVATED = "voting_activated"
VOTING_PAUSED = "voting_paused"
VOTING_RESUMED = "voting_resumed"
VOTING_ENDED = "voting_ended"
VOTING_CANCELLED = "voting_cancelled"
RESULTS_PUBLISHED = "results_published"
BALLOT_CAST = "ballot_cast"

voting_event = Signal()


@dataclass(frozen=True)
class VotingEvent:
    instance_id: int
    event_type: str
    timestamp: datetime.datetime
    summary: dict[str, object] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "instanceId": self.instance_id,
            "eventType": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "summary": dict(self.summary),
        }


def _send(event: VotingEvent) -> None:
    responses = voting_event.send_robust(sender=VotingInstance, event=event, payload=event.as_dict())
    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.error(
                "voting.event.receiver_failed event_type=%s instance_id=%s receiver=%r",
                event.event_type,
                event.instance_id,
                receiver,
                exc_info=response,
            )


def emit_voting_event(
    *,
    instance: VotingInstance,
    event_type: str,
    summary: dict[str, object] | None = None,
) -> VotingEvent:
    event = VotingEvent(
        instance_id=int(instance.pk),
        event_type=event_type,
        timestamp=timezone.now(),
        summary=dict(summary or {}),
    )
    logger.info(
        "voting.event.emitted event_type=%s instance_id=%s",
        event_type,
        instance.pk,
        extra={
            "event": f"voting.{event_type}",
            "component": "voting",
            "outcome": "emitted",
            "instance_id": instance.pk,
        },
    )
    transaction.on_commit(lambda: _send(event))
    return event


def record_audit(
    *,
    instance: VotingInstance,
    event_type: str,
    payload: dict[str, object] | None = None,
    is_public: bool = True,
    actor: str | None = None,
) -> VotingAuditLogEntry:
    data = dict(payload or {})
    if actor:
        data["actor"] = actor
    return VotingAuditLogEntry.objects.create(
        instance=instance,
        event_type=event_type,
        payload=data,
        is_public=is_public,
    )
