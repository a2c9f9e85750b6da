from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from voting.directory import Member, get_member_directory
from voting.eligibility import can_vote
from voting.events import BALLOT_CAST, emit_voting_event, record_audit
from voting.exceptions import AlreadyVotedError, DuplicateVoteError, VotingError
from voting.models import Ballot, BallotChoice, VotingInstance, VotingOption
from voting.selections import Abstention, RankedSelection, Selection, validate_selection
from voting.tabulation import TabulationResult, ballot_totals, compute_participation, tabulate
from voting.verification import VerificationRequest, VerificationResult, verify_for_instance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BallotMetadata:
    ip_address: str | None = None
    user_agent: str = ""
    device_id: str = ""


@dataclass(frozen=True)
class BallotReceipt:
    ballot: Ballot
    nonce: str
    supersedes_ballot_hash: str = ""
    tabulation: TabulationResult | None = None


def requires_anonymization(instance: VotingInstance) -> bool:
    return bool(instance.is_anonymous or instance.is_secret)


def _anonymization_updates(*, instance: VotingInstance, now) -> dict[str, object]:
    updates: dict[str, object] = {
        "ip_address": None,
        "user_agent": "",
        "device_id": "",
        "is_anonymized": True,
        "anonymized_at": now,
    }
    if instance.is_secret:
        # The voter token keeps duplicate prevention working without the member link.
        updates["member_id"] = None
    return updates


def _choice_rows(*, ballot: Ballot, selection: Selection) -> list[BallotChoice]:
    if isinstance(selection, RankedSelection):
        return [BallotChoice(ballot=ballot, option_id=option_id, rank=rank) for option_id, rank in selection.rankings]
    return [BallotChoice(ballot=ballot, option_id=option_id) for option_id in selection.option_ids()]


def refresh_counters(*, instance: VotingInstance) -> VotingInstance:
    """Recompute participation counters from the ballot set.

    Callers must hold the instance row lock; tabulation does the same work
    when results are computed in real time.
    """
    total_votes, total_abstentions = ballot_totals(instance)
    participation = compute_participation(
        instance=instance,
        total_votes=total_votes,
        total_abstentions=total_abstentions,
    )
    VotingInstance.objects.filter(pk=instance.pk).update(
        total_votes=participation.total_votes,
        total_abstentions=participation.total_abstentions,
        total_participants=participation.total_participants,
        participation_rate=participation.participation_rate,
        quorum_reached=participation.quorum_reached,
    )
    instance.total_votes = participation.total_votes
    instance.total_abstentions = participation.total_abstentions
    instance.total_participants = participation.total_participants
    instance.participation_rate = participation.participation_rate
    instance.quorum_reached = participation.quorum_reached
    return instance


def _is_lock_contention(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "deadlock" in message


def _retry_on_lock_contention(fn: Callable[..., Any], /, *, instance_id: int, **kwargs: Any) -> Any:
    """Run ``fn``, retrying when the database reports a lock conflict.

    SQLite reports concurrent writers as "database is locked" and Postgres
    may abort one side of a deadlock. Exhausting the retries surfaces as
    DuplicateVoteError so callers never see a raw storage error.
    """
    attempts = max(1, int(settings.VOTING_LEDGER_LOCK_RETRIES))
    backoff = float(settings.VOTING_LEDGER_LOCK_BACKOFF_SECONDS)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(**kwargs)
        except OperationalError as exc:
            if not _is_lock_contention(exc):
                raise
            logger.warning(
                "voting.ballot.lock_contention instance_id=%s attempt=%d",
                instance_id,
                attempt,
                extra={
                    "event": "voting.ballot.lock_contention",
                    "component": "voting",
                    "outcome": "retry" if attempt < attempts else "rejected",
                    "instance_id": instance_id,
                },
            )
            if attempt == attempts:
                raise DuplicateVoteError(
                    "Concurrent ballot submissions could not be recorded; please try again."
                ) from exc
            time.sleep(backoff * attempt)


def _precheck(*, instance: VotingInstance, member: Member | None, selection: Selection) -> None:
    instance.refresh_from_db()
    can_vote(instance=instance, member=member).raise_for_reason()

    active_option_ids = set(
        VotingOption.objects.filter(instance=instance, is_active=True).values_list("id", flat=True)
    )
    validate_selection(instance=instance, selection=selection, active_option_ids=active_option_ids)


def _record_ballot(
    *,
    instance: VotingInstance,
    member: Member | None,
    member_id: str,
    selection: Selection,
    verification_result: VerificationResult | None,
    metadata: BallotMetadata,
    nonce: str,
) -> BallotReceipt:
    is_abstention = isinstance(selection, Abstention)

    with transaction.atomic():
        locked = VotingInstance.objects.select_for_update().get(pk=instance.pk)
        can_vote(instance=locked, member=member).raise_for_reason()

        voter_token = Ballot.compute_voter_token(instance_id=locked.pk, member_id=member_id)
        current = (
            Ballot.objects.select_for_update()
            .filter(instance=locked, voter_token=voter_token, superseded_by__isnull=True)
            .first()
        )
        if current is not None and current.is_abstention and is_abstention and not locked.allow_vote_change:
            raise AlreadyVotedError("You have already abstained in this voting.", reason="already_voted")

        ballot_hash = Ballot.compute_hash(
            instance_id=locked.pk,
            voter_token=voter_token,
            selection=selection.as_payload(),
            nonce=nonce,
        )
        fields: dict[str, object] = {
            "instance": locked,
            "member_id": member_id,
            "voter_token": voter_token,
            "is_abstention": is_abstention,
            "verification_method": (
                verification_result.method if verification_result is not None else Ballot.VerificationMethod.none
            ),
            "verification_digest": verification_result.digest if verification_result is not None else "",
            "verification_confidence": verification_result.confidence if verification_result is not None else None,
            "ip_address": metadata.ip_address or None,
            "user_agent": metadata.user_agent or "",
            "device_id": metadata.device_id or "",
            "ballot_hash": ballot_hash,
            "cast_at": timezone.now(),
        }

        supersedes_ballot_hash = ""
        try:
            with transaction.atomic():
                if current is None:
                    ballot = Ballot.objects.create(**fields)
                else:
                    supersedes_ballot_hash = str(current.ballot_hash or "").strip()

                    # Avoid violating the partial unique constraint on current ballots:
                    # create the replacement already superseded, then flip the pointers.
                    ballot = Ballot.objects.create(**fields, superseded_by=current)
                    Ballot.objects.filter(pk=current.pk).update(superseded_by=ballot)
                    Ballot.objects.filter(pk=ballot.pk).update(superseded_by=None)
                    ballot.refresh_from_db(fields=["superseded_by"])

                BallotChoice.objects.bulk_create(_choice_rows(ballot=ballot, selection=selection))
        except IntegrityError as exc:
            logger.warning(
                "voting.ballot.duplicate instance_id=%s",
                locked.pk,
                extra={
                    "event": "voting.ballot.duplicate",
                    "component": "voting",
                    "outcome": "rejected",
                    "instance_id": locked.pk,
                },
            )
            raise DuplicateVoteError("A ballot for this member was recorded concurrently.") from exc

        payload: dict[str, object] = {"ballot_hash": ballot_hash}
        if supersedes_ballot_hash:
            payload["supersedes_ballot_hash"] = supersedes_ballot_hash
        record_audit(instance=locked, event_type="ballot_submitted", payload=payload, is_public=False)

        if requires_anonymization(locked) and locked.anonymization_timing == VotingInstance.AnonymizationTiming.immediate:
            anonymize_ballot(ballot=ballot, reason="cast")

        tabulation_result: TabulationResult | None = None
        if locked.results_mode == VotingInstance.ResultsMode.realtime:
            tabulation_result = tabulate(instance=locked)
        else:
            refresh_counters(instance=locked)

        if locked.requires_quorum and locked.quorum_reached:
            already_logged = locked.audit_log.filter(event_type="quorum_reached").exists()
            if not already_logged:
                record_audit(
                    instance=locked,
                    event_type="quorum_reached",
                    payload={
                        "participation_rate": str(locked.participation_rate),
                        "quorum_percentage": str(locked.quorum_percentage),
                    },
                )

        emit_voting_event(
            instance=locked,
            event_type=BALLOT_CAST,
            summary={
                "total_votes": locked.total_votes,
                "total_abstentions": locked.total_abstentions,
                "total_participants": locked.total_participants,
                "participation_rate": str(locked.participation_rate),
            },
        )

        # Read back inside the transaction so no other writer can hold the rows.
        instance.refresh_from_db()
        ballot.refresh_from_db()

    return BallotReceipt(
        ballot=ballot,
        nonce=nonce,
        supersedes_ballot_hash=supersedes_ballot_hash,
        tabulation=tabulation_result,
    )


def cast_ballot(
    *,
    instance: VotingInstance,
    member_id: str,
    selection: Selection,
    verification: VerificationRequest | None = None,
    metadata: BallotMetadata | None = None,
) -> BallotReceipt:
    """Record a member's ballot.

    Eligibility and selection shape are checked first without locks, then
    step-up verification runs (it may call a slow remote service, so no
    transaction is open). The insert happens in one atomic block holding the
    instance row lock, where eligibility is decided again against the
    committed ballot set. The partial unique index on current ballots is the
    final guard: a concurrent duplicate surfaces as DuplicateVoteError.
    Storage lock conflicts retry the checks or the whole atomic block, never
    the verification.
    """
    member_id = str(member_id or "").strip()
    metadata = metadata or BallotMetadata()

    member = get_member_directory().get_member(member_id) if member_id else None

    _retry_on_lock_contention(_precheck, instance_id=instance.pk, instance=instance, member=member, selection=selection)

    verification_result = verify_for_instance(instance=instance, member_id=member_id, request=verification)

    receipt = _retry_on_lock_contention(
        _record_ballot,
        instance_id=instance.pk,
        instance=instance,
        member=member,
        member_id=member_id,
        selection=selection,
        verification_result=verification_result,
        metadata=metadata,
        nonce=secrets.token_hex(16),
    )

    logger.info(
        "voting.ballot.cast instance_id=%s abstention=%s superseded=%s",
        instance.pk,
        receipt.ballot.is_abstention,
        bool(receipt.supersedes_ballot_hash),
        extra={
            "event": "voting.ballot.cast",
            "component": "voting",
            "outcome": "recorded",
            "instance_id": instance.pk,
        },
    )
    return receipt


def member_ballot(*, instance: VotingInstance, member_id: str) -> Ballot | None:
    """The member's current ballot, if any; works after anonymization."""
    member_id = str(member_id or "").strip()
    if not member_id:
        return None
    voter_token = Ballot.compute_voter_token(instance_id=instance.pk, member_id=member_id)
    return (
        Ballot.objects.current()
        .filter(instance=instance, voter_token=voter_token)
        .prefetch_related("choices__option")
        .first()
    )


def anonymize_ballot(*, ballot: Ballot, reason: str = "", actor: str | None = None) -> bool:
    """Strip capture metadata from one ballot. Returns False if already done."""
    instance = ballot.instance
    if not requires_anonymization(instance):
        raise VotingError("Ballots of this voting are not anonymized")

    now = timezone.now()
    updated = Ballot.objects.filter(pk=ballot.pk, is_anonymized=False).update(
        **_anonymization_updates(instance=instance, now=now)
    )
    if not updated:
        return False

    payload: dict[str, object] = {"ballot_hash": ballot.ballot_hash}
    if reason:
        payload["reason"] = reason
    record_audit(instance=instance, event_type="ballot_anonymized", payload=payload, is_public=False, actor=actor)
    return True


@transaction.atomic
def anonymize_instance_ballots(*, instance: VotingInstance, actor: str | None = None) -> int:
    """Anonymize every ballot of an anonymous or secret instance."""
    if not requires_anonymization(instance):
        return 0

    ballots_affected = Ballot.objects.filter(instance=instance, is_anonymized=False).update(
        **_anonymization_updates(instance=instance, now=timezone.now())
    )
    record_audit(
        instance=instance,
        event_type="ballots_anonymized",
        payload={"ballots_affected": ballots_affected, "secret": bool(instance.is_secret)},
        actor=actor,
    )
    logger.info(
        "voting.ballots.anonymized instance_id=%s count=%d",
        instance.pk,
        ballots_affected,
        extra={
            "event": "voting.ballots.anonymized",
            "component": "voting",
            "outcome": "completed",
            "instance_id": instance.pk,
        },
    )
    return ballots_affected
