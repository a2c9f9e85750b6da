"""Ballot casting, eligibility check and the member's own ballot."""

import json

from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET, require_POST

from voting.ballots import BallotMetadata, cast_ballot, member_ballot
from voting.directory import MemberDirectoryUnavailableError, get_member_directory
from voting.eligibility import can_vote
from voting.exceptions import VotingError
from voting.selections import parse_selection
from voting.verification import VerificationRequest, verification_policy
from voting.views_votings._helpers import (
    _error_response,
    _get_instance,
    _json_body,
    _member_id,
    member_required,
    serialize_ballot,
)


def _parse_verification(data: dict[str, object]) -> VerificationRequest | None:
    raw = data.get("verification")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError("verification must be an object")
    method = str(raw.get("method") or "").strip()
    if not method:
        return None
    return VerificationRequest(method=method, evidence=str(raw.get("evidence") or ""))


def _metadata(request: HttpRequest, data: dict[str, object]) -> BallotMetadata:
    return BallotMetadata(
        ip_address=str(request.META.get("REMOTE_ADDR") or "").strip() or None,
        user_agent=str(request.META.get("HTTP_USER_AGENT") or "")[:1000],
        device_id=str(data.get("device_id") or "").strip()[:255],
    )


@require_POST
@member_required
def voting_vote_submit(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)

    try:
        data = _json_body(request)
        selection = parse_selection(voting_type=instance.type, data=data)
        verification = _parse_verification(data)
        receipt = cast_ballot(
            instance=instance,
            member_id=_member_id(request),
            selection=selection,
            verification=verification,
            metadata=_metadata(request, data),
        )
    except (ValueError, json.JSONDecodeError, VotingError, MemberDirectoryUnavailableError) as exc:
        return _error_response(exc)

    payload: dict[str, object] = {
        "ok": True,
        "voting_id": instance.pk,
        "ballot_hash": receipt.ballot.ballot_hash,
        "nonce": receipt.nonce,
        "cast_at": receipt.ballot.cast_at.isoformat(),
        "is_abstention": receipt.ballot.is_abstention,
    }
    if receipt.supersedes_ballot_hash:
        payload["supersedes_ballot_hash"] = receipt.supersedes_ballot_hash
    return JsonResponse(payload, status=201)


@require_GET
@member_required
def voting_eligibility(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        member = get_member_directory().get_member(_member_id(request))
    except MemberDirectoryUnavailableError as exc:
        return _error_response(exc)

    decision = can_vote(instance=instance, member=member)
    required, method = verification_policy(instance)
    return JsonResponse(
        {
            "ok": True,
            **decision.as_dict(),
            "verification_required": required,
            "verification_method": method,
        }
    )


@require_GET
@member_required
def voting_my_vote(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    ballot = member_ballot(instance=instance, member_id=_member_id(request))
    if ballot is None:
        return JsonResponse({"ok": True, "has_voted": False, "ballot": None})
    return JsonResponse({"ok": True, "has_voted": True, "ballot": serialize_ballot(ballot)})
