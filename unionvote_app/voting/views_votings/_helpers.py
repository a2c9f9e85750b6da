"""Shared private helpers used across voting view sub-modules."""

import json
from collections.abc import Callable
from functools import wraps

from django.core.exceptions import ValidationError
from django.http import Http404, HttpRequest, JsonResponse

from voting.directory import MemberDirectoryUnavailableError
from voting.exceptions import VerificationFailedError, VotingError
from voting.models import Ballot, VotingInstance
from voting.verification import FailureReason

MANAGE_PERMISSION = "voting.change_votinginstance"
CREATE_PERMISSION = "voting.add_votinginstance"

_STATUS_BY_CODE: dict[str, int] = {
    "not_active": 409,
    "already_voted": 409,
    "duplicate_vote": 409,
    "invalid_transition": 409,
    "computation_conflict": 409,
    "not_eligible": 403,
    "excluded": 403,
    "verification_required": 403,
    "verification_failed": 403,
    "invalid_selection": 422,
}


def _member_id(request: HttpRequest) -> str:
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        return ""
    return str(user.pk)


def _actor(request: HttpRequest) -> str | None:
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        return None
    return user.get_username() or None


def _can_manage(request: HttpRequest) -> bool:
    user = getattr(request, "user", None)
    return bool(user is not None and user.is_authenticated and user.has_perm(MANAGE_PERMISSION))


def member_required(view: Callable) -> Callable:
    @wraps(view)
    def _wrapped(request: HttpRequest, *args, **kwargs):
        if not _member_id(request):
            return JsonResponse({"ok": False, "error": "Authentication required."}, status=403)
        return view(request, *args, **kwargs)

    return _wrapped


def _json_body(request: HttpRequest) -> dict[str, object]:
    raw = request.body.decode("utf-8") if request.body else "{}"
    data = json.loads(raw or "{}")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _get_instance(voting_id: int, *, request: HttpRequest) -> VotingInstance:
    """Load an instance by PK; drafts are only visible to managers."""
    instance = VotingInstance.objects.filter(pk=voting_id).first()
    if instance is None:
        raise Http404
    if instance.status == VotingInstance.Status.draft and not _can_manage(request):
        raise Http404
    return instance


def _error_response(exc: Exception) -> JsonResponse:
    if isinstance(exc, MemberDirectoryUnavailableError):
        return JsonResponse({"ok": False, "error": str(exc), "code": "directory_unavailable"}, status=503)

    if isinstance(exc, ValidationError):
        errors = exc.message_dict if hasattr(exc, "error_dict") else {"__all__": exc.messages}
        return JsonResponse({"ok": False, "error": "Invalid data.", "errors": errors}, status=400)

    if not isinstance(exc, VotingError):
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    payload: dict[str, object] = {"ok": False, "error": str(exc), "code": exc.code}
    status = _STATUS_BY_CODE.get(exc.code, 400)
    if isinstance(exc, VerificationFailedError):
        payload["failure_reason"] = exc.failure_reason
        if exc.failure_reason == FailureReason.too_many_attempts:
            status = 429
    return JsonResponse(payload, status=status)


def _form_errors_response(form) -> JsonResponse:
    errors = {name: [str(msg) for msg in messages] for name, messages in form.errors.items()}
    return JsonResponse({"ok": False, "error": "Invalid data.", "errors": errors}, status=400)


def _isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_instance(instance: VotingInstance, *, include_options: bool = True) -> dict[str, object]:
    data: dict[str, object] = {
        "id": instance.pk,
        "title": instance.title,
        "description": instance.description,
        "type": instance.type,
        "status": instance.status,
        "visibility": instance.visibility,
        "starts_at": _isoformat(instance.starts_at),
        "ends_at": _isoformat(instance.ends_at),
        "actual_start_at": _isoformat(instance.actual_start_at),
        "actual_end_at": _isoformat(instance.actual_end_at),
        "requires_quorum": instance.requires_quorum,
        "quorum_percentage": str(instance.quorum_percentage),
        "allow_abstention": instance.allow_abstention,
        "allow_vote_change": instance.allow_vote_change,
        "is_anonymous": instance.is_anonymous,
        "is_secret": instance.is_secret,
        "requires_biometric": instance.requires_biometric,
        "requires_step_up": instance.requires_step_up,
        "max_votes_per_user": instance.max_votes_per_user,
        "ranked_method": instance.ranked_method,
        "results_mode": instance.results_mode,
        "total_eligible": instance.total_eligible,
        "total_participants": instance.total_participants,
        "participation_rate": str(instance.participation_rate),
        "cancellation_reason": instance.cancellation_reason,
    }
    if include_options:
        data["options"] = [
            {
                "id": option.pk,
                "title": option.title,
                "description": option.description,
                "sort_order": option.sort_order,
                "is_active": option.is_active,
            }
            for option in instance.options.all()
        ]
    return data


def serialize_ballot(ballot: Ballot) -> dict[str, object]:
    """The voter's own ballot; capture metadata is never returned."""
    return {
        "ballot_hash": ballot.ballot_hash,
        "cast_at": _isoformat(ballot.cast_at),
        "is_abstention": ballot.is_abstention,
        "is_anonymized": ballot.is_anonymized,
        "verification_method": ballot.verification_method,
        "choices": [
            {"option_id": choice.option_id, "title": choice.option.title, "rank": choice.rank}
            for choice in ballot.choices.all()
        ],
    }


def results_visible(instance: VotingInstance) -> bool:
    if instance.status in {VotingInstance.Status.ended, VotingInstance.Status.cancelled}:
        return True
    if instance.status in {VotingInstance.Status.active, VotingInstance.Status.paused}:
        return instance.results_mode == VotingInstance.ResultsMode.realtime
    return False
