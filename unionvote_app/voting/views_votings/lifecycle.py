"""Voting lifecycle actions: schedule, start, pause, resume, end, cancel."""

import json

from django.contrib.auth.decorators import permission_required
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_POST

from voting import lifecycle
from voting.directory import MemberDirectoryUnavailableError
from voting.exceptions import VotingError
from voting.views_votings._helpers import (
    MANAGE_PERMISSION,
    _actor,
    _error_response,
    _get_instance,
    _json_body,
    member_required,
    serialize_instance,
)


def _transition_response(instance, **extra) -> JsonResponse:
    return JsonResponse({"ok": True, "voting": serialize_instance(instance, include_options=False), **extra})


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_schedule(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        lifecycle.schedule(instance=instance, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return _transition_response(instance)


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_start(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        payload = _json_body(request)
        lifecycle.activate(
            instance=instance,
            actor=_actor(request),
            override=bool(payload.get("override")),
        )
    except (ValueError, VotingError, MemberDirectoryUnavailableError) as exc:
        return _error_response(exc)
    return _transition_response(instance)


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_pause(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        lifecycle.pause(instance=instance, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return _transition_response(instance)


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_resume(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        lifecycle.resume(instance=instance, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return _transition_response(instance)


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_end(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        result = lifecycle.close(instance=instance, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return _transition_response(instance, summary=result.summary())


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_cancel(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        payload = _json_body(request)
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    reason = str(payload.get("reason") or "").strip()
    if not reason:
        return JsonResponse({"ok": False, "error": "reason is required"}, status=400)

    try:
        lifecycle.cancel(instance=instance, reason=reason, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return _transition_response(instance)
