"""Voting instance list, creation, detail and draft editing."""

import json

from django.contrib.auth.decorators import permission_required
from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.http import Http404, HttpRequest, JsonResponse
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from voting import lifecycle
from voting.exceptions import VotingError
from voting.forms import VotingInstanceForm
from voting.models import VotingInstance, VotingOption
from voting.views_votings._helpers import (
    CREATE_PERMISSION,
    MANAGE_PERMISSION,
    _actor,
    _can_manage,
    _error_response,
    _form_errors_response,
    _get_instance,
    _json_body,
    member_required,
    serialize_instance,
)

PAGE_SIZE = 50
SORT_FIELDS = frozenset({"title", "starts_at", "ends_at", "created_at"})


def _list(request: HttpRequest) -> JsonResponse:
    qs = VotingInstance.objects.all()
    if not _can_manage(request):
        qs = qs.exclude(status=VotingInstance.Status.draft)

    status = str(request.GET.get("status") or "").strip()
    if status:
        if status not in VotingInstance.Status.values:
            return JsonResponse({"ok": False, "error": f"Unknown status: {status}"}, status=400)
        qs = qs.filter(status=status)

    voting_type = str(request.GET.get("type") or "").strip()
    if voting_type:
        if voting_type not in VotingInstance.Type.values:
            return JsonResponse({"ok": False, "error": f"Unknown type: {voting_type}"}, status=400)
        qs = qs.filter(type=voting_type)

    title = str(request.GET.get("title") or "").strip()
    if title:
        qs = qs.filter(title__icontains=title)

    # ``sort=starts_at`` ascending, ``sort=-starts_at`` descending.
    sort = str(request.GET.get("sort") or "").strip()
    if sort:
        if sort.removeprefix("-") not in SORT_FIELDS:
            return JsonResponse({"ok": False, "error": f"Unknown sort field: {sort}"}, status=400)
        qs = qs.order_by(sort, "id")

    page = Paginator(qs, PAGE_SIZE).get_page(request.GET.get("page"))
    return JsonResponse(
        {
            "ok": True,
            "results": [serialize_instance(instance, include_options=False) for instance in page.object_list],
            "page": page.number,
            "num_pages": page.paginator.num_pages,
            "count": page.paginator.count,
        }
    )


def _create(request: HttpRequest) -> JsonResponse:
    if not request.user.has_perm(CREATE_PERMISSION):
        return JsonResponse({"ok": False, "error": "Permission denied."}, status=403)

    try:
        payload = _json_body(request)
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    options = payload.get("options") or []
    if not isinstance(options, list):
        return JsonResponse({"ok": False, "error": "options must be a list"}, status=400)
    option_titles = [str(o.get("title") if isinstance(o, dict) else o or "").strip() for o in options]

    form = VotingInstanceForm.from_payload(payload)
    if not form.is_valid():
        return _form_errors_response(form)

    try:
        instance = lifecycle.create_voting(
            instance=form.save(commit=False),
            options=option_titles,
            actor=_actor(request),
        )
    except (VotingError, ValidationError) as exc:
        return _error_response(exc)

    return JsonResponse({"ok": True, "voting": serialize_instance(instance)}, status=201)


@require_http_methods(["GET", "POST"])
@member_required
def votings(request: HttpRequest) -> JsonResponse:
    if request.method == "POST":
        return _create(request)
    return _list(request)


@require_GET
@member_required
def voting_detail(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    return JsonResponse({"ok": True, "voting": serialize_instance(instance)})


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_update(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    if instance.status != VotingInstance.Status.draft:
        return JsonResponse(
            {"ok": False, "error": "Only draft votings can be edited.", "code": "invalid_transition"},
            status=409,
        )

    try:
        payload = _json_body(request)
    except (ValueError, json.JSONDecodeError) as exc:
        return JsonResponse({"ok": False, "error": str(exc)}, status=400)

    form = VotingInstanceForm.from_payload(payload, instance=instance)
    if not form.is_valid():
        return _form_errors_response(form)

    try:
        instance = lifecycle.update_draft(instance=instance, changes=form.changes(), actor=_actor(request))
    except (VotingError, ValidationError) as exc:
        return _error_response(exc)

    return JsonResponse({"ok": True, "voting": serialize_instance(instance)})


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_option_add(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        payload = _json_body(request)
        option = lifecycle.add_option(
            instance=instance,
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            actor=_actor(request),
        )
    except (ValueError, VotingError) as exc:
        return _error_response(exc)

    return JsonResponse(
        {"ok": True, "option": {"id": option.pk, "title": option.title, "sort_order": option.sort_order}},
        status=201,
    )


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_option_remove(request: HttpRequest, voting_id: int, option_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    option = VotingOption.objects.filter(instance=instance, pk=option_id).first()
    if option is None:
        raise Http404
    try:
        lifecycle.remove_option(option=option, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return JsonResponse({"ok": True})


@require_POST
@member_required
@permission_required(MANAGE_PERMISSION, raise_exception=True)
def voting_delete(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    try:
        lifecycle.delete_voting(instance=instance, actor=_actor(request))
    except VotingError as exc:
        return _error_response(exc)
    return JsonResponse({"ok": True, "deleted": voting_id})
