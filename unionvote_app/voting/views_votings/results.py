"""Published results, participation statistics and the public audit trail."""

from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET

from voting.models import VotingInstance
from voting.tabulation import current_results, serialize_snapshot, voting_statistics
from voting.views_votings._helpers import _can_manage, _get_instance, member_required, results_visible


def _results_hidden_response(instance: VotingInstance) -> JsonResponse:
    return JsonResponse(
        {"ok": False, "error": "Results are not available yet.", "status": instance.status},
        status=403,
    )


@require_GET
@member_required
def voting_results(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    if not results_visible(instance) and not _can_manage(request):
        return _results_hidden_response(instance)

    snapshots = [serialize_snapshot(s) for s in current_results(instance=instance)]
    return JsonResponse(
        {
            "ok": True,
            "voting_id": instance.pk,
            "status": instance.status,
            "is_final": instance.status == VotingInstance.Status.ended,
            "is_voided": instance.status == VotingInstance.Status.cancelled,
            "is_tie": instance.is_tie,
            "quorum_reached": instance.quorum_reached,
            "result_version": instance.result_version,
            "results": snapshots,
        }
    )


@require_GET
@member_required
def voting_statistics_view(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    if not results_visible(instance) and not _can_manage(request):
        return _results_hidden_response(instance)
    return JsonResponse({"ok": True, "statistics": voting_statistics(instance=instance)})


@require_GET
@member_required
def voting_public_audit(request: HttpRequest, voting_id: int) -> JsonResponse:
    instance = _get_instance(voting_id, request=request)
    entries = instance.audit_log.all()
    if not _can_manage(request):
        entries = entries.filter(is_public=True)
    return JsonResponse(
        {
            "ok": True,
            "entries": [
                {
                    "timestamp": entry.timestamp.isoformat(),
                    "event_type": entry.event_type,
                    "payload": entry.payload,
                }
                for entry in entries
            ],
        }
    )
