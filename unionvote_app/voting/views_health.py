from __future__ import annotations

import logging

from django.db import connection
from django.http import HttpRequest, JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET

from voting.models import VotingInstance

logger = logging.getLogger(__name__)


@require_GET
def healthz(_request: HttpRequest) -> JsonResponse:
    return JsonResponse({"status": "ok"})


@require_GET
def readyz(_request: HttpRequest) -> JsonResponse:
    try:
        connection.ensure_connection()
        now = timezone.now()
        overdue_activation = VotingInstance.objects.due_for_activation(now=now).count()
        overdue_closing = VotingInstance.objects.due_for_closing(now=now).count()
    except Exception as exc:
        logger.exception("Health check readyz failed")
        return JsonResponse({"status": "not ready", "error": str(exc)}, status=503)

    # Overdue instances mean the sweep is not running; report it without failing readiness.
    return JsonResponse(
        {
            "status": "ready",
            "database": "ok",
            "sweep": {
                "overdue_activation": overdue_activation,
                "overdue_closing": overdue_closing,
            },
        }
    )
