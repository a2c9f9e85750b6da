"""Step-up verification gateway.

The voting core never matches biometrics or stores secrets itself. It asks
an oracle (selected per method through ``VOTING_VERIFICATION_ORACLES``) and
keeps only an HMAC digest of the evidence plus the oracle's confidence.

Remote oracles run on a worker thread with a bounded wait so a hung
verification service can never stall a ballot submission; a timeout is a
failure, never a pass. Consecutive failures per member are counted in the
cache and, past ``VOTING_VERIFICATION_MAX_FAILURES`` within the window,
further attempts are rejected without calling the oracle.
"""

import hashlib
import hmac
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from functools import lru_cache

import requests
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils.module_loading import import_string

from voting.exceptions import VerificationFailedError, VerificationRequiredError
from voting.models import Ballot, VotingInstance

logger = logging.getLogger(__name__)

_FAILURES_CACHE_PREFIX = "voting_verification_failures:v1:"

_executor: ThreadPoolExecutor | None = None


class FailureReason:
    no_method = "no_method"
    missing_evidence = "missing_evidence"
    unsupported_method = "unsupported_method"
    too_many_attempts = "too_many_attempts"
    timeout = "timeout"
    unavailable = "unavailable"
    rejected = "rejected"
    low_confidence = "low_confidence"
    oracle_error = "oracle_error"


@dataclass(frozen=True)
class VerificationRequest:
    method: str
    evidence: str = ""


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    method: str
    confidence: float | None = None
    digest: str = ""
    failure_reason: str = ""


class VerificationOracle:
    # Remote oracles are called on a worker thread with a bounded wait.
    runs_in_worker = True

    def verify(self, *, member_id: str, evidence: str, timeout: float) -> VerificationResult:
        raise NotImplementedError


class PasswordOracle(VerificationOracle):
    runs_in_worker = False

    def verify(self, *, member_id: str, evidence: str, timeout: float) -> VerificationResult:
        method = Ballot.VerificationMethod.password
        member_id = str(member_id or "").strip()
        user = get_user_model().objects.filter(pk=int(member_id)).first() if member_id.isdigit() else None
        if user is None or not user.is_active or not user.check_password(evidence):
            return VerificationResult(verified=False, method=method, failure_reason=FailureReason.rejected)
        return VerificationResult(verified=True, method=method, confidence=1.0)


class HttpBiometricOracle(VerificationOracle):
    """Ask the biometric service to match a challenge response.

    The service answers ``{"matched": bool, "confidence": float}``.
    """

    def verify(self, *, member_id: str, evidence: str, timeout: float) -> VerificationResult:
        method = Ballot.VerificationMethod.biometric
        response = requests.post(
            str(settings.VOTING_BIOMETRIC_ORACLE_URL),
            json={"member_id": member_id, "response": evidence},
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            return VerificationResult(verified=False, method=method, failure_reason=FailureReason.oracle_error)

        try:
            confidence = float(payload.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0

        if not bool(payload.get("matched")):
            return VerificationResult(
                verified=False,
                method=method,
                confidence=confidence,
                failure_reason=FailureReason.rejected,
            )
        if confidence < float(settings.VOTING_BIOMETRIC_MIN_CONFIDENCE):
            return VerificationResult(
                verified=False,
                method=method,
                confidence=confidence,
                failure_reason=FailureReason.low_confidence,
            )
        return VerificationResult(verified=True, method=method, confidence=confidence)


@lru_cache(maxsize=8)
def _oracle_for_path(path: str) -> VerificationOracle:
    return import_string(path)()


def get_oracle(method: str) -> VerificationOracle | None:
    path = dict(settings.VOTING_VERIFICATION_ORACLES).get(str(method))
    if not path:
        return None
    return _oracle_for_path(str(path))


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(
            max_workers=int(settings.VOTING_VERIFICATION_WORKERS),
            thread_name_prefix="voting-verify",
        )
    return _executor


def evidence_digest(*, member_id: str, method: str, evidence: str) -> str:
    return hmac.new(
        key=str(settings.SECRET_KEY).encode("utf-8"),
        msg=f"evidence:{method}:{member_id}:{evidence}".encode(),
        digestmod=hashlib.sha256,
    ).hexdigest()


def _failures_cache_key(member_id: str) -> str:
    return f"{_FAILURES_CACHE_PREFIX}{member_id}"


def consecutive_failures(member_id: str) -> int:
    return int(cache.get(_failures_cache_key(member_id)) or 0)


def verification_throttled(member_id: str) -> bool:
    return consecutive_failures(member_id) >= int(settings.VOTING_VERIFICATION_MAX_FAILURES)


def _record_verification_failure(member_id: str) -> int:
    key = _failures_cache_key(member_id)
    cache.add(key, 0, timeout=settings.VOTING_VERIFICATION_FAILURE_WINDOW_SECONDS)
    try:
        return int(cache.incr(key))
    except ValueError:
        # The key expired between add() and incr().
        cache.set(key, 1, timeout=settings.VOTING_VERIFICATION_FAILURE_WINDOW_SECONDS)
        return 1


def reset_verification_failures(member_id: str) -> None:
    cache.delete(_failures_cache_key(member_id))


def _call_oracle(
    *,
    oracle: VerificationOracle,
    member_id: str,
    method: str,
    evidence: str,
    timeout: float,
) -> VerificationResult:
    try:
        if not oracle.runs_in_worker:
            return oracle.verify(member_id=member_id, evidence=evidence, timeout=timeout)
        future = _get_executor().submit(oracle.verify, member_id=member_id, evidence=evidence, timeout=timeout)
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.timeout)
    except requests.exceptions.Timeout:
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.timeout)
    except (requests.exceptions.RequestException, OSError):
        logger.warning("Verification oracle unavailable: method=%s", method, exc_info=True)
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.unavailable)
    except Exception:
        logger.exception("Verification oracle failed: method=%s", method)
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.oracle_error)


def verify(
    *,
    member_id: str,
    method: str,
    evidence: str,
    timeout: float | None = None,
) -> VerificationResult:
    """Run step-up verification for a member; never raises for oracle failures."""
    member_id = str(member_id or "").strip()
    method = str(method or "").strip() or Ballot.VerificationMethod.none
    wait = float(timeout if timeout is not None else settings.VOTING_VERIFICATION_TIMEOUT_SECONDS)

    if method == Ballot.VerificationMethod.none:
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.no_method)

    if verification_throttled(member_id):
        logger.warning(
            "voting.verification.throttled member_id=%s method=%s",
            member_id,
            method,
            extra={
                "event": "voting.verification.throttled",
                "component": "voting",
                "outcome": "rejected",
                "method": method,
            },
        )
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.too_many_attempts)

    oracle = get_oracle(method)
    if oracle is None:
        return VerificationResult(verified=False, method=method, failure_reason=FailureReason.unsupported_method)

    if not evidence:
        result = VerificationResult(verified=False, method=method, failure_reason=FailureReason.missing_evidence)
    else:
        result = _call_oracle(oracle=oracle, member_id=member_id, method=method, evidence=evidence, timeout=wait)

    if not result.verified:
        failures = _record_verification_failure(member_id)
        logger.info(
            "voting.verification.failed method=%s reason=%s failures=%d",
            method,
            result.failure_reason,
            failures,
            extra={
                "event": "voting.verification.failed",
                "component": "voting",
                "outcome": "failed",
                "method": method,
                "failure_reason": result.failure_reason,
            },
        )
        return result

    reset_verification_failures(member_id)
    return VerificationResult(
        verified=True,
        method=method,
        confidence=result.confidence,
        digest=evidence_digest(member_id=member_id, method=method, evidence=evidence),
    )


def verification_policy(instance: VotingInstance) -> tuple[bool, str | None]:
    """Return (verification required, required method or None for any)."""
    if instance.requires_biometric:
        return True, Ballot.VerificationMethod.biometric
    if instance.requires_step_up:
        return True, None
    return False, None


def verify_for_instance(
    *,
    instance: VotingInstance,
    member_id: str,
    request: VerificationRequest | None,
) -> VerificationResult | None:
    """Apply the instance's step-up policy before a ballot is accepted.

    Raises VerificationRequiredError when the policy demands a method that
    was not attempted, VerificationFailedError when the attempt failed.
    Returns None when no verification was needed or offered.
    """
    required, required_method = verification_policy(instance)
    method = str(request.method or "").strip() if request is not None else ""
    attempted = bool(method) and method != Ballot.VerificationMethod.none

    if not attempted:
        if required:
            raise VerificationRequiredError("This voting requires step-up verification before voting.")
        return None

    if required_method is not None and method != required_method:
        raise VerificationRequiredError(f"This voting requires {required_method} verification before voting.")

    result = verify(member_id=member_id, method=method, evidence=request.evidence if request else "")
    if not result.verified:
        raise VerificationFailedError("Verification failed.", failure_reason=result.failure_reason)
    return result
