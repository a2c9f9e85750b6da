import logging
from dataclasses import dataclass, field
from functools import lru_cache

import requests
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

_MEMBER_CACHE_PREFIX = "voting_member:v1:"


class MemberDirectoryUnavailableError(RuntimeError):
    """Raised when the member directory cannot answer."""


@dataclass(frozen=True)
class Member:
    id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    department: str = ""
    is_active: bool = True


class MemberDirectory:
    def get_member(self, member_id: str) -> Member | None:
        raise NotImplementedError

    def list_members(self) -> list[Member]:
        raise NotImplementedError


class DjangoUserDirectory(MemberDirectory):
    """Members are Django auth users; groups carry roles and the department.

    A group whose name starts with ``VOTING_DEPARTMENT_GROUP_PREFIX`` names the
    member's department; every other group is a role.
    """

    def _member_from_user(self, user) -> Member:
        prefix = str(settings.VOTING_DEPARTMENT_GROUP_PREFIX)
        roles: set[str] = set()
        department = ""
        for name in user.groups.values_list("name", flat=True):
            name = str(name or "").strip()
            if not name:
                continue
            if prefix and name.startswith(prefix):
                department = department or name.removeprefix(prefix).strip()
            else:
                roles.add(name.lower())
        return Member(
            id=str(user.pk),
            roles=frozenset(roles),
            department=department.lower(),
            is_active=bool(user.is_active),
        )

    def get_member(self, member_id: str) -> Member | None:
        member_id = str(member_id or "").strip()
        if not member_id.isdigit():
            return None
        user = get_user_model().objects.filter(pk=int(member_id)).first()
        if user is None:
            return None
        return self._member_from_user(user)

    def list_members(self) -> list[Member]:
        users = get_user_model().objects.filter(is_active=True).prefetch_related("groups").order_by("pk")
        return [self._member_from_user(user) for user in users]


class HttpMemberDirectory(MemberDirectory):
    """Member lookups against the platform's member service.

    ``GET {base}/members/{id}`` returns one member; ``GET {base}/members``
    returns ``{"members": [...]}``. Single lookups are cached briefly.
    """

    def __init__(self, *, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = str(base_url or settings.VOTING_MEMBER_DIRECTORY_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else float(settings.VOTING_MEMBER_DIRECTORY_TIMEOUT_SECONDS)

    @staticmethod
    def _member_from_payload(payload: dict[str, object]) -> Member | None:
        member_id = str(payload.get("id") or "").strip()
        if not member_id:
            return None
        roles_raw = payload.get("roles") or []
        roles = frozenset(str(r).strip().lower() for r in roles_raw if str(r).strip()) if isinstance(roles_raw, list) else frozenset()
        return Member(
            id=member_id,
            roles=roles,
            department=str(payload.get("department") or "").strip().lower(),
            is_active=str(payload.get("status") or "").strip().lower() == "active",
        )

    def _get(self, path: str) -> requests.Response:
        try:
            response = requests.get(
                f"{self.base_url}{path}",
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.warning("Member directory request failed: path=%s error=%s", path, exc)
            raise MemberDirectoryUnavailableError("Member directory is currently unavailable.") from exc
        return response

    def get_member(self, member_id: str) -> Member | None:
        member_id = str(member_id or "").strip()
        if not member_id:
            return None

        cache_key = f"{_MEMBER_CACHE_PREFIX}{member_id}"
        cached = cache.get(cache_key)
        if isinstance(cached, Member):
            return cached

        response = self._get(f"/members/{member_id}")
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.HTTPError, ValueError) as exc:
            raise MemberDirectoryUnavailableError("Member directory returned an invalid response.") from exc

        member = self._member_from_payload(payload) if isinstance(payload, dict) else None
        if member is not None:
            cache.set(cache_key, member, timeout=settings.VOTING_MEMBER_DIRECTORY_CACHE_SECONDS)
        return member

    def list_members(self) -> list[Member]:
        response = self._get("/members?status=active")
        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.HTTPError, ValueError) as exc:
            raise MemberDirectoryUnavailableError("Member directory returned an invalid response.") from exc

        rows = payload.get("members") if isinstance(payload, dict) else None
        members: list[Member] = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            member = self._member_from_payload(row)
            if member is not None and member.is_active:
                members.append(member)
        return members


@lru_cache(maxsize=4)
def _directory_for_path(path: str) -> MemberDirectory:
    return import_string(path)()


def get_member_directory() -> MemberDirectory:
    return _directory_for_path(str(settings.VOTING_MEMBER_DIRECTORY))
