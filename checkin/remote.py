"""
Check-in Engine - Remote Registry

The external registration service, seen through one small protocol:

    lookup_person(name)                         -> PersonRecord | None
    get_server_date()                           -> "YYYY-MM-DD HH:MM:SS"
    list_care_categories(checkin_type, code)    -> [CategoryRecord]
    list_care_items(category_id)                -> [ItemRecord]
    list_personnel(org_code)                    -> [PersonnelRecord]
    submit(payload)                             -> SubmitResult

HttpRemoteRegistry speaks the vendor's REST dialect over httpx. It is the
only place that knows vendor field codes or rejection wording:
classify_rejection() maps the vendor's text onto the closed ErrorClass
set. Wording the vendor changes degrades to TRANSIENT (logged with the
raw text); alternate phrasings are deliberately not guessed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, Sequence

import httpx

from checkin.config import Settings
from checkin.errors import (
    CheckinError,
    ConfigError,
    ErrorClass,
    RemoteRejected,
    RoleCapacityExceeded,
    TransientRemoteError,
)
from checkin.types import (
    REMOTE_CAPPED_ROLES,
    CategoryRecord,
    ItemRecord,
    PersonnelRecord,
    PersonRecord,
    RegistrationPayload,
    Role,
    SubmitResult,
)

logger = logging.getLogger("checkin.remote")


class RemoteRegistry(Protocol):
    def lookup_person(self, name: str) -> PersonRecord | None: ...
    def get_server_date(self) -> str: ...
    def list_care_categories(self, checkin_type: str, category_code: str) -> list[CategoryRecord]: ...
    def list_care_items(self, category_id: Any) -> list[ItemRecord]: ...
    def list_personnel(self, org_code: str) -> list[PersonnelRecord]: ...
    def submit(self, payload: RegistrationPayload) -> SubmitResult: ...


# ═══════════════════════════════════════════════════════════════════
# Vendor vocabulary
# ═══════════════════════════════════════════════════════════════════

ACCEPTED_MARKER = "本次业务办理成功"

# Rejection text -> role whose assigned candidate is full
CAPACITY_MARKERS: tuple[tuple[str, Role], ...] = (
    ("责任护士负责人数已达", Role.NURSE),
    ("责任医师负责人数已达", Role.PHYSICIAN),
    ("护理员负责人数已达", Role.CAREGIVER),
)

ROLE_CODES: dict[str, Role] = {
    "12": Role.NURSE,
    "13": Role.PHYSICIAN,
    "10": Role.CAREGIVER,
}

TRANSIENT_STATUS_CODES = (408, 429)


def role_from_code(code: Any) -> Role | None:
    return ROLE_CODES.get(str(code)) if code is not None else None


# ═══════════════════════════════════════════════════════════════════
# Classification boundary
# ═══════════════════════════════════════════════════════════════════

def classify_rejection(message: str, status_code: int | None = None) -> tuple[ErrorClass, Role | None]:
    """
    Map a rejected submission onto (ErrorClass, role).

    Caregiver capacity text is recognised but has no re-selection path,
    so it classifies as OTHER.
    """
    text = message or ""
    for marker, role in CAPACITY_MARKERS:
        if marker in text:
            if role in REMOTE_CAPPED_ROLES:
                return ErrorClass.ROLE_CAPACITY_EXCEEDED, role
            return ErrorClass.OTHER, role

    if (status_code is not None and 400 <= status_code < 500
            and status_code not in TRANSIENT_STATUS_CODES):
        return ErrorClass.OTHER, None

    logger.warning("Unclassified rejection treated as transient (status=%s): %s",
                   status_code, text[:200])
    return ErrorClass.TRANSIENT, None


def rejection_error(result: SubmitResult) -> CheckinError:
    """Build the exception for a rejected SubmitResult."""
    error_class, role = classify_rejection(result.message, result.status_code)
    reason = f"rejected: {result.message}".strip()
    context = {"status_code": result.status_code}
    if error_class is ErrorClass.ROLE_CAPACITY_EXCEEDED:
        return RoleCapacityExceeded(role, reason, context)
    if error_class is ErrorClass.TRANSIENT:
        return TransientRemoteError(reason, context)
    if role is not None:
        context["role"] = role.value
    return RemoteRejected(reason, context)


# ═══════════════════════════════════════════════════════════════════
# Reference data helpers
# ═══════════════════════════════════════════════════════════════════

def parse_server_date(raw: str) -> int:
    """'2025-09-30 08:15:00' -> 20250930. Raises ValueError."""
    text = (raw or "").strip().strip('"')
    day = text.split(" ")[0]
    return int(datetime.strptime(day, "%Y-%m-%d").strftime("%Y%m%d"))


def select_items(items: Sequence[ItemRecord], indices: Sequence[int]) -> list[ItemRecord]:
    """Pick care items by position; out-of-range and code-less items are skipped."""
    picked = []
    for index in indices:
        if 0 <= index < len(items) and items[index].item_code:
            picked.append(items[index])
    return picked


# ═══════════════════════════════════════════════════════════════════
# HTTP client
# ═══════════════════════════════════════════════════════════════════

def _error_message(response: httpx.Response) -> str:
    """Best human-readable message from an error response."""
    body = response.text
    try:
        data = response.json()
    except ValueError:
        return body or response.reason_phrase
    if isinstance(data, dict):
        for key in ("message", "error"):
            if data.get(key):
                return str(data[key])
    return body


class HttpRemoteRegistry:
    """
    Vendor REST client.

    Timeouts, connection errors, 5xx, 408 and 429 raise
    TransientRemoteError; other 4xx raise RemoteRejected. submit() turns
    vendor rejections into SubmitResult(accepted=False) instead of raising,
    so the orchestrator can classify them.
    """

    def __init__(
        self,
        base_url: str,
        cookie: str = "",
        referer: str = "",
        timeout_seconds: float = 30.0,
        org_code: str = "",
        dept_name: str = "",
        region_code: int | str = "",
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.org_code = org_code
        self.dept_name = dept_name
        self.region_code = region_code
        headers = {
            "accept": "application/json, text/plain, */*",
            "content-type": "application/json;charset=UTF-8",
        }
        if cookie:
            headers["cookie"] = cookie
        if referer:
            headers["referer"] = referer
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def __enter__(self) -> HttpRemoteRegistry:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        logger.debug("API %s %s", method, path)
        try:
            resp = self._client.request(method, path, json=body)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"{method} {path}: timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            msg = _error_message(e.response)
            if status >= 500 or status in TRANSIENT_STATUS_CODES:
                raise TransientRemoteError(f"{method} {path}: HTTP {status}: {msg}",
                                           {"status_code": status}) from e
            raise RemoteRejected(f"{method} {path}: HTTP {status}: {msg}",
                                 {"status_code": status}) from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{method} {path}: {e}") from e

        if "application/json" in resp.headers.get("content-type", ""):
            return resp.json()
        return resp.text

    # ── Lookups ──────────────────────────────────────────────

    def lookup_person(self, name: str) -> PersonRecord | None:
        payload = {
            "ckh004": "01",
            "cka025": self.region_code,
            "aaa027": "",
            "ckh005": self.org_code,
            "deptName": self.dept_name,
            "aac002": "",
            "aac003": name,
            "ckh003": "",
            "ckg066": "",
            "ckh280": "",
            "ckh079": "",
            "ckh101": "",
            "ckf181": "",
            "pageNum": 1,
            "pageSize": 10,
            "isOver": True,
        }
        data = self._request("POST", "/nursing/kh01/selectPlanAlreadyMade", payload)
        rows = data.get("list") if isinstance(data, dict) else None
        if not rows:
            logger.warning("Person not found: %s", name)
            return None
        row = rows[0]
        return PersonRecord(
            person_id=row.get("ckh002"),
            id_number=row.get("aac002") or "",
            name=row.get("aac003") or name,
        )

    def get_server_date(self) -> str:
        return str(self._request("GET", "/sys/getDatabaseTime/getTime"))

    def list_care_categories(self, checkin_type: str, category_code: str) -> list[CategoryRecord]:
        data = self._request("POST", "/nursing/kh18/queryKH18",
                             {"ckh003": checkin_type, "ckh057": category_code})
        return [
            CategoryRecord(category_id=row.get("ckh059"), checkin_type=row.get("ckh003"))
            for row in (data or []) if isinstance(row, dict)
        ]

    def list_care_items(self, category_id: Any) -> list[ItemRecord]:
        data = self._request("POST", "/nursing/kh18/queryKH20ClassifyList",
                             {"ckh059": category_id})
        items = []
        for row in data or []:
            detail = row.get("kh20DTOA") if isinstance(row, dict) else None
            items.append(ItemRecord(item_code=(detail or {}).get("ckh048") or ""))
        return items

    def list_personnel(self, org_code: str) -> list[PersonnelRecord]:
        data = self._request("POST", "/sys/kh34/queryKH34List", {"ckf020": org_code})
        return [
            PersonnelRecord(
                personnel_id=str(row.get("ckh174") or ""),
                role=role_from_code(row.get("ckh122")),
                display_name=row.get("aac003") or "",
            )
            for row in (data or []) if isinstance(row, dict)
        ]

    # ── Submission ───────────────────────────────────────────

    def submit(self, payload: RegistrationPayload) -> SubmitResult:
        body = build_checkin_body(payload)
        logger.debug("Submitting check-in for %s", payload.person.name)
        try:
            resp = self._client.post("/nursing/kh01/checkIn", json=body)
        except httpx.TransportError as e:
            raise TransientRemoteError(f"submit {payload.person.name}: {e}") from e

        if resp.is_success:
            text = resp.text
            return SubmitResult(accepted=ACCEPTED_MARKER in text, message=text,
                                status_code=resp.status_code)
        return SubmitResult(accepted=False, message=_error_message(resp),
                            status_code=resp.status_code)


def http_registry(settings: Settings) -> HttpRemoteRegistry:
    """Live vendor client from the api and organization settings."""
    if not settings.api.base_url:
        raise ConfigError("api.base_url is required for live runs (or pass --fixture)")
    return HttpRemoteRegistry(
        base_url=settings.api.base_url,
        cookie=settings.api.cookie,
        referer=settings.api.referer,
        timeout_seconds=settings.api.timeout_seconds,
        org_code=settings.organization.code,
        dept_name=settings.organization.dept_name,
        region_code=settings.organization.region_code,
    )


def build_checkin_body(payload: RegistrationPayload) -> dict[str, Any]:
    """Vendor field mapping for the check-in submission."""
    return {
        "ckh002": payload.person.person_id,
        "aac002": payload.person.id_number,
        "aac003": payload.person.name,
        "aae030": payload.service_date,
        "aae031": None,
        "aae013": None,
        "kh04AddDTOList": [{"ckh048": item.item_code} for item in payload.items],
        "ckh059": payload.category.category_id,
        "ckh079": "",
        "ckh099": payload.physician_id,
        "ckh500": payload.nurse_id,
        "ckh600": payload.caregiver_id,
        "ckh200": "",
        "ckh003": payload.category.checkin_type,
        "ckh173": None,
        "ckh101": "",
        "ckh281": "1" if payload.medical_flag else "0",
        "ckf181": payload.care_type,
        "ckh122": "",
        "ckh280": "",
        "kh27DTOList": [],
    }
