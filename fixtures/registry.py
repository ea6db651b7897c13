"""
Check-in Engine - Fixture Registry

In-memory RemoteRegistry with the same operation signatures as the
vendor client. Used by the test suite and by `checkin run --fixture`.

    lookup_person(name)                       people table
    get_server_date()                         fixed timestamp string
    list_care_categories(type, code)          categories table
    list_care_items(category_id)              items table
    list_personnel(org_code)                  personnel table
    submit(payload)                           scripted results, then remote caps

Scripting:
    registry.script_submit(SubmitResult(False, "责任护士负责人数已达上限"))
    registry.script_failure("lookup_person", TransientRemoteError("timeout"))

Remote caps model the vendor's own per-candidate bookkeeping: once a
candidate has been accepted `cap` times the next submission naming them
is rejected with the vendor's capacity text.

Usage:
    from fixtures.registry import FixtureRegistry
    registry = FixtureRegistry.from_yaml("fixtures/sample.yaml")
"""

from __future__ import annotations

from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Callable, Union

import yaml

from checkin.remote import ACCEPTED_MARKER, CAPACITY_MARKERS, role_from_code
from checkin.types import (
    CategoryRecord,
    ItemRecord,
    PersonnelRecord,
    PersonRecord,
    RegistrationPayload,
    Role,
    SubmitResult,
)

DEFAULT_SERVER_DATE = "2025-09-30 08:15:00"

_CAPACITY_TEXT = {role: f"{marker}上限" for marker, role in CAPACITY_MARKERS}

ScriptedSubmit = Union[SubmitResult, Exception, Callable[[RegistrationPayload], SubmitResult]]


class FixtureRegistry:

    def __init__(
        self,
        people: list[str] | None = None,
        personnel: list[PersonnelRecord] | None = None,
        item_count: int = 60,
        server_date: str = DEFAULT_SERVER_DATE,
        remote_caps: dict[Role, int] | None = None,
        categories: list[CategoryRecord] | None = None,
    ):
        self.people: dict[str, PersonRecord] = {}
        for i, name in enumerate(people or [], start=1):
            self.add_person(name, person_id=i)
        self.personnel = list(personnel or [])
        self.server_date = server_date
        self.categories = categories if categories is not None else [CategoryRecord("C-04", "01")]
        self.items = [ItemRecord(f"ITEM{i:03d}") for i in range(item_count)]
        self.remote_caps = dict(remote_caps or {})

        self.calls: list[tuple[str, tuple]] = []
        self.submissions: list[RegistrationPayload] = []
        self.registered: set[str] = set()
        self.remote_usage: dict[tuple[Role, str], int] = defaultdict(int)
        self._submit_script: deque[ScriptedSubmit] = deque()
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)

    # ── Setup ────────────────────────────────────────────────

    def add_person(self, name: str, person_id: Any = None, id_number: str = "") -> PersonRecord:
        record = PersonRecord(
            person_id=person_id if person_id is not None else len(self.people) + 1,
            id_number=id_number or f"37028419500101{len(self.people):04d}",
            name=name,
        )
        self.people[name] = record
        return record

    def add_personnel(self, role: Role, *ids: str, display_name: str = "") -> None:
        for pid in ids:
            self.personnel.append(PersonnelRecord(pid, role, display_name or pid))

    def script_submit(self, *results: ScriptedSubmit) -> None:
        """Queue submit outcomes; consumed before the default behaviour."""
        self._submit_script.extend(results)

    def script_failure(self, operation: str, *errors: Exception) -> None:
        """Queue exceptions raised by the next calls to `operation`."""
        self._failures[operation].extend(errors)

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FixtureRegistry:
        personnel = []
        for row in data.get("personnel") or []:
            role = Role(row["role"]) if row.get("role") in {r.value for r in Role} \
                else role_from_code(row.get("role"))
            personnel.append(PersonnelRecord(str(row["id"]), role, row.get("name", "")))
        caps = {Role(k): int(v) for k, v in (data.get("remote_caps") or {}).items()}
        return cls(
            people=[str(p) for p in data.get("people") or []],
            personnel=personnel,
            item_count=int(data.get("item_count", 60)),
            server_date=str(data.get("server_date", DEFAULT_SERVER_DATE)),
            remote_caps=caps,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> FixtureRegistry:
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(yaml.safe_load(f) or {})

    # ── RemoteRegistry ───────────────────────────────────────

    def _enter(self, operation: str, *args):
        self.calls.append((operation, args))
        queued = self._failures.get(operation)
        if queued:
            raise queued.popleft()

    def lookup_person(self, name: str) -> PersonRecord | None:
        self._enter("lookup_person", name)
        return self.people.get(name)

    def get_server_date(self) -> str:
        self._enter("get_server_date")
        return self.server_date

    def list_care_categories(self, checkin_type: str, category_code: str) -> list[CategoryRecord]:
        self._enter("list_care_categories", checkin_type, category_code)
        return list(self.categories)

    def list_care_items(self, category_id: Any) -> list[ItemRecord]:
        self._enter("list_care_items", category_id)
        return list(self.items)

    def list_personnel(self, org_code: str) -> list[PersonnelRecord]:
        self._enter("list_personnel", org_code)
        return list(self.personnel)

    def submit(self, payload: RegistrationPayload) -> SubmitResult:
        self._enter("submit", payload.person.name)
        self.submissions.append(payload)

        if self._submit_script:
            scripted = self._submit_script.popleft()
            if isinstance(scripted, Exception):
                raise scripted
            result = scripted(payload) if callable(scripted) else scripted
            if result.accepted:
                self._record(payload)
            return result

        if payload.person.name in self.registered:
            return SubmitResult(False, "该人员已登记", 400)

        assigned = {
            Role.NURSE: payload.nurse_id,
            Role.PHYSICIAN: payload.physician_id,
            Role.CAREGIVER: payload.caregiver_id,
        }
        for role, cid in assigned.items():
            cap = self.remote_caps.get(role)
            if cap is not None and self.remote_usage[(role, cid)] >= cap:
                return SubmitResult(False, _CAPACITY_TEXT[role], 200)

        self._record(payload)
        return SubmitResult(True, f"{ACCEPTED_MARKER}！", 200)

    def _record(self, payload: RegistrationPayload):
        self.registered.add(payload.person.name)
        self.remote_usage[(Role.NURSE, payload.nurse_id)] += 1
        self.remote_usage[(Role.PHYSICIAN, payload.physician_id)] += 1
        self.remote_usage[(Role.CAREGIVER, payload.caregiver_id)] += 1
