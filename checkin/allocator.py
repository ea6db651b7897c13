"""
Check-in Engine - Personnel Allocator

Least-loaded, capacity-limited selection of one candidate per role.

Eligibility (hard filters) is separated from ranking:
  eligible  = not exhausted this run AND usage_count < role limit
  ranking   = smallest usage_count, ties to the first-seen candidate

Greedy least-loaded keeps max(usage) - min(usage) <= 1 across the
non-exhausted candidates of a role over a long run.

Counters only move on confirm_assignment, which is called after the
remote has accepted a submission and writes through to the store before
returning. Exhaustion is run-scoped: it lives on this object only and
is re-discovered each run.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from checkin.store import CheckpointStore
from checkin.types import REMOTE_CAPPED_ROLES, ROLES, PersonnelCandidate, Role

logger = logging.getLogger("checkin.allocator")


class PersonnelAllocator:
    """Owns the in-memory candidate pools for one run."""

    def __init__(self, store: CheckpointStore, limits: dict[Role, int]):
        missing = [r.value for r in ROLES if r not in limits]
        if missing:
            raise ValueError(f"capacity limit missing for roles: {missing}")
        self._store = store
        self._limits = dict(limits)
        self._pools: dict[Role, list[PersonnelCandidate]] = {
            role: store.load_candidates(role) for role in ROLES
        }
        self._exhausted: dict[Role, set[str]] = {role: set() for role in ROLES}
        logger.info(
            "Loaded personnel pools: %s",
            {role.value: len(pool) for role, pool in self._pools.items()},
        )

    # ── Introspection ────────────────────────────────────────

    def limit(self, role: Role) -> int:
        return self._limits[role]

    def candidates(self, role: Role) -> list[PersonnelCandidate]:
        """Snapshot of the pool, in ranking order."""
        return [PersonnelCandidate(c.candidate_id, c.usage_count, c.seq) for c in self._pools[role]]

    def usage(self, role: Role, candidate_id: str) -> int | None:
        c = self._find(role, candidate_id)
        return c.usage_count if c else None

    def is_exhausted(self, role: Role, candidate_id: str) -> bool:
        return candidate_id in self._exhausted[role]

    def exhausted(self, role: Role) -> set[str]:
        return set(self._exhausted[role])

    def _find(self, role: Role, candidate_id: str) -> PersonnelCandidate | None:
        for c in self._pools[role]:
            if c.candidate_id == candidate_id:
                return c
        return None

    def _is_eligible(self, role: Role, c: PersonnelCandidate) -> bool:
        return c.candidate_id not in self._exhausted[role] and c.usage_count < self._limits[role]

    # ── Selection ────────────────────────────────────────────

    def select_candidate(self, role: Role) -> str | None:
        """
        Least-loaded eligible candidate, or None when every candidate is
        exhausted or at capacity. Selection does not mutate anything.
        """
        for c in self._pools[role]:
            if self._is_eligible(role, c):
                logger.debug(
                    "Selected %s %s (%d/%d)",
                    role.value, c.candidate_id, c.usage_count, self._limits[role],
                )
                return c.candidate_id
        logger.warning("No available %s (%d candidates, %d exhausted)",
                       role.value, len(self._pools[role]), len(self._exhausted[role]))
        return None

    def confirm_assignment(
        self,
        role: Role,
        candidate_id: str,
        request_id: str | None = None,
    ) -> int:
        """
        Record one accepted assignment. Durable before returning.

        Raises PersistenceFailure if the write fails; in that case the
        in-memory counter is left unchanged.
        """
        candidate = self._find(role, candidate_id)
        if candidate is None:
            raise ValueError(f"unknown {role.value} candidate: {candidate_id}")

        count, incremented = self._store.confirm_assignment(role, candidate_id, request_id)
        if incremented:
            candidate.usage_count = count
            self._pools[role].sort(key=PersonnelCandidate.sort_key)
            logger.debug("%s %s usage -> %d", role.value, candidate_id, count)
        else:
            # Replayed confirm: resync memory with what the store holds
            self._pools[role] = self._store.load_candidates(role)
        return count

    def mark_exhausted(self, role: Role, candidate_id: str) -> bool:
        """
        Exclude a candidate for the rest of this run. Not persisted and
        does not touch usage_count. Only roles with a remote capacity
        signal can be exhausted.
        """
        if role not in REMOTE_CAPPED_ROLES:
            logger.warning("Ignoring exhaustion for %s %s: role has no remote capacity signal",
                           role.value, candidate_id)
            return False
        self._exhausted[role].add(candidate_id)
        logger.warning("%s %s reported at capacity; excluded for this run",
                       role.value, candidate_id)
        return True

    def reset_exhausted(self) -> None:
        for s in self._exhausted.values():
            s.clear()
        logger.info("Exhausted sets cleared")

    # ── Pool Sync ────────────────────────────────────────────

    def sync(self, role: Role, candidate_ids: Iterable[str]) -> list[PersonnelCandidate]:
        """
        Merge the remote's current roster into the persisted pool.

        Known ids keep their counters, new ids start at 0, ids missing from
        the roster leave the active pool. Persisted before returning.
        """
        known = {c.candidate_id: c for c in self._store.load_candidates(role, include_inactive=True)}
        next_seq = max((c.seq for c in known.values()), default=-1) + 1

        merged: list[PersonnelCandidate] = []
        seen: set[str] = set()
        for cid in candidate_ids:
            if not cid or cid in seen:
                continue
            seen.add(cid)
            if cid in known:
                merged.append(known[cid])
            else:
                merged.append(PersonnelCandidate(cid, 0, next_seq))
                next_seq += 1
                logger.debug("New %s candidate: %s", role.value, cid)

        merged.sort(key=PersonnelCandidate.sort_key)
        self._store.replace_candidates(role, merged)
        self._pools[role] = merged
        logger.info("Synced %s pool: %d candidates", role.value, len(merged))
        return self.candidates(role)

    # ── Stats ────────────────────────────────────────────────

    def stats(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for role in ROLES:
            pool = self._pools[role]
            limit = self._limits[role]
            out[role.value] = {
                "total": len(pool),
                "available": sum(1 for c in pool if self._is_eligible(role, c)),
                "exhausted": len(self._exhausted[role]),
                "limit": limit,
                "total_capacity": len(pool) * limit,
                "used_capacity": sum(c.usage_count for c in pool),
            }
        return out
