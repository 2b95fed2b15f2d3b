"""
Candidate selection: fair rotation ordering, deduplication and per-level
rebalancing. Pure functions over value objects, no database access.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Optional

from ...config import (
    DEFAULT_RESPONSE_TIME_MS,
    ROTATION_EXPERT_COUNT,
    ROTATION_FRESHER_COUNT,
    ROTATION_MID_COUNT,
)
from ...models import EXPERT, FRESHER, LEVEL_PRIORITY, LEVELS, MID, RESPONSE_ACCEPTED

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class BatchSelection:
    """Target candidate count per level"""

    fresher_count: int = ROTATION_FRESHER_COUNT
    mid_count: int = ROTATION_MID_COUNT
    expert_count: int = ROTATION_EXPERT_COUNT

    @classmethod
    def from_overrides(cls, overrides: Optional[dict] = None) -> "BatchSelection":
        """Default quotas with any non-None override applied"""
        selection = cls()
        if not overrides:
            return selection
        updates = {k: v for k, v in overrides.items() if v is not None}
        return replace(selection, **updates)

    def quota(self, level: str) -> int:
        return {FRESHER: self.fresher_count, MID: self.mid_count, EXPERT: self.expert_count}[level]

    @property
    def total(self) -> int:
        return self.fresher_count + self.mid_count + self.expert_count

    def fetch_count(self, level: str) -> int:
        """
        How many developers a level must supply: its own quota plus every
        higher level's quota, since shortfalls are filled from lower levels.
        """
        return sum(self.quota(lv) for lv in LEVELS if LEVEL_PRIORITY[lv] >= LEVEL_PRIORITY[level])

    def to_dict(self) -> dict:
        return {
            "fresherCount": self.fresher_count,
            "midCount": self.mid_count,
            "expertCount": self.expert_count,
        }


@dataclass(frozen=True)
class ResponseRecord:
    response_status: str
    assigned_at: Optional[datetime]
    responded_at: Optional[datetime]


@dataclass
class PoolDeveloper:
    """An eligible developer with their most recent accept/reject history (newest first)"""

    developer_id: str
    level: str
    recent_responses: list[ResponseRecord] = field(default_factory=list)

    @property
    def last_responded_at(self) -> datetime:
        if self.recent_responses and self.recent_responses[0].responded_at:
            return self.recent_responses[0].responded_at
        return EPOCH

    @property
    def accepted_count(self) -> int:
        return sum(1 for r in self.recent_responses if r.response_status == RESPONSE_ACCEPTED)


@dataclass
class DeveloperCandidate:
    developer_id: str
    level: str
    skill_ids: list[str]
    usual_response_time_ms: int


def calculate_response_time(recent: Iterable[ResponseRecord]) -> int:
    """Average response time in ms over recent responses"""
    durations = [
        (r.responded_at - r.assigned_at).total_seconds() * 1000
        for r in recent
        if r.responded_at and r.assigned_at
    ]
    if not durations:
        return DEFAULT_RESPONSE_TIME_MS
    return round(sum(durations) / len(durations))


def apply_fair_ordering(pool: list[PoolDeveloper], last_developer_id: Optional[str]) -> list[PoolDeveloper]:
    """
    Order a pool so the least recently used developer comes first.

    With a cursor whose developer is in the pool, rotate so iteration starts
    right after that developer. Otherwise sort by oldest last response, then
    fewest recent acceptances. Length and membership are unchanged.
    """
    if last_developer_id:
        for index, dev in enumerate(pool):
            if dev.developer_id == last_developer_id:
                return pool[index + 1:] + pool[: index + 1]

    # sorted() is stable, so ties keep the pool's id ordering
    return sorted(pool, key=lambda dev: (dev.last_responded_at, dev.accepted_count))


def to_candidates(pool: list[PoolDeveloper], skill_id: str, limit: int) -> list[DeveloperCandidate]:
    return [
        DeveloperCandidate(
            developer_id=dev.developer_id,
            level=dev.level,
            skill_ids=[skill_id],
            usual_response_time_ms=calculate_response_time(dev.recent_responses),
        )
        for dev in pool[:limit]
    ]


def deduplicate_candidates(candidates: list[DeveloperCandidate]) -> list[DeveloperCandidate]:
    """
    Keep one entry per developer, at the position of its first appearance.
    A higher-priority level wins; matched skill ids are always unioned.
    """
    merged: dict[str, DeveloperCandidate] = {}
    for candidate in candidates:
        existing = merged.get(candidate.developer_id)
        if existing is None:
            merged[candidate.developer_id] = replace(candidate, skill_ids=list(candidate.skill_ids))
            continue

        skill_ids = existing.skill_ids + [s for s in candidate.skill_ids if s not in existing.skill_ids]
        if LEVEL_PRIORITY[candidate.level] > LEVEL_PRIORITY[existing.level]:
            merged[candidate.developer_id] = replace(candidate, skill_ids=skill_ids)
        else:
            existing.skill_ids = skill_ids
    return list(merged.values())


def rebalance_and_trim(candidates: list[DeveloperCandidate], selection: BatchSelection) -> list[DeveloperCandidate]:
    """
    Split by level and cap each level at its quota. Shortfalls borrow from
    lower levels only: Expert from Mid then Fresher, Mid from Fresher.
    Returns Fresher + Mid + Expert.
    """
    by_level = {level: [] for level in LEVELS}
    for candidate in candidates:
        by_level[candidate.level].append(candidate)

    expert = by_level[EXPERT][: selection.expert_count]
    for donor in (MID, FRESHER):
        need = selection.expert_count - len(expert)
        if need <= 0:
            break
        expert.extend(by_level[donor][:need])
        del by_level[donor][:need]

    mid = by_level[MID][: selection.mid_count]
    need_mid = selection.mid_count - len(mid)
    if need_mid > 0:
        mid.extend(by_level[FRESHER][:need_mid])
        del by_level[FRESHER][:need_mid]

    fresher = by_level[FRESHER][: selection.fresher_count]

    logger.info(
        f"Rebalanced candidates: {len(fresher) + len(mid) + len(expert)} "
        f"(FRESHER={len(fresher)}, MID={len(mid)}, EXPERT={len(expert)})"
    )
    return fresher + mid + expert
