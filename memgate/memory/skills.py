"""Skill trigger table and memory-scope routing."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from memgate.config.schema import SkillConfig
from memgate.memory.models import ScoredCandidate, ScoreVector
from memgate.memory.tokens import count_tokens

ALWAYS_ON_SKILL = "general"

_MEMORY_REFERENCE_RE = re.compile(
    r"\b(remember|recall|earlier|before|last time|previously|you said|we discussed"
    r"|always|never|prefer|profile)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Skill:
    id: str
    name: str
    pattern: re.Pattern[str]
    fragment: str
    priority: int
    tags: tuple[str, ...]
    token_count: int

    def matches(self, message: str) -> bool:
        return bool(self.pattern.search(message))

    def to_candidate(self) -> ScoredCandidate:
        return ScoredCandidate(
            source_id=f"skill:{self.id}",
            origin="skill",
            content=self.fragment,
            label=f"[skill:{self.id}]",
            token_count=self.token_count,
            scores=ScoreVector(relevance=1.0, final=1.0),
            priority=self.priority,
        )


class SkillTable:
    """Static (id, compiled pattern, priority) table, compiled once at load."""

    def __init__(self, skills: Sequence[SkillConfig]) -> None:
        compiled = [
            Skill(
                id=s.id,
                name=s.name or s.id,
                pattern=re.compile(s.trigger, re.IGNORECASE),
                fragment=s.fragment,
                priority=s.priority,
                tags=tuple(s.tags) or (s.id,),
                token_count=count_tokens(s.fragment),
            )
            for s in skills
            if s.enabled
        ]
        self._skills: tuple[Skill, ...] = tuple(sorted(compiled, key=lambda s: (-s.priority, s.id)))

    @property
    def skills(self) -> tuple[Skill, ...]:
        return self._skills

    def get(self, skill_id: str) -> Skill | None:
        for skill in self._skills:
            if skill.id == skill_id:
                return skill
        return None

    def activate(self, message: str, always_on: Iterable[str] = ()) -> list[Skill]:
        """Return matching skills in priority order; ``general`` is always included."""
        forced = set(always_on) | {ALWAYS_ON_SKILL}
        return [s for s in self._skills if s.id in forced or s.matches(message or "")]


def active_skill_tags(skills: Iterable[Skill]) -> tuple[str, ...]:
    tags: list[str] = []
    for skill in skills:
        for tag in (skill.id, *skill.tags):
            if tag not in tags:
                tags.append(tag)
    return tuple(tags)


def resolve_scopes(message: str, project_id: str | None = None) -> tuple[str, ...]:
    """Memory scopes a request may draw from."""
    scopes = ["conversation"]
    if project_id:
        scopes.append("project")
    if _MEMORY_REFERENCE_RE.search(message or ""):
        scopes.append("global")
    return tuple(scopes)
