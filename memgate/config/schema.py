"""Configuration schema using Pydantic."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_REF_RE = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


class ConfigError(ValueError):
    """Raised when a policy or loadout value is out of range."""


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; unset variables are returned unchanged."""
    if not value:
        return value
    m = _ENV_REF_RE.match(value)
    if not m:
        return value
    return os.environ.get(m.group(1), value)


class BudgetConfig(BaseModel):
    """Token budgets for one request."""

    short_term_tokens: int = Field(2000, ge=0)
    long_term_tokens: int = Field(3000, ge=0)
    skill_tokens: int = Field(1500, ge=0)
    response_reserve_tokens: int = Field(2048, ge=0)

    @property
    def packable_total(self) -> int:
        return self.short_term_tokens + self.long_term_tokens + self.skill_tokens

    @property
    def grand_total(self) -> int:
        return self.packable_total + self.response_reserve_tokens


class ThresholdConfig(BaseModel):
    relevance_threshold: float = Field(0.72, ge=0.0, le=1.0)
    trigger_ratio: float = Field(0.80, ge=0.0, le=1.0)
    decay_ceiling: float = Field(0.80, ge=0.0, le=1.0)


class CompactionConfig(BaseModel):
    target_ratio: float = Field(0.6, gt=0.0, le=1.0)
    min_turns: int = Field(2, ge=0)
    max_turns: int = Field(50, ge=1)

    @model_validator(mode="after")
    def _check_turn_bounds(self) -> CompactionConfig:
        if self.min_turns > self.max_turns:
            raise ValueError("min_turns must not exceed max_turns")
        return self


SourceName = Literal["short_term", "long_term", "semantic"]
PrivacyModeName = Literal["standard", "strict", "permissive"]


class Loadout(BaseModel):
    """A named budget/threshold preset selected per request."""

    id: str
    name: str = ""
    budgets: BudgetConfig = Field(default_factory=BudgetConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    privacy_mode: PrivacyModeName = "standard"
    top_k: int = Field(5, ge=1)
    retrieval_limit: int = Field(25, ge=1)
    pool_multiplier: int = Field(3, ge=1)
    sources: list[SourceName] = Field(default_factory=lambda: ["short_term", "long_term", "semantic"])
    active_skills: list[str] = Field(default_factory=lambda: ["general"])


class SkillConfig(BaseModel):
    id: str
    name: str = ""
    trigger: str
    fragment: str
    priority: int = 0
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)

    @field_validator("trigger")
    @classmethod
    def _trigger_compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid trigger pattern: {exc}") from exc
        return value


class WorkerConfig(BaseModel):
    batch_size: int = Field(5, ge=1)
    min_transcript_turns: int = Field(3, ge=1)
    max_extracted_facts: int = Field(5, ge=0)
    decay_epsilon: float = Field(0.05, ge=0.0, le=1.0)
    decay_refresh_limit: int = Field(100, ge=1)
    generation_timeout: float = Field(30.0, gt=0)
    summary_max_tokens: int = Field(600, ge=1)
    extract_max_tokens: int = Field(800, ge=1)
    poll_interval_s: float = Field(15.0, gt=0)


class ResilienceConfig(BaseModel):
    timeout: int = 120
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: int = 60


class ProviderConfig(BaseModel):
    api_key: str = ""
    api_base: str | None = None
    model: str = "anthropic/claude-haiku-4-5"
    embedding_model: str | None = None
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key)


class LoggingConfig(BaseModel):
    json_output: bool = False
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


_GENERAL_FRAGMENT = (
    "You are a helpful, precise assistant with access to conversation history "
    "and retrieved memories. Use context efficiently and cite retrieved memories "
    "explicitly when you rely on them."
)


def builtin_skills() -> list[SkillConfig]:
    return [
        SkillConfig(
            id="general",
            name="General Assistant",
            trigger=r".",
            fragment=_GENERAL_FRAGMENT,
            priority=0,
        ),
        SkillConfig(
            id="code",
            name="Code Assistant",
            trigger=(
                r"\b(code|function|debug|implement|refactor|python|typescript|javascript|sql"
                r"|api|bug|error|class|type|interface|module)\b"
            ),
            fragment=(
                "You are also an experienced software engineer. Put code in fenced blocks "
                "with a language tag and describe the approach before long functions."
            ),
            priority=10,
            tags=["code"],
        ),
        SkillConfig(
            id="research",
            name="Research Mode",
            trigger=r"\b(research|analy[sz]e|compare|explain|why|how does|what is|deep dive|summari[sz]e|overview)\b",
            fragment=(
                "You are also a careful researcher. Structure longer answers in sections "
                "and state your confidence when uncertain."
            ),
            priority=5,
            tags=["research"],
        ),
        SkillConfig(
            id="memory_aware",
            name="Memory-Aware Mode",
            trigger=(
                r"\b(remember|recall|earlier|before|last time|we discussed|you said"
                r"|previously|in our|you mentioned)\b"
            ),
            fragment=(
                "The user is referring to prior context. Check the retrieved memories and "
                "reference them explicitly, or say clearly that nothing relevant was found."
            ),
            priority=15,
            tags=["memory"],
        ),
        SkillConfig(
            id="project_scope",
            name="Project Scope",
            trigger=r"\b(project|workspace|this project|our project|in this context|project memory)\b",
            fragment=(
                "You are working inside a specific project. Prefer project-scoped memories "
                "and respect the project's conventions and constraints."
            ),
            priority=8,
            tags=["project"],
        ),
    ]


def builtin_loadouts() -> dict[str, Loadout]:
    return {
        "default": Loadout(id="default", name="Default"),
        "fast": Loadout(
            id="fast",
            name="Fast",
            budgets=BudgetConfig(
                short_term_tokens=1000,
                long_term_tokens=1000,
                skill_tokens=500,
                response_reserve_tokens=1024,
            ),
            top_k=3,
        ),
        "deep": Loadout(
            id="deep",
            name="Deep Research",
            budgets=BudgetConfig(
                short_term_tokens=4000,
                long_term_tokens=8000,
                skill_tokens=3000,
                response_reserve_tokens=4096,
            ),
            thresholds=ThresholdConfig(relevance_threshold=0.60),
            top_k=10,
            active_skills=["general", "research", "code"],
        ),
    }


class Config(BaseSettings):
    """Root configuration for memgate."""

    model_config = SettingsConfigDict(
        env_prefix="MEMGATE_",
        env_nested_delimiter="__",
    )

    workspace: str = "~/.memgate/workspace"
    base_instructions: str = "You are a memory-aware assistant."
    default_loadout: str = "default"
    loadouts: dict[str, Loadout] = Field(default_factory=builtin_loadouts)
    skills: list[SkillConfig] = Field(default_factory=builtin_skills)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()

    def get_loadout(self, name: str | None = None) -> Loadout:
        """Return the named loadout, falling back to the default preset."""
        key = name or self.default_loadout
        if key in self.loadouts:
            return self.loadouts[key]
        if self.default_loadout in self.loadouts:
            return self.loadouts[self.default_loadout]
        return builtin_loadouts()["default"]
