from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .logger import get_logger

log = get_logger(__name__)

CATEGORIES: tuple[str, ...] = ("Road", "Sanitation", "Water", "Safety", "Electricity", "Waste")


class LLMConfig(BaseModel):
    provider: str = "gemini"  # gemini, openai, anthropic, dummy
    model: Optional[str] = None
    temperature: float = 0.2
    api_key: Optional[str] = None
    timeout_seconds: float = 15.0
    circuit_failure_threshold: int = 3
    circuit_reset_seconds: float = 60.0


class ScoringWeights(BaseModel):
    severity_base: Dict[str, int] = Field(
        default_factory=lambda: {
            "low": 30,
            "medium": 50,
            "high": 80,
        }
    )
    vote_bonus: int = 5
    cap: int = 100
    floor: int = 0
    default_score: int = 50

    @field_validator("severity_base")
    @classmethod
    def _require_all_severities(cls, v: Dict[str, int]) -> Dict[str, int]:
        missing = {"low", "medium", "high"} - set(v)
        if missing:
            raise ValueError(f"severity_base missing entries: {sorted(missing)}")
        return {k.lower(): int(score) for k, score in v.items()}


class VotingConfig(BaseModel):
    step: int = 5


class DepartmentSeed(BaseModel):
    name: str
    description: Optional[str] = None


class DepartmentsConfig(BaseModel):
    category_map: Dict[str, str] = Field(
        default_factory=lambda: {
            "Road": "Roads & Transport",
            "Sanitation": "Sanitation",
            "Water": "Water Supply",
            "Safety": "Public Safety",
            "Electricity": "Electricity",
            "Waste": "Waste Management",
        }
    )
    fallback: str = "General"
    seed: List[DepartmentSeed] = Field(
        default_factory=lambda: [
            DepartmentSeed(name="Roads & Transport", description="Potholes, signage, traffic and transit"),
            DepartmentSeed(name="Sanitation", description="Drains, sewage and public hygiene"),
            DepartmentSeed(name="Water Supply", description="Leaks, outages and water quality"),
            DepartmentSeed(name="Public Safety", description="Hazards and safety concerns"),
            DepartmentSeed(name="Electricity", description="Streetlights and power lines"),
            DepartmentSeed(name="Waste Management", description="Garbage collection and dumping"),
            DepartmentSeed(name="General", description="Issues without a dedicated department"),
        ]
    )


class EscalationConfig(BaseModel):
    overdue_days: int = 7


class AppConfig(BaseModel):
    database_path: str = "data/civic.db"
    llm: LLMConfig = LLMConfig()
    scoring: ScoringWeights = ScoringWeights()
    voting: VotingConfig = VotingConfig()
    departments: DepartmentsConfig = Field(default_factory=DepartmentsConfig)
    escalation: EscalationConfig = EscalationConfig()


class Settings(BaseModel):
    app: AppConfig = AppConfig()


def _find_settings_path(explicit: Optional[str]) -> Optional[Path]:
    candidates = []
    if explicit:
        candidates.append(Path(explicit))
    env = os.getenv("CIVIC_CONFIG")
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path("settings.yaml"),
        Path("settings.yml"),
        Path("config/settings.yaml"),
    ])
    for p in candidates:
        if p and p.exists() and p.is_file():
            return p
    return None


def _apply_env_overrides(s: Settings) -> Settings:
    if db_path := os.getenv("CIVIC_DB_PATH"):
        s.app.database_path = db_path
    if provider := os.getenv("CIVIC_LLM_PROVIDER"):
        s.app.llm.provider = provider
    if model := os.getenv("CIVIC_LLM_MODEL"):
        s.app.llm.model = model
    return s


def load_settings(path: Optional[str] = None) -> Settings:
    p = _find_settings_path(path)
    if not p:
        log.warning("No settings file found; using defaults")
        return _apply_env_overrides(Settings())

    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        s = Settings(**raw)
    except ValidationError as e:
        log.error("Settings validation failed: %s", e)
        raise
    return _apply_env_overrides(s)
