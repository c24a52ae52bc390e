from __future__ import annotations

from typing import Mapping

from .config import DepartmentsConfig
from .db import get_department_by_name, upsert_department
from .logger import get_logger

log = get_logger(__name__)

FALLBACK_DEPARTMENT = "General"


def resolve_department_name(
    suggested: str | None,
    category: str | None,
    category_map: Mapping[str, str] | None = None,
    fallback: str = FALLBACK_DEPARTMENT,
) -> str:
    """Keep a non-empty suggested name, else map the citizen category, else ``fallback``."""
    if suggested and suggested.strip():
        return suggested.strip()
    mapping = category_map if category_map is not None else DepartmentsConfig().category_map
    return mapping.get(category or "", fallback)


def lookup_department_id(db_path: str, name: str) -> str | None:
    """Best-effort lookup by exact name; a miss leaves the issue unassigned."""
    dept = get_department_by_name(db_path, name)
    if dept is None:
        log.info("No department named %r; issue stays unassigned", name)
        return None
    return str(dept["id"])


def seed_departments(db_path: str, config: DepartmentsConfig | None = None) -> int:
    cfg = config or DepartmentsConfig()
    for seed in cfg.seed:
        upsert_department(db_path, seed.name, seed.description)
    log.info("Seeded %d departments", len(cfg.seed))
    return len(cfg.seed)
