"""
Case Catalog — The provider of approved cases and their assignments.

Cases are authored and approved elsewhere; this module only loads the
validated documents (JSON files) and answers lookups for the session
controller.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, ValidationError, field_validator

from oscesim.cases.document import CaseDocument
from oscesim.config import settings
from oscesim.errors import AssignmentNotFound, CaseNotFound

logger = logging.getLogger(__name__)


class Assignment(BaseModel):
    """A case released to a cohort for a time window."""
    id: str
    case_id: str
    start_at: datetime
    end_at: datetime | None = None
    time_limit: float | None = None  # minutes
    attempts_allowed: int = 1

    @field_validator("start_at", "end_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        if now < self.start_at:
            return False
        return self.end_at is None or now <= self.end_at


class CaseCatalog:
    """In-memory lookup of cases and assignments."""

    def __init__(
        self,
        cases: Iterable[CaseDocument] = (),
        assignments: Iterable[Assignment] = (),
    ):
        self._cases: dict[str, CaseDocument] = {c.id: c for c in cases}
        self._assignments: dict[str, Assignment] = {a.id: a for a in assignments}

    def add_case(self, case: CaseDocument) -> None:
        self._cases[case.id] = case

    def add_assignment(self, assignment: Assignment) -> None:
        self._assignments[assignment.id] = assignment

    def get_case(self, case_id: str) -> CaseDocument:
        try:
            return self._cases[case_id]
        except KeyError:
            raise CaseNotFound(case_id) from None

    def get_assignment(self, assignment_id: str) -> Assignment:
        try:
            return self._assignments[assignment_id]
        except KeyError:
            raise AssignmentNotFound(assignment_id) from None

    @classmethod
    def from_directory(
        cls,
        case_dir: Path = settings.case_dir,
        assignments_file: Path = settings.assignments_file,
    ) -> CaseCatalog:
        """Load every `*.json` case in `case_dir` plus the assignments file."""
        catalog = cls()

        case_dir = Path(case_dir)
        if case_dir.exists():
            for path in sorted(case_dir.glob("*.json")):
                try:
                    catalog.add_case(CaseDocument.model_validate_json(path.read_text(encoding="utf-8")))
                except ValidationError as e:
                    logger.error(f"Skipping invalid case file {path.name}: {e}")
        else:
            logger.warning(f"Case directory not found: {case_dir}")

        assignments_file = Path(assignments_file)
        if assignments_file.exists():
            with open(assignments_file, "r", encoding="utf-8") as f:
                for raw in json.load(f):
                    try:
                        catalog.add_assignment(Assignment.model_validate(raw))
                    except ValidationError as e:
                        logger.error(f"Skipping invalid assignment {raw.get('id')}: {e}")

        logger.info(
            f"Loaded {len(catalog._cases)} cases and {len(catalog._assignments)} assignments."
        )
        return catalog
