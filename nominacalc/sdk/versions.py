"""Versioned concept formulas and "formula in effect on date D" resolution.

Every (company_id, concept_code) scope is one JSON document under
``<data_dir>/formulas/<company_id>/<concept_code>.json``::

    {"revision": 3, "rows": [<CalculationFormula>, ...]}

Rows are only ever appended or superseded. A new version marks the current
row inactive and appends its successor in a single file replace, so a reader
sees either the old state or the new one.

Overlap rules between two active rows of the same scope:
- same non-null fiscal_year -> conflict
- both dated (valid_from set) and [valid_from, valid_to) intersect -> conflict
- neither has fiscal_year nor valid_from (two unconditional defaults) -> conflict

Resolution order for a target date:
1. active row with fiscal_year == target year
2. active row without fiscal_year whose window contains the date
   (dated rows first; a row without valid_from is always valid)
3. the most recently created active row
"""

import fcntl
import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .config import check_path_key, get_data_path
from .formulas import FormulaEvaluator
from .schemas import CalculationFormula

logger = logging.getLogger(__name__)

FORMULAS_DIRNAME = "formulas"

# Fields a new version may change; the rest identify the row or its lifecycle
VERSIONED_FIELDS = {
    "concept_type",
    "name",
    "description",
    "expression",
    "is_taxable",
    "is_exempt",
    "exempt_limit",
    "exempt_limit_type",
    "sat_concept_key",
    "fiscal_year",
    "valid_from",
    "valid_to",
}


class FormulaNotFoundError(Exception):
    """Raised when a formula id does not exist."""
    pass


class FormulaImmutableError(Exception):
    """Raised on an attempt to remove or alter a row that history depends on."""
    pass


@dataclass
class OverlapConflict:
    """An existing active row that collides with a proposed scope."""

    formula_id: str
    version: int
    reason: str  # FISCAL_YEAR, DATE_RANGE, DEFAULT or SUPERSEDED
    fiscal_year: Optional[int] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None

    def describe(self) -> str:
        if self.reason == "FISCAL_YEAR":
            return f"{self.formula_id} (v{self.version}) already covers fiscal year {self.fiscal_year}"
        if self.reason == "DATE_RANGE":
            end = self.valid_to or "open"
            return f"{self.formula_id} (v{self.version}) is valid {self.valid_from} -> {end}"
        if self.reason == "SUPERSEDED":
            return f"{self.formula_id} (v{self.version}) already replaced the requested row"
        return f"{self.formula_id} (v{self.version}) is already the default formula"


@dataclass
class OverlapCheck:
    valid: bool
    conflicts: List[OverlapConflict] = field(default_factory=list)


class VersionConflictError(Exception):
    """Raised when a new row would collide with existing active rows."""

    def __init__(self, conflicts: List[OverlapConflict], message: Optional[str] = None):
        self.conflicts = conflicts
        detail = "; ".join(c.describe() for c in conflicts)
        super().__init__(message or f"Formula version conflict: {detail}")


@dataclass
class ResolvedFormula:
    formula: CalculationFormula
    resolved_by: str  # FISCAL_YEAR, DATE_RANGE or FALLBACK

    @property
    def id(self) -> str:
        return self.formula.id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _window_contains(row: CalculationFormula, target: date) -> bool:
    if row.valid_from is not None and target < row.valid_from:
        return False
    if row.valid_to is not None and target >= row.valid_to:
        return False
    return True


def _windows_intersect(
    a_from: date, a_to: Optional[date], b_from: date, b_to: Optional[date]
) -> bool:
    a_end = a_to or date.max
    b_end = b_to or date.max
    return a_from < b_end and b_from < a_end


def find_conflicts(
    rows: List[CalculationFormula],
    valid_from: Optional[date] = None,
    valid_to: Optional[date] = None,
    fiscal_year: Optional[int] = None,
    exclude_id: Optional[str] = None,
) -> List[OverlapConflict]:
    """Active rows that would collide with the proposed scope (one entry per row)."""
    conflicts = []
    for row in rows:
        if not row.is_active or row.id == exclude_id:
            continue

        reason = None
        if fiscal_year is not None and row.fiscal_year == fiscal_year:
            reason = "FISCAL_YEAR"
        elif valid_from is not None and row.valid_from is not None:
            if _windows_intersect(valid_from, valid_to, row.valid_from, row.valid_to):
                reason = "DATE_RANGE"
        elif (
            fiscal_year is None and valid_from is None
            and row.fiscal_year is None and row.valid_from is None
        ):
            reason = "DEFAULT"

        if reason:
            conflicts.append(OverlapConflict(
                formula_id=row.id,
                version=row.version,
                reason=reason,
                fiscal_year=row.fiscal_year,
                valid_from=row.valid_from,
                valid_to=row.valid_to,
            ))
    return conflicts


def resolve_from_rows(rows: List[CalculationFormula], target: date) -> Optional[ResolvedFormula]:
    """Pick the row in effect on ``target``; a pure function of ``rows``."""
    active = [row for row in rows if row.is_active]
    if not active:
        return None

    by_year = [row for row in active if row.fiscal_year == target.year]
    if by_year:
        by_year.sort(key=lambda r: (-r.version, -r.created_at.timestamp(), r.id))
        return ResolvedFormula(by_year[0], "FISCAL_YEAR")

    in_window = [row for row in active if row.fiscal_year is None and _window_contains(row, target)]
    if in_window:
        in_window.sort(key=lambda r: (
            r.valid_from is None,
            -(r.valid_from.toordinal() if r.valid_from else 0),
            -r.version,
            -r.created_at.timestamp(),
            r.id,
        ))
        return ResolvedFormula(in_window[0], "DATE_RANGE")

    active.sort(key=lambda r: (-r.created_at.timestamp(), -r.version, r.id))
    return ResolvedFormula(active[0], "FALLBACK")


class FormulaStore:
    """File-backed store of concept formula versions.

    Args:
        data_dir: Base data directory (defaults to the configured data path)
        evaluator: Used to validate expressions before they are stored
        is_referenced: Returns True when an audit entry cites a formula id;
            such rows can never be deleted
        clock: Source of timestamps
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        evaluator: Optional[FormulaEvaluator] = None,
        is_referenced: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.root = Path(data_dir or get_data_path()) / FORMULAS_DIRNAME
        self.evaluator = evaluator or FormulaEvaluator()
        self.is_referenced = is_referenced or (lambda formula_id: False)
        self.clock = clock
        self._locks: Dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _scope_path(self, company_id: str, concept_code: str) -> Path:
        return self.root / check_path_key(company_id, "company_id") / f"{check_path_key(concept_code, 'concept_code')}.json"

    @contextmanager
    def _scope_lock(self, company_id: str, concept_code: str) -> Iterator[None]:
        """Hold the scope exclusively across threads and processes.

        The thread lock serializes writers of this store; the flock on
        ``<concept_code>.lock`` serializes every store and process sharing
        the data directory.
        """
        key = (company_id, concept_code)
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            lock = self._locks[key]

        lock_path = self._scope_path(company_id, concept_code).with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock, open(lock_path, "a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_scope(self, company_id: str, concept_code: str) -> tuple:
        """Return (revision, rows) for a scope; (0, []) if nothing stored."""
        path = self._scope_path(company_id, concept_code)
        if not path.exists():
            return 0, []
        with open(path, "r") as f:
            doc = json.load(f)
        rows = [CalculationFormula.model_validate(row) for row in doc.get("rows", [])]
        return doc.get("revision", 0), rows

    def _write_scope(
        self, company_id: str, concept_code: str, expected_revision: int, rows: List[CalculationFormula]
    ) -> None:
        path = self._scope_path(company_id, concept_code)
        current_revision, _ = self._read_scope(company_id, concept_code)
        if current_revision != expected_revision:
            raise VersionConflictError(
                [],
                f"{company_id}/{concept_code} changed while writing "
                f"(revision {expected_revision} -> {current_revision}); retry",
            )

        path.parent.mkdir(parents=True, exist_ok=True)
        doc = {
            "revision": expected_revision + 1,
            "rows": [row.model_dump(mode="json") for row in rows],
        }
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp_path, "w") as f:
            json.dump(doc, f, indent=2)
        os.replace(tmp_path, path)

    def _locate(self, formula_id: str) -> CalculationFormula:
        if self.root.exists():
            for path in sorted(self.root.glob("*/*.json")):
                with open(path, "r") as f:
                    doc = json.load(f)
                for row in doc.get("rows", []):
                    if row.get("id") == formula_id:
                        return CalculationFormula.model_validate(row)
        raise FormulaNotFoundError(f"Formula not found: {formula_id}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_formula(self, formula_id: str) -> CalculationFormula:
        """Raises FormulaNotFoundError if the id is unknown."""
        return self._locate(formula_id)

    def list_formulas(
        self, company_id: str, concept_code: Optional[str] = None, active_only: bool = False
    ) -> List[CalculationFormula]:
        codes = [concept_code] if concept_code else self.list_concepts(company_id)
        rows = []
        for code in codes:
            _, scope_rows = self._read_scope(company_id, code)
            rows.extend(r for r in scope_rows if r.is_active or not active_only)
        rows.sort(key=lambda r: (r.concept_code, r.version))
        return rows

    def list_concepts(self, company_id: str) -> List[str]:
        company_dir = self.root / check_path_key(company_id, "company_id")
        if not company_dir.is_dir():
            return []
        return sorted(p.stem for p in company_dir.glob("*.json"))

    def version_history(self, company_id: str, concept_code: str) -> List[CalculationFormula]:
        """All rows of a scope, newest version first."""
        _, rows = self._read_scope(company_id, concept_code)
        return sorted(rows, key=lambda r: (-r.version, r.created_at))

    def validate_no_overlap(
        self,
        company_id: str,
        concept_code: str,
        valid_from: Optional[date] = None,
        valid_to: Optional[date] = None,
        fiscal_year: Optional[int] = None,
        exclude_id: Optional[str] = None,
    ) -> OverlapCheck:
        """Check a proposed scope against the active rows of a concept.

        Raises:
            ValueError: If valid_to is given without valid_from
        """
        if valid_to and not valid_from:
            raise ValueError("valid_to requires valid_from")
        _, rows = self._read_scope(company_id, concept_code)
        conflicts = find_conflicts(rows, valid_from, valid_to, fiscal_year, exclude_id)
        return OverlapCheck(valid=not conflicts, conflicts=conflicts)

    def resolve_formula_for_date(
        self, company_id: str, concept_code: str, target_date: date
    ) -> Optional[ResolvedFormula]:
        """The formula in effect for a concept on ``target_date`` (None if no active row)."""
        _, rows = self._read_scope(company_id, concept_code)
        resolved = resolve_from_rows(rows, target_date)
        if resolved:
            logger.debug(
                f"Resolved {company_id}/{concept_code} on {target_date} -> "
                f"{resolved.id} v{resolved.formula.version} ({resolved.resolved_by})"
            )
        return resolved

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create_formula(
        self,
        company_id: str,
        concept_code: str,
        concept_type: str,
        name: str,
        expression: str,
        created_by: Optional[str] = None,
        **fields: Any,
    ) -> CalculationFormula:
        """Store the first version of a formula (or an additional scoped row).

        Raises:
            FormulaValidationError: If the expression does not validate
            VersionConflictError: If the scope collides with an active row
            ValueError: If ``fields`` names something that is not a versioned field
        """
        unknown = sorted(set(fields) - VERSIONED_FIELDS)
        if unknown:
            raise ValueError(f"Unknown formula fields: {', '.join(unknown)}")

        self.evaluator.validate(expression)
        row = CalculationFormula(
            id=uuid.uuid4().hex,
            company_id=company_id,
            concept_code=concept_code,
            concept_type=concept_type,
            name=name,
            expression=expression,
            version=1,
            is_active=True,
            created_at=self.clock(),
            created_by=created_by,
            **fields,
        )

        with self._scope_lock(company_id, concept_code):
            revision, rows = self._read_scope(company_id, concept_code)
            conflicts = find_conflicts(rows, row.valid_from, row.valid_to, row.fiscal_year)
            if conflicts:
                raise VersionConflictError(conflicts)
            self._write_scope(company_id, concept_code, revision, rows + [row])

        logger.info(f"Created formula {company_id}/{concept_code} {row.id} v1")
        return row

    def create_new_version(
        self, formula_id: str, changes: Dict[str, Any], created_by: Optional[str] = None
    ) -> CalculationFormula:
        """Supersede an active row with a new version.

        Unspecified fields are inherited. The old row is marked inactive and
        the new row appended in one write; nothing is written on failure.

        Raises:
            FormulaNotFoundError: If the id is unknown
            FormulaValidationError: If a changed expression does not validate
            VersionConflictError: If the row was already superseded, or the
                new scope collides with other active rows
            ValueError: If ``changes`` names a non-versioned field
        """
        unknown = sorted(set(changes) - VERSIONED_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be changed by a new version: {', '.join(unknown)}")
        if "expression" in changes:
            self.evaluator.validate(changes["expression"])

        located = self._locate(formula_id)
        company_id, concept_code = located.company_id, located.concept_code

        with self._scope_lock(company_id, concept_code):
            revision, rows = self._read_scope(company_id, concept_code)
            current = next((r for r in rows if r.id == formula_id), None)
            if current is None:
                raise FormulaNotFoundError(f"Formula not found: {formula_id}")

            if not current.is_active:
                successor = next((r for r in rows if r.id == current.superseded_by), current)
                raise VersionConflictError([OverlapConflict(
                    formula_id=successor.id,
                    version=successor.version,
                    reason="SUPERSEDED",
                    fiscal_year=successor.fiscal_year,
                    valid_from=successor.valid_from,
                    valid_to=successor.valid_to,
                )])

            now = self.clock()
            data = current.model_dump()
            data.update(changes)
            data.update(
                id=uuid.uuid4().hex,
                version=current.version + 1,
                is_active=True,
                created_at=now,
                created_by=created_by,
                superseded_at=None,
                superseded_by=None,
            )
            new_row = CalculationFormula.model_validate(data)

            conflicts = find_conflicts(
                rows, new_row.valid_from, new_row.valid_to, new_row.fiscal_year, exclude_id=current.id
            )
            if conflicts:
                raise VersionConflictError(conflicts)

            superseded = current.model_copy(update={
                "is_active": False,
                "superseded_at": now,
                "superseded_by": new_row.id,
            })
            updated = [superseded if r.id == current.id else r for r in rows] + [new_row]
            self._write_scope(company_id, concept_code, revision, updated)

        logger.info(
            f"New version {company_id}/{concept_code}: {current.id} v{current.version} -> "
            f"{new_row.id} v{new_row.version}"
        )
        return new_row

    def delete_formula(self, formula_id: str) -> None:
        """Remove a row that nothing depends on.

        Only an active row that never superseded another row and is not cited
        by any audit entry can be removed.

        Raises:
            FormulaNotFoundError: If the id is unknown
            FormulaImmutableError: If history depends on the row
        """
        located = self._locate(formula_id)
        company_id, concept_code = located.company_id, located.concept_code

        with self._scope_lock(company_id, concept_code):
            revision, rows = self._read_scope(company_id, concept_code)
            row = next((r for r in rows if r.id == formula_id), None)
            if row is None:
                raise FormulaNotFoundError(f"Formula not found: {formula_id}")
            if not row.is_active:
                raise FormulaImmutableError(f"Formula {formula_id} is superseded and cannot be deleted")
            if any(r.superseded_by == formula_id for r in rows):
                raise FormulaImmutableError(f"Formula {formula_id} replaced an earlier version and cannot be deleted")
            if self.is_referenced(formula_id):
                raise FormulaImmutableError(f"Formula {formula_id} is referenced by audit entries")

            self._write_scope(company_id, concept_code, revision, [r for r in rows if r.id != formula_id])

        logger.info(f"Deleted formula {company_id}/{concept_code} {formula_id}")
