"""Append-only audit trail of fiscal calculations.

Each computed concept of a payroll detail becomes one FiscalAuditEntry,
stored as ``<data_dir>/audit/<payroll_detail_id>/<entry_id>.json``. Files are
created with exclusive mode and never rewritten.

An entry recorded with a snapshot carries everything needed to recompute its
amount: the inputs as of calculation time, the table rows / rates / formula
actually applied (with a checksum), and the rounding policy. Verification
recomputes from that snapshot only, never from the live tables, and reports
a mismatch without touching the stored entry.
"""

import hashlib
import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import check_path_key, get_data_path
from .formulas import FormulaError, FormulaEvaluator
from .rounding import RoundingPolicy, to_decimal
from .schemas import (
    CalculationFormula,
    EmployeeSnapshot,
    FiscalAuditEntry,
    FiscalValues,
    ImssRate,
    IsrBracket,
    PeriodSnapshot,
    SubsidyBracket,
)
from .taxes import (
    BracketTable,
    BracketTableError,
    FiscalTables,
    ImssRateError,
    calculate_imss,
    calculate_isr,
    calculate_subsidy,
)

logger = logging.getLogger(__name__)

AUDIT_DIRNAME = "audit"


class AuditEntryNotFoundError(Exception):
    """Raised when an audit entry id does not exist."""
    pass


class AuditEntryExistsError(Exception):
    """Raised when an entry id is recorded twice."""
    pass


@dataclass
class IntegrityCheckResult:
    """Outcome of recomputing an entry from its snapshot."""

    entry_id: str
    valid: bool
    recomputed: Optional[Decimal]
    stored: Decimal
    checksum_valid: bool = True
    hash_valid: bool = True
    details: List[str] = field(default_factory=list)


@dataclass
class ConceptSummary:
    concept_type: str
    entries: int = 0
    total_base: Decimal = Decimal(0)
    total_result: Decimal = Decimal(0)
    tables_used: List[str] = field(default_factory=list)


@dataclass
class PeriodSummary:
    period_id: str
    entries: int
    payroll_details: int
    by_concept: Dict[str, ConceptSummary]
    superseded_entries: int = 0

    def total(self, concept_type: str) -> Decimal:
        summary = self.by_concept.get(concept_type)
        return summary.total_result if summary else Decimal(0)


# =============================================================================
# Snapshot helpers
# =============================================================================

def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def to_json_data(value: Any) -> Any:
    """Normalize a value to plain JSON types (Decimal -> str, date -> ISO)."""
    return json.loads(json.dumps(value, default=_json_default))


def current_entries(entries: List[FiscalAuditEntry]) -> List[FiscalAuditEntry]:
    """Entries of the latest calculation of each payroll detail.

    ``entries`` must be oldest first. Entries recorded outside a calculation
    (no calculation_id) form one group per detail.
    """
    latest: Dict[str, Optional[str]] = {}
    for entry in entries:
        latest[entry.payroll_detail_id] = entry.calculation_id
    return [e for e in entries if e.calculation_id == latest[e.payroll_detail_id]]


def canonical_hash(value: Any) -> str:
    """SHA-256 of the canonical (sorted keys, compact) JSON form."""
    payload = json.dumps(to_json_data(value), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _snapshot_hash(entry: FiscalAuditEntry) -> str:
    return canonical_hash({
        "concept_type": entry.concept_type,
        "result_amount": entry.result_amount,
        "input": entry.input_snapshot,
        "output": entry.output_snapshot,
        "applied_rules": entry.applied_rules_snapshot,
    })


def build_input_snapshot(
    employee: EmployeeSnapshot,
    period: PeriodSnapshot,
    fiscal_values: FiscalValues,
    calculation: Optional[Dict[str, Any]] = None,
    captured_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Inputs of a calculation as they were when it ran."""
    return to_json_data({
        "captured_at": captured_at or datetime.now(timezone.utc),
        "employee": employee,
        "period": period,
        "fiscal_parameters": fiscal_values,
        "calculation": calculation or {},
    })


def build_output_snapshot(
    final_result: Any,
    breakdown: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return to_json_data({
        "calculation_breakdown": breakdown or {},
        "final_result": final_result,
    })


def bracket_rules_snapshot(rule: str, table: BracketTable, rounding: RoundingPolicy) -> Dict[str, Any]:
    return to_json_data({
        "rule": rule,
        "table": {
            "name": table.name,
            "checksum": table.checksum(),
            "rows": table.to_dicts(),
        },
        "rounding": rounding,
    })


def imss_rules_snapshot(rule: str, tables: FiscalTables, rounding: RoundingPolicy) -> Dict[str, Any]:
    return to_json_data({
        "rule": rule,
        "rates": tables.table_set.imss,
        "risk_classes": tables.risk_classes,
        "checksum": tables.imss_checksum(),
        "rounding": rounding,
    })


def formula_rules_snapshot(formula: CalculationFormula, rounding: RoundingPolicy) -> Dict[str, Any]:
    return to_json_data({
        "rule": "FORMULA",
        "formula": {
            "id": formula.id,
            "version": formula.version,
            "concept_code": formula.concept_code,
            "expression": formula.expression,
            "is_taxable": formula.is_taxable,
            "is_exempt": formula.is_exempt,
            "exempt_limit": formula.exempt_limit,
            "exempt_limit_type": formula.exempt_limit_type,
        },
        "checksum": canonical_hash(formula.expression),
        "rounding": rounding,
    })


# =============================================================================
# Recorder
# =============================================================================

class AuditRecorder:
    """Writes and reads fiscal audit entries.

    Args:
        data_dir: Base data directory (defaults to the configured data path)
        clock: Source of timestamps for new entries
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.root = Path(data_dir or get_data_path()) / AUDIT_DIRNAME
        self.clock = clock

    def new_entry(self, **fields: Any) -> FiscalAuditEntry:
        """Build an entry with a fresh id and timestamp (not yet recorded)."""
        fields.setdefault("id", uuid.uuid4().hex)
        fields.setdefault("calculated_at", self.clock())
        return FiscalAuditEntry(**fields)

    def _entry_path(self, payroll_detail_id: str, entry_id: str) -> Path:
        return (
            self.root
            / check_path_key(payroll_detail_id, "payroll_detail_id")
            / f"{check_path_key(entry_id, 'entry_id')}.json"
        )

    def record(self, entry: FiscalAuditEntry) -> FiscalAuditEntry:
        """Persist an entry; existing entries are never overwritten.

        Raises:
            AuditEntryExistsError: If an entry with the same id exists
        """
        path = self._entry_path(entry.payroll_detail_id, entry.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "x") as f:
                json.dump(entry.model_dump(mode="json"), f, indent=2)
        except FileExistsError:
            raise AuditEntryExistsError(f"Audit entry {entry.id} already exists")

        logger.debug(
            f"Audit {entry.concept_type} {entry.concept_code} for {entry.payroll_detail_id}: "
            f"{entry.result_amount}"
        )
        return entry

    def record_with_snapshot(
        self,
        entry: FiscalAuditEntry,
        input_snapshot: Dict[str, Any],
        output_snapshot: Dict[str, Any],
        applied_rules_snapshot: Dict[str, Any],
    ) -> FiscalAuditEntry:
        """Persist an entry together with its reproducibility bundle."""
        entry = entry.model_copy(update={
            "input_snapshot": to_json_data(input_snapshot),
            "output_snapshot": to_json_data(output_snapshot),
            "applied_rules_snapshot": to_json_data(applied_rules_snapshot),
        })
        entry = entry.model_copy(update={"snapshot_hash": _snapshot_hash(entry)})
        return self.record(entry)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _load(self, path: Path) -> FiscalAuditEntry:
        with open(path, "r") as f:
            return FiscalAuditEntry.model_validate(json.load(f))

    def _all_paths(self) -> List[Path]:
        if not self.root.exists():
            return []
        return sorted(self.root.glob("*/*.json"))

    def get_entry(self, entry_id: str) -> FiscalAuditEntry:
        """Raises AuditEntryNotFoundError if the id is unknown."""
        check_path_key(entry_id, "entry_id")
        if self.root.exists():
            for path in self.root.glob(f"*/{entry_id}.json"):
                return self._load(path)
        raise AuditEntryNotFoundError(f"Audit entry not found: {entry_id}")

    def list_entries(
        self,
        period_id: Optional[str] = None,
        payroll_detail_id: Optional[str] = None,
        concept_type: Optional[str] = None,
    ) -> List[FiscalAuditEntry]:
        """Entries matching the filters, oldest first."""
        if payroll_detail_id:
            detail_dir = self.root / check_path_key(payroll_detail_id, "payroll_detail_id")
            paths = sorted(detail_dir.glob("*.json")) if detail_dir.is_dir() else []
        else:
            paths = self._all_paths()

        entries = []
        for path in paths:
            entry = self._load(path)
            if period_id and entry.period_id != period_id:
                continue
            if concept_type and entry.concept_type != concept_type:
                continue
            entries.append(entry)
        entries.sort(key=lambda e: (e.calculated_at, e.id))
        return entries

    def entries_for_detail(self, payroll_detail_id: str) -> List[FiscalAuditEntry]:
        return self.list_entries(payroll_detail_id=payroll_detail_id)

    def entries_for_period(self, period_id: str) -> List[FiscalAuditEntry]:
        return self.list_entries(period_id=period_id)

    def is_rule_referenced(self, rule_id: str) -> bool:
        """True if any entry applied the given rule or formula id."""
        return any(self._load(path).rule_applied == rule_id for path in self._all_paths())

    def summarize_period(self, period_id: str) -> PeriodSummary:
        """Aggregate the current entries of a period by concept type.

        Re-running a payroll detail writes new entries next to the old ones.
        Only the entries of the latest calculation of each detail count;
        the rest are reported as ``superseded_entries``.
        """
        recorded = self.entries_for_period(period_id)
        entries = current_entries(recorded)
        by_concept: Dict[str, ConceptSummary] = {}
        tables = defaultdict(set)

        for entry in entries:
            summary = by_concept.setdefault(entry.concept_type, ConceptSummary(entry.concept_type))
            summary.entries += 1
            summary.total_base += entry.calculation_base
            summary.total_result += entry.result_amount
            if entry.table_used:
                tables[entry.concept_type].add(entry.table_used)

        for concept_type, names in tables.items():
            by_concept[concept_type].tables_used = sorted(names)

        return PeriodSummary(
            period_id=period_id,
            entries=len(entries),
            payroll_details=len({e.payroll_detail_id for e in entries}),
            by_concept=by_concept,
            superseded_entries=len(recorded) - len(entries),
        )

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def verify_snapshot_integrity(self, entry_id: str) -> IntegrityCheckResult:
        """Recompute an entry from its snapshot and compare to the stored amount.

        A mismatch is logged as an error and returned; the entry is left as is.

        Raises:
            AuditEntryNotFoundError: If the id is unknown
        """
        entry = self.get_entry(entry_id)
        result = IntegrityCheckResult(
            entry_id=entry.id,
            valid=False,
            recomputed=None,
            stored=entry.result_amount,
        )

        if not (entry.input_snapshot and entry.applied_rules_snapshot):
            result.details.append("Entry has no snapshot to recompute from")
            return result

        if entry.snapshot_hash != _snapshot_hash(entry):
            result.hash_valid = False
            result.details.append("Snapshot hash does not match snapshot contents")

        try:
            recomputed, checksum_valid = self._recompute(entry)
        except (KeyError, TypeError, ValueError, FormulaError, BracketTableError, ImssRateError) as e:
            result.details.append(f"Snapshot cannot be replayed: {e}")
            logger.error(f"Integrity check failed for audit entry {entry.id}: {e}")
            return result

        result.recomputed = recomputed
        result.checksum_valid = checksum_valid
        if not checksum_valid:
            result.details.append("Rule checksum does not match the stored rules")
        if recomputed != entry.result_amount:
            result.details.append(f"Recomputed {recomputed} != stored {entry.result_amount}")

        result.valid = result.hash_valid and result.checksum_valid and recomputed == entry.result_amount
        if not result.valid:
            logger.error(
                f"Integrity check failed for audit entry {entry.id} "
                f"({entry.concept_type} {entry.concept_code}): {'; '.join(result.details)}"
            )
        return result

    def verify_period(self, period_id: str) -> List[IntegrityCheckResult]:
        return [self.verify_snapshot_integrity(e.id) for e in self.entries_for_period(period_id)]

    def _recompute(self, entry: FiscalAuditEntry) -> tuple:
        """Return (recomputed amount, rules checksum valid)."""
        rules = entry.applied_rules_snapshot
        inputs = entry.input_snapshot
        calculation = inputs.get("calculation", {})
        rounding = RoundingPolicy.model_validate(rules["rounding"])

        if entry.concept_type in ("ISR", "ISR_SUBSIDIO"):
            stored_table = rules["table"]
            row_type = IsrBracket if entry.concept_type == "ISR" else SubsidyBracket
            table = BracketTable(
                stored_table["name"],
                [row_type.model_validate(row) for row in stored_table["rows"]],
            )
            checksum_valid = table.checksum() == stored_table["checksum"]
            base = to_decimal(calculation["base"])
            if entry.concept_type == "ISR":
                return calculate_isr(base, table, rounding).isr, checksum_valid
            return calculate_subsidy(base, table, rounding).subsidy, checksum_valid

        if entry.concept_type in ("IMSS_EMPLOYEE", "IMSS_EMPLOYER", "INFONAVIT"):
            rates = [ImssRate.model_validate(rate) for rate in rules["rates"]]
            risk_classes = {k: to_decimal(v) for k, v in rules["risk_classes"].items()}
            checksum_valid = canonical_hash({
                "rates": rates,
                "risk_classes": {k: str(v) for k, v in risk_classes.items()},
            }) == rules["checksum"]
            imss = calculate_imss(
                calculation["sbc"],
                int(calculation["days"]),
                rates,
                FiscalValues.model_validate(inputs["fiscal_parameters"]),
                risk_class=calculation.get("risk_class"),
                risk_classes=risk_classes,
                rounding=rounding,
            )
            if entry.concept_type == "IMSS_EMPLOYEE":
                return imss.employee_total, checksum_valid
            if entry.concept_type == "IMSS_EMPLOYER":
                return imss.employer_total, checksum_valid
            return imss.infonavit, checksum_valid

        if entry.concept_type == "FORMULA":
            formula = rules["formula"]
            checksum_valid = canonical_hash(formula["expression"]) == rules["checksum"]
            evaluator = FormulaEvaluator(rounding)
            outcome = evaluator.evaluate_with_exemption(
                formula["expression"],
                calculation["variables"],
                is_taxable=formula["is_taxable"],
                exempt_limit=formula["exempt_limit"],
                exempt_limit_type=formula["exempt_limit_type"],
                is_exempt=formula["is_exempt"],
                fiscal_values=FiscalValues.model_validate(inputs["fiscal_parameters"]),
            )
            return outcome.value, checksum_valid

        raise ValueError(f"Unsupported concept type {entry.concept_type}")
