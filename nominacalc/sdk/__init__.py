"""Nomina Calc SDK - Payroll formulas, fiscal tables and audit trail."""

from .config import (
    get_config_dir,
    get_settings_path,
    load_settings,
    save_settings,
    get_setting,
    set_setting,
    get_profile_path,
    load_profile,
    save_profile,
    get_profile_value,
    set_profile_value,
    get_company_config,
    # XDG paths
    get_data_path,
    get_user_fiscal_tables_dir,
)

from .rounding import (
    RoundingMethod,
    RoundingPolicy,
    RoundingPolicyCache,
    RoundingTrace,
    PRECISION,
    round_value,
    round_with_trace,
    sum_and_round,
    distribute,
    calculate_percentage,
    validate_precision,
    load_company_rounding_policy,
)

from .formulas import (
    FormulaEvaluator,
    FormulaResult,
    FormulaError,
    FormulaValidationError,
    FormulaEvaluationError,
    build_formula_context,
    FORMULA_TEMPLATES,
    VARIABLES,
)

from .taxes import (
    BracketTable,
    BracketTableError,
    FiscalTables,
    FiscalTableProvider,
    FiscalTableNotFoundError,
    load_fiscal_tables,
    available_years,
    calculate_isr,
    calculate_subsidy,
    calculate_isr_with_subsidy,
    calculate_imss,
    check_progression,
    calculate_liquidation,
    LiquidationResult,
    LIQUIDATION_TYPES,
)

from .versions import (
    FormulaStore,
    FormulaNotFoundError,
    FormulaImmutableError,
    VersionConflictError,
    OverlapConflict,
    OverlapCheck,
    ResolvedFormula,
)

from .audit import (
    AuditRecorder,
    AuditEntryNotFoundError,
    AuditEntryExistsError,
    IntegrityCheckResult,
    PeriodSummary,
)

from .payroll import (
    PayrollEngine,
    EmployeeCalculation,
    PeriodRunResult,
)

from .schemas import (
    CalculationFormula,
    EmployeeSnapshot,
    PeriodSnapshot,
    FiscalAuditEntry,
    FiscalValues,
)

__all__ = [
    # Config
    "get_config_dir",
    "get_settings_path",
    "load_settings",
    "save_settings",
    "get_setting",
    "set_setting",
    "get_profile_path",
    "load_profile",
    "save_profile",
    "get_profile_value",
    "set_profile_value",
    "get_company_config",
    "get_data_path",
    "get_user_fiscal_tables_dir",
    # Rounding
    "RoundingMethod",
    "RoundingPolicy",
    "RoundingPolicyCache",
    "RoundingTrace",
    "PRECISION",
    "round_value",
    "round_with_trace",
    "sum_and_round",
    "distribute",
    "calculate_percentage",
    "validate_precision",
    "load_company_rounding_policy",
    # Formulas
    "FormulaEvaluator",
    "FormulaResult",
    "FormulaError",
    "FormulaValidationError",
    "FormulaEvaluationError",
    "build_formula_context",
    "FORMULA_TEMPLATES",
    "VARIABLES",
    # Taxes
    "BracketTable",
    "BracketTableError",
    "FiscalTables",
    "FiscalTableProvider",
    "FiscalTableNotFoundError",
    "load_fiscal_tables",
    "available_years",
    "calculate_isr",
    "calculate_subsidy",
    "calculate_isr_with_subsidy",
    "calculate_imss",
    "check_progression",
    "calculate_liquidation",
    "LiquidationResult",
    "LIQUIDATION_TYPES",
    # Versions
    "FormulaStore",
    "FormulaNotFoundError",
    "FormulaImmutableError",
    "VersionConflictError",
    "OverlapConflict",
    "OverlapCheck",
    "ResolvedFormula",
    # Audit
    "AuditRecorder",
    "AuditEntryNotFoundError",
    "AuditEntryExistsError",
    "IntegrityCheckResult",
    "PeriodSummary",
    # Payroll
    "PayrollEngine",
    "EmployeeCalculation",
    "PeriodRunResult",
    # Schemas
    "CalculationFormula",
    "EmployeeSnapshot",
    "PeriodSnapshot",
    "FiscalAuditEntry",
    "FiscalValues",
]
