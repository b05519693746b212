"""Mexican payroll taxes: ISR, Subsidio al Empleo and IMSS quotas."""

from .brackets import (
    BracketMatch,
    BracketTable,
    BracketTableError,
    ONE_CENT,
    validate_bracket_rows,
)
from .imss import (
    IMSS_EMPLOYEE_RULE,
    IMSS_EMPLOYER_RULE,
    INFONAVIT_RULE,
    ImssConceptQuota,
    ImssRateError,
    ImssResult,
    calculate_imss,
)
from .isr import (
    ISR_RULE,
    SUBSIDY_RULE,
    IsrResult,
    NetIsrResult,
    ProgressionIssue,
    SubsidyResult,
    calculate_isr,
    calculate_isr_with_subsidy,
    calculate_subsidy,
    check_progression,
    net_isr,
)
from .tables import (
    FiscalTableNotFoundError,
    FiscalTableProvider,
    FiscalTables,
    available_years,
    load_fiscal_tables,
)
from .liquidation import (
    LIQUIDATION_TYPES,
    LiquidationResult,
    calculate_liquidation,
    exempt_service_years,
)
