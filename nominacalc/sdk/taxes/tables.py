"""Year-scoped fiscal tables loaded from fiscal-tables/YYYY.yaml.

Lookup order for a year's file:
1. <config_dir>/fiscal-tables/YYYY.yaml (installation override)
2. nominacalc/fiscal-tables/YYYY.yaml (bundled)

When a year has no file, the most recent prior year is used, mirroring how
tables carry forward until SAT publishes new ones.
"""

import hashlib
import json
import logging
import threading
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from ..config import get_user_fiscal_tables_dir
from ..schemas import FiscalTableSet, FiscalValues, ImssRate, IsrBracket, SubsidyBracket
from .brackets import BracketTable

logger = logging.getLogger(__name__)


class FiscalTableNotFoundError(Exception):
    """Raised when no fiscal table file covers the requested year."""
    pass


def _bundled_tables_dir() -> Path:
    return Path(__file__).parent.parent.parent / "fiscal-tables"


def _table_dirs() -> List[Path]:
    return [get_user_fiscal_tables_dir(), _bundled_tables_dir()]


def available_years() -> List[int]:
    """Years with a table file in any location, newest first."""
    years = set()
    for directory in _table_dirs():
        if directory.is_dir():
            years.update(int(p.stem) for p in directory.glob("*.yaml") if p.stem.isdigit())
    return sorted(years, reverse=True)


def _find_table_file(year: int) -> Optional[Path]:
    for directory in _table_dirs():
        path = directory / f"{year}.yaml"
        if path.exists():
            return path
    return None


def _floats_to_str(value):
    # YAML floats reach Decimal fields through their string form (0.0192, not its binary expansion)
    if isinstance(value, float):
        return str(value)
    if isinstance(value, dict):
        return {k: _floats_to_str(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_floats_to_str(v) for v in value]
    return value


def load_fiscal_tables(year: int) -> FiscalTableSet:
    """Load and validate the fiscal tables in effect for ``year``.

    Falls back to the most recent prior year when ``year`` has no file.

    Raises:
        FiscalTableNotFoundError: If no file exists for year or any prior year
        pydantic.ValidationError: If the file does not match the schema
    """
    candidates = [y for y in available_years() if y <= int(year)]
    for candidate in candidates:
        path = _find_table_file(candidate)
        if path is None:
            continue
        if candidate != int(year):
            logger.warning(f"No fiscal tables for {year}; using {candidate} ({path})")
        else:
            logger.debug(f"Loading fiscal tables for {year} from {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return FiscalTableSet.model_validate(_floats_to_str(data))

    raise FiscalTableNotFoundError(
        f"No fiscal tables found for {year} or earlier. "
        f"Add {get_user_fiscal_tables_dir() / f'{year}.yaml'}"
    )


class FiscalTables:
    """Validated bracket tables and rates for one fiscal year.

    Raises:
        BracketTableError: (on construction) if any ISR or subsidy table is
            not a partition of the non-negative line
    """

    def __init__(self, table_set: FiscalTableSet):
        self.table_set = table_set
        self.year = table_set.year
        self._isr = {
            period: BracketTable(f"ISR_{period}_{self.year}", rows)
            for period, rows in table_set.isr.items()
        }
        self._subsidy = {
            period: BracketTable(f"SUBSIDIO_{period}_{self.year}", rows)
            for period, rows in table_set.subsidy.items()
        }

    @property
    def fiscal_values(self) -> FiscalValues:
        return self.table_set.fiscal_values

    @property
    def imss_rates(self) -> List[ImssRate]:
        return list(self.table_set.imss)

    @property
    def risk_classes(self) -> Dict[str, Decimal]:
        return dict(self.table_set.risk_classes)

    def isr_table(self, period_type: str) -> BracketTable[IsrBracket]:
        if period_type not in self._isr:
            raise FiscalTableNotFoundError(f"No ISR table for {period_type} in {self.year}")
        return self._isr[period_type]

    def subsidy_table(self, period_type: str) -> Optional[BracketTable[SubsidyBracket]]:
        return self._subsidy.get(period_type)

    def imss_checksum(self) -> str:
        payload = json.dumps(
            {
                "rates": [rate.model_dump(mode="json") for rate in self.table_set.imss],
                "risk_classes": {k: str(v) for k, v in self.table_set.risk_classes.items()},
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FiscalTableProvider:
    """Loads FiscalTables per year on first use and keeps them.

    Call ``clear`` after editing a table file.
    """

    def __init__(self, loader=load_fiscal_tables):
        self._loader = loader
        self._tables: Dict[int, FiscalTables] = {}
        self._lock = threading.Lock()

    def get(self, year: int) -> FiscalTables:
        year = int(year)
        with self._lock:
            tables = self._tables.get(year)
            if tables is None:
                tables = FiscalTables(self._loader(year))
                self._tables[year] = tables
            return tables

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()
