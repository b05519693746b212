"""Ordered bracket tables and row lookup.

A bracket table for a (year, period type) covers every base >= 0 exactly
once. Published SAT tables write consecutive rows one cent apart
(``... 746.04`` then ``746.05 ...``); tables may also share the boundary
value. Either way the lookup picks the row with the greatest lower limit
that does not exceed the base, so:

- a base exactly on a shared boundary matches the upper row only;
- a base inside a one-cent gap (e.g. 746.045) stays in the lower row;
- a base below the first lower limit (0.00) matches the first row.
"""

import hashlib
import json
from bisect import bisect_right
from dataclasses import dataclass
from decimal import Decimal
from typing import Generic, List, Sequence, TypeVar, Union

from ..rounding import to_decimal
from ..schemas import IsrBracket, SubsidyBracket


ONE_CENT = Decimal("0.01")

Row = TypeVar("Row", IsrBracket, SubsidyBracket)


class BracketTableError(Exception):
    """Raised when a bracket table does not partition the non-negative line."""

    def __init__(self, name: str, errors: List[str]):
        self.name = name
        self.errors = errors
        super().__init__(f"Invalid bracket table {name}: " + "; ".join(errors))


def validate_bracket_rows(rows: Sequence[Union[IsrBracket, SubsidyBracket]]) -> List[str]:
    """Check that rows are ordered, gapless and non-overlapping.

    Returns:
        List of error strings (empty if valid)
    """
    errors = []

    if not rows:
        return ["Table has no rows"]

    if rows[0].lower_limit > ONE_CENT:
        errors.append(f"First row starts at {rows[0].lower_limit}; must start at 0 or 0.01")

    for i, (row, nxt) in enumerate(zip(rows, rows[1:])):
        if row.upper_limit is None:
            errors.append(f"Row {i} is unbounded but is not the last row")
            continue
        if nxt.lower_limit <= row.lower_limit:
            errors.append(f"Row {i + 1} lower limit {nxt.lower_limit} is not above row {i} ({row.lower_limit})")
        elif nxt.lower_limit < row.upper_limit:
            errors.append(f"Rows {i} and {i + 1} overlap: {row.upper_limit} > {nxt.lower_limit}")
        elif nxt.lower_limit - row.upper_limit > ONE_CENT:
            errors.append(f"Gap between rows {i} and {i + 1}: {row.upper_limit} -> {nxt.lower_limit}")

    if rows[-1].upper_limit is not None:
        errors.append(f"Last row must be unbounded, has upper limit {rows[-1].upper_limit}")

    return errors


@dataclass
class BracketMatch(Generic[Row]):
    """A row matched for a base, with its position in the table."""

    index: int
    row: Row
    base: Decimal

    @property
    def excess(self) -> Decimal:
        return max(Decimal(0), self.base - self.row.lower_limit)


class BracketTable(Generic[Row]):
    """Validated, immutable bracket table.

    Args:
        name: Table identifier recorded in audit entries, e.g. ISR_MONTHLY_2025
        rows: Rows in ascending order of lower limit

    Raises:
        BracketTableError: If the rows do not partition [0, infinity)
    """

    def __init__(self, name: str, rows: Sequence[Row]):
        errors = validate_bracket_rows(rows)
        if errors:
            raise BracketTableError(name, errors)
        self.name = name
        self.rows: tuple = tuple(rows)
        self._lowers = [row.lower_limit for row in self.rows]

    def __len__(self) -> int:
        return len(self.rows)

    def __repr__(self) -> str:
        return f"BracketTable({self.name!r}, {len(self.rows)} rows)"

    def find(self, base: Union[Decimal, int, float, str]) -> BracketMatch[Row]:
        """Find the row that applies to ``base``.

        Raises:
            ValueError: If base is negative or not a finite number
        """
        amount = to_decimal(base)
        if amount < 0:
            raise ValueError(f"Taxable base cannot be negative: {amount}")
        index = max(0, bisect_right(self._lowers, amount) - 1)
        return BracketMatch(index=index, row=self.rows[index], base=amount)

    def matching_rows(self, base: Union[Decimal, int, float, str]) -> List[int]:
        """Indexes of every row whose inclusive bounds contain ``base``.

        Used by table audits; tables with shared boundaries report two rows
        for a boundary value even though ``find`` picks one.
        """
        amount = to_decimal(base)
        return [
            i for i, row in enumerate(self.rows)
            if row.lower_limit <= amount and (row.upper_limit is None or amount <= row.upper_limit)
        ]

    def to_dicts(self) -> List[dict]:
        return [row.model_dump(mode="json") for row in self.rows]

    def checksum(self) -> str:
        """SHA-256 over the canonical JSON of the rows."""
        payload = json.dumps(self.to_dicts(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
