"""Nomina Calc - Payroll formula and fiscal rule engine for Mexican payroll."""

__version__ = "0.1.0"
