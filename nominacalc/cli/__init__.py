"""Nomina Calc command-line interface."""
