"""Typer command-line interface for operator-cluster."""
