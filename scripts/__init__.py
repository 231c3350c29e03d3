"""Operational scripts: audit trail and the reconciliation CLI."""
