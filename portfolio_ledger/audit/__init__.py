"""Audit logging package."""

from portfolio_ledger.audit.logger import (
    AuditLogger,
    configure_logging,
    create_correlation_id,
)

__all__ = ["AuditLogger", "configure_logging", "create_correlation_id"]
