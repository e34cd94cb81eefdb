"""Persistence layer (MongoDB audit log + swap execution journal)."""

from .schemas import AUDIT_LOG, SWAP_EXECUTIONS  # noqa: F401
