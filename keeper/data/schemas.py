"""MongoDB collection names and index specs.

Schemas here are *descriptors* for consistency and index creation. The keeper
never stores treasury totals; the ledger is the system of record for those.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING


IndexSpec = Sequence[Tuple[str, int]]


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    required_keys: Sequence[str]
    indexes: Sequence[IndexSpec]
    unique: bool = False


AUDIT_LOG = "audit_log"
# Journal of swap/ledger-record attempts, used to detect in-flight work after a restart.
SWAP_EXECUTIONS = "swap_executions"


COLLECTION_SPECS: Dict[str, CollectionSpec] = {
    AUDIT_LOG: CollectionSpec(
        name=AUDIT_LOG,
        required_keys=("timestamp", "event_type"),
        indexes=(
            (("timestamp", DESCENDING),),
            (("run_id", ASCENDING), ("timestamp", DESCENDING)),
            (("event_type", ASCENDING), ("timestamp", DESCENDING)),
        ),
    ),
    SWAP_EXECUTIONS: CollectionSpec(
        name=SWAP_EXECUTIONS,
        required_keys=("execution_id", "category", "status"),
        indexes=(
            (("status", ASCENDING), ("updated_at", DESCENDING)),
            (("ledger_status", ASCENDING), ("updated_at", DESCENDING)),
        ),
    ),
}


__all__ = ["AUDIT_LOG", "SWAP_EXECUTIONS", "COLLECTION_SPECS", "CollectionSpec", "IndexSpec"]
