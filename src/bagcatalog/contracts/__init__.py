"""Ingestion contracts: fail-fast enforcement of metadata invariants.

Contracts fail immediately and loudly when the extractors don't produce
their promised invariants.

Key principle:
- Pydantic validates config correctness
- Contracts validate extraction correctness
- The parser handles damaged files
"""

from bagcatalog.contracts.failure import ContractViolation, FailurePolicy
from bagcatalog.contracts.base import require
from bagcatalog.contracts.metadata import assert_metadata_consistent

__all__ = [
    "ContractViolation",
    "FailurePolicy",
    "require",
    "assert_metadata_consistent",
]
