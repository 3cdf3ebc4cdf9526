"""Centralized failure policy for contract violations.

Contracts fail fast, loud, and once. All violations raise the same
exception type, allowing callers to handle extraction bugs uniformly.
"""

from enum import Enum


class FailurePolicy(str, Enum):
    """Failure policy for contract violations.

    FAIL_FAST: Stop the workers on the first contract violation
    FAIL_FILE (default): Fail the current file only and keep the workers running
    """
    FAIL_FAST = "fail_fast"
    FAIL_FILE = "fail_file"


class ContractViolation(RuntimeError):
    """Raised when an extraction contract is violated.

    This indicates a bug in the extraction logic, not a damaged bag file.
    A damaged file raises one of the ``bagcatalog.errors`` classes instead.

    Key distinction:
    - ValueError: User/config error (handled by Pydantic)
    - BagCatalogError: the file or storage is bad
    - ContractViolation: the engine assembled an inconsistent metadata graph
    """
    pass
