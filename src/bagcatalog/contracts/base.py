"""Base contract enforcement utilities.

The require() function is the single enforcement mechanism for all contracts.
It enforces semantic invariants of the assembled metadata graph.
"""

from bagcatalog.contracts.failure import ContractViolation


def require(condition: bool, message: str) -> None:
    """Enforce an extraction contract.

    Called before a metadata graph is handed to the catalog to verify the
    extractors produced the guaranteed invariants. Fail-fast: no recovery,
    no fallback, no silence.

    Parameters
    ----------
    condition : bool
        The invariant that must be true. If False, ContractViolation is raised.

    message : str
        Error message explaining the contract violation (for debugging).

    Raises
    ------
    ContractViolation
        If condition is False. This indicates a bug in extraction logic.

    Examples
    --------
    >>> require(meta.duration >= 0, "Metadata contract: negative duration")
    """
    if not condition:
        raise ContractViolation(message)
