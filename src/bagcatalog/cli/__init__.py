"""Command-line interface modules for bag indexer execution.

This package contains core execution logic, making scripts/ optional and deletable.
"""

from bagcatalog.cli.run_indexer import run_indexer

__all__ = ['run_indexer']
