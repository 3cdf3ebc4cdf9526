#!/usr/bin/env python3
"""Bag Catalog Indexer Runner.

Usage:
    python scripts/run_bag_indexer.py scripts/user_config.py
    python scripts/run_bag_indexer.py scripts/user_config.py --root /data/bags
    python scripts/run_bag_indexer.py scripts/user_config.py --mode watch --max-runtime 60

Note: User config in scripts/user_config.py, expert defaults in
bagcatalog.schemas.param. Requires the package to be installed
(``pip install -e .``).
"""

from bagcatalog.cli.run_indexer import main


if __name__ == "__main__":
    raise SystemExit(main())
