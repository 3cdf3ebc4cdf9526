"""
Directory setup for the bag indexer.

Flat layout under one base directory:
- catalog/: the SQLite catalog
- exports/: Parquet exports of the bag table, one per run (timestamped)
- logs/: indexer.log
"""

from pathlib import Path
from datetime import datetime, timezone


def setup_output_directories(base_output_dir):
    """
    Set up organized output directory structure.

    Parameters
    ----------
    base_output_dir : str or Path
        Base output directory (``~`` is expanded).

    Returns
    -------
    dict
        Dictionary with paths: 'base', 'catalog', 'exports', 'logs'
    """
    base_output_dir = Path(base_output_dir).expanduser().resolve()

    directories = {
        "base": base_output_dir,
        "catalog": base_output_dir / "catalog",
        "exports": base_output_dir / "exports",
        "logs": base_output_dir / "logs",
    }

    for path in directories.values():
        path.mkdir(parents=True, exist_ok=True)

    return directories


def get_catalog_path(output_dirs, db_filename):
    """
    Get the catalog database path.

    Parameters
    ----------
    output_dirs : dict
        Output directories from setup_output_directories()
    db_filename : str
        Database file name (``catalog.db_filename``)

    Returns
    -------
    Path
        Full path: catalog/<db_filename>
    """
    return Path(output_dirs["catalog"]) / db_filename


def get_export_path(output_dirs, timestamp=None):
    """
    Get a Parquet export path.

    Parameters
    ----------
    output_dirs : dict
        Output directories from setup_output_directories()
    timestamp : datetime, optional
        Export time. Defaults to now (UTC).

    Returns
    -------
    Path
        Full path: exports/bags_YYYYMMDD_HHMMSS.parquet

    Example
    -------
    >>> get_export_path(dirs, datetime(2025, 3, 5, 12, 0, 0))
    Path('output/exports/bags_20250305_120000.parquet')
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    return Path(output_dirs["exports"]) / f"bags_{timestamp.strftime('%Y%m%d_%H%M%S')}.parquet"


def get_log_path(output_dirs):
    """Full path: logs/indexer.log"""
    return Path(output_dirs["logs"]) / "indexer.log"
