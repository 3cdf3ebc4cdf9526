"""Bag Catalog User Configuration.

This is the user-facing configuration file. Modify settings here to customize
the indexer behavior. Advanced settings are in bagcatalog/schemas/param.py

Usage:
    python scripts/run_bag_indexer.py scripts/user_config.py
    python scripts/run_bag_indexer.py scripts/user_config.py --root /mnt/field_bags
    python scripts/run_bag_indexer.py scripts/user_config.py --mode watch
"""

CONFIG = {
    # ========================================================================
    # MODE & STORAGE
    # ========================================================================
    "MODE": "once",            # "once" or "watch"
    "ROOTS": ["./bags"],       # Directories scanned for bag files
    "PATTERNS": ["*.bag"],     # Filename globs
    "BASE_DIR": "./bagcatalog_output",  # Catalog, exports and logs go here

    # ========================================================================
    # WATCH MODE SETTINGS
    # ========================================================================
    "POLL_INTERVAL_SEC": 300,  # Seconds between scans

    # ========================================================================
    # INGESTION SETTINGS
    # ========================================================================
    "MAX_WORKERS": 2,              # Bags ingested in parallel
    "QUEUE_SIZE": 100,             # Discovered files waiting for a worker
    "CHECKSUM_ALGORITHM": "md5",   # Any hashlib algorithm
    "CHUNK_READ_TIMEOUT_SEC": 30,  # Storage stall before giving up (None = wait forever)

    # ========================================================================
    # FORMAT SETTINGS
    # ========================================================================
    "SUPPORTED_VERSION": "2.0",
    "COMPRESSION_CODECS": ["none", "bz2", "lz4"],
    "VERIFY_CHUNKS": False,    # Decompress every chunk of indexed bags to detect damage (slower)

    # ========================================================================
    # GPS SETTINGS
    # ========================================================================
    # Message types treated as GPS fixes, with the field paths to read.
    # Leave as None to use the defaults (NavSatFix, GPSFix).
    "GEO_MESSAGE_TYPES": None,
    # Example:
    # "GEO_MESSAGE_TYPES": {
    #     "sensor_msgs/NavSatFix": {},
    #     "my_msgs/Fix": {"latitude": "lat", "longitude": "lon", "altitude": None},
    # },
    "MAX_POSITIONS": None,     # Keep at most N track points per bag (None = all)

    "LOG_LEVEL": "INFO",
}
