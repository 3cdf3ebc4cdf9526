"""Formal ingestion invariants.

This file documents what each stage MUST produce. This is architecture, not code.
Use this file as a reviewer anchor and system reference.
"""

INGESTION_INVARIANTS = {
    "parser": [
        "First record is the bag header (op 0x03) or the file fails",
        "IndexCompleteRecord only after exactly conn_count connections and chunk_count chunk infos",
        "A damaged chunk yields one CorruptChunkRecord and none of its inner records",
        "The reader is closed when the record generator ends or is closed",
    ],

    "metadata": [
        "One Topic per connection id (same topic name may appear twice)",
        "Counts come from chunk infos when the index is complete, from messages otherwise",
        "Zero messages: start_time and end_time are None, duration is 0",
        "duration = end_time - start_time >= 0",
        "Every Topic's MessageType is in the bag's message type set",
    ],

    "gps": [
        "Positions ordered non-decreasing by timestamp (stable on ties)",
        "Only finite latitude in [-90, 90] and longitude in [-180, 180]",
        "has_path iff at least one position",
        "Coordinate is the bounding box centre, stored as one WKT point",
    ],

    "dedup": [
        "At most one catalog entry per checksum",
        "A reservation ends committed (with the bag insert, or finalize) or removed (release)",
    ],

    "catalog": [
        "A bag and its topics, positions and type links are written in one transaction",
        "Message types are global, unique on (name, md5sum), shared across bags",
        "Deleting a bag never deletes a message type",
        "missing is only set by storage reachability",
    ],
}

# Which stages are optional vs required
STAGE_REQUIREMENTS = {
    "parser": "REQUIRED",    # Header must parse
    "metadata": "REQUIRED",  # Every cataloged bag has metadata
    "gps": "OPTIONAL",       # Only bags with geolocation topics
    "dedup": "REQUIRED",     # Every file is checksummed first
    "catalog": "REQUIRED",   # All metadata must be persisted
}
