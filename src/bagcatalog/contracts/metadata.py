"""Metadata graph contract.

Enforces the guarantee that an assembled ``BagMetadata`` is internally
consistent before it reaches the catalog.
"""

from bagcatalog.contracts.base import require


def assert_metadata_consistent(meta) -> None:
    """Enforce the metadata contract.

    Called after both extractors finished and the checksum was attached.
    We do NOT re-check values against the file; only the structure the
    catalog relies on.

    Parameters
    ----------
    meta : BagMetadata
        Output of ``MetadataExtractor.finish()`` plus GPS track and checksum.

    Raises
    ------
    ContractViolation
        If the graph is inconsistent
    """
    require(
        bool(meta.checksum),
        f"Metadata contract violated: {meta.filename} has no checksum"
    )

    require(
        meta.duration >= 0,
        f"Metadata contract violated: negative duration {meta.duration}"
    )

    if meta.message_count == 0:
        require(
            meta.start_time is None and meta.end_time is None and meta.duration == 0,
            "Metadata contract violated: bag without messages must have no time range"
        )
    else:
        require(
            meta.start_time is not None and meta.end_time is not None,
            "Metadata contract violated: bag with messages is missing its time range"
        )
        require(
            meta.start_time <= meta.end_time,
            f"Metadata contract violated: start {meta.start_time} after end {meta.end_time}"
        )

    require(
        sum(t.message_count for t in meta.topics) <= meta.message_count,
        "Metadata contract violated: topic message counts exceed bag message count"
    )

    # Every topic's type must be one of the bag's types
    for topic in meta.topics:
        require(
            topic.message_type in meta.message_types,
            f"Metadata contract violated: topic {topic.name} type "
            f"{topic.message_type.name} not in bag message types"
        )

    stamps = [p.timestamp for p in meta.positions]
    require(
        all(a <= b for a, b in zip(stamps, stamps[1:])),
        "Metadata contract violated: positions are not ordered by timestamp"
    )

    require(
        meta.has_path == (len(meta.positions) > 0),
        "Metadata contract violated: has_path disagrees with positions"
    )
