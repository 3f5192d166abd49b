"""Duplicate merging for search results.

Entries are grouped when category and search text match exactly and their
timestamps are close enough: the proximity confidence ``1 - |dt| / window``
must reach ``min_confidence``. The earliest entry of a group is kept as the
representative (its timestamp is unchanged); later ones are folded into its
``duplicates``. Merging is idempotent and never mutates its input.
"""

from src.models import LogEntry


def proximity_confidence(a: int, b: int, window_ms: int) -> float:
    if window_ms <= 0:
        return 1.0 if a == b else 0.0
    return max(0.0, 1.0 - abs(a - b) / window_ms)


def merge_duplicates(entries, window_ms: int = 300_000,
                     min_confidence: float = 0.5) -> list[LogEntry]:
    """Fold near-identical entries together; returns most-recent first."""
    # Stable oldest-first walk so the earliest occurrence opens each group.
    ordered = sorted(enumerate(entries), key=lambda pair: (pair[1].timestamp, -pair[0]))

    groups: list[tuple[LogEntry, list]] = []
    latest_group: dict[tuple, int] = {}

    for _, entry in ordered:
        key = (entry.category, entry.search_text)
        idx = latest_group.get(key)
        if idx is not None:
            rep, refs = groups[idx]
            conf = proximity_confidence(rep.timestamp, entry.timestamp, window_ms)
            if conf >= min_confidence:
                refs.append(entry.to_ref())
                refs.extend(entry.duplicates)
                continue
        latest_group[key] = len(groups)
        groups.append((entry, list(entry.duplicates)))

    merged = [rep.with_duplicates(refs) for rep, refs in groups]
    # Equal timestamps fall back to content so repeated merges order identically.
    merged.sort(key=lambda e: (-e.timestamp, e.category.value if e.category else "", e.search_text))
    return merged
