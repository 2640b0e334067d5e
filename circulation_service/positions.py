"""
Pure helpers for the per-book waiting line.

A queue snapshot maps any key (usually a reservation id) to its position.
Positions of pending reservations for one book must always be exactly
1..N; these functions compute new snapshots and never touch storage.
"""


def compact_positions(snapshot, removed_position):
    """
    Return a new snapshot with the entry at ``removed_position`` gone and
    every later position moved up by one.
    """
    compacted = {}
    for key, position in snapshot.items():
        if position == removed_position:
            continue
        if position > removed_position:
            position -= 1
        compacted[key] = position
    return compacted


def next_position(positions):
    """Position for a reservation joining the back of the line."""
    return max(positions, default=0) + 1


def is_contiguous(positions):
    positions = list(positions)
    return sorted(positions) == list(range(1, len(positions) + 1))
