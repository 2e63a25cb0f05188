from .entry import (
    Entries,
    Entry,
    contains_entry,
    create_entries,
    diff_entries,
    entries_equal,
    join_host_port,
    split_host_port,
)

__all__ = [
    "Entries",
    "Entry",
    "contains_entry",
    "create_entries",
    "diff_entries",
    "entries_equal",
    "join_host_port",
    "split_host_port",
]
