"""Domain rules for realtime channels."""

from insforge_realtime.domain.rules.change_filter import (
    ChangeFilter,
    Predicate,
    is_valid_identifier,
)

__all__ = [
    "ChangeFilter",
    "Predicate",
    "is_valid_identifier",
]
