"""
Game Record Aligner
===================

Turns the parallel columns scraped from a game-log table into one record per
game actually played.

Basketball Reference game logs interleave real games with placeholder rows
("Inactive", "Did Not Play", repeated header rows). Those rows carry an empty
game number, so the game-number column decides which rows survive. Every other
column is filtered down to the same row indices, keeping document (chronological)
order.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

PRESENCE_KEY = "game_season"
LOCATION_KEY = "game_location"


class MalformedInputError(ValueError):
    """Raised when a column set cannot be aligned at all."""


class _Absent:
    """Marker for a cell that the scraper could not extract."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


class Location(str, Enum):
    HOME = "Home"
    AWAY = "Away"

    @classmethod
    def from_marker(cls, raw: Any) -> "Location":
        """'@' is an away game; anything else (the site leaves home games blank) is home."""
        return cls.AWAY if raw == "@" else cls.HOME


@dataclass(frozen=True)
class PartialData:
    """A column that came back shorter than the presence-key column."""
    column: str
    expected: int
    actual: int

    @property
    def missing(self) -> int:
        return self.expected - self.actual


@dataclass(frozen=True)
class AlignedRecord:
    """Statistics for one played game, keyed by data-stat name."""
    row_index: int
    stats: Mapping
    location: Optional[Location] = None

    def __post_init__(self):
        object.__setattr__(self, "stats", MappingProxyType(dict(self.stats)))

    def __getitem__(self, stat: str) -> Any:
        return self.stats[stat]

    def __contains__(self, stat: str) -> bool:
        return stat in self.stats

    def get(self, stat: str, default: Any = None) -> Any:
        return self.stats.get(stat, default)

    def is_absent(self, stat: str) -> bool:
        return self.stats.get(stat, ABSENT) is ABSENT

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary with absent cells as None and the location as text"""
        data = {k: (None if v is ABSENT else v) for k, v in self.stats.items()}
        if self.location is not None:
            data["location"] = self.location.value
        return data

    def __eq__(self, other):
        if not isinstance(other, AlignedRecord):
            return NotImplemented
        return (
            self.row_index == other.row_index
            and dict(self.stats) == dict(other.stats)
            and self.location == other.location
        )

    def __hash__(self):
        return hash((self.row_index, tuple(self.stats.items()), self.location))


@dataclass(frozen=True)
class AlignmentResult:
    """Aligned records for one stat page plus any partial-data notes."""
    records: Tuple[AlignedRecord, ...]
    columns: Tuple[str, ...]
    presence_key: str = PRESENCE_KEY
    partial: Tuple[PartialData, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[AlignedRecord]:
        return iter(self.records)

    def __getitem__(self, index: int) -> AlignedRecord:
        return self.records[index]

    @property
    def is_partial(self) -> bool:
        return bool(self.partial)

    def column(self, stat: str) -> List[Any]:
        """Aligned values of one stat, in game order"""
        if stat not in self.columns:
            raise KeyError(stat)
        return [record[stat] for record in self.records]

    def locations(self) -> List[Optional[Location]]:
        return [record.location for record in self.records]

    def to_columns(self) -> Dict[str, List[Any]]:
        """Back to a column set, e.g. to re-align or tabulate"""
        return {stat: self.column(stat) for stat in self.columns}


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _is_present(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def align(
    columns: Mapping,
    presence_key: str = PRESENCE_KEY,
    location_key: Optional[str] = LOCATION_KEY,
) -> AlignmentResult:
    """
    Keep only the rows that represent a played game.

    Args:
        columns: stat name -> raw cell texts in document order; None marks a
                 cell missing from its row
        presence_key: column whose non-empty values mark a played game
        location_key: column holding the '@' away marker, or None when the
                      page has no location column

    Returns:
        AlignmentResult with one record per valid row, in original order

    Raises:
        MalformedInputError: presence-key column missing or not a sequence,
                             or another column longer than it
    """
    if not isinstance(columns, Mapping):
        raise MalformedInputError(
            f"Expected a mapping of stat name to values, got {type(columns).__name__}"
        )

    if presence_key not in columns:
        raise MalformedInputError(f"Presence-key column '{presence_key}' is missing")

    key_column = columns[presence_key]
    if not _is_sequence(key_column):
        raise MalformedInputError(
            f"Presence-key column '{presence_key}' is not a sequence "
            f"({type(key_column).__name__})"
        )

    row_count = len(key_column)
    valid_indices = [i for i, value in enumerate(key_column) if _is_present(value)]

    partial = []
    filtered = {}
    for stat, values in columns.items():
        if values is None:
            # extraction failed upstream for the whole column
            values = ()
        elif not _is_sequence(values):
            raise MalformedInputError(
                f"Column '{stat}' is not a sequence ({type(values).__name__})"
            )

        if len(values) > row_count:
            raise MalformedInputError(
                f"Column '{stat}' has {len(values)} rows but '{presence_key}' has {row_count}"
            )
        # a None cell is one the scraper could not find in its row
        kept = [
            values[i] if i < len(values) and values[i] is not None else ABSENT
            for i in valid_indices
        ]
        if len(values) < row_count or ABSENT in kept:
            found = sum(1 for value in values if value is not None)
            note = PartialData(column=stat, expected=row_count, actual=found)
            partial.append(note)
            logger.warning(
                f"Column '{stat}' is missing {note.missing} cell(s); filling with absent marker"
            )

        filtered[stat] = kept

    has_location = location_key is not None and location_key in filtered
    records = []
    for position, row_index in enumerate(valid_indices):
        stats = {stat: values[position] for stat, values in filtered.items()}
        location = None
        if has_location:
            location = Location.from_marker(stats[location_key])
        records.append(AlignedRecord(row_index=row_index, stats=stats, location=location))

    logger.debug(f"Aligned {len(records)} of {row_count} rows on '{presence_key}'")

    return AlignmentResult(
        records=tuple(records),
        columns=tuple(filtered),
        presence_key=presence_key,
        partial=tuple(partial),
    )
