from dataclasses import dataclass
from typing import Any, List, Optional, Sequence


@dataclass
class SourceRow:
    """One physical row from a source file, before header mapping."""

    line_number: int
    cells: List[str]
    error: Optional[str] = None


def is_blank(cells: Sequence[Any]) -> bool:
    return all(cell is None or str(cell).strip() == "" for cell in cells)
