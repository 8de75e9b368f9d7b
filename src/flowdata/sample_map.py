"""Read-only sample metadata table, one row per sample."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List

import numpy as np
import pandas as pd

from flowdata.exceptions import MissingFileError, UnknownColumnError, ValidationError


class SampleMap:
    """Experimental metadata addressed by column name; row ``i`` describes sample ``i + 1``."""

    def __init__(self, table: pd.DataFrame) -> None:
        if not isinstance(table, pd.DataFrame):
            raise ValidationError(f"Sample map must be a DataFrame, got {type(table).__name__}")
        self._table = table.reset_index(drop=True)

    @classmethod
    def from_file(cls, path: str | Path) -> SampleMap:
        path = Path(path)
        if not path.exists():
            raise MissingFileError(str(path))
        sep = "," if path.suffix.lower() == ".csv" else "\t"
        return cls(pd.read_csv(path, sep=sep))

    @classmethod
    def coerce(cls, source: SampleMap | pd.DataFrame | str | Path) -> SampleMap:
        if isinstance(source, SampleMap):
            return source
        if isinstance(source, pd.DataFrame):
            return cls(source)
        if isinstance(source, (str, Path)):
            return cls.from_file(source)
        raise ValidationError(f"Unsupported sample map: {type(source).__name__}")

    @property
    def table(self) -> pd.DataFrame:
        return self._table.copy()

    @property
    def columns(self) -> List[str]:
        return list(self._table.columns)

    def __len__(self) -> int:
        return len(self._table)

    def require(self, names: Iterable[str]) -> None:
        missing = [name for name in names if name not in self._table.columns]
        if missing:
            raise UnknownColumnError(missing)

    def unique_values(self, parameters: str | Iterable[str]) -> Dict[str, np.ndarray]:
        """Sorted unique values of each requested column."""
        if isinstance(parameters, str):
            parameters = [parameters]
        parameters = list(parameters)
        self.require(parameters)
        return {name: np.sort(self._table[name].dropna().unique()) for name in parameters}

    def row(self, sample_id: int) -> Dict[str, Any]:
        return self._table.iloc[sample_id - 1].to_dict()
