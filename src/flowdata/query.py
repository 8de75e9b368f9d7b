"""Read-only queries: channel slicing and combinatorial sample lookup."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Sequence

import numpy as np
import pandas as pd

from flowdata.exceptions import SampleLookupError, UnknownColumnError, ValidationError
from flowdata.store import SampleData

logger = logging.getLogger(__name__)


def slice_values(
    sample: SampleData,
    channels: Sequence[str],
    data_type: str,
    gate: str | None = None,
) -> np.ndarray:
    """Cells x channels matrix of ``data_type`` values, restricted to ``gate`` when given."""
    mask = sample.mask(gate) if gate is not None else None
    return sample.matrix(channels, data_type, mask)


def _accepted_values(column: str, values: Any) -> List[Any]:
    if isinstance(values, (str, bytes)) or np.isscalar(values):
        values = [values]
    values = list(values)
    if not values:
        raise ValidationError(f"No accepted values given for {column}")
    return values


def lookup_sample_ids(table: pd.DataFrame, treatments: Mapping[str, Any]) -> np.ndarray:
    """Resolve metadata constraints to 1-based sample ids.

    One constraint returns the ascending ids whose column value is accepted.
    Several constraints return an array with one axis per constraint, in the
    order given, each axis following that constraint's value order; every
    position holds the id of the single sample matching that combination.
    """
    if not isinstance(treatments, Mapping) or not treatments:
        raise ValidationError("At least one treatment constraint is required")
    missing = [column for column in treatments if column not in table.columns]
    if missing:
        raise UnknownColumnError(missing)

    ids = np.arange(1, len(table) + 1)
    columns = list(treatments)
    accepted = [_accepted_values(column, treatments[column]) for column in columns]

    # samples x values membership, one matrix per constraint
    membership = [
        np.column_stack([table[column].isin([value]).to_numpy() for value in values])
        for column, values in zip(columns, accepted)
    ]

    if len(columns) == 1:
        return ids[membership[0].any(axis=1)]

    shape = tuple(len(values) for values in accepted)
    result = np.empty(shape, dtype=int)
    for position in np.ndindex(shape):
        hits = np.logical_and.reduce([m[:, k] for m, k in zip(membership, position)])
        matched = ids[hits]
        if len(matched) != 1:
            combination = ", ".join(
                f"{column}={values[k]!r}" for column, values, k in zip(columns, accepted, position)
            )
            raise SampleLookupError(f"{len(matched)} samples match {combination}; expected exactly one")
        result[position] = matched[0]
    logger.debug("Resolved %s to an array of shape %s", columns, shape)
    return result
