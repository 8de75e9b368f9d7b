"""Per-cell data store: channel values per data type and gate masks per sample."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from flowdata.exceptions import (
    CountMismatchError,
    ShapeMismatchError,
    UnknownChannelError,
    UnknownDataTypeError,
    UnknownGateError,
    ValidationError,
)
from flowdata.model import ImportedSample

COLUMN_LEVELS = ["channel", "data_type"]


def _as_vector(values, n_cells: int, what: str, dtype=float) -> np.ndarray:
    array = np.asarray(values, dtype=dtype)
    if array.ndim != 1 or array.shape[0] != n_cells:
        raise ShapeMismatchError(f"{what}: expected {n_cells} values, got shape {array.shape}")
    return array


@dataclass
class SampleData:
    """All per-cell arrays of one sample or control.

    ``values`` has one column per (channel, data type) pair, ``gates`` one
    boolean column per gate and ``scatter`` one raw column per scatter channel.
    Every frame has exactly ``n_cells`` rows.
    """

    n_cells: int
    values: pd.DataFrame
    gates: pd.DataFrame = field(default_factory=pd.DataFrame)
    scatter: pd.DataFrame = field(default_factory=pd.DataFrame)
    name: Optional[str] = None

    @classmethod
    def from_imported(
        cls,
        record: ImportedSample,
        channels: Sequence[str],
        scatter_channels: Sequence[str] = (),
    ) -> SampleData:
        n_cells = int(record.n_obs)
        if n_cells < 0:
            raise ValidationError(f"Cell count must be non-negative, got {record.n_obs}")
        missing = [ch for ch in channels if ch not in record.channels]
        if missing:
            raise UnknownChannelError(missing)

        columns = {}
        for ch in channels:
            data_types = record.channels[ch]
            if not data_types:
                raise ValidationError(f"Channel {ch} has no data types")
            for data_type, values in data_types.items():
                columns[(ch, data_type)] = _as_vector(values, n_cells, f"{ch}/{data_type}")
        values_frame = pd.DataFrame(columns, index=pd.RangeIndex(n_cells))
        values_frame.columns = pd.MultiIndex.from_tuples(list(columns), names=COLUMN_LEVELS)

        gates = pd.DataFrame(
            {name: _as_vector(mask, n_cells, f"gate {name}", dtype=bool) for name, mask in record.gates.items()},
            index=pd.RangeIndex(n_cells),
        )
        scatter = pd.DataFrame(
            {
                ch: _as_vector(record.scatter[ch], n_cells, f"scatter {ch}")
                for ch in scatter_channels
                if ch in record.scatter
            },
            index=pd.RangeIndex(n_cells),
        )
        return cls(n_cells=n_cells, values=values_frame, gates=gates, scatter=scatter, name=record.name)

    @property
    def channels(self) -> List[str]:
        return list(dict.fromkeys(self.values.columns.get_level_values("channel")))

    @property
    def data_types(self) -> List[str]:
        return list(dict.fromkeys(self.values.columns.get_level_values("data_type")))

    @property
    def gate_names(self) -> List[str]:
        return list(self.gates.columns)

    def has_data_type(self, data_type: str) -> bool:
        return data_type in self.data_types

    def get(self, channel: str, data_type: str) -> np.ndarray:
        try:
            return self.values[(channel, data_type)].to_numpy()
        except KeyError:
            if channel not in self.channels:
                raise UnknownChannelError(channel) from None
            raise UnknownDataTypeError(data_type) from None

    def mask(self, gate: str) -> np.ndarray:
        if gate not in self.gates.columns:
            raise UnknownGateError(gate)
        return self.gates[gate].to_numpy(dtype=bool)

    def matrix(self, channels: Sequence[str], data_type: str, mask: Optional[np.ndarray] = None) -> np.ndarray:
        """Cells x channels values, optionally restricted to ``mask``."""
        data = np.column_stack([self.get(ch, data_type) for ch in channels]) if channels else np.empty((self.n_cells, 0))
        if mask is not None:
            data = data[mask]
        return data

    def channel_arrays(self, channels: Sequence[str], data_type: str, mask: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
        arrays = {ch: self.get(ch, data_type) for ch in channels}
        if mask is not None:
            arrays = {ch: values[mask] for ch, values in arrays.items()}
        return arrays

    def lengths(self) -> List[int]:
        return [len(self.values), len(self.gates), len(self.scatter)]

    def _set_values(self, data_type: str, arrays: Mapping[str, np.ndarray]) -> None:
        values = self.values.copy()
        for ch, array in arrays.items():
            values[(ch, data_type)] = array
        self.values = values

    def _set_gate(self, name: str, mask: np.ndarray) -> None:
        gates = self.gates.copy()
        gates[name] = mask
        self.gates = gates


class SampleCollection:
    """An ordered collection of :class:`SampleData` updated one whole data type or gate at a time."""

    def __init__(self, entries: Iterable[SampleData] = (), channels: Sequence[str] = ()) -> None:
        self._entries: List[SampleData] = list(entries)
        self.channels = list(channels)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SampleData]:
        return iter(list(self._entries))

    def __getitem__(self, position: int) -> SampleData:
        return self._entries[position]

    def __bool__(self) -> bool:
        return bool(self._entries)

    @property
    def n_cells(self) -> List[int]:
        return [entry.n_cells for entry in self._entries]

    def channel_arrays(self, data_type: str, gate: Optional[str] = None) -> List[Dict[str, np.ndarray]]:
        return [
            entry.channel_arrays(self.channels, data_type, entry.mask(gate) if gate else None)
            for entry in self._entries
        ]

    def check_data_type(self, arrays: Sequence[Mapping[str, np.ndarray]], label: str) -> List[Dict[str, np.ndarray]]:
        """Validate one array per channel per entry; returns the coerced arrays."""
        if len(arrays) != len(self._entries):
            raise CountMismatchError(
                f"Data type {label!r}: expected arrays for {len(self._entries)} entries, got {len(arrays)}"
            )
        checked = []
        for position, (entry, per_channel) in enumerate(zip(self._entries, arrays)):
            missing = [ch for ch in self.channels if ch not in per_channel]
            if missing:
                raise UnknownChannelError(missing)
            checked.append({
                ch: _as_vector(per_channel[ch], entry.n_cells, f"entry {position} {ch}/{label}")
                for ch in self.channels
            })
        return checked

    def check_gate(self, masks: Sequence[np.ndarray], name: str) -> List[np.ndarray]:
        if len(masks) != len(self._entries):
            raise CountMismatchError(
                f"Gate {name!r}: expected masks for {len(self._entries)} entries, got {len(masks)}"
            )
        return [
            _as_vector(mask, entry.n_cells, f"entry {position} gate {name}", dtype=bool)
            for position, (entry, mask) in enumerate(zip(self._entries, masks))
        ]

    def put_data_type(self, label: str, arrays: Sequence[Mapping[str, np.ndarray]]) -> None:
        """Add or replace ``label`` on every entry; nothing changes if any array is invalid."""
        checked = self.check_data_type(arrays, label)
        for entry, per_channel in zip(self._entries, checked):
            entry._set_values(label, per_channel)

    def put_gate(self, name: str, masks: Sequence[np.ndarray]) -> None:
        """Add or replace gate ``name`` on every entry; nothing changes if any mask is invalid."""
        checked = self.check_gate(masks, name)
        for entry, mask in zip(self._entries, checked):
            entry._set_gate(name, mask)

    def missing_gate(self, name: str) -> List[int]:
        return [position for position, entry in enumerate(self._entries) if name not in entry.gates.columns]

    def missing_data_type(self, label: str) -> List[int]:
        return [position for position, entry in enumerate(self._entries) if not entry.has_data_type(label)]


class DataStore:
    """Sample and control collections sharing one channel list."""

    def __init__(self, samples: SampleCollection, controls: Optional[SampleCollection] = None) -> None:
        self.samples = samples
        self.controls = controls if controls is not None else SampleCollection(channels=samples.channels)

    def collections(self) -> List[SampleCollection]:
        return [self.samples, self.controls]

    @property
    def has_controls(self) -> bool:
        return bool(self.controls)
