"""The FlowData dataset: samples, controls, gates, data types and bins."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from pydantic import ValidationError as PydanticValidationError

from flowdata.binning import BinCollection, assign_bins, validate_bin_inputs
from flowdata.config import AppConfig
from flowdata.events import EventBus
from flowdata.exceptions import (
    CompensationError,
    CountMismatchError,
    IndexOutOfRangeError,
    InvalidMethodError,
    MissingFileError,
    PreconditionNotMetError,
    UnknownChannelError,
    ValidationError,
)
from flowdata.gating import apply_polygons, cross_masks, pool_scatter
from flowdata.model import BeadSpec, BinConfiguration, ChannelFit, GatePolygon, ImportedSample
from flowdata.plugins.compensation import AUTOFLUORESCENCE, COMPENSATED, CompensationRequest
from flowdata.plugins.registry import PluginRegistry, get_plugin_registry
from flowdata.query import lookup_sample_ids, slice_values
from flowdata.registry import DataTypeRegistry, GateRegistry
from flowdata.sample_map import SampleMap
from flowdata.store import DataStore, SampleCollection, SampleData

logger = logging.getLogger(__name__)

BINNING_CONFIGURED = "binning_configured"
BINS_UPDATED = "bins_updated"
EVENTS = (BINNING_CONFIGURED, BINS_UPDATED)


def _channel_list(channels: str | Sequence[str]) -> List[str]:
    if isinstance(channels, str):
        channels = [channels]
    channels = list(channels)
    if not channels:
        raise ValidationError("At least one channel is required")
    if any(not isinstance(ch, str) or not ch for ch in channels):
        raise ValidationError("Channel names must be non-empty strings")
    if len(set(channels)) != len(channels):
        raise ValidationError(f"Duplicate channel names in {channels}")
    return channels


def _record_data_types(record: ImportedSample, channels: Sequence[str], what: str) -> List[str]:
    """Data types carried by ``record``; every channel must carry the same ones."""
    missing = [ch for ch in channels if ch not in record.channels]
    if missing:
        raise UnknownChannelError(missing)
    data_types = list(record.channels[channels[0]])
    if not data_types:
        raise ValidationError(f"{what} has no data types")
    for ch in channels[1:]:
        if set(record.channels[ch]) != set(data_types):
            raise ValidationError(f"{what}: channel {ch} carries data types {sorted(record.channels[ch])}, expected {sorted(data_types)}")
    return data_types


def _as_bead_spec(beads: BeadSpec | Mapping[str, Any]) -> BeadSpec:
    if isinstance(beads, BeadSpec):
        return beads
    try:
        return BeadSpec.model_validate(beads)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid bead specification: {e}") from e


class FlowData:
    """A multi-sample flow cytometry dataset.

    Holds per-cell values for every sample (and, once registered, every
    control) by channel and data type, plus boolean gate masks. Operations
    validate all of their inputs before touching any state, so a failing call
    leaves the dataset as it was.

    Sample ids are 1-based and follow the row order of the sample map.

    Args:
        samples: Imported samples, in sample-map row order.
        channels: Fluorescence channel name(s) shared by samples and controls.
        sample_map: Sample metadata as a DataFrame, a :class:`SampleMap` or a
            path to a tab-separated (or ``.csv``) file.
        config: Settings for scatter channels, gating, calibration,
            compensation and transforms. Defaults to ``AppConfig()``.
        plugins: Registry the collaborators are loaded from. Defaults to the
            global registry.
    """

    def __init__(
        self,
        samples: Sequence[ImportedSample],
        channels: str | Sequence[str],
        sample_map: SampleMap | pd.DataFrame | str,
        config: AppConfig | None = None,
        plugins: PluginRegistry | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self._plugins = plugins
        channels = _channel_list(channels)
        samples = list(samples)
        if not samples:
            raise ValidationError("At least one sample is required")
        sample_map = SampleMap.coerce(sample_map)
        if len(sample_map) != len(samples):
            raise CountMismatchError(
                f"Sample map has {len(sample_map)} rows but {len(samples)} samples were given"
            )

        data_types = _record_data_types(samples[0], channels, "Sample 1")
        gate_names = list(samples[0].gates)
        for sample_id, record in enumerate(samples[1:], start=2):
            if set(_record_data_types(record, channels, f"Sample {sample_id}")) != set(data_types):
                raise ValidationError(f"Sample {sample_id} does not carry data types {data_types}")
            if set(record.gates) != set(gate_names):
                raise ValidationError(f"Sample {sample_id} does not carry gates {gate_names}")

        entries = [
            SampleData.from_imported(record, channels, self.config.scatter.channels) for record in samples
        ]
        self._channels = channels
        self._sample_map = sample_map
        self._store = DataStore(SampleCollection(entries, channels))
        self._data_types = DataTypeRegistry(data_types)
        self._gates = GateRegistry(gate_names)

        all_gate = self.config.gating.all_gate
        self._store.samples.put_gate(all_gate, [np.ones(n, dtype=bool) for n in self._store.samples.n_cells])
        self._gates.add(all_gate, quiet=True)

        self._fit_params: Dict[str, Any] = {}
        self._calibration_fits: Dict[str, Dict[str, ChannelFit]] = {}
        self._bins: Optional[BinCollection] = None
        self._bin_inputs: Optional[Dict[str, List[float]]] = None
        self._bin_data_type: Optional[str] = None
        self._bin_gate: Optional[str] = None

        self._events = EventBus()
        self._events.subscribe(BINNING_CONFIGURED, self._rebin_on_change)
        logger.info("Finished constructing FlowData object")

    def __repr__(self) -> str:
        return (
            f"FlowData(samples={self.num_samples}, channels={self._channels}, "
            f"data_types={self.data_types}, gates={self.gate_names})"
        )

    # -- read-only views -------------------------------------------------

    @property
    def num_samples(self) -> int:
        return len(self._store.samples)

    @property
    def num_cells(self) -> List[int]:
        return self._store.samples.n_cells

    @property
    def channels(self) -> List[str]:
        return list(self._channels)

    @property
    def data_types(self) -> List[str]:
        return list(self._data_types.names)

    @property
    def gate_names(self) -> List[str]:
        return list(self._gates.names)

    @property
    def gate_polygons(self) -> Dict[str, GatePolygon]:
        return self._gates.polygons

    @property
    def sample_map(self) -> SampleMap:
        return self._sample_map

    @property
    def samples(self) -> SampleCollection:
        return self._store.samples

    @property
    def controls(self) -> SampleCollection:
        return self._store.controls

    @property
    def fit_params(self) -> Dict[str, Any]:
        return dict(self._fit_params)

    @property
    def calibration_fits(self) -> Dict[str, Dict[str, ChannelFit]]:
        return dict(self._calibration_fits)

    @property
    def bins(self) -> Optional[BinCollection]:
        return self._bins

    @property
    def bin_configuration(self) -> Optional[BinConfiguration]:
        return self._bins.configuration if self._bins is not None else None

    # -- registries ------------------------------------------------------

    def add_gates(self, names: str | Sequence[str]) -> List[str]:
        """Register gate names; returns the ones that were not registered yet."""
        return self._gates.add(names)

    def add_data_types(self, labels: str | Sequence[str]) -> List[str]:
        """Register data-type labels; returns the ones that were not registered yet."""
        return self._data_types.add(labels)

    # -- gating ----------------------------------------------------------

    def gate(self) -> List[str]:
        """Standard scatter gating.

        Pools a strided subsample of scatter events from every sample, lets
        the configured gating strategy derive its polygons from the pool and
        applies them to each sample (and to registered controls that carry
        scatter data). Returns the newly registered gate names.
        """
        gating = self.config.gating
        strategy = self._plugin("gating", gating.strategy, {
            "gate_names": gating.gate_names,
            "stages": gating.stages,
            "density_percentile": gating.density_percentile,
            "max_kde_events": gating.max_kde_events,
        })
        scatter_channels = [
            ch for ch in self.config.scatter.channels
            if all(ch in entry.scatter.columns for entry in self._store.samples)
        ]
        pooled = pool_scatter(self._store.samples, scatter_channels, gating.subsample_stride)
        polygons = strategy.derive_gates(pooled)
        names = [p.name for p in polygons]

        updates = []
        for collection in self._store.collections():
            if not collection or (collection is self._store.controls and not self._has_scatter(collection, polygons)):
                continue
            per_entry = [strategy.apply_gates(entry.scatter, polygons) for entry in collection]
            for name in names:
                masks = collection.check_gate([entry_masks[name] for entry_masks in per_entry], name)
                updates.append((collection, name, masks))

        for collection, name, masks in updates:
            collection.put_gate(name, masks)
        self._gates.add_polygons(polygons)
        logger.info("Finished standard gating")
        return names

    @staticmethod
    def _has_scatter(collection: SampleCollection, polygons: Sequence[GatePolygon]) -> bool:
        needed = {ch for p in polygons for ch in (p.x_channel, p.y_channel)}
        return all(needed.issubset(entry.scatter.columns) for entry in collection)

    def cross_gates(self, mode: str, gate_names: Sequence[str]) -> str:
        """Combine registered gates with ``and``/``or`` into a gate named ``"_".join(gate_names)``.

        The new mask is written to every sample and every control.
        """
        rule = self._gates.plan_cross(mode, gate_names)
        updates = []
        for collection in self._store.collections():
            if not collection:
                continue
            masks = [cross_masks(mode, [entry.mask(g) for g in rule.sources]) for entry in collection]
            updates.append((collection, collection.check_gate(masks, rule.name)))
        for collection, masks in updates:
            collection.put_gate(rule.name, masks)
        self._gates.add_cross(rule)
        logger.info("Crossed gates %s (%s) into %s", ", ".join(rule.sources), mode, rule.name)
        return rule.name

    # -- controls, calibration, compensation ------------------------------

    def add_controls(
        self,
        reference_control: ImportedSample,
        single_color_controls: Sequence[ImportedSample],
    ) -> None:
        """Register the single-color controls (in channel order) followed by the reference control.

        Controls get the always-true gate. Any stored polygon gate they do not
        already carry is evaluated on their scatter data, and crossed gates are
        rebuilt from their sources.
        """
        single_color_controls = list(single_color_controls)
        if len(single_color_controls) != len(self._channels):
            raise CountMismatchError(
                f"Expected {len(self._channels)} single-color controls (one per channel), "
                f"got {len(single_color_controls)}"
            )
        records = single_color_controls + [reference_control]
        polygons = list(self._gates.polygons.values())
        prepared = []
        for position, record in enumerate(records):
            what = "Reference control" if position == len(single_color_controls) else f"Control {position + 1}"
            _record_data_types(record, self._channels, what)
            self._gates.require(list(record.gates))
            gates = dict(record.gates)
            gates[self.config.gating.all_gate] = np.ones(int(record.n_obs), dtype=bool)
            scatter = pd.DataFrame(record.scatter)
            needed = {ch for p in polygons for ch in (p.x_channel, p.y_channel)}
            if polygons and needed.issubset(scatter.columns):
                for name, mask in apply_polygons(scatter, polygons).items():
                    gates.setdefault(name, mask)
            # rules are stored in creation order, so their sources come first
            for rule in self._gates.rules.values():
                if rule.name not in gates and all(source in gates for source in rule.sources):
                    gates[rule.name] = cross_masks(rule.mode, [gates[source] for source in rule.sources])
            prepared.append(dataclasses.replace(record, gates=gates))

        entries = [
            SampleData.from_imported(record, self._channels, self.config.scatter.channels) for record in prepared
        ]
        self._store.controls = SampleCollection(entries, self._channels)
        logger.info("Added %d single-color controls and a reference control", len(single_color_controls))

    def _require_controls(self, operation: str) -> SampleCollection:
        if not self._store.has_controls:
            raise PreconditionNotMetError(f"No controls registered; call add_controls() before {operation}()")
        return self._store.controls

    def _require_gate_everywhere(self, gate: str, operation: str) -> None:
        if gate not in self._gates:
            raise PreconditionNotMetError(f"Gate {gate} is not registered; {operation}() needs it")
        for label, collection in (("samples", self._store.samples), ("controls", self._store.controls)):
            missing = collection.missing_gate(gate)
            if missing:
                raise PreconditionNotMetError(
                    f"Gate {gate} is missing on {label} at position(s) {[p + 1 for p in missing]}; "
                    f"{operation}() needs it"
                )

    def convert_to_mef(
        self,
        control_beads: BeadSpec | Mapping[str, Any],
        sample_beads: BeadSpec | Mapping[str, Any],
        show_plots: bool = False,
    ) -> List[str]:
        """Calibrate controls and samples to bead-referenced MEF units.

        Adds the calibrated data type, a gate marking cells that are
        non-negative in every calibrated channel, and that gate crossed (AND)
        with the terminal scatter gate. Identical bead specifications share
        one fit. Returns the names of the gates it created.
        """
        controls = self._require_controls("convert_to_mef")
        control_beads = _as_bead_spec(control_beads)
        sample_beads = _as_bead_spec(sample_beads)
        for beads in (control_beads, sample_beads):
            if not beads.filename.exists():
                raise MissingFileError(str(beads.filename))

        calibration = self.config.calibration
        self._data_types.require(calibration.source_data_type)
        terminal = self.config.gating.terminal_gate
        self._require_gate_everywhere(terminal, "convert_to_mef")

        plugin = self._plugin("calibration", calibration.method, {
            "bead_mef_values": calibration.bead_mef_values,
            "rename": self.config.importing.rename,
            "normalize_names": self.config.importing.normalize_names,
        })
        control_fits = plugin.fit(control_beads, self._channels, show_plots)
        if sample_beads == control_beads:
            sample_fits = control_fits
        else:
            sample_fits = plugin.fit(sample_beads, self._channels, show_plots)

        source = calibration.source_data_type
        updates = []
        for collection, fits in ((controls, control_fits), (self._store.samples, sample_fits)):
            arrays = collection.check_data_type(
                plugin.apply(collection.channel_arrays(source), fits), calibration.data_type
            )
            nonneg = collection.check_gate(
                [np.all([values >= 0 for values in entry.values()], axis=0) for entry in arrays],
                calibration.nonneg_gate,
            )
            updates.append((collection, arrays, nonneg))

        for collection, arrays, nonneg in updates:
            collection.put_data_type(calibration.data_type, arrays)
        self.add_data_types(calibration.data_type)
        for collection, _, nonneg in updates:
            collection.put_gate(calibration.nonneg_gate, nonneg)
        self.add_gates(calibration.nonneg_gate)
        crossed = self.cross_gates("and", [terminal, calibration.nonneg_gate])

        self._calibration_fits = {"controls": control_fits, "samples": sample_fits}
        logger.info("Finished converting to MEF")
        return [calibration.nonneg_gate, crossed]

    def _compensation_method(self, method: str) -> tuple:
        comp = self.config.compensation
        if method in (comp.single_color_data_type, comp.piecewise_method):
            return comp.piecewise_method, {COMPENSATED: comp.single_color_data_type}
        if method in (comp.matrix_data_type, comp.matrix_method):
            return comp.matrix_method, {
                AUTOFLUORESCENCE: comp.autofluorescence_data_type,
                COMPENSATED: comp.matrix_data_type,
            }
        raise InvalidMethodError(
            f"Compensation method must be one of {comp.single_color_data_type!r} ({comp.piecewise_method}) "
            f"or {comp.matrix_data_type!r} ({comp.matrix_method}), got {method!r}"
        )

    def compensate(self, method: str, plots_on: bool = False) -> List[str]:
        """Spectral compensation from the registered controls.

        ``method`` is ``"scComp"`` (alias ``"piecewise"``) or ``"mComp"``
        (alias ``"matrix"``). Fits use calibrated control cells inside the
        crossed calibration gate. Returns the newly registered data types.
        """
        plugin_name, labels = self._compensation_method(method)
        controls = self._require_controls("compensate")
        calibration = self.config.calibration
        data_type = calibration.data_type
        if data_type not in self._data_types or controls.missing_data_type(data_type):
            raise PreconditionNotMetError(f"No {data_type} data; call convert_to_mef() before compensate()")
        gate = self.config.compensation.gate or f"{self.config.gating.terminal_gate}_{calibration.nonneg_gate}"
        self._require_gate_everywhere(gate, "compensate")

        n_single = len(self._channels)
        reference = controls[n_single]
        request = CompensationRequest(
            channels=list(self._channels),
            reference=reference.channel_arrays(self._channels, data_type, reference.mask(gate)),
            single_color=[
                controls[i].channel_arrays(self._channels, data_type, controls[i].mask(gate))
                for i in range(n_single)
            ],
            samples=self._store.samples.channel_arrays(data_type),
            controls=controls.channel_arrays(data_type),
            show_plots=plots_on,
        )
        plugin = self._plugin("compensation", plugin_name, {"n_bins": self.config.compensation.n_bins})
        result = plugin.compensate(request)

        updates = []
        for role, label in labels.items():
            if role not in result.samples or role not in result.controls:
                raise CompensationError(f"Compensation '{plugin_name}' returned no {role} data")
            updates.append((self._store.samples, label, self._store.samples.check_data_type(result.samples[role], label)))
            updates.append((controls, label, controls.check_data_type(result.controls[role], label)))

        for collection, label, arrays in updates:
            collection.put_data_type(label, arrays)
        if plugin_name == self.config.compensation.matrix_method:
            self._fit_params = dict(result.fit_params)
        added = self.add_data_types(list(labels.values()))
        logger.info("Finished %s compensation", plugin_name)
        return added

    # -- binning ---------------------------------------------------------

    def _bin_configuration(
        self,
        bin_inputs: Mapping[str, Sequence[float]],
        data_type: str,
        gate: Optional[str],
    ) -> BinConfiguration:
        edges = validate_bin_inputs(bin_inputs)
        unknown = [ch for ch in edges if ch not in self._channels]
        if unknown:
            raise UnknownChannelError(unknown)
        self._data_types.require(data_type)
        gate = gate if gate is not None else self.config.gating.all_gate
        self._gates.require(gate)
        return BinConfiguration(
            channels=list(edges),
            edges=[e.tolist() for e in edges.values()],
            data_type=data_type,
            gate=gate,
        )

    def _transform(self) -> Callable[[np.ndarray], np.ndarray]:
        transforms = self.config.transforms
        return self._plugin("transforms", transforms.method, transforms.parameters.model_dump())

    def bin(
        self,
        bin_inputs: Mapping[str, Sequence[float]],
        data_type: str,
        gate: Optional[str] = None,
    ) -> BinCollection:
        """Partition each sample's gated cells into an N-dimensional grid.

        ``bin_inputs`` maps channel -> bin edges, applied to the values after
        the configured display transform. Bin ``i`` holds the cells with
        ``edges[i] <= value < edges[i + 1]``; cells outside the outer edges
        are left out. Each bin holds row positions into the sample's arrays.
        The previous bins are replaced.
        """
        configuration = self._bin_configuration(bin_inputs, data_type, gate)
        transform = self._transform()
        edges = [np.asarray(e, dtype=float) for e in configuration.edges]
        grids = []
        for entry in self._store.samples:
            mask = entry.mask(configuration.gate)
            values = transform(slice_values(entry, configuration.channels, configuration.data_type, configuration.gate))
            grids.append(assign_bins(values, edges, cell_ids=np.flatnonzero(mask)))

        self._bins = BinCollection(configuration, grids)
        self._bin_inputs = configuration.bin_inputs
        self._bin_data_type = configuration.data_type
        self._bin_gate = configuration.gate
        logger.info("Finished binning")
        self._events.emit(BINS_UPDATED, bins=self._bins)
        return self._bins

    @property
    def bin_inputs(self) -> Optional[Dict[str, List[float]]]:
        return dict(self._bin_inputs) if self._bin_inputs is not None else None

    @bin_inputs.setter
    def bin_inputs(self, value: Mapping[str, Sequence[float]]) -> None:
        edges = validate_bin_inputs(value)
        unknown = [ch for ch in edges if ch not in self._channels]
        if unknown:
            raise UnknownChannelError(unknown)
        value = {ch: e.tolist() for ch, e in edges.items()}
        if value == self._bin_inputs:
            return
        self._bin_inputs = value
        self._events.emit(BINNING_CONFIGURED, field="bin_inputs")

    @property
    def bin_data_type(self) -> Optional[str]:
        return self._bin_data_type

    @bin_data_type.setter
    def bin_data_type(self, value: str) -> None:
        self._data_types.require(value)
        if value == self._bin_data_type:
            return
        self._bin_data_type = value
        self._events.emit(BINNING_CONFIGURED, field="bin_data_type")

    @property
    def bin_gate(self) -> Optional[str]:
        return self._bin_gate

    @bin_gate.setter
    def bin_gate(self, value: str) -> None:
        self._gates.require(value)
        if value == self._bin_gate:
            return
        self._bin_gate = value
        self._events.emit(BINNING_CONFIGURED, field="bin_gate")

    def _rebin_on_change(self, **_: Any) -> None:
        if self._bin_inputs is None or self._bin_data_type is None:
            logger.debug("Binning configuration incomplete; not binning yet")
            return
        self.bin(self._bin_inputs, self._bin_data_type, self._bin_gate)

    def subscribe(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Call ``callback`` after ``event``; returns a function that unsubscribes it.

        ``"binning_configured"`` fires after a binning property changes (the
        dataset's own re-binning observer runs first); ``"bins_updated"``
        fires with ``bins=`` after every binning run.
        """
        if event not in EVENTS:
            raise ValidationError(f"Unknown event {event!r}; expected one of {EVENTS}")
        return self._events.subscribe(event, callback)

    # -- queries ---------------------------------------------------------

    def _sample(self, sample_id: int) -> SampleData:
        if isinstance(sample_id, bool) or not isinstance(sample_id, (int, np.integer)):
            raise ValidationError(f"Sample id must be an integer, got {sample_id!r}")
        if not 1 <= sample_id <= self.num_samples:
            raise IndexOutOfRangeError(f"Sample id {sample_id} out of range 1..{self.num_samples}")
        return self._store.samples[int(sample_id) - 1]

    def slice(
        self,
        sample_id: int,
        channels: str | Sequence[str] | None = None,
        data_type: str = "raw",
        gate: Optional[str] = None,
    ) -> np.ndarray:
        """Cells x channels matrix for one sample.

        Columns follow ``channels`` (default: all channels); rows are the
        cells passing ``gate`` (default: every cell).
        """
        entry = self._sample(sample_id)
        if channels is None:
            channels = list(self._channels)
        else:
            channels = _channel_list(channels)
            unknown = [ch for ch in channels if ch not in self._channels]
            if unknown:
                raise UnknownChannelError(unknown)
        self._data_types.require(data_type)
        if gate is not None:
            self._gates.require(gate)
        return slice_values(entry, channels, data_type, gate)

    def get_sample_ids(self, treatments: Mapping[str, Any]) -> np.ndarray:
        """Sample ids matching metadata constraints (see :func:`flowdata.query.lookup_sample_ids`)."""
        return lookup_sample_ids(self._sample_map.table, treatments)

    def get_values(self, parameters: str | Sequence[str]) -> Dict[str, np.ndarray]:
        """Sorted unique values of the given sample-map columns."""
        return self._sample_map.unique_values(parameters)

    def _plugin(self, plugin_type: str, name: str, config: Dict[str, Any] | None = None):
        registry = self._plugins or get_plugin_registry()
        return registry.load_plugin(plugin_type, name, config)
