"""I/O helpers: samplesheets, event files (FCS, Parquet, CSV) and sample maps."""
import logging
from pathlib import Path
from typing import Dict, Iterable, Sequence

import flowkit as fk
import pandas as pd
import pyarrow.parquet as pq

from flowdata.exceptions import FileOperationError, MissingFileError, UnknownChannelError
from flowdata.model import ImportedSample
from flowdata.sample_map import SampleMap

logger = logging.getLogger(__name__)


def load_samplesheet(path: str | Path) -> pd.DataFrame:
    """Load a samplesheet, validating required columns and checking file existence."""
    try:
        sheet = pd.read_csv(path)
    except FileNotFoundError as e:
        raise MissingFileError(str(path)) from e

    required_cols = {"sample_id", "file_path"}
    if not required_cols.issubset(sheet.columns):
        raise FileOperationError(f"Samplesheet missing required columns: {required_cols - set(sheet.columns)}")

    base = Path(path).parent
    sheet["file_path"] = sheet["file_path"].apply(lambda p: str(p) if Path(p).is_absolute() else str(base / p))
    sheet["missing_file"] = sheet["file_path"].apply(lambda p: not Path(p).exists())
    return sheet


def read_fcs(path: str | Path) -> pd.DataFrame:
    """Read all raw events from an FCS file, one column per PnN channel name."""
    try:
        sample = fk.Sample(str(path))
        events = sample.as_dataframe(source='raw')
    except Exception as e:
        raise FileOperationError(f"Failed to read FCS file {path}") from e
    if isinstance(events.columns, pd.MultiIndex):
        events.columns = events.columns.get_level_values(0)
    return events


def read_events(path: str | Path, columns: Sequence[str] | None = None) -> pd.DataFrame:
    """Read an event table from an FCS, Parquet or CSV file."""
    path = Path(path)
    if not path.exists():
        raise MissingFileError(str(path))
    suffix = path.suffix.lower()
    if suffix in (".fcs", ".lmd"):
        events = read_fcs(path)
    elif suffix == ".parquet":
        events = pq.read_table(path, columns=list(columns) if columns else None).to_pandas()
    elif suffix in (".csv", ".tsv", ".txt"):
        events = pd.read_csv(path, sep="," if suffix == ".csv" else "\t")
    else:
        raise FileOperationError(f"Unsupported event file type: {path.suffix}")
    if columns:
        events = events[list(columns)]
    logger.debug("Read %d events from %s", len(events), path)
    return events


def standardize_channels(
    df: pd.DataFrame, channel_map: Dict[str, str] | None = None, normalize: bool = True
) -> pd.DataFrame:
    """Rename channels to their standard names.

    ``channel_map`` maps standard name -> name in the file. With ``normalize``
    the remaining names have '-' and spaces replaced by '_' (``FSC-A`` -> ``FSC_A``).
    """
    rename_map = {}
    for standard_name, file_name in (channel_map or {}).items():
        if file_name in df.columns:
            rename_map[file_name] = standard_name
    df = df.rename(columns=rename_map)
    if normalize:
        df = df.rename(columns=lambda c: str(c).strip().replace("-", "_").replace(" ", "_"))
    return df


def import_sample(
    path: str | Path,
    channels: Iterable[str],
    scatter_channels: Iterable[str] = (),
    channel_map: Dict[str, str] | None = None,
    normalize: bool = True,
    data_type: str = "raw",
) -> ImportedSample:
    """Import one event file as an :class:`ImportedSample` with a single data type."""
    events = standardize_channels(read_events(path), channel_map, normalize)
    channels = list(channels)
    missing = [ch for ch in channels if ch not in events.columns]
    if missing:
        raise UnknownChannelError(missing)
    return ImportedSample(
        channels={ch: {data_type: events[ch].to_numpy(dtype=float)} for ch in channels},
        n_obs=len(events),
        scatter={ch: events[ch].to_numpy(dtype=float) for ch in scatter_channels if ch in events.columns},
        name=Path(path).stem,
    )


def load_sample_map(path: str | Path) -> SampleMap:
    return SampleMap.from_file(path)
