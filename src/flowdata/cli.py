"""Typer-powered CLI for flowdata.

Commands:
- `validate`: pre-flight checks of a samplesheet, config and sample map.
- `sample-ids`: resolve `--where column=v1,v2` constraints against a sample map.
- `run`: import the samplesheet, optionally gate, bin, and write
  `bin_counts.csv` plus `bin_config.json` to the output directory.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer

from flowdata import __version__
from flowdata.config import AppConfig, load_and_validate_config
from flowdata.dataset import FlowData
from flowdata.exceptions import FlowDataError, ValidationError
from flowdata.io import import_sample, load_samplesheet
from flowdata.log_config import setup_logging
from flowdata.query import lookup_sample_ids
from flowdata.sample_map import SampleMap
from flowdata.utils import _write_json, ensure_dir, parse_list, save_dataframe
from flowdata.validation import validate_inputs

app = typer.Typer(add_completion=False, help="Multi-sample flow cytometry gating and binning")
logger = logging.getLogger("flowdata")


@app.callback()
def _version(ctx: typer.Context, version: bool = typer.Option(False, "--version", help="Show version and exit")) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit()


def _parse_assignment(text: str) -> tuple[str, list[str]]:
    name, sep, values = text.partition("=")
    if not sep or not name.strip():
        raise typer.BadParameter(f"Expected NAME=v1,v2,... got {text!r}")
    return name.strip(), parse_list(values)


def _typed_values(column: pd.Series, values: list[str]) -> list:
    """Cast command-line strings to the column's dtype when it is numeric."""
    if pd.api.types.is_numeric_dtype(column):
        try:
            return pd.to_numeric(pd.Series(values)).tolist()
        except ValueError as e:
            raise typer.BadParameter(f"Values {values} are not numeric for column {column.name}") from e
    return values


@app.command()
def validate(
    samplesheet: Path = typer.Option(..., "--samplesheet", exists=True, help="Path to the samplesheet CSV file."),
    config: Optional[Path] = typer.Option(None, "--config", exists=True, help="Path to the YAML configuration file."),
    sample_map: Optional[Path] = typer.Option(None, "--sample-map", exists=True, help="Sample metadata table."),
    channels: str = typer.Option("", "--channels", help="Comma-separated channels that must be present."),
):
    """Validate input files and configuration without running anything."""
    setup_logging()
    try:
        validate_inputs(samplesheet, config, sample_map, parse_list(channels))
    except ValidationError as e:
        logger.error(f"Validation failed: {e}")
        raise typer.Exit(1)


@app.command("sample-ids")
def sample_ids(
    sample_map: Path = typer.Option(..., "--sample-map", exists=True, help="Sample metadata table."),
    where: List[str] = typer.Option(..., "--where", help="Constraint COLUMN=v1,v2 (repeatable, order kept)."),
):
    """Print the sample ids matching the given metadata constraints as JSON."""
    try:
        table = SampleMap.from_file(sample_map).table
        treatments = {}
        for text in where:
            name, values = _parse_assignment(text)
            treatments[name] = _typed_values(table[name], values) if name in table.columns else values
        ids = lookup_sample_ids(table, treatments)
    except FlowDataError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(ids.tolist()))


@app.command()
def run(
    samplesheet: Path = typer.Option(..., "--samplesheet", exists=True, help="Samplesheet CSV (sample_id, file_path)."),
    sample_map: Path = typer.Option(..., "--sample-map", exists=True, help="Sample metadata table."),
    channels: str = typer.Option(..., "--channels", help="Comma-separated fluorescence channels."),
    bins: List[str] = typer.Option(..., "--bins", help="Bin edges CHANNEL=e0,e1,... (repeatable)."),
    out: Path = typer.Option(..., "--out", help="Output directory."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, help="YAML configuration file."),
    data_type: str = typer.Option("raw", "--data-type", help="Data type to bin."),
    gate: Optional[str] = typer.Option(None, "--gate", help="Gate to bin within (default: all cells)."),
    gating: bool = typer.Option(False, "--gating/--no-gating", help="Run standard scatter gating first."),
):
    """Import samples, optionally gate them, bin and write bin counts."""
    cfg = load_and_validate_config(config) if config else AppConfig()
    ensure_dir(out)
    setup_logging(cfg.logging.directory or out, cfg.logging.level)
    try:
        channel_list = parse_list(channels)
        bin_inputs = {}
        for text in bins:
            name, edges = _parse_assignment(text)
            try:
                bin_inputs[name] = [float(e) for e in edges]
            except ValueError as e:
                raise typer.BadParameter(f"Bin edges for {name} must be numbers") from e

        sheet = load_samplesheet(samplesheet)
        if sheet["missing_file"].any():
            missing = sheet.loc[sheet["missing_file"], "file_path"].tolist()
            raise ValidationError(f"Missing event files: {', '.join(missing)}")
        samples = [
            import_sample(
                path,
                channel_list,
                cfg.scatter.channels,
                cfg.importing.rename,
                cfg.importing.normalize_names,
            )
            for path in sheet["file_path"]
        ]
        dataset = FlowData(samples, channel_list, sample_map, config=cfg)
        if gating:
            dataset.gate()
        result = dataset.bin(bin_inputs, data_type, gate)
    except FlowDataError as e:
        logger.error(f"Run failed: {e}")
        raise typer.Exit(1)

    save_dataframe(result.to_frame(), out / "bin_counts.csv")
    _write_json(out / "bin_config.json", result.configuration.model_dump())
    typer.echo(f"Wrote {len(result)} sample bin grids to {out}")


if __name__ == "__main__":
    app()
