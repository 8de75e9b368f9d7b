"""Pre-flight validation checks for a flowdata run."""
from pathlib import Path
import logging

from flowdata.config import load_and_validate_config, AppConfig
from flowdata.io import load_samplesheet, read_events, standardize_channels
from flowdata.sample_map import SampleMap
from flowdata.exceptions import ValidationError

logger = logging.getLogger(__name__)


def validate_inputs(
    samplesheet_path: Path,
    config_path: Path | None = None,
    sample_map_path: Path | None = None,
    channels: list[str] | None = None,
) -> AppConfig:
    """
    Perform a set of pre-flight checks on the inputs of a run.

    Raises:
        ValidationError: if any check fails.

    Returns:
        The validated ``AppConfig`` instance.
    """
    errors: list[str] = []

    # 1. Validate config.yaml
    try:
        if config_path is not None:
            logger.info(f"Validating configuration file: {config_path}")
            config = load_and_validate_config(config_path)
            logger.info("Configuration file is valid.")
        else:
            config = AppConfig()
    except Exception as e:
        errors.append(f"Configuration file validation failed: {e}")
        logger.error(errors[-1])
        raise ValidationError("; ".join(errors)) from e

    # 2. Validate samplesheet.csv
    try:
        logger.info(f"Validating samplesheet: {samplesheet_path}")
        samplesheet = load_samplesheet(samplesheet_path)
    except Exception as e:
        errors.append(f"Samplesheet validation failed: {e}")
        logger.error(errors[-1])
        raise ValidationError("; ".join(errors)) from e
    if samplesheet["missing_file"].any():
        missing_files = samplesheet[samplesheet["missing_file"]]["file_path"].tolist()
        msg = "The following event files listed in the samplesheet are missing:"
        errors.append(msg)
        logger.error(msg)
        for f in missing_files:
            logger.error(f"  - {f}")
    else:
        logger.info("All event files listed in samplesheet exist.")

    # 3. Sample map rows must line up with samplesheet rows
    if sample_map_path is not None:
        try:
            sample_map = SampleMap.from_file(sample_map_path)
        except Exception as e:
            errors.append(f"Sample map could not be read: {e}")
            logger.error(errors[-1])
        else:
            if len(sample_map) != len(samplesheet):
                msg = f"Sample map has {len(sample_map)} rows but the samplesheet lists {len(samplesheet)} samples"
                errors.append(msg)
                logger.error(msg)

    # 4. Validate channel names
    if channels and not samplesheet.empty and not samplesheet["missing_file"].iloc[0]:
        first_path = samplesheet["file_path"].iloc[0]
        try:
            logger.info(f"Validating channel names against first event file: {first_path}")
            events = standardize_channels(
                read_events(first_path), config.importing.rename, config.importing.normalize_names
            )
        except Exception as e:
            errors.append(f"Failed to validate channels against event file: {e}")
            logger.error(errors[-1])
            raise ValidationError("; ".join(errors)) from e
        missing = [ch for ch in channels if ch not in events.columns]
        if missing:
            msg = f"Channels missing from {first_path}: {', '.join(missing)}"
            errors.append(msg)
            logger.error(msg)
        else:
            logger.info("All requested channels are present in the event file.")

    if errors:
        logger.error("Input validation failed. Please fix the errors above before running.")
        raise ValidationError("; ".join(errors))

    logger.info("All input validation checks passed successfully!")
    return config
