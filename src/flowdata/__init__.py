"""flowdata: multi-sample flow cytometry datasets with gating, calibration, compensation and binning."""

try:
    from ._version import __version__
except ImportError:
    __version__ = "unknown"

from .config import AppConfig, load_and_validate_config
from .dataset import FlowData
from .model import BeadSpec, ImportedSample

__all__ = [
    "AppConfig",
    "BeadSpec",
    "FlowData",
    "ImportedSample",
    "load_and_validate_config",
    "__version__",
]
