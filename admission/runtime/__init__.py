from .bootstrap import AdmissionRuntime, bootstrap_engine
from .logging import JsonFormatter, setup_logger
from .settings import EngineSettings, load_settings

__all__ = [
    "AdmissionRuntime",
    "EngineSettings",
    "JsonFormatter",
    "bootstrap_engine",
    "load_settings",
    "setup_logger",
]
