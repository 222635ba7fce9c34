#!/usr/bin/env python
# coding: utf-8

"""
Configuration manager for cell-composition estimation.

Provides a thread-safe singleton that centralizes estimation settings
(convergence threshold, iteration cap, batch size, initialization mode,
parallelism), optional initial state values and anchor regions, with full
validation and JSON / YAML / TOML support.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from copy import deepcopy
from importlib.resources import files
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Union

import toml
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from methylcc.core.exceptions import InvalidConfigurationError
from methylcc.core.initialization import MIN_STATE_GAP
from methylcc.io.data_utils import AnchorRegions
from methylcc.utils.logger import logger

# Pydantic Schemas


class EstimationSettingsSchema(BaseModel):
    """Settings controlling one estimation run."""

    epsilon: float = Field(0.01, gt=0.0, description="EM convergence threshold")
    max_iter: int = Field(100, ge=1, description="Maximum EM iterations")
    n_init: int = Field(5, ge=1, description="Random starts per task, best kept")
    batch_size: int = Field(100, ge=1, description="Complete samples per EM batch")
    init_param_method: str = Field("random", pattern="^(random|known_regions)$")
    convergence: str = Field("parameter", pattern="^(parameter|loglik)$")
    variance_floor: float = Field(1e-6, gt=0.0, le=0.01)
    n_jobs: int = 1
    random_state: Optional[int] = Field(None, ge=0)
    memory_warn_gb: float = Field(8.0, gt=0.0)

    @field_validator("n_jobs")
    @classmethod
    def validate_n_jobs(cls, v) -> int:
        if v == 0:
            raise ValueError("n_jobs must be a non-zero integer (-1 for all cores)")
        return v

    @field_validator("epsilon")
    @classmethod
    def validate_epsilon(cls, v) -> float:
        if v > 1.0:
            logger.warning(f"Unusually loose convergence threshold: epsilon={v}")
        return v


class InitialValuesSchema(BaseModel):
    """Caller-supplied starting values for the state parameters."""

    a0init: Optional[float] = Field(None, ge=0.0, le=1.0)
    a1init: Optional[float] = Field(None, ge=0.0, le=1.0)
    sig0init: Optional[float] = Field(None, gt=0.0)
    sig1init: Optional[float] = Field(None, gt=0.0)
    tauinit: Optional[float] = Field(None, gt=0.0)

    @model_validator(mode="after")
    def validate_state_order(self) -> "InitialValuesSchema":
        if (
            self.a0init is not None
            and self.a1init is not None
            and self.a0init >= self.a1init
        ):
            raise ValueError(
                f"a0init ({self.a0init}) must be below a1init ({self.a1init})"
            )
        # a lone mean must leave room for the other state inside [0, 1]
        if self.a1init is None and self.a0init is not None:
            if self.a0init > 1.0 - MIN_STATE_GAP:
                raise ValueError(
                    f"a0init ({self.a0init}) without a1init must be at most "
                    f"{1.0 - MIN_STATE_GAP}"
                )
        if self.a0init is None and self.a1init is not None:
            if self.a1init < MIN_STATE_GAP:
                raise ValueError(
                    f"a1init ({self.a1init}) without a0init must be at least "
                    f"{MIN_STATE_GAP}"
                )
        return self


class KnownRegionsSchema(BaseModel):
    """Anchor regions for ``known_regions`` initialization."""

    unmethylated: List[str] = Field(default_factory=list)
    methylated: List[str] = Field(default_factory=list)


class EstimationConfigModel(BaseModel):
    """Complete estimation configuration model."""

    settings: EstimationSettingsSchema = Field(default_factory=EstimationSettingsSchema)
    initial_values: InitialValuesSchema = Field(default_factory=InitialValuesSchema)
    known_regions: KnownRegionsSchema = Field(default_factory=KnownRegionsSchema)

    def anchors(self) -> AnchorRegions:
        return AnchorRegions(
            unmethylated=tuple(self.known_regions.unmethylated),
            methylated=tuple(self.known_regions.methylated),
        )


SETTING_KEYS = set(EstimationSettingsSchema.model_fields)
INITIAL_VALUE_KEYS = set(InitialValuesSchema.model_fields)


# Utility Functions


def _atomic_write(path: Union[str, Path], content: Union[str, bytes]) -> None:
    """
    Write content to a file atomically using a temporary file.

    Parameters
    ----------
    path : str or Path
        Destination file path.
    content : str or bytes
        Content to write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    content_bytes = content.encode("utf-8") if isinstance(content, str) else content

    tmp_file = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=str(path.parent), delete=False
        ) as tmp:
            tmp_file = Path(tmp.name)
            tmp.write(content_bytes)
            tmp.flush()
            os.fsync(tmp.fileno())

        os.replace(str(tmp_file), str(path))
        logger.debug(f"Successfully wrote file: {path}")

    except OSError as e:
        logger.error(f"Failed to write file {path}: {e}")
        if tmp_file and tmp_file.exists():
            tmp_file.unlink()
        raise


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively update ``base`` (in place) with values from ``updates``."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


# EstimationConfig Singleton Class
class EstimationConfig:
    """
    Thread-safe singleton for estimation configuration management.

    Defaults come from the packaged ``defaults.json`` sidecar. User files
    (JSON, YAML or TOML) are merged on top of them and validated as a whole.

    Parameters
    ----------
    config_file : str or Path, optional
        Configuration file to load on initialization.
    """

    _instance: Optional["EstimationConfig"] = None
    _lock = RLock()

    def __new__(cls, config_file: Optional[Union[str, Path]] = None):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        if getattr(self, "_initialized", False):
            return

        self._cfg_path: Optional[Path] = None
        self._data_lock = RLock()
        self._raw: Dict[str, Any] = {}
        self.model: Optional[EstimationConfigModel] = None

        self._load_sidecar_config()

        if config_file is not None:
            try:
                self.load_file(config_file)
            except Exception as e:
                logger.error(f"Failed to load config file {config_file}: {e}")
                raise

        self._validate_and_set(self._raw)
        self._initialized = True

    def _load_sidecar_config(self) -> None:
        """Load defaults from the packaged sidecar file."""
        sidecar_path = files(__package__) / "defaults.json"
        if not sidecar_path.is_file():
            raise FileNotFoundError(f"Packaged defaults not found at {sidecar_path}")
        self._raw = json.loads(sidecar_path.read_text(encoding="utf-8"))
        logger.debug(f"Loaded sidecar config from {sidecar_path}")

    @contextmanager
    def _transaction(self):
        """
        Context manager for atomic configuration updates.

        The raw and validated state are restored if the body raises.
        """
        with self._data_lock:
            backup_raw = deepcopy(self._raw)
            backup_model = self.model
            try:
                yield
            except Exception:
                self._raw = backup_raw
                self.model = backup_model
                raise

    # Loading and Saving
    def load_file(self, path: Union[str, Path]) -> None:
        """
        Merge configuration from a JSON, YAML or TOML file.

        Raises
        ------
        FileNotFoundError
            If the file does not exist.
        ValueError
            If the format is unsupported or the merged configuration is invalid.
        """
        path = Path(path).resolve()

        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        logger.info(f"Loading configuration from {path}")
        loaded = self._load_by_format(path, path.suffix.lower())

        if not isinstance(loaded, dict):
            raise ValueError(f"Configuration must be a dictionary, got {type(loaded)}")

        with self._transaction():
            merged = deepcopy(self._raw)
            _deep_update(merged, loaded)
            self._validate_and_set(merged)
            self._cfg_path = path

    @staticmethod
    def _load_by_format(path: Path, ext: str) -> Dict[str, Any]:
        text = path.read_text(encoding="utf-8")
        if ext == ".json":
            return json.loads(text)
        elif ext in (".yml", ".yaml"):
            return yaml.safe_load(text)
        elif ext == ".toml":
            return toml.loads(text)
        raise ValueError(f"Unsupported file extension: {ext}")

    def save_file(self, path: Union[str, Path], fmt: Optional[str] = None) -> None:
        """Save the current configuration as JSON, YAML or TOML."""
        path = Path(path)
        fmt = (fmt or path.suffix.lstrip(".")).lower()

        with self._data_lock:
            data = self._export_config()

        if fmt in ("json", ""):
            content = json.dumps(data, indent=2)
        elif fmt in ("yml", "yaml"):
            content = yaml.safe_dump(data, sort_keys=False)
        elif fmt == "toml":
            # toml has no null; drop unset optional values
            content = toml.dumps(_drop_none(data))
        else:
            raise ValueError(f"Unsupported format: {fmt}")

        _atomic_write(path, content)
        logger.info(f"Configuration saved to {path}")
        self._cfg_path = path

    def _export_config(self) -> Dict[str, Any]:
        return self.model.model_dump()

    # Validation
    def _validate_and_set(self, raw: Dict[str, Any]) -> None:
        try:
            validated = EstimationConfigModel(**raw)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise InvalidConfigurationError(str(e)) from e

        with self._data_lock:
            self.model = validated
            self._raw = raw

    # Queries and updates
    @property
    def settings(self) -> Dict[str, Any]:
        return self.model.settings.model_dump()

    @property
    def initial_values(self) -> Dict[str, Optional[float]]:
        return self.model.initial_values.model_dump()

    def anchors(self) -> AnchorRegions:
        return self.model.anchors()

    def update(self, **values: Any) -> None:
        """
        Persistently update settings or initial values by name.

        Examples
        --------
        >>> get_config().update(epsilon=1e-4, batch_size=50)
        """
        with self._transaction():
            merged = deepcopy(self._raw)
            _deep_update(merged, _sectioned(values))
            self._validate_and_set(merged)
            logger.info(f"Configuration updated: {sorted(values)}")

    def set_known_regions(self, unmethylated: List[str], methylated: List[str]) -> None:
        """Replace the anchor regions used by ``known_regions`` initialization."""
        with self._transaction():
            merged = deepcopy(self._raw)
            merged["known_regions"] = {
                "unmethylated": [str(r) for r in unmethylated],
                "methylated": [str(r) for r in methylated],
            }
            self._validate_and_set(merged)

    def resolve_settings(self, **overrides: Any) -> EstimationConfigModel:
        """
        Validate a per-run configuration without changing the stored one.

        ``None`` overrides are ignored so callers can forward optional
        keyword arguments unchanged.

        Raises
        ------
        InvalidConfigurationError
            On unknown keys or values failing validation.
        """
        given = {k: v for k, v in overrides.items() if v is not None}
        with self._data_lock:
            merged = deepcopy(self._raw)
        _deep_update(merged, _sectioned(given))
        try:
            return EstimationConfigModel(**merged)
        except ValidationError as e:
            raise InvalidConfigurationError(str(e)) from e

    def reload(self) -> None:
        """Reload defaults and the last loaded file."""
        with self._transaction():
            self._load_sidecar_config()
            if self._cfg_path and self._cfg_path.is_file():
                merged = deepcopy(self._raw)
                _deep_update(merged, self._load_by_format(self._cfg_path, self._cfg_path.suffix.lower()))
                self._raw = merged
            self._validate_and_set(self._raw)
        logger.info("Configuration reloaded")

    def to_dict(self) -> Dict[str, Any]:
        """Export current configuration as a dictionary."""
        with self._data_lock:
            return self._export_config()


def _sectioned(values: Dict[str, Any]) -> Dict[str, Any]:
    """Route flat keyword values into their configuration sections."""
    unknown = set(values) - SETTING_KEYS - INITIAL_VALUE_KEYS
    if unknown:
        raise InvalidConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
    return {
        "settings": {k: v for k, v in values.items() if k in SETTING_KEYS},
        "initial_values": {k: v for k, v in values.items() if k in INITIAL_VALUE_KEYS},
    }


def _drop_none(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _drop_none(v) for k, v in data.items() if v is not None}
    return data


# Global Singleton Access


def get_config() -> EstimationConfig:
    """Return the global EstimationConfig singleton instance."""
    return EstimationConfig()


def reset_config() -> None:
    """Discard the global configuration instance (primarily for testing)."""
    with EstimationConfig._lock:
        EstimationConfig._instance = None
    logger.debug("Global configuration reset")


def load_file(path: Union[str, Path]) -> None:
    """Load configuration from a file. See EstimationConfig.load_file()."""
    get_config().load_file(path)


def save_file(path: Union[str, Path], fmt: Optional[str] = None) -> None:
    """Save configuration to a file. See EstimationConfig.save_file()."""
    get_config().save_file(path=path, fmt=fmt)
