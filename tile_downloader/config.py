"""
Configuration loader for the tile downloader.
Handles loading and validating the YAML configuration, with environment
variable and command line overrides layered on top.
"""
import os
import logging
import yaml
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, List, Mapping, Optional

from .downloader.coords import MAX_MERCATOR_LAT, GeoBoundingBox, ZoomRange
from .downloader.core import DEFAULT_USER_AGENT
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = 'TILE_DOWNLOADER_'

BOUNDS_KEYS = ('min_lat', 'max_lat', 'min_lon', 'max_lon')


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _optional(convert: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def parse(value: Any) -> Any:
        if value is None or (isinstance(value, str) and value.strip().lower() in ('', 'none', 'null')):
            return None
        return convert(value)
    return parse


# Flat setting name -> converter, shared by YAML, environment and CLI layers
SETTINGS: Dict[str, Callable[[Any], Any]] = {
    'min_lat': float,
    'max_lat': float,
    'min_lon': float,
    'max_lon': float,
    'min_zoom': int,
    'max_zoom': int,
    'concurrency': int,
    'rate_limit_permits': _optional(int),
    'refill_interval': float,
    'output_root': str,
    'tile_server_url': str,
    'extension': str,
    'user_agent': str,
    'connect_timeout': float,
    'read_timeout': float,
    'overall_timeout': float,
    'queue_size': _optional(int),
    'chunk_size': int,
    'log_level': str,
    'log_file': _optional(str),
    'cleanup_partials': _parse_bool,
}

# YAML section -> {yaml key: flat setting name}
YAML_SECTIONS: Dict[str, Dict[str, str]] = {
    'global': {
        'log_level': 'log_level',
        'log_file': 'log_file',
        'cleanup_partials': 'cleanup_partials',
    },
    'region': {
        'min_zoom': 'min_zoom',
        'max_zoom': 'max_zoom',
    },
    'source': {
        'url': 'tile_server_url',
        'extension': 'extension',
        'user_agent': 'user_agent',
        'connect_timeout': 'connect_timeout',
        'read_timeout': 'read_timeout',
    },
    'download': {
        'concurrency': 'concurrency',
        'rate_limit_permits': 'rate_limit_permits',
        'refill_interval': 'refill_interval',
        'overall_timeout': 'overall_timeout',
        'queue_size': 'queue_size',
        'chunk_size': 'chunk_size',
    },
    'output': {
        'path': 'output_root',
    },
}


@dataclass(frozen=True)
class Bounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def to_bbox(self) -> GeoBoundingBox:
        return GeoBoundingBox(self.min_lat, self.max_lat, self.min_lon, self.max_lon)


@dataclass(frozen=True)
class Config:
    # Bounds stay flat while layering so each layer may supply part of the box
    min_lat: Optional[float] = None
    max_lat: Optional[float] = None
    min_lon: Optional[float] = None
    max_lon: Optional[float] = None
    min_zoom: int = 0
    max_zoom: int = 14
    concurrency: int = 4
    rate_limit_permits: Optional[int] = None
    refill_interval: float = 1.0
    output_root: str = './tiles'
    tile_server_url: str = 'https://tile.openstreetmap.org'
    extension: str = 'png'
    user_agent: str = DEFAULT_USER_AGENT
    connect_timeout: float = 5.0
    read_timeout: float = 5.0
    overall_timeout: float = 3600.0
    queue_size: Optional[int] = None
    chunk_size: int = 4096
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    cleanup_partials: bool = True

    @property
    def permits(self) -> int:
        """Permits per refill interval; one per worker unless configured."""
        return self.rate_limit_permits or self.concurrency

    @property
    def max_pending(self) -> int:
        return self.queue_size or self.concurrency * 16

    @property
    def missing_bounds(self) -> List[str]:
        return [key for key in BOUNDS_KEYS if getattr(self, key) is None]

    @property
    def bounds(self) -> Optional[Bounds]:
        """The bounding box, or None while any of its four values is unset."""
        if self.missing_bounds:
            return None
        return Bounds(*(getattr(self, key) for key in BOUNDS_KEYS))

    @property
    def bbox(self) -> GeoBoundingBox:
        bounds = self.bounds
        if bounds is None:
            raise ConfigurationError("No bounding box configured")
        return bounds.to_bbox()

    @property
    def zoom_range(self) -> ZoomRange:
        return ZoomRange(self.min_zoom, self.max_zoom)

    @classmethod
    def from_yaml(cls, config_path: str) -> 'Config':
        """Load configuration from a YAML file."""
        if not os.path.exists(config_path):
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Top level of {config_path} must be a mapping")

        logger.debug(f"Loaded configuration from {config_path}")
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Mapping[str, Any]) -> 'Config':
        """Build a configuration from the nested YAML structure."""
        values: Dict[str, Any] = {}

        for section, keys in YAML_SECTIONS.items():
            section_data = config_data.get(section) or {}
            if not isinstance(section_data, dict):
                raise ConfigurationError(f"Section '{section}' must be a mapping")
            for yaml_key, setting in keys.items():
                if yaml_key in section_data:
                    values[setting] = section_data[yaml_key]

        bounds = (config_data.get('region') or {}).get('bounds')
        if bounds is not None:
            if not isinstance(bounds, dict):
                raise ConfigurationError("'region.bounds' must be a mapping")
            for key in BOUNDS_KEYS:
                if key in bounds:
                    values[key] = bounds[key]

        return cls().with_overrides(values)

    def with_overrides(self, values: Mapping[str, Any]) -> 'Config':
        """Return a copy with the given flat settings applied.

        None values are ignored so unset command line flags fall through.
        """
        changes: Dict[str, Any] = {}
        errors: List[str] = []

        for name, value in values.items():
            if name not in SETTINGS:
                errors.append(f"Unknown setting: {name}")
                continue
            if value is None:
                continue
            try:
                changes[name] = SETTINGS[name](value)
            except (TypeError, ValueError) as e:
                errors.append(f"Invalid value for {name}: {value!r} ({e})")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return replace(self, **changes)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """Apply ``TILE_DOWNLOADER_<SETTING>`` environment variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in SETTINGS:
            env_name = ENV_PREFIX + name.upper()
            if env_name in environ:
                values[name] = environ[env_name]
        return self.with_overrides(values)

    def validate(self) -> 'Config':
        """Check the configuration, raising ConfigurationError listing all problems."""
        errors: List[str] = []

        missing = self.missing_bounds
        if len(missing) == len(BOUNDS_KEYS):
            errors.append("A bounding box (min_lat, max_lat, min_lon, max_lon) is required")
        elif missing:
            errors.append(f"Incomplete bounding box, missing: {', '.join(missing)}")
        else:
            for name in ('min_lat', 'max_lat'):
                if not -90.0 <= getattr(self, name) <= 90.0:
                    errors.append(f"{name} must be within [-90, 90]")
            for name in ('min_lon', 'max_lon'):
                if not -180.0 <= getattr(self, name) <= 180.0:
                    errors.append(f"{name} must be within [-180, 180]")
            if self.min_lat > self.max_lat:
                errors.append("min_lat must not exceed max_lat")
            if self.min_lon > self.max_lon:
                errors.append("min_lon must not exceed max_lon")

        if self.min_zoom < 0:
            errors.append("min_zoom must be >= 0")
        if self.min_zoom > self.max_zoom:
            errors.append("min_zoom must not exceed max_zoom")

        for name in ('concurrency', 'chunk_size'):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be >= 1")
        for name in ('rate_limit_permits', 'queue_size'):
            value = getattr(self, name)
            if value is not None and value < 1:
                errors.append(f"{name} must be >= 1")
        for name in ('refill_interval', 'connect_timeout', 'read_timeout', 'overall_timeout'):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0")

        if not self.tile_server_url.startswith(('http://', 'https://')):
            errors.append("tile_server_url must be an http(s) URL")
        if not self.extension.strip('.'):
            errors.append("extension must not be empty")
        if not self.user_agent.strip():
            errors.append("user_agent must not be empty")

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

        if max(abs(self.min_lat), abs(self.max_lat)) > MAX_MERCATOR_LAT:
            logger.warning(f"Latitudes beyond +/-{MAX_MERCATOR_LAT:.4f} are clamped to the edge tiles")

        return self

    def as_dict(self) -> Dict[str, Any]:
        """Flat view of every setting, for logging."""
        return {f.name: getattr(self, f.name) for f in fields(self)}
