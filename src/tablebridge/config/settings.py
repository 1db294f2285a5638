import os
from dataclasses import dataclass, fields
from typing import Dict, Optional

import yaml

DEFAULT_CONFIG_FILE = "tablebridge.yaml"


@dataclass
class Settings:
    """
    Runtime settings. Defaults are overridden by the YAML config file,
    which is overridden by environment variables.
    """
    log_level: str = "INFO"
    log_color: bool = False
    write_chunk_size: int = 64 * 1024
    interchange_format: str = "json"      # json | yaml
    interchange_indent: int = 2

    def __post_init__(self):
        self.interchange_format = str(self.interchange_format).lower()
        if self.interchange_format not in {"json", "yaml"}:
            raise ValueError("interchange_format must be one of: json, yaml")
        if int(self.write_chunk_size) <= 0:
            raise ValueError("write_chunk_size must be positive")
        self.write_chunk_size = int(self.write_chunk_size)
        self.interchange_indent = int(self.interchange_indent)
        self.log_level = str(self.log_level).upper()


_ENV_OVERRIDES = {
    "TABLEBRIDGE_LOG_LEVEL": "log_level",
    "LOG_COLOR": "log_color",
    "TABLEBRIDGE_CHUNK_SIZE": "write_chunk_size",
    "TABLEBRIDGE_INTERCHANGE_FORMAT": "interchange_format",
}


def _load_yaml(config_path: str) -> Dict:
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")
    return data


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Build Settings from an optional YAML file and the environment.

    Without an explicit path, ./tablebridge.yaml is used when present.
    """
    values: Dict = {}

    if config_path:
        values.update(_load_yaml(config_path))
    elif os.path.exists(DEFAULT_CONFIG_FILE):
        values.update(_load_yaml(DEFAULT_CONFIG_FILE))

    known = {f.name for f in fields(Settings)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown settings keys: {sorted(unknown)}")

    for env_name, key in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        if key == "log_color":
            values[key] = raw == "1"
        else:
            values[key] = raw

    return Settings(**values)
