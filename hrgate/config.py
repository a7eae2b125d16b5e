"""
Repository-local verifier configuration.

Lives at the repository root as ``hrgate.config.json``. A missing or
invalid file is a deny, never a default.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, model_validator

from .transport import PAYLOAD_FILENAME

CONFIG_FILENAME = "hrgate.config.json"
CONFIG_VERSION = 1
DEFAULT_REF_PATTERN = "refs/hrgate/hr/{subject_key}"


class ConfigError(Exception):
    """Verifier configuration is absent or invalid."""


class GateConfig(BaseModel):
    """Parsed ``hrgate.config.json``."""
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    version: StrictInt = CONFIG_VERSION
    subject_key: StrictStr = Field(min_length=1)
    signal_ref_pattern: StrictStr = DEFAULT_REF_PATTERN
    payload_filename: StrictStr = PAYLOAD_FILENAME
    public_key: StrictStr = Field(pattern=r"^[0-9a-f]{64}$")
    public_key_version: StrictInt = 1
    ttl_seconds: StrictInt = Field(default=15, gt=0)

    @model_validator(mode="after")
    def _check(self) -> "GateConfig":
        if self.version != CONFIG_VERSION:
            raise ValueError(f"unsupported config version: {self.version}")
        if "{subject_key}" not in self.signal_ref_pattern:
            raise ValueError("signal_ref_pattern must contain {subject_key}")
        return self

    @property
    def ref_name(self) -> str:
        return self.signal_ref_pattern.replace("{subject_key}", self.subject_key)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def load_gate_config(path: Optional[Union[str, Path]] = None) -> GateConfig:
    """
    Load and validate the verifier configuration.

    Args:
        path: Config file path (defaults to ``hrgate.config.json`` in the cwd)

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path) if path is not None else Path(CONFIG_FILENAME)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"config not found: {config_path}") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"config unreadable: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError("config must be a JSON object")

    try:
        return GateConfig.model_validate(raw)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ConfigError(f"invalid config: {', '.join(fields) or e.errors()[0]['msg']}") from e
