"""Runtime settings: YAML file plus environment overrides, validated by Pydantic."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

ENV_OVERRIDES = {
    "OLLAMA_HOST": "ollama_host",
    "INTAKE_MODEL": "model",
    "REFERENCE_STORE_ID": "reference_store_id",
    "INTAKE_DATA_ROOT": "data_root",
}


class IntakeSettings(BaseModel):
    """Knobs for one deployment of the intake engine."""

    model: str = "qwen3:32b"
    ollama_host: Optional[str] = None
    oracle_timeout: float = Field(default=120.0, gt=0)
    oracle_retries: int = Field(default=1, ge=0, le=3)
    conversation_window: int = Field(default=12, ge=0)
    max_tool_rounds: int = Field(default=3, ge=0)
    data_root: Path = Path("data")
    refs_dir: Path = Path("refs")
    criteria_schema: Path = Path("criteria_specs/o1_core_v1.yaml")
    reference_store_id: Optional[str] = None
    index_poll_interval: float = Field(default=1.5, gt=0)
    index_timeout: float = Field(default=120.0, gt=0)


def load_settings(path: str | Path | None = None, environ: dict | None = None) -> IntakeSettings:
    """Load settings from an optional YAML file, then apply environment overrides."""
    raw: dict = {}
    if path is not None:
        with open(Path(path)) as f:
            raw = yaml.safe_load(f) or {}

    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            raw[key] = value
    return IntakeSettings.model_validate(raw)
