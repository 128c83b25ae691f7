"""Run configuration and settings storage.

The CLI builds one ``ShrinkConfig`` per invocation and hands it to the
pipeline; nothing below the CLI reads the environment or settings file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from img_shrinker.domain.models import CompressionSpec


SETTINGS_PATH = Path(
    os.environ.get(
        "IMG_SHRINKER_SETTINGS_PATH",
        Path.home() / ".config" / "img-shrinker" / "settings.json",
    )
)

# IMG_SHRINKER_GZIP / IMG_SHRINKER_XZ override all options for that tool
ENV_PREFIX = "IMG_SHRINKER"

DEFAULT_SETTINGS: dict[str, Any] = {
    "compression_options": {},
}


@dataclass
class ShrinkConfig:
    image: Path
    output: Optional[Path] = None
    skip_autoexpand: bool = False
    advanced_repair: bool = False
    compression: Optional[CompressionSpec] = None
    prep: bool = False
    prep_openwb: bool = False
    debug: bool = False


def load_settings(path: Optional[Path] = None) -> dict[str, Any]:
    """Load the settings file on top of the defaults.

    A missing or unreadable file leaves the defaults in place.
    """
    path = path or SETTINGS_PATH
    values = dict(DEFAULT_SETTINGS)
    if not path.exists():
        return values
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return values
    if isinstance(data, dict):
        values.update(data)
    return values


def compression_overrides(
    environ: Mapping[str, str], settings: Optional[Mapping[str, Any]] = None
) -> dict[str, str]:
    """Per-tool option overrides, keyed by tool name.

    Environment variables win over the settings file. A variable that is set
    but empty still counts: it clears every option for that tool.
    """
    overrides: dict[str, str] = {}
    configured = (settings or {}).get("compression_options") or {}
    if isinstance(configured, dict):
        for tool, options in configured.items():
            if options is not None:
                overrides[str(tool)] = str(options)
    for key, value in environ.items():
        if key.startswith(f"{ENV_PREFIX}_") and key != f"{ENV_PREFIX}_SETTINGS_PATH":
            overrides[key[len(ENV_PREFIX) + 1 :].lower()] = value
    return overrides


def build_compression_spec(
    tool: Optional[str],
    *,
    parallel: bool = False,
    verbose: bool = False,
    overrides: Optional[Mapping[str, str]] = None,
) -> Optional[CompressionSpec]:
    if not tool:
        return None
    return CompressionSpec(
        tool=tool,
        parallel=parallel,
        options=(overrides or {}).get(tool),
        verbose=verbose,
    )
