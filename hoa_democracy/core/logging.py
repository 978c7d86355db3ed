"""Logging utilities shared by the API and the integrity CLI."""
from __future__ import annotations

import logging
import logging.config
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "../.." / "configs" / "logging.yaml"


def configure_logging(*, level: str | int | None = None, config_path: Path | None = None) -> None:
    """Configure logging from the YAML file if present, then apply an optional root level.

    The CLI passes ``level`` to honour ``--verbose`` without editing
    the shared YAML configuration.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if path.exists():
        import yaml  # type: ignore[import-untyped]

        with path.open("r", encoding="utf-8") as config_file:
            logging.config.dictConfig(yaml.safe_load(config_file))
    else:
        logging.basicConfig(level=logging.INFO)

    if level is not None:
        logging.getLogger().setLevel(level)
        logging.getLogger("hoa_democracy").setLevel(level)


__all__ = ["DEFAULT_CONFIG_PATH", "configure_logging"]
