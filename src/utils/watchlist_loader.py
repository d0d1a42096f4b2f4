"""Utility to load the repository watchlist from YAML file"""

import logging
import os
from pathlib import Path

import yaml

from src.models.watchlist import WatchlistConfig

logger = logging.getLogger(__name__)


def load_watchlist(config_path: str | Path = "repos.yaml") -> WatchlistConfig:
    """
    Load watchlist configuration from YAML file

    Args:
        config_path: Path to repos.yaml file (default: repos.yaml in project root)

    Returns:
        WatchlistConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Watchlist file not found: {config_path}\n"
            f"Please create a repos.yaml file. See repos.yaml.example for reference."
        )

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("Watchlist file is empty")

        watchlist = WatchlistConfig(**data)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in watchlist: {e}") from e
    except ValueError:
        raise
    except Exception as e:
        raise ValueError(f"Failed to load watchlist: {e}") from e

    # Allow environment variable to override refresh.enabled
    refresh_enabled_env = os.getenv("REFRESH_ENABLED")
    if refresh_enabled_env is not None:
        refresh_enabled = refresh_enabled_env.lower() in ("true", "1", "yes")
        if watchlist.refresh.enabled != refresh_enabled:
            logger.info(
                f"Overriding refresh.enabled from env: {refresh_enabled} "
                f"(was: {watchlist.refresh.enabled})"
            )
            watchlist.refresh.enabled = refresh_enabled

    logger.info(f"Loaded watchlist from {config_path}")
    logger.info(f"  Enabled repositories: {len(watchlist.get_enabled_repositories())}")
    logger.info(f"  Background refresh enabled: {watchlist.refresh.enabled}")

    return watchlist
