from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from dotenv import find_dotenv, load_dotenv
from loguru import logger


PathLike = Union[str, Path]


def load_environment(dotenv_path: PathLike | None = None, *, override: bool = False) -> bool:
    """Load environment variables from a .env file.

    Args:
        dotenv_path: Explicit path to the .env file. If omitted, the first
            discoverable .env in the current working directory tree is used.
        override: Whether to overwrite existing environment variables.

    Returns:
        True if an env file was found and loaded, otherwise False.
    """

    path = dotenv_path
    if path is None:
        path = find_dotenv(usecwd=True)

    if not path or not Path(path).exists():
        return False

    return load_dotenv(dotenv_path=path, override=override)


def env_int(name: str, default: int | None = None) -> int | None:
    """Read an integer variable, falling back to ``default`` on bad input."""

    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name} value '{raw}'; using {default}.")
        return default
