"""
Reading and rewriting the chat server's .env file.
"""

import logging
from pathlib import Path
from typing import Dict, Mapping, Union

from dotenv import dotenv_values, set_key

logger = logging.getLogger(__name__)


class EnvFileError(Exception):
    """Raised when the .env file cannot be read or written."""


def read_env_file(path: Union[str, Path]) -> Dict[str, str]:
    """
    Parse KEY=VALUE pairs from the file, in file order.
    A missing file yields an empty mapping. ${VAR} references are returned
    as written, not expanded.
    """
    path = Path(path)
    if not path.exists():
        return {}
    try:
        values = dotenv_values(path, encoding="utf-8", interpolate=False)
    except (OSError, UnicodeDecodeError) as e:
        raise EnvFileError(f"Failed to read .env file: {e}") from e
    return {key: value for key, value in values.items() if value is not None}


def update_env_file(path: Union[str, Path], updates: Mapping[str, str]) -> None:
    """
    Set each key in updates. Existing keys are replaced in place, new keys
    are appended, and every other line (comments included) is kept verbatim.
    Values that are not plain alphanumerics are single-quoted so they read
    back unchanged.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        for key, value in updates.items():
            set_key(path, key, value, quote_mode="auto", encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise EnvFileError(f"Failed to write .env file: {e}") from e

    logger.info(f"Updated {path}: {', '.join(sorted(updates))}")
