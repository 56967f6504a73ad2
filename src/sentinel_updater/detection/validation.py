"""
Validation of candidate binary paths.
"""

from __future__ import annotations

import os
import stat

from sentinel_updater.paths import is_windows


def validate_binary_path(path: str, system: str | None = None) -> str | None:
    """
    Check that ``path`` names an executable regular file.

    Args:
        path: Candidate path.
        system: Platform name; execute bits are not checked on Windows.

    Returns:
        None if valid, otherwise the reason it is not.
    """
    if not path:
        return "path is empty"

    try:
        st = os.stat(path)
    except FileNotFoundError:
        return "file does not exist"
    except PermissionError:
        return "permission denied accessing file"
    except OSError as e:
        return f"failed to stat file: {e}"

    if stat.S_ISDIR(st.st_mode):
        return "path is a directory, not a file"

    if not is_windows(system) and not st.st_mode & 0o111:
        return "file is not executable (missing execute permissions)"

    return None


def is_valid_binary_path(path: str, system: str | None = None) -> bool:
    return validate_binary_path(path, system) is None
