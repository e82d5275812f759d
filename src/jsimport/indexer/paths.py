import os
from pathlib import Path


def normalize_path(file_path: str | Path, working_directory: str | Path) -> str:
    """Normalize a file path relative to the working directory, with forward slashes.

    Normalization is lexical: symlinks are not followed, so a linked file keeps
    its own path as its key.
    """
    root = os.path.abspath(working_directory)
    path = os.path.abspath(os.path.join(root, file_path))
    try:
        relative = os.path.relpath(path, root)
    except ValueError:
        # Different drive on Windows
        relative = None
    if relative is None or relative == os.pardir or relative.startswith(os.pardir + os.sep):
        # Fallback if path is not in the working directory
        return path.replace("\\", "/")
    return relative.replace(os.sep, "/")


def normalize_lookup_path(lookup_path: str) -> str:
    """Turn a configured lookup path into the prefix form used by the index.

    ``"./app/"`` becomes ``"app"``; the working directory itself becomes ``""``.
    """
    parts = [p for p in lookup_path.replace("\\", "/").split("/") if p not in ("", ".")]
    return "/".join(parts)


def is_under(path: str, lookup_path: str) -> bool:
    if not lookup_path:
        return not path.startswith("/")
    return path.startswith(lookup_path + "/")
