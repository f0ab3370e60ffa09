"""
Project-relative path checks shared by the file parser and the apply engine.
"""

import posixpath
import re

from sitegen.errors import PathRejected


_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def validate_path(path: str) -> str:
    """
    Normalise a generated file path and make sure it stays inside the project.

    Returns the cleaned forward-slash path (leading "./" removed).
    Raises PathRejected for empty, absolute, or ".."-containing paths.
    """
    if path is None:
        raise PathRejected("", "empty path")
    cleaned = path.strip().replace("\\", "/")
    if not cleaned:
        raise PathRejected(path, "empty path")
    if cleaned.startswith("/") or _DRIVE_RE.match(cleaned):
        raise PathRejected(path, "absolute paths are not allowed")
    if "\x00" in cleaned:
        raise PathRejected(path, "null byte in path")

    segments = cleaned.split("/")
    if ".." in segments:
        raise PathRejected(path, "'..' segments are not allowed")

    normalised = posixpath.normpath(cleaned)
    if normalised in (".", "") or normalised.startswith("../"):
        raise PathRejected(path, "path escapes project root")
    return normalised


def join_project_path(project_root: str, path: str) -> str:
    """Absolute sandbox path for a validated project-relative path."""
    return f"{project_root.rstrip('/')}/{validate_path(path)}"


def file_type(path: str) -> str:
    """Infer the file type label from its extension."""
    if path.endswith((".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx")):
        return "javascript"
    if path.endswith((".css", ".scss", ".sass")):
        return "css"
    if path.endswith(".json"):
        return "json"
    return "default"


def component_name(path: str) -> str:
    """"src/components/Hero.jsx" -> "Hero"."""
    base = path.rsplit("/", 1)[-1]
    return base.split(".", 1)[0] or base
