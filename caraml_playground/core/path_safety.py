from __future__ import annotations

from pathlib import Path


class PathSafetyError(ValueError):
    pass


def validate_relative_name(raw_name: str) -> Path:
    if not raw_name.strip():
        raise PathSafetyError("Name cannot be blank")
    if raw_name.startswith("/"):
        raise PathSafetyError("Name must be relative")
    if ".." in Path(raw_name).parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_name:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_name:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return Path(raw_name)


def resolve_under_root(root: Path, raw_name: str) -> Path:
    rel = validate_relative_name(raw_name)
    resolved_root = root.resolve(strict=False)
    candidate = (resolved_root / rel).resolve(strict=False)

    if resolved_root in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes root")
