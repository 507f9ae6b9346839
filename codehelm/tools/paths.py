"""Path resolution shared by the file tools."""

from pathlib import Path


def resolve_project_path(project_root: Path, path: str) -> Path:
    """Resolve ``path`` against ``project_root``, refusing to leave it.

    Raises:
        PermissionError: if the resolved path escapes the project root
    """
    root = project_root.expanduser().resolve()
    requested = Path(path).expanduser()
    candidate = requested if requested.is_absolute() else root / requested
    resolved = candidate.resolve()
    try:
        resolved.relative_to(root)
    except ValueError:
        raise PermissionError(f"security: path escapes project root: {path}") from None
    return resolved
