"""Exercise layout — maps exercise paths to directories under the root."""

from __future__ import annotations

from pathlib import Path


def resolve_exercise_dir(root: str | Path, exercise: str) -> Path:
    """Resolve ``exercise`` (e.g. ``"ch01_getting_started/ex01_hello_world"``).

    Returns an absolute directory inside ``root``.

    Raises:
        ValueError: The path escapes the root or is not a directory.
    """
    root_path = Path(root).resolve()
    target = (root_path / exercise.strip("/\\")).resolve()
    if not target.is_relative_to(root_path):
        raise ValueError(f"Exercise path escapes the exercise root: {exercise}")
    if not target.is_dir():
        raise ValueError(f"Exercise directory not found: {exercise}")
    return target


def exercise_name(relative: Path) -> str | None:
    """Fallback display name for the exercise a relative file path lives in.

    ``ch02_guessing_game/ex03_string_parsing/src/main.rs`` -> ``"03 string parsing"``.
    Returns None for paths not nested at least chapter/exercise deep.
    """
    parts = relative.parts
    if len(parts) < 2:
        return None
    return parts[1].replace("_", " ").replace("ex", "", 1)
