# yaml_parser.py
import os
import re
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from models.project_models import CharacterProfile, ProjectDefinition

logger = structlog.get_logger(__name__)


def normalize_keys_recursive(data: Any) -> Any:
    """
    Recursively normalizes keys in a dictionary to lowercase and replaces spaces with underscores,
    so "Total Chapters" and "total_chapters" mean the same thing in a project file.
    """
    if isinstance(data, dict):
        new_dict = {}
        for key, value in data.items():
            normalized_key = str(key).strip().lower().replace(" ", "_")
            new_dict[normalized_key] = normalize_keys_recursive(value)
        return new_dict
    elif isinstance(data, list):
        return [normalize_keys_recursive(item) for item in data]
    else:
        return data


def load_yaml_file(filepath: str, normalize_keys: bool = True) -> dict[str, Any] | None:
    """
    Loads and parses a YAML file.

    Args:
        filepath: Path to the YAML file.
        normalize_keys: Whether to recursively normalize dictionary keys
                        (lowercase, spaces to underscores). Defaults to True.

    Returns:
        A dictionary representing the YAML content, or None if an error occurs.
    """
    if not filepath.endswith((".yaml", ".yml")):
        logger.error("File specified is not a YAML file.", path=filepath)
        return None
    try:
        with open(filepath, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning("YAML file not found.", path=filepath)
        return None
    except yaml.YAMLError as e:
        logger.error("Error parsing YAML file.", path=filepath, error=str(e), exc_info=True)
        return None

    if content is None:  # Empty file
        return {}
    if not isinstance(content, dict):
        logger.error(
            "YAML file must have a mapping at its root.",
            path=filepath,
            parsed_type=type(content).__name__,
        )
        return None
    return normalize_keys_recursive(content) if normalize_keys else content


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def _volumes_with_defaults(
    raw_volumes: list[dict[str, Any]], total_chapters: int
) -> list[dict[str, Any]]:
    if not raw_volumes:
        return [{"index": 1, "start_chapter": 1, "end_chapter": total_chapters}]
    volumes = []
    for position, volume in enumerate(raw_volumes, start=1):
        volume = dict(volume)
        volume.setdefault("index", position)
        chapters = volume.get("chapters") or []
        indices = [c.get("index") for c in chapters if isinstance(c, dict) and c.get("index")]
        if indices:
            volume.setdefault("start_chapter", min(indices))
            volume.setdefault("end_chapter", max(indices))
        volumes.append(volume)
    return volumes


def project_from_dict(data: dict[str, Any], default_id: str = "project") -> ProjectDefinition:
    """Build a :class:`ProjectDefinition` from normalized YAML data.

    ``total_chapters`` defaults to the last volume's end chapter; a project with
    no volumes gets a single volume spanning every chapter.
    """
    raw_volumes = data.get("volumes") or []
    total = data.get("total_chapters")
    if total is None:
        ends = [v.get("end_chapter") for v in raw_volumes if v.get("end_chapter")]
        if not ends:
            raise ValueError("Project file needs 'total_chapters' or volumes with 'end_chapter'.")
        total = max(ends)

    characters = [
        CharacterProfile.from_dict(c) for c in data.get("characters") or [] if isinstance(c, dict)
    ]
    title = str(data.get("title") or "")
    project_id = str(data.get("project_id") or _slug(title) or default_id)
    try:
        return ProjectDefinition(
            project_id=project_id,
            title=title,
            bible=str(data.get("bible") or "").strip(),
            total_chapters=int(total),
            characters=characters,
            volumes=_volumes_with_defaults(raw_volumes, int(total)),
        )
    except ValidationError as e:
        raise ValueError(f"Invalid project definition: {e}") from e


def load_project_file(filepath: str) -> ProjectDefinition:
    """Read a YAML project file; raises ``ValueError`` when it is unusable."""
    data = load_yaml_file(filepath)
    if data is None:
        raise ValueError(f"Could not load project file: {filepath}")
    default_id = _slug(os.path.splitext(os.path.basename(filepath))[0]) or "project"
    definition = project_from_dict(data, default_id=default_id)
    logger.info(
        "Loaded project definition.",
        project=definition.project_id,
        total_chapters=definition.total_chapters,
        characters=len(definition.characters),
        volumes=len(definition.volumes),
    )
    return definition
