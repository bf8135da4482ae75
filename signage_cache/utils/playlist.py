"""
Utility for turning a device manifest or playlist document into content
descriptors.
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from signage_cache.models.entry import ContentDescriptor

log = logging.getLogger(__name__)


def _raw_items(document: Any) -> list[dict[str, Any]]:
    """
    Accepts any of:
      - a bare list of content objects
      - {"items": [...]}
      - a manifest {"playlist": {"items": [{"content": {...}}, ...]}}
      - a playlist response {"data": {"items": [...]}}
    """
    if isinstance(document, list):
        return document
    if not isinstance(document, dict):
        raise ValueError("Manifest must be a JSON list or object.")

    container = document.get("playlist") or document.get("data") or document
    if not isinstance(container, dict):
        raise ValueError("Manifest playlist must be a JSON object.")
    items = container.get("items")
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("Manifest 'items' must be a list.")

    # Playlist items wrap their content and carry the play order.
    if any(isinstance(i, dict) and "content" in i for i in items):
        ordered = sorted(
            (i for i in items if isinstance(i, dict)),
            key=lambda i: i.get("order", 0),
        )
        contents = []
        for item in ordered:
            content = item.get("content")
            if not isinstance(content, dict):
                continue
            duration = item.get("duration_override") or item.get("duration")
            contents.append({**content, "duration": duration} if duration else content)
        return contents
    return items


def parse_manifest(document: Any) -> list[ContentDescriptor]:
    """
    Builds descriptors from a decoded manifest document. Invalid items are
    skipped with a warning; duplicate URLs keep their first occurrence.
    """
    descriptors: list[ContentDescriptor] = []
    seen: set[str] = set()
    for index, item in enumerate(_raw_items(document)):
        try:
            descriptor = ContentDescriptor.model_validate(item)
        except ValidationError as e:
            log.warning(
                f"[yellow]Skipping manifest item {index}:[/] "
                f"{e.error_count()} validation error(s)"
            )
            log.debug(str(e))
            continue
        if descriptor.url in seen:
            log.debug(f"Duplicate manifest URL ignored: {descriptor.url}")
            continue
        seen.add(descriptor.url)
        descriptors.append(descriptor)
    return descriptors


def load_manifest(path: Path) -> list[ContentDescriptor]:
    """Reads and parses a manifest JSON file."""
    with open(path, encoding="utf-8") as f:
        document = json.load(f)
    return parse_manifest(document)
