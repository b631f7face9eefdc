"""
Utilities for project persistence

This module provides the persistence collaborator used after successful
generations:
- Saving entity profile text and generated images into per-entity folders
- Saving and loading the project state JSON
- A virtual (no-op) store for sessions without a workspace folder
"""

import base64
import binascii
import json
import logging
import os
import re
from pathlib import Path
from typing import Optional, Tuple, Union

import requests
from pydantic import ValidationError

from .artifact import ProjectState

logger = logging.getLogger(__name__)

STATE_FILENAME = "project_state.json"


def sanitize_name(name: str) -> str:
    """Make a name safe for use as a file or folder name."""
    # Replace spaces and special characters with underscores
    sanitized = re.sub(r'[^\w\-_]', '_', name)
    sanitized = re.sub(r'_+', '_', sanitized)
    sanitized = sanitized.strip('_')
    return sanitized.lower()


def decode_image_data(image_data_url: str) -> bytes:
    """Decode base64 image data from a data URL.

    Args:
        image_data_url: Data URL string (e.g., "data:image/png;base64,...")

    Returns:
        Decoded image bytes

    Raises:
        ValueError: If decoding fails
    """
    try:
        base64_data = image_data_url.split(',', 1)[1]
        return base64.b64decode(base64_data)
    except (IndexError, binascii.Error) as e:
        raise ValueError(f"Failed to decode base64 image data: {str(e)}")


def fetch_image_bytes(image_ref: Union[str, bytes]) -> bytes:
    """Resolve an image reference (bytes, data URL or http(s) URL) to bytes."""
    if isinstance(image_ref, (bytes, bytearray)):
        return bytes(image_ref)
    if image_ref.startswith("data:"):
        return decode_image_data(image_ref)
    if image_ref.startswith("http://") or image_ref.startswith("https://"):
        response = requests.get(image_ref, timeout=120)
        response.raise_for_status()
        return response.content
    raise ValueError(f"Unsupported image reference: {image_ref[:80]}")


class VirtualStore:
    """Persistence for sessions without a workspace: accepts everything, keeps nothing."""

    virtual = True

    def save_profile(self, entity_id: str, text: str, label: str = "", filename: str = "profile.txt") -> Optional[str]:
        return None

    def save_asset(self, entity_id: str, filename: str, image: Union[str, bytes], label: str = "") -> Optional[str]:
        return None

    def save_project_state(self, state: ProjectState) -> Optional[str]:
        return None

    def load_project_state(self) -> Optional[ProjectState]:
        return None


class WorkspaceStore:
    """Filesystem persistence rooted at a project folder.

    Layout:
        <root>/project_state.json
        <root>/<label>_<entity_id>/<profile file>
        <root>/<label>_<entity_id>/image_<n>.png
    """

    virtual = False

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        os.makedirs(self.root, exist_ok=True)

    def entity_dir(self, entity_id: str, label: str = "") -> Path:
        clean_label = sanitize_name(label) if label else ""
        folder = f"{clean_label}_{entity_id}" if clean_label else entity_id
        path = self.root / folder
        os.makedirs(path, exist_ok=True)
        return path

    def save_profile(self, entity_id: str, text: str, label: str = "", filename: str = "profile.txt") -> str:
        filepath = self.entity_dir(entity_id, label) / filename
        with open(filepath, "w", encoding="utf-8") as f:
            f.write(text)
        return str(filepath)

    def save_asset(self, entity_id: str, filename: str, image: Union[str, bytes], label: str = "") -> str:
        image_bytes = fetch_image_bytes(image)
        filepath = self.entity_dir(entity_id, label) / filename
        with open(filepath, "wb") as f:
            f.write(image_bytes)
        return str(filepath)

    def save_project_state(self, state: ProjectState) -> str:
        """Save the project state, leaving out transient fields."""
        filepath = self.root / STATE_FILENAME
        data = state.model_dump(mode="json", exclude={"is_analyzing"})
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        return str(filepath)

    def load_project_state(self) -> Optional[ProjectState]:
        """Load the saved project state, or None for a fresh / unreadable folder."""
        filepath = self.root / STATE_FILENAME
        if not filepath.exists():
            return None
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                state = ProjectState.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Could not read %s: %s", filepath, e)
            return None
        state.clear_generation_flags()
        return state


ProjectStore = Union[WorkspaceStore, VirtualStore]


def open_project(root: Optional[Union[str, Path]] = None, project_name: str = "") -> Tuple[ProjectStore, ProjectState]:
    """Open (or create) a project workspace.

    Without a root the project runs in virtual mode and nothing is saved.
    """
    if root is None:
        return VirtualStore(), ProjectState(project_name=project_name)

    store = WorkspaceStore(root)
    state = store.load_project_state()
    if state is None:
        state = ProjectState(project_name=project_name or store.root.name)
        store.save_project_state(state)
    elif not state.project_name:
        state.project_name = project_name or store.root.name
    return store, state
