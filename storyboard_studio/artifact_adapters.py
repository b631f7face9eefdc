"""
Artifact Adapters - mapping workflow payloads onto the project model

This module handles all translation between workflow payloads and the
ProjectState data model, including:
- Field descriptors for style, prompts and entity records
- Building workflow parameters from project data
- Parsing terminal payloads into typed results with fixed defaults
- De-duplication of extracted characters and scenes
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Tuple, TypeVar

from pydantic import BaseModel, Field

from .artifact import (
    CharacterSpec,
    EntityKind,
    OverallStyle,
    SceneSpec,
    StrictModel,
    WorkItem,
)
from .config import CHARACTER_VIEW_SIZE, scene_image_size
from .normalizer import (
    NOT_JSON,
    FieldSpec,
    Strategy,
    deep_find,
    extract_image_urls,
    load_json,
    parse_payload,
    resolve_field,
    repair_escapes,
    resolve_fields,
    strip_code_fence,
)

logger = logging.getLogger(__name__)

DEFAULT_STYLE_NAME = "自定义风格"
DEFAULT_STYLE_CONTENT = "暂无风格描述"
UNKNOWN_NAME = "未知"
DEFAULT_CHARACTER_ROLE = "配角"


class ExtractionError(ValueError):
    """A field the caller treats as mandatory could not be found."""


# ---------- Field descriptors ----------

STYLE_NAME = FieldSpec(
    name="name",
    keys=("风格名称", "name", "style_name"),
    label_keys=("风格名称",),
)

PAINTING_STYLE = FieldSpec(
    name="painting_style",
    keys=("视觉画风", "画风", "painting_style", "visual_style", "画面风格"),
    label_keys=("视觉画风", "画风", "画面风格", "美术风格"),
)

STYLE_CONTENT = FieldSpec(
    name="content",
    keys=("风格内容", "content", "style_content"),
    label_keys=("风格内容",),
    multiline=True,
    join_lists="\n",
    strategies=(
        Strategy.DEEP_KEY,
        Strategy.JSON_LITERAL,
        Strategy.LABEL,
        Strategy.WHOLE_OBJECT,
        Strategy.RAW_PAYLOAD,
    ),
    consumed_keys=("风格名称", "视觉画风", "画风", "_rawString"),
    container_key="style",
)

CHARACTER_PROMPT = FieldSpec(
    name="role_prompt",
    keys=("role_promty", "role_prompty", "role_prompt"),
    strategies=(Strategy.DEEP_KEY, Strategy.JSON_LITERAL),
)

SCENE_PROMPT = FieldSpec(
    name="scene_prompt",
    keys=("scene_prompt",),
    strategies=(Strategy.DEEP_KEY, Strategy.JSON_LITERAL),
)

ROLE_SCENES_KEYS = ("role_scenes",)
CHARACTER_LIST_KEYS = ("角色信息", "characters")
SCENE_LIST_KEYS = ("场景信息", "scenes")


# ---------- Extracted entity drafts ----------

class CharacterDraft(StrictModel):
    name: str = UNKNOWN_NAME
    role: str = DEFAULT_CHARACTER_ROLE
    setting: str = ""
    traits: str = ""


class SceneDraft(StrictModel):
    name: str = UNKNOWN_NAME
    location: str = ""
    traits: str = ""


class ExtractedEntities(BaseModel):
    characters: List[CharacterDraft] = Field(default_factory=list)
    scenes: List[SceneDraft] = Field(default_factory=list)


T = TypeVar("T", bound=BaseModel)


def dedupe_by_name(items: Iterable[T]) -> List[T]:
    """Keep the first occurrence of every exact name."""
    seen = set()
    unique = []
    for item in items:
        if item.name in seen:
            continue
        seen.add(item.name)
        unique.append(item)
    return unique


# ---------- Style ----------

def _unescape(value: str) -> str:
    return repair_escapes(value) if "\\u" in value else value


def parse_style(payload: str) -> OverallStyle:
    """Parse the style workflow output; never raises.

    Missing name and content fall back to fixed labels, a missing painting
    style stays empty so the user is prompted to supply one.
    """
    fields = resolve_fields(payload, [STYLE_NAME, PAINTING_STYLE, STYLE_CONTENT])

    name = _as_text(fields["name"])
    painting_style = _as_text(fields["painting_style"])
    content = _as_text(fields["content"], separator="\n")

    if not name:
        logger.debug("Style name not found in payload, using default")
    return OverallStyle(
        name=_unescape(name) or DEFAULT_STYLE_NAME,
        content=content or DEFAULT_STYLE_CONTENT,
        painting_style=_unescape(painting_style),
    )


def _as_text(value: Any, separator: str = "\n") -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return separator.join(value)
    return str(value)


def style_parameter(style: OverallStyle) -> str:
    return f"{style.name}\n{style.content}"


# ---------- Entities ----------

def _pick(record: Dict[str, Any], keys: Tuple[str, ...], default: str = "") -> str:
    for key in keys:
        value = record.get(key)
        if value:
            return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    return default


def _records(container: Any, keys: Tuple[str, ...]) -> List[Dict[str, Any]]:
    found = deep_find(container, keys)
    if isinstance(found, str):
        found = load_json(strip_code_fence(found.strip()))
    if not isinstance(found, list):
        return []
    return [r for r in found if isinstance(r, dict)]


def parse_entities(payload: str) -> ExtractedEntities:
    """Parse the entity workflow output into de-duplicated drafts.

    The lists usually sit under `role_scenes`, which may be an object or a
    (possibly ```json fenced) JSON string. When it is missing the whole
    payload is searched.
    """
    data = parse_payload(payload)
    if data is NOT_JSON:
        logger.warning("Entity payload is not JSON; no characters or scenes extracted")
        return ExtractedEntities()

    container = deep_find(data, ROLE_SCENES_KEYS)
    if isinstance(container, str):
        container = load_json(strip_code_fence(container.strip()))
    if container is None or container is NOT_JSON:
        logger.warning("No 'role_scenes' in entity payload, searching the whole payload")
        container = data

    characters = [
        CharacterDraft(
            name=_pick(item, ("name", "姓名"), UNKNOWN_NAME),
            role=_pick(item, ("position", "身份"), DEFAULT_CHARACTER_ROLE),
            setting=_pick(item, ("background", "背景")),
            traits=_pick(item, ("features", "特征")),
        )
        for item in _records(container, CHARACTER_LIST_KEYS)
    ]
    scenes = [
        SceneDraft(
            name=_pick(item, ("name", "名称"), UNKNOWN_NAME),
            location=_pick(item, ("location", "地点")),
            traits=_pick(item, ("features", "特征")),
        )
        for item in _records(container, SCENE_LIST_KEYS)
    ]
    return ExtractedEntities(characters=dedupe_by_name(characters), scenes=dedupe_by_name(scenes))


def entities_parameters(script: str, style: OverallStyle) -> Dict[str, Any]:
    return {"style": style_parameter(style), "script": script}


# ---------- Prompts ----------

def prompt_parameters(kind: EntityKind, item: WorkItem, style: OverallStyle, script: str) -> Dict[str, Any]:
    """Build the prompt workflow inputs for one character or scene."""
    parameters: Dict[str, Any] = {
        "painting_style": style.painting_style or "",
        "style": style_parameter(style),
        "script": script,
    }
    if style.reference_image_id:
        parameters["reference_image"] = json.dumps({"file_id": style.reference_image_id})

    if kind is EntityKind.CHARACTER:
        role = getattr(item, "role", "")
        setting = getattr(item, "setting", "")
        parameters["role_info"] = f"名称: {item.name}\n定位: {role}\n背景设定: {setting}\n特征: {item.traits}"
    else:
        location = getattr(item, "location", "")
        parameters["scene_info"] = f"名称: {item.name}\n地点: {location}\n特征: {item.traits}"
    return parameters


def parse_character_prompt(payload: str) -> str:
    value = resolve_field(payload, CHARACTER_PROMPT)
    if isinstance(value, list):
        value = "\n".join(value)
    if value:
        return strip_code_fence(value)
    return strip_code_fence(payload)


def parse_scene_prompt(payload: str) -> str:
    value = resolve_field(payload, SCENE_PROMPT)
    if isinstance(value, list):
        value = "\n".join(value)
    return value or payload


def parse_prompt(kind: EntityKind, payload: str) -> str:
    if kind is EntityKind.CHARACTER:
        return parse_character_prompt(payload)
    return parse_scene_prompt(payload)


def format_profile(kind: EntityKind, item: WorkItem, prompt: str) -> str:
    """Profile text saved next to an entity's images."""
    role_or_location = getattr(item, "role", None) if kind is EntityKind.CHARACTER else getattr(item, "location", None)
    return (
        f"【名称】\n{item.name}\n\n"
        f"【定位/地点】\n{role_or_location or ''}\n\n"
        f"【特征】\n{item.traits}\n\n"
        f"【提示词】\n{prompt}"
    )


def profile_filename(kind: EntityKind) -> str:
    return "角色设定.txt" if kind is EntityKind.CHARACTER else "场景设定.txt"


# ---------- Images ----------

def image_parameters(kind: EntityKind, prompt: str, model: str) -> Dict[str, Any]:
    if kind is EntityKind.CHARACTER:
        width, height = CHARACTER_VIEW_SIZE
    else:
        width, height = scene_image_size(model)
    return {"prompt": prompt, "model": model, "width": width, "height": height}


def parse_image_urls(payload: str) -> List[str]:
    """Image references from an image workflow payload.

    Raises:
        ExtractionError: If no image reference can be found
    """
    urls = extract_image_urls(payload)
    if not urls:
        raise ExtractionError(f"Could not parse image URL from response: {payload[:500]}")
    return urls


# ---------- Work item construction ----------

def drafts_to_items(entities: ExtractedEntities, stamp: int) -> Tuple[List[CharacterSpec], List[SceneSpec]]:
    """Turn drafts into fresh work items with ids `char-<i>-<stamp>` / `scene-<i>-<stamp>`."""
    characters = [
        CharacterSpec(id=f"char-{i}-{stamp}", name=d.name or UNKNOWN_NAME, role=d.role, setting=d.setting, traits=d.traits)
        for i, d in enumerate(entities.characters)
    ]
    scenes = [
        SceneSpec(id=f"scene-{i}-{stamp}", name=d.name or UNKNOWN_NAME, location=d.location, traits=d.traits)
        for i, d in enumerate(entities.scenes)
    ]
    return characters, scenes
