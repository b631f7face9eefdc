from __future__ import annotations

from enum import Enum, IntEnum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, ConfigDict


# ---------- Base (forbid unknown keys) ----------

class StrictModel(BaseModel):
    """Base model that rejects unknown fields to keep project files clean."""
    model_config = ConfigDict(extra="forbid")


class EntityKind(str, Enum):
    CHARACTER = "character"
    SCENE = "scene"

    @property
    def list_key(self) -> str:
        return "characters" if self is EntityKind.CHARACTER else "scenes"

    @classmethod
    def from_tab(cls, tab: Union[str, "EntityKind"]) -> "EntityKind":
        """Map a UI tab name ("characters" / "scenes") or a kind value to a kind."""
        if isinstance(tab, EntityKind):
            return tab
        if tab in ("characters", "character"):
            return cls.CHARACTER
        if tab in ("scenes", "scene"):
            return cls.SCENE
        raise ValueError(f"Unknown work list: {tab!r}")


class AppStep(IntEnum):
    INPUT_SCRIPT = 0
    OVERALL_STYLE = 1
    CHARACTERS_SCENES = 2


# ---------- Style ----------

class OverallStyle(StrictModel):
    """Visual style inferred from the script."""
    name: str = Field("", description="Short style name (e.g. '赛博朋克').")
    content: str = Field("", description="Long-form description of the style.")
    painting_style: str = Field("", description="Painting / rendering style used in every image prompt.")
    reference_image_id: Optional[str] = Field(None, description="Uploaded reference image id; replaces painting_style when set.")
    reference_image_name: Optional[str] = Field(None, description="File name of the uploaded reference image.")

    @property
    def is_configured(self) -> bool:
        return bool(self.painting_style.strip()) or bool(self.reference_image_id)


# ---------- Work items ----------

class WorkItem(StrictModel):
    """A character or scene carrying generation state."""
    id: str = Field(..., description="Stable identifier, used for every write-back.")
    name: str = Field(..., description="Display name.")
    traits: str = Field("", description="Distinguishing visual features.")
    visual_prompt: str = Field("", description="Generated image prompt; empty means not generated yet.")
    images: List[str] = Field(default_factory=list, description="Image references (URLs or data URLs), oldest first.")
    is_generating_prompt: bool = Field(False, description="A prompt generation call for this item is in flight.")
    is_generating_image: bool = Field(False, description="An image generation call for this item is in flight.")


class CharacterSpec(WorkItem):
    role: str = Field("", description="Position of the character in the story (lead, supporting...).")
    setting: str = Field("", description="Background / biography.")

    @property
    def role_or_location(self) -> str:
        return self.role


class SceneSpec(WorkItem):
    location: str = Field("", description="Where the scene takes place.")

    @property
    def role_or_location(self) -> str:
        return self.location


class GenerationHistoryItem(StrictModel):
    id: str
    timestamp: int = Field(..., description="Milliseconds since the epoch.")
    type: EntityKind
    name: str
    role_or_location: str = ""
    description: str = ""
    traits: str = ""
    prompt: str = ""
    images: List[str] = Field(default_factory=list)


# ---------- Project ----------

class ProjectState(StrictModel):
    """Application-wide project state shared by the UI and the generation queue.

    Work items are owned here. Every write-back addresses items by id and is
    a no-op when the id is gone, so callers may hold ids across awaits.
    """
    project_name: str = ""
    step: AppStep = AppStep.INPUT_SCRIPT
    script: str = ""
    style: OverallStyle = Field(default_factory=OverallStyle)
    characters: List[CharacterSpec] = Field(default_factory=list)
    scenes: List[SceneSpec] = Field(default_factory=list)
    is_analyzing: bool = False
    history: List[GenerationHistoryItem] = Field(default_factory=list)

    def items(self, kind: EntityKind) -> List[WorkItem]:
        return getattr(self, EntityKind.from_tab(kind).list_key)

    def find_item(self, kind: EntityKind, entity_id: str) -> Optional[WorkItem]:
        for item in self.items(kind):
            if item.id == entity_id:
                return item
        return None

    def add_item(self, kind: EntityKind, item: WorkItem) -> WorkItem:
        kind = EntityKind.from_tab(kind)
        setattr(self, kind.list_key, self.items(kind) + [item])
        return item

    def remove_item(self, kind: EntityKind, entity_id: str) -> bool:
        kind = EntityKind.from_tab(kind)
        items = self.items(kind)
        remaining = [item for item in items if item.id != entity_id]
        setattr(self, kind.list_key, remaining)
        return len(remaining) != len(items)

    def update_item(self, kind: EntityKind, entity_id: str, **fields) -> bool:
        """Set fields on the item with this id. Returns False if it no longer exists."""
        item = self.find_item(kind, entity_id)
        if item is None:
            return False
        for field_name, value in fields.items():
            if field_name not in type(item).model_fields:
                raise AttributeError(f"{type(item).__name__} has no field {field_name!r}")
            setattr(item, field_name, value)
        return True

    def move_item(self, kind: EntityKind, from_index: int, to_index: int) -> None:
        """Drag-reorder: move the item at from_index to to_index."""
        kind = EntityKind.from_tab(kind)
        items = list(self.items(kind))
        item = items.pop(from_index)
        items.insert(to_index, item)
        setattr(self, kind.list_key, items)

    def clear_generation_flags(self) -> None:
        """Reset in-flight flags, e.g. after loading a state saved mid-run."""
        for item in list(self.characters) + list(self.scenes):
            item.is_generating_prompt = False
            item.is_generating_image = False

    def add_history(self, entry: GenerationHistoryItem) -> None:
        self.history = self.history + [entry]

    def delete_history(self, history_id: str) -> bool:
        remaining = [h for h in self.history if h.id != history_id]
        removed = len(remaining) != len(self.history)
        self.history = remaining
        return removed
