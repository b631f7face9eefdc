"""
Storyboard Generation Pipeline

This module orchestrates the workflow calls that turn a script into a
storyboard project: style analysis, character/scene extraction, per-item
prompt and image generation, and the bulk prompt queue that walks the active
work list one item at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple, Union

from coze_wrapper import UploadedFile, run_workflow, upload_file

from .artifact import (
    AppStep,
    CharacterSpec,
    EntityKind,
    GenerationHistoryItem,
    OverallStyle,
    ProjectState,
    SceneSpec,
    WorkItem,
)
from .artifact_adapters import (
    drafts_to_items,
    entities_parameters,
    format_profile,
    image_parameters,
    parse_entities,
    parse_image_urls,
    parse_prompt,
    parse_style,
    profile_filename,
    prompt_parameters,
)
from .config import (
    DEFAULT_IMAGE_MODEL,
    WORKFLOW_ID_CHARACTER_IMAGE,
    WORKFLOW_ID_CHARACTER_PROMPT,
    WORKFLOW_ID_ENTITIES,
    WORKFLOW_ID_SCENE_IMAGE,
    WORKFLOW_ID_SCENE_PROMPT,
    WORKFLOW_ID_STYLE,
)
from .utils import ProjectStore, VirtualStore

logger = logging.getLogger(__name__)


class StyleNotConfigured(ValueError):
    """Entity extraction needs a painting style or a reference image first."""


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------- Background saves ----------

_background_tasks: Set[asyncio.Task] = set()


def _background_done(description: str, task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background %s failed: %s", description, exc)


def spawn_background(coro, description: str) -> asyncio.Task:
    """Run a side effect without blocking the caller; failures are only logged."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(partial(_background_done, description))
    return task


async def drain_background_tasks() -> None:
    """Wait for every pending background save (used on shutdown and in tests)."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def save_entity_profile(store: ProjectStore, kind: EntityKind, item: WorkItem, prompt: str) -> Optional[str]:
    """Persist the profile text of an item; a failing disk never fails the generation."""
    try:
        return store.save_profile(item.id, format_profile(kind, item, prompt), label=item.name, filename=profile_filename(kind))
    except OSError as e:
        logger.warning("Could not save profile for %s: %s", item.id, e)
        return None


# ---------- Style ----------

async def analyze_style(project: ProjectState, api_key: str) -> OverallStyle:
    """Infer the overall style from the project script.

    A painting style the user already entered wins over the analyzed one, and
    an uploaded reference image is kept.
    """
    project.is_analyzing = True
    try:
        payload = await run_workflow(WORKFLOW_ID_STYLE, {"script": project.script}, api_key)
    finally:
        project.is_analyzing = False

    analyzed = parse_style(payload)
    previous = project.style
    project.style = analyzed.model_copy(update={
        "painting_style": previous.painting_style or analyzed.painting_style,
        "reference_image_id": previous.reference_image_id,
        "reference_image_name": previous.reference_image_name,
    })
    project.step = AppStep.OVERALL_STYLE
    return project.style


def set_reference_image(project: ProjectState, file_path: Union[str, Path], api_key: str) -> UploadedFile:
    """Upload a style reference image; it replaces the painting style text."""
    uploaded = upload_file(file_path, api_key)
    project.style = project.style.model_copy(update={
        "reference_image_id": uploaded.id,
        "reference_image_name": uploaded.file_name,
        "painting_style": "",
    })
    return uploaded


def clear_reference_image(project: ProjectState) -> None:
    project.style = project.style.model_copy(update={"reference_image_id": None, "reference_image_name": None})


# ---------- Entities ----------

async def extract_project_entities(project: ProjectState, api_key: str, force: bool = False) -> bool:
    """Extract characters and scenes from the script into the project.

    Args:
        project: Project to fill
        api_key: Workflow credential
        force: Replace existing characters/scenes

    Returns:
        True if the work lists were replaced, False if existing items were kept

    Raises:
        StyleNotConfigured: Neither a painting style nor a reference image is set
    """
    if not project.style.is_configured:
        raise StyleNotConfigured("请提供“画风描述”或“风格参考图”中的至少一项。")

    if not force and (project.characters or project.scenes):
        logger.info("Project already has characters or scenes; pass force=True to re-extract")
        return False

    project.is_analyzing = True
    try:
        payload = await run_workflow(WORKFLOW_ID_ENTITIES, entities_parameters(project.script, project.style), api_key)
    finally:
        project.is_analyzing = False

    entities = parse_entities(payload)
    characters, scenes = drafts_to_items(entities, _now_ms())
    project.characters = characters
    project.scenes = scenes
    project.step = AppStep.CHARACTERS_SCENES

    logger.info("Extracted %d characters and %d scenes", len(characters), len(scenes))
    return True


def add_blank_entity(project: ProjectState, kind: Union[EntityKind, str]) -> WorkItem:
    """Manual add from the work list."""
    kind = EntityKind.from_tab(kind)
    stamp = _now_ms()
    if kind is EntityKind.CHARACTER:
        item: WorkItem = CharacterSpec(id=f"char-{stamp}", name="新角色", role="待定")
    else:
        item = SceneSpec(id=f"scene-{stamp}", name="新场景", location="待定")
    return project.add_item(kind, item)


# ---------- Prompts ----------

async def request_entity_prompt(kind: EntityKind, item: WorkItem, style: OverallStyle, script: str, api_key: str) -> str:
    """Call the prompt workflow for one item and return the normalized prompt."""
    workflow_id = WORKFLOW_ID_CHARACTER_PROMPT if kind is EntityKind.CHARACTER else WORKFLOW_ID_SCENE_PROMPT
    payload = await run_workflow(workflow_id, prompt_parameters(kind, item, style, script), api_key)
    return parse_prompt(kind, payload)


async def generate_entity_prompt(
    project: ProjectState,
    kind: Union[EntityKind, str],
    entity_id: str,
    api_key: str,
    store: Optional[ProjectStore] = None,
) -> Optional[str]:
    """Generate and store the visual prompt of a single item.

    Returns:
        The prompt, or None if the item does not exist
    """
    kind = EntityKind.from_tab(kind)
    store = store or VirtualStore()
    item = project.find_item(kind, entity_id)
    if item is None:
        return None

    project.update_item(kind, entity_id, is_generating_prompt=True)
    try:
        prompt = await request_entity_prompt(kind, item, project.style, project.script, api_key)
    finally:
        project.update_item(kind, entity_id, is_generating_prompt=False)

    project.update_item(kind, entity_id, visual_prompt=prompt)
    save_entity_profile(store, kind, item, prompt)
    return prompt


# ---------- Images ----------

async def generate_entity_images(
    project: ProjectState,
    kind: Union[EntityKind, str],
    entity_id: str,
    api_key: str,
    model: str = DEFAULT_IMAGE_MODEL,
    store: Optional[ProjectStore] = None,
) -> List[str]:
    """Generate images for an item that already has a prompt.

    New images are appended to the item's gallery and recorded in the
    history. Saving them to the workspace happens in the background.

    Returns:
        The new image references (empty if the item is gone or has no prompt)
    """
    kind = EntityKind.from_tab(kind)
    store = store or VirtualStore()
    item = project.find_item(kind, entity_id)
    if item is None or not item.visual_prompt:
        return []

    start_index = len(item.images)
    workflow_id = WORKFLOW_ID_CHARACTER_IMAGE if kind is EntityKind.CHARACTER else WORKFLOW_ID_SCENE_IMAGE

    project.update_item(kind, entity_id, is_generating_image=True)
    try:
        payload = await run_workflow(workflow_id, image_parameters(kind, item.visual_prompt, model), api_key)
        new_images = parse_image_urls(payload)
    finally:
        project.update_item(kind, entity_id, is_generating_image=False)

    current = project.find_item(kind, entity_id)
    if current is not None:
        current.images = current.images + new_images

    snapshot = current or item
    stamp = _now_ms()
    project.add_history(GenerationHistoryItem(
        id=f"hist-{stamp}-{entity_id}",
        timestamp=stamp,
        type=kind,
        name=snapshot.name,
        role_or_location=getattr(snapshot, "role_or_location", ""),
        description=getattr(snapshot, "setting", "") if kind is EntityKind.CHARACTER else "",
        traits=snapshot.traits,
        prompt=snapshot.visual_prompt,
        images=list(new_images),
    ))

    if not store.virtual:
        for offset, image in enumerate(new_images):
            if not image:
                continue
            filename = f"image_{start_index + offset + 1}.png"
            spawn_background(
                asyncio.to_thread(store.save_asset, entity_id, filename, image, snapshot.name),
                f"save of {entity_id}/{filename}",
            )

    return new_images


# ---------- Bulk prompt queue ----------

class QueueState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED_ON_ERROR = "stopped_on_error"


class PromptQueue:
    """Sequential bulk prompt generation over the active work list.

    Every iteration re-reads the active tab and the live list from the
    project, picks the first item with an empty prompt that is not already in
    flight, and generates its prompt. Only one call is ever outstanding.
    The loop ends when no eligible item remains, on stop(), or on the first
    failure, which is reported once through on_error and kept in last_error.
    Stopping never cancels the call in flight; its result is still written
    back. Cancelling the task itself drops that result, clears the item's
    in-flight flag and leaves the queue idle.
    """

    def __init__(
        self,
        project: ProjectState,
        api_key: str,
        active_tab: Union[EntityKind, str] = "characters",
        store: Optional[ProjectStore] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ):
        self.project = project
        self.api_key = api_key
        self.active_tab = active_tab
        self.store = store or VirtualStore()
        self.on_error = on_error
        self.state = QueueState.IDLE
        self.last_error: Optional[BaseException] = None
        self.completed = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.state is QueueState.RUNNING

    def next_candidate(self) -> Optional[Tuple[EntityKind, WorkItem]]:
        """First item of the active list with no prompt and no call in flight."""
        kind = EntityKind.from_tab(self.active_tab)
        for item in self.project.items(kind):
            if not item.visual_prompt and not item.is_generating_prompt:
                return kind, item
        return None

    def start(self) -> asyncio.Task:
        """Start (or resume) the run; must be called from a running event loop."""
        self.state = QueueState.RUNNING
        self.last_error = None
        # A loop still awaiting its last call simply carries on
        if self._task is not None and not self._task.done():
            return self._task
        logger.info("Bulk prompt generation started on %s", self.active_tab)
        self._task = asyncio.create_task(self.run())
        return self._task

    def stop(self) -> None:
        if self.running:
            logger.info("Bulk prompt generation stopped")
            self.state = QueueState.IDLE

    def toggle(self) -> Optional[asyncio.Task]:
        if self.running:
            self.stop()
            return None
        return self.start()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def run(self) -> None:
        try:
            while self.running:
                picked = self.next_candidate()
                if picked is None:
                    logger.info("Bulk prompt generation finished: no items left without a prompt")
                    self.state = QueueState.IDLE
                    break

                kind, item = picked
                entity_id = item.id
                logger.info("Generating prompt for %s %s (%s)", kind.value, item.name, entity_id)
                self.project.update_item(kind, entity_id, is_generating_prompt=True)

                try:
                    prompt = await request_entity_prompt(kind, item, self.project.style, self.project.script, self.api_key)
                except asyncio.CancelledError:
                    self.project.update_item(kind, entity_id, is_generating_prompt=False)
                    raise
                except Exception as e:
                    self.project.update_item(kind, entity_id, is_generating_prompt=False)
                    self._fail(entity_id, e)
                    break

                # No-op if the item was deleted while the call was in flight
                if self.project.update_item(kind, entity_id, visual_prompt=prompt, is_generating_prompt=False):
                    save_entity_profile(self.store, kind, item, prompt)
                self.completed += 1
        except asyncio.CancelledError:
            logger.info("Bulk prompt generation cancelled")
            self.state = QueueState.IDLE
            raise

    def _fail(self, entity_id: str, error: BaseException) -> None:
        logger.error("Failed to generate prompt for %s, bulk generation paused: %s", entity_id, error)
        self.state = QueueState.STOPPED_ON_ERROR
        self.last_error = error
        if self.on_error is not None:
            self.on_error(error)
