"""
Storyboard Studio Core Module

This module provides the core of the script-to-storyboard editor: the project
data model, field normalization for workflow payloads, the adapters mapping
payloads onto characters/scenes/style, persistence, and the generation
pipeline including the sequential bulk prompt queue.
"""

from .artifact import (
    AppStep,
    CharacterSpec,
    EntityKind,
    GenerationHistoryItem,
    OverallStyle,
    ProjectState,
    SceneSpec,
    StrictModel,
    WorkItem,
)

from .normalizer import (
    FieldSpec,
    Strategy,
    deep_find,
    extract,
    extract_image_urls,
    resolve_field,
    resolve_fields,
)

from .artifact_adapters import (
    ExtractionError,
    ExtractedEntities,
    dedupe_by_name,
    parse_entities,
    parse_image_urls,
    parse_prompt,
    parse_style,
)

from .pipeline import (
    PromptQueue,
    QueueState,
    StyleNotConfigured,
    add_blank_entity,
    analyze_style,
    clear_reference_image,
    drain_background_tasks,
    extract_project_entities,
    generate_entity_images,
    generate_entity_prompt,
    set_reference_image,
)

from .utils import (
    VirtualStore,
    WorkspaceStore,
    open_project,
)

__all__ = [
    # Core models
    "AppStep",
    "CharacterSpec",
    "EntityKind",
    "GenerationHistoryItem",
    "OverallStyle",
    "ProjectState",
    "SceneSpec",
    "StrictModel",
    "WorkItem",

    # Normalizer
    "FieldSpec",
    "Strategy",
    "deep_find",
    "extract",
    "extract_image_urls",
    "resolve_field",
    "resolve_fields",

    # Adapters
    "ExtractionError",
    "ExtractedEntities",
    "dedupe_by_name",
    "parse_entities",
    "parse_image_urls",
    "parse_prompt",
    "parse_style",

    # Pipeline
    "PromptQueue",
    "QueueState",
    "StyleNotConfigured",
    "add_blank_entity",
    "analyze_style",
    "clear_reference_image",
    "drain_background_tasks",
    "extract_project_entities",
    "generate_entity_images",
    "generate_entity_prompt",
    "set_reference_image",

    # Utils
    "VirtualStore",
    "WorkspaceStore",
    "open_project",
]
