#!/usr/bin/env python3

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from coze_wrapper import CozeError
from storyboard_studio import (
    EntityKind,
    PromptQueue,
    QueueState,
    StyleNotConfigured,
    analyze_style,
    drain_background_tasks,
    extract_project_entities,
    generate_entity_images,
    open_project,
)
from storyboard_studio.config import DEFAULT_IMAGE_MODEL, get_api_key

load_dotenv()

logger = logging.getLogger("run_storyboard")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Turn a script into storyboard characters, scenes and prompts.")
    parser.add_argument("script", help="Path to a .txt or .md script")
    parser.add_argument("--workspace", help="Project folder (omit for a temporary, unsaved session)")
    parser.add_argument("--painting-style", default="", help="Painting style to use instead of the analyzed one")
    parser.add_argument("--tab", choices=["characters", "scenes", "both"], default="both", help="Work list(s) to fill with prompts")
    parser.add_argument("--images", action="store_true", help="Also generate images for every item with a prompt")
    parser.add_argument("--model", default=DEFAULT_IMAGE_MODEL, help="Image model name")
    parser.add_argument("--force", action="store_true", help="Re-extract characters and scenes even if the project has some")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging (includes raw workflow payloads)")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return await run(args)
    except (CozeError, StyleNotConfigured) as e:
        print(f"Error: {e}")
        return 1


async def run(args) -> int:
    api_key = get_api_key()
    store, project = open_project(args.workspace)
    project.script = Path(args.script).read_text(encoding="utf-8")
    if args.painting_style:
        project.style.painting_style = args.painting_style

    print(f"Starting storyboard generation for: {project.project_name or args.script}")
    print("=" * 50)

    style = await analyze_style(project, api_key)
    print(f"Style: {style.name} | Painting style: {style.painting_style or '-'}")

    await extract_project_entities(project, api_key, force=args.force)
    print(f"Characters: {len(project.characters)} | Scenes: {len(project.scenes)}")
    store.save_project_state(project)

    tabs = ["characters", "scenes"] if args.tab == "both" else [args.tab]
    for tab in tabs:
        queue = PromptQueue(project, api_key, active_tab=tab, store=store)
        queue.start()
        await queue.wait()
        store.save_project_state(project)
        if queue.state is QueueState.STOPPED_ON_ERROR:
            print(f"Bulk generation paused on {tab}: {queue.last_error}")
            return 1
        print(f"Prompts generated for {tab}: {queue.completed}")

    if args.images:
        for tab in tabs:
            kind = EntityKind.from_tab(tab)
            for item in list(project.items(kind)):
                try:
                    images = await generate_entity_images(project, kind, item.id, api_key, model=args.model, store=store)
                    print(f"  {item.name}: {len(images)} image(s)")
                except Exception as e:
                    logger.error("Image generation failed for %s: %s", item.name, e)
        await drain_background_tasks()
        store.save_project_state(project)

    print("=" * 50)
    print("Generation completed!")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
