"""
Pytest Configuration and Fixtures

Shared fixtures for all tests.
"""

import json
from typing import Any, Dict, List, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from storyboard_studio import CharacterSpec, OverallStyle, ProjectState, SceneSpec


@pytest.fixture
def encode_events():
    """Encode events the way the workflow service streams them."""
    def encode(events: List[Dict[str, Any]]) -> bytes:
        return "".join(f"data: {json.dumps(e, ensure_ascii=False)}\n" for e in events).encode("utf-8")
    return encode


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep call logs out of the repository and ignore any real API base."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("COZE_API_BASE", raising=False)
    return tmp_path


@pytest.fixture
def workflow_server():
    """Factory for a local stream_run endpoint.

    Usage:
        async with workflow_server(chunks=[...]) as server:
            base_url = str(server.make_url("/")).rstrip("/")
    """
    def factory(chunks: Optional[List[bytes]] = None, status: int = 200, body: str = "error", record: Optional[list] = None):
        async def handler(request):
            if record is not None:
                record.append({
                    "path": request.path,
                    "authorization": request.headers.get("Authorization"),
                    "json": await request.json(),
                })
            if status != 200:
                return web.Response(status=status, text=body)
            response = web.StreamResponse()
            await response.prepare(request)
            for chunk in chunks or []:
                await response.write(chunk)
            await response.write_eof()
            return response

        app = web.Application()
        app.router.add_post("/v1/workflow/stream_run", handler)
        return TestServer(app)

    return factory


@pytest.fixture
def styled_project() -> ProjectState:
    """A project with a configured style and a few characters and scenes."""
    return ProjectState(
        project_name="test_project",
        script="第一幕：雨夜，侦探林舟走进霓虹小巷。",
        style=OverallStyle(name="赛博朋克", content="霓虹、雨夜、高对比", painting_style="厚涂插画"),
        characters=[
            CharacterSpec(id="char-0", name="林舟", role="主角", setting="退役警探", traits="风衣"),
            CharacterSpec(id="char-1", name="阿九", role="配角", setting="黑客", traits="短发"),
            CharacterSpec(id="char-2", name="老周", role="配角", setting="酒保", traits="胡子"),
        ],
        scenes=[
            SceneSpec(id="scene-0", name="霓虹小巷", location="旧城区", traits="雨夜"),
            SceneSpec(id="scene-1", name="地下酒吧", location="地下", traits="昏暗"),
        ],
    )
