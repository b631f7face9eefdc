import codecs
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterable, Dict, List, Optional, Union

import aiohttp
import requests
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.coze.cn"
STREAM_RUN_PATH = "/v1/workflow/stream_run"
FILE_UPLOAD_PATH = "/v1/files/upload"

EVENT_PREFIX = "data:"
TERMINAL_NODE_TYPE = "End"

CALL_LOG_PATH = "workflow_log.txt"


# ---------- Errors ----------

class CozeError(Exception):
    """Base class for workflow service failures."""


class Unauthenticated(CozeError):
    """No credential was supplied; raised before any network activity."""


class TransportError(CozeError):
    """Network failure or non-success HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StreamEmpty(CozeError):
    """The stream ended without a terminal event carrying content."""


class UploadError(CozeError):
    """The upload endpoint answered with a non-zero application code."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


# ---------- Request / event models ----------

class WorkflowRequest(BaseModel):
    """One workflow invocation. Immutable per call."""
    model_config = ConfigDict(frozen=True)

    workflow_id: str = Field(..., description="Opaque workflow identifier.")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Named workflow inputs.")
    credential: str = Field("", repr=False, description="Bearer token owned by the caller.")


class StreamEvent(BaseModel):
    node_type: Optional[str] = None
    content: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.node_type == TERMINAL_NODE_TYPE and bool(self.content)


class UploadedFile(BaseModel):
    id: str
    file_name: str


# ---------- Stream decoding ----------

class StreamDecoder:
    """Incremental decoder for the chunked ``data:`` event stream.

    Chunks are fed in arrival order. Text is decoded incrementally so that a
    multi-byte character split across two chunks is reassembled; complete
    lines are parsed as events and the trailing partial line stays buffered.
    Only the last terminal event's content is kept.
    """

    def __init__(self, prefix: str = EVENT_PREFIX, terminal_node_type: str = TERMINAL_NODE_TYPE):
        self.prefix = prefix
        self.terminal_node_type = terminal_node_type
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.terminal_payload: Optional[str] = None
        self.event_count = 0

    def feed(self, chunk: Union[bytes, bytearray]) -> List[StreamEvent]:
        """Consume one transport chunk and return the events it completed."""
        self._buffer += self._decoder.decode(bytes(chunk))
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process_lines(lines)

    def finish(self) -> str:
        """Flush the decoder and return the terminal payload.

        Raises:
            StreamEmpty: If no terminal event with content was observed
        """
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        self._process_lines([tail])

        if not self.terminal_payload:
            raise StreamEmpty("Failed to retrieve content from workflow: no terminal event received")
        return self.terminal_payload

    def _process_lines(self, lines: List[str]) -> List[StreamEvent]:
        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is None:
                continue
            events.append(event)
            self.event_count += 1
            if event.node_type == self.terminal_node_type and event.content:
                self.terminal_payload = event.content
        return events

    def _parse_line(self, line: str) -> Optional[StreamEvent]:
        stripped = line.strip()
        if not stripped.startswith(self.prefix):
            return None
        data_str = stripped[len(self.prefix):].strip()
        if not data_str:
            return None

        # Malformed intermediate events are common; skip them
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream line: %.200s", data_str)
            return None
        if not isinstance(data, dict):
            return None

        content = data.get("content")
        if content is not None and not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        node_type = data.get("node_type")
        return StreamEvent(node_type=str(node_type) if node_type is not None else None, content=content)


async def decode_stream(chunks: AsyncIterable[bytes]) -> str:
    """Drain an async chunk iterator and return its terminal payload."""
    decoder = StreamDecoder()
    async for chunk in chunks:
        decoder.feed(chunk)
    return decoder.finish()


# ---------- Logging helpers ----------

def _log_workflow_call(start_time: datetime, end_time: datetime, workflow_id: str, payload_chars: int, params_preview: str):
    """Append workflow call information to the call log."""
    duration = (end_time - start_time).total_seconds()
    log_line = f"{start_time.strftime('%Y-%m-%d %H:%M:%S')} | {workflow_id} | Duration: {duration:.2f}s | Payload: {payload_chars} chars | Params: {params_preview}\n"

    with open(CALL_LOG_PATH, "a", encoding="utf-8") as f:
        f.write(log_line)


def _preview_parameters(parameters: Dict[str, Any], limit: int = 60) -> str:
    preview = json.dumps(parameters, ensure_ascii=False)
    return preview[:limit] + "..." if len(preview) > limit else preview


def _api_base(base_url: Optional[str]) -> str:
    return (base_url or os.getenv("COZE_API_BASE") or DEFAULT_API_BASE).rstrip("/")


# ---------- Workflow invocation ----------

async def invoke(
    request: WorkflowRequest,
    session: Optional[aiohttp.ClientSession] = None,
    base_url: Optional[str] = None,
    log_calls: bool = True,
) -> str:
    """Run one streamed workflow and return its terminal payload.

    Args:
        request: Workflow id, parameters and credential
        session: Optional shared aiohttp session (left open); a private one is created otherwise
        base_url: API base URL override (defaults to $COZE_API_BASE or the public endpoint)
        log_calls: If True (default), append call details to the call log

    Returns:
        The content of the last terminal event

    Raises:
        Unauthenticated: Credential is empty
        TransportError: Network failure or non-2xx status
        StreamEmpty: No terminal event arrived
    """
    if not request.credential or not request.credential.strip():
        raise Unauthenticated("请先在设置中配置 Coze API Key")

    start_time = datetime.now()
    logger.debug("[COZE] Requesting workflow %s", request.workflow_id)
    logger.debug("[COZE] Parameters: %s", json.dumps(request.parameters, ensure_ascii=False))

    url = _api_base(base_url) + STREAM_RUN_PATH
    headers = {
        "Authorization": f"Bearer {request.credential}",
        "Content-Type": "application/json",
    }
    body = {"workflow_id": request.workflow_id, "parameters": request.parameters}

    owns_session = session is None
    if owns_session:
        # A stalled stream is only ended by the server or the network
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))

    try:
        async with session.post(url, headers=headers, data=json.dumps(body, ensure_ascii=False).encode("utf-8")) as response:
            if response.status < 200 or response.status >= 300:
                error_text = await response.text()
                raise TransportError(
                    f"Workflow {request.workflow_id} failed with status {response.status}: {error_text}",
                    status=response.status,
                )
            payload = await decode_stream(response.content.iter_any())
    except aiohttp.ClientError as e:
        raise TransportError(f"Workflow {request.workflow_id} request failed: {e}") from e
    except StreamEmpty:
        logger.error("[COZE] Workflow %s returned no content from End node", request.workflow_id)
        raise
    finally:
        if owns_session:
            await session.close()

    logger.debug("[COZE] Response from workflow %s: %s", request.workflow_id, payload)

    if log_calls:
        _log_workflow_call(start_time, datetime.now(), request.workflow_id, len(payload), _preview_parameters(request.parameters))

    return payload


async def run_workflow(
    workflow_id: str,
    parameters: Dict[str, Any],
    api_key: str,
    session: Optional[aiohttp.ClientSession] = None,
    base_url: Optional[str] = None,
    log_calls: bool = True,
) -> str:
    """Convenience wrapper building a WorkflowRequest and invoking it."""
    request = WorkflowRequest(workflow_id=workflow_id, parameters=parameters, credential=api_key or "")
    return await invoke(request, session=session, base_url=base_url, log_calls=log_calls)


# ---------- File upload ----------

def upload_file(file_path: Union[str, Path], api_key: str, base_url: Optional[str] = None) -> UploadedFile:
    """Upload a file (e.g. a style reference image) to the workflow service.

    Args:
        file_path: Local path of the file to upload
        api_key: Bearer credential
        base_url: API base URL override

    Returns:
        UploadedFile with the service-side id and file name

    Raises:
        Unauthenticated: Credential is empty
        TransportError: Network failure or non-JSON answer
        UploadError: Service answered with code != 0
    """
    if not api_key or not api_key.strip():
        raise Unauthenticated("上传图片前请先配置 Coze API Key")

    path = Path(file_path)
    try:
        with open(path, "rb") as fh:
            response = requests.post(
                url=_api_base(base_url) + FILE_UPLOAD_PATH,
                headers={"Authorization": f"Bearer {api_key}"},
                files={"file": (path.name, fh)},
            )
    except requests.RequestException as e:
        raise TransportError(f"File upload failed: {e}") from e

    try:
        result = response.json()
    except ValueError:
        raise TransportError(
            f"File upload returned non-JSON response (status {response.status_code}): {response.text}",
            status=response.status_code,
        )

    if result.get("code") != 0:
        raise UploadError(result.get("msg") or "文件上传失败", code=result.get("code"))

    data = result.get("data") or {}
    return UploadedFile(id=str(data.get("id", "")), file_name=str(data.get("file_name", path.name)))
