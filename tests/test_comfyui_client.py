from __future__ import annotations

import asyncio
import base64
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from aiohttp import test_utils, web

from comfyui_client import ComfyUIClient
from config import Config
from core.errors import (
    ExecutionError,
    GenerationTimeoutError,
    ServiceConnectionError,
    SubmissionError,
    UploadError,
)
from core.models import Failed, ImageBuffer, Pending, Ready, UploadedImageHandle
from core.workflow_graph import NodeKind, WorkflowGraph

IMAGE_BYTES = b"\x89PNG\r\n\x1a\nfake"
OUTPUT = {"filename": "ImageStudio_00001_.png", "subfolder": "", "type": "output"}


def _graph() -> WorkflowGraph:
    graph = WorkflowGraph()
    graph.add(NodeKind.CHECKPOINT_LOADER, {"ckpt_name": "a.safetensors"})
    return graph


class FakeComfy:
    """Scripted stand-in for the ComfyUI HTTP API."""

    def __init__(self, *, ready_after: int | None = 0, prompt_status: int = 200) -> None:
        self.ready_after = ready_after
        self.prompt_status = prompt_status
        self.history_calls = 0
        self.queued: list[dict[str, Any]] = []
        self.uploads: list[tuple[str, str]] = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/prompt", self.prompt)
        app.router.add_get("/history/{prompt_id}", self.history)
        app.router.add_get("/view", self.view)
        app.router.add_post("/upload/image", self.upload)
        app.router.add_get("/object_info/{node}", self.object_info)
        app.router.add_get("/system_stats", self.system_stats)
        return app

    async def prompt(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.queued.append(body)
        if self.prompt_status != 200:
            return web.json_response(
                {"error": {"type": "invalid_prompt", "message": "Prompt outputs failed validation"}},
                status=self.prompt_status,
            )
        return web.json_response({"prompt_id": "job-1", "number": 1})

    async def history(self, request: web.Request) -> web.Response:
        self.history_calls += 1
        prompt_id = request.match_info["prompt_id"]
        if self.ready_after is None or self.history_calls <= self.ready_after:
            return web.json_response({})
        return web.json_response(
            {
                prompt_id: {
                    "outputs": {
                        "3": {"latents": [{"filename": "x.latent"}]},
                        "9": {"images": [OUTPUT, {"filename": "second.png"}]},
                    },
                    "status": {"status_str": "success", "completed": True, "messages": []},
                }
            }
        )

    async def view(self, request: web.Request) -> web.Response:
        assert request.query["filename"] == OUTPUT["filename"]
        assert request.query["type"] == "output"
        return web.Response(body=IMAGE_BYTES, content_type="image/png")

    async def upload(self, request: web.Request) -> web.Response:
        form = await request.post()
        image = form["image"]
        if image.filename.startswith("slow"):
            await asyncio.sleep(0.05)
        self.uploads.append((image.filename, image.content_type))
        if image.filename == "broken.png":
            return web.Response(text="invalid image file", status=400)
        return web.json_response({"name": image.filename, "subfolder": "", "type": "input"})

    async def object_info(self, request: web.Request) -> web.Response:
        node = request.match_info["node"]
        options = {
            "CheckpointLoaderSimple": ("ckpt_name", [["b.safetensors", "a.safetensors"]]),
            "LoraLoader": (
                "lora_name",
                ["COMBO", {"options": ["z.safetensors", "notes.txt", "a.ckpt", "b.pt"]}],
            ),
            "ControlNetLoader": (
                "control_net_name",
                [["t2i_style.pth", "control_v11p_sd15_openpose.pth", "control_canny.safetensors"]],
            ),
        }
        if node not in options:
            return web.json_response({}, status=404)
        field, value = options[node]
        return web.json_response({node: {"input": {"required": {field: value}}}})

    async def system_stats(self, request: web.Request) -> web.Response:
        return web.json_response({"system": {}})


def _run_with_server(
    fake: FakeComfy,
    fn: Callable[[ComfyUIClient], Awaitable[Any]],
) -> Any:
    async def runner() -> Any:
        server = test_utils.TestServer(fake.app())
        await server.start_server()
        client = ComfyUIClient(
            Config(comfyui_url=str(server.make_url("/")).rstrip("/"), poll_interval=0)
        )
        try:
            return await fn(client)
        finally:
            await client.close()
            await server.close()

    return asyncio.run(runner())


def test_run_polls_until_image_is_ready() -> None:
    fake = FakeComfy(ready_after=5)

    data_url = _run_with_server(fake, lambda client: client.run(_graph()))

    assert data_url == "data:image/png;base64," + base64.b64encode(IMAGE_BYTES).decode()
    assert fake.history_calls == 6
    assert len(fake.queued) == 1
    queued = fake.queued[0]
    assert queued["prompt"]["1"]["class_type"] == "CheckpointLoaderSimple"
    assert queued["client_id"]


def test_run_times_out_after_max_attempts() -> None:
    fake = FakeComfy(ready_after=None)

    with pytest.raises(GenerationTimeoutError):
        _run_with_server(fake, lambda client: client.run(_graph()))

    assert fake.history_calls == 180


def test_run_respects_explicit_attempt_cap() -> None:
    fake = FakeComfy(ready_after=None)

    with pytest.raises(TimeoutError):
        _run_with_server(fake, lambda client: client.run(_graph(), max_attempts=3))

    assert fake.history_calls == 3


def test_submission_error_uses_error_message() -> None:
    fake = FakeComfy(prompt_status=400)

    with pytest.raises(SubmissionError, match="Prompt outputs failed validation"):
        _run_with_server(fake, lambda client: client.run(_graph()))

    assert fake.history_calls == 0


def test_submission_error_message_fallbacks() -> None:
    message = ComfyUIClient._submission_error_message
    assert message('{"error": "bad node"}', "Bad Request", 400) == "bad node"
    assert message("plain failure", "Bad Request", 400) == "plain failure"
    assert message("", "Service Unavailable", 503) == "Service Unavailable"


def test_transport_error_is_connection_error() -> None:
    async def runner() -> None:
        client = ComfyUIClient(Config(comfyui_url="http://127.0.0.1:1"))
        try:
            await client.queue_prompt(_graph())
        finally:
            await client.close()

    with pytest.raises(ServiceConnectionError):
        asyncio.run(runner())


def test_stage_images_preserves_order() -> None:
    fake = FakeComfy()
    images = [
        ImageBuffer(data=b"1", mime_type="image/png", filename="slow_first.png"),
        ImageBuffer(data=b"2", mime_type="image/jpeg", filename="second.jpg"),
    ]

    handles = _run_with_server(fake, lambda client: client.stage_images(images))

    assert handles == [
        UploadedImageHandle(filename="slow_first.png"),
        UploadedImageHandle(filename="second.jpg"),
    ]
    assert fake.uploads[0] == ("second.jpg", "image/jpeg")


def test_upload_failure_raises_upload_error() -> None:
    fake = FakeComfy()
    image = ImageBuffer(data=b"x", filename="broken.png")

    with pytest.raises(UploadError, match="invalid image file"):
        _run_with_server(fake, lambda client: client.upload_image(image))


def test_discovery_filters_and_sorts() -> None:
    fake = FakeComfy()

    async def discover(client: ComfyUIClient) -> tuple[list[str], list[str], list[str]]:
        return (
            await client.list_checkpoints(),
            await client.list_loras(),
            await client.list_controlnets(),
        )

    checkpoints, loras, controlnets = _run_with_server(fake, discover)

    assert checkpoints == ["a.safetensors", "b.safetensors"]
    assert loras == ["a.ckpt", "z.safetensors"]
    assert controlnets == ["control_canny.safetensors", "control_v11p_sd15_openpose.pth"]


def test_check_connection_reports_status() -> None:
    status = _run_with_server(FakeComfy(), lambda client: client.check_connection())
    assert status.connected is True

    async def offline() -> Any:
        client = ComfyUIClient(Config(comfyui_url="http://127.0.0.1:1"))
        try:
            return await client.check_connection()
        finally:
            await client.close()

    status = asyncio.run(offline())
    assert status.connected is False
    assert status.url == "http://127.0.0.1:1"
    assert status.error


class ScriptedClient(ComfyUIClient):
    def __init__(self, entries: list[dict[str, Any] | None]) -> None:
        super().__init__(Config(poll_interval=0))
        self.entries = entries
        self.calls = 0

    async def fetch_history(self, prompt_id: str) -> dict[str, Any] | None:
        entry = self.entries[min(self.calls, len(self.entries) - 1)]
        self.calls += 1
        return entry

    async def fetch_image_data_url(self, img_info: dict[str, Any]) -> str:
        return f"data:image/png;base64,{img_info['filename']}"


def test_poll_once_outcomes() -> None:
    running = {"outputs": {}, "status": {"completed": False, "messages": []}}
    ready = {"outputs": {"7": {"images": []}, "9": {"images": [{"filename": "a"}]}}}
    errored = {
        "outputs": {},
        "status": {
            "status_str": "error",
            "completed": False,
            "messages": [["execution_error", {"exception_message": "CUDA out of memory"}]],
        },
    }
    empty_success = {"outputs": {}, "status": {"status_str": "success", "completed": True}}

    async def poll(entry: dict[str, Any] | None) -> Any:
        return await ScriptedClient([entry]).poll_once("job")

    assert asyncio.run(poll(None)) == Pending()
    assert asyncio.run(poll(running)) == Pending()
    assert asyncio.run(poll(ready)) == Ready("data:image/png;base64,a")
    assert asyncio.run(poll(errored)) == Failed("CUDA out of memory")
    assert isinstance(asyncio.run(poll(empty_success)), Failed)


def test_wait_for_image_raises_execution_error_on_failure() -> None:
    failed = {"outputs": {}, "status": {"status_str": "error", "messages": []}}
    client = ScriptedClient([None, failed])

    with pytest.raises(ExecutionError):
        asyncio.run(client.wait_for_image("job"))

    assert client.calls == 2
