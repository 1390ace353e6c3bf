"""
ComfyUI API client.

Handles communication with the node-graph execution service:
- Lists available checkpoints, LoRAs and ControlNet models, probes health
- Stages reference images through the upload endpoint
- Queues compiled workflows, polls history until an image appears, fetches it
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Sequence
from typing import Any

import aiohttp

from config import Config
from core.errors import (
    ExecutionError,
    GenerationTimeoutError,
    ServiceConnectionError,
    SubmissionError,
    UploadError,
)
from core.image_utils import to_data_url
from core.models import (
    ConnectionStatus,
    Failed,
    ImageBuffer,
    Pending,
    PollResult,
    Ready,
    UploadedImageHandle,
)
from core.workflow_graph import WorkflowGraph

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 5
HEALTH_TIMEOUT = 3
UPLOAD_TIMEOUT = 60

LORA_SUFFIXES = (".safetensors", ".ckpt")
CONTROLNET_MARKERS = ("openpose", "canny", "depth", "lineart", "softedge", "scribble")

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class ComfyUIClient:
    """Async client for the ComfyUI HTTP API."""

    def __init__(self, config: Config) -> None:
        self.base_url = config.comfyui_url
        self.max_poll_attempts = config.max_poll_attempts
        self.poll_interval = config.poll_interval
        self._session: aiohttp.ClientSession | None = None

    # -- session management --------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    # -- discovery -----------------------------------------------------------

    @staticmethod
    def _extract_combo_options(input_val: Any) -> list[str]:
        """
        Extract option list from a ComfyUI input definition.

        Handles both formats:
          Old: [["option1", "option2", ...]]
          New: ["COMBO", {"options": ["option1", "option2", ...]}]
        """
        if not isinstance(input_val, list) or not input_val:
            return []
        first = input_val[0]
        if isinstance(first, list):
            return [str(item) for item in first]
        if isinstance(first, str) and len(input_val) > 1 and isinstance(input_val[1], dict):
            return [str(item) for item in input_val[1].get("options", [])]
        return []

    async def _node_input_options(self, class_name: str, field_name: str) -> list[str] | None:
        """Return combo options of one node input, or None when unavailable."""
        session = await self._get_session()
        url = f"{self.base_url}/object_info/{class_name}"
        try:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=DISCOVERY_TIMEOUT)
            ) as resp:
                if resp.status != 200:
                    logger.debug("object_info/%s returned %s", class_name, resp.status)
                    return None
                data: dict[str, Any] = await resp.json()
        except (*_TRANSPORT_ERRORS, ValueError):
            logger.debug("Failed to fetch object_info/%s", class_name, exc_info=True)
            return None

        node = data.get(class_name, {})
        if not isinstance(node, dict):
            return []
        raw = node.get("input", {}).get("required", {}).get(field_name, [])
        return self._extract_combo_options(raw)

    async def list_checkpoints(self) -> list[str]:
        checkpoints = await self._node_input_options("CheckpointLoaderSimple", "ckpt_name")
        return sorted(checkpoints or [])

    async def list_loras(self) -> list[str]:
        loras = await self._node_input_options("LoraLoader", "lora_name")
        if loras is None:
            loras = await self._node_input_options("LoRALoader", "lora_name") or []
        return sorted(name for name in loras if name.endswith(LORA_SUFFIXES))

    async def list_controlnets(self) -> list[str]:
        names = await self._node_input_options("ControlNetLoader", "control_net_name") or []
        return sorted(
            name for name in names if any(marker in name for marker in CONTROLNET_MARKERS)
        )

    async def check_connection(self) -> ConnectionStatus:
        """Probe /system_stats; never raises."""
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url}/system_stats",
                timeout=aiohttp.ClientTimeout(total=HEALTH_TIMEOUT),
            ) as resp:
                if resp.status == 200:
                    return ConnectionStatus(connected=True, url=self.base_url)
                return ConnectionStatus(
                    connected=False,
                    url=self.base_url,
                    error=f"Status {resp.status}",
                )
        except _TRANSPORT_ERRORS as exc:
            return ConnectionStatus(
                connected=False,
                url=self.base_url,
                error=str(exc) or type(exc).__name__,
            )

    # -- reference uploads ---------------------------------------------------

    async def upload_image(self, image: ImageBuffer) -> UploadedImageHandle:
        """Upload an image to the ComfyUI input folder."""
        session = await self._get_session()
        filename = image.upload_name(f"studio_ref_{uuid.uuid4().hex}")
        form = aiohttp.FormData()
        form.add_field(
            "image",
            image.data,
            filename=filename,
            content_type=image.mime_type,
        )
        form.add_field("type", "input")
        form.add_field("overwrite", "true")

        try:
            async with session.post(
                f"{self.base_url}/upload/image",
                data=form,
                timeout=aiohttp.ClientTimeout(total=UPLOAD_TIMEOUT),
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    raise UploadError(f"Upload failed: {error_text or resp.reason}")
                data: dict[str, Any] = await resp.json()
        except _TRANSPORT_ERRORS as exc:
            raise ServiceConnectionError(
                f"Cannot connect to ComfyUI at {self.base_url}: {exc}"
            ) from exc

        return UploadedImageHandle(
            filename=str(data.get("name") or filename),
            subfolder=str(data.get("subfolder") or ""),
        )

    async def stage_images(self, images: Sequence[ImageBuffer]) -> list[UploadedImageHandle]:
        """Upload images concurrently; handles keep the input order."""
        if not images:
            return []
        return list(await asyncio.gather(*(self.upload_image(image) for image in images)))

    # -- queue & poll --------------------------------------------------------

    @staticmethod
    def _submission_error_message(body: str, reason: str | None, status: int) -> str:
        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError:
            data = None

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                return str(error.get("message") or error.get("type") or error)
            return str(error)
        if body.strip():
            return body.strip()
        return reason or f"ComfyUI returned status {status}. Is ComfyUI running?"

    async def queue_prompt(
        self,
        workflow: WorkflowGraph | dict[str, Any],
        *,
        client_id: str | None = None,
    ) -> str:
        """Send a workflow to the queue. Returns the prompt_id."""
        session = await self._get_session()
        if isinstance(workflow, WorkflowGraph):
            workflow = workflow.to_api_payload()
        payload = {"prompt": workflow, "client_id": client_id or uuid.uuid4().hex}

        url = f"{self.base_url}/prompt"
        try:
            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise SubmissionError(
                        self._submission_error_message(body, resp.reason, resp.status)
                    )
                data = await resp.json()
        except _TRANSPORT_ERRORS as exc:
            raise ServiceConnectionError(
                f"Cannot connect to ComfyUI at {self.base_url}. Make sure ComfyUI is running."
            ) from exc

        prompt_id = data.get("prompt_id", "") if isinstance(data, dict) else ""
        if not prompt_id:
            raise SubmissionError(f"ComfyUI did not return prompt_id: {data}")
        logger.info("Queued prompt %s", prompt_id)
        return str(prompt_id)

    async def fetch_history(self, prompt_id: str) -> dict[str, Any] | None:
        """Return the history record of ``prompt_id`` or None while absent."""
        session = await self._get_session()
        url = f"{self.base_url}/history/{prompt_id}"
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    logger.debug("History for %s returned %s", prompt_id, resp.status)
                    return None
                data = await resp.json()
        except _TRANSPORT_ERRORS as exc:
            raise ServiceConnectionError(
                f"Lost connection to ComfyUI while polling {prompt_id}: {exc}"
            ) from exc

        if not isinstance(data, dict):
            return None
        entry = data.get(prompt_id)
        return entry if isinstance(entry, dict) else None

    async def fetch_image_data_url(self, img_info: dict[str, Any]) -> str:
        session = await self._get_session()
        params = {
            "filename": str(img_info.get("filename") or ""),
            "subfolder": str(img_info.get("subfolder") or ""),
            "type": str(img_info.get("type") or "output"),
        }
        try:
            async with session.get(f"{self.base_url}/view", params=params) as resp:
                if resp.status != 200:
                    raise ExecutionError(
                        f"Failed to fetch image {params['filename']} from ComfyUI "
                        f"(status {resp.status})"
                    )
                image_bytes = await resp.read()
                content_type = resp.headers.get("Content-Type", "image/png")
        except _TRANSPORT_ERRORS as exc:
            raise ServiceConnectionError(
                f"Lost connection to ComfyUI while downloading {params['filename']}: {exc}"
            ) from exc

        return to_data_url(image_bytes, content_type.split(";", 1)[0].strip())

    @staticmethod
    def _first_image_info(history_entry: dict[str, Any]) -> dict[str, Any] | None:
        outputs = history_entry.get("outputs", {})
        if not isinstance(outputs, dict):
            return None
        # Service iteration order, not sorted by node id.
        for node_output in outputs.values():
            if not isinstance(node_output, dict):
                continue
            node_images = node_output.get("images")
            if isinstance(node_images, list) and node_images:
                first = node_images[0]
                if isinstance(first, dict):
                    return first
        return None

    @staticmethod
    def _terminal_failure(history_entry: dict[str, Any]) -> str | None:
        """Reason when the record reports a finished job that cannot yield an image."""
        status = history_entry.get("status")
        if not isinstance(status, dict):
            return None

        for msg in status.get("messages", []) or []:
            if isinstance(msg, list) and msg and msg[0] == "execution_error":
                details = msg[1] if len(msg) > 1 else {}
                if isinstance(details, dict):
                    return str(
                        details.get("exception_message")
                        or details.get("exception_type")
                        or "Unknown error"
                    )
                return str(details)

        if status.get("status_str") == "error":
            return "ComfyUI reported an execution error"
        if status.get("completed", False):
            return "ComfyUI finished the workflow without producing an image"
        return None

    async def poll_once(self, prompt_id: str) -> PollResult:
        entry = await self.fetch_history(prompt_id)
        if entry is None:
            return Pending()

        img_info = self._first_image_info(entry)
        if img_info is not None:
            return Ready(await self.fetch_image_data_url(img_info))

        reason = self._terminal_failure(entry)
        if reason is not None:
            return Failed(reason)
        return Pending()

    async def wait_for_image(
        self,
        prompt_id: str,
        *,
        max_attempts: int | None = None,
        poll_interval: float | None = None,
    ) -> str:
        """
        Poll /history/{prompt_id} until an output image appears.
        Returns the image as a base64 data URL.
        """
        max_attempts = self.max_poll_attempts if max_attempts is None else max_attempts
        poll_interval = self.poll_interval if poll_interval is None else poll_interval

        for attempt in range(1, max_attempts + 1):
            result = await self.poll_once(prompt_id)
            if isinstance(result, Ready):
                logger.info("Prompt %s produced an image after %d polls", prompt_id, attempt)
                return result.image_data_url
            if isinstance(result, Failed):
                raise ExecutionError(f"ComfyUI execution error: {result.reason}")
            if attempt < max_attempts:
                await asyncio.sleep(poll_interval)

        raise GenerationTimeoutError(
            f"ComfyUI generation timed out after {max_attempts} polls ({prompt_id})"
        )

    async def run(
        self,
        graph: WorkflowGraph,
        *,
        max_attempts: int | None = None,
        poll_interval: float | None = None,
    ) -> str:
        """Queue ``graph`` and wait for its first output image."""
        prompt_id = await self.queue_prompt(graph)
        return await self.wait_for_image(
            prompt_id,
            max_attempts=max_attempts,
            poll_interval=poll_interval,
        )
