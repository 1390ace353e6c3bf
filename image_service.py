"""Single entry point dispatching a generation request to one backend."""

from __future__ import annotations

import asyncio
import logging

from comfyui_client import ComfyUIClient
from config import Config
from core.models import (
    Backend,
    ConnectionStatus,
    GenerationResult,
    GenerationSpec,
    ImageResult,
)
from core.workflow_builder import WorkflowDefaults, build_workflow
from prompting_service import PromptingService

logger = logging.getLogger(__name__)


class ImageService:
    def __init__(
        self,
        config: Config,
        *,
        comfy_client: ComfyUIClient | None = None,
        prompting: PromptingService | None = None,
    ) -> None:
        self.config = config
        self.comfy = comfy_client or ComfyUIClient(config)
        self.prompting = prompting or PromptingService(config)
        self.workflow_defaults = WorkflowDefaults.from_config(config)

    async def close(self) -> None:
        await self.prompting.close()
        await self.comfy.close()

    async def generate(self, spec: GenerationSpec, backend: Backend) -> GenerationResult:
        """Run ``spec`` on ``backend``; the seed used is returned on the result."""
        if backend is Backend.NODE_GRAPH:
            return await self._generate_with_comfy(spec.with_seed())
        if backend is Backend.PROMPTING_SERVICE:
            return await self._generate_with_prompting(spec)
        raise ValueError(f"Unsupported backend: {backend}")

    async def _generate_with_comfy(self, spec: GenerationSpec) -> ImageResult:
        if spec.is_alternate_architecture:
            references, control_images = [], []
        else:
            references, control_images = await asyncio.gather(
                self.comfy.stage_images(spec.reference_images),
                self.comfy.stage_images([entry.image for entry in spec.control_net_stack]),
            )

        graph = build_workflow(
            spec,
            references=references,
            control_images=control_images,
            defaults=self.workflow_defaults,
        )
        logger.info(
            "Submitting %d-node workflow for checkpoint %s (seed %s)",
            len(graph),
            spec.checkpoint_name or "<none>",
            spec.seed,
        )
        data_url = await self.comfy.run(graph)
        return ImageResult(data_url=data_url, model_used=spec.checkpoint_name, seed=spec.seed)

    async def _generate_with_prompting(self, spec: GenerationSpec) -> GenerationResult:
        return await self.prompting.complete(
            spec.prompt,
            spec.reference_images,
            temperature=spec.temperature,
            seed=spec.seed,
        )

    # -- discovery -----------------------------------------------------------

    async def list_checkpoints(self) -> list[str]:
        return await self.comfy.list_checkpoints()

    async def list_loras(self) -> list[str]:
        return await self.comfy.list_loras()

    async def list_controlnets(self) -> list[str]:
        return await self.comfy.list_controlnets()

    async def check_connection(self) -> ConnectionStatus:
        return await self.comfy.check_connection()
