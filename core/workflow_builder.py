"""
Workflow builder.

Maps a ``GenerationSpec`` to a ``WorkflowGraph``. One of four graph shapes
is produced depending on the checkpoint family and the optional inputs:

  Alternate:  UNET/CLIP/VAE loaders -> CLIP Text Encode x2 -> KSampler -> VAE Decode -> Save
  ControlNet: Checkpoint -> (IP-Adapter chain) -> (LoRA chain) -> CLIP Text Encode x2 ->
              ControlNet chain on positive conditioning -> KSampler -> VAE Decode -> Save
  Adapter:    Checkpoint -> IP-Adapter chain -> (LoRA chain) -> CLIP Text Encode x2 ->
              KSampler -> VAE Decode -> Save
  Standard:   Checkpoint -> (LoRA chain) -> CLIP Text Encode x2 -> KSampler -> VAE Decode -> Save

The builder performs no I/O: image inputs must already be uploaded handles.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from core.models import (
    ControlNetEntry,
    GenerationSpec,
    LoraEntry,
    UploadedImageHandle,
    is_alternate_architecture,
    random_seed,
)
from core.workflow_graph import NodeKind, NodeRef, WorkflowGraph

if TYPE_CHECKING:
    from config import Config

CREATIVE_DESCRIPTION_MARKER = "[CREATIVE DESCRIPTION]\n"

DEFAULT_STEPS = 25
DEFAULT_CFG = 7.0
TURBO_STEPS = 8
TURBO_CFG = 1.5
ALTERNATE_STEPS = 8
ALTERNATE_CFG = 1.0

ADAPTER_WEIGHT = 0.8


class WorkflowVariant(str, Enum):
    ALTERNATE = "alternate"
    CONTROLNET = "controlnet"
    ADAPTER = "adapter"
    STANDARD = "standard"


@dataclass(frozen=True)
class WorkflowDefaults:
    """Fixed model files and output naming used by generated graphs."""

    ipadapter_model: str = "ip-adapter_sd15.safetensors"
    clip_vision_model: str = "CLIP-ViT-H-14-laion2B-s32B-b79K.safetensors"
    alternate_text_encoder: str = "qwen_3_4b.safetensors"
    alternate_text_encoder_type: str = "lumina_2"
    alternate_vae: str = "ae.safetensors"
    filename_prefix: str = "ImageStudio"

    @classmethod
    def from_config(cls, cfg: Config) -> WorkflowDefaults:
        return cls(
            ipadapter_model=cfg.ipadapter_model,
            clip_vision_model=cfg.clip_vision_model,
            alternate_text_encoder=cfg.zimage_text_encoder,
            alternate_vae=cfg.zimage_vae,
        )

    def prefix_for(self, variant: WorkflowVariant) -> str:
        suffix = {
            WorkflowVariant.ALTERNATE: "_ZImage",
            WorkflowVariant.CONTROLNET: "_CN",
            WorkflowVariant.ADAPTER: "_IPA",
            WorkflowVariant.STANDARD: "",
        }[variant]
        return f"{self.filename_prefix}{suffix}"


def select_variant(
    checkpoint_name: str,
    control_net_count: int,
    reference_count: int,
) -> WorkflowVariant:
    if is_alternate_architecture(checkpoint_name):
        return WorkflowVariant.ALTERNATE
    if control_net_count > 0:
        return WorkflowVariant.CONTROLNET
    if reference_count > 0:
        return WorkflowVariant.ADAPTER
    return WorkflowVariant.STANDARD


def extract_creative_description(prompt: str) -> str:
    """Return the first line after the creative-description marker, if any."""
    if CREATIVE_DESCRIPTION_MARKER not in prompt:
        return prompt
    segment = prompt.split(CREATIVE_DESCRIPTION_MARKER, 1)[1]
    return segment.split("\n", 1)[0] or prompt


# ---------------------------------------------------------------------------
# Chain state
# ---------------------------------------------------------------------------


@dataclass
class _ChainState:
    """Current model/clip/vae/conditioning outputs while the graph grows."""

    model: NodeRef
    clip: NodeRef
    vae: NodeRef
    positive: NodeRef | None = None
    negative: NodeRef | None = None


@dataclass(frozen=True)
class _SamplingParams:
    seed: int
    steps: int
    cfg: float
    sampler_name: str
    scheduler: str
    denoise: float
    width: int
    height: int
    batch_size: int


def _sampling_params(spec: GenerationSpec, variant: WorkflowVariant) -> _SamplingParams:
    seed = spec.seed if spec.seed is not None else random_seed()
    if variant is WorkflowVariant.ALTERNATE:
        return _SamplingParams(
            seed=seed,
            steps=spec.steps if spec.steps is not None else ALTERNATE_STEPS,
            cfg=spec.cfg if spec.cfg is not None else ALTERNATE_CFG,
            sampler_name="euler",
            scheduler="simple",
            denoise=1.0,
            width=spec.width,
            height=spec.height,
            batch_size=1,
        )

    if spec.is_turbo:
        steps, cfg = TURBO_STEPS, TURBO_CFG
    else:
        steps = spec.steps if spec.steps is not None else DEFAULT_STEPS
        cfg = spec.cfg if spec.cfg is not None else DEFAULT_CFG
    return _SamplingParams(
        seed=seed,
        steps=steps,
        cfg=cfg,
        sampler_name=spec.sampler_name,
        scheduler=spec.scheduler,
        denoise=spec.denoise,
        width=spec.width,
        height=spec.height,
        batch_size=spec.batch_count,
    )


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _add_checkpoint_loader(graph: WorkflowGraph, checkpoint_name: str) -> _ChainState:
    ckpt_id = graph.add(NodeKind.CHECKPOINT_LOADER, {"ckpt_name": checkpoint_name})
    return _ChainState(
        model=NodeRef(ckpt_id, 0),
        clip=NodeRef(ckpt_id, 1),
        vae=NodeRef(ckpt_id, 2),
    )


def _add_alternate_loaders(
    graph: WorkflowGraph,
    checkpoint_name: str,
    defaults: WorkflowDefaults,
) -> _ChainState:
    unet_id = graph.add(
        NodeKind.UNET_LOADER,
        {"unet_name": checkpoint_name, "weight_dtype": "default"},
    )
    clip_id = graph.add(
        NodeKind.CLIP_LOADER,
        {
            "clip_name": defaults.alternate_text_encoder,
            "type": defaults.alternate_text_encoder_type,
        },
    )
    vae_id = graph.add(NodeKind.VAE_LOADER, {"vae_name": defaults.alternate_vae})
    return _ChainState(
        model=NodeRef(unet_id, 0),
        clip=NodeRef(clip_id, 0),
        vae=NodeRef(vae_id, 0),
    )


def _apply_lora_chain(
    graph: WorkflowGraph,
    state: _ChainState,
    loras: Sequence[LoraEntry],
) -> None:
    for lora in loras:
        lora_id = graph.add(
            NodeKind.LORA_LOADER,
            {
                "lora_name": lora.name,
                "strength_model": lora.strength,
                "strength_clip": lora.strength,
                "model": state.model,
                "clip": state.clip,
            },
        )
        state.model = NodeRef(lora_id, 0)
        state.clip = NodeRef(lora_id, 1)


def _add_load_image(graph: WorkflowGraph, handle: UploadedImageHandle) -> str:
    return graph.add(
        NodeKind.LOAD_IMAGE,
        {"image": handle.workflow_name, "upload": "image"},
    )


def _apply_adapter_chain(
    graph: WorkflowGraph,
    state: _ChainState,
    references: Sequence[UploadedImageHandle],
    defaults: WorkflowDefaults,
) -> None:
    if not references:
        return

    ipadapter_id = graph.add(
        NodeKind.IMAGE_ADAPTER_LOADER,
        {"ipadapter_file": defaults.ipadapter_model},
    )
    clip_vision_id = graph.add(
        NodeKind.CLIP_VISION_LOADER,
        {"clip_name": defaults.clip_vision_model},
    )

    for handle in references:
        image_id = _add_load_image(graph, handle)
        encode_id = graph.add(
            NodeKind.CLIP_VISION_ENCODE,
            {
                "clip_vision": NodeRef(clip_vision_id, 0),
                "image": NodeRef(image_id, 0),
            },
        )
        apply_id = graph.add(
            NodeKind.IMAGE_ADAPTER_APPLY,
            {
                "ipadapter": NodeRef(ipadapter_id, 0),
                "model": state.model,
                "image": NodeRef(encode_id, 0),
                "weight": ADAPTER_WEIGHT,
                "noise": 0.0,
                "weight_type": "original",
                "start_at": 0.0,
                "end_at": 1.0,
                "unfold_batch": False,
            },
        )
        state.model = NodeRef(apply_id, 0)


def _add_text_encoders(
    graph: WorkflowGraph,
    state: _ChainState,
    positive_text: str,
    negative_text: str,
) -> None:
    pos_id = graph.add(NodeKind.CLIP_TEXT_ENCODE, {"text": positive_text, "clip": state.clip})
    neg_id = graph.add(NodeKind.CLIP_TEXT_ENCODE, {"text": negative_text, "clip": state.clip})
    state.positive = NodeRef(pos_id, 0)
    state.negative = NodeRef(neg_id, 0)


def _apply_controlnet_chain(
    graph: WorkflowGraph,
    state: _ChainState,
    entries: Sequence[ControlNetEntry],
    images: Sequence[UploadedImageHandle],
) -> None:
    for entry, handle in zip(entries, images):
        image_id = _add_load_image(graph, handle)
        loader_id = graph.add(
            NodeKind.CONTROLNET_LOADER,
            {"control_net_name": entry.model_name},
        )
        apply_id = graph.add(
            NodeKind.CONTROLNET_APPLY,
            {
                "conditioning": state.positive,
                "control_net": NodeRef(loader_id, 0),
                "image": NodeRef(image_id, 0),
                "strength": entry.strength,
            },
        )
        state.positive = NodeRef(apply_id, 0)


def _add_sampling_tail(
    graph: WorkflowGraph,
    state: _ChainState,
    params: _SamplingParams,
    filename_prefix: str,
) -> None:
    latent_id = graph.add(
        NodeKind.EMPTY_LATENT_IMAGE,
        {
            "width": params.width,
            "height": params.height,
            "batch_size": params.batch_size,
        },
    )
    sampler_id = graph.add(
        NodeKind.KSAMPLER,
        {
            "seed": params.seed,
            "steps": params.steps,
            "cfg": params.cfg,
            "sampler_name": params.sampler_name,
            "scheduler": params.scheduler,
            "denoise": params.denoise,
            "model": state.model,
            "positive": state.positive,
            "negative": state.negative,
            "latent_image": NodeRef(latent_id, 0),
        },
    )
    decode_id = graph.add(
        NodeKind.VAE_DECODE,
        {"samples": NodeRef(sampler_id, 0), "vae": state.vae},
    )
    graph.add(
        NodeKind.SAVE_IMAGE,
        {"filename_prefix": filename_prefix, "images": NodeRef(decode_id, 0)},
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_workflow(
    spec: GenerationSpec,
    *,
    references: Sequence[UploadedImageHandle] = (),
    control_images: Sequence[UploadedImageHandle] = (),
    defaults: WorkflowDefaults | None = None,
) -> WorkflowGraph:
    """
    Build the workflow graph for ``spec``.

    ``references`` are the uploaded handles of ``spec.reference_images`` and
    ``control_images`` the handles of ``spec.control_net_stack`` images, in the
    same order. The spec itself is never modified.
    """
    defaults = defaults or WorkflowDefaults()
    variant = select_variant(spec.checkpoint_name, len(spec.control_net_stack), len(references))
    if variant is WorkflowVariant.CONTROLNET and len(control_images) != len(
        spec.control_net_stack
    ):
        raise ValueError("control_images must match control_net_stack one to one")

    params = _sampling_params(spec, variant)
    negative_text = spec.resolved_negative_prompt
    graph = WorkflowGraph()

    if variant is WorkflowVariant.ALTERNATE:
        state = _add_alternate_loaders(graph, spec.checkpoint_name, defaults)
        _add_text_encoders(
            graph,
            state,
            extract_creative_description(spec.prompt),
            negative_text,
        )
    else:
        state = _add_checkpoint_loader(graph, spec.checkpoint_name)
        _apply_adapter_chain(graph, state, references, defaults)
        _apply_lora_chain(graph, state, spec.lora_stack)
        _add_text_encoders(graph, state, spec.prompt, negative_text)
        _apply_controlnet_chain(graph, state, spec.control_net_stack, control_images)

    _add_sampling_tail(graph, state, params, defaults.prefix_for(variant))
    graph.validate()
    return graph
