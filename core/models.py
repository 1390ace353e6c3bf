from __future__ import annotations

import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Union

from core.image_utils import detect_mime_type, extension_for_mime, to_data_url

DEFAULT_NEGATIVE_PROMPT = "low quality, blurry, distorted"

MAX_LORAS = 3
MAX_CONTROLNETS = 2
MAX_BATCH_COUNT = 9
MAX_SEED = 2**64 - 1

ALTERNATE_ARCHITECTURE_MARKERS = ("z_image", "z-image")


class Backend(str, Enum):
    NODE_GRAPH = "comfyui"
    PROMPTING_SERVICE = "gemini"


@dataclass(frozen=True)
class ImageBuffer:
    """In-memory image with its declared MIME type."""

    data: bytes
    mime_type: str = "image/png"
    filename: str = ""

    @classmethod
    def from_bytes(cls, data: bytes, *, filename: str = "", mime_type: str = "") -> ImageBuffer:
        return cls(data=data, mime_type=mime_type or detect_mime_type(data), filename=filename)

    def upload_name(self, stem: str) -> str:
        return self.filename or f"{stem}.{extension_for_mime(self.mime_type)}"

    def to_data_url(self) -> str:
        return to_data_url(self.data, self.mime_type)


@dataclass(frozen=True)
class LoraEntry:
    name: str
    strength: float = 1.0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("LoRA name is empty")
        if not 0.0 <= self.strength <= 1.5:
            raise ValueError(f"LoRA strength must be in 0..1.5, got {self.strength}")


@dataclass(frozen=True)
class ControlNetEntry:
    model_name: str
    image: ImageBuffer
    strength: float = 1.0

    def __post_init__(self) -> None:
        if not self.model_name:
            raise ValueError("ControlNet model name is empty")
        if not 0.0 <= self.strength <= 2.0:
            raise ValueError(f"ControlNet strength must be in 0..2, got {self.strength}")


@dataclass(frozen=True)
class GenerationSpec:
    """One generation request, built per user action and consumed once."""

    prompt: str
    negative_prompt: str = ""
    checkpoint_name: str = ""
    width: int = 512
    height: int = 768
    steps: int | None = None
    cfg: float | None = None
    sampler_name: str = "dpmpp_2m"
    scheduler: str = "karras"
    denoise: float = 1.0
    seed: int | None = None
    temperature: float = 0.7
    batch_count: int = 1
    reference_images: tuple[ImageBuffer, ...] = ()
    lora_stack: tuple[LoraEntry, ...] = ()
    control_net_stack: tuple[ControlNetEntry, ...] = ()

    def __post_init__(self) -> None:
        # Lists are accepted for convenience but stored as tuples.
        for name in ("reference_images", "lora_stack", "control_net_stack"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

        if self.width < 1 or self.height < 1:
            raise ValueError("width and height must be positive")
        if self.steps is not None and self.steps < 1:
            raise ValueError("steps must be positive")
        if self.cfg is not None and self.cfg < 0:
            raise ValueError("cfg must be non-negative")
        if not 0.0 <= self.denoise <= 1.0:
            raise ValueError("denoise must be in 0..1")
        if self.seed is not None and not 0 <= self.seed <= MAX_SEED:
            raise ValueError(f"seed must be in 0..{MAX_SEED}")
        if not 1 <= self.batch_count <= MAX_BATCH_COUNT:
            raise ValueError(f"batch_count must be in 1..{MAX_BATCH_COUNT}")
        if len(self.lora_stack) > MAX_LORAS:
            raise ValueError(f"at most {MAX_LORAS} LoRAs are supported")
        if len(self.control_net_stack) > MAX_CONTROLNETS:
            raise ValueError(f"at most {MAX_CONTROLNETS} ControlNets are supported")

    @property
    def resolved_negative_prompt(self) -> str:
        if self.negative_prompt.strip():
            return self.negative_prompt
        return DEFAULT_NEGATIVE_PROMPT

    @property
    def is_alternate_architecture(self) -> bool:
        return is_alternate_architecture(self.checkpoint_name)

    @property
    def is_turbo(self) -> bool:
        return "turbo" in self.checkpoint_name.lower()

    def with_seed(self, seed: int | None = None) -> GenerationSpec:
        """Return a copy whose seed is fixed (random when ``seed`` is None)."""
        if seed is None:
            seed = self.seed if self.seed is not None else random_seed()
        return replace(self, seed=seed)


def is_alternate_architecture(checkpoint_name: str) -> bool:
    lowered = checkpoint_name.lower()
    return any(marker in lowered for marker in ALTERNATE_ARCHITECTURE_MARKERS)


def random_seed() -> int:
    return random.randint(0, 2**63 - 1)


@dataclass(frozen=True)
class UploadedImageHandle:
    filename: str
    subfolder: str = ""

    @property
    def workflow_name(self) -> str:
        return f"{self.subfolder}/{self.filename}" if self.subfolder else self.filename


# -- poll outcomes ------------------------------------------------------------


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Ready:
    image_data_url: str


@dataclass(frozen=True)
class Failed:
    reason: str


PollResult = Union[Pending, Ready, Failed]


# -- normalized results -------------------------------------------------------


@dataclass(frozen=True)
class ImageResult:
    data_url: str
    model_used: str
    seed: int | None = None


@dataclass(frozen=True)
class TextResult:
    text: str
    model_used: str
    seed: int | None = None


GenerationResult = Union[ImageResult, TextResult]


@dataclass
class ConnectionStatus:
    connected: bool
    url: str
    error: str | None = None
