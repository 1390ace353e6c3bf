import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

DEFAULT_GEMINI_MODELS = (
    "gemini-3-pro-image-preview",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_csv(name: str, default: tuple[str, ...]) -> list[str]:
    raw = _env(name, "")
    if not raw.strip():
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _strip_trailing_slash(url: str) -> str:
    return url.rstrip("/")


@dataclass
class Config:
    comfyui_url: str = "http://127.0.0.1:8000"

    # Prompting service (Gemini)
    google_api_key: str = ""
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_models: list[str] = field(default_factory=lambda: list(DEFAULT_GEMINI_MODELS))
    prompting_timeout: float = 60.0

    # Polling
    max_poll_attempts: int = 180
    poll_interval: float = 1.0

    # Fixed model files referenced by the workflow builder
    ipadapter_model: str = "ip-adapter_sd15.safetensors"
    clip_vision_model: str = "CLIP-ViT-H-14-laion2B-s32B-b79K.safetensors"
    zimage_text_encoder: str = "qwen_3_4b.safetensors"
    zimage_vae: str = "ae.safetensors"

    output_dir: str = "outputs"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            comfyui_url=_strip_trailing_slash(
                _env("COMFYUI_URL", "http://127.0.0.1:8000")
            ),
            google_api_key=(
                _env("GOOGLE_API_KEY", "").strip()
                or _env("NEXT_PUBLIC_GOOGLE_API_KEY", "").strip()
            ),
            gemini_api_url=_strip_trailing_slash(
                _env(
                    "GEMINI_API_URL",
                    "https://generativelanguage.googleapis.com/v1beta",
                )
            ),
            gemini_models=_env_csv("GEMINI_MODELS", DEFAULT_GEMINI_MODELS),
            prompting_timeout=_env_float("PROMPTING_TIMEOUT", 60.0),
            max_poll_attempts=_env_int("COMFYUI_MAX_POLL_ATTEMPTS", 180),
            poll_interval=_env_float("COMFYUI_POLL_INTERVAL", 1.0),
            ipadapter_model=_env("IPADAPTER_MODEL", "ip-adapter_sd15.safetensors"),
            clip_vision_model=_env(
                "CLIP_VISION_MODEL",
                "CLIP-ViT-H-14-laion2B-s32B-b79K.safetensors",
            ),
            zimage_text_encoder=_env("ZIMAGE_TEXT_ENCODER", "qwen_3_4b.safetensors"),
            zimage_vae=_env("ZIMAGE_VAE", "ae.safetensors"),
            output_dir=_env("OUTPUT_DIR", "outputs"),
        )

    @property
    def prompting_enabled(self) -> bool:
        return bool(self.google_api_key.strip())
