"""
Command-line front end for the image studio generation core.

Features:
- generate one image with ComfyUI (checkpoint, LoRA stack, ControlNet stack,
  reference images) or with the Gemini prompting service
- --list-models — list checkpoints, LoRAs and ControlNets installed in ComfyUI
- --check — probe the ComfyUI server
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
import time
from pathlib import Path

from config import Config
from core.errors import GenerationError
from core.image_utils import extension_for_mime, parse_data_url
from core.models import (
    Backend,
    ControlNetEntry,
    GenerationSpec,
    ImageBuffer,
    ImageResult,
    LoraEntry,
)
from image_service import ImageService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_STRENGTH_SUFFIX_RE = re.compile(r"(.+):(\d+(?:\.\d*)?|\.\d+)")


def _read_image(path: str) -> ImageBuffer:
    file_path = Path(path)
    return ImageBuffer.from_bytes(file_path.read_bytes(), filename=file_path.name)


def parse_lora(raw: str) -> LoraEntry:
    name, sep, strength = raw.rpartition(":")
    if not sep:
        return LoraEntry(name=raw)
    return LoraEntry(name=name, strength=float(strength))


def parse_controlnet(raw: str) -> ControlNetEntry:
    model_name, sep, rest = raw.partition(":")
    if not sep or not model_name or not rest:
        raise ValueError(f"expected MODEL:IMAGE[:STRENGTH], got {raw!r}")
    # The image path may contain ":" itself (Windows drives).
    match = _STRENGTH_SUFFIX_RE.fullmatch(rest)
    image_path, strength = (match.group(1), float(match.group(2))) if match else (rest, 1.0)
    return ControlNetEntry(model_name=model_name, image=_read_image(image_path), strength=strength)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("prompt", nargs="?", default="")
    parser.add_argument(
        "--backend",
        choices=[backend.value for backend in Backend],
        default=Backend.NODE_GRAPH.value,
    )
    parser.add_argument("--negative", default="")
    parser.add_argument("--checkpoint", default="")
    parser.add_argument("--width", type=int, default=512)
    parser.add_argument("--height", type=int, default=768)
    parser.add_argument("--steps", type=int)
    parser.add_argument("--cfg", type=float)
    parser.add_argument("--sampler", default="dpmpp_2m")
    parser.add_argument("--scheduler", default="karras")
    parser.add_argument("--denoise", type=float, default=1.0)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--temperature", type=float, default=0.7)
    parser.add_argument("--batch", type=int, default=1)
    parser.add_argument("--lora", action="append", default=[], help="NAME[:STRENGTH]")
    parser.add_argument("--controlnet", action="append", default=[], help="MODEL:IMAGE[:STRENGTH]")
    parser.add_argument("--reference", action="append", default=[], help="reference image path")
    parser.add_argument("--out", help="output file for image results")
    parser.add_argument("--list-models", action="store_true")
    parser.add_argument("--check", action="store_true")
    return parser


def spec_from_args(args: argparse.Namespace) -> GenerationSpec:
    return GenerationSpec(
        prompt=args.prompt,
        negative_prompt=args.negative,
        checkpoint_name=args.checkpoint,
        width=args.width,
        height=args.height,
        steps=args.steps,
        cfg=args.cfg,
        sampler_name=args.sampler,
        scheduler=args.scheduler,
        denoise=args.denoise,
        seed=args.seed,
        temperature=args.temperature,
        batch_count=args.batch,
        reference_images=tuple(_read_image(path) for path in args.reference),
        lora_stack=tuple(parse_lora(raw) for raw in args.lora),
        control_net_stack=tuple(parse_controlnet(raw) for raw in args.controlnet),
    )


def save_image_result(result: ImageResult, out: str | None, output_dir: str) -> Path:
    mime, payload = parse_data_url(result.data_url)
    if out:
        target = Path(out)
    else:
        name = f"studio_{int(time.time())}_{result.seed or 0}.{extension_for_mime(mime)}"
        target = Path(output_dir) / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload)
    return target


async def run(args: argparse.Namespace, spec: GenerationSpec | None, cfg: Config) -> int:
    service = ImageService(cfg)
    try:
        if args.check:
            status = await service.check_connection()
            if status.connected:
                print(f"ComfyUI is reachable at {status.url}")
                return 0
            print(f"ComfyUI is NOT reachable at {status.url}: {status.error}")
            return 1

        if args.list_models:
            for title, names in (
                ("Checkpoints", await service.list_checkpoints()),
                ("LoRAs", await service.list_loras()),
                ("ControlNets", await service.list_controlnets()),
            ):
                print(f"{title}:")
                for name in names:
                    print(f"  {name}")
            return 0

        if spec is None:
            return 2

        result = await service.generate(spec, Backend(args.backend))
        if isinstance(result, ImageResult):
            path = save_image_result(result, args.out, cfg.output_dir)
            print(f"Saved {path} (model {result.model_used}, seed {result.seed})")
        else:
            print(result.text)
        return 0
    except GenerationError as exc:
        hint = "try again later" if exc.retryable else "check your input"
        logger.error("%s: %s (%s)", type(exc).__name__, exc, hint)
        return 1
    finally:
        await service.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    spec: GenerationSpec | None = None
    if not (args.check or args.list_models):
        if not args.prompt.strip():
            logger.error("A prompt is required")
            return 2
        try:
            spec = spec_from_args(args)
        except (ValueError, OSError) as exc:
            logger.error("Invalid generation options: %s", exc)
            return 2
    return asyncio.run(run(args, spec, Config.from_env()))


if __name__ == "__main__":
    sys.exit(main())
