from __future__ import annotations

from io import BytesIO

import pytest
from PIL import Image

import studio
from core.image_utils import to_data_url
from core.models import ImageBuffer, ImageResult, LoraEntry
from studio import build_parser, main, parse_controlnet, parse_lora, save_image_result, spec_from_args


def _png_file(tmp_path, name: str = "pose.png"):
    buffer = BytesIO()
    Image.new("RGB", (2, 2)).save(buffer, format="PNG")
    path = tmp_path / name
    path.write_bytes(buffer.getvalue())
    return path


def test_parse_lora() -> None:
    assert parse_lora("style.safetensors") == LoraEntry(name="style.safetensors")
    assert parse_lora("style.safetensors:0.6") == LoraEntry(name="style.safetensors", strength=0.6)
    with pytest.raises(ValueError):
        parse_lora("style.safetensors:3")


def test_parse_controlnet(tmp_path) -> None:
    path = _png_file(tmp_path)

    entry = parse_controlnet(f"openpose.pth:{path}:1.5")

    assert entry.model_name == "openpose.pth"
    assert entry.strength == 1.5
    assert entry.image.mime_type == "image/png"
    assert entry.image.filename == "pose.png"
    with pytest.raises(ValueError):
        parse_controlnet("openpose.pth")


def test_parse_controlnet_accepts_colons_in_image_path(monkeypatch) -> None:
    read: list[str] = []

    def fake_read(path: str) -> ImageBuffer:
        read.append(path)
        return ImageBuffer(b"png")

    monkeypatch.setattr(studio, "_read_image", fake_read)

    entry = parse_controlnet(r"depth.pth:C:\imgs\pose.png:0.75")
    assert entry.model_name == "depth.pth"
    assert entry.strength == 0.75

    entry = parse_controlnet(r"depth.pth:C:\imgs\pose.png")
    assert entry.strength == 1.0

    assert read == [r"C:\imgs\pose.png", r"C:\imgs\pose.png"]


def test_parse_controlnet_reads_file_with_colon_in_name(tmp_path) -> None:
    path = _png_file(tmp_path, "shot:01.png")

    entry = parse_controlnet(f"depth.pth:{path}")

    assert entry.image.filename == "shot:01.png"
    assert entry.strength == 1.0


def test_spec_from_args(tmp_path) -> None:
    reference = _png_file(tmp_path, "ref.png")
    args = build_parser().parse_args(
        [
            "a lighthouse",
            "--checkpoint",
            "sd15.safetensors",
            "--steps",
            "30",
            "--seed",
            "5",
            "--lora",
            "a.safetensors:0.5",
            "--lora",
            "b.safetensors",
            "--reference",
            str(reference),
        ]
    )

    spec = spec_from_args(args)

    assert spec.prompt == "a lighthouse"
    assert spec.steps == 30
    assert spec.cfg is None
    assert spec.seed == 5
    assert [entry.name for entry in spec.lora_stack] == ["a.safetensors", "b.safetensors"]
    assert len(spec.reference_images) == 1


def test_save_image_result(tmp_path) -> None:
    result = ImageResult(data_url=to_data_url(b"jpegdata", "image/jpeg"), model_used="m", seed=3)

    path = save_image_result(result, None, str(tmp_path / "out"))

    assert path.suffix == ".jpg"
    assert path.read_bytes() == b"jpegdata"


def test_main_requires_prompt() -> None:
    assert main([]) == 2
    assert main(["cat", "--batch", "12"]) == 2
