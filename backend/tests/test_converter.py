import io
import os
import shutil
import wave

import pytest
from PIL import Image

from app.errors import ConversionFailedError, UnsupportedConversionError
from app.services.converter import ConversionRunner, build_ffmpeg_args, check_supported, convert_image
from conftest import image_bytes

needs_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")


def wav_bytes(seconds: float = 0.2, rate: int = 8000) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as out:
        out.setnchannels(1)
        out.setsampwidth(2)
        out.setframerate(rate)
        out.writeframes(b"\x00\x10" * int(seconds * rate))
    return buffer.getvalue()


def write(tmp_path, name: str, data: bytes) -> str:
    path = tmp_path / name
    path.write_bytes(data)
    return str(path)


@pytest.mark.parametrize(
    "source, target",
    [("image/png", "webp"), ("video/mp4", "webm"), ("video/quicktime", "mp3"), ("audio/mpeg", "WAV")],
)
def test_supported_pairs(source, target):
    check_supported(source, target)


@pytest.mark.parametrize(
    "source, target",
    [("audio/mpeg", "png"), ("image/png", "mp4"), ("audio/x-wav", "mp4"), ("image/png", "pdf")],
)
def test_unsupported_pairs(source, target):
    with pytest.raises(UnsupportedConversionError):
        check_supported(source, target)


def test_rgba_png_to_jpeg():
    result = convert_image(image_bytes("PNG", mode="RGBA"), "jpg", quality=80)
    img = Image.open(io.BytesIO(result))
    assert img.format == "JPEG"
    assert img.mode == "RGB"


def test_jpeg_to_webp():
    result = convert_image(image_bytes("JPEG", mode="RGB"), "webp", quality=60)
    assert Image.open(io.BytesIO(result)).format == "WEBP"


def test_ffmpeg_args_for_video():
    args = build_ffmpeg_args("ffmpeg", "in.mov", "out.mp4", "mp4", "high")
    assert args[:7] == ["ffmpeg", "-y", "-hide_banner", "-loglevel", "error", "-i", "in.mov"]
    assert args[args.index("-crf") + 1] == "20"
    assert args[-1] == "out.mp4"


def test_ffmpeg_args_for_audio_extraction():
    args = build_ffmpeg_args("ffmpeg", "in.mp4", "out.mp3", "mp3", "low")
    assert "-vn" in args
    assert args[args.index("-b:a") + 1] == "96k"
    assert "-crf" not in args


def test_ffmpeg_args_for_lossless_audio():
    args = build_ffmpeg_args("ffmpeg", "in.wav", "out.flac", "flac", "medium")
    assert "-b:a" not in args


@pytest.mark.asyncio
async def test_runner_converts_image(tmp_path):
    runner = ConversionRunner(work_dir=str(tmp_path / "out"))
    source = write(tmp_path, "photo.png", image_bytes("PNG"))

    result = await runner.run(source, "image/png", "webp", "medium")

    assert result.format == "webp"
    assert result.content_type == "image/webp"
    assert result.size == os.path.getsize(result.output_path)
    assert Image.open(result.output_path).format == "WEBP"


@pytest.mark.asyncio
async def test_runner_rejects_corrupt_image(tmp_path):
    runner = ConversionRunner(work_dir=str(tmp_path / "out"))
    source = write(tmp_path, "broken.png", b"\x89PNG\r\n\x1a\n garbage")

    with pytest.raises(ConversionFailedError):
        await runner.run(source, "image/png", "jpg")
    assert os.listdir(tmp_path / "out") == []


@pytest.mark.asyncio
async def test_runner_rejects_unknown_quality(tmp_path):
    runner = ConversionRunner(work_dir=str(tmp_path / "out"))
    source = write(tmp_path, "photo.png", image_bytes("PNG"))
    with pytest.raises(UnsupportedConversionError):
        await runner.run(source, "image/png", "jpg", "ultra")


@pytest.mark.asyncio
async def test_runner_reports_missing_ffmpeg(tmp_path):
    runner = ConversionRunner(ffmpeg_binary="ffmpeg-does-not-exist", work_dir=str(tmp_path / "out"))
    source = write(tmp_path, "tone.wav", wav_bytes())

    with pytest.raises(ConversionFailedError) as excinfo:
        await runner.run(source, "audio/x-wav", "flac")
    assert "ffmpeg-does-not-exist not found" in excinfo.value.message


@needs_ffmpeg
@pytest.mark.asyncio
async def test_runner_wav_to_flac(tmp_path):
    runner = ConversionRunner(work_dir=str(tmp_path / "out"))
    source = write(tmp_path, "tone.wav", wav_bytes())

    result = await runner.run(source, "audio/x-wav", "flac")

    assert result.size > 0
    with open(result.output_path, "rb") as f:
        assert f.read(4) == b"fLaC"


@needs_ffmpeg
@pytest.mark.asyncio
async def test_runner_surfaces_ffmpeg_error(tmp_path):
    runner = ConversionRunner(work_dir=str(tmp_path / "out"))
    source = write(tmp_path, "noise.mp3", b"this is not audio at all" * 10)

    with pytest.raises(ConversionFailedError) as excinfo:
        await runner.run(source, "audio/mpeg", "wav")
    assert excinfo.value.message.startswith("Conversion failed:")
    assert os.listdir(tmp_path / "out") == []
