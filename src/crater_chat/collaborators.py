"""Interfaces and default implementations of the engine's collaborators.

The engine only consumes the shapes defined here: an image provider that
returns URLs or inline base64 payloads with opaque usage/cost metadata, and
an image saver that turns inline bytes into a file path.
"""

import asyncio
import base64
import binascii
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import get_image_save_path, is_auto_save_enabled

logger = logging.getLogger(__name__)

# 1x1 transparent PNG
_PLACEHOLDER_PNG = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@dataclass
class GeneratedImage:
    """One image from a provider: either a remote URL or inline base64."""

    url: Optional[str] = None
    base64: Optional[str] = None


@dataclass
class GenerationResult:
    images: list[GeneratedImage] = field(default_factory=list)
    usage: Optional[dict] = None
    cost: Optional[dict] = None


class ImageProvider(ABC):
    """Base class for image-generation backends."""

    name: str

    @abstractmethod
    async def generate_images(self, prompt: str, model: str | None = None) -> GenerationResult:
        """Generate images for a prompt."""
        ...


class MockImageProvider(ImageProvider):
    """Offline provider that answers every prompt with a placeholder PNG."""

    name = "mock"

    def __init__(self, count: int = 1, delay: float = 0.0):
        self.count = count
        self.delay = delay

    async def generate_images(self, prompt: str, model: str | None = None) -> GenerationResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        prompt_tokens = len(prompt) // 4
        return GenerationResult(
            images=[GeneratedImage(base64=_PLACEHOLDER_PNG) for _ in range(self.count)],
            usage={
                "inputTextTokens": prompt_tokens,
                "outputImageTokens": 0,
                "totalTokens": prompt_tokens,
            },
            cost={"totalCost": 0.0, "currency": "USD"},
        )


class FileImageSaver:
    """Writes generated images as PNG files named after their prompt."""

    def __init__(self, directory: Path | None = None, enabled: bool | None = None):
        self.directory = Path(directory) if directory is not None else get_image_save_path()
        self.enabled = is_auto_save_enabled() if enabled is None else enabled

    def save(self, base64_data: str, prompt: str) -> str | None:
        """Return the saved file path, or None when disabled or on failure."""
        if not self.enabled:
            return None

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self.directory / image_filename(prompt)
            suffix = 1
            while path.exists():
                path = path.with_name(f"{path.stem.rsplit('~', 1)[0]}~{suffix}{path.suffix}")
                suffix += 1
            path.write_bytes(base64.b64decode(base64_data))
        except (OSError, binascii.Error, ValueError) as e:
            logger.error("Error saving image for %r: %s", prompt, e)
            return None

        logger.info("Image saved to: %s", path)
        return str(path)


def image_filename(prompt: str, now: datetime | None = None) -> str:
    """Build ``<sanitized prompt>_<timestamp>.png``."""
    now = now or datetime.now(timezone.utc)
    timestamp = re.sub(r"[:.]", "-", now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z")
    sanitized = re.sub(r"[^a-z0-9\s-]", "", prompt.lower())
    sanitized = re.sub(r"\s+", "-", sanitized)[:50]
    return f"{sanitized}_{timestamp}.png"


def resolve_file_reference(path: str) -> str | None:
    """Return a presentable ``file://`` reference for a saved image."""
    file_path = Path(path)
    if not file_path.is_file():
        return None
    return file_path.resolve().as_uri()
