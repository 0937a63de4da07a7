"""
Illustration generation for novel pages.

Providers are tried in order (Cloudflare Workers AI, Hugging Face, then a
locally rendered placeholder). Each one reports a tagged result so the
chain can decide whether to move on.
"""

import hashlib
import io
import logging
import textwrap
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import httpx
from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500
MAX_PROMPT_LENGTH = 1000

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4/accounts"
CLOUDFLARE_IMAGE_MODEL = "@cf/stabilityai/stable-diffusion-xl-base-1.0"
HUGGINGFACE_API_BASE = "https://api-inference.huggingface.co/models"
HUGGINGFACE_IMAGE_MODEL = "stabilityai/stable-diffusion-xl-base-1.0"


class GenerationStatus(str, Enum):
    """Outcome of a single provider attempt."""
    SUCCESS = "success"
    SKIPPED = "skipped"      # provider not configured
    RETRYABLE = "retryable"  # provider failed, the next one may work
    FATAL = "fatal"          # the prompt itself was rejected


@dataclass
class GenerationResult:
    status: GenerationStatus
    method: str  # cloudflare, huggingface or mock
    image: Optional[bytes] = None
    error: Optional[str] = None
    fallback_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == GenerationStatus.SUCCESS


class ImageGenerationError(Exception):
    """No provider produced an image."""

    def __init__(self, message: str, attempts: List[GenerationResult]):
        super().__init__(message)
        self.attempts = attempts


STYLE_MODIFIERS = {
    "default": ("detailed illustration, high quality artwork, professional digital art",
                'from "{title}"'),
    "anime": ("anime style illustration, detailed anime artwork, vibrant colors, "
              "high quality anime illustration",
              'from anime "{title}"'),
    "realistic": ("realistic detailed illustration, photorealistic, high resolution "
                  "photography, cinematic lighting",
                  'from the novel "{title}"'),
    "artistic": ("artistic digital painting, vibrant colors, detailed artwork, "
                 "professional illustration",
                 'inspired by "{title}"'),
    "fantasy": ("fantasy art style, magical atmosphere, ethereal lighting, detailed "
                "fantasy scene, epic fantasy illustration",
                'from fantasy world of "{title}"'),
}


def build_prompt(description: str, style: str = "default", title: str = "") -> str:
    """Decorate a scene description with the modifiers of an art style."""
    if len(description) > MAX_DESCRIPTION_LENGTH:
        description = description[:MAX_DESCRIPTION_LENGTH] + "..."

    modifiers, attribution = STYLE_MODIFIERS.get(style, STYLE_MODIFIERS["default"])
    prompt = f"{description}, {modifiers}"
    if title:
        prompt = f"{prompt}, {attribution.format(title=title)}"
    return prompt[:MAX_PROMPT_LENGTH]


def _classify_status(status_code: int) -> GenerationStatus:
    # 400/422 mean the prompt was refused; anything else may work elsewhere
    if status_code in (400, 422):
        return GenerationStatus.FATAL
    return GenerationStatus.RETRYABLE


def image_extension(data: bytes) -> str:
    """File extension matching the encoded image, e.g. 'png' or 'jpeg'."""
    with Image.open(io.BytesIO(data)) as image:
        return (image.format or "png").lower()


class HTTPImageStrategy:
    """Shared request handling for hosted text-to-image APIs."""

    method = ""

    def __init__(self, api_token: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 60.0):
        self.api_token = api_token
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_token)

    def endpoint(self) -> str:
        raise NotImplementedError

    def payload(self, prompt: str) -> dict:
        raise NotImplementedError

    async def generate(self, prompt: str) -> GenerationResult:
        if not self.configured:
            return GenerationResult(GenerationStatus.SKIPPED, self.method,
                                    error=f"{self.method} credentials not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.endpoint(),
                    json=self.payload(prompt),
                    headers={"Authorization": f"Bearer {self.api_token}"},
                )
        except httpx.HTTPError as e:
            return GenerationResult(GenerationStatus.RETRYABLE, self.method,
                                    error=f"{self.method} request failed: {e}")

        if response.status_code != 200:
            return GenerationResult(
                _classify_status(response.status_code), self.method,
                error=f"{self.method} API error ({response.status_code}): {response.text[:200]}",
            )

        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("image/") or not response.content:
            return GenerationResult(GenerationStatus.RETRYABLE, self.method,
                                    error=f"{self.method} returned {content_type or 'no content type'}")

        return GenerationResult(GenerationStatus.SUCCESS, self.method, image=response.content)


class CloudflareImageStrategy(HTTPImageStrategy):
    method = "cloudflare"

    def __init__(self, account_id: str, api_token: str, **kwargs):
        super().__init__(api_token, **kwargs)
        self.account_id = account_id

    @property
    def configured(self) -> bool:
        return bool(self.account_id and self.api_token)

    def endpoint(self) -> str:
        return f"{CLOUDFLARE_API_BASE}/{self.account_id}/ai/run/{CLOUDFLARE_IMAGE_MODEL}"

    def payload(self, prompt: str) -> dict:
        return {"prompt": prompt, "num_steps": 20, "width": 512, "height": 512}


class HuggingFaceImageStrategy(HTTPImageStrategy):
    method = "huggingface"

    def endpoint(self) -> str:
        return f"{HUGGINGFACE_API_BASE}/{HUGGINGFACE_IMAGE_MODEL}"

    def payload(self, prompt: str) -> dict:
        return {"inputs": prompt}


class PlaceholderImageStrategy:
    """Renders a plain card with the prompt text, so a page always gets an image."""

    method = "mock"

    def __init__(self, size: int = 512):
        self.size = size

    async def generate(self, prompt: str) -> GenerationResult:
        try:
            image = self.render(prompt)
        except (OSError, ValueError) as e:
            return GenerationResult(GenerationStatus.FATAL, self.method,
                                    error=f"placeholder rendering failed: {e}")
        return GenerationResult(GenerationStatus.SUCCESS, self.method, image=image)

    def render(self, prompt: str) -> bytes:
        # Background tint derived from the prompt so pages look distinct
        digest = hashlib.md5(prompt.encode("utf-8")).digest()
        background = tuple(160 + b % 80 for b in digest[:3])

        canvas = Image.new("RGB", (self.size, self.size), background)
        draw = ImageDraw.Draw(canvas)
        font = ImageFont.load_default()
        lines = textwrap.wrap(prompt, width=48)[:12]
        y = 24
        for line in lines:
            draw.text((24, y), line, fill=(40, 40, 40), font=font)
            y += 18

        buffer = io.BytesIO()
        canvas.save(buffer, format="PNG")
        return buffer.getvalue()


class ImageGenerator:
    """Runs image strategies in order until one succeeds."""

    def __init__(self, strategies: list):
        if not strategies:
            raise ValueError("at least one image strategy is required")
        self.strategies = strategies

    async def generate(self, prompt: str) -> GenerationResult:
        attempts: List[GenerationResult] = []

        for strategy in self.strategies:
            result = await strategy.generate(prompt)
            attempts.append(result)

            if result.status == GenerationStatus.SUCCESS:
                result.fallback_errors = [a.error for a in attempts[:-1] if a.error]
                logger.info("Image generated by %s after %d attempt(s)",
                            result.method, len(attempts))
                return result
            if result.status == GenerationStatus.FATAL:
                logger.error("Image strategy %s rejected the prompt: %s",
                             result.method, result.error)
                raise ImageGenerationError(result.error or "Image generation failed", attempts)
            if result.status == GenerationStatus.SKIPPED:
                logger.info("Image strategy %s skipped: %s", result.method, result.error)
            else:
                logger.warning("Image strategy %s failed: %s", result.method, result.error)

        raise ImageGenerationError("No image strategy succeeded", attempts)


def default_image_generator(cloudflare_account_id: str = "", cloudflare_api_token: str = "",
                            huggingface_api_token: str = "") -> ImageGenerator:
    return ImageGenerator([
        CloudflareImageStrategy(cloudflare_account_id, cloudflare_api_token),
        HuggingFaceImageStrategy(huggingface_api_token),
        PlaceholderImageStrategy(),
    ])
