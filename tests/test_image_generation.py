"""
Tests for the image provider chain.
"""

import io

import httpx
import pytest
from PIL import Image

from image_generation import (
    CloudflareImageStrategy,
    GenerationResult,
    GenerationStatus,
    HuggingFaceImageStrategy,
    ImageGenerationError,
    ImageGenerator,
    PlaceholderImageStrategy,
    build_prompt,
    default_image_generator,
    image_extension,
)


def png_bytes(color="red"):
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color).save(buffer, format="PNG")
    return buffer.getvalue()


def transport_returning(status_code, content=b"", content_type="image/png", seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, content=content,
                              headers={"content-type": content_type})
    return httpx.MockTransport(handler)


class StubStrategy:
    def __init__(self, method, status, image=None, error=None):
        self.method = method
        self.status = status
        self.image = image
        self.error = error
        self.calls = 0

    async def generate(self, prompt):
        self.calls += 1
        return GenerationResult(self.status, self.method, image=self.image, error=self.error)


class TestBuildPrompt:
    """Tests for prompt styling."""

    def test_default_style(self):
        prompt = build_prompt("A castle at dusk", title="Dracula")
        assert prompt.startswith("A castle at dusk, detailed illustration")
        assert prompt.endswith('from "Dracula"')

    def test_named_style(self):
        prompt = build_prompt("A dragon", style="fantasy", title="Saga")
        assert "fantasy art style" in prompt
        assert 'from fantasy world of "Saga"' in prompt

    def test_unknown_style_falls_back(self):
        assert build_prompt("x", style="cubist") == build_prompt("x")

    def test_long_description_is_cut(self):
        prompt = build_prompt("w" * 800)
        assert prompt.startswith("w" * 500 + "...")
        assert len(prompt) <= 1000


class TestHTTPStrategies:
    """Tests for the hosted providers."""

    @pytest.mark.asyncio
    async def test_unconfigured_is_skipped(self):
        result = await CloudflareImageStrategy("", "").generate("prompt")
        assert result.status == GenerationStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cloudflare_success(self):
        seen = []
        strategy = CloudflareImageStrategy(
            "acct", "token", transport=transport_returning(200, png_bytes(), seen=seen))
        result = await strategy.generate("a scene")

        assert result.ok
        assert result.method == "cloudflare"
        assert result.image == png_bytes()
        assert "/acct/ai/run/" in str(seen[0].url)
        assert seen[0].headers["authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_rejected_prompt_is_fatal(self):
        strategy = HuggingFaceImageStrategy("token", transport=transport_returning(
            400, b"bad prompt", content_type="text/plain"))
        result = await strategy.generate("a scene")
        assert result.status == GenerationStatus.FATAL
        assert "400" in result.error

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        strategy = HuggingFaceImageStrategy("token", transport=transport_returning(
            503, b"loading", content_type="text/plain"))
        result = await strategy.generate("a scene")
        assert result.status == GenerationStatus.RETRYABLE

    @pytest.mark.asyncio
    async def test_non_image_response_is_retryable(self):
        strategy = HuggingFaceImageStrategy("token", transport=transport_returning(
            200, b'{"error": "x"}', content_type="application/json"))
        result = await strategy.generate("a scene")
        assert result.status == GenerationStatus.RETRYABLE

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        strategy = HuggingFaceImageStrategy("token", transport=httpx.MockTransport(handler))
        result = await strategy.generate("a scene")
        assert result.status == GenerationStatus.RETRYABLE
        assert "unreachable" in result.error


class TestPlaceholder:
    """Tests for the local placeholder renderer."""

    @pytest.mark.asyncio
    async def test_renders_png(self):
        result = await PlaceholderImageStrategy(size=64).generate("a quiet harbour")
        assert result.ok
        assert result.method == "mock"
        with Image.open(io.BytesIO(result.image)) as image:
            assert image.size == (64, 64)
            assert image.format == "PNG"

    def test_image_extension(self):
        assert image_extension(png_bytes()) == "png"


class TestImageGenerator:
    """Tests for the fallback chain."""

    @pytest.mark.asyncio
    async def test_falls_back_until_success(self):
        first = StubStrategy("cloudflare", GenerationStatus.SKIPPED, error="not configured")
        second = StubStrategy("huggingface", GenerationStatus.RETRYABLE, error="503")
        third = StubStrategy("mock", GenerationStatus.SUCCESS, image=b"img")

        result = await ImageGenerator([first, second, third]).generate("p")

        assert result.method == "mock"
        assert result.fallback_errors == ["not configured", "503"]

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self):
        first = StubStrategy("cloudflare", GenerationStatus.SUCCESS, image=b"img")
        second = StubStrategy("mock", GenerationStatus.SUCCESS, image=b"other")

        result = await ImageGenerator([first, second]).generate("p")

        assert result.image == b"img"
        assert result.fallback_errors == []
        assert second.calls == 0

    @pytest.mark.asyncio
    async def test_fatal_stops_the_chain(self):
        first = StubStrategy("cloudflare", GenerationStatus.FATAL, error="rejected")
        second = StubStrategy("mock", GenerationStatus.SUCCESS, image=b"img")

        with pytest.raises(ImageGenerationError) as exc_info:
            await ImageGenerator([first, second]).generate("p")
        assert second.calls == 0
        assert len(exc_info.value.attempts) == 1

    @pytest.mark.asyncio
    async def test_all_failing(self):
        strategies = [StubStrategy("a", GenerationStatus.RETRYABLE, error="down"),
                      StubStrategy("b", GenerationStatus.SKIPPED, error="off")]
        with pytest.raises(ImageGenerationError) as exc_info:
            await ImageGenerator(strategies).generate("p")
        assert len(exc_info.value.attempts) == 2

    def test_requires_strategies(self):
        with pytest.raises(ValueError):
            ImageGenerator([])

    @pytest.mark.asyncio
    async def test_default_chain_without_credentials_uses_placeholder(self):
        result = await default_image_generator().generate("an empty road")
        assert result.method == "mock"
        assert len(result.fallback_errors) == 2
