"""Image generation providers.

Stable Diffusion XL on OVH AI Endpoints answers with raw PNG bytes; the
OpenAI images API answers with base64 JSON.
"""

from __future__ import annotations

import base64
import binascii
import logging
import random
from typing import Protocol

from taleforge.services.provider_errors import AIProviderType

from .base import HTTPProvider, Provider, ProviderRequestError

logger = logging.getLogger(__name__)

SDXL_NEGATIVE_PROMPT = (
    "ugly, blurry, low quality, distorted, deformed, disfigured, bad anatomy, "
    "wrong proportions, extra limbs, cloned face, disfigured, gross proportions, "
    "malformed limbs, missing arms, missing legs, extra arms, extra legs, "
    "mutated hands, poorly drawn hands, poorly drawn face, mutation, deformed, "
    "bad proportions, extra fingers, long neck, cross-eyed, mutated, bad body, "
    "bad hands, bad fingers, text, watermark, signature"
)
SDXL_SIZE = 1024
SDXL_STEPS = 30
SDXL_GUIDANCE_SCALE = 7.5
SDXL_SCHEDULER = "DPMSolverMultistepScheduler"


class ImageGenerationProvider(Provider, Protocol):
    """Renders a prompt to image bytes."""

    async def generate(self, prompt: str) -> bytes: ...


class StableDiffusionXLProvider(HTTPProvider):
    """OVH AI Endpoints SDXL ``text2image``."""

    provider_type = AIProviderType.OVH_AI_ENDPOINTS

    def __init__(self, api_key: str, endpoint: str, **kwargs):
        kwargs.setdefault("model", "stable-diffusion-xl")
        super().__init__(api_key, endpoint, **kwargs)

    async def generate(self, prompt: str) -> bytes:
        response = await self._post(
            self.base_url,
            {
                "prompt": prompt,
                "negative_prompt": SDXL_NEGATIVE_PROMPT,
                "width": SDXL_SIZE,
                "height": SDXL_SIZE,
                "steps": SDXL_STEPS,
                "num_inference_steps": SDXL_STEPS,
                "guidance_scale": SDXL_GUIDANCE_SCALE,
                "scheduler": SDXL_SCHEDULER,
                "seed": random.randint(0, 999_999),
                "safety_checker": True,
            },
        )
        image = response.content
        if not image:
            raise ProviderRequestError(self.provider_type, "Empty image returned")
        logger.debug("SDXL image received, %d bytes", len(image))
        return image


class OpenAIImageProvider(HTTPProvider):
    """OpenAI images API (DALL-E)."""

    provider_type = AIProviderType.OPENAI_DALLE

    async def generate(self, prompt: str) -> bytes:
        response = await self._post(
            f"{self.base_url}/images/generations",
            {
                "model": self.model,
                "prompt": prompt[:4000],
                "n": 1,
                "size": f"{SDXL_SIZE}x{SDXL_SIZE}",
                "response_format": "b64_json",
            },
        )
        data = response.json().get("data") or []
        encoded = data[0].get("b64_json") if data else None
        if not encoded:
            raise ProviderRequestError(self.provider_type, "No image data in response")
        try:
            return base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            raise ProviderRequestError(self.provider_type, f"Invalid image data: {e}") from e
