"""Google GenAI (Gemini) client for ID photo generation with error classification."""

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from google import genai
from google.genai import errors, types

from idphoto.services.exceptions import PermanentError, UpstreamGenerationError

logger = structlog.get_logger(__name__)

ID_PHOTO_PROMPT = """Transform this casual photo into a formal ID/passport photo suitable for official documents.

REQUIREMENTS:
1. BACKGROUND: Replace with pure white background (#FFFFFF), clean and uniform
2. ATTIRE: If the subject is wearing casual clothing, transform it into formal business attire (collared shirt/blouse or suit). Keep the transformation natural and matching the person's appearance
3. LIGHTING: Apply even, professional studio lighting - soft, diffused front light that eliminates harsh shadows
4. COMPOSITION: Center the face with proper head-to-frame ratio (head should occupy 70-80% of vertical space), slight crop below shoulders
5. EXPRESSION: Maintain a neutral, natural expression with a slight professional demeanor
6. SKIN & FEATURES: Keep natural skin tone and all facial features authentic - no beautification or smoothing
7. HAIR: Keep hair neat and tidy as-is, only minor cleanup if needed
8. QUALITY: Output must be sharp, high-resolution, and print-ready for official ID document
9. ASPECT RATIO: 1:1 square format

IMPORTANT: The result must look like a professionally taken studio photo, not an edited selfie. Preserve the person's natural appearance while making them look professional and presentable for formal ID use."""

# Only the "pro" image model accepts image_size
HIGH_RES_MODEL_MARKER = "gemini-3-pro-image"
MAX_OUTPUT_TOKENS = 32768
NO_IMAGE_MESSAGE = "No image data returned from model"


@dataclass
class GeneratedImageData:
    """One generated image and the tokens it cost (None when not reported)."""

    image_bytes: bytes
    mime_type: str
    token_usage: int | None = None


class GenAIClient(Protocol):
    async def generate(
        self, image_bytes: bytes, mime_type: str, model: str
    ) -> GeneratedImageData: ...


def extract_token_count(response: Any) -> int | None:
    """Read token usage from a response's usage metadata.

    Returns total_token_count, else prompt + candidates counts, else None.
    """
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return None

    total = getattr(usage, "total_token_count", None)
    if total:
        return int(total)

    prompt_tokens = getattr(usage, "prompt_token_count", None) or 0
    candidate_tokens = getattr(usage, "candidates_token_count", None) or 0
    if prompt_tokens > 0 or candidate_tokens > 0:
        return int(prompt_tokens + candidate_tokens)

    return None


def extract_image(response: Any) -> tuple[bytes, str]:
    """Return the first inline image (bytes, MIME type) in a response.

    Raises:
        UpstreamGenerationError: If no candidate part carries image data
    """
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        if not content:
            continue

        for part in content.parts or []:
            inline_data = getattr(part, "inline_data", None)
            raw_data = getattr(inline_data, "data", None)
            if not raw_data:
                continue

            if isinstance(raw_data, str):
                image_bytes = base64.b64decode(raw_data)
            else:
                image_bytes = bytes(raw_data)

            mime_type = getattr(inline_data, "mime_type", None) or "image/png"
            return image_bytes, mime_type

    text = getattr(response, "text", None)
    if text:
        logger.warning("genai.text_without_image", text=text[:500])

    raise UpstreamGenerationError(NO_IMAGE_MESSAGE)


def build_generate_config(model: str) -> types.GenerateContentConfig:
    image_config_kwargs: dict[str, str] = {"aspect_ratio": "1:1"}
    if HIGH_RES_MODEL_MARKER in model:
        image_config_kwargs["image_size"] = "2K"

    return types.GenerateContentConfig(
        temperature=1,
        top_p=0.95,
        max_output_tokens=MAX_OUTPUT_TOKENS,
        response_modalities=["IMAGE", "TEXT"],
        image_config=types.ImageConfig(**image_config_kwargs),
    )


class GeminiClient:
    """Generates a single ID photo per call via the Gemini image models."""

    def __init__(self, api_key: str, timeout_seconds: float = 120.0):
        """Initialize Gemini client.

        Args:
            api_key: Google AI Studio API key
            timeout_seconds: Upper bound for one generate call
        """
        if not api_key:
            raise PermanentError("GOOGLE_API_KEY not configured")

        self.timeout_seconds = timeout_seconds
        self.client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
        )

    async def generate(self, image_bytes: bytes, mime_type: str, model: str) -> GeneratedImageData:
        """Generate one ID photo from a source photo.

        Args:
            image_bytes: Source photo bytes
            mime_type: Source photo MIME type
            model: Model name chosen by the rate limiter

        Returns:
            Generated image bytes, MIME type and token usage

        Raises:
            UpstreamGenerationError: On SDK/API failure, timeout, or a response
                without image data (``is_rate_limit`` set for 429/quota errors)
        """
        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_text(text=ID_PHOTO_PROMPT),
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                ],
            )
        ]

        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=model,
                    contents=contents,
                    config=build_generate_config(model),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning("genai.timeout", model=model, timeout_seconds=self.timeout_seconds)
            raise UpstreamGenerationError(
                f"Generation timed out after {self.timeout_seconds}s"
            ) from e
        except errors.APIError as e:
            status_code = getattr(e, "code", None)
            logger.warning("genai.api_error", model=model, status_code=status_code, error=str(e))
            raise UpstreamGenerationError(str(e), status_code=status_code) from e
        except (ConnectionError, OSError) as e:
            raise UpstreamGenerationError(f"Connection error: {e}") from e

        image, output_mime = extract_image(response)
        token_usage = extract_token_count(response)

        logger.info(
            "genai.image_generated",
            model=model,
            mime_type=output_mime,
            size_bytes=len(image),
            token_usage=token_usage,
        )
        return GeneratedImageData(image_bytes=image, mime_type=output_mime, token_usage=token_usage)
