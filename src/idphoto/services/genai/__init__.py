"""External image generation API client."""

from idphoto.services.genai.gemini_client import GeminiClient, GenAIClient, GeneratedImageData

__all__ = ["GeminiClient", "GenAIClient", "GeneratedImageData"]
