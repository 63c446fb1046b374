"""
Thin wrapper over the google-generativeai SDK (LlmChat, UserMessage, ImageContent).
SDK failures are translated into LlmServiceError carrying the HTTP status code.
"""

import asyncio
import base64
from typing import List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from papertalk.config import logger


class LlmServiceError(Exception):
    """Upstream LLM failure. ``status_code`` is None for network-level failures."""

    def __init__(self, message: str, status_code: Optional[int] = None, network: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.network = network


class ImageContent:
    """Wraps a base64-encoded image or PDF for inclusion in a message."""

    def __init__(self, image_base64: str, mime_type: str = "image/jpeg"):
        self.image_base64 = image_base64
        self.mime_type = mime_type

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "ImageContent":
        return cls(base64.b64encode(data).decode(), mime_type)

    def to_genai_part(self) -> dict:
        """Convert to google-generativeai inline_data format."""
        # Strip data URI prefix if present
        b64 = self.image_base64
        if b64.startswith("data:"):
            b64 = b64.split(",", 1)[1]
        return {
            "inline_data": {
                "mime_type": self.mime_type,
                "data": b64,
            }
        }


class UserMessage:
    """Combines text and optional file contents into a single message."""

    def __init__(self, text: str = "", file_contents: Optional[List[ImageContent]] = None):
        self.text = text
        self.file_contents = file_contents or []

    def to_genai_parts(self) -> list:
        """Prompt text first, then the files in the order given."""
        parts = []
        if self.text:
            parts.append(self.text)
        for img in self.file_contents:
            parts.append(img.to_genai_part())
        return parts


class LlmChat:
    """
    Chaining API over a Gemini model:
        chat = LlmChat(api_key=..., system_message=...)
            .with_model("gemini-2.5-flash")
            .with_params(temperature=0)

    send_message() is async and returns a plain string.
    """

    def __init__(self, api_key: str = "", system_message: str = "", timeout: Optional[float] = None):
        self._api_key = api_key
        self._system_message = system_message
        self._model_name = "gemini-2.5-flash"
        self._temperature = None
        self._timeout = timeout
        self._model = None  # lazily created

    def with_model(self, model_name: str) -> "LlmChat":
        self._model_name = model_name
        return self

    def with_params(self, temperature: float = None, timeout: float = None) -> "LlmChat":
        if temperature is not None:
            self._temperature = temperature
        if timeout is not None:
            self._timeout = timeout
        return self

    def _ensure_model(self):
        if self._model is None:
            if self._api_key:
                genai.configure(api_key=self._api_key)
            gen_config = {}
            if self._temperature is not None:
                gen_config["temperature"] = self._temperature

            self._model = genai.GenerativeModel(
                model_name=self._model_name,
                system_instruction=self._system_message if self._system_message else None,
                generation_config=gen_config if gen_config else None,
            )

    async def send_message(self, message: UserMessage) -> str:
        """
        Send a single-turn request and return the response text.

        The SDK call is synchronous, so it runs in the default executor. A hang
        past the timeout is reported like a network failure.
        """
        self._ensure_model()
        parts = message.to_genai_parts()

        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(None, lambda: self._model.generate_content(parts))
        try:
            if self._timeout:
                response = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                response = await call
        except asyncio.TimeoutError:
            raise LlmServiceError(f"Gemini request timed out after {self._timeout}s", network=True)
        except google_exceptions.GoogleAPICallError as e:
            status_code = e.code if isinstance(e.code, int) else None
            raise LlmServiceError(f"Gemini API error {status_code}: {e.message}", status_code=status_code)
        except (google_exceptions.RetryError, ConnectionError, OSError) as e:
            raise LlmServiceError(f"Gemini network error: {e}", network=True)

        try:
            return response.text
        except ValueError as e:
            # Blocked or empty candidates
            logger.warning(f"Gemini returned no text: {e}")
            raise LlmServiceError(f"Gemini returned no usable text: {e}", status_code=None)
