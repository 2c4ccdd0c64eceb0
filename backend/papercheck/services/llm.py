"""
Thin chat wrapper (LlmChat, UserMessage, ImageContent) over the
google-generativeai SDK.
"""

import asyncio
from typing import List, Optional

import google.generativeai as genai

from papercheck.config import GEMINI_MODEL


class ImageContent:
    """Wraps a base64-encoded image for inclusion in a message."""

    def __init__(self, image_base64: str, mime_type: str = "image/jpeg"):
        self.image_base64 = image_base64
        self.mime_type = mime_type

    def to_genai_part(self) -> dict:
        """Convert to google-generativeai inline_data format."""
        b64 = self.image_base64
        if b64.startswith("data:"):
            header, b64 = b64.split(",", 1)
            self.mime_type = header[5:].split(";", 1)[0] or self.mime_type
        return {
            "inline_data": {
                "mime_type": self.mime_type,
                "data": b64,
            }
        }


class UserMessage:
    """Combines text and optional image contents into a single message."""

    def __init__(self, text: str = "", file_contents: Optional[List[ImageContent]] = None):
        self.text = text
        self.file_contents = file_contents or []

    def to_genai_parts(self) -> list:
        """Convert to a list of parts for the google-generativeai SDK."""
        parts = [img.to_genai_part() for img in self.file_contents]
        if self.text:
            parts.append(self.text)
        return parts


class LlmChat:
    """
    Chat session with chaining configuration:

        chat = LlmChat(api_key=..., session_id=..., system_message=...)
            .with_model("gemini", "gemini-2.5-flash")
            .with_params(temperature=0, response_mime_type="application/json")

    send_message() is async and returns a plain string.
    """

    def __init__(self, api_key: str = "", session_id: str = "", system_message: str = ""):
        self._api_key = api_key
        self._session_id = session_id
        self._system_message = system_message
        self._model_name = GEMINI_MODEL
        self._generation_config = {}
        self._chat = None  # lazily created

    def with_model(self, provider: str, model_name: str) -> "LlmChat":
        """Set the model. Provider is ignored (always Gemini)."""
        self._model_name = model_name
        return self

    def with_params(self, temperature: float = None, response_mime_type: str = None, **kwargs) -> "LlmChat":
        """Set generation parameters."""
        if temperature is not None:
            self._generation_config["temperature"] = temperature
        if response_mime_type:
            self._generation_config["response_mime_type"] = response_mime_type
        self._generation_config.update(kwargs)
        return self

    def _ensure_chat(self):
        if self._chat is None:
            model = genai.GenerativeModel(
                model_name=self._model_name,
                system_instruction=self._system_message or None,
                generation_config=self._generation_config or None,
            )
            self._chat = model.start_chat(history=[])

    async def send_message(self, message: UserMessage) -> str:
        """
        Send a message and return the response text.

        The SDK call is synchronous, so it runs in a worker thread.
        """
        self._ensure_chat()
        parts = message.to_genai_parts()
        response = await asyncio.to_thread(self._chat.send_message, parts)
        return response.text
