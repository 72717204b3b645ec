"""Helpers for reading agent responses."""

import json


def detect_mime_type(image_bytes: bytes) -> str:
    """Detect image format from magic bytes."""
    if image_bytes[:3] == b'\xff\xd8\xff':
        return "image/jpeg"
    if image_bytes[:4] == b'RIFF' and image_bytes[8:12] == b'WEBP':
        return "image/webp"
    if image_bytes[:6] in (b'GIF87a', b'GIF89a'):
        return "image/gif"
    return "image/png"


def response_text(response) -> str:
    """Concatenate the text contents of every message in an agent response."""
    text = ""
    for msg in response.messages:
        for content in msg.contents:
            if getattr(content, "text", None):
                text += content.text
    return text


def parse_json_response(text: str) -> dict:
    """Parse JSON from LLM response, handling markdown code blocks.

    Raises ``ValueError`` when the text is not a JSON object.
    """
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        # Remove first and last lines (```json and ```)
        text = "\n".join(lines[1:-1])

    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
