"""
Background material helpers.

Turn pasted text and local files into ContentParts. The loop itself treats
parts as opaque and sends them, unchanged and in order, ahead of every
writer and reviewer instruction.
"""
from __future__ import annotations

import base64
import logging
import mimetypes
from pathlib import Path
from typing import Optional, Union

from loopforge.agent.errors import ConfigurationInvalidError
from loopforge.models.schemas import ContentPart, InlineData

logger = logging.getLogger(__name__)

_INLINE_PREFIXES = ("image/", "application/pdf")


def text_part(text: str, name: Optional[str] = None) -> ContentPart:
    """Background material from pasted text. Surrounding whitespace is dropped."""
    if not text or not text.strip():
        raise ConfigurationInvalidError("Pasted text must not be empty")
    return ContentPart(name=name or "Pasted text", text=text.strip())


def file_part(path: Union[str, Path], mime_type: Optional[str] = None) -> ContentPart:
    """
    Background material from a file on disk.

    text/* files are read as text; images and PDFs are sent as base64 inline
    data; anything else is read as text with a warning.
    """
    path = Path(path)
    mime_type = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"

    if mime_type.startswith(_INLINE_PREFIXES):
        data = base64.b64encode(path.read_bytes()).decode("ascii")
        return ContentPart(name=path.name, inline_data=InlineData(mime_type=mime_type, data=data))

    if not mime_type.startswith("text/"):
        logger.warning(
            f"Unsupported file type {mime_type} for '{path.name}' treated as text. "
            f"For best results use text, images, or PDFs."
        )
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning(f"'{path.name}' is not valid UTF-8; replacing undecodable bytes")
        text = path.read_bytes().decode("utf-8", errors="replace")
    return ContentPart(name=path.name, text=text)
