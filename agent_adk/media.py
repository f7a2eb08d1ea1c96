"""
ImageResponse: handle on one generated image (provider URL and/or base64 data),
with optional storage under MEDIA_STORAGE_PATH.
"""

from __future__ import annotations

import base64
import json
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


class ImageResponse:
    def __init__(
        self,
        prompt: str,
        provider: str,
        model: Optional[str] = None,
        url: Optional[str] = None,
        b64_data: Optional[str] = None,
        revised_prompt: Optional[str] = None,
        storage_path: str = "./data/media",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.prompt = prompt
        self.provider = provider
        self.model = model
        self.provider_url = url
        self._b64 = b64_data
        self.revised_prompt = revised_prompt
        self.storage_path = storage_path
        self.metadata = dict(metadata or {})
        self.path: Optional[str] = None

    def has_image(self) -> bool:
        return bool(self._b64 or self.provider_url)

    def data(self) -> bytes:
        if self._b64:
            return base64.b64decode(self._b64)
        if self.provider_url:
            resp = httpx.get(self.provider_url, timeout=60)
            resp.raise_for_status()
            self._b64 = base64.b64encode(resp.content).decode("ascii")
            return resp.content
        raise ValueError("Image response has no image data")

    def base64(self) -> str:
        if not self._b64:
            self.data()
        return self._b64 or ""

    @property
    def mime_type(self) -> str:
        if self.path:
            suffix = Path(self.path).suffix.lower().lstrip(".")
            for mime, ext in _EXTENSIONS.items():
                if ext == suffix:
                    return mime
        if self._b64:
            head = base64.b64decode(self._b64[:16] + "=" * (-len(self._b64[:16]) % 4))
            if head.startswith(b"\xff\xd8"):
                return "image/jpeg"
            if head.startswith(b"RIFF"):
                return "image/webp"
            if head.startswith(b"GIF8"):
                return "image/gif"
        return "image/png"

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64()}"

    def store_as(self, filename: str) -> "ImageResponse":
        target = Path(self.storage_path) / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.data())
        self.path = str(target)
        return self

    def store(self) -> "ImageResponse":
        ext = _EXTENSIONS.get(self.mime_type, "png")
        return self.store_as(f"images/{uuid.uuid4().hex}.{ext}")

    def is_stored(self) -> bool:
        return self.path is not None

    @property
    def url(self) -> Optional[str]:
        if self.path:
            return self.path
        return self.provider_url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "revised_prompt": self.revised_prompt,
            "provider": self.provider,
            "model": self.model,
            "url": self.url,
            "provider_url": self.provider_url,
            "path": self.path,
            "mime_type": self.mime_type if self.has_image() else None,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def __str__(self) -> str:
        if self.url:
            return self.url
        if self._b64:
            return self.to_data_uri()
        return ""
