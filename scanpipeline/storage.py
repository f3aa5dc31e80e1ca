"""
Where image bytes come from and where they go.

ImageSource fetches photos by reference (URL or local path). ObjectStorage
persists originals, crops and thumbnails and hands back a reference.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from .errors import ImageSkipped
from .imaging import guess_content_type

logger = logging.getLogger(__name__)


@dataclass
class FetchedImage:
    data: bytes
    content_type: str
    source: str


class ImageSource(Protocol):
    def fetch(self, ref: str) -> FetchedImage:
        ...


class ObjectStorage(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str:
        ...


class HttpImageSource:
    """Fetches images over HTTP(S), or from the filesystem for plain paths.

    Responses that are not 2xx, or larger than ``max_bytes``, raise
    ImageSkipped so one bad source never aborts a batch. Bodies are streamed,
    so an oversized response is dropped without being read in full.
    """

    def __init__(
        self,
        max_bytes: int = 20 * 1024 * 1024,
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def fetch(self, ref: str) -> FetchedImage:
        if ref.startswith(("http://", "https://")):
            return self._fetch_url(ref)
        return self._read_file(ref)

    def _fetch_url(self, url: str) -> FetchedImage:
        try:
            with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise ImageSkipped(url, f"HTTP {response.status_code}")

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise ImageSkipped(url, f"{declared} bytes exceeds limit of {self.max_bytes}")

                # Stop reading as soon as the body outgrows the limit
                chunks: list[bytes] = []
                received = 0
                for chunk in response.iter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise ImageSkipped(url, f"body exceeds limit of {self.max_bytes} bytes")
                    chunks.append(chunk)

                content_type = response.headers.get("content-type", "").split(";")[0].strip()
        except httpx.HTTPError as e:
            raise ImageSkipped(url, f"request failed: {e}") from e

        data = b"".join(chunks)
        if not content_type.startswith("image/"):
            content_type = guess_content_type(data)

        return FetchedImage(data=data, content_type=content_type, source=url)

    def _read_file(self, ref: str) -> FetchedImage:
        path = Path(ref.removeprefix("file://"))
        try:
            size = path.stat().st_size
            if size > self.max_bytes:
                raise ImageSkipped(ref, f"{size} bytes exceeds limit of {self.max_bytes}")
            data = path.read_bytes()
        except OSError as e:
            raise ImageSkipped(ref, f"cannot read file: {e}") from e

        return FetchedImage(data=data, content_type=guess_content_type(data), source=ref)

    def close(self) -> None:
        self._client.close()


class LocalObjectStorage:
    """Stores objects as files below a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def put(self, path: str, data: bytes, content_type: str) -> str:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Object path escapes storage root: {path}")

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug(f"Stored {len(data)} bytes ({content_type}) at {target}")
        return str(target)
