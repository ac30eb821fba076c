"""
Load user image references (https URLs or data URIs) into JPEG bytes for
inline multimodal prompts.
"""
import base64
import binascii
import io
import ipaddress
import logging
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_IMAGE_SIDE = 1536
MAX_DOWNLOAD_BYTES = 10 * 1024 * 1024
MAX_REDIRECTS = 3

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "metadata.google.internal"}


class BlockedImageURL(ValueError):
    """The URL points somewhere the server must not fetch from."""


def check_fetch_target(url: httpx.URL) -> None:
    """Only public https hosts may be fetched; raises BlockedImageURL otherwise.

    IP literals are checked directly. Hostnames are not resolved here.
    """
    if url.scheme != "https":
        raise BlockedImageURL(f"refusing non-https image URL ({url.scheme})")
    host = (url.host or "").lower().rstrip(".")
    if not host or host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise BlockedImageURL(f"refusing image host {host or '(empty)'}")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return
    if not address.is_global:
        raise BlockedImageURL(f"refusing non-public image address {host}")


def _decode_data_uri(ref: str) -> bytes:
    _, _, payload = ref.partition(",")
    return base64.b64decode(payload, validate=False)


def normalize_image(raw: bytes) -> bytes:
    """Re-encode as RGB JPEG with the longest side capped."""
    image = Image.open(io.BytesIO(raw))
    if image.mode != "RGB":
        image = image.convert("RGB")
    image.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=85)
    return buffer.getvalue()


async def _read_limited(response: httpx.Response) -> bytes:
    declared = response.headers.get("Content-Length")
    if declared and declared.isdigit() and int(declared) > MAX_DOWNLOAD_BYTES:
        raise ValueError(f"image too large ({declared} bytes declared)")
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
        if len(buffer) > MAX_DOWNLOAD_BYTES:
            raise ValueError(f"image larger than {MAX_DOWNLOAD_BYTES} bytes")
    return bytes(buffer)


async def _fetch(ref: str, client: httpx.AsyncClient) -> bytes:
    """GET an image, following redirects by hand so every hop is checked."""
    url = httpx.URL(ref)
    for _ in range(MAX_REDIRECTS + 1):
        check_fetch_target(url)
        async with client.stream("GET", url, follow_redirects=False) as response:
            if response.is_redirect:
                location = response.headers.get("Location")
                if not location:
                    raise ValueError("redirect without a Location header")
                url = url.join(location)
                continue
            response.raise_for_status()
            return await _read_limited(response)
    raise ValueError(f"more than {MAX_REDIRECTS} redirects")


async def load_images(
    refs: list[str],
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 10.0,
) -> list[bytes]:
    """Resolve image refs to normalized JPEG bytes.

    An unusable image is skipped with a warning rather than failing the
    caller's stage.
    """
    if not refs:
        return []

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=timeout)

    images = []
    try:
        for index, ref in enumerate(refs):
            try:
                raw = _decode_data_uri(ref) if ref.startswith("data:") else await _fetch(ref, client)
                images.append(normalize_image(raw))
            except (
                httpx.HTTPError,
                binascii.Error,
                UnidentifiedImageError,
                Image.DecompressionBombError,
                OSError,
                ValueError,
            ) as e:
                logger.warning(f"Skipping image {index}: {e}")
    finally:
        if owns_client:
            await client.aclose()

    logger.info(f"Loaded {len(images)}/{len(refs)} images")
    return images
