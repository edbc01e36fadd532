# image_pipeline.py
"""
Image acquisition for the PO document.

Line-item images: variant attributes -> the images of the other rows of the same
product, in row order (each URL fetched once per product) -> blank cell. Each
fetch goes signed URL -> direct URL, and the bytes are downscaled and
recompressed to JPEG before they are embedded.

Signatures: direct load with a timeout -> authenticated byte fetch with a
manual decode -> nothing.

Nothing in here raises to the renderer; a failure only means "no image".
"""
import asyncio
import base64
import io
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

import httpx
from PIL import Image
from reportlab.lib.utils import ImageReader

from config import Config
from file_service import FileService, is_internal_path
from models import LineItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Everything a fetch/decode step may fail with.
STEP_ERRORS = (
    httpx.HTTPError,
    asyncio.TimeoutError,
    OSError,
    ValueError,
    Image.DecompressionBombError,
)


# -----------------------------
# Decoded images
# -----------------------------
@dataclass(frozen=True)
class LoadedImage:
    data: bytes
    mime: str
    width: int
    height: int

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime};base64,{base64.b64encode(self.data).decode('ascii')}"

    def reader(self) -> ImageReader:
        return ImageReader(io.BytesIO(self.data))


def decode_image(data: bytes) -> LoadedImage:
    """Validate the bytes as an image and keep them as-is. Raises on garbage."""
    if not data:
        raise ValueError("empty image body")
    with Image.open(io.BytesIO(data)) as im:
        im.load()
        fmt = (im.format or "PNG").lower()
        w, h = im.size
    mime = "image/jpeg" if fmt in ("jpeg", "jpg", "mpo") else f"image/{fmt}"
    return LoadedImage(data=data, mime=mime, width=w, height=h)


def _has_alpha(im: Image.Image) -> bool:
    return im.mode in ("RGBA", "LA", "PA") or (im.mode == "P" and "transparency" in im.info)


def _flatten_on_white(im: Image.Image) -> Image.Image:
    # JPEG has no alpha; an unflattened transparent background turns black.
    rgba = im.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def recompress_image(data: bytes, max_px: int | None = None, quality: int | None = None) -> LoadedImage:
    """
    Downscale to fit max_px x max_px (aspect kept) and re-encode as JPEG.
    If that fails the original bytes are embedded instead.
    """
    max_px = max_px or Config.IMAGE_MAX_PX
    quality = quality or Config.IMAGE_JPEG_QUALITY
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.load()
            out_im = _flatten_on_white(im) if _has_alpha(im) else im.convert("RGB")
        out_im.thumbnail((max_px, max_px))
        out = io.BytesIO()
        out_im.save(out, format="JPEG", quality=quality, optimize=True)
        return LoadedImage(data=out.getvalue(), mime="image/jpeg", width=out_im.width, height=out_im.height)
    except STEP_ERRORS as e:
        logger.warning("Image recompression failed (%s); embedding original", e)
        return decode_image(data)


def _reencode_png(data: bytes) -> LoadedImage:
    with Image.open(io.BytesIO(data)) as im:
        im.load()
        out_im = im if im.mode in ("RGB", "RGBA", "L", "LA") else im.convert("RGBA")
        out = io.BytesIO()
        out_im.save(out, format="PNG")
        return LoadedImage(data=out.getvalue(), mime="image/png", width=out_im.width, height=out_im.height)


# -----------------------------
# Attributes blob
# -----------------------------
def parse_attributes(blob) -> dict:
    """Variant attributes JSON; anything malformed or non-object is {}."""
    if isinstance(blob, dict):
        return blob
    if not blob:
        return {}
    try:
        parsed = json.loads(blob)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def images_from_attributes(attrs: dict) -> list[str]:
    images: list[str] = []
    raw = attrs.get("images")
    if isinstance(raw, list):
        images.extend(str(u) for u in raw if u)
    elif isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = raw
        if isinstance(parsed, list):
            images.extend(str(u) for u in parsed if u)
        else:
            images.append(raw.strip())
    single = attrs.get("image")
    if isinstance(single, str) and single.strip():
        images.append(single.strip())
    return images


def color_from_attributes(attrs: dict) -> str:
    for key in ("color", "Color", "COLOR"):
        if attrs.get(key):
            return str(attrs[key])
    nested = attrs.get("attributes")
    if isinstance(nested, dict) and nested.get("color"):
        return str(nested["color"])
    return ""


# -----------------------------
# Try-chain
# -----------------------------
async def first_successful(
    steps: Iterable[Callable[[], Awaitable[Optional[T]]]],
    *,
    label: str = "",
) -> Optional[T]:
    """Run steps in order; the first non-None result wins. Step failures are logged and skipped."""
    for idx, step in enumerate(steps, start=1):
        try:
            result = await step()
        except STEP_ERRORS as e:
            logger.warning("Step %d for %s failed: %r", idx, label or "image", e)
            continue
        if result is not None:
            return result
        logger.debug("Step %d for %s gave nothing", idx, label or "image")
    return None


# -----------------------------
# Per-render cache
# -----------------------------
@dataclass(frozen=True)
class CachedImage:
    source_url: str
    image: Optional[LoadedImage]


class ImageCache:
    """
    product id -> {url -> fetched image, or the failed attempt so it is not
    retried}. Lives for one render.
    """

    def __init__(self):
        self._by_product: dict[int, dict[str, CachedImage]] = {}

    def get(self, product_id: int, url: str | None = None) -> Optional[CachedImage]:
        """Entry for (product, url); without a url, the product's first successful image."""
        slot = self._by_product.get(product_id)
        if not slot:
            return None
        if url is not None:
            return slot.get(url)
        for entry in slot.values():
            if entry.image is not None:
                return entry
        return None

    def put(self, product_id: int, url: str, image: Optional[LoadedImage]) -> None:
        self._by_product.setdefault(product_id, {}).setdefault(url, CachedImage(url, image))

    def __contains__(self, product_id) -> bool:
        return product_id in self._by_product

    def __len__(self) -> int:
        return len(self._by_product)


class ImageResolver:
    def __init__(
        self,
        files: FileService,
        line_items: Iterable[LineItem],
        cache: ImageCache | None = None,
        max_px: int | None = None,
        quality: int | None = None,
    ):
        self.files = files
        self.cache = cache if cache is not None else ImageCache()
        self.max_px = max_px
        self.quality = quality
        # Every distinct first image URL of each product's rows, in row order.
        self._product_urls: dict[int, list[str]] = {}
        for item in line_items:
            urls = images_from_attributes(parse_attributes(item.product_variant_attributes))
            if not urls:
                continue
            known = self._product_urls.setdefault(item.product_id, [])
            if urls[0] not in known:
                known.append(urls[0])

    async def _via_signed_url(self, url: str) -> Optional[LoadedImage]:
        full = await self.files.resolve_signed_url(url)
        data, _ctype = await self.files.fetch_bytes(full)
        return recompress_image(data, self.max_px, self.quality)

    async def _direct(self, url: str) -> Optional[LoadedImage]:
        data, _ctype = await self.files.fetch_bytes(self.files.absolute_url(url))
        return recompress_image(data, self.max_px, self.quality)

    async def fetch_image(self, url: str) -> Optional[LoadedImage]:
        steps = []
        if is_internal_path(url):
            steps.append(lambda: self._via_signed_url(url))
        steps.append(lambda: self._direct(url))
        return await first_successful(steps, label=url)

    async def _cached_fetch(self, product_id: int, url: str) -> Optional[LoadedImage]:
        entry = self.cache.get(product_id, url)
        if entry is not None:
            logger.debug("Image cache hit for product %s", product_id)
            return entry.image
        image = await self.fetch_image(url)
        self.cache.put(product_id, url, image)
        return image

    async def resolve(self, item: LineItem) -> Optional[LoadedImage]:
        attrs = parse_attributes(item.product_variant_attributes)
        own = images_from_attributes(attrs)
        if not own:
            hit = self.cache.get(item.product_id)
            if hit is not None:
                logger.debug("Reusing image of product %s for %s", item.product_id, item.sku or "-")
                return hit.image
        # own image first, then every other row's image of the same product
        candidates = own[:1] + [u for u in self._product_urls.get(item.product_id, []) if u not in own[:1]]
        steps = [
            (lambda u=url: self._cached_fetch(item.product_id, u))
            for url in candidates
        ]
        return await first_successful(steps, label=f"product {item.product_id} / {item.sku or '-'}")


# -----------------------------
# Signatures
# -----------------------------
async def load_signature(
    files: FileService,
    signature_url: str,
    timeout: float | None = None,
) -> Optional[LoadedImage]:
    """Signature PNG for the approvals block, or None. Never raises."""
    if not (signature_url or "").strip():
        return None
    timeout = timeout if timeout is not None else Config.SIGNATURE_TIMEOUT_SECONDS

    async def _direct_load():
        full = await files.resolve_signed_url(signature_url)
        data, _ctype = await files.fetch_bytes(full)
        return decode_image(data)

    async def _direct():
        return await asyncio.wait_for(_direct_load(), timeout)

    async def _authenticated():
        data, _ctype = await files.fetch_bytes(files.absolute_url(signature_url), authenticated=True)
        return _reencode_png(data)

    image = await first_successful([_direct, _authenticated], label=f"signature {signature_url}")
    if image is None:
        logger.warning("Signature unavailable: %s", signature_url)
    return image
