"""
Rasterizer capability consumed by the pyramid builder.

A rasterizer renders one document page at a requested scale and returns an
RGB uint8 array of shape (H, W, 3). Rendering must be deterministic: the
same scale on the same source yields identical pixels.

The output size for a scale is derived with tiler.geometry.reduced_dims so
that it matches the builder's level dimensions exactly.

Usage:
    r = PdfPageRasterizer("doc.pdf", page=1, base_scale=2.0)
    w, h = r.full_size
    level0 = r.render_at_scale(r.base_scale / 4)
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from common.errors import RasterizationFailure
from common.logging_setup import get_logger
from tiler.geometry import reduced_dims


log = get_logger("tiler.rasterize")

PDF_POINTS_PER_INCH = 72.0


class Rasterizer(ABC):
    """Renders a page; `full_size` is the page size in pixels at `base_scale`."""

    base_scale: float = 2.0

    @property
    @abstractmethod
    def full_size(self) -> Tuple[int, int]:
        ...

    @abstractmethod
    def render_at_scale(self, scale: float) -> np.ndarray:
        ...

    def target_dims(self, scale: float) -> Tuple[int, int]:
        """Pixel size a render at `scale` must have."""
        if scale <= 0:
            raise RasterizationFailure(f"scale must be > 0 (got {scale})")
        reduction = self.base_scale / float(scale)
        r = int(round(reduction))
        if r < 1 or abs(reduction - r) > 1e-9:
            # Only power-of-two reductions of base_scale are requested by the builder
            raise RasterizationFailure(f"scale {scale} is not base_scale / integer")
        w, h = self.full_size
        return reduced_dims(w, h, r)


class ImageRasterizer(Rasterizer):
    """
    Treats an already-rendered page image as the page at `base_scale` and
    produces lower scales by area resampling of that source image.
    """

    def __init__(self, image: np.ndarray, base_scale: float = 2.0):
        if not isinstance(image, np.ndarray) or image.ndim not in (2, 3):
            raise TypeError("image must be a 2D (gray) or 3D (RGB/RGBA) numpy array")
        self.base_scale = float(base_scale)
        self._image = _to_rgb(image)

    @classmethod
    def from_path(cls, path: str | Path, base_scale: float = 2.0) -> "ImageRasterizer":
        try:
            with Image.open(path) as im:
                arr = np.asarray(im.convert("RGB"))
        except (OSError, ValueError) as e:
            raise RasterizationFailure(f"cannot read image: {path} ({e})") from e
        return cls(arr, base_scale=base_scale)

    @property
    def full_size(self) -> Tuple[int, int]:
        h, w = self._image.shape[:2]
        return (w, h)

    def render_at_scale(self, scale: float) -> np.ndarray:
        w, h = self.target_dims(scale)
        if (w, h) == self.full_size:
            return self._image.copy()
        return cv2.resize(self._image, (w, h), interpolation=cv2.INTER_AREA)


class PdfPageRasterizer(Rasterizer):
    """
    Renders one page of a PDF through poppler (pdf2image).

    Every level is rasterized from the PDF itself at the level's size rather
    than downsampled from a larger render.
    """

    _PAGE_SIZE_RE = re.compile(r"([\d.]+)\s*x\s*([\d.]+)")

    def __init__(self, path: str | Path, page: int = 1, base_scale: float = 2.0, poppler_path: Optional[str] = None):
        self.path = Path(path)
        self.page = int(page)
        self.base_scale = float(base_scale)
        self.poppler_path = poppler_path
        self._full_size: Optional[Tuple[int, int]] = None

    @property
    def full_size(self) -> Tuple[int, int]:
        if self._full_size is None:
            w_pt, h_pt = self._page_size_points()
            # Viewport at base_scale: points * scale, rounded to whole pixels
            self._full_size = (
                max(1, int(round(w_pt * self.base_scale))),
                max(1, int(round(h_pt * self.base_scale))),
            )
        return self._full_size

    def _page_size_points(self) -> Tuple[float, float]:
        from pdf2image import pdfinfo_from_path
        from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

        try:
            info = pdfinfo_from_path(
                str(self.path), poppler_path=self.poppler_path, first_page=self.page, last_page=self.page
            )
        except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, OSError) as e:
            raise RasterizationFailure(f"cannot read PDF info: {self.path} ({e})") from e

        pages = int(info.get("Pages", 0) or 0)
        if pages and not (1 <= self.page <= pages):
            raise RasterizationFailure(f"page {self.page} out of range 1..{pages}")
        size = info.get(f"Page {self.page:>4} size") or info.get("Page size") or ""
        m = self._PAGE_SIZE_RE.search(str(size))
        if not m:
            raise RasterizationFailure(f"cannot parse PDF page size: {size!r}")
        w_pt, h_pt = float(m.group(1)), float(m.group(2))
        # poppler renders with /Rotate applied, pdfinfo reports the unrotated box
        rot = info.get(f"Page {self.page:>4} rot", info.get("Page rot", 0))
        try:
            rot = int(float(rot)) % 360
        except (TypeError, ValueError):
            rot = 0
        if rot in (90, 270):
            w_pt, h_pt = h_pt, w_pt
        return w_pt, h_pt

    def render_at_scale(self, scale: float) -> np.ndarray:
        from pdf2image import convert_from_path
        from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError

        w, h = self.target_dims(scale)
        try:
            images = convert_from_path(
                str(self.path),
                dpi=PDF_POINTS_PER_INCH * float(scale),
                first_page=self.page,
                last_page=self.page,
                size=(w, h),
                fmt="png",
                poppler_path=self.poppler_path,
            )
        except (PDFPageCountError, PDFSyntaxError, OSError) as e:
            raise RasterizationFailure(f"pdf render failed at scale {scale}: {e}") from e
        if not images:
            raise RasterizationFailure(f"pdf render returned no image for page {self.page}")
        arr = np.asarray(images[0].convert("RGB"))
        log.debug("rendered pdf page", extra={"extra": {"page": self.page, "scale": scale, "size": [w, h]}})
        return arr


def _to_rgb(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return np.repeat(image[..., None], 3, axis=-1).astype(np.uint8, copy=False)
    if image.shape[2] == 4:
        return np.ascontiguousarray(image[..., :3]).astype(np.uint8, copy=False)
    if image.shape[2] != 3:
        raise ValueError("image must have 1, 3 or 4 channels")
    return image.astype(np.uint8, copy=False)


def open_rasterizer(path: str | Path, page: int = 1, base_scale: float = 2.0) -> Rasterizer:
    """PDF sources go through poppler; anything else is read as an image."""
    p = Path(path)
    if not p.exists():
        raise RasterizationFailure(f"source not found: {p}")
    if p.suffix.lower() == ".pdf":
        return PdfPageRasterizer(p, page=page, base_scale=base_scale)
    return ImageRasterizer.from_path(p, base_scale=base_scale)
