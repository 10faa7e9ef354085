"""
Unit tests for page rasterizers (tiler.rasterize)
"""

from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from common.errors import RasterizationFailure
from tiler.rasterize import ImageRasterizer, PdfPageRasterizer, open_rasterizer

from tests.conftest import gradient_page


def _pdfinfo(size="612 x 792 pts (letter)", rot=None, pages=3, page=1):
    info = {"Pages": pages, f"Page {page:>4} size": size}
    if rot is not None:
        info[f"Page {page:>4} rot"] = rot
    return info


class TestImageRasterizer:
    def test_full_size_and_reduced_render(self):
        """Test the source image is the page at base scale and halves per level"""
        r = ImageRasterizer(gradient_page(1000, 700), base_scale=2.0)
        assert r.full_size == (1000, 700)
        assert r.render_at_scale(2.0).shape == (700, 1000, 3)
        assert r.render_at_scale(0.5).shape == (175, 250, 3)

    def test_non_integer_reduction_rejected(self):
        """Test scales that are not base_scale / integer are refused"""
        r = ImageRasterizer(gradient_page(100, 100), base_scale=2.0)
        with pytest.raises(RasterizationFailure):
            r.render_at_scale(1.5)

    def test_grayscale_promoted_to_rgb(self):
        """Test single-channel pages come back as RGB"""
        r = ImageRasterizer(np.zeros((10, 20), dtype=np.uint8), base_scale=1.0)
        assert r.render_at_scale(1.0).shape == (10, 20, 3)

    def test_open_rasterizer(self, tmp_path):
        """Test image files open as ImageRasterizer and missing files fail"""
        p = tmp_path / "page.png"
        Image.fromarray(gradient_page(64, 32)).save(p)
        r = open_rasterizer(p, base_scale=1.0)
        assert isinstance(r, ImageRasterizer)
        assert r.full_size == (64, 32)
        with pytest.raises(RasterizationFailure):
            open_rasterizer(tmp_path / "missing.pdf")


class TestPdfPageRasterizer:
    def test_page_size_from_pdfinfo(self):
        """Test the page size is points times base scale"""
        with patch("pdf2image.pdfinfo_from_path", return_value=_pdfinfo()):
            r = PdfPageRasterizer("doc.pdf", page=1, base_scale=2.0)
            assert r.full_size == (1224, 1584)

    @pytest.mark.parametrize("rot", [90, 270, "90"])
    def test_rotated_page_swaps_dimensions(self, rot):
        """Test a quarter-turn /Rotate yields a landscape viewport"""
        with patch("pdf2image.pdfinfo_from_path", return_value=_pdfinfo(rot=rot)):
            assert PdfPageRasterizer("doc.pdf", base_scale=1.0).full_size == (792, 612)

    @pytest.mark.parametrize("rot", [0, 180])
    def test_upright_rotation_keeps_dimensions(self, rot):
        """Test 0 and 180 degree pages keep their reported size"""
        with patch("pdf2image.pdfinfo_from_path", return_value=_pdfinfo(rot=rot)):
            assert PdfPageRasterizer("doc.pdf", base_scale=1.0).full_size == (612, 792)

    def test_render_requests_rotated_size(self):
        """Test poppler is asked for the rotated target size at each level"""
        page = Image.fromarray(np.full((306, 396, 3), 255, dtype=np.uint8))
        with patch("pdf2image.pdfinfo_from_path", return_value=_pdfinfo(rot=90)), patch(
            "pdf2image.convert_from_path", return_value=[page]
        ) as convert:
            r = PdfPageRasterizer("doc.pdf", page=1, base_scale=1.0)
            out = r.render_at_scale(0.5)
        assert convert.call_args.kwargs["size"] == (396, 306)
        assert out.shape == (306, 396, 3)

    def test_page_out_of_range(self):
        """Test a page number past the document end fails"""
        with patch("pdf2image.pdfinfo_from_path", return_value=_pdfinfo(pages=2, page=5)):
            with pytest.raises(RasterizationFailure, match="out of range"):
                PdfPageRasterizer("doc.pdf", page=5).full_size

    def test_unparseable_size(self):
        """Test a missing page size is a rasterization failure"""
        with patch("pdf2image.pdfinfo_from_path", return_value={"Pages": 1}):
            with pytest.raises(RasterizationFailure, match="page size"):
                PdfPageRasterizer("doc.pdf").full_size
