import io
import tempfile
import unittest
from unittest import mock

from pypdf import PdfReader
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import mm

import surface
from surface import MARGIN, PageManager, Surface, resolve_font_family


class FontTests(unittest.TestCase):
    def test_missing_font_files_fall_back_to_courier(self):
        with tempfile.TemporaryDirectory() as empty_dir, mock.patch.object(surface, "_resolved_family", None):
            family = resolve_font_family(empty_dir)
        self.assertEqual((family.regular, family.bold), ("Courier", "Courier-Bold"))


class SurfaceTests(unittest.TestCase):
    def test_geometry_in_millimetres(self):
        s = Surface()
        self.assertAlmostEqual(s.width, LETTER[0] / mm)
        self.assertAlmostEqual(s.content_width, s.width - 2 * MARGIN)
        self.assertAlmostEqual(s.bottom_limit, s.height - 20)

    def test_top_down_coordinates(self):
        s = Surface()
        self.assertEqual(s._y(0), LETTER[1])
        self.assertAlmostEqual(s._y(10), LETTER[1] - 10 * mm)

    def test_save_returns_pdf(self):
        s = Surface(title="t")
        s.text("hello", 10, 20)
        self.assertTrue(s.save().startswith(b"%PDF"))


class PageManagerTests(unittest.TestCase):
    def setUp(self):
        self.surface = Surface()
        self.pages = PageManager(self.surface)

    def test_cursor_starts_at_top_margin(self):
        self.assertEqual(self.pages.y, MARGIN)
        self.assertEqual(self.pages.page_count, 1)

    def test_ensure_space_breaks_only_on_overflow(self):
        with mock.patch.object(self.surface, "show_page", wraps=self.surface.show_page) as show_page:
            self.assertFalse(self.pages.ensure_space(50))
            self.pages.advance(200)
            self.assertTrue(self.pages.ensure_space(50))
        show_page.assert_called_once()
        self.assertEqual(self.pages.page_count, 2)
        self.assertEqual(self.pages.y, MARGIN)

    def test_new_page_with_custom_top(self):
        self.pages.new_page(top=MARGIN + 10)
        self.assertEqual(self.pages.y, MARGIN + 10)

    def test_blocks_never_cross_bottom_limit(self):
        block, count = 15.0, 40
        for i in range(count):
            self.pages.ensure_space(block)
            self.assertLessEqual(self.pages.y + block, self.pages.bottom_limit)
            self.surface.text(f"block {i}", MARGIN, self.pages.y + 5)
            self.pages.advance(block)

        usable = self.pages.bottom_limit - self.pages.top
        self.assertGreaterEqual(self.pages.page_count * usable, block * count)
        self.assertEqual(self.pages.page_count, 3)

        reader = PdfReader(io.BytesIO(self.surface.save()))
        self.assertEqual(len(reader.pages), 3)
        text = "".join(page.extract_text() for page in reader.pages)
        for i in range(count):
            self.assertIn(f"block {i}", text)


if __name__ == "__main__":
    unittest.main()
