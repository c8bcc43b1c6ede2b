"""Tests for MIME sniffing, text extraction and vision image preparation."""

import io
import unittest
from unittest.mock import patch

import fitz  # PyMuPDF
from PIL import Image

from docflow.core.errors import TextExtractionError
from docflow.core.image_processing import VISION_MAX_SIZE, is_image, prepare_vision_image
from docflow.services.text_extractor import PdfTextExtractor, detect_mime_type, sniff_mime_type


def _pdf_bytes(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def _image_bytes(fmt="PNG", size=(10, 10), mode="RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size).save(buf, format=fmt)
    return buf.getvalue()


class MimeDetectionTests(unittest.TestCase):
    def test_signatures(self):
        self.assertEqual(sniff_mime_type(b"%PDF-1.7\n..."), "application/pdf")
        self.assertEqual(sniff_mime_type(_image_bytes("PNG")), "image/png")
        self.assertEqual(sniff_mime_type(_image_bytes("JPEG")), "image/jpeg")
        self.assertEqual(sniff_mime_type(b"RIFF\x00\x00\x00\x00WEBPVP8 "), "image/webp")
        self.assertIsNone(sniff_mime_type(b"plain text"))

    def test_signature_beats_declared_type(self):
        self.assertEqual(detect_mime_type(b"%PDF-1.4", "text/plain", "x.txt"), "application/pdf")

    def test_declared_type_then_extension(self):
        self.assertEqual(detect_mime_type(b"hello", "text/plain; charset=utf-8"), "text/plain")
        self.assertEqual(detect_mime_type(b"hello", None, "notes.txt"), "text/plain")
        self.assertEqual(detect_mime_type(b"hello", None, ""), "application/octet-stream")


class PdfTextExtractorTests(unittest.TestCase):
    def test_pdf_text_and_page_count(self):
        result = PdfTextExtractor().extract(_pdf_bytes("Invoice INV-42", "Total 12.00"), filename="inv.pdf")
        self.assertIn("Invoice INV-42", result.text)
        self.assertIn("Total 12.00", result.text)
        self.assertEqual(result.page_count, 2)

    def test_pdf_without_text_layer(self):
        with self.assertRaises(TextExtractionError):
            PdfTextExtractor().extract(_pdf_bytes(""), filename="scan.pdf")

    def test_corrupt_pdf(self):
        with self.assertRaises(TextExtractionError):
            PdfTextExtractor().extract(b"%PDF-1.4 this is not really a pdf", filename="bad.pdf")

    def test_plain_text(self):
        result = PdfTextExtractor().extract(b"Receipt\n\n\n\nTotal   5.00", "text/plain")
        self.assertEqual(result.text, "Receipt\n\nTotal 5.00")
        self.assertEqual(result.page_count, 1)

    def test_unsupported_type(self):
        with self.assertRaises(TextExtractionError):
            PdfTextExtractor().extract(b"\x00\x01binary", "application/octet-stream")


class VisionImageTests(unittest.TestCase):
    def test_small_png_passes_through(self):
        data = _image_bytes("PNG")
        prepared = prepare_vision_image(data, "image/png")
        self.assertEqual(prepared.data, data)
        self.assertEqual(prepared.mime_type, "image/png")

    def test_large_image_is_downscaled(self):
        prepared = prepare_vision_image(_image_bytes("JPEG", size=(4000, 1000)), "image/jpeg")
        img = Image.open(io.BytesIO(prepared.data))
        self.assertLessEqual(img.width, VISION_MAX_SIZE[0])
        self.assertEqual(prepared.mime_type, "image/jpeg")

    def test_transparent_gif_becomes_png(self):
        prepared = prepare_vision_image(_image_bytes("GIF", mode="P"), "image/gif")
        self.assertEqual(prepared.mime_type, "image/png")

    def test_unreadable_image(self):
        with self.assertRaises(TextExtractionError):
            prepare_vision_image(b"\x89PNG not an image", "image/png")

    def test_decompression_bomb_is_an_extraction_error(self):
        data = _image_bytes("PNG", size=(16, 16))
        with patch.object(Image, "MAX_IMAGE_PIXELS", 10):
            with self.assertRaises(TextExtractionError):
                prepare_vision_image(data, "image/png")

    def test_is_image(self):
        self.assertTrue(is_image("IMAGE/PNG"))
        self.assertFalse(is_image("application/pdf"))
        self.assertFalse(is_image(None))
