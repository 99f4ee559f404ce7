"""
Unit Tests — Text Extraction
═════════════════════════════
Tests for:
  • detect_media_type — magic bytes first, extension fallback, spoofed files
  • TextExtractor     — PDF / DOCX / text strategies and their failure modes
  • normalize_text    — unicode + whitespace cleanup
"""

from __future__ import annotations

import pytest

from policy_rag.core.errors import CorruptFile, EmptyOrImageOnly, ExtractionFailure, UnsupportedType
from policy_rag.processing.extractor import (
    DOCX_MEDIA_TYPE,
    LEGACY_DOC_TYPE,
    MARKDOWN_MEDIA_TYPE,
    PDF_MEDIA_TYPE,
    TEXT_MEDIA_TYPE,
    TextExtractor,
    detect_media_type,
    get_extension,
    normalize_text,
)


@pytest.mark.unit
@pytest.mark.ingestion
class TestDetectMediaType:

    def test_pdf_magic_bytes(self, text_pdf_bytes):
        assert detect_media_type("policy.pdf", text_pdf_bytes[:8]) == PDF_MEDIA_TYPE

    def test_magic_bytes_win_over_extension(self, text_pdf_bytes):
        assert detect_media_type("policy.txt", text_pdf_bytes[:8]) == PDF_MEDIA_TYPE

    def test_docx_zip_signature(self, docx_bytes):
        assert detect_media_type("remote.docx", docx_bytes[:8]) == DOCX_MEDIA_TYPE

    def test_legacy_word_is_detected_but_distinct(self):
        head = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
        assert detect_media_type("old.doc", head) == LEGACY_DOC_TYPE

    @pytest.mark.parametrize(
        "filename, expected",
        [("notes.txt", TEXT_MEDIA_TYPE), ("README.md", MARKDOWN_MEDIA_TYPE), ("guide.markdown", MARKDOWN_MEDIA_TYPE)],
    )
    def test_text_types_fall_back_to_extension(self, filename, expected):
        assert detect_media_type(filename, b"Hello wo") == expected

    def test_pdf_extension_without_signature_is_octet_stream(self):
        assert detect_media_type("fake.pdf", b"MZ\x90\x00\x00\x00\x00\x00") == "application/octet-stream"

    def test_get_extension_lowercases(self):
        assert get_extension("Policy.PDF") == ".pdf"
        assert get_extension("no_extension") == ""


@pytest.mark.unit
@pytest.mark.ingestion
class TestTextExtractor:

    @pytest.fixture
    def extractor(self) -> TextExtractor:
        return TextExtractor()

    def test_pdf_text_layer_is_extracted(self, extractor, text_pdf_bytes):
        result = extractor.extract(text_pdf_bytes, PDF_MEDIA_TYPE)

        assert result.strategy == "pdf"
        assert result.page_count == 1
        assert "15 vacation days" in result.text
        assert result.total_chars == len(result.text)

    def test_image_only_pdf_is_empty_or_image_only(self, extractor, blank_pdf_bytes):
        with pytest.raises(EmptyOrImageOnly) as exc_info:
            extractor.extract(blank_pdf_bytes, PDF_MEDIA_TYPE)
        assert "scanned" in exc_info.value.message

    def test_docx_paragraphs_are_extracted(self, extractor, docx_bytes):
        result = extractor.extract(docx_bytes, DOCX_MEDIA_TYPE)

        assert result.strategy == "docx"
        assert "Remote Work Policy" in result.text
        assert "three days per week" in result.text

    def test_plain_text_is_decoded_and_normalized(self, extractor):
        result = extractor.extract("Line one   \n\n\n\nLine two\n".encode("utf-8"), TEXT_MEDIA_TYPE)
        assert result.strategy == "text"
        assert result.text == "Line one\n\nLine two"

    def test_latin1_fallback(self, extractor):
        result = extractor.extract("Café policy".encode("latin-1"), TEXT_MEDIA_TYPE)
        assert result.text == "Café policy"

    def test_empty_text_file_fails(self, extractor):
        with pytest.raises(EmptyOrImageOnly):
            extractor.extract(b"   \n\n ", MARKDOWN_MEDIA_TYPE)

    def test_unsupported_media_type(self, extractor):
        with pytest.raises(UnsupportedType):
            extractor.extract(b"\xd0\xcf\x11\xe0", LEGACY_DOC_TYPE)

    def test_garbage_pdf_is_corrupt_file(self, extractor):
        with pytest.raises(CorruptFile) as exc_info:
            extractor.extract(b"%PDF-1.4\nthis is not really a pdf", PDF_MEDIA_TYPE)
        assert isinstance(exc_info.value, ExtractionFailure)

    def test_garbage_docx_is_corrupt_file(self, extractor):
        with pytest.raises(CorruptFile):
            extractor.extract(b"PK\x03\x04" + b"\x00" * 64, DOCX_MEDIA_TYPE)


@pytest.mark.unit
class TestNormalizeText:

    def test_invisible_spaces_become_spaces(self):
        assert normalize_text("a\u00a0b\u200bc\ufeff") == "a b c"

    def test_nul_bytes_removed(self):
        assert normalize_text("pol\x00icy") == "policy"

    def test_nfc_composition(self):
        assert normalize_text("Cafe\u0301") == "Caf\u00e9"
