"""Tests for content validation.

Tests cover:
- Format detection and MIME normalization
- Check scoring and threshold
- PDF parsing, including FlateDecode content streams
- Image decoding and dimension checks
- Filename and extension checks
- Field extraction from PDF text
"""

import pytest

from docintake.services.validation import (
    ContentValidator,
    ValidationRules,
    detect_format,
    file_extension,
    normalize_mime_type,
    read_image,
    read_pdf,
)
from tests.factories import make_jpeg, make_pdf, make_png, make_truncated_pdf

MB = 1024 * 1024


def rules(**overrides) -> ValidationRules:
    values = {
        "allowed_formats": frozenset({"pdf", "jpg", "jpeg", "png"}),
        "max_size_bytes": 10 * MB,
        "min_size_bytes": 1024,
        "declared_mime_type": "application/pdf",
        "filename": "passport.pdf",
        "category_id": "national_id_front",
    }
    values.update(overrides)
    return ValidationRules(**values)


def check(report, check_type):
    return next(c for c in report.checks if c.type == check_type)


class TestHelpers:
    """Tests for detection helpers."""

    @pytest.mark.parametrize(
        ("data", "expected"),
        [
            (make_pdf(), "pdf"),
            (make_png(), "png"),
            (make_jpeg(), "jpeg"),
            (b"GIF89a" + b"\x00" * 10, None),
        ],
    )
    def test_detect_format(self, data, expected):
        """Formats are recognized from magic bytes."""
        assert detect_format(data) == expected

    def test_file_extension(self):
        """Extensions are lowercased and may be absent."""
        assert file_extension("Scan.JPG") == "jpg"
        assert file_extension("archive.tar.gz") == "gz"
        assert file_extension("README") == ""

    def test_normalize_mime_type(self):
        """Parameters are dropped and aliases resolved."""
        assert normalize_mime_type("Application/PDF; charset=binary") == "application/pdf"
        assert normalize_mime_type("image/jpg") == "image/jpeg"

    def test_read_image_png(self):
        """PNG format and dimensions are decoded."""
        summary = read_image(make_png(1024, 768))
        assert (summary.format, summary.width, summary.height) == ("png", 1024, 768)

    def test_read_image_jpeg(self):
        """JPEG dimensions are decoded past the comment segment."""
        summary = read_image(make_jpeg(640, 480))
        assert (summary.format, summary.width, summary.height) == ("jpeg", 640, 480)

    def test_read_image_garbage(self):
        """A PNG signature followed by garbage cannot be decoded."""
        with pytest.raises(ValueError, match="could not be decoded"):
            read_image(b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)

    def test_read_pdf_pages(self):
        """Every page is counted and its text collected."""
        summary = read_pdf(make_pdf("Statement of account", pages=3))
        assert summary.page_count == 3
        assert summary.text.count("Statement of account") == 3

    def test_read_pdf_flate_stream(self):
        """Text inside FlateDecode content streams is extracted."""
        data = make_pdf("Passport 1234567890", compress=True)
        assert b"/FlateDecode" in data
        assert b"Passport" not in data
        assert "Passport 1234567890" in read_pdf(data).text

    def test_read_pdf_garbage(self):
        """Content that only looks like a PDF fails to parse."""
        with pytest.raises(ValueError, match="could not be parsed"):
            read_pdf(b"%PDF-1.4\n" + b"\x00" * 64 + b"\n%%EOF\n")


class TestContentValidator:
    """Tests for the scoring validator."""

    def test_valid_pdf(self):
        """A well-formed PDF passes every check."""
        report = ContentValidator().validate(make_pdf(), rules())
        assert report.is_valid is True
        assert report.score == 100
        assert report.confidence == 100
        assert report.errors == []
        assert report.detected_format == "pdf"
        assert check(report, "content").details["page_count"] == 1

    def test_valid_jpeg(self):
        """A JPEG declared as image/jpg passes."""
        report = ContentValidator().validate(
            make_jpeg(),
            rules(declared_mime_type="image/jpg", filename="selfie.jpg"),
        )
        assert report.is_valid is True

    def test_unknown_format_fails(self):
        """Unrecognized content fails format, content and scores low."""
        data = b"GIF89a" + b"\x00" * 2048
        report = ContentValidator().validate(data, rules(filename="a.gif"))
        assert report.is_valid is False
        assert report.score == 25
        assert check(report, "format").passed is False

    def test_format_not_allowed_for_category(self):
        """A PNG uploaded into a PDF-only category fails the format check."""
        report = ContentValidator().validate(
            make_png(),
            rules(
                allowed_formats=frozenset({"pdf"}),
                declared_mime_type="image/png",
                filename="scan.png",
            ),
        )
        assert check(report, "format").passed is False
        assert check(report, "basic_security").passed is False
        assert report.is_valid is False

    def test_declared_type_mismatch(self):
        """Declaring a PDF as an image fails the format check."""
        report = ContentValidator().validate(make_pdf(), rules(declared_mime_type="image/png"))
        format_check = check(report, "format")
        assert format_check.passed is False
        assert "does not match content" in format_check.details["error"]

    def test_extension_mismatch_warns(self):
        """A PDF named .png is a warning on the format check."""
        report = ContentValidator().validate(make_pdf(), rules(filename="scan.png"))
        assert any("does not match detected type" in w for w in report.warnings)

    def test_too_small(self):
        """Content below the minimum size fails the size check."""
        data = make_pdf(padding=0)
        report = ContentValidator().validate(data, rules(min_size_bytes=len(data) + 1))
        assert check(report, "size").passed is False
        assert "smaller than" in check(report, "size").details["error"]

    def test_too_large(self):
        """Content above the category maximum fails the size check."""
        data = make_pdf()
        report = ContentValidator().validate(data, rules(max_size_bytes=len(data) - 1))
        assert check(report, "size").passed is False

    def test_declared_size_mismatch_warns(self):
        """A declared size far from the actual size is a warning."""
        report = ContentValidator().validate(make_pdf(), rules(declared_size=5 * MB))
        assert any("declared size" in w for w in report.warnings)

    def test_truncated_pdf(self):
        """A PDF without EOF marker fails the content check."""
        report = ContentValidator().validate(make_truncated_pdf(), rules())
        content = check(report, "content")
        assert content.passed is False
        assert "truncated" in content.details["error"]
        assert report.score == 75

    def test_threshold_applies(self):
        """One failed check is rejected under a stricter threshold."""
        report = ContentValidator(acceptance_threshold=80).validate(make_truncated_pdf(), rules())
        assert report.is_valid is False

    def test_image_too_small(self):
        """Images below the minimum dimensions fail the content check."""
        report = ContentValidator().validate(
            make_png(100, 100),
            rules(declared_mime_type="image/png", filename="scan.png"),
        )
        assert check(report, "content").passed is False

    def test_filename_with_path_rejected(self):
        """Path separators in the filename fail the security check."""
        report = ContentValidator().validate(make_pdf(), rules(filename="../etc/passport.pdf"))
        assert check(report, "basic_security").passed is False
        assert check(report, "basic_security").details["valid_filename"] is False

    def test_national_id_fields_extracted(self):
        """National ID number and dates are extracted from PDF text."""
        data = make_pdf("ID 1234567890 issued 2020-01-15 expires 15/01/2030")
        report = ContentValidator().validate(data, rules())
        assert report.extracted_fields["national_id"] == "1234567890"
        assert report.extracted_fields["dates"] == ["2020-01-15", "15/01/2030"]

    def test_fields_extracted_from_compressed_pdf(self):
        """Fields are found in FlateDecode content streams."""
        data = make_pdf("ID 1234567890 issued 2020-01-15", compress=True)
        report = ContentValidator().validate(data, rules())
        assert report.is_valid is True
        assert check(report, "content").details["has_text"] is True
        assert report.extracted_fields == {
            "national_id": "1234567890",
            "dates": ["2020-01-15"],
        }

    def test_image_without_text_extracts_nothing(self):
        """Images carry no extractable fields."""
        report = ContentValidator().validate(
            make_jpeg(),
            rules(declared_mime_type="image/jpeg", filename="scan.jpg"),
        )
        assert report.extracted_fields == {}

    def test_registration_number_extracted(self):
        """Commercial registration numbers are extracted."""
        data = make_pdf("CR 7001234567")
        report = ContentValidator().validate(data, rules(category_id="commercial_registration"))
        assert report.extracted_fields == {"registration_number": "7001234567"}

    def test_to_details(self):
        """Report serializes every check."""
        details = ContentValidator().validate(make_pdf(), rules()).to_details()
        assert details["score"] == 100
        assert {c["type"] for c in details["checks"]} == {
            "format",
            "size",
            "content",
            "basic_security",
        }
