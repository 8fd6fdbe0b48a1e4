"""Structural and content validation of uploaded documents.

The validator runs a fixed set of checks, each scoring 0 or 100:
- format: magic-byte detection (pdf, jpeg, png), allowed by the category and
  consistent with the declared MIME type
- size: within the minimum and the category maximum
- content: the PDF parses with pdfplumber and has an EOF trailer and at least
  one page, or the image decodes with Pillow within the dimension bounds
- basic_security: allowed extension and a filename without path or control
  characters

The overall score is the mean of check scores and the confidence is the share
of passed checks. Validation is a pure function of its inputs: it never
touches storage or the registry. Text extracted from PDFs feeds the
category-specific field extraction.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import pdfplumber
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

DEFAULT_ACCEPTANCE_THRESHOLD = 75

# Detected type -> (canonical MIME type, accepted extensions)
KNOWN_FORMATS: dict[str, tuple[str, frozenset[str]]] = {
    "pdf": ("application/pdf", frozenset({"pdf"})),
    "jpeg": ("image/jpeg", frozenset({"jpg", "jpeg"})),
    "png": ("image/png", frozenset({"png"})),
}

# Non-standard aliases clients send for the canonical types
MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
JPEG_MAGIC = b"\xff\xd8\xff"
PDF_MAGIC = b"%PDF-"

NATIONAL_ID_PATTERN = re.compile(r"\b[12]\d{9}\b")
DATE_PATTERN = re.compile(r"\b(\d{2}/\d{2}/\d{4}|\d{4}-\d{2}-\d{2})\b")
REGISTRATION_NUMBER_PATTERN = re.compile(r"\b\d{10}\b")

FILENAME_FORBIDDEN = re.compile(r"[/\\\x00-\x1f\x7f]")


@dataclass(frozen=True, slots=True)
class ValidationRules:
    """Inputs that parameterize validation for one upload.

    Attributes:
        allowed_formats: Extensions accepted by the category.
        max_size_bytes: Category size ceiling.
        min_size_bytes: Smallest accepted size.
        declared_mime_type: MIME type declared by the uploader.
        filename: Original filename.
        category_id: Category the document is uploaded into.
        declared_size: Size declared by the uploader, if any.
    """

    allowed_formats: frozenset[str]
    max_size_bytes: int
    min_size_bytes: int
    declared_mime_type: str
    filename: str
    category_id: str
    declared_size: int | None = None


@dataclass(frozen=True, slots=True)
class ValidationCheck:
    """Outcome of a single check."""

    type: str
    passed: bool
    score: int
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ValidationReport:
    """Aggregate validation outcome.

    Attributes:
        score: Mean check score, 0-100.
        confidence: Percentage of checks that passed.
        is_valid: Whether the score reaches the acceptance threshold.
        extracted_fields: Structured values found in the document text.
        errors: One entry per failed check.
        warnings: Non-blocking inconsistencies.
        checks: The individual check results.
        detected_format: Detected type key (pdf, jpeg, png) or None.
    """

    score: int
    confidence: int
    is_valid: bool
    extracted_fields: dict[str, Any]
    errors: list[str]
    warnings: list[str]
    checks: list[ValidationCheck]
    detected_format: str | None = None

    def to_details(self) -> dict[str, Any]:
        """Serialize for the document's validation_details column."""
        return {
            "score": self.score,
            "confidence": self.confidence,
            "detected_format": self.detected_format,
            "extracted_fields": self.extracted_fields,
            "errors": self.errors,
            "warnings": self.warnings,
            "checks": [
                {"type": c.type, "passed": c.passed, "score": c.score, "details": c.details}
                for c in self.checks
            ],
        }


def detect_format(data: bytes) -> str | None:
    """Detect the document type from its leading bytes."""
    if data.startswith(PDF_MAGIC):
        return "pdf"
    if data.startswith(PNG_MAGIC):
        return "png"
    if data.startswith(JPEG_MAGIC):
        return "jpeg"
    return None


def file_extension(filename: str) -> str:
    """Lowercase extension without the dot, or an empty string."""
    _, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


def normalize_mime_type(mime_type: str) -> str:
    """Lowercase a MIME type, drop parameters and resolve aliases."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(base, base)


@dataclass(frozen=True, slots=True)
class PdfSummary:
    """Page count and embedded text of a parsed PDF."""

    page_count: int
    text: str


@dataclass(frozen=True, slots=True)
class ImageSummary:
    """Format and pixel dimensions of a decoded image."""

    format: str
    width: int
    height: int


def read_pdf(data: bytes) -> PdfSummary:
    """Parse a PDF with pdfplumber and collect the text of every page.

    Compressed content streams are decoded by the parser, so text shown
    through FlateDecode streams is extracted like plain text.

    Raises:
        ValueError: If the document cannot be parsed.
    """
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            texts = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        # pdfminer raises a wide range of parser errors on malformed input
        raise ValueError(f"PDF could not be parsed: {e}") from e
    return PdfSummary(page_count=len(texts), text="\n".join(texts))


def read_image(data: bytes) -> ImageSummary:
    """Decode an image header with Pillow and verify the file structure.

    Raises:
        ValueError: If Pillow cannot identify or verify the image.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            summary = ImageSummary(
                format=(image.format or "").lower(),
                width=image.width,
                height=image.height,
            )
            image.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise ValueError(f"image could not be decoded: {e}") from e
    return summary


class ContentValidator:
    """Scores uploads against category rules.

    Example:
        validator = ContentValidator(acceptance_threshold=75)
        report = validator.validate(data, rules)
        if not report.is_valid:
            print(report.errors)
    """

    def __init__(
        self,
        *,
        acceptance_threshold: int = DEFAULT_ACCEPTANCE_THRESHOLD,
        min_image_width: int = 200,
        min_image_height: int = 200,
        max_image_width: int = 10000,
        max_image_height: int = 10000,
    ) -> None:
        self.acceptance_threshold = acceptance_threshold
        self._min_image = (min_image_width, min_image_height)
        self._max_image = (max_image_width, max_image_height)

    def validate(self, data: bytes, rules: ValidationRules) -> ValidationReport:
        """Run all checks and aggregate them into a report."""
        detected = detect_format(data)
        warnings: list[str] = []

        content, text = self._check_content(data, detected)
        checks = [
            self._check_format(detected, rules, warnings),
            self._check_size(data, rules, warnings),
            content,
            self._check_basic_security(data, rules),
        ]

        passed = sum(1 for check in checks if check.passed)
        score = round(sum(check.score for check in checks) / len(checks))
        confidence = round(passed / len(checks) * 100)
        errors = [
            f"{check.type}: {check.details.get('error', 'validation failed')}"
            for check in checks
            if not check.passed
        ]
        extracted = self._extract_fields(text, rules.category_id)

        report = ValidationReport(
            score=score,
            confidence=confidence,
            is_valid=score >= self.acceptance_threshold,
            extracted_fields=extracted,
            errors=errors,
            warnings=warnings,
            checks=checks,
            detected_format=detected,
        )

        logger.debug(
            "Validated %s for category=%s: score=%d, confidence=%d, errors=%d",
            rules.filename,
            rules.category_id,
            report.score,
            report.confidence,
            len(errors),
        )
        return report

    def _check_format(
        self,
        detected: str | None,
        rules: ValidationRules,
        warnings: list[str],
    ) -> ValidationCheck:
        if detected is None:
            return ValidationCheck(
                type="format",
                passed=False,
                score=0,
                details={"error": "could not detect file type"},
            )

        canonical_mime, extensions = KNOWN_FORMATS[detected]
        declared = normalize_mime_type(rules.declared_mime_type)
        is_allowed = bool(extensions & rules.allowed_formats)
        matches_declared = declared == canonical_mime

        if file_extension(rules.filename) not in extensions:
            warnings.append(
                f"file extension '{file_extension(rules.filename)}' does not match "
                f"detected type '{detected}'"
            )

        details: dict[str, Any] = {
            "detected_type": canonical_mime,
            "declared_type": declared,
            "is_allowed_type": is_allowed,
            "matches_declared_type": matches_declared,
        }
        if not is_allowed:
            details["error"] = f"type '{detected}' not allowed for this category"
        elif not matches_declared:
            details["error"] = f"declared type '{declared}' does not match content"

        passed = is_allowed and matches_declared
        return ValidationCheck(type="format", passed=passed, score=100 if passed else 0, details=details)

    def _check_size(
        self,
        data: bytes,
        rules: ValidationRules,
        warnings: list[str],
    ) -> ValidationCheck:
        actual = len(data)
        passed = rules.min_size_bytes <= actual <= rules.max_size_bytes

        if rules.declared_size is not None:
            tolerance = max(1024, rules.declared_size * 0.01)
            if abs(actual - rules.declared_size) > tolerance:
                warnings.append(
                    f"declared size {rules.declared_size} differs from actual size {actual}"
                )

        details: dict[str, Any] = {
            "actual_size": actual,
            "min_size": rules.min_size_bytes,
            "max_size": rules.max_size_bytes,
        }
        if actual < rules.min_size_bytes:
            details["error"] = f"file smaller than {rules.min_size_bytes} bytes"
        elif actual > rules.max_size_bytes:
            details["error"] = f"file larger than {rules.max_size_bytes} bytes"

        return ValidationCheck(type="size", passed=passed, score=100 if passed else 0, details=details)

    def _check_content(self, data: bytes, detected: str | None) -> tuple[ValidationCheck, str]:
        text = ""
        if detected == "pdf":
            details, text = self._inspect_pdf(data)
        elif detected in ("png", "jpeg"):
            details = self._inspect_image(data, detected)
        else:
            details = {"is_valid": False, "error": "unsupported content"}

        passed = bool(details.get("is_valid"))
        check = ValidationCheck(type="content", passed=passed, score=100 if passed else 0, details=details)
        return check, text

    def _inspect_pdf(self, data: bytes) -> tuple[dict[str, Any], str]:
        has_trailer = b"%%EOF" in data[-1024:]
        details: dict[str, Any] = {
            "has_trailer": has_trailer,
            "version": data[5:8].decode("latin-1", errors="replace"),
        }
        if not has_trailer:
            details["error"] = "PDF is truncated (no EOF marker)"
            details["is_valid"] = False
            return details, ""

        try:
            summary = read_pdf(data)
        except ValueError as e:
            details.update(page_count=0, is_valid=False, error=str(e))
            return details, ""

        details["page_count"] = summary.page_count
        details["has_text"] = bool(summary.text.strip())
        if summary.page_count == 0:
            details["error"] = "PDF has no pages"
        details["is_valid"] = summary.page_count > 0
        return details, summary.text

    def _inspect_image(self, data: bytes, detected: str) -> dict[str, Any]:
        try:
            summary = read_image(data)
        except ValueError as e:
            return {"is_valid": False, "error": str(e)}
        if summary.format != detected:
            return {
                "is_valid": False,
                "error": f"decoded format '{summary.format}' does not match '{detected}'",
            }

        width, height = summary.width, summary.height
        min_w, min_h = self._min_image
        max_w, max_h = self._max_image
        is_valid = min_w <= width <= max_w and min_h <= height <= max_h
        details: dict[str, Any] = {"width": width, "height": height, "is_valid": is_valid}
        if not is_valid:
            details["error"] = f"image {width}x{height} outside accepted bounds"
        return details

    def _check_basic_security(self, data: bytes, rules: ValidationRules) -> ValidationCheck:
        extension = file_extension(rules.filename)
        valid_extension = extension in rules.allowed_formats
        valid_filename = (
            0 < len(rules.filename) <= 255 and not FILENAME_FORBIDDEN.search(rules.filename)
        )
        has_content = len(data) > 0

        passed = valid_extension and valid_filename and has_content
        details: dict[str, Any] = {
            "extension": extension,
            "valid_extension": valid_extension,
            "valid_filename": valid_filename,
            "risk_level": "LOW" if passed else "MEDIUM",
        }
        if not passed:
            details["error"] = (
                f"extension '{extension}' not allowed"
                if not valid_extension
                else "filename or content rejected"
            )
        return ValidationCheck(
            type="basic_security", passed=passed, score=100 if passed else 0, details=details
        )

    def _extract_fields(self, text: str, category_id: str) -> dict[str, Any]:
        if not text:
            return {}

        fields: dict[str, Any] = {}
        if category_id.startswith("national_id"):
            if match := NATIONAL_ID_PATTERN.search(text):
                fields["national_id"] = match.group(0)
            if dates := DATE_PATTERN.findall(text):
                fields["dates"] = dates
        elif category_id == "commercial_registration":
            if match := REGISTRATION_NUMBER_PATTERN.search(text):
                fields["registration_number"] = match.group(0)
        return fields
