"""Document category catalog.

Categories are reference data: the pipeline reads them and never writes
them. The default catalog covers customer KYC documents, contractor business
documents and documents common to both. REQUIRED_CATEGORIES lists, per
role, the categories an owner must hold for their documents to be complete.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

from docintake.db.models import CategoryAudience, DocumentCategory, PrincipalRole

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

ALL_FORMATS = ("pdf", "jpg", "jpeg", "png")
PDF_ONLY = ("pdf",)

REQUIRED_CATEGORIES: dict[PrincipalRole, tuple[str, ...]] = {
    PrincipalRole.CUSTOMER: (
        "national_id_front",
        "national_id_back",
        "proof_of_address",
    ),
    PrincipalRole.CONTRACTOR: (
        "commercial_registration",
        "vat_certificate",
        "municipal_license",
        "chamber_membership",
        "insurance_certificate",
        "bank_account_proof",
    ),
}


@dataclass(frozen=True, slots=True)
class CategorySeed:
    """Definition of a catalog entry."""

    category_id: str
    name: str
    description: str
    audience: CategoryAudience
    allowed_formats: tuple[str, ...] = ALL_FORMATS
    max_size_mb: int = 10


_CUSTOMER = CategoryAudience.CUSTOMER
_CONTRACTOR = CategoryAudience.CONTRACTOR
_BOTH = CategoryAudience.BOTH

DEFAULT_CATEGORIES: tuple[CategorySeed, ...] = (
    # Customer KYC documents
    CategorySeed("national_id_front", "National ID (front)", "Front side of the national ID card", _CUSTOMER),
    CategorySeed("national_id_back", "National ID (back)", "Back side of the national ID card", _CUSTOMER),
    CategorySeed("proof_of_address", "Proof of address", "Utility bill or lease dated within 3 months", _CUSTOMER),
    CategorySeed("passport", "Passport", "Valid passport", _CUSTOMER),
    CategorySeed("salary_certificate", "Salary certificate", "Salary certificate from employer", _CUSTOMER, PDF_ONLY),
    CategorySeed("bank_statement", "Bank statement", "Bank statement (last 3 months)", _CUSTOMER, PDF_ONLY),
    CategorySeed("employment_contract", "Employment contract", "Employment contract", _CUSTOMER, PDF_ONLY),
    CategorySeed("income_proof", "Proof of income", "Proof of income", _CUSTOMER, PDF_ONLY),
    # Contractor business documents
    CategorySeed("commercial_registration", "Commercial registration", "Commercial Registration Certificate", _CONTRACTOR),
    CategorySeed("vat_certificate", "VAT certificate", "VAT Registration Certificate", _CONTRACTOR),
    CategorySeed("municipal_license", "Municipal license", "Municipal License", _CONTRACTOR),
    CategorySeed("chamber_membership", "Chamber membership", "Chamber of Commerce Membership", _CONTRACTOR),
    CategorySeed("insurance_certificate", "Insurance certificate", "Professional Insurance Certificate", _CONTRACTOR, PDF_ONLY),
    CategorySeed("tax_clearance", "Tax clearance", "Tax Clearance Certificate", _CONTRACTOR, PDF_ONLY),
    CategorySeed("bank_account_proof", "Bank account proof", "Bank account proof (IBAN certificate)", _CONTRACTOR, PDF_ONLY),
    # Common documents
    CategorySeed("power_of_attorney", "Power of attorney", "Power of Attorney", _BOTH, PDF_ONLY),
    CategorySeed("agreement", "Service agreement", "Service Agreement", _BOTH, PDF_ONLY),
    CategorySeed("invoice", "Invoice", "Invoice", _BOTH, PDF_ONLY),
)  # fmt: skip


def audiences_for(role: PrincipalRole) -> tuple[CategoryAudience, CategoryAudience]:
    """Category audiences visible to a role."""
    return CategoryAudience(role.value), CategoryAudience.BOTH


async def seed_default_categories(
    session_factory: async_sessionmaker[AsyncSession],
    seeds: tuple[CategorySeed, ...] = DEFAULT_CATEGORIES,
) -> int:
    """Insert catalog entries that do not exist yet.

    Existing rows are left untouched so operators can deactivate or resize
    categories without the seed reverting them.

    Returns:
        Number of categories inserted.
    """
    async with session_factory() as session:
        result = await session.execute(select(DocumentCategory.category_id))
        existing = set(result.scalars().all())

        missing = [seed for seed in seeds if seed.category_id not in existing]
        for seed in missing:
            session.add(
                DocumentCategory(
                    category_id=seed.category_id,
                    name=seed.name,
                    description=seed.description,
                    required_for_role=seed.audience,
                    allowed_formats=list(seed.allowed_formats),
                    max_size_mb=seed.max_size_mb,
                )
            )
        await session.commit()

    if missing:
        logger.info("Seeded %d document categories", len(missing))
    return len(missing)
