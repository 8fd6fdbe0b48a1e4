"""docintake - document intake, integrity verification and trust reconciliation.

Gates uploaded KYC documents through threat scanning, content validation
and encrypted persistence, keeps one active document per owner and
category, and reconciles document and profile completeness into a single
verification status per owner.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
