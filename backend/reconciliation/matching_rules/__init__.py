"""
Matching Rules Module
"""

from .invoice_rules import (
    InvoiceMatchingRules,
    invoice_rules,
    MatchCandidate,
    MatchResult,
    name_score,
    date_score,
    ambiguity_score,
    normalize_name,
)

__all__ = [
    "InvoiceMatchingRules", "invoice_rules", "MatchCandidate", "MatchResult",
    "name_score", "date_score", "ambiguity_score", "normalize_name",
]
