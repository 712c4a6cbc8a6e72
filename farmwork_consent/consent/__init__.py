"""
Consent recording for FarmWork Hub
Models, persistence and the consent service
"""

from .models import (
    ConsentRecord, ConsentArchive, ConsentValue, ConsentFilter,
    ConsentStats, DailyConsentCounts, ConsentExport,
)
from .storage import ConsentRepository, SQLConsentRepository, InMemoryConsentRepository
from .service import ConsentService

__all__ = [
    "ConsentRecord",
    "ConsentArchive",
    "ConsentValue",
    "ConsentFilter",
    "ConsentStats",
    "DailyConsentCounts",
    "ConsentExport",
    "ConsentRepository",
    "SQLConsentRepository",
    "InMemoryConsentRepository",
    "ConsentService",
]
