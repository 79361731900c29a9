"""
Change Ingestion

Normalizes InChurch webhook events and directory polling diffs into scored
PersonChange records.

Key Components:
- ChangeIngestor: Signature check, redelivery suppression, person upsert, change record
- HeuristicScorer: The single deterministic urgency table
- DeltaDetector: Field-level diff between stored people and directory payloads
- DirectorySyncService: Paginated polling sync per organization
- ConflictResolver: Protects recent local edits from the directory
- upcoming_birthday: Birthdays inside the lookahead window
"""

from .conflicts import ConflictPolicy, ConflictResolver, ConflictStrategy, Resolution
from .delta import DeltaDetector, FieldChange
from .ingestor import ChangeIngestor, IngestResult
from .scorer import HeuristicScorer
from .special_dates import UpcomingBirthday, upcoming_birthday
from .sync import DirectorySyncService, OrgSyncResult

__all__ = [
    "ConflictPolicy",
    "ConflictResolver",
    "ConflictStrategy",
    "Resolution",
    "DeltaDetector",
    "FieldChange",
    "ChangeIngestor",
    "IngestResult",
    "HeuristicScorer",
    "DirectorySyncService",
    "OrgSyncResult",
    "UpcomingBirthday",
    "upcoming_birthday",
]
