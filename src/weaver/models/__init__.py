from weaver.models.memory import (
    Category,
    Memory,
    MemoryFile,
    MemoryStatus,
    PrivacyLevel,
    ProcessingStatus,
)
from weaver.models.migration import SchemaMigration

__all__ = [
    "Category", "PrivacyLevel", "MemoryStatus", "ProcessingStatus",
    "Memory", "MemoryFile",
    "SchemaMigration",
]
