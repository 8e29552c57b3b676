from __future__ import annotations

from functools import lru_cache

from sqlalchemy.orm import Session

from dealdesk.config import settings
from dealdesk.services.memory_records_provider import MemoryRecordsProvider
from dealdesk.services.records_provider import RecordsProvider
from dealdesk.services.sql_records_provider import SqlRecordsProvider


@lru_cache(maxsize=1)
def get_memory_records_provider() -> MemoryRecordsProvider:
    return MemoryRecordsProvider()


def get_records_provider(db: Session) -> RecordsProvider:
    provider = settings.records_provider.strip().lower()
    if provider == 'sql':
        return SqlRecordsProvider(db)
    if provider == 'memory':
        return get_memory_records_provider()
    raise ValueError(f'Unknown records provider: {settings.records_provider}')
