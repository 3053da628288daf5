import logging
import math
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .logs import sanitize_log_value

logger = logging.getLogger("filerelay.registry")

DEFAULT_REGISTRY_CAPACITY = 1000
DEFAULT_SEARCH_MIN_LENGTH = 3


class RecordNotFoundError(LookupError):
    """Raised when an operation targets a record id that is not registered."""

    def __init__(self, file_id: str) -> None:
        super().__init__(f"File {file_id} not found")
        self.file_id = file_id


class DuplicateRecordError(ValueError):
    """Raised when a record is inserted with an id that is already live."""

    def __init__(self, file_id: str) -> None:
        super().__init__(f"File {file_id} already registered")
        self.file_id = file_id


def generate_file_id() -> str:
    return secrets.token_hex(8)


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


@dataclass
class UploadRecord:
    id: str
    original_name: str
    url: str
    direct_url: str
    size: int
    mime_type: str
    service: str
    upload_date: float = field(default_factory=time.time)
    downloads: int = 0
    expiry: Optional[float] = None
    provider_file_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expiry is not None and self.expiry < now

    def to_summary(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.original_name,
            "url": self.url,
            "directUrl": self.direct_url,
            "size": self.size,
            "service": self.service,
            "uploadDate": isoformat_utc(self.upload_date),
            "downloads": self.downloads,
        }

    def to_detail(self) -> Dict[str, object]:
        detail = self.to_summary()
        detail["mimeType"] = self.mime_type
        detail["expiry"] = isoformat_utc(self.expiry) if self.expiry is not None else None
        return detail


@dataclass
class FilePage:
    records: List[UploadRecord]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.limit))


@dataclass
class ServiceStats:
    count: int = 0
    total_size: int = 0


@dataclass
class RegistryStats:
    total_files: int
    total_size: int
    total_downloads: int
    services: Dict[str, ServiceStats]

    def to_payload(self) -> Dict[str, object]:
        return {
            "totalFiles": self.total_files,
            "totalSize": self.total_size,
            "totalDownloads": self.total_downloads,
            "services": {
                name: {"count": entry.count, "size": entry.total_size}
                for name, entry in self.services.items()
            },
        }


class FileRegistry:
    """In-memory metadata store for relayed uploads.

    Records live only for the lifetime of the process. Every operation takes
    the same re-entrant lock, so request handlers and the expiry sweeper can
    share one instance.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_REGISTRY_CAPACITY,
        search_min_length: int = DEFAULT_SEARCH_MIN_LENGTH,
    ) -> None:
        self._capacity = max(1, int(capacity))
        self._search_min_length = max(1, int(search_min_length))
        self._records: "OrderedDict[str, UploadRecord]" = OrderedDict()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def capacity(self) -> int:
        return self._capacity

    def insert(self, record: UploadRecord) -> UploadRecord:
        with self._lock:
            if record.id in self._records:
                raise DuplicateRecordError(record.id)
            self._records[record.id] = record
            evicted = 0
            while len(self._records) > self._capacity:
                self._records.popitem(last=False)
                evicted += 1
            total = len(self._records)

        if evicted:
            logger.info("registry_capacity_evicted removed=%d capacity=%d", evicted, self._capacity)
        logger.info(
            "file_registered file_id=%s service=%s size=%d total=%d",
            record.id,
            record.service,
            record.size,
            total,
        )
        return record

    def get(self, file_id: str) -> Optional[UploadRecord]:
        with self._lock:
            return self._records.get(file_id)

    def list(
        self,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
    ) -> FilePage:
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        term = (search or "").lower()

        with self._lock:
            # Newest insertion first so equal timestamps keep that order.
            candidates = list(reversed(self._records.values()))

        if len(term) >= self._search_min_length:
            candidates = [
                record for record in candidates if term in record.original_name.lower()
            ]

        ordered = sorted(candidates, key=lambda record: record.upload_date, reverse=True)
        start = (page - 1) * limit
        return FilePage(
            records=ordered[start:start + limit],
            total=len(ordered),
            page=page,
            limit=limit,
        )

    def increment_download(self, file_id: str) -> int:
        with self._lock:
            record = self._records.get(file_id)
            if record is None:
                raise RecordNotFoundError(file_id)
            record.downloads += 1
            return record.downloads

    def delete(self, file_id: str) -> UploadRecord:
        with self._lock:
            record = self._records.pop(file_id, None)
        if record is None:
            raise RecordNotFoundError(file_id)

        logger.info(
            "file_deleted file_id=%s service=%s original_name=%s",
            file_id,
            record.service,
            sanitize_log_value(record.original_name),
        )
        return record

    def remove_expired(self, now: Optional[float] = None) -> List[UploadRecord]:
        now = time.time() if now is None else now
        with self._lock:
            expired = [record for record in self._records.values() if record.is_expired(now)]
            for record in expired:
                del self._records[record.id]
        return expired

    def stats(self) -> RegistryStats:
        with self._lock:
            records = list(self._records.values())

        services: Dict[str, ServiceStats] = {}
        for record in records:
            entry = services.setdefault(record.service, ServiceStats())
            entry.count += 1
            entry.total_size += record.size

        return RegistryStats(
            total_files=len(records),
            total_size=sum(record.size for record in records),
            total_downloads=sum(record.downloads for record in records),
            services=services,
        )

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
