"""Item streams: how a job's config becomes an ordered list of work items.

The per-item work itself belongs to an external ``ItemProcessor``; this module
only defines that seam and the deterministic enumeration the runner and the
recovery service share.
"""

import enum
import hashlib
import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from src.models.backfill_job import JobType
from src.models.dtos import BackfillJobDTO
from src.models.validators import (
    AnalyticsGenerationConfig,
    DataCollectionConfig,
    parse_job_config,
)
from src.services.exceptions import FatalJobError


class ItemOutcome(str, enum.Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ItemResult:
    """What the processor reports for one item."""

    outcome: ItemOutcome = ItemOutcome.PROCESSED
    snapshot_id: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def processed(cls, snapshot_id: Optional[str] = None) -> "ItemResult":
        return cls(ItemOutcome.PROCESSED, snapshot_id=snapshot_id)

    @classmethod
    def skipped(cls, message: Optional[str] = None) -> "ItemResult":
        return cls(ItemOutcome.SKIPPED, message=message)

    @classmethod
    def failed(cls, message: str) -> "ItemResult":
        return cls(ItemOutcome.FAILED, message=message)


class ItemProcessor(ABC):
    """External collaborator invoked once per unit of work."""

    @abstractmethod
    def process_item(self, job: BackfillJobDTO, item_id: str) -> ItemResult:
        """Process one item.

        Return ``ItemResult.failed`` or raise any exception for a per-item
        failure; raise ``FatalJobError`` to abort the whole job.
        """
        ...

    def list_items(self, job_type: JobType, config: Dict[str, Any]) -> List[str]:
        """Enumerate items for streams not derivable from an explicit range."""
        raise NotImplementedError(
            f"{type(self).__name__} cannot enumerate items for {JobType(job_type).value} "
            "jobs without an explicit range"
        )


@dataclass
class ItemStream:
    """An enumerated item stream and its fingerprint."""

    items: List[str] = field(default_factory=list)
    derived_from_config: bool = True

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def digest(self) -> str:
        return stream_digest(self.items)

    def remaining(self, offset: int) -> List[str]:
        return self.items[offset:]


def stream_digest(items: List[str]) -> str:
    """SHA-256 over the ordered item ids."""
    hasher = hashlib.sha256()
    for item in items:
        hasher.update(item.encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


def date_range_items(start: date, end: date) -> List[str]:
    """One ISO date per calendar day, inclusive, ascending."""
    days = (end - start).days
    return [(start + timedelta(days=i)).isoformat() for i in range(days + 1)]


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for item in items:
        key = str(item)
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered


def build_item_stream(
    job_type: JobType, config: Dict[str, Any], processor: ItemProcessor
) -> ItemStream:
    """Enumerate the items for a job config.

    ``derived_from_config`` is True when the stream follows from the config
    alone (explicit date range or snapshot list). Other streams depend on what
    the processor reports now; resume compares their digest instead.
    """
    parsed = parse_job_config(job_type, config)

    if isinstance(parsed, AnalyticsGenerationConfig) and parsed.snapshot_ids:
        return ItemStream(items=list(parsed.snapshot_ids), derived_from_config=True)

    if isinstance(parsed, DataCollectionConfig) and parsed.has_range:
        return ItemStream(
            items=date_range_items(parsed.start_date, parsed.end_date),
            derived_from_config=True,
        )

    items = _dedupe(list(processor.list_items(JobType(job_type), config)))
    return ItemStream(items=items, derived_from_config=False)


def describe_date_range(items: List[str], config: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Date range for previews: the config bounds, else the stream ends."""
    if config.get("start_date") and config.get("end_date"):
        return {"start_date": config["start_date"], "end_date": config["end_date"]}
    if not items:
        return {"start_date": None, "end_date": None}
    return {"start_date": items[0], "end_date": items[-1]}


class UnconfiguredItemProcessor(ItemProcessor):
    """Placeholder used when no processor import path is configured."""

    def process_item(self, job: BackfillJobDTO, item_id: str) -> ItemResult:
        raise FatalJobError("no item processor configured (set BACKFILL_ITEM_PROCESSOR)")


def load_item_processor(path: Optional[str]) -> ItemProcessor:
    """Instantiate the processor named by ``"package.module:ClassName"``."""
    if not path:
        return UnconfiguredItemProcessor()

    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Item processor must be 'module:ClassName', got '{path}'")

    processor_class = getattr(importlib.import_module(module_name), class_name)
    processor = processor_class()
    if not isinstance(processor, ItemProcessor):
        raise TypeError(f"{path} is not an ItemProcessor")
    return processor
