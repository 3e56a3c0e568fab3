"""
Field discovery from sampled response payloads.

Walks sample records, tracks how often each unseen dotted key occurs and
which value types it carries, and promotes keys present in enough samples
to discovered fields.
"""

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set
from recordexport.core.config import settings
from recordexport.core.logging_config import logger
from recordexport.schemas.field import DetectedField, FieldSource, FieldType

ISO_DATE_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(\.\d{1,6})?(Z|[+-]\d{2}:\d{2})?\Z",
    re.ASCII,
)

MAX_OFFSET_MINUTES = 14 * 60


def is_leap_year(year: int) -> bool:
    return (year % 4 == 0 and year % 100 != 0) or year % 400 == 0


def days_in_month(year: int, month: int) -> int:
    if month == 2:
        return 29 if is_leap_year(year) else 28
    if month in (4, 6, 9, 11):
        return 30
    return 31


def is_iso_date_string(value: str) -> bool:
    """
    Check if a string is a calendar-valid ISO 8601 timestamp.

    Accepts YYYY-MM-DDTHH:mm:ss with optional 1-6 digit fractional seconds
    and an optional Z or +HH:MM / -HH:MM offset. Rejects impossible dates
    (2023-02-30), offsets beyond 14:00 and the -00:00 offset.
    """
    if not isinstance(value, str):
        return False

    match = ISO_DATE_PATTERN.match(value)
    if not match:
        return False

    year, month, day, hour, minute, second = (int(part) for part in match.groups()[:6])
    fraction = match.group(7)
    tz = match.group(8)

    if month < 1 or month > 12:
        return False
    if hour > 23 or minute > 59 or second > 59:
        return False

    offset = timedelta(0)
    if tz and tz != "Z":
        sign = -1 if tz[0] == "-" else 1
        tz_hour, tz_minute = int(tz[1:3]), int(tz[4:6])
        if tz_minute > 59:
            return False
        total_minutes = tz_hour * 60 + tz_minute
        if total_minutes > MAX_OFFSET_MINUTES:
            return False
        if sign < 0 and total_minutes == 0:
            return False
        offset = timedelta(minutes=sign * total_minutes)

    if day < 1 or day > days_in_month(year, month):
        return False

    # Final confirmation: build the value and check nothing was normalised
    try:
        microsecond = int((fraction[1:] if fraction else "0").ljust(6, "0"))
        parsed = datetime(year, month, day, hour, minute, second, microsecond, tzinfo=timezone(offset))
        round_trip = parsed.astimezone(timezone.utc).astimezone(timezone(offset))
    except (ValueError, OverflowError):
        return False
    return (round_trip.year, round_trip.month, round_trip.day) == (year, month, day)


def detect_value_type(value: Any) -> str:
    """Coarse value type: null, number, boolean, array, object, string or date"""
    if value is None:
        return "null"
    # bool before number, Python bools are ints
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str):
        return "date" if is_iso_date_string(value) else "string"
    return type(value).__name__


def infer_field_type(types: Set[str]) -> FieldType:
    """Resolve the observed value types of a field to a single field type"""
    if "date" in types:
        return FieldType.date
    if "number" in types:
        return FieldType.number
    if "boolean" in types:
        return FieldType.boolean
    if "array" in types:
        return FieldType.array
    if "object" in types and "string" not in types:
        return FieldType.object
    return FieldType.string


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def format_field_label(key: str) -> str:
    """Turn a dotted camelCase key into a readable label, e.g. 'owner.firstName' -> 'Owner → First Name'"""
    parts = []
    for part in key.split("."):
        spaced = _CAMEL_BOUNDARY.sub(" ", part).strip()
        parts.append(spaced[:1].upper() + spaced[1:])
    return " → ".join(parts)


class _KeyStats:
    __slots__ = ("count", "types")

    def __init__(self):
        self.count = 0
        self.types: Set[str] = set()


class FieldDiscoverer:
    """Infers fields and their types from sample records"""

    def __init__(self, sample_limit: Optional[int] = None, presence_ratio: Optional[float] = None):
        self.sample_limit = sample_limit or settings.DISCOVERY_SAMPLE_LIMIT
        self.presence_ratio = presence_ratio if presence_ratio is not None else settings.DISCOVERY_PRESENCE_RATIO

    def threshold(self, sample_size: int) -> int:
        return max(1, math.floor(sample_size * self.presence_ratio))

    def discover(
        self,
        sample_data: List[Any],
        existing_standard_fields: Iterable[DetectedField] = (),
        existing_custom_fields: Iterable[DetectedField] = (),
    ) -> List[DetectedField]:
        """
        Discover fields by analysing sample data.

        Args:
            sample_data: Records as returned by the platform API
            existing_standard_fields: Fields already known from the catalog
            existing_custom_fields: Fields already known from custom field config

        Returns:
            Discovered fields in first-seen order

        Raises:
            TypeError: If sample_data is not a list of records
        """
        if sample_data is None:
            return []
        if not isinstance(sample_data, (list, tuple)):
            raise TypeError(f"Sample data must be a list of records, got {type(sample_data).__name__}")
        if not sample_data:
            return []

        existing_keys = {f.key for f in existing_standard_fields} | {f.key for f in existing_custom_fields}
        stats: Dict[str, _KeyStats] = {}

        sampled = sample_data[: self.sample_limit]
        for record in sampled:
            self._analyze_object(record, stats, existing_keys)

        threshold = self.threshold(len(sampled))
        discovered: List[DetectedField] = []
        for key, key_stats in stats.items():
            if key_stats.count < threshold:
                logger.debug(f"Discovery: field '{key}' excluded, count {key_stats.count} < threshold {threshold}")
                continue
            field_type = infer_field_type(key_stats.types)
            logger.debug(
                f"Discovery: field '{key}', types={sorted(key_stats.types)}, "
                f"final type={field_type.value}, count={key_stats.count}/{threshold}"
            )
            discovered.append(DetectedField(
                key=key,
                label=format_field_label(key),
                type=field_type,
                source=FieldSource.discovered,
                is_discovered=True,
            ))

        logger.debug(
            f"Field discovery completed: discovered={len(discovered)}, analysed={len(stats)}, threshold={threshold}"
        )
        return discovered

    def _analyze_object(
        self,
        obj: Any,
        stats: Dict[str, _KeyStats],
        existing_keys: Set[str],
        prefix: str = "",
    ) -> None:
        if not isinstance(obj, dict):
            return

        for key, value in obj.items():
            key = str(key)
            full_key = f"{prefix}.{key}" if prefix else key

            if full_key in existing_keys:
                continue

            # The top-level "custom" object is a container, not a field
            if key == "custom" and not prefix:
                if isinstance(value, dict):
                    self._analyze_object(value, stats, existing_keys, "custom")
                continue

            key_stats = stats.get(full_key)
            if key_stats is None:
                key_stats = stats[full_key] = _KeyStats()
            key_stats.count += 1
            key_stats.types.add(detect_value_type(value))

            # Recurse into nested objects, never into arrays
            if isinstance(value, dict):
                self._analyze_object(value, stats, existing_keys, full_key)
