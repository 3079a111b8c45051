"""JSON persistence of battery history records.

File layout::

    {
      "version": 1,
      "records": {
        "electrical.batteries.house": {
          "minimum_voltage": 12.1,
          "maximum_voltage": 14.4,
          "charged_energy_kwh": 3.2,
          "discharged_energy_kwh": 2.9,
          "total_ah_drawn": 231.5
        }
      }
    }

Writes go to a temporary sibling file which is then renamed over the
target, so a crash never leaves a truncated history behind.
"""

from __future__ import annotations

import json
import logging
import math
import os
from collections.abc import Mapping
from dataclasses import asdict, fields
from pathlib import Path

from venusbridge._energy import HistoryRecord

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_OPTIONAL_FIELDS = frozenset({"minimum_voltage", "maximum_voltage"})


class HistoryStore:
    """Loads and saves :class:`HistoryRecord` maps.

    Args:
        path: Location of the JSON file.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, HistoryRecord]:
        """Read records, skipping anything unusable.

        A missing file yields an empty map.  Unreadable JSON is logged
        and treated as empty rather than blocking startup.
        """
        if not self._path.exists():
            return {}
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Cannot read history file %s: %s", self._path, exc)
            return {}

        raw_records = document.get("records") if isinstance(document, dict) else None
        if not isinstance(raw_records, dict):
            logger.warning("History file %s has no records section", self._path)
            return {}

        records: dict[str, HistoryRecord] = {}
        for base_path, raw in raw_records.items():
            if not isinstance(base_path, str) or not base_path or not isinstance(raw, dict):
                logger.debug("Skipping invalid history entry %r", base_path)
                continue
            records[base_path] = _record_from_dict(raw)
        logger.info("Loaded %d history records from %s", len(records), self._path)
        return records

    def save(self, records: Mapping[str, HistoryRecord]) -> int:
        """Atomically write every non-empty record; return how many were written."""
        payload = {
            base_path: asdict(record)
            for base_path, record in records.items()
            if not record.is_empty
        }
        document = {"version": FORMAT_VERSION, "records": payload}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug("Saved %d history records to %s", len(payload), self._path)
        return len(payload)


def _record_from_dict(raw: Mapping[str, object]) -> HistoryRecord:
    record = HistoryRecord()
    for f in fields(HistoryRecord):
        value = raw.get(f.name)
        if isinstance(value, bool) or not isinstance(value, int | float):
            continue
        number = float(value)
        if not math.isfinite(number):
            continue
        if f.name not in _OPTIONAL_FIELDS and number < 0:
            continue
        setattr(record, f.name, number)
    return record
