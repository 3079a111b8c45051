"""Unit tests for venusbridge._history — JSON history persistence.

Test Techniques Used:
    - State-based Testing: save then load through a real file
    - Error Guessing: missing, corrupt and partially invalid files
    - Specification-based Testing: empty records are not written
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from venusbridge._energy import HistoryRecord
from venusbridge._history import FORMAT_VERSION, HistoryStore


class TestSave:
    """Writing the history file.

    Technique: State-based Testing.
    """

    def test_writes_versioned_document(self, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "history.json")
        written = store.save(
            {"electrical.batteries.house": HistoryRecord(12.1, 14.4, 3.2, 2.9, 231.5)},
        )

        document = json.loads((tmp_path / "history.json").read_text(encoding="utf-8"))
        assert written == 1
        assert document["version"] == FORMAT_VERSION
        assert document["records"]["electrical.batteries.house"]["total_ah_drawn"] == 231.5

    def test_empty_records_skipped(self, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "history.json")
        assert store.save({"electrical.batteries.start": HistoryRecord()}) == 0

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "data" / "nested" / "history.json")
        store.save({"electrical.batteries.house": HistoryRecord(total_ah_drawn=1.0)})
        assert store.path.exists()

    def test_no_temporary_file_left(self, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "history.json")
        store.save({"electrical.batteries.house": HistoryRecord(total_ah_drawn=1.0)})
        assert sorted(p.name for p in tmp_path.iterdir()) == ["history.json"]

    def test_failed_write_removes_temporary_file(self, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "history.json")
        store.save({"electrical.batteries.house": HistoryRecord(total_ah_drawn=1.0)})

        with (
            patch("venusbridge._history.os.replace", side_effect=OSError("disk full")),
            pytest.raises(OSError, match="disk full"),
        ):
            store.save({"electrical.batteries.house": HistoryRecord(total_ah_drawn=2.0)})

        assert sorted(p.name for p in tmp_path.iterdir()) == ["history.json"]
        assert store.load()["electrical.batteries.house"].total_ah_drawn == 1.0


class TestLoad:
    """Reading the history file.

    Technique: Error Guessing.
    """

    def test_roundtrip(self, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "history.json")
        record = HistoryRecord(11.8, 14.1, 1.5, 0.75, 42.0)
        store.save({"electrical.batteries.house": record})

        assert store.load() == {"electrical.batteries.house": record}

    def test_missing_file(self, tmp_path: Path) -> None:
        assert HistoryStore(tmp_path / "absent.json").load() == {}

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "history.json"
        path.write_text("{not json", encoding="utf-8")
        assert HistoryStore(path).load() == {}

    def test_missing_records_section(self, tmp_path: Path) -> None:
        path = tmp_path / "history.json"
        path.write_text(json.dumps({"version": 1}), encoding="utf-8")
        assert HistoryStore(path).load() == {}

    def test_invalid_fields_fall_back_to_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "history.json"
        path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "records": {
                        "electrical.batteries.house": {
                            "minimum_voltage": "low",
                            "maximum_voltage": 14.2,
                            "charged_energy_kwh": -3,
                            "discharged_energy_kwh": True,
                            "total_ah_drawn": 12,
                        },
                        "": {"total_ah_drawn": 1},
                        "electrical.batteries.start": [1, 2],
                    },
                },
            ),
            encoding="utf-8",
        )

        records = HistoryStore(path).load()

        assert records == {
            "electrical.batteries.house": HistoryRecord(
                minimum_voltage=None,
                maximum_voltage=14.2,
                total_ah_drawn=12.0,
            ),
        }
