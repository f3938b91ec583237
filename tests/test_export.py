from __future__ import annotations

import json

from barrel_volume.orchestrator.export import dataset_to_csv, dataset_to_json

from conftest import make_dataset


def test_csv_has_header_and_raw_values():
    data = make_dataset(
        [
            {"Mouillé": 10, "390L_Diam80": 100, "400L_Diam81": None},
            {"Mouillé": 11, "390L_Diam80": (110.5, "user"), "400L_Diam81": "illegible, maybe 9"},
        ]
    )

    lines = dataset_to_csv(data).splitlines()

    assert lines[0] == "Mouillé,390L_Diam80,400L_Diam81"
    assert lines[1] == "10,100,"
    assert lines[2] == '11,110.5,"illegible, maybe 9"'


def test_csv_of_empty_dataset_is_empty():
    assert dataset_to_csv([]) == ""


def test_json_export_is_pretty_and_keeps_confidence():
    data = make_dataset([{"Mouillé": 10, "390L_Diam80": (100, "medium")}])

    text = dataset_to_json(data)

    assert "\n  " in text
    assert json.loads(text) == [
        {
            "Mouillé": {"value": 10, "confidence": "high"},
            "390L_Diam80": {"value": 100, "confidence": "medium"},
        }
    ]
