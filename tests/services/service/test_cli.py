from __future__ import annotations

import json
from pathlib import Path

from pack_trace.cli import main


def _profile(tmp_path: Path) -> Path:
    path = tmp_path / "profile.yaml"
    path.write_text(
        "\n".join(
            [
                "profile_id: cli",
                "wiring:",
                f"  store_locator: {tmp_path / 'custody.sqlite'}",
                "  consensus:",
                "    kind: file",
                f"    file_root: {tmp_path / 'ledger'}",
                "    default_log_id: 0.0.1001",
            ]
        ),
        encoding="utf-8",
    )
    return path


def test_encode_then_decode(capsys) -> None:
    assert main(["encode", "--gtin", "400638133393", "--lot", "LOT-42", "--expiry", "2027-06-30"]) == 0
    encoded = json.loads(capsys.readouterr().out)
    assert encoded["gtin14"] == "04006381333931"
    assert encoded["humanForm"] == "(01)04006381333931(10)LOT-42(17)270630"

    assert main(["decode", encoded["humanForm"]]) == 0
    decoded = json.loads(capsys.readouterr().out)
    assert decoded["machineForm"] == encoded["machineForm"]


def test_malformed_input_exits_with_reason_code(capsys) -> None:
    assert main(["decode", "hello"]) == 2
    assert json.loads(capsys.readouterr().out)["error"] == "MALFORMED_IDENTIFIER"


def test_timeline_and_backfill_commands(tmp_path: Path, capsys) -> None:
    profile = _profile(tmp_path)

    assert main(["timeline", "--profile", str(profile), "--batch-id", "missing"]) == 1
    assert json.loads(capsys.readouterr().out) == {"error": "BATCH_NOT_FOUND", "batchId": "missing"}

    assert main(["backfill", "--profile", str(profile)]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report == {"scanned": 0, "anchored": 0, "skipped": 0, "failed": 0, "failures": []}
