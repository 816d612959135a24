from __future__ import annotations

import pytest

from pack_trace.config import PackTraceProfile, ProfileError


def _base(**wiring) -> dict:
    consensus = wiring.pop("consensus", {"kind": "file", "file_root": "runs/ledger"})
    return {
        "profile_id": "local",
        "wiring": {"store_locator": "runs/custody.sqlite", "consensus": consensus, **wiring},
    }


def test_minimal_profile_uses_defaults() -> None:
    profile = PackTraceProfile.from_mapping(_base())

    assert profile.profile_id == "local"
    assert profile.consensus.kind == "file"
    assert profile.consensus.network == "testnet"
    assert profile.consensus.max_message_bytes == 4096
    assert profile.timeline.page_size == 25
    assert profile.timeline.complete_page_size == 150
    assert profile.timeline.complete_max_pages == 20
    assert profile.auditor_role == "AUDITOR"
    assert profile.dispensing_facility_types == ("PHARMACY",)
    assert profile.log_paths == ()


def test_env_placeholders_are_resolved(monkeypatch) -> None:
    monkeypatch.setenv("PACK_TRACE_DSN", "postgresql://trace:secret@db:5432/trace")
    monkeypatch.setenv("PACK_TRACE_SUBMIT_KEY", "k-123")
    monkeypatch.setenv("PACK_TRACE_PUBLISH_TIMEOUT", "2.5")
    data = _base(
        consensus={
            "kind": "HTTP",
            "network": "Mainnet",
            "submit_url": "https://gateway.example/submit",
            "api_key": "${PACK_TRACE_SUBMIT_KEY}",
            "default_log_id": "0.0.1001",
            "publish_timeout_seconds": "${PACK_TRACE_PUBLISH_TIMEOUT}",
        }
    )
    data["wiring"]["store_locator"] = "${PACK_TRACE_DSN}"
    data["policy"] = {"auditor_role": "regulator", "dispensing_facility_types": "pharmacy, hospital"}

    profile = PackTraceProfile.from_mapping(data)

    assert profile.store_locator == "postgresql://trace:secret@db:5432/trace"
    assert profile.consensus.kind == "http"
    assert profile.consensus.network == "mainnet"
    assert profile.consensus.api_key == "k-123"
    assert profile.consensus.publish_timeout_seconds == 2.5
    assert profile.auditor_role == "REGULATOR"
    assert profile.dispensing_facility_types == ("PHARMACY", "HOSPITAL")


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda data: data.pop("profile_id"), "profile_id is required"),
        (lambda data: data["wiring"].pop("store_locator"), "store_locator is required"),
        (lambda data: data["wiring"]["consensus"].update(kind="carrier-pigeon"), "kind must be one of"),
        (lambda data: data["wiring"]["consensus"].update(network="devnet"), "network must be one of"),
        (lambda data: data["wiring"]["consensus"].pop("file_root"), "file_root is required"),
        (lambda data: data["wiring"]["consensus"].update(kind="http"), "submit_url is required"),
        (lambda data: data["wiring"]["consensus"].update(max_message_bytes=8192), "cannot exceed 4096"),
        (lambda data: data["wiring"].update(timeline={"page_size": 0}), "page_size must be greater than zero"),
        (lambda data: data["wiring"].update(timeline={"page_size": "many"}), "page_size must be an integer"),
        (lambda data: data.update(logging={"paths": "runs/app.log"}), "logging.paths must be a list"),
        (lambda data: data.update(wiring=["nope"]), "wiring must be a mapping"),
    ],
)
def test_invalid_profiles_are_rejected(mutate, message: str) -> None:
    data = _base()
    mutate(data)

    with pytest.raises(ProfileError) as excinfo:
        PackTraceProfile.from_mapping(data)
    assert message in str(excinfo.value)


def test_load_reads_yaml_and_reports_missing_file(tmp_path) -> None:
    path = tmp_path / "profile.yaml"
    path.write_text(
        "\n".join(
            [
                "profile_id: dev",
                "wiring:",
                f"  store_locator: {tmp_path / 'custody.sqlite'}",
                "  consensus:",
                "    kind: file",
                f"    file_root: {tmp_path / 'ledger'}",
                "    default_log_id: 0.0.1001",
                "  idempotency:",
                "    in_flight_lease_seconds: 5",
                "logging:",
                "  level: DEBUG",
            ]
        ),
        encoding="utf-8",
    )

    profile = PackTraceProfile.load(path)

    assert profile.profile_id == "dev"
    assert profile.consensus.default_log_id == "0.0.1001"
    assert profile.in_flight_lease_seconds == 5.0
    assert profile.log_level == "DEBUG"

    with pytest.raises(ProfileError):
        PackTraceProfile.load(tmp_path / "missing.yaml")
    (tmp_path / "list.yaml").write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ProfileError):
        PackTraceProfile.load(tmp_path / "list.yaml")
