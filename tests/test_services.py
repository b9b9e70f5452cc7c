from __future__ import annotations

import pytest

from deadlineshield.errors import InvalidTransition, PlanLimitExceeded, SourceNotFound
from deadlineshield.models import SourceStatus
from deadlineshield.services.sources_service import (
    create_source,
    get_source,
    import_sources,
    list_audit,
    list_checks,
    list_sources,
    pause_source,
    resume_source,
    verify_source,
)
from deadlineshield.storage import update_source_fields
from deadlineshield.tenants import save_tenant
from deadlineshield.utils import to_iso

from conftest import T0


def _payload(**overrides):
    payload = {
        "tenant_id": "acme",
        "name": "Filing Rules",
        "url": "https://agency.example.gov/filing-rules",
    }
    payload.update(overrides)
    return payload


def test_create_source_generates_unique_slug(conn):
    first = create_source(conn, _payload(), now=T0)
    second = create_source(conn, _payload(), now=T0)

    assert first["id"] == "filing-rules"
    assert second["id"] == "filing-rules-2"
    assert first["status"] == "OK"
    assert first["frequency"] == "Daily"
    assert first["watch_mode"] == "FullContent"
    assert first["next_check_at"] is None
    assert first["confidence_level"] == "MEDIUM"
    assert "last_text" not in first
    audit = list_audit(conn, source_id="filing-rules")
    assert audit[0]["action"] == "CREATE"
    assert audit[0]["actor"] == "acme"


@pytest.mark.parametrize(
    "overrides",
    [
        {"url": "ftp://agency.example.gov/rules"},
        {"url": "not a url"},
        {"name": "  "},
        {"tenant_id": ""},
        {"frequency": "Hourly"},
        {"watch_mode": "Screenshot"},
    ],
)
def test_create_source_validation(conn, overrides):
    with pytest.raises(ValueError):
        create_source(conn, _payload(**overrides))


def test_duplicate_explicit_id(conn):
    create_source(conn, _payload(id="rules"))

    with pytest.raises(ValueError):
        create_source(conn, _payload(id="rules"))


def test_plan_limit_is_enforced(conn):
    for index in range(5):
        create_source(conn, _payload(id=f"s{index}"))

    with pytest.raises(PlanLimitExceeded):
        create_source(conn, _payload(id="s5"))

    save_tenant(conn, "acme", email=None, plan="Pro")
    assert create_source(conn, _payload(id="s5"))["id"] == "s5"


def test_pause_and_resume(conn):
    create_source(conn, _payload(id="rules"), now=T0)

    paused = pause_source(conn, "rules", "ops", "too_noisy", note="weekly banner", now=T0)

    assert paused["status"] == "PAUSED"
    assert paused["paused_by"] == "ops"
    assert paused["pause_reason"] == "TOO_NOISY"
    with pytest.raises(InvalidTransition):
        pause_source(conn, "rules", "ops", "OTHER", now=T0)

    resumed = resume_source(conn, "rules", "ops", now=T0)

    assert resumed["status"] == "OK"
    assert resumed["paused_at"] is None
    assert resumed["next_check_at"] == to_iso(T0)
    with pytest.raises(InvalidTransition):
        resume_source(conn, "rules", "ops", now=T0)

    actions = [entry["action"] for entry in list_audit(conn, source_id="rules")]
    assert sorted(actions) == ["CREATE", "PAUSE", "RESUME"]
    pause_entry = next(entry for entry in list_audit(conn, source_id="rules") if entry["action"] == "PAUSE")
    assert pause_entry["details"] == "TOO_NOISY: weekly banner"
    assert pause_entry["snapshot"]["url"] == "https://agency.example.gov/filing-rules"


def test_invalid_pause_reason(conn):
    create_source(conn, _payload(id="rules"))

    with pytest.raises(ValueError):
        pause_source(conn, "rules", "ops", "BORED")


def test_resume_keeps_failure_counters(conn):
    create_source(conn, _payload(id="rules"))
    update_source_fields(
        conn,
        "rules",
        {"status": SourceStatus.BLOCKED, "needs_check": True, "consecutive_failures": 3},
        T0,
    )

    resumed = resume_source(conn, "rules", "ops", now=T0)

    assert resumed["status"] == "OK"
    assert resumed["needs_check"] is False
    assert resumed["consecutive_failures"] == 3


def test_verify_clears_hold(conn):
    create_source(conn, _payload(id="rules"))
    update_source_fields(
        conn,
        "rules",
        {"status": SourceStatus.NEEDS_MANUAL_VERIFICATION, "needs_check": True, "last_hash": "abc"},
        T0,
    )

    verified = verify_source(conn, "rules", "ops", "blocked_but_ok", note="checked by phone", now=T0)

    assert verified["status"] == "OK"
    assert verified["needs_check"] is False
    assert verified["verified_by"] == "ops"
    assert verified["verified_reason"] == "BLOCKED_BUT_OK"
    assert verified["verified_hash"] == "abc"
    assert verified["next_check_at"] == to_iso(T0)


def test_verify_paused_source_is_refused(conn):
    create_source(conn, _payload(id="rules"))
    pause_source(conn, "rules", "ops", "OTHER")

    with pytest.raises(InvalidTransition):
        verify_source(conn, "rules", "ops", "OTHER")


def test_unknown_source_intents(conn):
    with pytest.raises(SourceNotFound):
        pause_source(conn, "missing", "ops", "OTHER")
    with pytest.raises(SourceNotFound):
        list_checks(conn, "missing")
    assert get_source(conn, "missing") is None


def test_list_sources_filters(conn):
    create_source(conn, _payload(id="a"))
    create_source(conn, _payload(id="b", tenant_id="other"))
    pause_source(conn, "a", "ops", "OTHER")

    assert [item["id"] for item in list_sources(conn, "acme")] == ["a"]
    assert [item["id"] for item in list_sources(conn, status="paused")] == ["a"]
    assert [item["id"] for item in list_sources(conn, status="OK")] == ["b"]


def test_import_sources_from_yaml(conn, tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text(
        "sources:\n"
        "  - id: rules\n"
        "    name: Filing Rules\n"
        "    url: https://agency.example.gov/filing-rules\n"
        "  - id: fees\n"
        "    name: Fee Schedule\n"
        "    url: https://agency.example.gov/fees\n"
        "    frequency: Weekly\n"
        "    watch_mode: MetadataOnly\n",
        encoding="utf-8",
    )

    first = import_sources(conn, str(path), tenant_id="acme")
    second = import_sources(conn, str(path), tenant_id="acme")

    assert first == {"created": 2, "skipped": 0}
    assert second == {"created": 0, "skipped": 2}
    fees = get_source(conn, "fees")
    assert fees["frequency"] == "Weekly"
    assert fees["watch_mode"] == "MetadataOnly"
    assert fees["tenant_id"] == "acme"
