from __future__ import annotations

import json
import logging
import os
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import ConfigError, bootstrap_runtime_config, get_runtime_config, set_runtime_config
from .errors import ChangeNotFound, InvalidTransition, PlanLimitExceeded, SourceNotFound
from .models import TenantSettings
from .scheduler import last_heartbeat
from .services.sources_service import (
    acknowledge_change,
    create_source,
    get_source,
    list_audit,
    list_changes,
    list_checks,
    list_sources,
    pause_source,
    resume_source,
    verify_source,
)
from .storage import init_db
from .tenants import get_tenant_settings, save_tenant
from .utils import configure_logging, json_dumps, log_event, utc_now_iso

app = FastAPI(title="DeadlineShield Admin API")

logger = logging.getLogger("deadlineshield.admin")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("DS_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_conn() -> Iterator[object]:
    conn = init_db()
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SourceNotFound):
        return HTTPException(status_code=404, detail="source_not_found")
    if isinstance(exc, ChangeNotFound):
        return HTTPException(status_code=404, detail="change_not_found")
    if isinstance(exc, (InvalidTransition, PlanLimitExceeded)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


class RuntimeConfigRequest(BaseModel):
    config: dict


class TenantRequest(BaseModel):
    email: str | None = None
    plan: str = "Starter"
    alert_threshold: str | None = None
    guidance_enabled: bool | None = None
    email_alerts: bool | None = None


class SourceRequest(BaseModel):
    id: str | None = None
    tenant_id: str
    name: str
    url: str
    frequency: str = "Daily"
    watch_mode: str = "FullContent"


class PauseRequest(BaseModel):
    actor: str = "admin"
    reason: str = "OTHER"
    note: str | None = None


class ResumeRequest(BaseModel):
    actor: str = "admin"


class VerifyRequest(BaseModel):
    actor: str = "admin"
    reason: str
    note: str | None = None


class AckRequest(BaseModel):
    actor: str = "admin"
    ack_status: str


@app.on_event("startup")
def _startup() -> None:
    configure_logging("deadlineshield.admin")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "DeadlineShield Admin API"}


@app.get("/health")
def health(conn=Depends(_get_conn)) -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": utc_now_iso(),
        "scheduler": last_heartbeat(conn),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get(conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "runtime_config_updated")
    return {"status": "ok"}


@app.get("/tenants/{tenant_id}")
def tenants_read(tenant_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    return _tenant_dict(get_tenant_settings(conn, tenant_id))


@app.put("/tenants/{tenant_id}", dependencies=[Depends(_require_admin_token)])
def tenants_save(tenant_id: str, payload: TenantRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        settings = save_tenant(conn, tenant_id, **payload.model_dump())
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _tenant_dict(settings)


@app.get("/sources")
def sources_list(
    tenant_id: str | None = None,
    status: str | None = None,
    conn=Depends(_get_conn),
) -> list[dict[str, object]]:
    try:
        return list_sources(conn, tenant_id, status)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/sources", dependencies=[Depends(_require_admin_token)])
def sources_create(payload: SourceRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        source = create_source(conn, payload.model_dump())
    except ValueError as exc:
        raise _http_error(exc) from exc
    log_event(logger, logging.INFO, "source_created", source_id=source["id"], tenant_id=payload.tenant_id)
    return source


@app.get("/sources/{source_id}")
def sources_read(source_id: str, conn=Depends(_get_conn)) -> dict[str, object]:
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    return source


@app.post("/sources/{source_id}/pause", dependencies=[Depends(_require_admin_token)])
def sources_pause(source_id: str, payload: PauseRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        return pause_source(conn, source_id, payload.actor, payload.reason, payload.note)
    except (LookupError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.post("/sources/{source_id}/resume", dependencies=[Depends(_require_admin_token)])
def sources_resume(source_id: str, payload: ResumeRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        return resume_source(conn, source_id, payload.actor)
    except (LookupError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.post("/sources/{source_id}/verify", dependencies=[Depends(_require_admin_token)])
def sources_verify(source_id: str, payload: VerifyRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        return verify_source(conn, source_id, payload.actor, payload.reason, payload.note)
    except (LookupError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.get("/sources/{source_id}/checks")
def sources_checks(source_id: str, limit: int = 50, conn=Depends(_get_conn)) -> list[dict[str, object]]:
    try:
        return list_checks(conn, source_id, limit)
    except LookupError as exc:
        raise _http_error(exc) from exc


@app.get("/changes")
def changes_list(
    tenant_id: str | None = None,
    source_id: str | None = None,
    limit: int = 50,
    conn=Depends(_get_conn),
) -> list[dict[str, object]]:
    return list_changes(conn, tenant_id, source_id, limit)


@app.post("/changes/{change_id}/ack", dependencies=[Depends(_require_admin_token)])
def changes_ack(change_id: str, payload: AckRequest, conn=Depends(_get_conn)) -> dict[str, object]:
    try:
        return acknowledge_change(conn, change_id, payload.ack_status, payload.actor)
    except (LookupError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.get("/audit", dependencies=[Depends(_require_admin_token)])
def audit_list(
    source_id: str | None = None,
    tenant_id: str | None = None,
    limit: int = 100,
    conn=Depends(_get_conn),
) -> list[dict[str, object]]:
    return list_audit(conn, source_id, tenant_id, limit)


def _tenant_dict(settings: TenantSettings) -> dict[str, object]:
    return json.loads(json_dumps(settings))


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("deadlineshield")
    except Exception:  # noqa: BLE001
        return "unknown"
