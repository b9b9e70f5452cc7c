from __future__ import annotations

from typing import Any

from .models import SeverityLevel, TenantSettings
from .storage import get_tenant_row, upsert_tenant

PLAN_STARTER = "Starter"
PLAN_PRO = "Pro"
PLAN_ENTERPRISE = "Enterprise"

PLANS = (PLAN_STARTER, PLAN_PRO, PLAN_ENTERPRISE)

PLAN_LIMITS = {
    PLAN_STARTER: 5,
    PLAN_PRO: 25,
    PLAN_ENTERPRISE: 9999,
}

# Feature defaults per plan; explicit tenant values win.
_PLAN_FEATURES = {
    PLAN_STARTER: {"email_alerts": False, "guidance_enabled": False},
    PLAN_PRO: {"email_alerts": True, "guidance_enabled": True},
    PLAN_ENTERPRISE: {"email_alerts": True, "guidance_enabled": True},
}

DEFAULT_ALERT_THRESHOLD = SeverityLevel.MEDIUM


def plan_limit(plan: str) -> int:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[PLAN_STARTER])


def get_tenant_settings(conn: Any, tenant_id: str) -> TenantSettings:
    """Alert threshold and feature flags for a tenant; unknown tenants get Starter defaults."""
    row = get_tenant_row(conn, tenant_id) or {}
    plan = str(row.get("plan") or PLAN_STARTER)
    if plan not in PLANS:
        plan = PLAN_STARTER
    features = _PLAN_FEATURES[plan]
    threshold = row.get("alert_threshold")
    guidance_enabled = row.get("guidance_enabled")
    email_alerts = row.get("email_alerts")
    return TenantSettings(
        tenant_id=tenant_id,
        email=row.get("email"),  # type: ignore[arg-type]
        plan=plan,
        alert_threshold=SeverityLevel(threshold) if threshold else DEFAULT_ALERT_THRESHOLD,
        guidance_enabled=(
            features["guidance_enabled"] if guidance_enabled is None else bool(guidance_enabled)
        ),
        email_alerts=features["email_alerts"] if email_alerts is None else bool(email_alerts),
    )


def save_tenant(
    conn: Any,
    tenant_id: str,
    *,
    email: str | None,
    plan: str = PLAN_STARTER,
    alert_threshold: str | None = None,
    guidance_enabled: bool | None = None,
    email_alerts: bool | None = None,
) -> TenantSettings:
    if plan not in PLANS:
        raise ValueError(f"plan must be one of: {', '.join(PLANS)}")
    if alert_threshold is not None:
        alert_threshold = SeverityLevel(alert_threshold.upper()).value
    upsert_tenant(
        conn,
        tenant_id,
        email=email,
        plan=plan,
        alert_threshold=alert_threshold,
        guidance_enabled=guidance_enabled,
        email_alerts=email_alerts,
    )
    return get_tenant_settings(conn, tenant_id)


def should_alert(settings: TenantSettings, level: SeverityLevel) -> bool:
    return level.rank >= settings.alert_threshold.rank
