from collections.abc import Callable
from datetime import UTC, datetime

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database_sync import get_sync_db
from app.core.encryption import try_decrypt_value
from app.models.server import HealthStatus, Server, ServerStatus
from app.services.management_client import probe_port, probe_status
from app.workers.celery_app import celery_app
from app.workers.utils import TaskLogger


def classify_server(
    server: Server,
    *,
    status_probe: Callable[..., int] = probe_status,
    port_probe: Callable[..., bool] = probe_port,
) -> HealthStatus:
    """Healthy if the management API answers, degraded if only an agent port does."""
    if not server.public_ip:
        return HealthStatus.UNREACHABLE

    timeout = settings.HEALTH_TIMEOUT_SECONDS
    token = try_decrypt_value(server.password_encrypted)
    try:
        code = status_probe(server.public_ip, token, timeout=timeout)
    except httpx.HTTPError:
        code = None
    if code is not None and 200 <= code < 300:
        return HealthStatus.HEALTHY

    for agent in server.agents or []:
        if port_probe(server.public_ip, server.port_for(agent), timeout=timeout):
            return HealthStatus.DEGRADED
    return HealthStatus.UNREACHABLE


def run_health_checks(
    db: Session,
    *,
    tlog: TaskLogger | None = None,
    status_probe: Callable[..., int] = probe_status,
    port_probe: Callable[..., bool] = probe_port,
) -> dict[str, int]:
    tlog = tlog or TaskLogger(None)
    servers = db.scalars(
        select(Server).where(Server.status == ServerStatus.RUNNING.value).order_by(Server.id)
    ).all()

    counts = {health.value: 0 for health in HealthStatus}
    for server in servers:
        health = classify_server(server, status_probe=status_probe, port_probe=port_probe)
        # Rows deleted since the select simply match nothing.
        db.execute(
            update(Server)
            .where(Server.id == server.id)
            .values(health_status=health.value, last_health_check=datetime.now(UTC))
        )
        counts[health.value] += 1
        if health is not HealthStatus.HEALTHY:
            tlog.warning("Server %d (%s) is %s", server.id, server.name, health.value)
    db.commit()

    tlog.info("Health check complete: %s", counts)
    return counts


@celery_app.task(
    bind=True,
    name="health.check_all_servers",
    time_limit=600,
    soft_time_limit=540,
)
def check_all_servers(self) -> dict:
    tlog = TaskLogger(self.request.id)
    db = get_sync_db()
    try:
        return run_health_checks(db, tlog=tlog)
    finally:
        db.close()
