from collections.abc import Callable

from sqlalchemy.orm import Session

from app.core.database_sync import get_sync_db
from app.core.encryption import decrypt_value
from app.core.exceptions import DecryptionError
from app.models.server import Server, ServerStatus
from app.services.hetzner_service import HetznerService
from app.workers.celery_app import celery_app
from app.workers.utils import TaskLogger


def run_deletion(
    db: Session,
    server_id: int,
    *,
    tlog: TaskLogger | None = None,
    hetzner_factory: Callable[[str], HetznerService] = HetznerService,
) -> dict:
    """Destroy the machine (best-effort) and remove the record with its logs.

    The mesh device is left to go stale; its join key was single-use.
    """
    tlog = tlog or TaskLogger(None, server_id=server_id)

    server = db.get(Server, server_id, populate_existing=True)
    if server is None:
        tlog.info("Server already removed")
        return {"status": "missing"}
    if server.status != ServerStatus.DELETING.value:
        tlog.warning("Server is %s, not deleting; refusing to remove it", server.status)
        return {"status": "skipped"}

    machine_deleted = False
    api_key_sealed = server.owner.hetzner_api_key_encrypted
    if server.hetzner_server_id and api_key_sealed:
        try:
            api_key = decrypt_value(api_key_sealed)
        except DecryptionError as exc:
            tlog.warning("Cannot unseal Hetzner key, leaving machine %s: %s", server.hetzner_server_id, exc)
        else:
            with hetzner_factory(api_key) as hetzner:
                machine_deleted = hetzner.delete_machine(server.hetzner_server_id)
        if not machine_deleted:
            tlog.warning("Machine %s may need manual cleanup", server.hetzner_server_id)

    db.delete(server)
    db.commit()
    tlog.info("Server record removed (machine deleted: %s)", machine_deleted)
    return {"status": "deleted", "machine_deleted": machine_deleted}


@celery_app.task(
    bind=True,
    name="servers.delete_server",
    time_limit=120,
    soft_time_limit=90,
)
def delete_server(self, server_id: int) -> dict:
    tlog = TaskLogger(self.request.id, server_id=server_id)
    db = get_sync_db()
    try:
        return run_deletion(db, server_id, tlog=tlog)
    finally:
        db.close()
