"""Provisioning pipeline: mesh join key, machine creation, readiness poll.

Each step runs to completion inside one task invocation. Waiting for the boot
script is a chain of short ``poll_setup_status`` tasks, each carrying its own
``PollState``; nothing is shared between invocations except the database row.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database_sync import get_sync_db
from app.core.encryption import decrypt_value, try_decrypt_value
from app.core.exceptions import DevBoxError, MissingCredentialsError, ProviderError
from app.models.provisioning_log import LogStatus, ProvisioningLog, ProvisioningStep
from app.models.server import ALLOWED_TRANSITIONS, Server, ServerStatus
from app.models.user import User
from app.services.hetzner_service import HetznerService
from app.services.management_client import probe_status
from app.services.setup_script import MAX_USER_DATA_BYTES, SetupScriptGenerator
from app.services.tailscale_service import TailscaleService
from app.workers.celery_app import celery_app
from app.workers.utils import TaskLogger, append_log, log_entry


@dataclass(frozen=True)
class PollState:
    server_id: int
    host: str
    attempt: int = 1

    def next(self) -> "PollState":
        return replace(self, attempt=self.attempt + 1)


PollScheduler = Callable[[PollState, int], None]


def enqueue_poll(state: PollState, delay: int) -> None:
    poll_setup_status.apply_async(
        args=[state.server_id, state.host, state.attempt],
        countdown=delay,
    )


def _current_status(db: Session, server_id: int) -> str | None:
    return db.execute(select(Server.status).where(Server.id == server_id)).scalar_one_or_none()


def _transition(
    db: Session,
    server: Server,
    expected: ServerStatus,
    new: ServerStatus,
    message: str | None,
    *,
    logs: Sequence[ProvisioningLog] = (),
    **values,
) -> bool:
    """Move the row from ``expected`` to ``new`` unless someone else moved it first.

    The status is compared in the UPDATE itself, so a concurrent delete request
    always wins. ``logs`` are committed together with the transition and
    dropped when it does not apply.
    """
    if new not in ALLOWED_TRANSITIONS[expected]:
        raise ValueError(f"Cannot move server from {expected.value} to {new.value}")
    result = db.execute(
        update(Server)
        .where(Server.id == server.id, Server.status == expected.value)
        .values(status=new.value, status_message=message, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.commit()
        db.expire(server)
        return False
    db.add_all(logs)
    db.commit()
    db.refresh(server)
    return True


def _provider_keys(user: User) -> tuple[str, str, str]:
    if not user.has_provisioning_credentials:
        raise MissingCredentialsError("Hetzner API key, Tailscale API key and tailnet are required")
    return (
        decrypt_value(user.hetzner_api_key_encrypted),
        decrypt_value(user.tailscale_api_key_encrypted),
        user.tailscale_tailnet,
    )


def _fail_step(
    db: Session,
    server: Server,
    expected: ServerStatus,
    step: str,
    detail: str,
    status_message: str,
    tlog: TaskLogger,
) -> dict | None:
    """Record the failure and move to error; None when the server already moved on."""
    server_id = server.id
    failed = _transition(
        db,
        server,
        expected,
        ServerStatus.ERROR,
        status_message,
        logs=[log_entry(server_id, step, LogStatus.ERROR, detail)],
    )
    if not failed:
        tlog.warning("%s (%s), but server is no longer %s", status_message, detail, expected.value)
        return None
    tlog.error("%s: %s", status_message, detail)
    return {"status": "error", "step": step, "error": detail}


def run_provisioning(
    db: Session,
    server_id: int,
    *,
    tlog: TaskLogger | None = None,
    tailscale_factory: Callable[[str, str], TailscaleService] = TailscaleService,
    hetzner_factory: Callable[[str], HetznerService] = HetznerService,
    generator: SetupScriptGenerator | None = None,
    schedule_poll: PollScheduler = enqueue_poll,
) -> dict:
    """Drive a freshly created record from provisioning to installing."""
    tlog = tlog or TaskLogger(None, server_id=server_id)
    generator = generator or SetupScriptGenerator()
    provisioning = ServerStatus.PROVISIONING

    server = db.get(Server, server_id, populate_existing=True)
    if server is None:
        tlog.warning("Server record no longer exists, nothing to provision")
        return {"status": "missing"}
    if server.status != provisioning.value:
        tlog.warning("Server is %s, not provisioning; skipping", server.status)
        return {"status": "skipped"}

    # Step 1: single-use mesh join key
    step = ProvisioningStep.MESH_AUTH_KEY
    append_log(db, server.id, step, LogStatus.RUNNING, "Creating Tailscale auth key")
    try:
        hetzner_key, tailscale_key, tailnet = _provider_keys(server.owner)
        with tailscale_factory(tailscale_key, tailnet) as tailscale:
            join_token = tailscale.create_auth_key(f"DevBox {server.name}")
            dns_suffix = tailscale.get_dns_suffix()
    except DevBoxError as exc:
        failed = _fail_step(
            db, server, provisioning, step, exc.message, "Failed to create Tailscale auth key", tlog
        )
        return failed or {"status": "cancelled"}
    if _current_status(db, server_id) != provisioning.value:
        tlog.warning("Server left provisioning while the auth key was created; stopping")
        return {"status": "cancelled"}
    append_log(db, server.id, step, LogStatus.SUCCESS, "Auth key created")
    tlog.info("Tailscale auth key created (suffix %s)", dns_suffix)

    # Step 2: machine with the boot script as user data
    step = ProvisioningStep.CREATE_MACHINE
    append_log(
        db,
        server.id,
        step,
        LogStatus.RUNNING,
        f"Creating {server.server_type} server in {server.region}",
    )
    try:
        user_data = generator.render(
            server.name,
            join_token,
            server.agents,
            try_decrypt_value(server.password_encrypted),
            server.agent_ports,
        )
        if len(user_data.encode("utf-8")) > MAX_USER_DATA_BYTES:
            raise ProviderError("Setup script exceeds the provider's user data limit")
        with hetzner_factory(hetzner_key) as hetzner:
            machine = hetzner.create_machine(server.name, server.server_type, server.region, user_data)
    except DevBoxError as exc:
        failed = _fail_step(
            db, server, provisioning, step, exc.message, "Failed to create Hetzner server", tlog
        )
        return failed or {"status": "cancelled"}
    tlog.info("Machine %s created at %s", machine.machine_id, machine.public_ip)

    # Step 3: record the machine and hand off to the readiness poll
    handed_off = _transition(
        db,
        server,
        provisioning,
        ServerStatus.INSTALLING,
        "Server created, installing software...",
        logs=[
            log_entry(server_id, step, LogStatus.SUCCESS, f"Server ID: {machine.machine_id}"),
            log_entry(
                server_id,
                ProvisioningStep.SOFTWARE_INSTALL,
                LogStatus.RUNNING,
                "Cloud-init running setup script on server...",
            ),
        ],
        hetzner_server_id=machine.machine_id,
        public_ip=machine.public_ip,
        tailscale_name=server.name,
        tailscale_domain=dns_suffix,
    )
    if not handed_off:
        tlog.warning("Server left provisioning during machine creation; removing machine")
        with hetzner_factory(hetzner_key) as hetzner:
            hetzner.delete_machine(machine.machine_id)
        return {"status": "cancelled"}

    schedule_poll(PollState(server_id, machine.public_ip), settings.POLL_DELAY_SECONDS)
    return {"status": "installing", "machine_id": machine.machine_id}


def _is_ready(status_code: int) -> bool:
    # 401 still proves the management API is up.
    return 200 <= status_code < 300 or status_code == 401


def run_poll(
    db: Session,
    state: PollState,
    *,
    tlog: TaskLogger | None = None,
    probe: Callable[..., int] = probe_status,
    schedule_poll: PollScheduler = enqueue_poll,
) -> dict:
    """One readiness probe; reschedules itself until ready or out of attempts."""
    tlog = tlog or TaskLogger(None, server_id=state.server_id)
    installing = ServerStatus.INSTALLING

    server = db.get(Server, state.server_id, populate_existing=True)
    if server is None or server.status != installing.value:
        tlog.info("Stale poll (attempt %d); server is no longer installing", state.attempt)
        return {"status": "stale"}

    try:
        ready = _is_ready(probe(state.host, timeout=settings.POLL_TIMEOUT_SECONDS))
    except httpx.HTTPError as exc:
        tlog.debug("Probe %d failed: %s", state.attempt, exc)
        ready = False

    step = ProvisioningStep.SOFTWARE_INSTALL
    if ready:
        finished = _transition(
            db,
            server,
            installing,
            ServerStatus.RUNNING,
            "Server is ready",
            logs=[log_entry(state.server_id, step, LogStatus.SUCCESS, "Setup complete")],
        )
        if not finished:
            tlog.info("Server answered but is no longer installing; leaving it alone")
            return {"status": "stale"}
        tlog.info("Server ready after %d probe(s)", state.attempt)
        return {"status": "running", "attempts": state.attempt}

    if state.attempt >= settings.POLL_MAX_ATTEMPTS:
        minutes = settings.POLL_MAX_ATTEMPTS * settings.POLL_DELAY_SECONDS // 60
        failed = _fail_step(
            db,
            server,
            installing,
            step,
            "Timed out waiting for setup to complete",
            f"Setup timed out after {minutes} minutes",
            tlog,
        )
        return failed or {"status": "stale"}

    schedule_poll(state.next(), settings.POLL_DELAY_SECONDS)
    return {"status": "waiting", "attempts": state.attempt}


@celery_app.task(
    bind=True,
    name="provisioning.provision_server",
    time_limit=300,
    soft_time_limit=240,
)
def provision_server(self, server_id: int) -> dict:
    tlog = TaskLogger(self.request.id, server_id=server_id)
    tlog.info("Starting provisioning")
    db = get_sync_db()
    try:
        return run_provisioning(db, server_id, tlog=tlog)
    finally:
        db.close()


@celery_app.task(
    bind=True,
    name="provisioning.poll_setup_status",
    time_limit=60,
    soft_time_limit=30,
)
def poll_setup_status(self, server_id: int, host: str, attempt: int) -> dict:
    tlog = TaskLogger(self.request.id, server_id=server_id)
    db = get_sync_db()
    try:
        return run_poll(db, PollState(server_id, host, attempt), tlog=tlog)
    finally:
        db.close()
