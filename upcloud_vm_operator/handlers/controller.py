"""
controller.py
-------------
Kopf wiring for the UpCloudVM operator.

Key responsibilities
~~~~~~~~~~~~~~~~~~~~
* Bootstrap the operator: load configuration, verify UpCloud credentials,
  build the store / client / reconciler and optionally install the CRD.
* Route every create, update, resume, delete and periodic-resync event for an
  ``UpCloudVM`` to :meth:`VMReconciler.reconcile`, one record at a time.
* Translate the reconciler's typed errors into kopf retry semantics.
* Cancel in-flight waits and close the HTTP client on shutdown.

The controller owns its own finalizer (``upcloud.finalizer``); the delete
handler is registered as optional so kopf does not block deletion on its behalf.
"""
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict

import kopf
import yaml
from kopf import OperatorSettings
from kubernetes.client import ApiException, ApiextensionsV1Api, CustomObjectsApi

from ..config import load_config, load_env_file, load_handler_timings
from ..errors import ConfigError, ErrorKind, InvalidSpecError, OperatorError, ProvisioningError
from ..models import UPCLOUDVM_GROUP, UPCLOUDVM_PLURAL, UPCLOUDVM_VERSION, Identity, RecordState
from ..provisioning import UpCloudClient
from ..reconciler import VMReconciler
from ..store import KubernetesResourceStore, load_kubernetes_config

logger = logging.getLogger(__name__)

# Ensure ENV is loaded *early*; the timer interval is fixed at registration.
load_env_file()

# ---------------------------------------------------------------------------
# Constants -----------------------------------------------------------------
# ---------------------------------------------------------------------------
TIMINGS = load_handler_timings(os.environ)
RESYNC_INTERVAL = TIMINGS.resync_interval
RETRY_DELAY = TIMINGS.retry_delay
CRD_MANIFEST_PATH = Path(__file__).resolve().parent.parent / "manifests" / "upcloudvm-crd.yaml"


class IdentityLocks:
    """Hands out one lock per record so a record is never reconciled concurrently."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Identity, threading.Lock] = {}

    def for_identity(self, identity: Identity) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(identity, threading.Lock())

    def discard(self, identity: Identity) -> None:
        with self._guard:
            self._locks.pop(identity, None)


# ---------------------------------------------------------------------------
# CRD bootstrap --------------------------------------------------------------
# ---------------------------------------------------------------------------

def load_crd_manifest(path: Path = CRD_MANIFEST_PATH) -> dict:
    return yaml.safe_load(path.read_text())


def ensure_crd(apiext: ApiextensionsV1Api) -> None:
    """Create the UpCloudVM CRD unless it is already registered."""
    try:
        apiext.create_custom_resource_definition(body=load_crd_manifest())
        logger.info("UpCloudVM CRD applied")
    except ApiException as exc:
        if exc.status == 409:  # already present
            logger.debug("UpCloudVM CRD already present")
        elif exc.status == 429:
            raise kopf.TemporaryError("API busy, retrying", delay=10) from exc
        else:
            raise kopf.PermanentError(f"CRD creation failed: {exc.status} {exc.reason}") from exc


# ---------------------------------------------------------------------------
# Kopf handlers --------------------------------------------------------------
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure_kopf(settings: OperatorSettings, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Tune watching, then build the reconciler from validated configuration."""
    settings.watching.server_timeout = 210  # seconds
    logger.info("Kopf watch server_timeout set to %s", settings.watching.server_timeout)

    try:
        config = load_config()
        load_kubernetes_config()
    except ConfigError as exc:
        logger.critical("Startup configuration invalid: %s", exc)
        raise kopf.PermanentError(str(exc)) from exc

    stop_event = threading.Event()
    client = UpCloudClient(config, stop_event=stop_event)
    try:
        account = client.verify_credentials()
    except ProvisioningError as exc:
        client.close()
        if exc.kind is ErrorKind.TRANSIENT:
            raise kopf.TemporaryError(f"UpCloud API unreachable: {exc}", delay=10) from exc
        logger.critical("UpCloud credentials rejected: %s", exc)
        raise kopf.PermanentError("UpCloud credentials rejected") from exc
    logger.info("Authenticated against UpCloud as %s", account or config.upcloud_username)

    if config.install_crd:
        ensure_crd(ApiextensionsV1Api())

    memo.stop_event = stop_event
    memo.provisioner = client
    memo.reconciler = VMReconciler.from_config(config, KubernetesResourceStore(CustomObjectsApi()), client)
    memo.locks = IdentityLocks()


@kopf.on.cleanup()
def shutdown(memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Interrupt blocking waits so in-flight reconciliations return promptly."""
    stop_event = memo.get("stop_event")
    if stop_event is not None:
        stop_event.set()
    client = memo.get("provisioner")
    if client is not None:
        client.close()
    logger.info("UpCloudVM operator stopped")


@kopf.on.probe(id="reconciler")
def reconciler_ready(memo: kopf.Memo, **_: Dict[str, object]) -> bool:
    """Liveness/readiness: true once startup has built the reconciler."""
    return memo.get("reconciler") is not None


def run_reconcile(
    memo: kopf.Memo, namespace: str, name: str, logger: kopf.Logger, *, deleting: bool = False
) -> None:
    """Reconcile one identity under its lock and map failures onto kopf errors."""
    identity = Identity(namespace, name)
    reconciler: VMReconciler = memo.reconciler

    with memo.locks.for_identity(identity):
        try:
            result = reconciler.reconcile(identity, logger=logger)
        except InvalidSpecError as exc:
            raise kopf.PermanentError(str(exc)) from exc
        except ProvisioningError as exc:
            if exc.kind is ErrorKind.PERMANENT_REJECTION and not deleting:
                raise kopf.PermanentError(f"UpCloud rejected the request for {identity}: {exc}") from exc
            raise kopf.TemporaryError(f"Provisioning failed for {identity}: {exc}", delay=RETRY_DELAY) from exc
        except OperatorError as exc:
            raise kopf.TemporaryError(f"Reconciliation of {identity} failed: {exc}", delay=RETRY_DELAY) from exc

    logger.debug("Reconciled %s: branch=%s action=%s", identity, result.branch.value, result.action)
    if result.branch in (RecordState.DELETED, RecordState.PENDING_DELETION):
        # Record is gone or its cleanup finished.
        memo.locks.discard(identity)


@kopf.on.resume(UPCLOUDVM_GROUP, UPCLOUDVM_VERSION, UPCLOUDVM_PLURAL)
@kopf.on.create(UPCLOUDVM_GROUP, UPCLOUDVM_VERSION, UPCLOUDVM_PLURAL)
@kopf.on.update(UPCLOUDVM_GROUP, UPCLOUDVM_VERSION, UPCLOUDVM_PLURAL)
def reconcile_upcloudvm(
    namespace: str, name: str, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]
) -> None:
    """Create or update the VM behind an UpCloudVM."""
    run_reconcile(memo, namespace, name, logger)


@kopf.on.delete(UPCLOUDVM_GROUP, UPCLOUDVM_VERSION, UPCLOUDVM_PLURAL, optional=True)
def delete_upcloudvm(
    namespace: str, name: str, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]
) -> None:
    """Tear down the VM and release the finalizer; always retried until it succeeds."""
    run_reconcile(memo, namespace, name, logger, deleting=True)


@kopf.on.timer(
    UPCLOUDVM_GROUP,
    UPCLOUDVM_VERSION,
    UPCLOUDVM_PLURAL,
    interval=RESYNC_INTERVAL,
    initial_delay=RESYNC_INTERVAL,
)
def resync_upcloudvm(
    namespace: str, name: str, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]
) -> None:
    """Periodic resync: re-reconcile so drift on the UpCloud side gets corrected."""
    run_reconcile(memo, namespace, name, logger)
