"""
reconciler.py
-------------
Level-based reconciliation of ``UpCloudVM`` records.

Every call to :meth:`VMReconciler.reconcile` starts from a fresh read of the
record and walks one branch of the state machine:

    Deleted          record not found                 -> no-op
    PendingDeletion  deletionTimestamp set            -> delete VM, drop finalizer
    (no finalizer)   finalizer missing                -> add finalizer, continue
    Uninitialized    status.vmID empty                -> create VM, persist status
    Provisioned      status.vmID set                  -> modify VM, persist status

Ordering within one pass: finalizer write -> provisioning calls -> status write.
``status.state`` follows Provisioning -> Running on create, Updating -> Running
on update and Terminating -> Deleted on delete.
Nothing is cached between passes, so the same identity can be reconciled any
number of times. Errors propagate to the caller (the kopf handler) which
reschedules the identity; only a missing record is swallowed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .config import OperatorConfig
from .errors import ConflictError, ErrorKind, ProvisioningError, RecordNotFound
from .models import (
    FINALIZER,
    Identity,
    Label,
    LifecycleState,
    NetworkInterface,
    RecordState,
    StorageDevice,
    VMCreateRequest,
    VMDetails,
    VMModifyRequest,
    VMRecord,
    VMSpec,
    classify,
)
from .provisioning import SERVER_STATE_STARTED, Provisioner
from .store import ResourceStore

LOG = logging.getLogger(__name__)

MANAGED_BY = "upcloud-vm-operator"
MANAGED_BY_LABEL = "managed_by"
OWNER_UID_LABEL = "k8s_uid"
TITLE_LABEL = "title"

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]
Mutation = Callable[[VMRecord], bool]


@dataclass
class ReconcileResult:
    """What a single pass did; returned for logging and tests."""

    identity: Identity
    branch: RecordState
    action: str = "noop"
    vm_id: str = ""


# ---------------------------------------------------------------------------
# Request builders -----------------------------------------------------------
# ---------------------------------------------------------------------------

def owner_labels(record: VMRecord) -> tuple:
    """Labels that tie an external VM back to the record that created it."""
    labels = [Label(MANAGED_BY_LABEL, MANAGED_BY)]
    if record.uid:
        labels.append(Label(OWNER_UID_LABEL, record.uid))
    return tuple(labels)


def build_create_request(record: VMRecord, spec: VMSpec, storage_tier: str = "maxiops") -> VMCreateRequest:
    return VMCreateRequest(
        title=record.name,
        hostname=record.name,
        zone=spec.zone,
        plan=spec.plan,
        core_number=spec.cpu,
        memory_amount=spec.memory,
        storage_devices=(
            StorageDevice(
                storage=spec.storage_template,
                title=record.name,
                size=spec.storage_size,
                tier=storage_tier,
            ),
        ),
        interfaces=(NetworkInterface(type="utility", ip_families=("IPv4",)),),
        timezone=spec.timezone,
        login_user=spec.login_user,
        user_data=spec.user_data,
        labels=owner_labels(record),
    )


def build_modify_request(record: VMRecord, spec: VMSpec, current: VMDetails) -> VMModifyRequest:
    """Modification for *current*; a rename appends a title label, never replaces."""
    labels = list(current.labels)
    if current.title != record.name:
        labels.append(Label(TITLE_LABEL, record.name))
    return VMModifyRequest(
        title=record.name,
        zone=spec.zone,
        plan=spec.plan,
        core_number=spec.cpu,
        memory_amount=spec.memory,
        timezone=spec.timezone,
        labels=tuple(labels),
    )


# ---------------------------------------------------------------------------
# Reconciler -----------------------------------------------------------------
# ---------------------------------------------------------------------------

class VMReconciler:
    """Drives UpCloud toward the desired state recorded in an ``UpCloudVM``."""

    def __init__(
        self,
        store: ResourceStore,
        provisioner: Provisioner,
        *,
        wait_timeout: Optional[float] = None,
        storage_tier: str = "maxiops",
        write_attempts: int = 5,
        finalizer: str = FINALIZER,
    ) -> None:
        self.store = store
        self.provisioner = provisioner
        self.wait_timeout = wait_timeout
        self.storage_tier = storage_tier
        self.write_attempts = write_attempts
        self.finalizer = finalizer

    @classmethod
    def from_config(
        cls, config: OperatorConfig, store: ResourceStore, provisioner: Provisioner
    ) -> "VMReconciler":
        return cls(
            store,
            provisioner,
            wait_timeout=config.wait_timeout,
            storage_tier=config.storage_tier,
            write_attempts=config.status_write_attempts,
        )

    def reconcile(self, identity: Identity, logger: Optional[LoggerLike] = None) -> ReconcileResult:
        log = logger or LOG

        try:
            record = self.store.get(identity)
        except RecordNotFound:
            log.info("UpCloudVM %s not found, nothing to do", identity)
            return ReconcileResult(identity, RecordState.DELETED)

        log.debug("Reconciling UpCloudVM %s (state=%s)", identity, record.lifecycle.value)
        if classify(record) is RecordState.PENDING_DELETION:
            return self._delete(record, log)

        if not record.has_finalizer(self.finalizer):
            record = self._write(record, self._add_finalizer, self.store.update, log)
            log.info("Added finalizer %r to UpCloudVM %s", self.finalizer, identity)
            if classify(record) is RecordState.PENDING_DELETION:
                return self._delete(record, log)

        if classify(record) is RecordState.UNINITIALIZED:
            return self._create(record, log)
        return self._update(record, log)

    # -- branches ----------------------------------------------------------

    def _create(self, record: VMRecord, log: LoggerLike) -> ReconcileResult:
        spec = record.desired()
        record = self._write(
            record, self._status(state=LifecycleState.PROVISIONING.value), self.store.update_status, log
        )

        action = "adopted"
        vm = self._find_owned_vm(record, log)
        if vm is None:
            log.info("Creating UpCloud VM for %s", record.identity)
            try:
                vm = self.provisioner.create_vm(build_create_request(record, spec, self.storage_tier))
                action = "created"
            except ProvisioningError as exc:
                if exc.kind is not ErrorKind.ALREADY_EXISTS:
                    raise
                log.warning("Provider reports the VM for %s already exists, looking it up", record.identity)
                vm = self._find_owned_vm(record, log)
                if vm is None:
                    raise

        ready = self.provisioner.wait_for_state(vm.uuid, SERVER_STATE_STARTED, timeout=self.wait_timeout)
        address = vm.first_address or ready.first_address
        record = self._write(
            record,
            self._status(vm_id=vm.uuid, ip_address=address, state=LifecycleState.READY.value),
            self.store.update_status,
            log,
        )
        log.info("UpCloud VM %s is running for %s (ip=%s)", vm.uuid, record.identity, address or "n/a")
        return ReconcileResult(record.identity, RecordState.UNINITIALIZED, action, vm.uuid)

    def _update(self, record: VMRecord, log: LoggerLike) -> ReconcileResult:
        spec = record.desired()
        vm_id = record.vm_id
        log.info("Updating UpCloud VM %s for %s", vm_id, record.identity)

        current = self.provisioner.get_vm(vm_id)
        record = self._write(record, self._status(state=LifecycleState.UPDATING.value), self.store.update_status, log)
        modified = self.provisioner.modify_vm(vm_id, build_modify_request(record, spec, current))
        ready = self.provisioner.wait_for_state(modified.uuid or vm_id, SERVER_STATE_STARTED, timeout=self.wait_timeout)

        record = self._write(
            record,
            self._status(vm_id=ready.uuid or vm_id, state=LifecycleState.READY.value),
            self.store.update_status,
            log,
        )
        return ReconcileResult(record.identity, RecordState.PROVISIONED, "updated", record.vm_id)

    def _delete(self, record: VMRecord, log: LoggerLike) -> ReconcileResult:
        identity = record.identity
        vm_id = record.vm_id
        action = "finalizer-removed"
        had_finalizer = record.has_finalizer(self.finalizer)

        try:
            if vm_id:
                record = self._write(
                    record, self._status(state=LifecycleState.TERMINATING.value), self.store.update_status, log
                )
                log.info("Deleting UpCloud VM %s and its storage for %s", vm_id, identity)
                try:
                    self.provisioner.delete_vm_and_storage(vm_id)
                except ProvisioningError as exc:
                    if exc.kind is not ErrorKind.NOT_FOUND:
                        raise
                    log.info("UpCloud VM %s is already gone", vm_id)
                action = "deleted"
                record = self._write(
                    record, self._status(state=LifecycleState.DELETED.value), self.store.update_status, log
                )

            self._write(record, self._remove_finalizer, self.store.update, log)
        except RecordNotFound:
            log.info("UpCloudVM %s disappeared during cleanup", identity)
            return ReconcileResult(identity, RecordState.PENDING_DELETION, action, vm_id)

        if had_finalizer:
            log.info("Removed finalizer %r from UpCloudVM %s", self.finalizer, identity)
        return ReconcileResult(identity, RecordState.PENDING_DELETION, action, vm_id)

    # -- helpers -----------------------------------------------------------

    def _find_owned_vm(self, record: VMRecord, log: LoggerLike) -> Optional[VMDetails]:
        if not record.uid:
            return None
        matches = self.provisioner.find_vms([Label(OWNER_UID_LABEL, record.uid)])
        if not matches:
            return None
        if len(matches) > 1:
            log.warning("%d UpCloud VMs carry the uid of %s; using %s", len(matches), record.identity, matches[0].uuid)
        log.info("Found existing UpCloud VM %s for %s", matches[0].uuid, record.identity)
        return matches[0]

    def _write(
        self,
        record: VMRecord,
        mutate: Mutation,
        write: Callable[[VMRecord], VMRecord],
        log: LoggerLike,
    ) -> VMRecord:
        """Apply *mutate* and persist with *write*, re-fetching after every conflict."""
        for attempt in range(1, self.write_attempts + 1):
            if not mutate(record):
                return record
            try:
                return write(record)
            except ConflictError:
                if attempt == self.write_attempts:
                    raise
                log.warning(
                    "Conflict writing UpCloudVM %s (attempt %d/%d); re-fetching",
                    record.identity,
                    attempt,
                    self.write_attempts,
                )
                record = self.store.get(record.identity)
        return record

    def _add_finalizer(self, record: VMRecord) -> bool:
        # The API server refuses new finalizers once deletion has been requested.
        if record.deletion_requested or record.has_finalizer(self.finalizer):
            return False
        record.add_finalizer(self.finalizer)
        return True

    def _remove_finalizer(self, record: VMRecord) -> bool:
        if not record.has_finalizer(self.finalizer):
            return False
        record.remove_finalizer(self.finalizer)
        return True

    @staticmethod
    def _status(**fields: str) -> Mutation:
        def apply(record: VMRecord) -> bool:
            updated = record.status.model_copy(update=fields)
            if updated == record.status:
                return False
            record.status = updated
            return True

        return apply
