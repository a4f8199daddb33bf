"""Shared fixtures: in-memory stand-ins for the resource store and the provisioner."""
from __future__ import annotations

import copy
import itertools
from typing import Dict, List, Optional, Sequence

import pytest

from upcloud_vm_operator.errors import ConflictError, ErrorKind, ProvisioningError, RecordNotFound
from upcloud_vm_operator.models import (
    IPAddress,
    Identity,
    Label,
    VMCreateRequest,
    VMDetails,
    VMModifyRequest,
    VMRecord,
)
from upcloud_vm_operator.reconciler import VMReconciler

SAMPLE_SPEC = {
    "cpu": 2,
    "memory": 4096,
    "storagesize": 25,
    "zone": "fi-hel1",
    "plan": "custom",
    "timezone": "UTC",
    "storagetemplate": "01000000-0000-4000-8000-000030240200",
}


def make_body(
    name: str = "vm-a",
    namespace: str = "default",
    *,
    spec: Optional[dict] = None,
    status: Optional[dict] = None,
    finalizers: Optional[List[str]] = None,
    deletion_timestamp: Optional[str] = None,
    uid: str = "uid-1234",
) -> dict:
    meta = {
        "name": name,
        "namespace": namespace,
        "uid": uid,
        "resourceVersion": "1",
        "generation": 1,
        "finalizers": list(finalizers or []),
    }
    if deletion_timestamp:
        meta["deletionTimestamp"] = deletion_timestamp
    return {
        "apiVersion": "vm.upcloud.io/v1alpha1",
        "kind": "UpCloudVM",
        "metadata": meta,
        "spec": copy.deepcopy(SAMPLE_SPEC if spec is None else spec),
        "status": dict(status or {}),
    }


class FakeStore:
    """Dict-backed store with resourceVersion checks like the API server."""

    def __init__(self) -> None:
        self.objects: Dict[Identity, dict] = {}
        self.calls: List[tuple] = []
        self.pending_conflicts = 0
        self.conflicts_on: Dict[str, List[int]] = {}
        self._write_counts: Dict[str, int] = {}
        self.fail_writes: List[Exception] = []
        self._versions = itertools.count(2)

    # -- helpers for tests -----------------------------------------------
    def put(self, body: dict) -> Identity:
        meta = body["metadata"]
        identity = Identity(meta["namespace"], meta["name"])
        self.objects[identity] = copy.deepcopy(body)
        return identity

    def body(self, identity: Identity) -> dict:
        return self.objects[identity]

    def writes(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "get"]

    def conflict_on(self, operation: str, *attempts: int) -> None:
        """Make the given (1-based) calls of *operation* lose a race."""
        self.conflicts_on.setdefault(operation, []).extend(attempts)

    def concurrent_edit(self, identity: Identity) -> None:
        """Bump the stored version as if another writer got there first."""
        meta = self.objects[identity]["metadata"]
        meta.setdefault("annotations", {})["example.com/touched"] = "true"
        meta["resourceVersion"] = str(next(self._versions))

    # -- ResourceStore ----------------------------------------------------
    def get(self, identity: Identity) -> VMRecord:
        self.calls.append(("get", identity))
        if identity not in self.objects:
            raise RecordNotFound(f"UpCloudVM {identity} not found")
        return VMRecord.from_body(copy.deepcopy(self.objects[identity]))

    def _check(self, record: VMRecord, operation: str) -> dict:
        self._write_counts[operation] = self._write_counts.get(operation, 0) + 1
        if self.fail_writes:
            raise self.fail_writes.pop(0)
        if record.identity not in self.objects:
            raise RecordNotFound(f"UpCloudVM {record.identity} not found")
        if self._write_counts[operation] in self.conflicts_on.get(operation, []):
            self.concurrent_edit(record.identity)
        elif self.pending_conflicts:
            self.pending_conflicts -= 1
            self.concurrent_edit(record.identity)
        stored = self.objects[record.identity]
        if stored["metadata"]["resourceVersion"] != record.resource_version:
            raise ConflictError(f"Conflict on UpCloudVM {record.identity}")
        return stored

    def update(self, record: VMRecord) -> VMRecord:
        self.calls.append(("update", record.identity, list(record.finalizers)))
        stored = self._check(record, "update")
        incoming = record.to_body()
        stored["metadata"]["finalizers"] = incoming["metadata"]["finalizers"]
        stored["spec"] = incoming["spec"]
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"]["finalizers"]:
            # Last finalizer gone: the API server deletes the object.
            del self.objects[record.identity]
        return VMRecord.from_body(copy.deepcopy(stored))

    def update_status(self, record: VMRecord) -> VMRecord:
        self.calls.append(("update_status", record.identity, record.status.to_body()))
        stored = self._check(record, "update_status")
        stored["status"] = record.to_body()["status"]
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        return VMRecord.from_body(copy.deepcopy(stored))


class FakeProvisioner:
    """Records every call; failures are queued per operation name."""

    def __init__(self) -> None:
        self.vms: Dict[str, VMDetails] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self._ids = itertools.count(1)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def _maybe_fail(self, operation: str) -> None:
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def add_vm(self, uuid: str, **fields) -> VMDetails:
        fields.setdefault("state", "started")
        details = VMDetails(uuid=uuid, **fields)
        self.vms[uuid] = details
        return details

    def _missing(self, vm_id: str) -> ProvisioningError:
        return ProvisioningError(f"server {vm_id} not found", kind=ErrorKind.NOT_FOUND, status_code=404)

    def create_vm(self, request: VMCreateRequest) -> VMDetails:
        self.calls.append(("create_vm", request))
        self._maybe_fail("create_vm")
        uuid = f"00{next(self._ids):04d}-vm"
        return self.add_vm(
            uuid,
            title=request.title,
            hostname=request.hostname,
            zone=request.zone,
            plan=request.plan,
            labels=tuple(request.labels),
            ip_addresses=(IPAddress("94.237.0.10"),),
        )

    def get_vm(self, vm_id: str) -> VMDetails:
        self.calls.append(("get_vm", vm_id))
        self._maybe_fail("get_vm")
        if vm_id not in self.vms:
            raise self._missing(vm_id)
        return self.vms[vm_id]

    def modify_vm(self, vm_id: str, request: VMModifyRequest) -> VMDetails:
        self.calls.append(("modify_vm", vm_id, request))
        self._maybe_fail("modify_vm")
        if vm_id not in self.vms:
            raise self._missing(vm_id)
        current = self.vms[vm_id]
        return self.add_vm(
            vm_id,
            title=request.title,
            hostname=current.hostname,
            zone=request.zone,
            plan=request.plan,
            labels=tuple(request.labels),
            ip_addresses=current.ip_addresses,
        )

    def delete_vm_and_storage(self, vm_id: str) -> None:
        self.calls.append(("delete_vm_and_storage", vm_id))
        self._maybe_fail("delete_vm_and_storage")
        if vm_id not in self.vms:
            raise self._missing(vm_id)
        del self.vms[vm_id]

    def wait_for_state(self, vm_id: str, desired_state: str, timeout: Optional[float] = None) -> VMDetails:
        self.calls.append(("wait_for_state", vm_id, desired_state))
        self._maybe_fail("wait_for_state")
        return self.vms[vm_id]

    def verify_credentials(self) -> str:
        self.calls.append(("verify_credentials",))
        return "operator"

    def find_vms(self, labels: Sequence[Label]) -> List[VMDetails]:
        self.calls.append(("find_vms", tuple(labels)))
        self._maybe_fail("find_vms")
        wanted = set(labels)
        return [vm for vm in self.vms.values() if wanted.issubset(set(vm.labels))]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def reconciler(store: FakeStore, provisioner: FakeProvisioner) -> VMReconciler:
    return VMReconciler(store, provisioner, wait_timeout=5, write_attempts=3)
