"""
models.py
---------
Typed views over ``UpCloudVM`` resources and over the provisioning API.

* ``VMSpec`` / ``VMStatus`` validate the desired and observed halves of a record.
* ``VMRecord`` wraps the full resource body so it can be written back verbatim
  (resourceVersion included) after the reconciler mutates finalizers or status.
* The frozen dataclasses at the bottom are the provider-neutral request and
  response shapes exchanged with :mod:`upcloud_vm_operator.provisioning`.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidSpecError

# ---------------------------------------------------------------------------
# Constants -----------------------------------------------------------------
# ---------------------------------------------------------------------------
UPCLOUDVM_GROUP = "vm.upcloud.io"
UPCLOUDVM_VERSION = "v1alpha1"
UPCLOUDVM_PLURAL = "upcloudvms"
UPCLOUDVM_KIND = "UpCloudVM"

FINALIZER = "upcloud.finalizer"


# ---------------------------------------------------------------------------
# Enums ----------------------------------------------------------------------
# ---------------------------------------------------------------------------
class LifecycleState(str, Enum):
    """Lifecycle label persisted in ``status.state``."""

    UNINITIALIZED = "Uninitialized"
    PROVISIONING = "Provisioning"
    READY = "Running"
    UPDATING = "Updating"
    TERMINATING = "Terminating"
    DELETED = "Deleted"


class RecordState(str, Enum):
    """Reconciliation branch, derived from the record on every pass."""

    DELETED = "Deleted"
    PENDING_DELETION = "PendingDeletion"
    UNINITIALIZED = "Uninitialized"
    PROVISIONED = "Provisioned"


# ---------------------------------------------------------------------------
# Record schema --------------------------------------------------------------
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Identity:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class LoginUser(BaseModel):
    """Initial login account created on the VM."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: Optional[str] = None
    create_password: Optional[str] = None
    ssh_keys: List[str] = Field(default_factory=list)

    @field_validator("ssh_keys", mode="before")
    @classmethod
    def _unwrap_ssh_keys(cls, value: Any) -> Any:
        # Accept the provider's wrapped form {"ssh_key": [...]} as well as a plain list.
        if isinstance(value, dict):
            return value.get("ssh_key", [])
        if value is None:
            return []
        return value


class VMSpec(BaseModel):
    """Desired state of an UpCloudVM."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cpu: int = Field(gt=0)
    memory: int = Field(gt=0)
    storage_size: int = Field(alias="storagesize", gt=0)
    zone: str = Field(min_length=1)
    plan: str = Field(min_length=1)
    storage_template: str = Field(alias="storagetemplate", min_length=1)
    timezone: Optional[str] = None
    login_user: Optional[LoginUser] = None
    user_data: Optional[str] = None


class VMStatus(BaseModel):
    """Observed state of an UpCloudVM, written only by the controller."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    vm_id: str = Field(default="", alias="vmID")
    state: str = ""
    ip_address: str = Field(default="", alias="ipAddress")

    def to_body(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


@dataclass
class VMRecord:
    """A single UpCloudVM resource as read from the store."""

    identity: Identity
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    raw_spec: Dict[str, Any] = field(default_factory=dict)
    status: VMStatus = field(default_factory=VMStatus)
    body: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "VMRecord":
        meta = body.get("metadata", {})
        return cls(
            identity=Identity(meta.get("namespace", "default"), meta["name"]),
            uid=meta.get("uid", ""),
            resource_version=meta.get("resourceVersion", ""),
            generation=meta.get("generation", 0),
            finalizers=list(meta.get("finalizers") or []),
            deletion_timestamp=meta.get("deletionTimestamp"),
            raw_spec=dict(body.get("spec") or {}),
            status=VMStatus.model_validate(body.get("status") or {}),
            body=copy.deepcopy(body),
        )

    def to_body(self) -> Dict[str, Any]:
        """Render the record back into a resource body for a replace call."""
        body = copy.deepcopy(self.body)
        body.setdefault("apiVersion", f"{UPCLOUDVM_GROUP}/{UPCLOUDVM_VERSION}")
        body.setdefault("kind", UPCLOUDVM_KIND)
        meta = body.setdefault("metadata", {})
        meta["name"] = self.identity.name
        meta["namespace"] = self.identity.namespace
        meta["finalizers"] = list(self.finalizers)
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        body["spec"] = dict(self.raw_spec)
        # Keep status fields owned by others (kopf progress) next to ours.
        body["status"] = {**(body.get("status") or {}), **self.status.to_body()}
        return body

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def vm_id(self) -> str:
        return self.status.vm_id

    @property
    def lifecycle(self) -> LifecycleState:
        """Persisted lifecycle label; empty or unknown reads as ``Uninitialized``."""
        try:
            return LifecycleState(self.status.state)
        except ValueError:
            return LifecycleState.UNINITIALIZED

    @property
    def deletion_requested(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, token: str = FINALIZER) -> bool:
        return token in self.finalizers

    def add_finalizer(self, token: str = FINALIZER) -> None:
        if token not in self.finalizers:
            self.finalizers.append(token)

    def remove_finalizer(self, token: str = FINALIZER) -> None:
        self.finalizers = [item for item in self.finalizers if item != token]

    def desired(self) -> VMSpec:
        """Validate and return the desired state or raise ``InvalidSpecError``."""
        try:
            return VMSpec.model_validate(self.raw_spec)
        except ValidationError as exc:
            raise InvalidSpecError(f"{self.identity}: invalid spec: {exc}") from exc


def classify(record: Optional[VMRecord]) -> RecordState:
    """Derive the reconciliation branch for *record* (``None`` means not found)."""
    if record is None:
        return RecordState.DELETED
    if record.deletion_requested:
        return RecordState.PENDING_DELETION
    if not record.vm_id:
        return RecordState.UNINITIALIZED
    return RecordState.PROVISIONED


# ---------------------------------------------------------------------------
# Provisioning request / response shapes -------------------------------------
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Label:
    key: str
    value: str


@dataclass(frozen=True)
class IPAddress:
    address: str
    family: str = "IPv4"
    access: str = "utility"


@dataclass(frozen=True)
class StorageDevice:
    storage: str
    title: str
    size: int
    tier: str = "maxiops"
    action: str = "clone"


@dataclass(frozen=True)
class NetworkInterface:
    type: str = "utility"
    ip_families: tuple = ("IPv4",)


@dataclass(frozen=True)
class VMCreateRequest:
    title: str
    hostname: str
    zone: str
    plan: str
    core_number: int
    memory_amount: int
    storage_devices: tuple
    interfaces: tuple = (NetworkInterface(),)
    timezone: Optional[str] = None
    login_user: Optional[LoginUser] = None
    user_data: Optional[str] = None
    labels: tuple = ()


@dataclass(frozen=True)
class VMModifyRequest:
    title: str
    zone: str
    plan: str
    core_number: int
    memory_amount: int
    timezone: Optional[str] = None
    labels: tuple = ()


@dataclass(frozen=True)
class VMDetails:
    uuid: str
    title: str = ""
    state: str = ""
    hostname: str = ""
    zone: str = ""
    plan: str = ""
    labels: tuple = ()
    ip_addresses: tuple = ()

    @property
    def first_address(self) -> str:
        return self.ip_addresses[0].address if self.ip_addresses else ""
