"""
provisioning.py
---------------
Provisioning client for UpCloud servers.

``Provisioner`` is the contract the reconciler depends on. ``UpCloudClient``
implements it against the UpCloud REST API 1.3 with a synchronous ``httpx``
client; every call blocks the calling worker thread, which is how kopf runs
synchronous handlers.

Failures are raised as :class:`ProvisioningError` tagged with an
:class:`ErrorKind`, so callers never have to look at provider payloads.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .config import OperatorConfig
from .errors import ErrorKind, ProvisioningError, WaitCancelled, WaitTimeoutError
from .models import (
    IPAddress,
    Label,
    LoginUser,
    VMCreateRequest,
    VMDetails,
    VMModifyRequest,
)

logger = logging.getLogger(__name__)

SERVER_STATE_STARTED = "started"
SERVER_STATE_STOPPED = "stopped"
SERVER_STATE_MAINTENANCE = "maintenance"


class Provisioner(Protocol):
    """Operations the reconciler performs against the compute provider."""

    def create_vm(self, request: VMCreateRequest) -> VMDetails: ...

    def get_vm(self, vm_id: str) -> VMDetails: ...

    def modify_vm(self, vm_id: str, request: VMModifyRequest) -> VMDetails: ...

    def delete_vm_and_storage(self, vm_id: str) -> None: ...

    def wait_for_state(
        self, vm_id: str, desired_state: str, timeout: Optional[float] = None
    ) -> VMDetails: ...

    def find_vms(self, labels: Sequence[Label]) -> List[VMDetails]: ...

    def verify_credentials(self) -> str: ...


# ---------------------------------------------------------------------------
# Error classification -------------------------------------------------------
# ---------------------------------------------------------------------------

def classify_failure(status_code: int, error_code: Optional[str]) -> ErrorKind:
    """Map an HTTP failure onto the provider-neutral error kind."""
    code = (error_code or "").upper()
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        if code.endswith("_EXISTS"):
            return ErrorKind.ALREADY_EXISTS
        return ErrorKind.TRANSIENT  # e.g. SERVER_STATE_ILLEGAL while a server transitions
    if status_code == 429 or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT_REJECTION


def _error_details(response: httpx.Response) -> tuple[Optional[str], str]:
    """Return ``(error_code, message)`` from either of the provider's error shapes."""
    try:
        payload = response.json()
    except ValueError:
        return None, response.text or response.reason_phrase
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        err = payload["error"]
        return err.get("error_code"), err.get("error_message", "")
    if isinstance(payload, dict):
        # application/problem+json
        code = payload.get("type", "")
        code = code.rsplit("#", 1)[-1] if code else None
        return code, payload.get("title", "")
    return None, response.text


# ---------------------------------------------------------------------------
# Payload helpers ------------------------------------------------------------
# ---------------------------------------------------------------------------

def _labels_body(labels: Sequence[Label]) -> Dict[str, Any]:
    return {"label": [{"key": label.key, "value": label.value} for label in labels]}


def _login_user_body(login_user: LoginUser) -> Dict[str, Any]:
    body: Dict[str, Any] = {}
    if login_user.username:
        body["username"] = login_user.username
    if login_user.create_password:
        body["create_password"] = login_user.create_password
    if login_user.ssh_keys:
        body["ssh_keys"] = {"ssh_key": list(login_user.ssh_keys)}
    return body


def create_body(request: VMCreateRequest) -> Dict[str, Any]:
    server: Dict[str, Any] = {
        "title": request.title,
        "hostname": request.hostname,
        "zone": request.zone,
        "plan": request.plan,
        "core_number": str(request.core_number),
        "memory_amount": str(request.memory_amount),
        "storage_devices": {
            "storage_device": [
                {
                    "action": device.action,
                    "storage": device.storage,
                    "title": device.title,
                    "size": device.size,
                    "tier": device.tier,
                }
                for device in request.storage_devices
            ]
        },
        "networking": {
            "interfaces": {
                "interface": [
                    {
                        "ip_addresses": {"ip_address": [{"family": family} for family in iface.ip_families]},
                        "type": iface.type,
                    }
                    for iface in request.interfaces
                ]
            }
        },
    }
    if request.timezone:
        server["timezone"] = request.timezone
    if request.login_user is not None:
        server["login_user"] = _login_user_body(request.login_user)
    if request.user_data:
        server["user_data"] = request.user_data
    if request.labels:
        server["labels"] = _labels_body(request.labels)
    return {"server": server}


def modify_body(request: VMModifyRequest) -> Dict[str, Any]:
    server: Dict[str, Any] = {
        "title": request.title,
        "zone": request.zone,
        "plan": request.plan,
        "core_number": str(request.core_number),
        "memory_amount": str(request.memory_amount),
        "labels": _labels_body(request.labels),
    }
    if request.timezone:
        server["timezone"] = request.timezone
    return {"server": server}


def parse_server(server: Dict[str, Any]) -> VMDetails:
    labels = tuple(
        Label(item.get("key", ""), item.get("value", ""))
        for item in (server.get("labels") or {}).get("label", [])
    )
    addresses = tuple(
        IPAddress(
            address=item.get("address", ""),
            family=item.get("family", "IPv4"),
            access=item.get("access", "utility"),
        )
        for item in (server.get("ip_addresses") or {}).get("ip_address", [])
        if item.get("address")
    )
    return VMDetails(
        uuid=server.get("uuid", ""),
        title=server.get("title", ""),
        state=server.get("state", ""),
        hostname=server.get("hostname", ""),
        zone=server.get("zone", ""),
        plan=server.get("plan", ""),
        labels=labels,
        ip_addresses=addresses,
    )


# ---------------------------------------------------------------------------
# Client ---------------------------------------------------------------------
# ---------------------------------------------------------------------------

class UpCloudClient:
    """Blocking UpCloud API client. Safe to share between worker threads."""

    def __init__(
        self,
        config: OperatorConfig,
        stop_event: Optional[threading.Event] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.wait_timeout = config.wait_timeout
        self.poll_interval = config.poll_interval
        self.stop_event = stop_event or threading.Event()
        self._http = httpx.Client(
            base_url=config.api_url,
            auth=(config.upcloud_username, config.upcloud_password.get_secret_value()),
            timeout=config.request_timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    # -- transport -------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Any = None,
    ) -> Dict[str, Any]:
        try:
            response = self._http.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise ProvisioningError(f"{method} {path} timed out", kind=ErrorKind.TRANSIENT) from exc
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"{method} {path} failed: {exc}", kind=ErrorKind.TRANSIENT) from exc

        if response.is_error:
            error_code, message = _error_details(response)
            kind = classify_failure(response.status_code, error_code)
            raise ProvisioningError(
                f"{method} {path} returned {response.status_code}: {message}",
                kind=kind,
                status_code=response.status_code,
                error_code=error_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # -- operations ------------------------------------------------------

    def verify_credentials(self) -> str:
        """Fetch the account to prove the credentials work; return the username."""
        account = self._request("GET", "/account").get("account", {})
        return account.get("username", "")

    def create_vm(self, request: VMCreateRequest) -> VMDetails:
        logger.info("Creating UpCloud server %r in %s (plan=%s)", request.title, request.zone, request.plan)
        payload = self._request("POST", "/server", json=create_body(request))
        details = parse_server(payload.get("server", {}))
        if not details.uuid:
            raise ProvisioningError("Create response did not include a server UUID", kind=ErrorKind.TRANSIENT)
        logger.info("UpCloud server %s created", details.uuid)
        return details

    def get_vm(self, vm_id: str) -> VMDetails:
        payload = self._request("GET", f"/server/{vm_id}")
        return parse_server(payload.get("server", {}))

    def find_vms(self, labels: Sequence[Label]) -> List[VMDetails]:
        params = [("label", f"{label.key}={label.value}") for label in labels]
        payload = self._request("GET", "/server", params=params)
        servers = (payload.get("servers") or {}).get("server", [])
        wanted = set(labels)
        found = []
        for server in servers:
            details = parse_server(server)
            if wanted.issubset(set(details.labels)):
                found.append(details)
        return found

    def modify_vm(self, vm_id: str, request: VMModifyRequest) -> VMDetails:
        logger.info("Modifying UpCloud server %s", vm_id)
        payload = self._request("PUT", f"/server/{vm_id}", json=modify_body(request))
        return parse_server(payload.get("server", {}))

    def stop_vm(self, vm_id: str) -> None:
        body = {"stop_server": {"stop_type": "hard", "timeout": "60"}}
        self._request("POST", f"/server/{vm_id}/stop", json=body)

    def delete_vm_and_storage(self, vm_id: str) -> None:
        """Delete the server together with its attached storages."""
        details = self.get_vm(vm_id)
        if details.state not in (SERVER_STATE_STARTED, SERVER_STATE_STOPPED):
            # maintenance / error: let the server settle before choosing how to stop it.
            details = self._wait_until(vm_id, (SERVER_STATE_STARTED, SERVER_STATE_STOPPED))
        if details.state == SERVER_STATE_STARTED:
            logger.info("Stopping UpCloud server %s before deletion", vm_id)
            self.stop_vm(vm_id)
            self.wait_for_state(vm_id, SERVER_STATE_STOPPED)
        self._request("DELETE", f"/server/{vm_id}", params={"storages": "1"})
        logger.info("UpCloud server %s and its storages deleted", vm_id)

    def wait_for_state(
        self, vm_id: str, desired_state: str, timeout: Optional[float] = None
    ) -> VMDetails:
        """Poll until the server reports *desired_state*.

        Raises ``WaitTimeoutError`` once *timeout* elapses and ``WaitCancelled``
        as soon as ``stop_event`` is set.
        """
        return self._wait_until(vm_id, (desired_state,), timeout)

    def _wait_until(
        self, vm_id: str, states: Sequence[str], timeout: Optional[float] = None
    ) -> VMDetails:
        bound = self.wait_timeout if timeout is None else timeout
        deadline = time.monotonic() + bound
        wanted = " or ".join(repr(state) for state in states)
        while True:
            details = self.get_vm(vm_id)
            if details.state in states:
                return details
            if time.monotonic() >= deadline:
                raise WaitTimeoutError(
                    f"Server {vm_id} did not reach state {wanted} within {bound}s "
                    f"(last state {details.state!r})"
                )
            logger.debug("Server %s is %s, waiting for %s", vm_id, details.state, wanted)
            if self.stop_event.wait(self.poll_interval):
                raise WaitCancelled(f"Wait for server {vm_id} cancelled by shutdown")
