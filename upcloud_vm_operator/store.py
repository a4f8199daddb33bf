"""
store.py
--------
Resource store backed by the Kubernetes API.

Writes are full ``replace`` calls that carry ``metadata.resourceVersion``, so
the API server rejects a stale write with 409 instead of overwriting a newer
version. The reconciler reacts to :class:`ConflictError` by re-fetching.
"""
from __future__ import annotations

import logging
from typing import Protocol

import kubernetes
from kubernetes.client import ApiException, CustomObjectsApi

from .errors import ConfigError, ConflictError, RecordNotFound, StoreError
from .models import (
    UPCLOUDVM_GROUP,
    UPCLOUDVM_PLURAL,
    UPCLOUDVM_VERSION,
    Identity,
    VMRecord,
)

logger = logging.getLogger(__name__)


class ResourceStore(Protocol):
    def get(self, identity: Identity) -> VMRecord: ...

    def update(self, record: VMRecord) -> VMRecord: ...

    def update_status(self, record: VMRecord) -> VMRecord: ...


def load_kubernetes_config() -> None:
    """Load kube-config from the local file, falling back to the in-cluster account."""
    try:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kube-config from local file")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in-cluster kube-config")
        except kubernetes.config.config_exception.ConfigException as exc:
            raise ConfigError(f"Cannot load Kubernetes config: {exc}") from exc


def _translate(exc: ApiException, action: str, identity: Identity) -> StoreError:
    if exc.status == 404:
        return RecordNotFound(f"UpCloudVM {identity} not found")
    if exc.status == 409:
        return ConflictError(f"Conflict while trying to {action} UpCloudVM {identity}: {exc.reason}")
    return StoreError(f"Failed to {action} UpCloudVM {identity}: {exc.status} {exc.reason}")


class KubernetesResourceStore:
    """``ResourceStore`` over the custom-objects API."""

    def __init__(self, api: CustomObjectsApi) -> None:
        self.api = api

    def get(self, identity: Identity) -> VMRecord:
        try:
            body = self.api.get_namespaced_custom_object(
                group=UPCLOUDVM_GROUP,
                version=UPCLOUDVM_VERSION,
                namespace=identity.namespace,
                plural=UPCLOUDVM_PLURAL,
                name=identity.name,
            )
        except ApiException as exc:
            raise _translate(exc, "get", identity) from exc
        return VMRecord.from_body(body)

    def update(self, record: VMRecord) -> VMRecord:
        try:
            body = self.api.replace_namespaced_custom_object(
                group=UPCLOUDVM_GROUP,
                version=UPCLOUDVM_VERSION,
                namespace=record.identity.namespace,
                plural=UPCLOUDVM_PLURAL,
                name=record.identity.name,
                body=record.to_body(),
            )
        except ApiException as exc:
            raise _translate(exc, "update", record.identity) from exc
        return VMRecord.from_body(body)

    def update_status(self, record: VMRecord) -> VMRecord:
        try:
            body = self.api.replace_namespaced_custom_object_status(
                group=UPCLOUDVM_GROUP,
                version=UPCLOUDVM_VERSION,
                namespace=record.identity.namespace,
                plural=UPCLOUDVM_PLURAL,
                name=record.identity.name,
                body=record.to_body(),
            )
        except ApiException as exc:
            raise _translate(exc, "update status of", record.identity) from exc
        return VMRecord.from_body(body)
