#!/usr/bin/env python3
"""
main.py
-------
Process entry point for the UpCloudVM operator.

In a cluster the operator can equally be started with
``kopf run -m upcloud_vm_operator.handlers``; this module adds logging set-up
and reads the peering / namespace settings from the environment.
"""
from __future__ import annotations

import logging
import os
import socket
import sys
from typing import List, Optional

import kopf

from .config import env_flag, load_env_file

# Importing the package registers every handler with kopf.
from . import handlers  # noqa: F401


def configure_logging() -> None:
    """Configure logging with hostname and pod name for better traceability"""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    log_format = "%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s"

    hostname = socket.gethostname()
    pod_name = os.environ.get("POD_NAME", "unknown")

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record

    logging.setLogRecordFactory(record_factory)
    logging.info(f"Logging configured at {log_level} level")


def watched_namespaces(value: Optional[str]) -> List[str]:
    """``KOPF_NAMESPACE`` as a list; empty means cluster-wide."""
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def main() -> None:
    load_env_file()
    configure_logging()

    namespaces = watched_namespaces(os.environ.get("KOPF_NAMESPACE"))
    if namespaces:
        logging.info(f"UpCloudVM operator watching namespaces {', '.join(namespaces)}")
    else:
        logging.info("UpCloudVM operator watching all namespaces")

    # Leader election via kopf peering; without it each replica runs standalone.
    leader_election = env_flag(os.environ.get("ENABLE_LEADER_ELECTION"))
    leader_id = os.environ.get("POD_NAME", socket.gethostname())
    if leader_election:
        logging.info(f"Configuring leader election with leader ID: {leader_id}")

    kopf.run(
        standalone=not leader_election,
        clusterwide=not namespaces,
        namespaces=namespaces or None,
        peering_name=os.environ.get("KOPF_PEERING", "upcloud-vm-operator"),
        identity=leader_id,
        priority=0,
        liveness_endpoint=os.environ.get("LIVENESS_ENDPOINT") or None,
    )


if __name__ == "__main__":
    main()
