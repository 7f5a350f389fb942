# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Drive load balancer reconciliation for every LoadBalancer Service.

This module contains the non-charm-specific logic used by the charm: it lists
Services and Nodes through lightkube, hands each Service to `LoadBalancers`
and records the outcome per Service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.models.core_v1 import LoadBalancerStatus
from lightkube.resources.core_v1 import Node, Service
from lightkube.types import PatchType

from do_client import DEFAULT_API_URL, DigitalOceanClient
from loadbalancers import LoadBalancers, NotYetActiveError, service_key

logger = logging.getLogger(__name__)

# Same finalizer the upstream service controller uses for load balancer cleanup.
LOAD_BALANCER_CLEANUP_FINALIZER = "service.kubernetes.io/load-balancer-cleanup"

# Nodes carrying this label are never added to a load balancer.
EXCLUDE_FROM_LB_LABEL = "node.kubernetes.io/exclude-from-external-load-balancers"

CLUSTER_NAME = "kubernetes"


class ConfigError(ValueError):
    """Raised when user configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    api_token: str
    region: str
    cluster_id: str = ""
    vpc_id: str = ""
    api_url: str = DEFAULT_API_URL

    @classmethod
    def from_charm_config(cls, config) -> ControllerConfig:
        api_token = str(config.get("api-token", "") or "").strip()
        if not api_token:
            raise ConfigError("api-token must be set")
        region = str(config.get("region", "") or "").strip()
        if not region:
            raise ConfigError("region must be set")
        api_url = str(config.get("api-url", "") or "").strip() or DEFAULT_API_URL
        if not api_url.startswith(("http://", "https://")):
            raise ConfigError("api-url must start with http:// or https://")

        return cls(
            api_token=api_token,
            region=region,
            cluster_id=str(config.get("cluster-id", "") or "").strip(),
            vpc_id=str(config.get("vpc-id", "") or "").strip(),
            api_url=api_url,
        )


@dataclass
class ReconcileSummary:
    ready: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def _is_load_balancer(service: Service) -> bool:
    return service.spec is not None and service.spec.type == "LoadBalancer"


def _load_balancer_nodes(nodes: Iterable[Node]) -> list[Node]:
    return [
        node
        for node in nodes
        if EXCLUDE_FROM_LB_LABEL not in ((node.metadata.labels or {}) if node.metadata else {})
    ]


def _patch_finalizers(kube, service: Service, finalizers: list[str]) -> None:
    kube.patch(
        Service,
        service.metadata.name,
        {"metadata": {"finalizers": finalizers}},
        namespace=service.metadata.namespace,
        patch_type=PatchType.MERGE,
    )
    service.metadata.finalizers = finalizers


def _has_finalizer(service: Service) -> bool:
    return LOAD_BALANCER_CLEANUP_FINALIZER in (service.metadata.finalizers or [])


def _ensure_finalizer(kube, service: Service) -> None:
    if _has_finalizer(service):
        return
    finalizers = list(service.metadata.finalizers or [])
    _patch_finalizers(kube, service, finalizers + [LOAD_BALANCER_CLEANUP_FINALIZER])


def _remove_finalizer(kube, service: Service) -> None:
    finalizers = [
        f for f in (service.metadata.finalizers or []) if f != LOAD_BALANCER_CLEANUP_FINALIZER
    ]
    try:
        _patch_finalizers(kube, service, finalizers)
    except ApiError as e:
        if e.status.code == 404:
            return
        raise


def _ingress_addresses(lb_status: LoadBalancerStatus | None) -> list[tuple[str | None, str | None]]:
    # Only the fields this controller writes; the API server may add others.
    if lb_status is None:
        return []
    return [(ingress.ip, ingress.hostname) for ingress in lb_status.ingress or []]


def _update_ingress_status(kube, service: Service, lb_status: LoadBalancerStatus) -> None:
    current = service.status.loadBalancer if service.status else None
    if _ingress_addresses(current) == _ingress_addresses(lb_status):
        return
    kube.patch(
        Service.Status,
        service.metadata.name,
        {"status": {"loadBalancer": lb_status.to_dict()}},
        namespace=service.metadata.namespace,
        patch_type=PatchType.MERGE,
    )
    logger.info("updated ingress status of Service %s", service_key(service))


def sync_service(
    kube, load_balancers: LoadBalancers, service: Service, nodes: list[Node], summary: ReconcileSummary
) -> None:
    """Reconcile a single Service and record the outcome in `summary`."""
    key = service_key(service)
    try:
        # Deleted Services and Services no longer of type LoadBalancer release theirs.
        if service.metadata.deletionTimestamp is not None or not _is_load_balancer(service):
            if _has_finalizer(service):
                load_balancers.ensure_load_balancer_deleted(CLUSTER_NAME, service)
                _remove_finalizer(kube, service)
                summary.deleted.append(key)
            return

        _ensure_finalizer(kube, service)
        lb_status = load_balancers.ensure_load_balancer(CLUSTER_NAME, service, nodes)
        _update_ingress_status(kube, service, lb_status)
        summary.ready.append(key)
    except NotYetActiveError as e:
        logger.info("load balancer for Service %s is not active yet (%s)", key, e.status)
        summary.pending.append(key)
    except Exception as e:
        # Failures are scoped to one Service; the others still get reconciled.
        logger.error("failed to reconcile load balancer for Service %s: %s", key, e)
        summary.failed[key] = str(e)


def sync_services(kube, load_balancers: LoadBalancers) -> ReconcileSummary:
    """Reconcile every Service of type LoadBalancer in the cluster."""
    nodes = _load_balancer_nodes(kube.list(Node))
    summary = ReconcileSummary()
    for service in kube.list(Service, namespace="*"):
        if _is_load_balancer(service) or _has_finalizer(service):
            sync_service(kube, load_balancers, service, nodes, summary)
    return summary


def reconcile_services(*, app_name: str, config: ControllerConfig) -> ReconcileSummary:
    """Connect to Kubernetes and DigitalOcean and reconcile all Services."""
    kube = Client(field_manager=app_name)
    with DigitalOceanClient(config.api_token, base_url=config.api_url) as do:
        load_balancers = LoadBalancers(
            kube,
            do,
            region=config.region,
            cluster_id=config.cluster_id,
            vpc_id=config.vpc_id,
        )
        summary = sync_services(kube, load_balancers)

    logger.info(
        "reconciled load balancers: %d ready, %d pending, %d deleted, %d failed",
        len(summary.ready),
        len(summary.pending),
        len(summary.deleted),
        len(summary.failed),
    )
    return summary
