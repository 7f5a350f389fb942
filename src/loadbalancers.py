# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Reconcile a Kubernetes `Service` with a DigitalOcean load balancer.

`LoadBalancers` exposes the four lifecycle operations a Service controller
needs (get, ensure, update, delete). Each operation runs inside a
`ServicePatcher`, so any annotation written on the Service during the call
(notably the cached load balancer ID) is patched back exactly once.
"""

from __future__ import annotations

import logging
from typing import Sequence

from lightkube.models.core_v1 import LoadBalancerIngress, LoadBalancerStatus
from lightkube.resources.core_v1 import Node, Service
from lightkube.types import PatchType

from do_client import (
    CERT_TYPE_LETS_ENCRYPT,
    LB_STATUS_ACTIVE,
    LoadBalancer,
    NotFoundError,
)
from loadbalancer_config import (
    ANN_CERTIFICATE_ID,
    ANN_LOAD_BALANCER_ID,
    ValidationError,
    build_request,
    get_annotations,
    get_hostname,
    get_load_balancer_id,
    get_load_balancer_legacy_name,
    get_load_balancer_name,
    parse_int,
    set_annotation,
    validate_service,
)

logger = logging.getLogger(__name__)

PROVIDER_ID_PREFIX = "digitalocean://"


class NotYetActiveError(Exception):
    """The load balancer exists but is still provisioning; retry later."""

    def __init__(self, status: str):
        super().__init__(f"load-balancer is not yet active (current status: {status})")
        self.status = status


class LoadBalancerNotFoundError(LookupError):
    """No load balancer exists for the Service."""


class AggregateError(Exception):
    """Several errors raised while handling a single Service."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


def service_key(service: Service) -> str:
    return f"{service.metadata.namespace}/{service.metadata.name}"


def _annotation_patch(base: dict[str, str], current: dict[str, str]) -> dict[str, str | None]:
    patch: dict[str, str | None] = {k: v for k, v in current.items() if base.get(k) != v}
    patch.update({k: None for k in base if k not in current})
    return patch


class ServicePatcher:
    """Patch the Service annotations on exit if they changed during the block.

    A patch failure never hides the error raised inside the block: both are
    raised together as an AggregateError.
    """

    def __init__(self, kube, service: Service):
        self._kube = kube
        self._service = service
        self._base = dict(get_annotations(service))

    def __enter__(self) -> ServicePatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        current = dict(get_annotations(self._service))
        if current == self._base:
            return False

        try:
            self._kube.patch(
                Service,
                self._service.metadata.name,
                {"metadata": {"annotations": _annotation_patch(self._base, current)}},
                namespace=self._service.metadata.namespace,
                patch_type=PatchType.MERGE,
            )
        except Exception as perr:
            logger.error("failed to patch annotations of Service %s: %s", service_key(self._service), perr)
            if exc is None:
                raise
            raise AggregateError([exc, perr]) from exc
        logger.debug("patched annotations of Service %s", service_key(self._service))
        return False


def droplet_id_from_provider_id(provider_id: str) -> int:
    """Return the droplet ID embedded in a `digitalocean://<id>` provider ID."""
    if not provider_id.startswith(PROVIDER_ID_PREFIX):
        raise ValidationError(
            f"provider ID {provider_id!r} is missing the {PROVIDER_ID_PREFIX!r} prefix"
        )
    raw = provider_id[len(PROVIDER_ID_PREFIX):]
    if not raw:
        raise ValidationError(f"provider ID {provider_id!r} has an empty droplet ID")
    try:
        return parse_int(raw)
    except ValueError as e:
        raise ValidationError(f"failed to parse provider ID {provider_id!r}: {e}") from e


class NodeResolver:
    """Map cluster nodes to droplet IDs."""

    def __init__(self, do):
        self._do = do

    def resolve(self, nodes: Sequence[Node]) -> list[int]:
        droplet_ids: list[int] = []
        missing: list[str] = []

        for node in nodes:
            provider_id = node.spec.providerID if node.spec else None
            if provider_id:
                droplet_ids.append(droplet_id_from_provider_id(provider_id))
            else:
                missing.append(node.metadata.name)

        if not missing:
            return droplet_ids

        # Nodes without a provider ID are matched by droplet name, then address.
        remaining = set(missing)
        for droplet in self._do.list_droplets():
            if not remaining:
                break
            if droplet.name in remaining:
                droplet_ids.append(droplet.id)
                remaining.discard(droplet.name)
                continue
            for address in droplet.addresses:
                if address in remaining:
                    droplet_ids.append(droplet.id)
                    remaining.discard(address)
                    break

        if remaining:
            logger.error("failed to find droplets for nodes %s", " ".join(sorted(remaining)))
        return droplet_ids


class LoadBalancerLocator:
    """Find the remote load balancer belonging to a Service."""

    def __init__(self, do):
        self._do = do

    def find(self, service: Service) -> LoadBalancer | None:
        lb_id = get_load_balancer_id(service)
        if lb_id:
            logger.debug("looking up load balancer for Service %s by ID %s", service_key(service), lb_id)
            try:
                return self._do.get_load_balancer(lb_id)
            except NotFoundError:
                return None

        name = get_load_balancer_name(service)
        legacy_name = get_load_balancer_legacy_name(service)
        logger.debug(
            "looking up load balancer for Service %s by name %s or %s",
            service_key(service),
            name,
            legacy_name,
        )
        for lb in self._do.list_load_balancers():
            if lb.name in (name, legacy_name):
                return lb
        return None


class LoadBalancers:
    """Manage DigitalOcean load balancers for Services of type LoadBalancer.

    `cluster_name` is accepted by every operation for interface compatibility
    with the Kubernetes cloud provider contract; it does not affect behaviour.
    """

    def __init__(self, kube, do, *, region: str, cluster_id: str = "", vpc_id: str = ""):
        self._kube = kube
        self._do = do
        self.region = region
        self.cluster_id = cluster_id
        self.vpc_id = vpc_id
        self._nodes = NodeResolver(do)
        self._locator = LoadBalancerLocator(do)

    def get_load_balancer_name(self, cluster_name: str, service: Service) -> str:
        return get_load_balancer_name(service)

    def get_load_balancer(
        self, cluster_name: str, service: Service
    ) -> tuple[LoadBalancerStatus | None, bool]:
        """Return the load balancer status and whether it exists."""
        with ServicePatcher(self._kube, service):
            lb = self._retrieve_and_annotate(service)
            if lb is None:
                return None, False
            return self._status(service, lb), True

    def ensure_load_balancer(
        self, cluster_name: str, service: Service, nodes: Sequence[Node]
    ) -> LoadBalancerStatus:
        """Create or update the load balancer for `service`.

        Raises NotYetActiveError while the load balancer is provisioning.
        """
        with ServicePatcher(self._kube, service):
            # Validation, provider IDs included, must fail before any lookup.
            validate_service(service)
            droplet_ids = self._nodes.resolve(nodes)

            lb = self._retrieve_and_annotate(service)
            if lb is None:
                request = self._build_request(service, droplet_ids)
                lb = self._do.create_load_balancer(request.to_dict())
                logger.info("created load balancer %s for Service %s", lb.id, service_key(service))
                set_annotation(service, ANN_LOAD_BALANCER_ID, lb.id)
            else:
                lb = self._update(lb, service, droplet_ids)

            if lb.status != LB_STATUS_ACTIVE:
                raise NotYetActiveError(lb.status)
            return self._status(service, lb)

    def update_load_balancer(self, cluster_name: str, service: Service, nodes: Sequence[Node]) -> None:
        with ServicePatcher(self._kube, service):
            validate_service(service)
            droplet_ids = self._nodes.resolve(nodes)

            lb = self._retrieve_and_annotate(service)
            if lb is None:
                raise LoadBalancerNotFoundError(f"load balancer for Service {service_key(service)} not found")
            self._update(lb, service, droplet_ids)

    def ensure_load_balancer_deleted(self, cluster_name: str, service: Service) -> None:
        """Delete the load balancer of `service` if there is one."""
        with ServicePatcher(self._kube, service):
            # No annotation write here: the load balancer is going away.
            lb = self._locator.find(service)
            if lb is None:
                logger.info("no load balancer to delete for Service %s", service_key(service))
                return
            try:
                self._do.delete_load_balancer(lb.id)
            except NotFoundError:
                logger.info("load balancer %s already deleted", lb.id)
                return
            logger.info("deleted load balancer %s for Service %s", lb.id, service_key(service))

    def _retrieve_and_annotate(self, service: Service) -> LoadBalancer | None:
        lb = self._locator.find(service)
        if lb is not None:
            set_annotation(service, ANN_LOAD_BALANCER_ID, lb.id)
        return lb

    def _build_request(self, service: Service, droplet_ids: list[int]):
        return build_request(
            service,
            droplet_ids,
            region=self.region,
            cluster_id=self.cluster_id,
            vpc_id=self.vpc_id,
        )

    def _update(self, lb: LoadBalancer, service: Service, droplet_ids: list[int]) -> LoadBalancer:
        self._record_updated_certificate(service, lb)
        # The certificate annotation may have changed; rebuild from scratch.
        request = self._build_request(service, droplet_ids)
        updated = self._do.update_load_balancer(lb.id, request.to_dict())
        logger.info("updated load balancer %s for Service %s", lb.id, service_key(service))
        return updated

    def _record_updated_certificate(self, service: Service, lb: LoadBalancer) -> None:
        """Follow certificate renewals done by DigitalOcean for managed certificates."""
        lb_cert_id = lb.certificate_id
        service_cert_id = get_annotations(service).get(ANN_CERTIFICATE_ID, "")
        if not lb_cert_id or lb_cert_id == service_cert_id:
            return

        try:
            cert = self._do.get_certificate(lb_cert_id)
        except NotFoundError:
            logger.debug("certificate %s of load balancer %s not found", lb_cert_id, lb.id)
            return

        if cert.type == CERT_TYPE_LETS_ENCRYPT:
            logger.info(
                "recording renewed certificate %s on Service %s", lb_cert_id, service_key(service)
            )
            set_annotation(service, ANN_CERTIFICATE_ID, lb_cert_id)

    def _status(self, service: Service, lb: LoadBalancer) -> LoadBalancerStatus:
        hostname = get_hostname(service)
        if hostname:
            return LoadBalancerStatus(ingress=[LoadBalancerIngress(hostname=hostname)])
        return LoadBalancerStatus(ingress=[LoadBalancerIngress(ip=lb.ip)])
