"""Fakes and builders shared by the unit tests."""

import dataclasses
import itertools

from lightkube.models.core_v1 import NodeSpec, ServicePort, ServiceSpec
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import Node, Service

from do_client import ForwardingRule, LoadBalancer, NotFoundError

SERVICE_UID = "6f6c7a3e-1b2c-4d5e-8f90-a1b2c3d4e5f6"


class FakeDigitalOcean:
    """In-memory stand-in for DigitalOceanClient."""

    def __init__(self, load_balancers=(), droplets=(), certificates=()):
        self.load_balancers = {lb.id: lb for lb in load_balancers}
        self.droplets = list(droplets)
        self.certificates = {c.id: c for c in certificates}
        self.calls = []
        self.requests = []
        self.errors = {}
        self.create_status = "active"
        self.update_status = None
        self._ids = itertools.count(1)

    def _call(self, name, *args):
        self.calls.append((name, *args))
        if name in self.errors:
            raise self.errors[name]

    def call_names(self):
        return [c[0] for c in self.calls]

    def get_load_balancer(self, lb_id):
        self._call("get_load_balancer", lb_id)
        if lb_id not in self.load_balancers:
            raise NotFoundError(404, "The resource you were accessing could not be found.")
        return self.load_balancers[lb_id]

    def list_load_balancers(self):
        self._call("list_load_balancers")
        return list(self.load_balancers.values())

    def create_load_balancer(self, request):
        self._call("create_load_balancer", request)
        self.requests.append(request)
        lb = LoadBalancer(
            id=f"lb-{next(self._ids)}",
            name=request["name"],
            status=self.create_status,
            ip="203.0.113.10",
            forwarding_rules=tuple(ForwardingRule.from_dict(r) for r in request["forwarding_rules"]),
            tags=tuple(request.get("tags", ())),
            droplet_ids=tuple(request["droplet_ids"]),
        )
        self.load_balancers[lb.id] = lb
        return lb

    def update_load_balancer(self, lb_id, request):
        self._call("update_load_balancer", lb_id, request)
        self.requests.append(request)
        if lb_id not in self.load_balancers:
            raise NotFoundError(404, "not found")
        lb = dataclasses.replace(
            self.load_balancers[lb_id],
            name=request["name"],
            status=self.update_status or self.load_balancers[lb_id].status,
            forwarding_rules=tuple(ForwardingRule.from_dict(r) for r in request["forwarding_rules"]),
            droplet_ids=tuple(request["droplet_ids"]),
        )
        self.load_balancers[lb_id] = lb
        return lb

    def delete_load_balancer(self, lb_id):
        self._call("delete_load_balancer", lb_id)
        if lb_id not in self.load_balancers:
            raise NotFoundError(404, "not found")
        del self.load_balancers[lb_id]

    def list_droplets(self):
        self._call("list_droplets")
        return list(self.droplets)

    def get_certificate(self, cert_id):
        self._call("get_certificate", cert_id)
        if cert_id not in self.certificates:
            raise NotFoundError(404, "not found")
        return self.certificates[cert_id]


class FakeKube:
    """Records patches and serves canned lists, like a lightkube Client."""

    def __init__(self, services=(), nodes=()):
        self.services = list(services)
        self.nodes = list(nodes)
        self.patches = []
        self.patch_error = None

    def patch(self, res, name, obj, *, namespace=None, patch_type=None):
        if self.patch_error is not None:
            raise self.patch_error
        self.patches.append(
            {"res": res, "name": name, "obj": obj, "namespace": namespace, "patch_type": patch_type}
        )

    def list(self, res, *, namespace=None):
        if res is Node:
            return iter(self.nodes)
        if res is Service:
            return iter(self.services)
        raise AssertionError(f"unexpected list of {res}")


def make_service(annotations=None, ports=((80, 30080),), name="web", namespace="default", **spec):
    return Service(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            uid=SERVICE_UID,
            annotations=dict(annotations) if annotations is not None else None,
        ),
        spec=ServiceSpec(
            type=spec.pop("type", "LoadBalancer"),
            ports=[
                ServicePort(port=port, nodePort=node_port, protocol=spec.get("protocol", "TCP"))
                for port, node_port in ports
            ],
        ),
    )


def make_node(name, provider_id=None, labels=None):
    return Node(
        metadata=ObjectMeta(name=name, labels=labels),
        spec=NodeSpec(providerID=provider_id),
    )


