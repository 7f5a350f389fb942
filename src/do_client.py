# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Minimal DigitalOcean v2 API client.

Only the endpoints needed to reconcile load balancers are covered: load
balancers, droplets and certificates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.digitalocean.com"

LB_STATUS_NEW = "new"
LB_STATUS_ACTIVE = "active"
LB_STATUS_ERRORED = "errored"

CERT_TYPE_LETS_ENCRYPT = "lets_encrypt"
CERT_TYPE_CUSTOM = "custom"

_PER_PAGE = 200


class APIError(Exception):
    """Raised when the DigitalOcean API returns an error or cannot be reached."""

    def __init__(self, status_code: int | None, message: str):
        super().__init__(
            f"DigitalOcean API error ({status_code}): {message}"
            if status_code is not None
            else f"DigitalOcean API error: {message}"
        )
        self.status_code = status_code
        self.message = message


class NotFoundError(APIError):
    """Raised when the requested remote resource does not exist."""


@dataclass(frozen=True)
class ForwardingRule:
    entry_protocol: str
    entry_port: int
    target_protocol: str
    target_port: int
    certificate_id: str = ""
    tls_passthrough: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "entry_protocol": self.entry_protocol,
            "entry_port": self.entry_port,
            "target_protocol": self.target_protocol,
            "target_port": self.target_port,
        }
        if self.certificate_id:
            data["certificate_id"] = self.certificate_id
        if self.tls_passthrough:
            data["tls_passthrough"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ForwardingRule:
        return cls(
            entry_protocol=data.get("entry_protocol", ""),
            entry_port=int(data.get("entry_port", 0)),
            target_protocol=data.get("target_protocol", ""),
            target_port=int(data.get("target_port", 0)),
            certificate_id=data.get("certificate_id") or "",
            tls_passthrough=bool(data.get("tls_passthrough", False)),
        )


@dataclass(frozen=True)
class LoadBalancer:
    """A load balancer as reported by the API."""

    id: str
    name: str
    status: str
    ip: str = ""
    forwarding_rules: tuple[ForwardingRule, ...] = ()
    tags: tuple[str, ...] = ()
    droplet_ids: tuple[int, ...] = ()

    @property
    def certificate_id(self) -> str:
        """Certificate of the first forwarding rule that carries one."""
        for rule in self.forwarding_rules:
            if rule.certificate_id:
                return rule.certificate_id
        return ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoadBalancer:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=data.get("status", ""),
            ip=data.get("ip") or "",
            forwarding_rules=tuple(
                ForwardingRule.from_dict(r) for r in data.get("forwarding_rules") or []
            ),
            tags=tuple(data.get("tags") or []),
            droplet_ids=tuple(data.get("droplet_ids") or []),
        )


@dataclass(frozen=True)
class Droplet:
    id: int
    name: str
    addresses: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Droplet:
        networks = data.get("networks") or {}
        addresses = [
            net["ip_address"]
            for version in ("v4", "v6")
            for net in networks.get(version) or []
            if net.get("ip_address")
        ]
        return cls(id=int(data["id"]), name=data.get("name", ""), addresses=tuple(addresses))


@dataclass(frozen=True)
class Certificate:
    id: str
    name: str
    type: str
    state: str = ""
    not_after: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Certificate:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=data.get("type", ""),
            state=data.get("state", ""),
            not_after=data.get("not_after", ""),
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase


class DigitalOceanClient:
    """Synchronous client for the subset of the DigitalOcean API we use."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._http = httpx.Client(
            base_url=base_url.rstrip("/") + "/v2",
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> DigitalOceanClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise APIError(None, f"{method} {path} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(404, _error_message(response))
        if response.is_error:
            raise APIError(response.status_code, _error_message(response))
        return response

    def _paginate(self, path: str, key: str) -> Iterator[dict[str, Any]]:
        page = 1
        while True:
            body = self._request("GET", path, params={"page": page, "per_page": _PER_PAGE}).json()
            yield from body.get(key) or []
            pages = (body.get("links") or {}).get("pages") or {}
            if not pages.get("next"):
                return
            page += 1

    def get_load_balancer(self, lb_id: str) -> LoadBalancer:
        body = self._request("GET", f"/load_balancers/{lb_id}").json()
        return LoadBalancer.from_dict(body["load_balancer"])

    def list_load_balancers(self) -> list[LoadBalancer]:
        return [LoadBalancer.from_dict(lb) for lb in self._paginate("/load_balancers", "load_balancers")]

    def create_load_balancer(self, request: dict[str, Any]) -> LoadBalancer:
        body = self._request("POST", "/load_balancers", json=request).json()
        lb = LoadBalancer.from_dict(body["load_balancer"])
        logger.info("created load balancer %s (%s)", lb.name, lb.id)
        return lb

    def update_load_balancer(self, lb_id: str, request: dict[str, Any]) -> LoadBalancer:
        body = self._request("PUT", f"/load_balancers/{lb_id}", json=request).json()
        return LoadBalancer.from_dict(body["load_balancer"])

    def delete_load_balancer(self, lb_id: str) -> None:
        self._request("DELETE", f"/load_balancers/{lb_id}")
        logger.info("deleted load balancer %s", lb_id)

    def list_droplets(self) -> list[Droplet]:
        return [Droplet.from_dict(d) for d in self._paginate("/droplets", "droplets")]

    def get_certificate(self, cert_id: str) -> Certificate:
        body = self._request("GET", f"/certificates/{cert_id}").json()
        return Certificate.from_dict(body["certificate"])
