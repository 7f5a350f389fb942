# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Translate Service annotations into a DigitalOcean load balancer request.

Everything in this module is pure: it reads a Kubernetes `Service` and never
talks to a remote API.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from lightkube.models.core_v1 import ServicePort
from lightkube.resources.core_v1 import Service

from do_client import ForwardingRule

logger = logging.getLogger(__name__)

ANN_PREFIX = "service.beta.kubernetes.io/do-loadbalancer-"

# Reconciler-owned; caches the remote load balancer ID for fast lookups.
ANN_LOAD_BALANCER_ID = "kubernetes.digitalocean.com/load-balancer-id"
ANN_NAME = "service.beta.kubernetes.io/do-load-balancer-name"
ANN_PROTOCOL = ANN_PREFIX + "protocol"
ANN_HEALTH_CHECK_PATH = ANN_PREFIX + "healthcheck-path"
ANN_HEALTH_CHECK_PORT = ANN_PREFIX + "healthcheck-port"
ANN_HEALTH_CHECK_PROTOCOL = ANN_PREFIX + "healthcheck-protocol"
ANN_HEALTH_CHECK_INTERVAL = ANN_PREFIX + "healthcheck-check-interval-seconds"
ANN_HEALTH_CHECK_TIMEOUT = ANN_PREFIX + "healthcheck-response-timeout-seconds"
ANN_HEALTH_CHECK_UNHEALTHY = ANN_PREFIX + "healthcheck-unhealthy-threshold"
ANN_HEALTH_CHECK_HEALTHY = ANN_PREFIX + "healthcheck-healthy-threshold"
ANN_TLS_PORTS = ANN_PREFIX + "tls-ports"
ANN_HTTP2_PORTS = ANN_PREFIX + "http2-ports"
ANN_TLS_PASSTHROUGH = ANN_PREFIX + "tls-passthrough"
ANN_CERTIFICATE_ID = ANN_PREFIX + "certificate-id"
ANN_HOSTNAME = ANN_PREFIX + "hostname"
ANN_ALGORITHM = ANN_PREFIX + "algorithm"
ANN_STICKY_SESSIONS_TYPE = ANN_PREFIX + "sticky-sessions-type"
ANN_STICKY_SESSIONS_COOKIE_NAME = ANN_PREFIX + "sticky-sessions-cookie-name"
ANN_STICKY_SESSIONS_COOKIE_TTL = ANN_PREFIX + "sticky-sessions-cookie-ttl"
ANN_REDIRECT_HTTP_TO_HTTPS = ANN_PREFIX + "redirect-http-to-https"
ANN_ENABLE_PROXY_PROTOCOL = ANN_PREFIX + "enable-proxy-protocol"

PROTOCOL_TCP = "tcp"
PROTOCOL_HTTP = "http"
PROTOCOL_HTTPS = "https"
PROTOCOL_HTTP2 = "http2"
_PROTOCOLS = (PROTOCOL_TCP, PROTOCOL_HTTP, PROTOCOL_HTTPS, PROTOCOL_HTTP2)
_HEALTH_CHECK_PROTOCOLS = (PROTOCOL_TCP, PROTOCOL_HTTP)

ALGORITHM_ROUND_ROBIN = "round_robin"
ALGORITHM_LEAST_CONNECTIONS = "least_connections"

STICKY_SESSIONS_NONE = "none"
STICKY_SESSIONS_COOKIES = "cookies"

PORT_PROTOCOL_TCP = "TCP"
DEFAULT_SECURE_PORT = 443

CLUSTER_TAG_PREFIX = "k8s"

_TRUE_LITERALS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_LITERALS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

# Optional sign followed by ASCII digits; no whitespace or underscores.
_INT_RE = re.compile(r"[+-]?[0-9]+")


class ValidationError(ValueError):
    """Raised when Service annotations are malformed or contradictory."""


def parse_bool(value: str) -> bool:
    if value in _TRUE_LITERALS:
        return True
    if value in _FALSE_LITERALS:
        return False
    raise ValueError(f"invalid boolean literal: {value!r}")


def parse_int(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError(f"invalid integer literal: {value!r}")
    return int(value)


def _lenient_bool(annotations: dict[str, str], key: str) -> bool:
    # Unparsable values are treated as false rather than rejected.
    value = annotations.get(key)
    if value is None:
        return False
    try:
        return parse_bool(value)
    except ValueError:
        logger.debug("ignoring unparsable boolean %r in annotation %s", value, key)
        return False


def _get_int(annotations: dict[str, str], key: str, default: int) -> int:
    value = annotations.get(key)
    if value is None:
        return default
    try:
        return parse_int(value)
    except ValueError as e:
        raise ValidationError(f"failed to parse annotation {key!r} as integer: {value!r}") from e


def _get_ports(annotations: dict[str, str], key: str) -> tuple[int, ...]:
    value = annotations.get(key)
    if value is None:
        return ()
    ports = []
    for part in value.split(","):
        try:
            ports.append(parse_int(part.strip()))
        except ValueError as e:
            raise ValidationError(
                f"annotation {key!r} must be a comma-separated list of ports, got {value!r}"
            ) from e
    return tuple(ports)


def get_annotations(service: Service) -> dict[str, str]:
    metadata = service.metadata
    if metadata is None or metadata.annotations is None:
        return {}
    return metadata.annotations


def set_annotation(service: Service, key: str, value: str) -> None:
    """Set an annotation in place, creating the annotation map if needed."""
    if service.metadata.annotations is None:
        service.metadata.annotations = {}
    service.metadata.annotations[key] = value


def get_load_balancer_legacy_name(service: Service) -> str:
    """Name derived from the Service UID, independent of any annotation."""
    uid = service.metadata.uid or ""
    return ("a" + uid.replace("-", ""))[:32]


def get_load_balancer_name(service: Service) -> str:
    name = get_annotations(service).get(ANN_NAME, "")
    if name:
        return name
    return get_load_balancer_legacy_name(service)


def get_load_balancer_id(service: Service) -> str:
    return get_annotations(service).get(ANN_LOAD_BALANCER_ID, "")


def get_hostname(service: Service) -> str:
    return get_annotations(service).get(ANN_HOSTNAME, "").lower()


def build_cluster_tag(cluster_id: str) -> str:
    return f"{CLUSTER_TAG_PREFIX}:{cluster_id}"


@dataclass(frozen=True)
class StickySessionConfig:
    type: str = STICKY_SESSIONS_NONE
    cookie_name: str = ""
    cookie_ttl_seconds: int = 0

    def to_dict(self) -> dict[str, Any]:
        if self.type == STICKY_SESSIONS_NONE:
            return {"type": self.type}
        return {
            "type": self.type,
            "cookie_name": self.cookie_name,
            "cookie_ttl_seconds": self.cookie_ttl_seconds,
        }


@dataclass(frozen=True)
class HealthCheckSpec:
    protocol: str
    port: int
    path: str = ""
    check_interval_seconds: int = 3
    response_timeout_seconds: int = 5
    unhealthy_threshold: int = 3
    healthy_threshold: int = 5

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "port": self.port,
            "path": self.path,
            "check_interval_seconds": self.check_interval_seconds,
            "response_timeout_seconds": self.response_timeout_seconds,
            "unhealthy_threshold": self.unhealthy_threshold,
            "healthy_threshold": self.healthy_threshold,
        }


@dataclass(frozen=True)
class LoadBalancerConfig:
    """Validated load balancer settings extracted from Service annotations."""

    name: str
    protocol: str = PROTOCOL_TCP
    tls_ports: tuple[int, ...] = ()
    http2_ports: tuple[int, ...] = ()
    certificate_id: str = ""
    tls_passthrough: bool = False
    hostname: str = ""
    algorithm: str = ALGORITHM_ROUND_ROBIN
    sticky_sessions: StickySessionConfig = field(default_factory=StickySessionConfig)
    redirect_http_to_https: bool = False
    enable_proxy_protocol: bool = False
    health_check_path: str = ""
    health_check_protocol: str = ""
    health_check_ports: tuple[int, ...] = ()
    health_check_interval_seconds: int = 3
    health_check_response_timeout_seconds: int = 5
    health_check_unhealthy_threshold: int = 3
    health_check_healthy_threshold: int = 5

    def __post_init__(self):
        overlap = sorted(set(self.tls_ports) & set(self.http2_ports))
        if overlap:
            raise ValidationError(
                f"{ANN_TLS_PORTS!r} and {ANN_HTTP2_PORTS!r} cannot share values but found: "
                + ", ".join(str(p) for p in overlap)
            )


def _extract_protocol(annotations: dict[str, str]) -> str:
    protocol = annotations.get(ANN_PROTOCOL)
    if protocol is None:
        return PROTOCOL_TCP
    if protocol not in _PROTOCOLS:
        raise ValidationError(f"invalid protocol {protocol!r} specified in annotation {ANN_PROTOCOL!r}")
    return protocol


def _extract_health_check_protocol(annotations: dict[str, str]) -> str:
    protocol = annotations.get(ANN_HEALTH_CHECK_PROTOCOL, "")
    if protocol and protocol not in _HEALTH_CHECK_PROTOCOLS:
        raise ValidationError(
            f"invalid protocol {protocol!r} specified in annotation {ANN_HEALTH_CHECK_PROTOCOL!r}"
        )
    return protocol


def _extract_sticky_sessions(annotations: dict[str, str]) -> StickySessionConfig:
    if annotations.get(ANN_STICKY_SESSIONS_TYPE) != STICKY_SESSIONS_COOKIES:
        return StickySessionConfig()

    name = annotations.get(ANN_STICKY_SESSIONS_COOKIE_NAME, "")
    if not name:
        raise ValidationError(
            f"sticky session cookie name not specified in {ANN_STICKY_SESSIONS_COOKIE_NAME!r}, but required"
        )
    if not annotations.get(ANN_STICKY_SESSIONS_COOKIE_TTL):
        raise ValidationError(
            f"sticky session cookie ttl not specified in {ANN_STICKY_SESSIONS_COOKIE_TTL!r}, but required"
        )
    ttl = _get_int(annotations, ANN_STICKY_SESSIONS_COOKIE_TTL, 0)
    return StickySessionConfig(
        type=STICKY_SESSIONS_COOKIES, cookie_name=name, cookie_ttl_seconds=ttl
    )


def _extract_enable_proxy_protocol(annotations: dict[str, str]) -> bool:
    value = annotations.get(ANN_ENABLE_PROXY_PROTOCOL)
    if value is None:
        return False
    try:
        return parse_bool(value)
    except ValueError as e:
        raise ValidationError(
            f"failed to parse proxy protocol flag {value!r} from annotation {ANN_ENABLE_PROXY_PROTOCOL!r}"
        ) from e


def extract_config(service: Service) -> LoadBalancerConfig:
    """Parse the annotations of `service` into a LoadBalancerConfig.

    Raises ValidationError naming the offending annotation.
    """
    annotations = get_annotations(service)

    algorithm = annotations.get(ANN_ALGORITHM)
    if algorithm != ALGORITHM_LEAST_CONNECTIONS:
        algorithm = ALGORITHM_ROUND_ROBIN

    return LoadBalancerConfig(
        name=get_load_balancer_name(service),
        protocol=_extract_protocol(annotations),
        tls_ports=_get_ports(annotations, ANN_TLS_PORTS),
        http2_ports=_get_ports(annotations, ANN_HTTP2_PORTS),
        certificate_id=annotations.get(ANN_CERTIFICATE_ID, ""),
        tls_passthrough=_lenient_bool(annotations, ANN_TLS_PASSTHROUGH),
        hostname=get_hostname(service),
        algorithm=algorithm,
        sticky_sessions=_extract_sticky_sessions(annotations),
        redirect_http_to_https=_lenient_bool(annotations, ANN_REDIRECT_HTTP_TO_HTTPS),
        enable_proxy_protocol=_extract_enable_proxy_protocol(annotations),
        health_check_path=annotations.get(ANN_HEALTH_CHECK_PATH, ""),
        health_check_protocol=_extract_health_check_protocol(annotations),
        health_check_ports=_get_ports(annotations, ANN_HEALTH_CHECK_PORT),
        health_check_interval_seconds=_get_int(annotations, ANN_HEALTH_CHECK_INTERVAL, 3),
        health_check_response_timeout_seconds=_get_int(annotations, ANN_HEALTH_CHECK_TIMEOUT, 5),
        health_check_unhealthy_threshold=_get_int(annotations, ANN_HEALTH_CHECK_UNHEALTHY, 3),
        health_check_healthy_threshold=_get_int(annotations, ANN_HEALTH_CHECK_HEALTHY, 5),
    )


def _build_tls_rule(
    port: int, protocol: str, node_port: int, certificate_id: str, tls_passthrough: bool
) -> ForwardingRule:
    if not certificate_id and not tls_passthrough:
        raise ValidationError(
            f"port {port}: must set certificate id or enable tls pass through for {protocol}"
        )
    if certificate_id and tls_passthrough:
        raise ValidationError(
            f"port {port}: either certificate id should be set or tls pass through enabled, not both"
        )

    if tls_passthrough:
        return ForwardingRule(
            entry_protocol=protocol,
            entry_port=port,
            target_protocol=protocol,
            target_port=node_port,
            tls_passthrough=True,
        )
    # TLS terminates at the load balancer.
    return ForwardingRule(
        entry_protocol=protocol,
        entry_port=port,
        target_protocol=PROTOCOL_HTTP,
        target_port=node_port,
        certificate_id=certificate_id,
    )


def build_forwarding_rules(config: LoadBalancerConfig, ports: Sequence[ServicePort]) -> list[ForwardingRule]:
    """Return one forwarding rule per Service port, in port order."""
    tls_ports = set(config.tls_ports)
    http2_ports = set(config.http2_ports)

    needs_secure_protocol = bool(config.certificate_id) or config.tls_passthrough
    if needs_secure_protocol and not tls_ports and DEFAULT_SECURE_PORT not in http2_ports:
        tls_ports.add(DEFAULT_SECURE_PORT)

    rules = []
    for port in ports:
        if (port.protocol or PORT_PROTOCOL_TCP) != PORT_PROTOCOL_TCP:
            raise ValidationError(f"only TCP protocol is supported, got: {port.protocol!r}")

        if port.port in http2_ports:
            protocol = PROTOCOL_HTTP2
        elif port.port in tls_ports:
            protocol = PROTOCOL_HTTPS
        else:
            protocol = config.protocol

        node_port = port.nodePort or 0
        if protocol in (PROTOCOL_HTTPS, PROTOCOL_HTTP2):
            rules.append(
                _build_tls_rule(
                    port.port, protocol, node_port, config.certificate_id, config.tls_passthrough
                )
            )
        else:
            rules.append(
                ForwardingRule(
                    entry_protocol=protocol,
                    entry_port=port.port,
                    target_protocol=protocol,
                    target_port=node_port,
                )
            )
    return rules


def build_health_check(config: LoadBalancerConfig, ports: Sequence[ServicePort]) -> HealthCheckSpec:
    if len(config.health_check_ports) > 1:
        raise ValidationError(
            f"annotation {ANN_HEALTH_CHECK_PORT!r} only supports a single port, but found multiple: "
            + ", ".join(str(p) for p in config.health_check_ports)
        )

    if config.health_check_ports:
        wanted = config.health_check_ports[0]
        for port in ports:
            if port.port == wanted:
                node_port = port.nodePort or 0
                break
        else:
            raise ValidationError(f"specified health check port {wanted} does not exist on service")
    elif ports:
        node_port = ports[0].nodePort or 0
    else:
        raise ValidationError("service has no ports to health check")

    protocol = config.health_check_protocol
    if not protocol:
        protocol = PROTOCOL_HTTP if config.health_check_path else PROTOCOL_TCP

    return HealthCheckSpec(
        protocol=protocol,
        port=node_port,
        path=config.health_check_path,
        check_interval_seconds=config.health_check_interval_seconds,
        response_timeout_seconds=config.health_check_response_timeout_seconds,
        unhealthy_threshold=config.health_check_unhealthy_threshold,
        healthy_threshold=config.health_check_healthy_threshold,
    )


@dataclass(frozen=True)
class LoadBalancerRequest:
    name: str
    region: str
    forwarding_rules: tuple[ForwardingRule, ...]
    health_check: HealthCheckSpec
    sticky_sessions: StickySessionConfig
    algorithm: str
    droplet_ids: tuple[int, ...] = ()
    tags: tuple[str, ...] = ()
    redirect_http_to_https: bool = False
    enable_proxy_protocol: bool = False
    vpc_uuid: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "region": self.region,
            "algorithm": self.algorithm,
            "forwarding_rules": [r.to_dict() for r in self.forwarding_rules],
            "health_check": self.health_check.to_dict(),
            "sticky_sessions": self.sticky_sessions.to_dict(),
            "droplet_ids": list(self.droplet_ids),
            "redirect_http_to_https": self.redirect_http_to_https,
            "enable_proxy_protocol": self.enable_proxy_protocol,
        }
        if self.tags:
            data["tags"] = list(self.tags)
        if self.vpc_uuid:
            data["vpc_uuid"] = self.vpc_uuid
        return data


def validate_service(service: Service) -> tuple[LoadBalancerConfig, list[ForwardingRule], HealthCheckSpec]:
    """Extract and build everything derivable from `service` alone."""
    config = extract_config(service)
    ports = (service.spec.ports if service.spec else None) or []
    return config, build_forwarding_rules(config, ports), build_health_check(config, ports)


def build_request(
    service: Service,
    droplet_ids: Iterable[int],
    *,
    region: str,
    cluster_id: str = "",
    vpc_id: str = "",
) -> LoadBalancerRequest:
    config, rules, health_check = validate_service(service)
    return LoadBalancerRequest(
        name=config.name,
        region=region,
        forwarding_rules=tuple(rules),
        health_check=health_check,
        sticky_sessions=config.sticky_sessions,
        algorithm=config.algorithm,
        droplet_ids=tuple(droplet_ids),
        tags=(build_cluster_tag(cluster_id),) if cluster_id else (),
        redirect_http_to_https=config.redirect_http_to_https,
        enable_proxy_protocol=config.enable_proxy_protocol,
        vpc_uuid=vpc_id,
    )
