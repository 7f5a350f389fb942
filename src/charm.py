#!/usr/bin/env python3
# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""A charm that manages DigitalOcean load balancers for Kubernetes Services.

This charm intentionally does not run any workload services.
It reconciles every `Service` of type `LoadBalancer` in the cluster against a
DigitalOcean load balancer, based on config options:

- `api-token`: DigitalOcean API token
- `region`: region slug the load balancers are created in
- `cluster-id`: optional cluster ID, used to tag load balancers
- `vpc-id`: optional VPC the load balancers are attached to
- `api-url`: DigitalOcean API endpoint
"""

import logging

import ops
from ops.model import ActiveStatus, BlockedStatus, MaintenanceStatus, WaitingStatus

import service_controller

logger = logging.getLogger(__name__)


class DoLoadbalancerCharm(ops.CharmBase):
    """Keep DigitalOcean load balancers in sync with LoadBalancer Services."""

    def __init__(self, framework: ops.Framework):
        super().__init__(framework)

        self.framework.observe(self.on.install, self._on_reconcile)
        self.framework.observe(self.on.config_changed, self._on_reconcile)
        self.framework.observe(self.on.upgrade_charm, self._on_reconcile)
        self.framework.observe(self.on.update_status, self._on_reconcile)

    def _on_reconcile(self, event: ops.EventBase) -> None:
        if not self.unit.is_leader():
            self.unit.status = WaitingStatus("waiting for leader to reconcile load balancers")
            return

        self.unit.status = MaintenanceStatus("reconciling load balancers")
        try:
            config = service_controller.ControllerConfig.from_charm_config(self.config)
            summary = service_controller.reconcile_services(app_name=self.app.name, config=config)
        except service_controller.ConfigError as e:
            logger.error("invalid configuration: %s", e)
            self.unit.status = BlockedStatus(str(e))
            return
        except Exception as e:  # pragma: nocover
            logger.exception("failed to reconcile load balancers")
            self.unit.status = BlockedStatus(f"failed to reconcile load balancers: {e}")
            return

        if summary.failed:
            failed = ", ".join(sorted(summary.failed))
            self.unit.status = BlockedStatus(f"failed to reconcile load balancer(s): {failed}")
        elif summary.pending:
            self.unit.status = WaitingStatus(
                f"waiting for {len(summary.pending)} load balancer(s) to become active"
            )
        else:
            self.unit.status = ActiveStatus(f"{len(summary.ready)} load balancer(s) ready")


if __name__ == "__main__":  # pragma: nocover
    ops.main(DoLoadbalancerCharm)
