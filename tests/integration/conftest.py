# Copyright 2026 dparv
# See LICENSE file for licensing details.

import os
import pathlib

import jubilant
import pytest


@pytest.fixture(scope="module")
def juju(request: pytest.FixtureRequest):
    keep_models = bool(os.environ.get("KEEP_MODELS"))

    with jubilant.temp_model(keep=keep_models) as juju:
        juju.wait_timeout = 10 * 60
        yield juju
        if request.session.testsfailed:
            print(juju.debug_log(limit=1000), end="")


@pytest.fixture(scope="session")
def charm():
    charm_path = os.environ.get("CHARM_PATH")
    if charm_path:
        return pathlib.Path(charm_path)

    charms = sorted(pathlib.Path(".").glob("*.charm"))
    if not charms:
        raise FileNotFoundError("no .charm file found; run `charmcraft pack` or set CHARM_PATH")
    return charms[0]
