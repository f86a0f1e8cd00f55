"""Shared pytest fixtures and Pulumi mocks for the environment tests."""

import os
import re
import textwrap

import pulumi
import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DB_PASSWORD = "not-a-real-password"


def _first(inputs, *keys, default=None):
    for key in keys:
        if key in inputs:
            return inputs[key]
    return default


class GCPMocks(pulumi.runtime.Mocks):
    """Fill in the computed attributes the layer files reference."""

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        project = _first(args.inputs, "project", default="project")

        if args.typ == "gcp:serviceaccount/account:Account":
            account_id = _first(args.inputs, "accountId", "account_id")
            email = f"{account_id}@{project}.iam.gserviceaccount.com"
            outputs["email"] = email
            outputs["name"] = f"projects/{project}/serviceAccounts/{email}"
        elif args.typ == "gcp:sql/databaseInstance:DatabaseInstance":
            region = _first(args.inputs, "region", default="us-central1")
            outputs["connectionName"] = f"{project}:{region}:{args.inputs['name']}"
            outputs["privateIpAddress"] = "10.20.0.3"
        elif args.typ == "gcp:container/cluster:Cluster":
            outputs["endpoint"] = "172.16.0.2"
            outputs["masterAuth"] = {"clusterCaCertificate": "Y2EtY2VydA=="}

        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        project = args.args.get("project", "project")
        name = args.args.get("name")
        if args.token == "gcp:compute/getNetwork:getNetwork":
            network_id = f"projects/{project}/global/networks/{name}"
            return {
                "id": network_id,
                "name": name,
                "project": project,
                "selfLink": f"https://www.googleapis.com/compute/v1/{network_id}",
            }
        if args.token == "gcp:compute/getSubnetwork:getSubnetwork":
            region = args.args.get("region", "us-central1")
            subnet_id = f"projects/{project}/regions/{region}/subnetworks/{name}"
            return {
                "id": subnet_id,
                "name": name,
                "project": project,
                "region": region,
                "selfLink": f"https://www.googleapis.com/compute/v1/{subnet_id}",
            }
        return {}


pulumi.runtime.set_mocks(GCPMocks(), preview=False)
pulumi.runtime.set_config("project:db_password", DB_PASSWORD)


def nested(value, name):
    """Read a field of a nested output, whether it came back typed or as a plain dict."""
    try:
        return getattr(value, name)
    except AttributeError:
        camel = re.sub(r"_([a-z])", lambda m: m.group(1).upper(), name)
        return value.get(name, value.get(camel))


@pytest.fixture
def write_config(tmp_path):
    """Write a root config and its layer files into a temporary directory.

    Returns a function taking the root YAML text and a mapping of
    layer file name to YAML text; it returns the root file path.
    """

    def _write(root_yaml, layers=None):
        for file_name, content in (layers or {}).items():
            path = tmp_path / file_name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(content))
        root = tmp_path / "config.yaml"
        root.write_text(textwrap.dedent(root_yaml))
        return str(root)

    return _write


BASE_CONFIG = """\
team: Acme
service: orders
environment: test
region: europe-west1
project: acme-orders-test
host_project: acme-host
labels:
  team: acme
"""


@pytest.fixture
def base_config():
    return BASE_CONFIG
