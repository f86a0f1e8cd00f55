"""
This module defines the data structures for our layered GCP environment configuration
and loads them from the root config.yaml and the layer files it lists.
"""

import ipaddress
import os
import re
import yaml
from dataclasses import dataclass, field, replace
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, List, Optional

REQUIRED_KEYS = ["team", "service", "environment", "region", "project", "host_project"]
BUILTIN_VARIABLES = {
    "team", "service", "environment", "region", "project", "host_project",
    "labels", "prefix", "workload_pool",
}

LABEL_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")
LABEL_VALUE_PATTERN = re.compile(r"^[a-z0-9_-]{0,63}$")

@dataclass
class GCPResource:
    name: str
    type: str
    args: Dict[str, Any]
    custom_name: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], layer: str) -> "GCPResource":
        if not isinstance(data, dict):
            raise ValueError(f"Layer '{layer}': resource entries must be mappings, got {data!r}")
        for key in ("name", "type"):
            if key not in data:
                raise ValueError(f"Layer '{layer}': resource is missing required key '{key}'")
        if "." not in data["type"]:
            raise ValueError(
                f"Layer '{layer}': resource '{data['name']}' type '{data['type']}' must look like 'module.Class'"
            )
        where = f"Layer '{layer}': resource '{data['name']}'"
        return cls(
            name=data["name"],
            type=data["type"],
            args=_typed(data, "args", dict, where),
            custom_name=data.get("custom_name"),
            options=_typed(data, "options", dict, where),
        )

@dataclass
class Layer:
    name: str
    file: str
    depends_on: List[str] = field(default_factory=list)
    gcp_resources: List[GCPResource] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)

@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    project: str
    host_project: str
    labels: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    layers: List[Layer] = field(default_factory=list)

    @property
    def prefix(self) -> str:
        return f"{self.team}-{self.service}-{self.environment}".strip().lower()

    def context_variables(self) -> Dict[str, Any]:
        """Variables visible to layer files as var:<name> and ${var.<name>}."""
        context = dict(self.variables)
        context.update({
            "team": self.team,
            "service": self.service,
            "environment": self.environment,
            "region": self.region,
            "project": self.project,
            "host_project": self.host_project,
            "labels": dict(self.labels),
            "prefix": self.prefix,
            "workload_pool": f"{self.project}.svc.id.goog",
        })
        return context

    def ordered_layers(self) -> List[Layer]:
        """Return layers so that every layer comes after the layers it depends on."""
        by_name = {layer.name: layer for layer in self.layers}
        sorter = TopologicalSorter()
        for layer in self.layers:
            for dep in layer.depends_on:
                if dep not in by_name:
                    raise ValueError(f"Layer '{layer.name}' depends on unknown layer '{dep}'")
            sorter.add(layer.name, *layer.depends_on)

        try:
            sorter.prepare()
        except CycleError as e:
            raise ValueError(f"Layer dependency cycle: {' -> '.join(e.args[1])}") from e

        # Emit ready layers in declaration order so output is stable between runs.
        position = {layer.name: i for i, layer in enumerate(self.layers)}
        ordered: List[Layer] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=position.__getitem__)
            for name in ready:
                ordered.append(by_name[name])
                sorter.done(name)
        return ordered

def validate_labels(labels: Dict[str, str]) -> None:
    for key, value in labels.items():
        if not LABEL_KEY_PATTERN.match(str(key)):
            raise ValueError(f"Invalid label key: {key!r}")
        if not LABEL_VALUE_PATTERN.match(str(value)):
            raise ValueError(f"Invalid value for label '{key}': {value!r}")

def validate_variables(variables: Dict[str, Any]) -> None:
    shadowed = BUILTIN_VARIABLES.intersection(variables)
    if shadowed:
        raise ValueError(f"Variables may not redefine built-in names: {sorted(shadowed)}")

    for name, value in variables.items():
        if name.endswith("_cidr"):
            _check_cidr(name, value)
        elif name.endswith("_cidrs"):
            if not isinstance(value, list):
                raise ValueError(f"Variable '{name}' must be a list of CIDR blocks")
            for item in value:
                _check_cidr(name, item)

def _check_cidr(name: str, value: Any) -> None:
    # Authorized-network entries may be {cidr_block, display_name} mappings.
    if isinstance(value, dict):
        value = value.get("cidr_block")
    try:
        ipaddress.IPv4Network(str(value))
    except ValueError as e:
        raise ValueError(f"Variable '{name}' is not a valid IPv4 CIDR block: {value!r}") from e

def _typed(data: Dict[str, Any], key: str, expected: type, where: str) -> Any:
    value = data.get(key) or expected()
    if not isinstance(value, expected):
        raise ValueError(f"{where}: '{key}' must be a {expected.__name__}, got {type(value).__name__}")
    return value

def load_layer(base_dir: str, layer_cfg: Dict[str, Any]) -> Layer:
    if not isinstance(layer_cfg, dict):
        raise ValueError(f"Layer entries must be mappings, got {layer_cfg!r}")
    for key in ("name", "file"):
        if key not in layer_cfg:
            raise ValueError(f"Layer entry is missing required key '{key}': {layer_cfg!r}")

    name = layer_cfg["name"]
    path = os.path.join(base_dir, layer_cfg["file"])
    try:
        with open(path, "r") as file:
            layer_data = yaml.safe_load(file) or {}
    except OSError as e:
        raise ValueError(f"Cannot read file for layer '{name}': {path}") from e
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in file for layer '{name}': {e}") from e

    if not isinstance(layer_data, dict):
        raise ValueError(f"Layer '{name}': file must contain a mapping, got {type(layer_data).__name__}")

    where = f"Layer '{name}'"
    resources = [GCPResource.from_dict(item, name) for item in _typed(layer_data, "gcp_resources", list, where)]
    return Layer(
        name=name,
        file=layer_cfg["file"],
        depends_on=list(_typed(layer_cfg, "depends_on", list, where)),
        gcp_resources=resources,
        outputs=_typed(layer_data, "outputs", dict, where),
    )

def load_config(file_path: str) -> Config:
    """Load and validate the root YAML configuration and every layer it lists."""
    try:
        with open(file_path, "r") as file:
            config_data = yaml.safe_load(file) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file '{file_path}': {e}") from e

    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration file '{file_path}' must contain a mapping")

    for key in REQUIRED_KEYS:
        if key not in config_data:
            raise ValueError(f"Missing required configuration key: {key}")

    base_dir = os.path.dirname(os.path.abspath(file_path))
    layers = [load_layer(base_dir, layer_cfg) for layer_cfg in _typed(config_data, "layers", list, "Configuration")]

    layer_names = set()
    seen: Dict[str, str] = {}
    for layer in layers:
        if layer.name in layer_names:
            raise ValueError(f"Duplicate layer name: {layer.name}")
        layer_names.add(layer.name)
        for resource in layer.gcp_resources:
            if resource.name in seen:
                raise ValueError(
                    f"Resource '{resource.name}' in layer '{layer.name}' is already declared in layer '{seen[resource.name]}'"
                )
            seen[resource.name] = layer.name

    labels = _typed(config_data, "labels", dict, "Configuration")
    variables = _typed(config_data, "variables", dict, "Configuration")
    validate_labels(labels)
    validate_variables(variables)

    return Config(
        team=str(config_data["team"]),
        service=str(config_data["service"]),
        environment=str(config_data["environment"]),
        region=str(config_data["region"]),
        project=str(config_data["project"]),
        host_project=str(config_data["host_project"]),
        labels=labels,
        variables=variables,
        layers=layers,
    )

def apply_stack_overrides(config: Config, overrides: Optional[Dict[str, Any]]) -> Config:
    """Return a copy of config with declared variables replaced by stack-level values."""
    if not overrides:
        return config

    unknown = set(overrides) - set(config.variables)
    if unknown:
        raise ValueError(f"Stack config overrides undeclared variables: {sorted(unknown)}")

    variables = {**config.variables, **overrides}
    validate_variables(variables)
    return replace(config, variables=variables)
