import pulumi
import inspect
import pulumi_gcp as gcp
import re
from typing import Any, Dict, Optional, Set

from config import Config, GCPResource, Layer

# Consolidated list of common GCP region abbreviations
GCP_REGION_ABBREVIATIONS = {
    "asia-east1": "ae1",
    "asia-east2": "ae2",
    "asia-northeast1": "an1",
    "asia-northeast2": "an2",
    "asia-northeast3": "an3",
    "asia-south1": "as1",
    "asia-southeast1": "ase1",
    "asia-southeast2": "ase2",
    "australia-southeast1": "aus1",
    "australia-southeast2": "aus2",
    "europe-central2": "ec2",
    "europe-north1": "en1",
    "europe-west1": "ew1",
    "europe-west2": "ew2",
    "europe-west3": "ew3",
    "europe-west4": "ew4",
    "europe-west6": "ew6",
    "northamerica-northeast1": "nn1",
    "southamerica-east1": "se1",
    "us-central1": "usc1",
    "us-east1": "use1",
    "us-east4": "use4",
    "us-west1": "usw1",
    "us-west2": "usw2",
    "us-west3": "usw3",
    "us-west4": "usw4",
}

INTERPOLATION = re.compile(r"\$\{([^}]+)\}")

def to_snake_case(name: str) -> str:
    # A run of capitals is one word: SSLPolicy -> ssl_policy.
    name = re.sub(r'([A-Z]+)([A-Z][a-z])', r'\1_\2', name)
    return re.sub(r'([a-z0-9])([A-Z])', r'\1_\2', name).lower()

def lookup_variable(name: str, variables: Dict[str, Any]) -> Any:
    if name not in variables:
        raise ValueError(f"Variable '{name}' is not defined.")
    return variables[name]

def lookup_attribute(ref_text: str, resources: Dict[str, Any]) -> Any:
    """Resolve '<resource>[.<attr>...]' against already-built resources; the attribute defaults to 'id'.

    Missing attributes on resources and lookup results raise ValueError here.
    Once the walk reaches a pulumi.Output, further attributes are lifted and a
    misspelled one only fails when the engine resolves the value.
    """
    ref_res, *attrs = ref_text.split(".")
    if not attrs:
        attrs = ["id"]
    if ref_res not in resources:
        raise ValueError(f"Referenced resource '{ref_res}' not found.")
    value = resources[ref_res]
    for attr in attrs:
        value = getattr(value, attr, None)
        if value is None:
            raise ValueError(f"Attribute '{'.'.join(attrs)}' not found on resource '{ref_res}'")
    return value

def interpolate(text: str, resources: Dict[str, Any], variables: Dict[str, Any]) -> Any:
    pieces = []
    position = 0
    for match in INTERPOLATION.finditer(text):
        pieces.append(text[position:match.start()])
        token = match.group(1).strip()
        if token.startswith("var."):
            piece = lookup_variable(token[len("var."):], variables)
        else:
            piece = lookup_attribute(token, resources)
        pieces.append(piece if isinstance(piece, pulumi.Output) else str(piece))
        position = match.end()
    pieces.append(text[position:])

    if any(isinstance(piece, pulumi.Output) for piece in pieces):
        return pulumi.Output.concat(*pieces)
    return "".join(pieces)

def resolve_value(value: Any, resources: Dict[str, Any], variables: Optional[Dict[str, Any]] = None) -> Any:
    variables = variables or {}
    if isinstance(value, dict):
        return {k: resolve_value(v, resources, variables) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, resources, variables) for item in value]
    elif isinstance(value, str):
        if value.startswith("secret:"):
            # Fetch secret from Pulumi config
            secret_key = value[len("secret:"):]
            config = pulumi.Config()
            return config.require_secret(secret_key)
        elif value.startswith("ref:"):
            return lookup_attribute(value[len("ref:"):], resources)
        elif value.startswith("var:"):
            return lookup_variable(value[len("var:"):], variables)
        elif "${" in value:
            return interpolate(value, resources, variables)
        else:
            return value
    else:
        return value

def get_lookup_params(accepted_params: Set[str], resolved_args: dict) -> dict:
    return {param: resolved_args[param] for param in accepted_params if param in resolved_args}

def init_parameters(resource_class: type) -> Set[str]:
    # Generated resource classes dispatch __init__ through *args/**kwargs;
    # _internal_init carries the real keyword list.
    init = getattr(resource_class, "_internal_init", resource_class.__init__)
    return set(inspect.signature(init).parameters)

class GCPResourceBuilder:
    def __init__(self, config: Config):
        self.config = config
        self.variables = config.context_variables()
        self.resources: Dict[str, Any] = {}
        self.outputs: Dict[str, Any] = {}

    def get_abbreviation(self, region: str) -> str:
        return GCP_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.config.team.strip().lower()
        service = self.config.service.strip().lower()
        env = self.config.environment.strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region)
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.resources, self.variables) for key, value in args.items()}

    def _apply_common_parameters(self, resolved_args: dict, params: Set[str]) -> dict:
        # Most GCP resources take 'labels'; GKE clusters take 'resource_labels'.
        if self.config.labels:
            for key in ("labels", "resource_labels"):
                if key in params:
                    resolved_args.setdefault(key, dict(self.config.labels))
        if "labels" not in params:
            resolved_args.pop("labels", None)

        # Handle 'region' if the resource expects it.
        if "region" in params:
            resolved_args.setdefault("region", self.config.region)
        else:
            resolved_args.pop("region", None)

        if "location" in params:
            resolved_args.setdefault("location", self.config.region)
        if "project" in params:
            resolved_args.setdefault("project", self.config.project)
        return resolved_args

    def _resource_options(self, resource_cfg: GCPResource) -> Optional[pulumi.ResourceOptions]:
        options = dict(resource_cfg.options)
        if not options:
            return None

        depends_on = []
        for dep_name in options.pop("depends_on", []):
            if dep_name not in self.resources:
                raise ValueError(f"Resource '{resource_cfg.name}' depends on unknown resource '{dep_name}'")
            dep = self.resources[dep_name]
            if isinstance(dep, pulumi.Resource):
                depends_on.append(dep)
            else:
                pulumi.log.warn(f"'{dep_name}' is a lookup, not a managed resource. Ignoring it in depends_on of '{resource_cfg.name}'.")

        unknown = set(options) - {"protect", "ignore_changes", "delete_before_replace"}
        if unknown:
            raise ValueError(f"Unsupported options {sorted(unknown)} on resource '{resource_cfg.name}'")

        return pulumi.ResourceOptions(depends_on=depends_on or None, **options)

    def _lookup_existing(self, module: Any, class_name: str, resolved_args: dict, create_if_missing: bool = False) -> Any:
        get_func_name = f"get_{to_snake_case(class_name)}"
        get_func = getattr(module, get_func_name, None)
        if get_func is None:
            raise ValueError(f"Function '{get_func_name}' not found")

        sig = inspect.signature(get_func)
        accepted = {k for k in sig.parameters if k != "opts"}
        get_params = get_lookup_params(accepted, resolved_args)
        if not get_params:
            raise ValueError(f"None of the declared args match the parameters of '{get_func_name}'")

        # Lookups keyed on values only known at deploy time go through the Output form.
        if any(isinstance(v, pulumi.Output) for v in get_params.values()):
            get_func = getattr(module, f"{get_func_name}_output")
            if create_if_missing:
                pulumi.log.warn(
                    f"'{get_func.__name__}' runs during deployment; create_if_missing cannot fall back to creation if it fails."
                )

        pulumi.log.debug(f"Looking up existing resource via '{get_func.__name__}' with {get_params}")
        return get_func(**get_params)

    def build_resource(self, resource_cfg: GCPResource) -> Any:
        name = resource_cfg.name
        args = dict(resource_cfg.args)
        is_existing = args.pop("existing", False)
        create_if_missing = args.pop("create_if_missing", False)
        resolved_args = self.resolve_args(args)

        module_name, class_name = resource_cfg.type.rsplit(".", 1)
        module = getattr(gcp, module_name, None)
        if not module:
            pulumi.log.warn(f"GCP module '{module_name}' not found. Skipping '{name}'.")
            return None
        try:
            ResourceClass = getattr(module, class_name)
        except AttributeError:
            pulumi.log.warn(f"Resource class '{class_name}' not found in module '{module_name}'. Skipping '{name}'.")
            return None

        if is_existing:
            try:
                existing_resource = self._lookup_existing(module, class_name, resolved_args, create_if_missing)
            except Exception as e:
                if not create_if_missing:
                    raise ValueError(f"Failed to retrieve existing resource '{name}': {e}") from e
                pulumi.log.warn(f"Failed to retrieve existing resource '{name}': {e}. Proceeding with creation.")
            else:
                self.resources[name] = existing_resource
                pulumi.log.info(f"Fetched existing resource '{name}' ({resource_cfg.type})")
                return existing_resource

        resolved_args = self._apply_common_parameters(resolved_args, init_parameters(ResourceClass))
        pulumi_name = resource_cfg.custom_name if resource_cfg.custom_name else self.generate_resource_name(name)
        opts = self._resource_options(resource_cfg)
        pulumi.log.debug(f"Resolved args for '{name}': {resolved_args}")
        resource_instance = ResourceClass(pulumi_name, opts=opts, **resolved_args)
        self.resources[name] = resource_instance
        pulumi.log.info(f"Created resource: {pulumi_name} ({resource_cfg.type})")
        return resource_instance

    def build_layer(self, layer: Layer) -> None:
        pulumi.log.info(f"Building layer '{layer.name}' ({len(layer.gcp_resources)} resources)")
        for resource_cfg in layer.gcp_resources:
            self.build_resource(resource_cfg)

        for export_name, expression in layer.outputs.items():
            if export_name in self.outputs:
                raise ValueError(f"Output '{export_name}' of layer '{layer.name}' is already defined")
            self.outputs[export_name] = resolve_value(expression, self.resources, self.variables)

    def build(self) -> None:
        for layer in self.config.ordered_layers():
            self.build_layer(layer)
