import pulumi
from builder import GCPResourceBuilder
from config import apply_stack_overrides, load_config

def main():
    stack_config = pulumi.Config()

    # Load YAML configuration and layer files, then stack-level variable overrides.
    config_file = stack_config.get("config_file") or "config.yaml"
    try:
        config = load_config(config_file)
        config = apply_stack_overrides(config, stack_config.get_object("variables"))
    except Exception as e:
        pulumi.log.error(f"Failed to load configuration from '{config_file}': {e}")
        raise

    builder = GCPResourceBuilder(config)
    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in builder.outputs.items():
        pulumi.export(name, value)

# Pulumi runs this file as __main__.
if __name__ == "__main__":
    main()
