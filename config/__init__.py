"""Engine configuration: config.yaml and its cached loader."""
